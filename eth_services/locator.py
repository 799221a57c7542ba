"""
Resource Locator - turns an instance name plus its descriptor into the
explicit set of docker objects and directories the instance owns.

Pure: no docker calls, no filesystem access. The name grammar is enforced
here so nothing unsafe ever reaches a docker argv or a path join.
"""
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, List, Optional, Tuple

from .descriptors import ResourceKind, ServiceDescriptor
from .errors import InvalidNameError

NAME_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_-]{0,62}$')


def validate_name(name) -> str:
    if not isinstance(name, str) or not NAME_PATTERN.match(name):
        raise InvalidNameError(name)
    return name


@dataclass(frozen=True)
class Resource:
    kind: ResourceKind
    identifier: str
    match: str = 'exact'
    shared: bool = False
    shared_with_instances: FrozenSet[str] = frozenset()

    def matches(self, candidate: str, project: Optional[str] = None) -> bool:
        """
        Does an existing object belong to this resource? ``project`` is the
        object's compose project label, empty for objects compose did not create.
        """
        if self.match == 'project':
            return bool(project) and project == self.identifier
        return candidate == self.identifier

    @property
    def label(self) -> str:
        return f"project={self.identifier}" if self.match == 'project' else self.identifier


@dataclass(frozen=True)
class ResourceSet:
    instance: str
    resources: Tuple[Resource, ...] = field(default_factory=tuple)

    def of_kind(self, kind: ResourceKind) -> List[Resource]:
        return [r for r in self.resources if r.kind == kind]

    @property
    def containers(self) -> List[Resource]:
        return self.of_kind(ResourceKind.CONTAINER)

    @property
    def volumes(self) -> List[Resource]:
        return self.of_kind(ResourceKind.VOLUME)

    @property
    def networks(self) -> List[Resource]:
        return self.of_kind(ResourceKind.NETWORK)

    @property
    def directories(self) -> List[Resource]:
        return self.of_kind(ResourceKind.DIRECTORY)

    @property
    def directory(self) -> Path:
        return Path(self.directories[0].identifier)

    def identifiers(self) -> List[str]:
        return [f"{r.kind.value}:{r.label}" for r in self.resources]


def resolve(instance_name: str, descriptor: ServiceDescriptor, services_root) -> ResourceSet:
    """
    Evaluate the descriptor's resource templates for one instance.

    Args:
        instance_name: Registry key of the instance (validated)
        descriptor: Descriptor of the instance's service type
        services_root: Directory holding every service's working directory

    Returns:
        ResourceSet with explicit identifiers
    """
    validate_name(instance_name)
    root = str(Path(services_root))
    resources = []
    for template in descriptor.resource_patterns:
        identifier = template.pattern.format(name=instance_name, root=root)
        resources.append(Resource(
            kind=template.kind,
            identifier=identifier,
            match=template.match,
            shared=template.shared,
        ))
    return ResourceSet(instance=instance_name, resources=tuple(resources))


def with_sharing(resource_set: ResourceSet, sharers: dict) -> ResourceSet:
    """
    Return a copy whose shared resources carry the names of the other
    instances referencing them. ``sharers`` maps identifier -> names.
    """
    updated = []
    for resource in resource_set.resources:
        if resource.shared:
            others = frozenset(n for n in sharers.get(resource.identifier, ()) if n != resource_set.instance)
            resource = Resource(resource.kind, resource.identifier, resource.match, True, others)
        updated.append(resource)
    return ResourceSet(instance=resource_set.instance, resources=tuple(updated))
