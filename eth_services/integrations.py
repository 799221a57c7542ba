"""
Integration Adapters - cross-service side effects of lifecycle operations.

Adapters are invoked by the orchestrator at fixed points of a flow. Every
hook returns a list of warning strings and raises IntegrationError when it
cannot apply its change; the orchestrator records both against the run.
"""
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set
from urllib.parse import urlparse

from .descriptors import (DEPENDENT_CONFIG_INTEGRATION, DESCRIPTORS, SHARED_RESOURCE_INTEGRATION,
                          ResourceKind, ServiceType, get_descriptor)
from .envfile import ENV_FILE, join_endpoints, read_env, split_endpoints, update_env
from .errors import ContainerRuntimeError, IntegrationError, TemplateError
from .locator import resolve
from .registry import ServiceInstance, ServiceStatus
from .runtime import COMPOSE_FILE
from .templates import (BEACON_API_PORT, ROLLBACK_FILE, SIGNER_API_PORT, add_compose_network,
                        remove_compose_network)

logger = logging.getLogger(__name__)

INACTIVE_STATUSES = (ServiceStatus.REMOVING, ServiceStatus.ABSENT)


class IntegrationAdapter:
    """Base adapter; every hook is a no-op unless overridden"""
    kind: Optional[str] = None

    def __init__(self, registry, runtime, settings, descriptors=DESCRIPTORS):
        self.registry = registry
        self.runtime = runtime
        self.settings = settings
        self.descriptors = descriptors

    def on_before_remove(self, instance: ServiceInstance) -> List[str]:
        return []

    def on_after_install(self, instance: ServiceInstance) -> List[str]:
        return []

    def on_dependency_removed(self, instance: ServiceInstance, removed_name: str) -> List[str]:
        return []

    def on_shared_resource_check(self, resource_id: str, exclude: Optional[str] = None) -> bool:
        return False

    def instance_dir(self, name: str) -> Path:
        return Path(self.settings.services_root) / name

    def isolated_networks(self, instance: ServiceInstance) -> List[str]:
        """Networks the instance owns alone (other services join these to reach it)"""
        descriptor = get_descriptor(instance.type, self.descriptors)
        resources = resolve(instance.name, descriptor, self.settings.services_root)
        return [r.identifier for r in resources.networks if not r.shared]

    def recreate(self, name: str):
        directory = self.instance_dir(name)
        override = directory / ROLLBACK_FILE
        self.runtime.up(directory, recreate=True, extra_files=[override] if override.exists() else [])


def endpoint_for(dependency: ServiceInstance) -> str:
    """URL a dependent uses to reach ``dependency``"""
    if dependency.type == ServiceType.ETHNODE:
        beacon_url = dependency.metadata.get('beacon_url')
        if beacon_url:
            return beacon_url
        client = dependency.metadata.get('consensus_client', 'beacon')
        return f"http://{dependency.name}-{client}:{BEACON_API_PORT}"
    if dependency.type == ServiceType.SIGNER:
        return dependency.metadata.get('signer_url') or f"http://{dependency.name}:{SIGNER_API_PORT}"
    raise IntegrationError(f"{dependency.name} ({dependency.type.value}) does not expose an endpoint")


def _host(url: str) -> str:
    return urlparse(url if '://' in url else f"http://{url}").hostname or ''


def endpoint_hosts(instance: ServiceInstance) -> Set[str]:
    """
    Hostnames that address ``instance``: its name, the hosts of the URLs
    recorded in its metadata and its client containers. Only exact names,
    so 'node' never claims the hosts of 'node-b'.
    """
    return hosts_for(instance.name, instance.metadata)


def hosts_for(name: str, metadata: Dict) -> Set[str]:
    hosts = {name.lower()}
    for key in ('beacon_url', 'signer_url', 'execution_url'):
        if metadata.get(key):
            hosts.add(_host(metadata[key]))
    for key in ('execution_client', 'consensus_client'):
        if metadata.get(key):
            hosts.add(f"{name}-{metadata[key]}".lower())
    hosts.discard('')
    return hosts


def endpoint_belongs_to(url: str, hosts: Iterable[str]) -> bool:
    """True if the URL host is one of ``hosts``"""
    return _host(url) in set(hosts)


class DependentConfigAdapter(IntegrationAdapter):
    """Keeps dependents' endpoint lists and networks in line with their dependencies"""
    kind = DEPENDENT_CONFIG_INTEGRATION

    def link(self, instance: ServiceInstance, dependency: ServiceInstance) -> List[str]:
        """Add ``dependency``'s endpoint and network to ``instance``'s configuration"""
        key = self._endpoint_key(instance, dependency.type)
        directory = self.instance_dir(instance.name)
        env_path = directory / ENV_FILE
        try:
            endpoints = split_endpoints(read_env(env_path).get(key, ''))
        except OSError as e:
            raise IntegrationError(f"Cannot read {env_path}: {e}") from e

        url = endpoint_for(dependency)
        if url not in endpoints:
            endpoints = [url] if dependency.type == ServiceType.SIGNER else endpoints + [url]
            update_env(env_path, {key: join_endpoints(endpoints)}, backup=False)

        for network in self.isolated_networks(dependency):
            add_compose_network(directory / COMPOSE_FILE, network)

        dependencies = sorted(set(instance.dependencies) | {dependency.name})
        metadata = dict(instance.metadata)
        if dependency.type == ServiceType.ETHNODE:
            metadata['beacon_nodes'] = sorted(set(metadata.get('beacon_nodes') or []) | {dependency.name})
        elif dependency.type == ServiceType.SIGNER:
            metadata['signer'] = dependency.name
        self.registry.update(instance.name, dependencies=dependencies, metadata=metadata)
        logger.info(f"Linked {instance.name} to {dependency.name} via {key}")
        return []

    def on_dependency_removed(self, instance: ServiceInstance, removed_name: str) -> List[str]:
        warnings = []
        directory = self.instance_dir(instance.name)
        env_path = directory / ENV_FILE
        descriptor = get_descriptor(instance.type, self.descriptors)

        removed = self.registry.get(removed_name)
        if removed is not None and removed.type in descriptor.endpoint_keys:
            keys = [descriptor.endpoint_keys[removed.type]]
        else:
            keys = list(descriptor.endpoint_keys.values())

        updates: Dict[str, str] = {}
        if keys:
            try:
                current = read_env(env_path)
            except OSError as e:
                raise IntegrationError(f"Cannot read {env_path}: {e}") from e
            hosts = self.removed_hosts(removed_name, removed, warnings)
            for key in keys:
                endpoints = split_endpoints(current.get(key, ''))
                kept = [u for u in endpoints if not endpoint_belongs_to(u, hosts)]
                if kept != endpoints:
                    updates[key] = join_endpoints(kept)
                    if not kept:
                        warnings.append(f"{instance.name}: {key} is now empty")

        if updates:
            update_env(env_path, updates, backup=True)
            logger.info(f"Rewrote {', '.join(updates)} for {instance.name} without {removed_name}")

        compose_path = directory / COMPOSE_FILE
        if compose_path.exists():
            networks = self.isolated_networks(removed) if removed else [f"{removed_name}-net"]
            try:
                for network in networks:
                    remove_compose_network(compose_path, network)
            except (OSError, TemplateError) as e:
                raise IntegrationError(f"Cannot update {compose_path}: {e}") from e

        metadata = dict(instance.metadata)
        if removed_name in (metadata.get('beacon_nodes') or []):
            metadata['beacon_nodes'] = [n for n in metadata['beacon_nodes'] if n != removed_name]
        if metadata.get('signer') == removed_name:
            metadata['signer'] = None
        self.registry.update(
            instance.name,
            dependencies=[d for d in instance.dependencies if d != removed_name],
            metadata=metadata,
        )

        # Decide on the current status, not the one the caller looked up
        if self.registry.status_of(instance.name) == ServiceStatus.RUNNING:
            try:
                self.recreate(instance.name)
                logger.info(f"Restarted {instance.name} with updated configuration")
            except ContainerRuntimeError as e:
                warnings.append(f"{instance.name}: restart after config change failed: {e}")
        return warnings

    def removed_hosts(self, removed_name: str, removed: Optional[ServiceInstance], warnings: List[str]) -> Set[str]:
        """Hosts of the removed dependency, including the containers of its compose project"""
        if removed is None:
            return {removed_name.lower()}
        hosts = endpoint_hosts(removed)
        descriptor = get_descriptor(removed.type, self.descriptors)
        resources = resolve(removed.name, descriptor, self.settings.services_root)
        try:
            containers = self.runtime.list_matching(ResourceKind.CONTAINER, resources.containers)
        except ContainerRuntimeError as e:
            warnings.append(f"cannot list containers of {removed_name}, using recorded endpoints only: {e}")
            return hosts
        hosts.update(handle.name.lower() for handle in containers)
        return hosts

    def _endpoint_key(self, instance: ServiceInstance, dependency_type: ServiceType) -> str:
        descriptor = get_descriptor(instance.type, self.descriptors)
        key = descriptor.endpoint_keys.get(dependency_type)
        if key is None:
            raise IntegrationError(f"{instance.type.value} cannot depend on {dependency_type.value}")
        return key


class SharedResourceAdapter(IntegrationAdapter):
    """Reference counting of shared networks across the registry"""
    kind = SHARED_RESOURCE_INTEGRATION

    def users(self, resource_id: str, exclude: Optional[str] = None) -> List[str]:
        """Active instances whose descriptor declares ``resource_id`` as shared"""
        names = []
        for instance in self.registry.list():
            if instance.name == exclude or instance.status in INACTIVE_STATUSES:
                continue
            descriptor = get_descriptor(instance.type, self.descriptors)
            resources = resolve(instance.name, descriptor, self.settings.services_root)
            if any(r.shared and r.identifier == resource_id for r in resources.resources):
                names.append(instance.name)
        return names

    def on_shared_resource_check(self, resource_id: str, exclude: Optional[str] = None) -> bool:
        return bool(self.users(resource_id, exclude=exclude))
