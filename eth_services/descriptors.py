"""
Service descriptors - the immutable per-type templates describing which
resources a service owns, what it depends on, which integrations it takes
part in and the ordered steps of each lifecycle operation.

The descriptor table is built once at import time and handed to the
orchestrator explicitly; nothing in here is mutated afterwards.
"""
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, FrozenSet, Mapping, Optional, Tuple

from .errors import UnknownServiceError


class ServiceType(str, Enum):
    ETHNODE = 'ethnode'
    VALIDATOR = 'validator'
    SIGNER = 'signer'
    METRICS = 'metrics'


class ResourceKind(str, Enum):
    CONTAINER = 'container'
    VOLUME = 'volume'
    NETWORK = 'network'
    DIRECTORY = 'directory'


class Operation(str, Enum):
    INSTALL = 'install'
    REMOVE = 'remove'
    START = 'start'
    STOP = 'stop'
    UPDATE = 'update'


# Integration adapter keys
METRICS_INTEGRATION = 'metrics'
DEPENDENT_CONFIG_INTEGRATION = 'dependent_config'
SHARED_RESOURCE_INTEGRATION = 'shared_resources'


@dataclass(frozen=True)
class ResourceTemplate:
    """
    A typed resource name template. ``pattern`` may reference ``{name}``
    (instance name) and ``{root}`` (services root directory). ``match``
    is either 'exact' (the object name equals the identifier) or 'project'
    (the object carries the compose project label equal to the identifier).
    """
    kind: ResourceKind
    pattern: str
    match: str = 'exact'
    shared: bool = False


@dataclass(frozen=True)
class ServiceDescriptor:
    type: ServiceType
    description: str
    resource_patterns: Tuple[ResourceTemplate, ...]
    lifecycle_flows: Mapping[Operation, Tuple[str, ...]]
    dependency_types: FrozenSet[ServiceType] = frozenset()
    dependent_types: FrozenSet[ServiceType] = frozenset()
    integration_kinds: Tuple[str, ...] = ()
    endpoint_keys: Mapping[ServiceType, str] = field(default_factory=lambda: MappingProxyType({}))

    def flow(self, operation: Operation) -> Tuple[str, ...]:
        return self.lifecycle_flows.get(Operation(operation), ())

    def shared_templates(self) -> Tuple[ResourceTemplate, ...]:
        return tuple(t for t in self.resource_patterns if t.shared)


def _flows(**flows) -> Mapping[Operation, Tuple[str, ...]]:
    return MappingProxyType({Operation(op): tuple(steps) for op, steps in flows.items()})


# Every instance is its own compose project named after the instance, and
# compose labels each container and volume it creates with that project.
# Name prefixes are not used: 'node-' would also select the objects of 'node-b'.
_CONTAINERS = (
    ResourceTemplate(ResourceKind.CONTAINER, '{name}', match='project'),
)
_VOLUMES = (
    ResourceTemplate(ResourceKind.VOLUME, '{name}', match='project'),
)
_DIRECTORY = ResourceTemplate(ResourceKind.DIRECTORY, '{root}/{name}')

VALIDATOR_NETWORK = 'validator-net'
SIGNER_NETWORK = 'web3signer-net'
MONITORING_NETWORK = 'monitoring-net'

_REMOVE_FLOW = (
    'stop_services', 'update_dependents', 'cleanup_integrations', 'remove_containers',
    'remove_volumes', 'remove_networks', 'remove_directories', 'unregister',
)
_START_FLOW = ('ensure_networks', 'start_services', 'health_check')
_STOP_FLOW = ('stop_services',)
_UPDATE_FLOW = ('pull_images', 'recreate_services', 'health_check')


ETHNODE = ServiceDescriptor(
    type=ServiceType.ETHNODE,
    description='Execution + consensus client pair on an isolated network',
    resource_patterns=_CONTAINERS + _VOLUMES + (
        ResourceTemplate(ResourceKind.NETWORK, '{name}-net'),
        _DIRECTORY,
    ),
    dependent_types=frozenset({ServiceType.VALIDATOR}),
    integration_kinds=(METRICS_INTEGRATION,),
    lifecycle_flows=_flows(
        install=('create_directories', 'copy_configs', 'setup_networking', 'start_services', 'integrate'),
        remove=_REMOVE_FLOW,
        start=_START_FLOW,
        stop=_STOP_FLOW,
        update=_UPDATE_FLOW,
    ),
)

VALIDATOR = ServiceDescriptor(
    type=ServiceType.VALIDATOR,
    description='Validator client connected to one or more ethnodes',
    resource_patterns=_CONTAINERS + _VOLUMES + (
        ResourceTemplate(ResourceKind.NETWORK, VALIDATOR_NETWORK, shared=True),
        ResourceTemplate(ResourceKind.NETWORK, SIGNER_NETWORK, shared=True),
        _DIRECTORY,
    ),
    dependency_types=frozenset({ServiceType.ETHNODE, ServiceType.SIGNER}),
    integration_kinds=(METRICS_INTEGRATION,),
    endpoint_keys=MappingProxyType({
        ServiceType.ETHNODE: 'BEACON_NODE_URLS',
        ServiceType.SIGNER: 'WEB3SIGNER_URL',
    }),
    lifecycle_flows=_flows(
        install=('create_directories', 'copy_configs', 'setup_networking', 'connect_to_dependencies',
                 'start_services', 'integrate'),
        remove=_REMOVE_FLOW,
        start=_START_FLOW,
        stop=_STOP_FLOW,
        update=_UPDATE_FLOW,
    ),
)

SIGNER = ServiceDescriptor(
    type=ServiceType.SIGNER,
    description='Web3signer remote signing service with its postgres database',
    resource_patterns=_CONTAINERS + _VOLUMES + (
        ResourceTemplate(ResourceKind.NETWORK, SIGNER_NETWORK, shared=True),
        _DIRECTORY,
    ),
    dependent_types=frozenset({ServiceType.VALIDATOR}),
    integration_kinds=(METRICS_INTEGRATION,),
    lifecycle_flows=_flows(
        install=('create_directories', 'copy_configs', 'setup_networking', 'start_services', 'integrate'),
        remove=_REMOVE_FLOW,
        start=_START_FLOW,
        stop=_STOP_FLOW,
        update=_UPDATE_FLOW,
    ),
)

METRICS = ServiceDescriptor(
    type=ServiceType.METRICS,
    description='Prometheus, Grafana and node-exporter monitoring stack',
    resource_patterns=_CONTAINERS + _VOLUMES + (
        ResourceTemplate(ResourceKind.NETWORK, MONITORING_NETWORK),
        ResourceTemplate(ResourceKind.NETWORK, VALIDATOR_NETWORK, shared=True),
        _DIRECTORY,
    ),
    integration_kinds=(METRICS_INTEGRATION,),
    lifecycle_flows=_flows(
        install=('create_directories', 'copy_configs', 'setup_networking', 'start_services', 'integrate'),
        remove=_REMOVE_FLOW,
        start=_START_FLOW,
        stop=_STOP_FLOW,
        update=_UPDATE_FLOW,
    ),
)

DESCRIPTORS: Mapping[ServiceType, ServiceDescriptor] = MappingProxyType({
    d.type: d for d in (ETHNODE, VALIDATOR, SIGNER, METRICS)
})


# Step criticality keyed on (operation, step). A failing critical step aborts
# the run and marks the instance Failed; a failing non-critical step is
# recorded and the run continues.
STEP_CRITICALITY: Mapping[Tuple[Operation, str], bool] = MappingProxyType({
    (Operation.INSTALL, 'create_directories'): True,
    (Operation.INSTALL, 'copy_configs'): True,
    (Operation.INSTALL, 'setup_networking'): True,
    (Operation.INSTALL, 'connect_to_dependencies'): True,
    (Operation.INSTALL, 'start_services'): True,
    (Operation.INSTALL, 'integrate'): False,
    (Operation.REMOVE, 'stop_services'): True,
    (Operation.REMOVE, 'update_dependents'): False,
    (Operation.REMOVE, 'cleanup_integrations'): False,
    (Operation.REMOVE, 'remove_containers'): True,
    (Operation.REMOVE, 'remove_volumes'): True,
    (Operation.REMOVE, 'remove_networks'): True,
    (Operation.REMOVE, 'remove_directories'): True,
    (Operation.REMOVE, 'unregister'): True,
    (Operation.START, 'ensure_networks'): True,
    (Operation.START, 'start_services'): True,
    (Operation.START, 'health_check'): True,
    (Operation.STOP, 'stop_services'): True,
    (Operation.UPDATE, 'pull_images'): True,
    (Operation.UPDATE, 'recreate_services'): True,
    (Operation.UPDATE, 'health_check'): True,
})


def is_critical(operation, step: str) -> bool:
    """Unknown (operation, step) pairs are treated as critical"""
    return STEP_CRITICALITY.get((Operation(operation), step), True)


def get_descriptor(service_type, descriptors: Optional[Mapping[ServiceType, ServiceDescriptor]] = None) -> ServiceDescriptor:
    table = DESCRIPTORS if descriptors is None else descriptors
    try:
        return table[ServiceType(service_type)]
    except (ValueError, KeyError):
        raise UnknownServiceError(f"Unknown service type: {service_type}") from None


def detect_service_type(name: str) -> Optional[ServiceType]:
    """Guess the type of a legacy service directory from its name"""
    if name.startswith('ethnode'):
        return ServiceType.ETHNODE
    if name in ('monitoring', 'metrics'):
        return ServiceType.METRICS
    if name == 'vero' or name.endswith('validator'):
        return ServiceType.VALIDATOR
    if name == 'web3signer':
        return ServiceType.SIGNER
    return None


def dependents_of(service_type: ServiceType,
                  descriptors: Mapping[ServiceType, ServiceDescriptor] = DESCRIPTORS) -> Dict[ServiceType, ServiceDescriptor]:
    """Descriptors whose dependency_types include ``service_type``"""
    return {t: d for t, d in descriptors.items() if ServiceType(service_type) in d.dependency_types}
