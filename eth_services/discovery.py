"""
Discovery Module - adopts service directories created outside the registry

Scans the services root for directories that look like one of the known
service types and records them in the registry, so services installed by
earlier tooling can be managed by the lifecycle engine. Discovery only
runs on explicit request; the registry stays the source of truth.
"""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .descriptors import DESCRIPTORS, ResourceKind, ServiceType, detect_service_type, get_descriptor
from .envfile import ENV_FILE, read_env, split_endpoints
from .errors import InvalidNameError
from .integrations import endpoint_belongs_to, endpoint_hosts, hosts_for
from .locator import NAME_PATTERN, resolve
from .registry import ServiceInstance, ServiceStatus
from .templates import CONSENSUS_CLIENTS, EXECUTION_CLIENTS, VALIDATOR_CLIENTS

logger = logging.getLogger(__name__)

COMPOSE_NAMES = ('compose.yml', 'compose.yaml', 'docker-compose.yml', 'docker-compose.yaml')
PORT_ENV_KEYS = {'el_p2p': 'EL_P2P_PORT', 'cl_p2p': 'CL_P2P_PORT', 'prometheus': 'PROMETHEUS_PORT', 'grafana': 'GRAFANA_PORT'}


@dataclass
class DiscoveredService:
    name: str
    service_type: Optional[ServiceType]
    directory: Path
    status: ServiceStatus = ServiceStatus.STOPPED
    metadata: Dict[str, Any] = field(default_factory=dict)
    dependencies: List[str] = field(default_factory=list)
    adopted: bool = False
    reason: Optional[str] = None


class ServiceDiscovery:
    """Finds legacy service directories and registers them"""

    def __init__(self, registry, runtime, settings, descriptors=DESCRIPTORS):
        self.registry = registry
        self.runtime = runtime
        self.settings = settings
        self.descriptors = descriptors

    def discover(self, adopt: bool = True) -> List[DiscoveredService]:
        """
        Scan the services root.

        Args:
            adopt: Register every recognised, unregistered service

        Returns:
            One entry per candidate directory, adopted or with a reason why not
        """
        root = Path(self.settings.services_root)
        logger.info(f"Scanning {root} for service directories")
        found = [self._inspect(d) for d in sorted(root.iterdir()) if self._is_candidate(d)]

        known_ethnodes = {s.name: self._legacy_hosts(s) for s in found if s.service_type == ServiceType.ETHNODE}
        known_ethnodes.update({i.name: endpoint_hosts(i) for i in self.registry.list(ServiceType.ETHNODE)})
        known_signers = {s.name: self._legacy_hosts(s) for s in found if s.service_type == ServiceType.SIGNER}
        known_signers.update({i.name: endpoint_hosts(i) for i in self.registry.list(ServiceType.SIGNER)})

        for service in found:
            if service.reason:
                continue
            if service.service_type == ServiceType.VALIDATOR:
                service.dependencies = self._validator_dependencies(service, known_ethnodes, known_signers)
            if self.registry.get(service.name) is not None:
                service.reason = 'already registered'
                continue
            if adopt:
                self._adopt(service)
        return found

    def _is_candidate(self, directory: Path) -> bool:
        if not directory.is_dir() or directory.name.startswith('.'):
            return False
        return (directory / ENV_FILE).exists() or any((directory / n).exists() for n in COMPOSE_NAMES)

    def _inspect(self, directory: Path) -> DiscoveredService:
        service = DiscoveredService(name=directory.name, service_type=None, directory=directory)
        if not NAME_PATTERN.match(directory.name):
            service.reason = str(InvalidNameError(directory.name))
            return service

        env = {}
        if (directory / ENV_FILE).exists():
            try:
                env = read_env(directory / ENV_FILE)
            except OSError as e:
                logger.debug(f"Cannot read {directory / ENV_FILE}: {e}")

        service.service_type = detect_service_type(directory.name) or self._type_from_env(env, directory)
        if service.service_type is None:
            service.reason = 'unrecognised service type'
            return service

        service.metadata = self._metadata(service.service_type, directory.name, env)
        service.status = self._runtime_status(service)
        return service

    @staticmethod
    def _type_from_env(env: Dict[str, str], directory: Path) -> Optional[ServiceType]:
        if 'EXECUTION_CLIENT' in env or 'EL_IMAGE' in env:
            return ServiceType.ETHNODE
        if 'BEACON_NODE_URLS' in env or 'VALIDATOR_CLIENT' in env:
            return ServiceType.VALIDATOR
        if 'WEB3SIGNER_IMAGE' in env or 'WEB3SIGNER_VERSION' in env:
            return ServiceType.SIGNER
        if (directory / 'prometheus.yml').exists():
            return ServiceType.METRICS
        return None

    @staticmethod
    def _metadata(service_type: ServiceType, name: str, env: Dict[str, str]) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {'adopted': True}
        if env.get('NETWORK'):
            metadata['network'] = env['NETWORK']
        # Legacy layouts list the client compose files, e.g. COMPOSE_FILE=reth.yml:lodestar-cl-only.yml
        hints = ' '.join([env.get('COMPOSE_FILE', ''), env.get('EXECUTION_CLIENT', ''),
                          env.get('CONSENSUS_CLIENT', ''), env.get('VALIDATOR_CLIENT', '')]).lower()

        if service_type == ServiceType.ETHNODE:
            el = next((c for c in EXECUTION_CLIENTS if c in hints), None)
            cl = next((c for c in CONSENSUS_CLIENTS if c in hints), None)
            metadata.update({'execution_client': el, 'consensus_client': cl})
            if cl:
                metadata['beacon_url'] = f"http://{name}-{cl}:5052"
        elif service_type == ServiceType.VALIDATOR:
            client = 'vero' if name == 'vero' else next((c for c in VALIDATOR_CLIENTS if c in hints), None)
            metadata['validator_client'] = client
        elif service_type == ServiceType.SIGNER:
            metadata['signer_url'] = f"http://{name}:9000"

        ports = {}
        for kind, key in PORT_ENV_KEYS.items():
            if env.get(key, '').isdigit():
                ports[kind] = int(env[key])
        if ports:
            metadata['ports'] = ports
        return metadata

    @staticmethod
    def _legacy_hosts(service: DiscoveredService):
        """Endpoint hosts of a discovered service; unknown clients allow any client container name"""
        hosts = hosts_for(service.name, service.metadata)
        if service.service_type == ServiceType.ETHNODE and not service.metadata.get('consensus_client'):
            hosts.update(f"{service.name}-{c}".lower() for c in CONSENSUS_CLIENTS + EXECUTION_CLIENTS)
        return hosts

    def _validator_dependencies(self, service: DiscoveredService, ethnodes, signers) -> List[str]:
        try:
            env = read_env(service.directory / ENV_FILE)
        except OSError:
            return []
        dependencies = []
        beacon_nodes = []
        for url in split_endpoints(env.get('BEACON_NODE_URLS', '')):
            for ethnode in sorted(ethnodes):
                if endpoint_belongs_to(url, ethnodes[ethnode]) and ethnode not in beacon_nodes:
                    beacon_nodes.append(ethnode)
        dependencies.extend(beacon_nodes)
        service.metadata['beacon_nodes'] = beacon_nodes
        signer_url = env.get('WEB3SIGNER_URL', '')
        for signer in sorted(signers):
            if signer_url and endpoint_belongs_to(signer_url, signers[signer]):
                dependencies.append(signer)
                service.metadata['signer'] = signer
        return dependencies

    def _runtime_status(self, service: DiscoveredService) -> ServiceStatus:
        descriptor = get_descriptor(service.service_type, self.descriptors)
        resources = resolve(service.name, descriptor, self.settings.services_root)
        containers = self.runtime.list_matching(ResourceKind.CONTAINER, resources.containers)
        return ServiceStatus.RUNNING if containers else ServiceStatus.STOPPED

    def _adopt(self, service: DiscoveredService):
        descriptor = get_descriptor(service.service_type, self.descriptors)
        resources = resolve(service.name, descriptor, self.settings.services_root)
        self.registry.upsert(ServiceInstance(
            name=service.name,
            type=service.service_type,
            status=service.status,
            metadata=service.metadata,
            dependencies=service.dependencies,
            resources=resources.identifiers(),
        ))
        service.adopted = True
        logger.info(f"Adopted {service.service_type.value} service {service.name} ({service.status.value})")
