"""
Service Templates - generation of the per-instance .env and compose.yml

Each service type has a built-in template whose values may contain
``{{variable}}`` or ``{{variable|default:value}}`` placeholders. Rendering
deep-copies the template, substitutes the variables and returns the files
to write into the instance directory.
"""
import logging
import re
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .descriptors import MONITORING_NETWORK, SIGNER_NETWORK, VALIDATOR_NETWORK, ServiceType
from .envfile import ENV_FILE, render_env, write_atomic
from .errors import TemplateError
from .runtime import COMPOSE_FILE

logger = logging.getLogger(__name__)

ROLLBACK_FILE = 'compose.rollback.yml'
JWT_FILE = 'jwt/jwtsecret'

EXECUTION_CLIENTS = ('reth', 'nethermind', 'geth', 'besu')
CONSENSUS_CLIENTS = ('lodestar', 'teku', 'lighthouse', 'prysm', 'grandine')
VALIDATOR_CLIENTS = ('vero', 'teku')

DEFAULT_IMAGES = {
    'reth': 'ghcr.io/paradigmxyz/reth:latest',
    'nethermind': 'nethermind/nethermind:latest',
    'geth': 'ethereum/client-go:stable',
    'besu': 'hyperledger/besu:latest',
    'lodestar': 'chainsafe/lodestar:latest',
    'teku': 'consensys/teku:latest',
    'lighthouse': 'sigp/lighthouse:latest',
    'prysm': 'gcr.io/prysmaticlabs/prysm/beacon-chain:stable',
    'grandine': 'sifrai/grandine:stable',
    'vero': 'ghcr.io/serenita-org/vero:latest',
    'web3signer': 'consensys/web3signer:latest',
    'postgres': 'postgres:16-bookworm',
    'prometheus': 'prom/prometheus:latest',
    'grafana': 'grafana/grafana:latest',
    'node-exporter': 'prom/node-exporter:latest',
}

BEACON_API_PORT = 5052
SIGNER_API_PORT = 9000

_JWT_MOUNT = './jwt:/jwt:ro'

EXECUTION_COMMANDS = {
    'reth': ['node', '--chain={{network}}', '--datadir=/data', '--http', '--http.addr=0.0.0.0',
             '--authrpc.addr=0.0.0.0', '--authrpc.port=8551', '--authrpc.jwtsecret=/jwt/jwtsecret',
             '--metrics=0.0.0.0:9001', '--port={{el_p2p_port}}'],
    'nethermind': ['--config={{network}}', '--datadir=/data', '--JsonRpc.Enabled=true',
                   '--JsonRpc.Host=0.0.0.0', '--JsonRpc.EngineHost=0.0.0.0', '--JsonRpc.EnginePort=8551',
                   '--JsonRpc.JwtSecretFile=/jwt/jwtsecret', '--Metrics.Enabled=true',
                   '--Metrics.ExposePort=6060', '--Network.P2PPort={{el_p2p_port}}'],
    'geth': ['--{{network}}', '--datadir=/data', '--http', '--http.addr=0.0.0.0', '--authrpc.addr=0.0.0.0',
             '--authrpc.vhosts=*', '--authrpc.jwtsecret=/jwt/jwtsecret', '--metrics',
             '--metrics.addr=0.0.0.0', '--metrics.port=6060', '--port={{el_p2p_port}}'],
    'besu': ['--network={{network}}', '--data-path=/data', '--rpc-http-enabled', '--rpc-http-host=0.0.0.0',
             '--engine-rpc-port=8551', '--engine-jwt-secret=/jwt/jwtsecret', '--engine-host-allowlist=*',
             '--metrics-enabled', '--metrics-host=0.0.0.0', '--metrics-port=6060',
             '--p2p-port={{el_p2p_port}}'],
}

_ENGINE_URL = 'http://{{name}}-{{el}}:8551'

CONSENSUS_COMMANDS = {
    'lodestar': ['beacon', '--network={{network}}', '--dataDir=/data', f'--execution.urls={_ENGINE_URL}',
                 '--jwt-secret=/jwt/jwtsecret', '--rest', '--rest.address=0.0.0.0', '--rest.port=5052',
                 '--metrics', '--metrics.address=0.0.0.0', '--metrics.port=8008',
                 '--port={{cl_p2p_port}}', '--checkpointSyncUrl={{checkpoint_sync_url}}'],
    'teku': ['--network={{network}}', '--data-path=/data', f'--ee-endpoint={_ENGINE_URL}',
             '--ee-jwt-secret-file=/jwt/jwtsecret', '--rest-api-enabled=true', '--rest-api-interface=0.0.0.0',
             '--rest-api-port=5052', '--rest-api-host-allowlist=*', '--metrics-enabled=true',
             '--metrics-interface=0.0.0.0', '--metrics-port=8008', '--metrics-host-allowlist=*',
             '--p2p-port={{cl_p2p_port}}', '--checkpoint-sync-url={{checkpoint_sync_url}}'],
    'lighthouse': ['lighthouse', 'bn', '--network={{network}}', '--datadir=/data',
                   f'--execution-endpoint={_ENGINE_URL}', '--execution-jwt=/jwt/jwtsecret', '--http',
                   '--http-address=0.0.0.0', '--http-port=5052', '--metrics', '--metrics-address=0.0.0.0',
                   '--metrics-port=5054', '--port={{cl_p2p_port}}',
                   '--checkpoint-sync-url={{checkpoint_sync_url}}'],
    'prysm': ['--{{network}}', '--datadir=/data', f'--execution-endpoint={_ENGINE_URL}',
              '--jwt-secret=/jwt/jwtsecret', '--grpc-gateway-host=0.0.0.0', '--grpc-gateway-port=5052',
              '--monitoring-host=0.0.0.0', '--monitoring-port=8080', '--p2p-tcp-port={{cl_p2p_port}}',
              '--p2p-udp-port={{cl_p2p_port}}', '--checkpoint-sync-url={{checkpoint_sync_url}}',
              '--accept-terms-of-use'],
    'grandine': ['--network={{network}}', '--data-dir=/data', f'--eth1-rpc-urls={_ENGINE_URL}',
                 '--jwt-secret=/jwt/jwtsecret', '--http-address=0.0.0.0', '--http-port=5052', '--metrics',
                 '--metrics-address=0.0.0.0', '--metrics-port=8008', '--libp2p-port={{cl_p2p_port}}',
                 '--checkpoint-sync-url={{checkpoint_sync_url}}'],
}

VALIDATOR_COMMANDS = {
    'vero': ['--network={{network}}', '--beacon-node-urls=${BEACON_NODE_URLS}',
             '--remote-signer-url=${WEB3SIGNER_URL}', '--fee-recipient=${FEE_RECIPIENT}',
             '--graffiti=${GRAFFITI}', '--metrics-address=0.0.0.0', '--metrics-port=9010'],
    'teku': ['validator-client', '--network={{network}}', '--data-path=/data',
             '--beacon-node-api-endpoints=${BEACON_NODE_URLS}',
             '--validators-external-signer-url=${WEB3SIGNER_URL}',
             '--validators-external-signer-public-keys=external-signer',
             '--validators-proposer-default-fee-recipient=${FEE_RECIPIENT}',
             '--validators-graffiti=${GRAFFITI}', '--metrics-enabled=true', '--metrics-interface=0.0.0.0',
             '--metrics-port=8008', '--metrics-host-allowlist=*'],
}


@dataclass
class ServiceTemplate:
    """Built-in template for one service type"""
    service_type: ServiceType
    description: str
    env: Dict[str, str]
    compose: Dict[str, Any]
    version: str = '1.0'


@dataclass
class RenderedService:
    """Files and registry metadata produced for one instance"""
    name: str
    service_type: ServiceType
    env: Dict[str, str]
    compose: Dict[str, Any]
    files: Dict[str, str] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def write(self, directory) -> List[Path]:
        directory = Path(directory)
        header = f"{self.service_type.value} service {self.name}\nGenerated by eth-services; edit with care."
        written = []
        write_atomic(directory / ENV_FILE, render_env(self.env, header))
        written.append(directory / ENV_FILE)
        save_compose(directory / COMPOSE_FILE, self.compose)
        written.append(directory / COMPOSE_FILE)
        for relative, content in self.files.items():
            target = directory / relative
            write_atomic(target, content)
            written.append(target)
        return written


def _external(*networks) -> Dict[str, Any]:
    return {n: {'external': True} for n in networks}


def _builtin_templates() -> Dict[ServiceType, ServiceTemplate]:
    ethnode = ServiceTemplate(
        service_type=ServiceType.ETHNODE,
        description='Execution and consensus client pair',
        env={
            'NETWORK': '{{network}}',
            'EXECUTION_CLIENT': '{{el}}',
            'CONSENSUS_CLIENT': '{{cl}}',
            'EL_IMAGE': '{{el_image}}',
            'CL_IMAGE': '{{cl_image}}',
            'EL_P2P_PORT': '{{el_p2p_port}}',
            'CL_P2P_PORT': '{{cl_p2p_port}}',
        },
        compose={
            'services': {
                'execution': {
                    'image': '${EL_IMAGE}',
                    'container_name': '{{name}}-{{el}}',
                    'restart': 'unless-stopped',
                    'stop_grace_period': '{{el_stop_grace}}',
                    'command': '{{el_command}}',
                    'volumes': ['el-data:/data', _JWT_MOUNT],
                    'ports': ['${EL_P2P_PORT}:${EL_P2P_PORT}/tcp', '${EL_P2P_PORT}:${EL_P2P_PORT}/udp'],
                    'networks': ['{{name}}-net'],
                },
                'consensus': {
                    'image': '${CL_IMAGE}',
                    'container_name': '{{name}}-{{cl}}',
                    'restart': 'unless-stopped',
                    'command': '{{cl_command}}',
                    'volumes': ['cl-data:/data', _JWT_MOUNT],
                    'ports': ['${CL_P2P_PORT}:${CL_P2P_PORT}/tcp', '${CL_P2P_PORT}:${CL_P2P_PORT}/udp'],
                    'depends_on': ['execution'],
                    'networks': ['{{name}}-net'],
                },
            },
            'volumes': {'el-data': {}, 'cl-data': {}},
            'networks': _external('{{name}}-net'),
        },
    )

    validator = ServiceTemplate(
        service_type=ServiceType.VALIDATOR,
        description='Validator client using a remote signer',
        env={
            'NETWORK': '{{network}}',
            'VALIDATOR_CLIENT': '{{client}}',
            'VALIDATOR_IMAGE': '{{image}}',
            'BEACON_NODE_URLS': '',
            'WEB3SIGNER_URL': '',
            'FEE_RECIPIENT': '{{fee_recipient|default:0x0000000000000000000000000000000000000000}}',
            'GRAFFITI': '{{graffiti}}',
        },
        compose={
            'services': {
                'validator': {
                    'image': '${VALIDATOR_IMAGE}',
                    'container_name': '{{name}}',
                    'restart': 'unless-stopped',
                    'command': '{{command}}',
                    'volumes': ['data:/data'],
                    'networks': [VALIDATOR_NETWORK, SIGNER_NETWORK],
                },
            },
            'volumes': {'data': {}},
            'networks': _external(VALIDATOR_NETWORK, SIGNER_NETWORK),
        },
    )

    signer = ServiceTemplate(
        service_type=ServiceType.SIGNER,
        description='Web3signer with postgres slashing protection',
        env={
            'NETWORK': '{{network}}',
            'WEB3SIGNER_IMAGE': '{{image}}',
            'POSTGRES_IMAGE': '{{postgres_image}}',
            'POSTGRES_PASSWORD': '{{postgres_password}}',
        },
        compose={
            'services': {
                'web3signer': {
                    'image': '${WEB3SIGNER_IMAGE}',
                    'container_name': '{{name}}',
                    'restart': 'unless-stopped',
                    'command': [
                        '--http-listen-host=0.0.0.0', f'--http-listen-port={SIGNER_API_PORT}',
                        '--http-host-allowlist=*', '--metrics-enabled=true', '--metrics-host=0.0.0.0',
                        '--metrics-port=9001', '--metrics-host-allowlist=*', 'eth2', '--network={{network}}',
                        '--slashing-protection-db-url=jdbc:postgresql://{{name}}-db/web3signer',
                        '--slashing-protection-db-username=postgres',
                        '--slashing-protection-db-password=${POSTGRES_PASSWORD}',
                        '--key-store-path=/keys',
                    ],
                    'volumes': ['./keys:/keys:ro'],
                    'depends_on': ['db'],
                    'networks': [SIGNER_NETWORK],
                },
                'db': {
                    'image': '${POSTGRES_IMAGE}',
                    'container_name': '{{name}}-db',
                    'restart': 'unless-stopped',
                    'environment': {'POSTGRES_PASSWORD': '${POSTGRES_PASSWORD}', 'POSTGRES_DB': 'web3signer'},
                    'volumes': ['db-data:/var/lib/postgresql/data'],
                    'networks': [SIGNER_NETWORK],
                },
            },
            'volumes': {'db-data': {}},
            'networks': _external(SIGNER_NETWORK),
        },
    )

    metrics = ServiceTemplate(
        service_type=ServiceType.METRICS,
        description='Prometheus, Grafana and node-exporter',
        env={
            'PROMETHEUS_IMAGE': '{{prometheus_image}}',
            'GRAFANA_IMAGE': '{{grafana_image}}',
            'NODE_EXPORTER_IMAGE': '{{node_exporter_image}}',
            'PROMETHEUS_PORT': '{{prometheus_port|default:9090}}',
            'GRAFANA_PORT': '{{grafana_port|default:3000}}',
            'GRAFANA_PASSWORD': '{{grafana_password}}',
        },
        compose={
            'services': {
                'prometheus': {
                    'image': '${PROMETHEUS_IMAGE}',
                    'container_name': '{{name}}-prometheus',
                    'restart': 'unless-stopped',
                    'command': ['--config.file=/etc/prometheus/prometheus.yml',
                                '--storage.tsdb.path=/prometheus', '--web.enable-lifecycle'],
                    'ports': ['127.0.0.1:${PROMETHEUS_PORT}:9090'],
                    'volumes': ['./prometheus.yml:/etc/prometheus/prometheus.yml:ro', 'prometheus-data:/prometheus'],
                    'networks': [MONITORING_NETWORK, VALIDATOR_NETWORK],
                },
                'grafana': {
                    'image': '${GRAFANA_IMAGE}',
                    'container_name': '{{name}}-grafana',
                    'restart': 'unless-stopped',
                    'environment': {'GF_SECURITY_ADMIN_PASSWORD': '${GRAFANA_PASSWORD}'},
                    'ports': ['127.0.0.1:${GRAFANA_PORT}:3000'],
                    'volumes': ['grafana-data:/var/lib/grafana',
                                './grafana/provisioning:/etc/grafana/provisioning:ro',
                                './grafana/dashboards:/var/lib/grafana/dashboards:ro'],
                    'networks': [MONITORING_NETWORK],
                },
                'node-exporter': {
                    'image': '${NODE_EXPORTER_IMAGE}',
                    'container_name': '{{name}}-node-exporter',
                    'restart': 'unless-stopped',
                    'command': ['--path.procfs=/host/proc', '--path.sysfs=/host/sys', '--path.rootfs=/rootfs'],
                    'volumes': ['/proc:/host/proc:ro', '/sys:/host/sys:ro', '/:/rootfs:ro'],
                    'networks': [MONITORING_NETWORK],
                },
            },
            'volumes': {'prometheus-data': {}, 'grafana-data': {}},
            'networks': _external(MONITORING_NETWORK, VALIDATOR_NETWORK),
        },
    )
    return {t.service_type: t for t in (ethnode, validator, signer, metrics)}


class TemplateRenderer:
    """Turns install parameters into the files of a new instance"""

    def __init__(self, templates: Optional[Dict[ServiceType, ServiceTemplate]] = None, ports=None):
        self.templates = templates or _builtin_templates()
        # PortAllocator; without one the client default ports are used as-is
        self.ports = ports

    def render(self, service_type, name: str, params: Optional[Dict[str, Any]] = None) -> RenderedService:
        service_type = ServiceType(service_type)
        template = self.templates.get(service_type)
        if template is None:
            raise TemplateError(f"No template for service type {service_type.value}")

        variables = self.variables_for(service_type, name, params or {})
        missing = validate_template_variables(template, variables)
        if missing:
            raise TemplateError('; '.join(missing))

        env = {k: str(v) for k, v in self._replace_template_variables(_deep_copy(template.env), variables).items()}
        compose = self._replace_template_variables(_deep_copy(template.compose), variables)
        logger.debug(f"Rendered {service_type.value} template for {name}")

        rendered = RenderedService(name=name, service_type=service_type, env=env, compose=compose)
        rendered.metadata = self._metadata(service_type, name, variables)
        if service_type == ServiceType.ETHNODE:
            rendered.files[JWT_FILE] = secrets.token_hex(32) + '\n'
        elif service_type == ServiceType.SIGNER:
            rendered.files['keys/.keep'] = ''
        return rendered

    def variables_for(self, service_type: ServiceType, name: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """Resolve defaults and client choices; raises TemplateError on bad input"""
        network = str(params.get('network', 'mainnet'))
        variables: Dict[str, Any] = {'name': name, 'network': network}

        if service_type == ServiceType.ETHNODE:
            el = _choose(params.get('execution_client', 'reth'), EXECUTION_CLIENTS, 'execution client')
            cl = _choose(params.get('consensus_client', 'lodestar'), CONSENSUS_CLIENTS, 'consensus client')
            variables.update({
                'el': el,
                'cl': cl,
                'el_image': params.get('el_image') or DEFAULT_IMAGES[el],
                'cl_image': params.get('cl_image') or DEFAULT_IMAGES[cl],
                'el_p2p_port': self._host_port(name, 'el_p2p', params.get('el_p2p_port'), 30303),
                'cl_p2p_port': self._host_port(name, 'cl_p2p', params.get('cl_p2p_port'), 9000),
                'checkpoint_sync_url': params.get('checkpoint_sync_url')
                or f"https://{network}.checkpoint.sigp.io",
                'el_stop_grace': f"{stop_timeout_for(el, 30)}s",
            })
            # Commands are substituted as whole lists, not as strings
            variables['el_command'] = self._replace_template_variables(EXECUTION_COMMANDS[el], variables)
            variables['cl_command'] = self._replace_template_variables(CONSENSUS_COMMANDS[cl], variables)
        elif service_type == ServiceType.VALIDATOR:
            client = _choose(params.get('validator_client', 'vero'), VALIDATOR_CLIENTS, 'validator client')
            variables.update({
                'client': client,
                'image': params.get('image') or DEFAULT_IMAGES[client],
                'graffiti': params.get('graffiti', name),
            })
            if params.get('fee_recipient'):
                variables['fee_recipient'] = params['fee_recipient']
            variables['command'] = self._replace_template_variables(VALIDATOR_COMMANDS[client], variables)
        elif service_type == ServiceType.SIGNER:
            variables.update({
                'image': params.get('image') or DEFAULT_IMAGES['web3signer'],
                'postgres_image': params.get('postgres_image') or DEFAULT_IMAGES['postgres'],
                'postgres_password': params.get('postgres_password') or secrets.token_hex(16),
            })
        elif service_type == ServiceType.METRICS:
            variables.update({
                'prometheus_image': params.get('prometheus_image') or DEFAULT_IMAGES['prometheus'],
                'grafana_image': params.get('grafana_image') or DEFAULT_IMAGES['grafana'],
                'node_exporter_image': params.get('node_exporter_image') or DEFAULT_IMAGES['node-exporter'],
                'grafana_password': params.get('grafana_password') or secrets.token_urlsafe(12),
            })
            variables['prometheus_port'] = self._host_port(name, 'prometheus', params.get('prometheus_port'), 9090)
            variables['grafana_port'] = self._host_port(name, 'grafana', params.get('grafana_port'), 3000)
        return variables

    def _host_port(self, name: str, kind: str, requested, default: int) -> int:
        """Explicit port, else a free one from the allocator, else the client default"""
        if requested is not None:
            port = _port(requested)
            return self.ports.claim(name, kind, port) if self.ports is not None else port
        if self.ports is not None:
            return self.ports.allocate(name, kind)
        return default

    def _metadata(self, service_type: ServiceType, name: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {'network': variables['network']}
        if service_type == ServiceType.ETHNODE:
            metadata.update({
                'execution_client': variables['el'],
                'consensus_client': variables['cl'],
                'images': {'execution': variables['el_image'], 'consensus': variables['cl_image']},
                'beacon_url': f"http://{name}-{variables['cl']}:{BEACON_API_PORT}",
                'execution_url': f"http://{name}-{variables['el']}:8545",
                'ports': {'el_p2p': variables['el_p2p_port'], 'cl_p2p': variables['cl_p2p_port']},
            })
        elif service_type == ServiceType.VALIDATOR:
            metadata.update({
                'validator_client': variables['client'],
                'images': {'validator': variables['image']},
                'beacon_nodes': [],
            })
        elif service_type == ServiceType.SIGNER:
            metadata.update({
                'images': {'web3signer': variables['image'], 'db': variables['postgres_image']},
                'signer_url': f"http://{name}:{SIGNER_API_PORT}",
            })
        elif service_type == ServiceType.METRICS:
            metadata.update({
                'images': {
                    'prometheus': variables['prometheus_image'],
                    'grafana': variables['grafana_image'],
                    'node-exporter': variables['node_exporter_image'],
                },
                'prometheus_port': variables['prometheus_port'],
                'grafana_port': variables['grafana_port'],
                'ports': {'prometheus': variables['prometheus_port'], 'grafana': variables['grafana_port']},
            })
        return metadata

    def _replace_template_variables(self, obj: Any, variables: Dict[str, Any]) -> Any:
        """Recursively replace template variables in a template value"""
        if isinstance(obj, dict):
            return {self._replace_string_variables(k, variables): self._replace_template_variables(v, variables)
                    for k, v in obj.items()}
        elif isinstance(obj, list):
            return [self._replace_template_variables(item, variables) for item in obj]
        elif isinstance(obj, str):
            # A value that is exactly one placeholder takes the variable as-is (lists stay lists)
            whole = _WHOLE_VARIABLE.match(obj)
            if whole and whole.group(1) in variables and not isinstance(variables[whole.group(1)], str):
                return _deep_copy(variables[whole.group(1)])
            return self._replace_string_variables(obj, variables)
        return obj

    def _replace_string_variables(self, text: str, variables: Dict[str, Any]) -> str:
        if not isinstance(text, str):
            return text
        result = text
        for var_name, var_value in variables.items():
            pattern = f"{{{{{var_name}}}}}"
            if pattern in result:
                result = result.replace(pattern, str(var_value))

        # {{variable|default:value}}
        for var_name, default_value in _DEFAULT_VARIABLE.findall(result):
            pattern = f"{{{{{var_name}|default:{default_value}}}}}"
            result = result.replace(pattern, str(variables.get(var_name, default_value)))
        return result


_VARIABLE = re.compile(r'\{\{(\w+)(?:\|default:.*?)?\}\}')
_DEFAULT_VARIABLE = re.compile(r'\{\{(\w+)\|default:(.*?)\}\}')
_WHOLE_VARIABLE = re.compile(r'^\{\{(\w+)\}\}$')


def validate_template_variables(template: ServiceTemplate, variables: Dict[str, Any]) -> List[str]:
    """Report placeholders without a value or a default"""
    template_str = yaml.safe_dump({'env': template.env, 'compose': template.compose})
    missing = []
    for var in sorted(set(_VARIABLE.findall(template_str))):
        if var not in variables and f"{{{{{var}|default:" not in template_str:
            missing.append(f"Missing required variable: {var}")
    return missing


def stop_timeout_for(client: str, default: int) -> int:
    """Graceful stop timeout in seconds for a client"""
    return {'nethermind': 180, 'besu': 60}.get(client, default)


def load_compose(path) -> Dict[str, Any]:
    with open(path, 'r') as f:
        document = yaml.safe_load(f) or {}
    if not isinstance(document, dict):
        raise TemplateError(f"{path} is not a compose mapping")
    return document


def save_compose(path, document: Dict[str, Any]):
    write_atomic(path, yaml.safe_dump(document, default_flow_style=False, sort_keys=False))


def add_compose_network(path, network: str, services: Optional[List[str]] = None) -> bool:
    """
    Attach every service (or only ``services``) to an external network.
    Returns True when the file changed.
    """
    document = load_compose(path)
    changed = False
    networks = document.setdefault('networks', {}) or {}
    document['networks'] = networks
    if network not in networks:
        networks[network] = {'external': True}
        changed = True
    for service_name, service in (document.get('services') or {}).items():
        if services is not None and service_name not in services:
            continue
        attached = service.setdefault('networks', [])
        if isinstance(attached, dict):
            if network not in attached:
                attached[network] = {}
                changed = True
        elif network not in attached:
            attached.append(network)
            changed = True
    if changed:
        save_compose(path, document)
        logger.debug(f"Added network {network} to {path}")
    return changed


def remove_compose_network(path, network: str) -> bool:
    """Detach all services from ``network`` and drop its declaration"""
    document = load_compose(path)
    changed = False
    networks = document.get('networks') or {}
    if network in networks:
        del networks[network]
        changed = True
    for service in (document.get('services') or {}).values():
        attached = service.get('networks')
        if attached and network in attached:
            if isinstance(attached, dict):
                del attached[network]
            else:
                attached.remove(network)
            changed = True
    if changed:
        save_compose(path, document)
        logger.debug(f"Removed network {network} from {path}")
    return changed


def compose_networks(path) -> List[str]:
    return sorted((load_compose(path).get('networks') or {}).keys())


def write_rollback_override(directory, images: Dict[str, str]) -> Path:
    """Pin each compose service to a previously running image id"""
    override = {'services': {service: {'image': image} for service, image in sorted(images.items())}}
    path = Path(directory) / ROLLBACK_FILE
    save_compose(path, override)
    return path


def _choose(value, allowed, label: str) -> str:
    value = str(value).lower()
    if value not in allowed:
        raise TemplateError(f"Unsupported {label}: {value} (choose from {', '.join(allowed)})")
    return value


def _port(value) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise TemplateError(f"Invalid port: {value!r}") from None
    if not 0 < port < 65536:
        raise TemplateError(f"Port out of range: {port}")
    return port


def _deep_copy(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {k: _deep_copy(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_deep_copy(item) for item in obj]
    return obj
