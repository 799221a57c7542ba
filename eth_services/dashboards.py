"""
Grafana Dashboards - provisioning files and per-client dashboards of a
metrics stack.

Like the scrape configuration, the dashboard directory is regenerated as a
whole from the registry: every active client gets one dashboard file named
after its scrape job, and files of clients that left the registry are
deleted. Grafana is then asked to reload its dashboard provisioning; when
the API refuses, the grafana container is restarted instead.
"""
import hashlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
import yaml

from .descriptors import ServiceType
from .envfile import ENV_FILE, read_env, write_atomic
from .errors import ContainerRuntimeError, IntegrationError
from .integrations import INACTIVE_STATUSES
from .registry import ServiceInstance

logger = logging.getLogger(__name__)

DASHBOARDS_DIR = Path('grafana') / 'dashboards'
PROVISIONING_DIR = Path('grafana') / 'provisioning'
CONTAINER_DASHBOARDS_PATH = '/var/lib/grafana/dashboards'
DATASOURCE_UID = 'prometheus'
RELOAD_PATH = '/api/admin/provisioning/dashboards/reload'

# client -> dashboard, per role
CLIENT_DASHBOARDS = {
    'execution': {
        'reth': 'reth-overview',
        'besu': 'besu-overview',
        'nethermind': 'nethermind-overview',
        'geth': 'geth-overview',
    },
    'consensus': {
        'teku': 'teku-overview',
        'lighthouse': 'lighthouse-overview',
        'grandine': 'grandine-overview',
        'lodestar': 'lodestar-summary',
        'prysm': 'prysm-overview',
    },
    'validator': {
        'vero': 'vero-detailed',
        'teku': 'teku-validator-overview',
    },
    'monitoring': {
        'node-exporter': 'node-exporter-full',
    },
}


@dataclass
class DashboardSource:
    """One dashboard to provision: which scrape job it shows and how it is titled"""
    job: str
    dashboard: str
    role: str
    client: str
    node: str
    target: str

    @property
    def filename(self) -> str:
        return f"{self.job}.json"

    @property
    def title(self) -> str:
        return f"{self.node}-{self.client.capitalize()}" if self.node != self.job else self.job

    @property
    def uid(self) -> str:
        return hashlib.md5(self.job.encode()).hexdigest()[:9]

    @property
    def tags(self) -> List[str]:
        return [self.node, self.role, self.client]


def _panels(source: DashboardSource) -> List[Dict[str, Any]]:
    selector = f'{{job="{source.job}"}}'
    queries = [
        ('Target up', f'up{selector}'),
        ('CPU usage', f'rate(process_cpu_seconds_total{selector}[5m])'),
        ('Resident memory', f'process_resident_memory_bytes{selector}'),
    ]
    if source.role == 'consensus':
        queries += [('Head slot', f'beacon_head_slot{selector}'), ('Peers', f'libp2p_peers{selector}')]
    elif source.role == 'execution':
        queries += [('Chain head', f'chain_head_block{selector}')]
    elif source.role == 'monitoring':
        queries = [('Load', f'node_load1{selector}'),
                   ('Available memory', f'node_memory_MemAvailable_bytes{selector}'),
                   ('Free disk', f'node_filesystem_avail_bytes{{job="{source.job}",mountpoint="/rootfs"}}')]

    panels = []
    for index, (title, expr) in enumerate(queries):
        panels.append({
            'id': index + 1,
            'type': 'timeseries',
            'title': title,
            'datasource': {'type': 'prometheus', 'uid': DATASOURCE_UID},
            'gridPos': {'h': 8, 'w': 12, 'x': (index % 2) * 12, 'y': (index // 2) * 8},
            'targets': [{'expr': expr, 'refId': 'A'}],
        })
    return panels


def builtin_dashboard(source: DashboardSource) -> Dict[str, Any]:
    return {
        'uid': source.uid,
        'title': source.title,
        'tags': source.tags,
        'timezone': 'browser',
        'schemaVersion': 39,
        'refresh': '30s',
        'time': {'from': 'now-6h', 'to': 'now'},
        'panels': _panels(source),
    }


def sources_for(instance: ServiceInstance, metrics_ports: Dict[str, int]) -> List[DashboardSource]:
    """Dashboards an instance contributes, one per client with a known dashboard"""
    name = instance.name
    metadata = instance.metadata
    if instance.type == ServiceType.ETHNODE:
        sources = []
        for role, key in (('execution', 'execution_client'), ('consensus', 'consensus_client')):
            client = metadata.get(key)
            if client in CLIENT_DASHBOARDS[role]:
                job = f"{name}-{client}"
                sources.append(DashboardSource(job, CLIENT_DASHBOARDS[role][client], role, client, name,
                                               f"{job}:{metrics_ports.get(client, 8008)}"))
        return sources
    if instance.type == ServiceType.VALIDATOR:
        client = metadata.get('validator_client')
        if client in CLIENT_DASHBOARDS['validator']:
            return [DashboardSource(name, CLIENT_DASHBOARDS['validator'][client], 'validator', client, name,
                                    f"{name}:{metrics_ports.get(client, 8008)}")]
        return []
    if instance.type == ServiceType.METRICS:
        job = f"{name}-node-exporter"
        return [DashboardSource(job, CLIENT_DASHBOARDS['monitoring']['node-exporter'], 'monitoring',
                                'node-exporter', name, f"{job}:9100")]
    return []


class GrafanaDashboards:
    """Keeps the dashboards of every metrics stack in line with the registry"""

    def __init__(self, registry, runtime, settings, metrics_ports: Optional[Dict[str, int]] = None):
        self.registry = registry
        self.runtime = runtime
        self.settings = settings
        self.metrics_ports = metrics_ports or {}

    # ------------------------------------------------------------ building

    def build(self, exclude: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
        """Dashboard documents by file name for the current registry snapshot"""
        dashboards = {}
        for instance in self.registry.list():
            if instance.name == exclude or instance.status in INACTIVE_STATUSES:
                continue
            for source in sources_for(instance, self.metrics_ports):
                dashboards[source.filename] = self.render(source)
        return dashboards

    def render(self, source: DashboardSource) -> Dict[str, Any]:
        """
        The dashboard for ``source``. A ``{dashboard}.json`` file in the
        dashboard templates directory replaces the built-in panels; its
        ``${DS_PROMETHEUS}`` and ``$instance`` placeholders are filled in.
        """
        template = Path(self.settings.dashboard_templates_dir) / f"{source.dashboard}.json"
        if not template.exists():
            return builtin_dashboard(source)
        try:
            text = template.read_text()
        except OSError as e:
            logger.warning(f"Cannot read {template}, using the built-in dashboard: {e}")
            return builtin_dashboard(source)
        text = text.replace('${DS_PROMETHEUS}', DATASOURCE_UID)
        text = text.replace('$instance', source.target).replace('$system', source.target)
        try:
            dashboard = json.loads(text)
        except ValueError as e:
            logger.warning(f"{template} is not valid JSON, using the built-in dashboard: {e}")
            return builtin_dashboard(source)
        if not isinstance(dashboard, dict):
            logger.warning(f"{template} does not hold a dashboard object, using the built-in dashboard")
            return builtin_dashboard(source)
        dashboard.pop('id', None)
        dashboard.update({'uid': source.uid, 'title': source.title, 'tags': source.tags})
        return dashboard

    # ------------------------------------------------------------ writing

    def write_provisioning(self, stack_name: str, directory) -> None:
        """Dashboard provider and Prometheus datasource files of a metrics stack"""
        provisioning = Path(directory) / PROVISIONING_DIR
        providers = {
            'apiVersion': 1,
            'providers': [{
                'name': 'eth-services',
                'orgId': 1,
                'folder': 'Ethereum',
                'type': 'file',
                'disableDeletion': False,
                'allowUiUpdates': False,
                'updateIntervalSeconds': 30,
                'options': {'path': CONTAINER_DASHBOARDS_PATH},
            }],
        }
        datasources = {
            'apiVersion': 1,
            'datasources': [{
                'name': 'Prometheus',
                'uid': DATASOURCE_UID,
                'type': 'prometheus',
                'access': 'proxy',
                'url': f"http://{stack_name}-prometheus:9090",
                'isDefault': True,
            }],
        }
        write_atomic(provisioning / 'dashboards' / 'eth-services.yml',
                     yaml.safe_dump(providers, default_flow_style=False, sort_keys=False))
        write_atomic(provisioning / 'datasources' / 'prometheus.yml',
                     yaml.safe_dump(datasources, default_flow_style=False, sort_keys=False))

    def sync(self, directory, exclude: Optional[str] = None) -> bool:
        """
        Regenerate the dashboard directory of one metrics stack.

        Returns:
            True if any dashboard file was added, changed or deleted
        """
        target = Path(directory) / DASHBOARDS_DIR
        target.mkdir(parents=True, exist_ok=True)
        wanted = self.build(exclude=exclude)
        changed = False
        for filename, dashboard in sorted(wanted.items()):
            path = target / filename
            content = json.dumps(dashboard, indent=2, sort_keys=True) + '\n'
            if path.exists() and path.read_text() == content:
                continue
            write_atomic(path, content)
            changed = True
            logger.info(f"Provisioned dashboard {path.name}")
        for path in sorted(target.glob('*.json')):
            if path.name not in wanted:
                path.unlink()
                changed = True
                logger.info(f"Removed dashboard {path.name}")
        return changed

    # ----------------------------------------------------------- reloading

    def reload(self, stack: ServiceInstance, directory) -> List[str]:
        """Ask grafana to re-read its dashboards; restart its container if the API refuses"""
        port = stack.metadata.get('grafana_port') or 3000
        try:
            password = read_env(Path(directory) / ENV_FILE).get('GRAFANA_PASSWORD', '')
        except OSError as e:
            logger.debug(f"Cannot read grafana credentials of {stack.name}: {e}")
            password = ''

        try:
            with requests.Session() as session:
                session.auth = ('admin', password)
                response = session.post(f"http://localhost:{port}{RELOAD_PATH}",
                                        timeout=self.settings.reload_timeout)
            if response.status_code == 200:
                logger.debug(f"Grafana dashboards of {stack.name} reloaded")
                return []
            reason = f"HTTP {response.status_code}"
        except requests.exceptions.RequestException as e:
            reason = str(e)

        logger.warning(f"Grafana reload failed for {stack.name} ({reason}), restarting container")
        try:
            self.runtime.restart(directory, 'grafana')
        except ContainerRuntimeError as e:
            raise IntegrationError(f"Grafana of {stack.name} could not be reloaded: {e}") from e
        return [f"{stack.name}: grafana restarted instead of reloaded ({reason})"]
