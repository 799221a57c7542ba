"""
Metrics Sync - keeps every metrics stack's prometheus.yml in line with the
registry.

The scrape configuration is always regenerated as a whole from the current
registry snapshot. It is written to a staging file next to the active one,
validated, and only then moved over the active file with os.replace before
prometheus is asked to reload. A staging file that fails validation is
deleted and the active configuration is left exactly as it was.

The grafana dashboards of each stack are regenerated in the same pass
(see dashboards.py) and grafana reloads them only when a file changed.
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
import yaml

from .dashboards import GrafanaDashboards
from .descriptors import DESCRIPTORS, METRICS_INTEGRATION, ServiceType
from .envfile import write_atomic
from .errors import ContainerRuntimeError, IntegrationError, TemplateError
from .integrations import INACTIVE_STATUSES, IntegrationAdapter
from .registry import ServiceInstance, ServiceStatus
from .runtime import COMPOSE_FILE
from .templates import add_compose_network, remove_compose_network

logger = logging.getLogger(__name__)

PROMETHEUS_CONFIG = 'prometheus.yml'
STAGING_SUFFIX = '.staging'
SCRAPE_INTERVAL = '15s'

# Metrics port per client container
METRICS_PORTS = {
    'nethermind': 6060,
    'geth': 6060,
    'besu': 6060,
    'reth': 9001,
    'lodestar': 8008,
    'teku': 8008,
    'grandine': 8008,
    'lighthouse': 5054,
    'prysm': 8080,
    'vero': 9010,
    'web3signer': 9001,
}


def _job(job_name: str, target: str, **labels) -> Dict[str, Any]:
    static_config: Dict[str, Any] = {'targets': [target]}
    static_config['labels'] = {'instance': target, **labels}
    return {'job_name': job_name, 'static_configs': [static_config]}


def validate_config(path) -> List[str]:
    """Structural checks prometheus would otherwise reject at reload time"""
    try:
        with open(path, 'r') as f:
            document = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        return [f"unreadable: {e}"]

    if not isinstance(document, dict):
        return ['top level is not a mapping']
    errors = []
    if not isinstance(document.get('global'), dict):
        errors.append("missing 'global' section")
    jobs = document.get('scrape_configs')
    if not isinstance(jobs, list) or not jobs:
        errors.append("missing 'scrape_configs'")
        return errors

    seen = set()
    for index, job in enumerate(jobs):
        name = job.get('job_name') if isinstance(job, dict) else None
        if not name:
            errors.append(f"scrape_configs[{index}] has no job_name")
            continue
        if name in seen:
            errors.append(f"duplicate job_name {name}")
        seen.add(name)
        static_configs = job.get('static_configs') or []
        if not static_configs or not all(isinstance(s, dict) and s.get('targets') for s in static_configs):
            errors.append(f"job {name} has no targets")
    return errors


class MetricsSyncAdapter(IntegrationAdapter):
    """Regenerates scrape targets and network attachments of metrics stacks"""
    kind = METRICS_INTEGRATION

    def __init__(self, registry, runtime, settings, descriptors=DESCRIPTORS):
        super().__init__(registry, runtime, settings, descriptors)
        self.dashboards = GrafanaDashboards(registry, runtime, settings, metrics_ports=METRICS_PORTS)

    # --------------------------------------------------------------- hooks

    def on_after_install(self, instance: ServiceInstance) -> List[str]:
        if instance.type == ServiceType.METRICS:
            return []
        return self.sync(join=self.isolated_networks(instance))

    def on_before_remove(self, instance: ServiceInstance) -> List[str]:
        if instance.type == ServiceType.METRICS:
            return []
        return self.sync(exclude=instance.name, leave=self.isolated_networks(instance))

    # ------------------------------------------------------------ building

    def build_config(self, exclude: Optional[str] = None) -> Dict[str, Any]:
        """Complete prometheus configuration for the current registry snapshot"""
        scrape_configs = [_job('prometheus', 'localhost:9090')]
        instances = [i for i in self.registry.list()
                     if i.name != exclude and i.status not in INACTIVE_STATUSES]

        for instance in instances:
            scrape_configs.extend(self._jobs_for(instance))

        return {
            'global': {'scrape_interval': SCRAPE_INTERVAL, 'evaluation_interval': SCRAPE_INTERVAL},
            'scrape_configs': scrape_configs,
        }

    def _jobs_for(self, instance: ServiceInstance) -> List[Dict[str, Any]]:
        metadata = instance.metadata
        name = instance.name
        if instance.type == ServiceType.METRICS:
            return [_job(f"{name}-node-exporter", f"{name}-node-exporter:9100")]
        if instance.type == ServiceType.ETHNODE:
            jobs = []
            for role in ('execution_client', 'consensus_client'):
                client = metadata.get(role)
                if client in METRICS_PORTS:
                    container = f"{name}-{client}"
                    jobs.append(_job(container, f"{container}:{METRICS_PORTS[client]}", node=name))
                else:
                    logger.debug(f"No {role} recorded for {name}, skipping its scrape job")
            return jobs
        if instance.type == ServiceType.VALIDATOR:
            client = metadata.get('validator_client')
            if client in METRICS_PORTS:
                return [_job(name, f"{name}:{METRICS_PORTS[client]}")]
            return []
        if instance.type == ServiceType.SIGNER:
            return [_job(name, f"{name}:{METRICS_PORTS['web3signer']}")]
        return []

    def ethnode_networks(self, exclude: Optional[str] = None) -> List[str]:
        networks = []
        for instance in self.registry.list(ServiceType.ETHNODE):
            if instance.name != exclude and instance.status not in INACTIVE_STATUSES:
                networks.extend(self.isolated_networks(instance))
        return networks

    def bootstrap(self, metrics_name: str, directory) -> List[str]:
        """Initial prometheus.yml, grafana provisioning and network attachments for a new metrics stack"""
        directory = Path(directory)
        write_atomic(directory / PROMETHEUS_CONFIG,
                     yaml.safe_dump(self.build_config(), default_flow_style=False, sort_keys=False))
        self.dashboards.write_provisioning(metrics_name, directory)
        self.dashboards.sync(directory)
        joined = []
        for network in self.ethnode_networks():
            if add_compose_network(directory / COMPOSE_FILE, network, services=['prometheus']):
                joined.append(network)
        logger.info(f"Prepared prometheus configuration for {metrics_name}")
        return joined

    # ------------------------------------------------------------- syncing

    def sync(self, exclude: Optional[str] = None, join=(), leave=()) -> List[str]:
        """
        Regenerate prometheus.yml and the grafana dashboards of every metrics
        stack and reload both.

        Args:
            exclude: Instance to leave out even if still registered
            join: Networks prometheus must be attached to
            leave: Networks prometheus must be detached from

        Returns:
            Warnings for this run
        """
        warnings = []
        stacks = [i for i in self.registry.list(ServiceType.METRICS)
                  if i.name != exclude and i.status not in INACTIVE_STATUSES]
        if not stacks:
            logger.debug('No metrics stack installed, nothing to sync')
            return warnings

        config = self.build_config(exclude=exclude)
        for stack in stacks:
            directory = self.instance_dir(stack.name)
            self.apply_config(directory, config)
            dashboards_changed = self.dashboards.sync(directory, exclude=exclude)
            networks_changed = self._update_networks(directory, join, leave)
            if stack.status != ServiceStatus.RUNNING:
                continue
            if networks_changed:
                try:
                    self.runtime.up(directory)
                except ContainerRuntimeError as e:
                    raise IntegrationError(f"Cannot reattach {stack.name} networks: {e}") from e
            else:
                warnings.extend(self.reload(stack, directory))
            if dashboards_changed:
                warnings.extend(self.dashboards.reload(stack, directory))
        return warnings

    def apply_config(self, directory, config: Dict[str, Any]) -> Path:
        """Stage, validate and atomically activate a prometheus configuration"""
        directory = Path(directory)
        active = directory / PROMETHEUS_CONFIG
        staging = directory / (PROMETHEUS_CONFIG + STAGING_SUFFIX)

        write_atomic(staging, yaml.safe_dump(config, default_flow_style=False, sort_keys=False))
        errors = validate_config(staging)
        if errors:
            staging.unlink()
            raise IntegrationError(f"Generated prometheus configuration is invalid: {'; '.join(errors)}")
        os.replace(staging, active)
        logger.info(f"Updated {active} ({len(config['scrape_configs'])} scrape jobs)")
        return active

    def reload(self, stack: ServiceInstance, directory) -> List[str]:
        """Ask prometheus to reload; restart its container if the API refuses"""
        port = stack.metadata.get('prometheus_port')
        base_url = f"http://localhost:{port}" if port else self.settings.prometheus_url
        try:
            response = requests.post(f"{base_url.rstrip('/')}/-/reload", timeout=self.settings.reload_timeout)
            if response.status_code == 200:
                logger.debug(f"Prometheus of {stack.name} reloaded")
                return []
            reason = f"HTTP {response.status_code}"
        except requests.exceptions.RequestException as e:
            reason = str(e)

        logger.warning(f"Prometheus reload failed for {stack.name} ({reason}), restarting container")
        try:
            self.runtime.restart(directory, 'prometheus')
        except ContainerRuntimeError as e:
            raise IntegrationError(f"Prometheus of {stack.name} could not be reloaded: {e}") from e
        return [f"{stack.name}: prometheus restarted instead of reloaded ({reason})"]

    def _update_networks(self, directory: Path, join, leave) -> bool:
        compose_path = directory / COMPOSE_FILE
        if not compose_path.exists():
            return False
        changed = False
        try:
            for network in join:
                changed |= add_compose_network(compose_path, network, services=['prometheus'])
            for network in leave:
                changed |= remove_compose_network(compose_path, network)
        except (OSError, TemplateError) as e:
            raise IntegrationError(f"Cannot update {compose_path}: {e}") from e
        return changed
