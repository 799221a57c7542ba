"""
Shared fixtures: an in-memory docker runtime and an engine wired to a
temporary services root.
"""
import re
from pathlib import Path
from unittest import mock

import pytest
import yaml

from eth_services.config import Settings
from eth_services.descriptors import ResourceKind
from eth_services.envfile import ENV_FILE, read_env
from eth_services.errors import ResourceInUseError, StartupError
from eth_services.orchestrator import LifecycleOrchestrator
from eth_services.registry import ServiceRegistry
from eth_services.runtime import COMPOSE_FILE, ContainerRuntime, ResourceHandle

_ENV_REFERENCE = re.compile(r'\$\{(\w+)\}')


class FakeRuntime(ContainerRuntime):
    """
    Docker stand-in that reads the generated compose files, so tests see
    the same containers, volumes and networks docker would create.
    """

    def __init__(self):
        self.containers = {}
        self.volumes = set()
        self.volume_projects = {}
        self.networks = {}
        self.calls = []
        self.generation = 0
        self.broken_generation = None
        self.fail = {}

    # --- helpers for tests

    def _maybe_fail(self, method):
        self.calls.append(method)
        error = self.fail.get(method)
        if error is not None:
            raise error

    def container_names(self):
        return sorted(self.containers)

    def attached(self, network):
        return sorted(n for n, c in self.containers.items() if network in c['networks'])

    # --- queries

    def list_matching(self, kind, resources):
        kind = ResourceKind(kind)
        pool = {ResourceKind.CONTAINER: self.containers, ResourceKind.VOLUME: self.volumes,
                ResourceKind.NETWORK: self.networks}[kind]
        handles = []
        for name in sorted(pool):
            project = self._project_of(kind, name)
            if any(r.matches(name, project) for r in resources):
                handles.append(ResourceHandle(kind, name, project=project))
        return handles

    def _project_of(self, kind, name):
        if kind == ResourceKind.CONTAINER:
            return self.containers[name]['project']
        if kind == ResourceKind.VOLUME:
            return self.volume_projects.get(name, '')
        return ''

    def host_ports(self):
        return {p for c in self.containers.values() if c['state'] == 'running' for p in c.get('ports', ())}

    def network_exists(self, name):
        return name in self.networks

    def network_users(self, name):
        return self.attached(name)

    def service_states(self, project_dir):
        project = Path(project_dir).name
        states = {}
        for container in self.containers.values():
            if container['project'] != project:
                continue
            state = container['state']
            if state == 'running' and self.broken_generation is not None \
                    and container['image'].endswith(f"#{self.broken_generation}"):
                state = 'restarting'
            states[container['service']] = state
        return states

    def service_images(self, project_dir):
        project = Path(project_dir).name
        return {c['service']: c['image'] for c in self.containers.values() if c['project'] == project}

    # --- mutations

    def stop(self, handles, timeout):
        self._maybe_fail('stop')
        stopped = []
        for handle in handles:
            if handle.name in self.containers:
                self.containers[handle.name]['state'] = 'exited'
                self.containers[handle.name]['stop_timeout'] = timeout
                stopped.append(handle.name)
        return stopped

    def remove_containers(self, handles):
        self._maybe_fail('remove_containers')
        return [h.name for h in handles if self.containers.pop(h.name, None) is not None]

    def remove_volumes(self, handles):
        self._maybe_fail('remove_volumes')
        removed = [h.name for h in handles if h.name in self.volumes]
        self.volumes -= set(removed)
        for name in removed:
            self.volume_projects.pop(name, None)
        return removed

    def remove_network(self, name):
        self._maybe_fail('remove_network')
        if name not in self.networks:
            return False
        users = [n for n in self.attached(name) if self.containers[n]['state'] == 'running']
        if users:
            raise ResourceInUseError(name, users)
        del self.networks[name]
        return True

    def disconnect_all(self, network):
        users = self.attached(network)
        for name in users:
            self.containers[name]['networks'].discard(network)
        return users

    def create_network(self, name):
        self._maybe_fail('create_network')
        if name in self.networks:
            return False
        self.networks[name] = True
        return True

    def up(self, project_dir, recreate=False, extra_files=()):
        self._maybe_fail('up')
        project_dir = Path(project_dir)
        project = project_dir.name
        with open(project_dir / COMPOSE_FILE) as f:
            compose = yaml.safe_load(f)
        env = read_env(project_dir / ENV_FILE) if (project_dir / ENV_FILE).exists() else {}
        pinned = {}
        for extra in extra_files:
            with open(extra) as f:
                for service, override in (yaml.safe_load(f).get('services') or {}).items():
                    pinned[service] = override['image']

        for network in compose.get('networks') or {}:
            if network not in self.networks:
                raise StartupError(['docker', 'compose', 'up'], 1, f"network {network} declared as external, but could not be found")

        for service, definition in compose['services'].items():
            name = definition.get('container_name', f"{project}-{service}-1")
            networks = set(definition.get('networks') or [])
            existing = self.containers.get(name)
            # compose only recreates running containers whose configuration changed
            if existing and not recreate and existing['state'] == 'running' and existing['networks'] == networks:
                continue
            ports = _host_ports(definition, env)
            taken = self._published_elsewhere(project, ports)
            if taken:
                raise StartupError(['docker', 'compose', 'up'], 1,
                                   f"Bind for 0.0.0.0:{min(taken)} failed: port is already allocated")
            image = pinned.get(service) or _ENV_REFERENCE.sub(lambda m: env.get(m.group(1), ''), definition['image']) \
                + f"#{self.generation}"
            self.containers[name] = {
                'project': project,
                'service': service,
                'state': 'running',
                'image': image,
                'networks': networks,
                'ports': ports,
            }
        for volume in compose.get('volumes') or {}:
            self.volumes.add(f"{project}_{volume}")
            self.volume_projects[f"{project}_{volume}"] = project

    def _published_elsewhere(self, project, ports):
        published = {p for c in self.containers.values()
                     if c['project'] != project and c['state'] == 'running' for p in c.get('ports', ())}
        return ports & published

    def pull(self, project_dir):
        self._maybe_fail('pull')
        self.generation += 1

    def restart(self, project_dir, service=None):
        self._maybe_fail('restart')


def _host_ports(definition, env):
    """Host side of the published ports, after ${VAR} substitution"""
    ports = set()
    for entry in definition.get('ports') or []:
        mapping = _ENV_REFERENCE.sub(lambda m: env.get(m.group(1), ''), str(entry)).split('/')[0]
        parts = mapping.split(':')
        if len(parts) >= 2 and parts[-2].isdigit():
            ports.add(int(parts[-2]))
    return ports


@pytest.fixture(autouse=True)
def host_ports_free():
    """Only the registry and the fake runtime decide which ports are taken"""
    with mock.patch('eth_services.ports.port_is_bindable', return_value=True) as bindable:
        yield bindable


@pytest.fixture(autouse=True)
def prometheus_reload():
    """Keep tests offline: every prometheus reload call succeeds"""
    with mock.patch('eth_services.metrics_sync.requests.post') as post:
        post.return_value = mock.Mock(status_code=200)
        yield post


@pytest.fixture(autouse=True)
def grafana_reload():
    """Keep tests offline: every grafana dashboard reload succeeds"""
    with mock.patch('eth_services.dashboards.requests.Session') as session_class:
        post = session_class.return_value.__enter__.return_value.post
        post.return_value = mock.Mock(status_code=200)
        yield post


@pytest.fixture
def settings(tmp_path):
    services_root = tmp_path / 'services'
    services_root.mkdir()
    return Settings(home=tmp_path / 'home', services_root=services_root,
                    health_check_retries=2, health_check_interval=0)


@pytest.fixture
def registry(settings):
    return ServiceRegistry(settings.registry_file)


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def orchestrator(registry, runtime, settings):
    return LifecycleOrchestrator(registry, runtime, settings)
