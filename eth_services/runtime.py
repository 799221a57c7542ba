"""
Container Runtime Adapter - the only place that talks to docker.

Every call is an argv list handed to subprocess.run (never a shell string),
and every docker failure is turned into a typed exception so lifecycle
steps can reason about outcomes instead of parsing text. Removals treat
"already absent" as success so retried runs converge.
"""
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Set

from .descriptors import ResourceKind
from .errors import (ResourceInUseError, RuntimeCommandError, RuntimeUnavailableError,
                     StartupError)

logger = logging.getLogger(__name__)

COMPOSE_FILE = 'compose.yml'
PROJECT_LABEL = 'com.docker.compose.project'

_ABSENT_MARKERS = ('no such container', 'no such volume', 'no such network', 'not found')
_DAEMON_MARKERS = ('cannot connect to the docker daemon', 'is the docker daemon running',
                   'error during connect')
_IN_USE_MARKERS = ('has active endpoints', 'volume is in use')


@dataclass(frozen=True)
class ResourceHandle:
    """An existing docker object found by list_matching()"""
    kind: ResourceKind
    name: str
    id: str = ''
    project: str = ''


def parse_host_ports(output: str) -> Set[int]:
    """
    Host side of published ports in ``docker ps --format {{.Ports}}``
    output, e.g. ``0.0.0.0:30303->30303/tcp, :::9000-9001->9000-9001/udp``.
    Exposed but unpublished ports (``8545/tcp``) are not host ports.
    """
    ports = set()
    for entry in output.replace('\n', ',').split(','):
        host, arrow, _ = entry.strip().partition('->')
        if not arrow:
            continue
        bound = host.rsplit(':', 1)[-1]
        start, _, end = bound.partition('-')
        if start.isdigit():
            ports.update(range(int(start), int(end if end.isdigit() else start) + 1))
    return ports


class ContainerRuntime:
    """Interface the orchestrator and adapters program against"""

    def list_matching(self, kind, resources) -> List[ResourceHandle]:
        raise NotImplementedError

    def stop(self, handles: Sequence[ResourceHandle], timeout: int) -> List[str]:
        raise NotImplementedError

    def remove_containers(self, handles: Sequence[ResourceHandle]) -> List[str]:
        raise NotImplementedError

    def remove_volumes(self, handles: Sequence[ResourceHandle]) -> List[str]:
        raise NotImplementedError

    def remove_network(self, name: str) -> bool:
        raise NotImplementedError

    def network_users(self, name: str) -> List[str]:
        raise NotImplementedError

    def disconnect_all(self, network: str) -> List[str]:
        raise NotImplementedError

    def network_exists(self, name: str) -> bool:
        raise NotImplementedError

    def host_ports(self) -> Set[int]:
        raise NotImplementedError

    def create_network(self, name: str) -> bool:
        raise NotImplementedError

    def up(self, project_dir, recreate: bool = False, extra_files: Sequence = ()):
        raise NotImplementedError

    def pull(self, project_dir):
        raise NotImplementedError

    def restart(self, project_dir, service: Optional[str] = None):
        raise NotImplementedError

    def service_states(self, project_dir) -> Dict[str, str]:
        raise NotImplementedError

    def service_images(self, project_dir) -> Dict[str, str]:
        raise NotImplementedError

    def running_services(self, project_dir) -> List[str]:
        return sorted(s for s, state in self.service_states(project_dir).items() if state == 'running')


class DockerRuntime(ContainerRuntime):
    """ContainerRuntime backed by the docker CLI and the compose plugin"""

    def __init__(self, settings):
        self.docker = settings.docker_binary
        self.timeout = settings.command_timeout

    # ------------------------------------------------------------- plumbing

    def _run(self, args: Sequence[str], cwd=None, timeout: Optional[int] = None,
             check: bool = True) -> subprocess.CompletedProcess:
        cmd = [self.docker] + [str(a) for a in args]
        timeout = timeout or self.timeout
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout,
                                    cwd=str(cwd) if cwd else None)
        except FileNotFoundError:
            raise RuntimeUnavailableError(f"docker binary not found: {self.docker}") from None
        except subprocess.TimeoutExpired:
            raise RuntimeCommandError(cmd, -1, f"timed out after {timeout}s") from None

        if result.returncode != 0:
            stderr = (result.stderr or '').lower()
            if any(marker in stderr for marker in _DAEMON_MARKERS):
                raise RuntimeUnavailableError(f"Docker daemon is unreachable: {result.stderr.strip()}")
            if check:
                raise RuntimeCommandError(cmd, result.returncode, result.stderr or '')
        return result

    @staticmethod
    def _is_absent(error: RuntimeCommandError) -> bool:
        return any(marker in error.stderr.lower() for marker in _ABSENT_MARKERS)

    @staticmethod
    def _is_in_use(error: RuntimeCommandError) -> bool:
        return any(marker in error.stderr.lower() for marker in _IN_USE_MARKERS)

    def _compose(self, project_dir, args: Sequence[str], extra_files: Iterable = (),
                 timeout: Optional[int] = None, check: bool = True) -> subprocess.CompletedProcess:
        project_dir = Path(project_dir)
        cmd = ['compose', '-p', project_dir.name, '-f', str(project_dir / COMPOSE_FILE)]
        for extra in extra_files:
            cmd += ['-f', str(extra)]
        return self._run(cmd + list(args), cwd=project_dir, timeout=timeout, check=check)

    # -------------------------------------------------------------- queries

    def list_matching(self, kind, resources) -> List[ResourceHandle]:
        """Existing objects of ``kind`` matched by any of ``resources``"""
        kind = ResourceKind(kind)
        label = '{{.Label "' + PROJECT_LABEL + '"}}'
        if kind == ResourceKind.CONTAINER:
            output = self._run(['ps', '-a', '--format', '{{.Names}}\t{{.ID}}\t' + label]).stdout
        elif kind == ResourceKind.VOLUME:
            output = self._run(['volume', 'ls', '--format', '{{.Name}}\t\t' + label]).stdout
        elif kind == ResourceKind.NETWORK:
            output = self._run(['network', 'ls', '--format', '{{.Name}}\t{{.ID}}\t' + label]).stdout
        else:
            raise ValueError(f"Runtime cannot list {kind.value} resources")

        handles = []
        for line in output.splitlines():
            # name, id, compose project; the last two may be empty
            name, object_id, project = (line.strip(' \r').split('\t') + ['', ''])[:3]
            if not name:
                continue
            if any(r.matches(name, project) for r in resources):
                handles.append(ResourceHandle(kind, name, object_id, project))
        return handles

    def host_ports(self) -> Set[int]:
        """Host ports currently published by containers"""
        return parse_host_ports(self._run(['ps', '-a', '--format', '{{.Ports}}']).stdout)

    def network_exists(self, name: str) -> bool:
        return self._run(['network', 'inspect', name], check=False).returncode == 0

    def network_users(self, name: str) -> List[str]:
        try:
            result = self._run(['network', 'inspect', name, '--format',
                                '{{range .Containers}}{{.Name}} {{end}}'])
        except RuntimeCommandError as e:
            if self._is_absent(e):
                return []
            raise
        return sorted(result.stdout.split())

    def service_states(self, project_dir) -> Dict[str, str]:
        """Compose service -> container state; an unhealthy container reports 'unhealthy'"""
        result = self._compose(project_dir, ['ps', '-a', '--format', '{{.Service}}\t{{.State}}\t{{.Health}}'])
        states = {}
        for line in result.stdout.splitlines():
            parts = line.strip().split('\t')
            if len(parts) < 2 or not parts[0]:
                continue
            health = parts[2] if len(parts) > 2 else ''
            states[parts[0]] = 'unhealthy' if health == 'unhealthy' else parts[1]
        return states

    def service_images(self, project_dir) -> Dict[str, str]:
        """Compose service -> image id of its current container"""
        ids = self._compose(project_dir, ['ps', '-a', '-q']).stdout.split()
        images = {}
        for container_id in ids:
            try:
                result = self._run(['inspect', '--format',
                                    '{{index .Config.Labels "com.docker.compose.service"}}\t{{.Image}}',
                                    container_id])
            except RuntimeCommandError as e:
                if self._is_absent(e):
                    continue
                raise
            service, _, image = result.stdout.strip().partition('\t')
            if service and image:
                images[service] = image
        return images

    # ------------------------------------------------------------ mutations

    def stop(self, handles: Sequence[ResourceHandle], timeout: int) -> List[str]:
        stopped = []
        for handle in handles:
            try:
                self._run(['stop', '-t', str(timeout), handle.name], timeout=timeout + self.timeout)
                stopped.append(handle.name)
            except RuntimeCommandError as e:
                if not self._is_absent(e):
                    raise
                logger.debug(f"Container {handle.name} already gone")
        return stopped

    def remove_containers(self, handles: Sequence[ResourceHandle]) -> List[str]:
        removed = []
        for handle in handles:
            try:
                self._run(['rm', '-f', handle.name])
                removed.append(handle.name)
            except RuntimeCommandError as e:
                if not self._is_absent(e):
                    raise
        return removed

    def remove_volumes(self, handles: Sequence[ResourceHandle]) -> List[str]:
        removed = []
        for handle in handles:
            try:
                self._run(['volume', 'rm', handle.name])
                removed.append(handle.name)
            except RuntimeCommandError as e:
                if self._is_absent(e):
                    continue
                if self._is_in_use(e):
                    raise ResourceInUseError(handle.name) from e
                raise
        return removed

    def remove_network(self, name: str) -> bool:
        """Remove a network; False if it did not exist"""
        try:
            self._run(['network', 'rm', name])
        except RuntimeCommandError as e:
            if self._is_absent(e):
                return False
            if self._is_in_use(e):
                raise ResourceInUseError(name, self.network_users(name)) from e
            raise
        logger.info(f"Removed network {name}")
        return True

    def disconnect_all(self, network: str) -> List[str]:
        disconnected = []
        for container in self.network_users(network):
            try:
                self._run(['network', 'disconnect', '-f', network, container])
                disconnected.append(container)
            except RuntimeCommandError as e:
                if not self._is_absent(e):
                    raise
        if disconnected:
            logger.info(f"Disconnected {', '.join(disconnected)} from {network}")
        return disconnected

    def create_network(self, name: str) -> bool:
        """Create a bridge network; False if it already existed"""
        if self.network_exists(name):
            return False
        try:
            self._run(['network', 'create', name])
        except RuntimeCommandError as e:
            if 'already exists' in e.stderr.lower():
                return False
            raise
        logger.info(f"Created network {name}")
        return True

    def up(self, project_dir, recreate: bool = False, extra_files: Sequence = ()):
        args = ['up', '-d', '--remove-orphans']
        if recreate:
            args.append('--force-recreate')
        try:
            self._compose(project_dir, args, extra_files=extra_files)
        except RuntimeCommandError as e:
            raise StartupError(e.command, e.returncode, e.stderr) from e

    def pull(self, project_dir):
        self._compose(project_dir, ['pull'])

    def restart(self, project_dir, service: Optional[str] = None):
        self._compose(project_dir, ['restart'] + ([service] if service else []))
