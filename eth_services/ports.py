"""
Host port allocation for published service ports.

Each port kind has a range. A new instance gets the lowest port of the
range that is not recorded in any registry entry, not published by any
container, not reserved by an install still in progress, and bindable on
the host. Ports return to the pool when the instance that recorded them
leaves the registry.
"""
import logging
import socket
import threading
from typing import Dict, Iterable, Optional, Set

from .errors import ContainerRuntimeError, TemplateError

logger = logging.getLogger(__name__)

# kind -> (first, last) port of its range
PORT_RANGES = {
    'el_p2p': (30303, 30400),
    'cl_p2p': (9000, 9100),
    'prometheus': (9090, 9190),
    'grafana': (3000, 3100),
}


def port_is_bindable(port: int) -> bool:
    """True if nothing on the host listens on ``port``"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind(('', port))
        except OSError:
            return False
    return True


class PortAllocator:
    """Hands out non-conflicting host ports to new instances"""

    def __init__(self, registry, runtime, ranges: Optional[Dict[str, tuple]] = None):
        self.registry = registry
        self.runtime = runtime
        self.ranges = dict(ranges or PORT_RANGES)
        self._lock = threading.Lock()
        self._reserved: Dict[str, Dict[str, int]] = {}

    def used_ports(self) -> Set[int]:
        """Ports recorded in the registry, published by docker or reserved"""
        used = set()
        for instance in self.registry.list():
            used.update(_int_ports((instance.metadata.get('ports') or {}).values()))
        try:
            used.update(self.runtime.host_ports())
        except ContainerRuntimeError as e:
            logger.warning(f"Cannot read published container ports: {e}")
        for ports in self._reserved.values():
            used.update(ports.values())
        return used

    def allocate(self, owner: str, kind: str) -> int:
        """
        Reserve the lowest free port of ``kind`` for ``owner``.

        Raises:
            TemplateError: unknown kind or range exhausted
        """
        if kind not in self.ranges:
            raise TemplateError(f"Unknown port kind: {kind}")
        first, last = self.ranges[kind]
        with self._lock:
            used = self.used_ports()
            for port in range(first, last + 1):
                if port in used or not port_is_bindable(port):
                    continue
                self._reserved.setdefault(owner, {})[kind] = port
                logger.debug(f"Allocated {kind} port {port} for {owner}")
                return port
        raise TemplateError(f"No free {kind} port left in {first}-{last}")

    def claim(self, owner: str, kind: str, port: int) -> int:
        """Reserve a port the caller chose explicitly; it must not be in use already"""
        with self._lock:
            if port in self.used_ports():
                raise TemplateError(f"Port {port} requested for {kind} is already in use")
            self._reserved.setdefault(owner, {})[kind] = port
        return port

    def release(self, owner: str) -> Dict[str, int]:
        """Drop the reservations of ``owner``; returns what was held"""
        with self._lock:
            released = self._reserved.pop(owner, {})
        if released:
            logger.debug(f"Released port reservations of {owner}: {released}")
        return released

    def reserved(self, owner: str) -> Dict[str, int]:
        with self._lock:
            return dict(self._reserved.get(owner, {}))


def _int_ports(values: Iterable) -> Set[int]:
    ports = set()
    for value in values:
        try:
            ports.add(int(value))
        except (TypeError, ValueError):
            continue
    return ports
