"""
Service Registry - durable record of every installed service instance.

The registry is the single source of truth for "what is installed". It is
stored as one JSON document under the tool home directory and rewritten
atomically (temp file + os.replace) on every change, so a crash mid-write
never leaves a half-written record behind.
"""
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from .descriptors import ServiceType
from .errors import InvalidTransitionError, RegistryError, ServiceExistsError, UnknownServiceError
from .locator import validate_name

logger = logging.getLogger(__name__)

REGISTRY_VERSION = 1


class ServiceStatus(str, Enum):
    ABSENT = 'absent'
    INSTALLING = 'installing'
    RUNNING = 'running'
    STOPPED = 'stopped'
    REMOVING = 'removing'
    FAILED = 'failed'


# Legal status edges. Absent is the implicit state of a name with no record.
TRANSITIONS = {
    ServiceStatus.ABSENT: frozenset({ServiceStatus.INSTALLING}),
    ServiceStatus.INSTALLING: frozenset({ServiceStatus.RUNNING, ServiceStatus.FAILED}),
    ServiceStatus.RUNNING: frozenset({ServiceStatus.STOPPED, ServiceStatus.REMOVING, ServiceStatus.FAILED}),
    ServiceStatus.STOPPED: frozenset({ServiceStatus.RUNNING, ServiceStatus.REMOVING, ServiceStatus.FAILED}),
    ServiceStatus.REMOVING: frozenset({ServiceStatus.ABSENT, ServiceStatus.FAILED}),
    ServiceStatus.FAILED: frozenset({ServiceStatus.REMOVING, ServiceStatus.RUNNING, ServiceStatus.STOPPED}),
}


def can_transition(current: ServiceStatus, requested: ServiceStatus) -> bool:
    return ServiceStatus(requested) in TRANSITIONS[ServiceStatus(current)]


@dataclass
class ServiceInstance:
    name: str
    type: ServiceType
    status: ServiceStatus = ServiceStatus.INSTALLING
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    last_error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    dependencies: List[str] = field(default_factory=list)
    resources: List[str] = field(default_factory=list)
    last_run: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'type': self.type.value,
            'status': self.status.value,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'last_error': self.last_error,
            'metadata': self.metadata,
            'dependencies': list(self.dependencies),
            'resources': list(self.resources),
            'last_run': self.last_run,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ServiceInstance':
        """Build from a stored record; unknown keys are ignored"""
        return cls(
            name=data['name'],
            type=ServiceType(data['type']),
            status=ServiceStatus(data.get('status', ServiceStatus.FAILED.value)),
            created_at=_parse_time(data.get('created_at')),
            updated_at=_parse_time(data.get('updated_at')),
            last_error=data.get('last_error'),
            metadata=dict(data.get('metadata') or {}),
            dependencies=list(data.get('dependencies') or []),
            resources=list(data.get('resources') or []),
            last_run=data.get('last_run'),
        )

    def copy(self) -> 'ServiceInstance':
        return ServiceInstance.from_dict(json.loads(json.dumps(self.to_dict())))


class ServiceRegistry:
    """JSON-file backed registry with per-instance write serialization"""

    def __init__(self, path):
        self.path = Path(path)
        self._state_lock = threading.RLock()
        self._name_locks: Dict[str, threading.RLock] = {}
        self._services: Dict[str, ServiceInstance] = self._load()

    # ------------------------------------------------------------------ reads

    def get(self, name: str) -> Optional[ServiceInstance]:
        with self._state_lock:
            instance = self._services.get(name)
            return instance.copy() if instance else None

    def list(self, type_filter=None) -> List[ServiceInstance]:
        wanted = ServiceType(type_filter) if type_filter else None
        with self._state_lock:
            instances = [i.copy() for i in self._services.values()]
        if wanted:
            instances = [i for i in instances if i.type == wanted]
        return sorted(instances, key=lambda i: i.name)

    def status_of(self, name: str) -> ServiceStatus:
        instance = self.get(name)
        return instance.status if instance else ServiceStatus.ABSENT

    # ----------------------------------------------------------------- writes

    def register(self, name: str, service_type, metadata: Optional[Dict[str, Any]] = None) -> ServiceInstance:
        """Create a new record in Installing state (Absent -> Installing)"""
        validate_name(name)
        with self._locked(name):
            if name in self._services:
                raise ServiceExistsError(f"Service already registered: {name}")
            instance = ServiceInstance(
                name=name,
                type=ServiceType(service_type),
                status=ServiceStatus.INSTALLING,
                metadata=dict(metadata or {}),
            )
            self._write_instance(instance)
            logger.info(f"Registered {instance.type.value} service {name}")
            return instance.copy()

    def upsert(self, instance: ServiceInstance) -> ServiceInstance:
        validate_name(instance.name)
        with self._locked(instance.name):
            stored = instance.copy()
            stored.updated_at = datetime.now()
            self._write_instance(stored)
            return stored.copy()

    def update(self, name: str, **changes) -> ServiceInstance:
        """Read-modify-write of selected fields under the instance lock"""
        with self._locked(name):
            current = self._services.get(name)
            if current is None:
                raise UnknownServiceError(f"Service not found: {name}")
            updated = current.copy()
            for key, value in changes.items():
                if key in ('name', 'status'):
                    raise ValueError(f"{key} cannot be changed with update()")
                setattr(updated, key, value)
            updated.updated_at = datetime.now()
            self._write_instance(updated)
            return updated.copy()

    def remove(self, name: str) -> bool:
        with self._locked(name):
            if name not in self._services:
                return False
            with self._state_lock:
                snapshot = dict(self._services)
                del snapshot[name]
                self._persist(snapshot)
                self._services = snapshot
            logger.info(f"Unregistered service {name}")
            return True

    def transition(self, name: str, new_status, error: Optional[str] = None) -> Optional[ServiceInstance]:
        """
        Move an instance along a legal state-machine edge and persist it.
        Transition to Absent deletes the record and returns None.
        """
        requested = ServiceStatus(new_status)
        with self._locked(name):
            current = self._services.get(name)
            current_status = current.status if current else ServiceStatus.ABSENT
            if not can_transition(current_status, requested):
                raise InvalidTransitionError(name, current_status.value, requested.value)
            if current is None:
                raise UnknownServiceError(f"Use register() to create {name}")

            if requested == ServiceStatus.ABSENT:
                self.remove(name)
                return None

            updated = current.copy()
            updated.status = requested
            updated.updated_at = datetime.now()
            if requested == ServiceStatus.FAILED:
                updated.last_error = error
            elif error is None and requested in (ServiceStatus.RUNNING, ServiceStatus.STOPPED):
                updated.last_error = None
            else:
                updated.last_error = error or updated.last_error
            self._write_instance(updated)
            logger.debug(f"{name}: {current_status.value} -> {requested.value}")
            return updated.copy()

    def record_run(self, name: str, run_data: Dict[str, Any]):
        with self._locked(name):
            current = self._services.get(name)
            if current is None:
                return
            updated = current.copy()
            updated.last_run = run_data
            self._write_instance(updated)

    # -------------------------------------------------------------- internals

    @contextmanager
    def _locked(self, name: str):
        with self._state_lock:
            lock = self._name_locks.setdefault(name, threading.RLock())
        with lock:
            yield

    def _write_instance(self, instance: ServiceInstance):
        with self._state_lock:
            snapshot = dict(self._services)
            snapshot[instance.name] = instance
            self._persist(snapshot)
            self._services = snapshot

    def _load(self) -> Dict[str, ServiceInstance]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, 'r') as f:
                document = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise RegistryError(f"Cannot read registry {self.path}: {e}") from e

        services = {}
        for name, record in (document.get('services') or {}).items():
            try:
                record = dict(record)
                record.setdefault('name', name)
                services[name] = ServiceInstance.from_dict(record)
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping unreadable registry record {name}: {e}")
        logger.debug(f"Loaded {len(services)} services from {self.path}")
        return services

    def _persist(self, services: Dict[str, ServiceInstance]):
        document = {
            'version': REGISTRY_VERSION,
            'last_updated': datetime.now().isoformat(),
            'services': {name: inst.to_dict() for name, inst in sorted(services.items())},
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix='.registry-', suffix='.tmp', dir=str(self.path.parent))
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(document, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


def _parse_time(value) -> datetime:
    if value:
        try:
            return datetime.fromisoformat(value)
        except (TypeError, ValueError):
            pass
    return datetime.now()
