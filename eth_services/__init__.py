"""Lifecycle and integration engine for Ethereum node, validator, signer and metrics services."""

__version__ = '0.1.0'

from .config import Settings, load_settings
from .descriptors import DESCRIPTORS, Operation, ServiceType
from .errors import LifecycleError
from .orchestrator import LifecycleOrchestrator
from .registry import ServiceRegistry, ServiceStatus
from .runtime import DockerRuntime

__all__ = [
    'DESCRIPTORS',
    'DockerRuntime',
    'LifecycleError',
    'LifecycleOrchestrator',
    'Operation',
    'ServiceRegistry',
    'ServiceStatus',
    'ServiceType',
    'Settings',
    'load_settings',
]
