"""
Exception hierarchy for the service lifecycle engine.

Critical errors abort a lifecycle run and mark the instance Failed,
non-critical ones are recorded against the run and reported at the end.
"""
from typing import Optional


class LifecycleError(Exception):
    """Base class for every error raised by the engine"""


class ConfigError(LifecycleError):
    """Invalid or unreadable config.yaml"""


class InvalidNameError(LifecycleError):
    """Instance name is unsafe for container, network or path use"""

    def __init__(self, name: str):
        super().__init__(f"Invalid service name: {name!r} (allowed: letters, digits, '_' and '-')")
        self.name = name


class UnknownServiceError(LifecycleError):
    """Service type or instance name is not known"""


class ServiceExistsError(LifecycleError):
    """An instance with this name is already registered"""


class InvalidTransitionError(LifecycleError):
    def __init__(self, name: str, current: str, requested: str):
        super().__init__(f"{name}: illegal status change {current} -> {requested}")
        self.name = name
        self.current = current
        self.requested = requested


class ConcurrentOperationError(LifecycleError):
    def __init__(self, name: str, operation: Optional[str] = None):
        detail = f" ({operation} in progress)" if operation else ""
        super().__init__(f"Another operation is already running on {name}{detail}")
        self.name = name
        self.operation = operation


class StepFailure(LifecycleError):
    """A lifecycle step failed; carries the step name and underlying cause"""

    def __init__(self, step: str, cause: BaseException):
        super().__init__(f"Step '{step}' failed: {cause}")
        self.step = step
        self.cause = cause


class CriticalStepFailure(StepFailure):
    pass


class NonCriticalStepFailure(StepFailure):
    pass


class RunCancelledError(LifecycleError):
    def __init__(self, name: str, last_step: Optional[str]):
        super().__init__(f"Run on {name} cancelled after step {last_step or '<none>'}")
        self.name = name
        self.last_step = last_step


class IntegrationError(LifecycleError):
    """An integration adapter could not apply its side effect"""


class ContainerRuntimeError(LifecycleError):
    """Base class for docker adapter failures"""


class RuntimeUnavailableError(ContainerRuntimeError):
    """docker binary missing or daemon unreachable"""


class RuntimeCommandError(ContainerRuntimeError):
    def __init__(self, command, returncode: int, stderr: str):
        cmd = ' '.join(command) if isinstance(command, (list, tuple)) else str(command)
        super().__init__(f"'{cmd}' exited with {returncode}: {stderr.strip()}")
        self.command = command
        self.returncode = returncode
        self.stderr = stderr


class StartupError(RuntimeCommandError):
    """docker compose up returned a nonzero exit code"""


class ResourceInUseError(ContainerRuntimeError):
    def __init__(self, resource: str, users=()):
        users = list(users)
        detail = f" (used by {', '.join(users)})" if users else ""
        super().__init__(f"Resource {resource} is still in use{detail}")
        self.resource = resource
        self.users = users


class RegistryError(LifecycleError):
    """Registry file is unreadable or corrupt"""


class TemplateError(LifecycleError):
    """Install parameters cannot be rendered into service files"""


class HealthCheckError(LifecycleError):
    """Services did not reach a running state in time"""
