"""
Lifecycle Orchestrator - executes descriptor flows against the runtime.

Each public operation builds a LifecycleRun from the descriptor's step list
and executes the steps strictly in order. A failing critical step aborts
the run, marks the instance Failed and is raised to the caller as
CriticalStepFailure; a failing non-critical step is recorded on the run and
the flow continues. Only one operation per instance name may be in flight,
and shared networks are created or released under a per-resource lock.
"""
import logging
import shutil
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .descriptors import (DEPENDENT_CONFIG_INTEGRATION, DESCRIPTORS, METRICS_INTEGRATION,
                          SHARED_RESOURCE_INTEGRATION, Operation, ResourceKind, ServiceDescriptor,
                          ServiceType, dependents_of, get_descriptor, is_critical)
from .errors import (ConcurrentOperationError, CriticalStepFailure, HealthCheckError, IntegrationError,
                     InvalidTransitionError, NonCriticalStepFailure, ResourceInUseError, RunCancelledError,
                     ServiceExistsError, UnknownServiceError)
from .integrations import INACTIVE_STATUSES, DependentConfigAdapter, SharedResourceAdapter
from .lifecycle import LifecycleRun, Plan, PlannedStep, RunOutcome, StepRecord, StepStatus
from .locator import Resource, ResourceSet, resolve, validate_name, with_sharing
from .metrics_sync import MetricsSyncAdapter
from .ports import PortAllocator
from .registry import ServiceInstance, ServiceStatus, can_transition
from .templates import ROLLBACK_FILE, RenderedService, TemplateRenderer, stop_timeout_for, write_rollback_override

logger = logging.getLogger(__name__)

UPDATABLE_STATUSES = (ServiceStatus.RUNNING, ServiceStatus.STOPPED, ServiceStatus.FAILED)

STEP_DESCRIPTIONS = {
    'create_directories': 'Create the service directory',
    'copy_configs': 'Write .env and compose.yml',
    'setup_networking': 'Create the service networks',
    'connect_to_dependencies': 'Point the service at its beacon nodes and signer',
    'start_services': 'docker compose up',
    'integrate': 'Register with metrics and other integrations',
    'stop_services': 'Stop all containers',
    'update_dependents': 'Remove this service from dependent configurations',
    'cleanup_integrations': 'Remove scrape targets and network attachments',
    'remove_containers': 'Remove containers',
    'remove_volumes': 'Remove data volumes',
    'remove_networks': 'Remove networks no other service needs',
    'remove_directories': 'Delete the service directory',
    'unregister': 'Drop the registry entry',
    'ensure_networks': 'Make sure all networks exist',
    'health_check': 'Wait for every service to be running',
    'pull_images': 'Snapshot current images and pull new ones',
    'recreate_services': 'Recreate containers from the new images',
}


class NamedLocks:
    """A lazily created threading.Lock per resource name"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    @contextmanager
    def hold(self, name: str):
        with self._guard:
            lock = self._locks.setdefault(name, threading.Lock())
        with lock:
            yield


@dataclass
class _RunContext:
    instance: ServiceInstance
    descriptor: ServiceDescriptor
    resources: ResourceSet
    run: LifecycleRun
    params: Dict[str, Any] = field(default_factory=dict)
    rendered: Optional[RenderedService] = None
    dependencies: List[str] = field(default_factory=list)
    created_directories: List[Path] = field(default_factory=list)
    created_networks: List[Resource] = field(default_factory=list)
    previous_images: Dict[str, str] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.instance.name

    @property
    def directory(self) -> Path:
        return self.resources.directory


class LifecycleOrchestrator:
    """Runs install/remove/start/stop/update flows for registered services"""

    def __init__(self, registry, runtime, settings, descriptors=DESCRIPTORS, adapters=None, renderer=None):
        self.registry = registry
        self.runtime = runtime
        self.settings = settings
        self.descriptors = descriptors
        self.adapters = dict(self.default_adapters())
        self.adapters.update(adapters or {})
        self.ports = PortAllocator(registry, runtime)
        self.renderer = renderer or TemplateRenderer(ports=self.ports)
        self.on_step: Optional[Callable[[LifecycleRun, StepRecord], None]] = None
        self._inflight: Dict[str, LifecycleRun] = {}
        self._inflight_lock = threading.Lock()
        self._resource_locks = NamedLocks()

    def default_adapters(self) -> Dict[str, Any]:
        args = (self.registry, self.runtime, self.settings, self.descriptors)
        return {
            METRICS_INTEGRATION: MetricsSyncAdapter(*args),
            DEPENDENT_CONFIG_INTEGRATION: DependentConfigAdapter(*args),
            SHARED_RESOURCE_INTEGRATION: SharedResourceAdapter(*args),
        }

    # ================================================================ operations

    def install(self, service_type, name: str, params: Optional[Dict[str, Any]] = None) -> LifecycleRun:
        """
        Install a new service instance.

        Args:
            service_type: ethnode, validator, signer or metrics
            name: Instance name (also its directory and compose project)
            params: Client choices, ports, images and, for validators,
                ``beacon_nodes`` / ``signer`` naming the instances to use

        Returns:
            The finished LifecycleRun

        Raises:
            ServiceExistsError: name already registered
            CriticalStepFailure: a critical step failed (instance is Failed)
        """
        validate_name(name)
        descriptor = get_descriptor(service_type, self.descriptors)
        params = dict(params or {})
        if self.registry.get(name) is not None:
            raise ServiceExistsError(f"Service already exists: {name}")

        run = LifecycleRun(Operation.INSTALL.value, name)
        with self._single_flight(name, run):
            if self.registry.get(name) is not None:
                raise ServiceExistsError(f"Service already exists: {name}")
            # Allocated ports stay reserved until the registry entry records them
            try:
                rendered = self.renderer.render(descriptor.type, name, params)
                dependencies = self._resolve_dependencies(descriptor, name, params)
                resources = resolve(name, descriptor, self.settings.services_root)
                self.registry.register(name, descriptor.type, metadata=rendered.metadata)
            finally:
                self.ports.release(name)
            instance = self.registry.update(name, resources=resources.identifiers())
            ctx = _RunContext(instance, descriptor, resources, run, params=params,
                              rendered=rendered, dependencies=dependencies)
            logger.info(f"Installing {descriptor.type.value} service {name}")
            return self._execute(ctx, Operation.INSTALL, final_status=ServiceStatus.RUNNING,
                                 on_critical=self._rollback_install)

    def remove(self, name: str, interactive: bool = False,
               confirm: Optional[Callable[[Plan], bool]] = None) -> LifecycleRun:
        """
        Remove a service and everything it owns. Removing a name that is
        not installed returns a run with outcome not_found.

        With ``interactive`` the ``confirm`` callback receives the removal
        plan and must return True for the removal to go ahead.
        """
        validate_name(name)
        run = LifecycleRun(Operation.REMOVE.value, name)
        if self.registry.get(name) is None:
            logger.info(f"{name} is not installed, nothing to remove")
            run.finish(RunOutcome.NOT_FOUND, f"{name} is not installed")
            return run

        if interactive:
            if confirm is None:
                raise ValueError('interactive removal needs a confirm callback')
            if not confirm(self.plan(name, Operation.REMOVE)):
                run.finish(RunOutcome.DECLINED, 'removal declined')
                return run

        with self._single_flight(name, run):
            instance = self.registry.get(name)
            if instance is None:
                run.finish(RunOutcome.NOT_FOUND, f"{name} is not installed")
                return run
            if instance.status in (ServiceStatus.INSTALLING, ServiceStatus.REMOVING):
                # Left over from an interrupted run; force cleanup through Failed
                self.registry.transition(name, ServiceStatus.FAILED,
                                         f"interrupted while {instance.status.value}")
            instance = self.registry.transition(name, ServiceStatus.REMOVING)
            ctx = self._context(instance, run)
            logger.info(f"Removing {instance.type.value} service {name}")
            return self._execute(ctx, Operation.REMOVE)

    def start(self, name: str) -> LifecycleRun:
        run = LifecycleRun(Operation.START.value, name)
        with self._single_flight(name, run):
            instance = self._require(name)
            if instance.status == ServiceStatus.RUNNING:
                run.finish(RunOutcome.SUCCEEDED, None)
                logger.info(f"{name} is already running")
                return run
            self._check_transition(instance, ServiceStatus.RUNNING)
            return self._execute(self._context(instance, run), Operation.START,
                                 final_status=ServiceStatus.RUNNING)

    def stop(self, name: str) -> LifecycleRun:
        run = LifecycleRun(Operation.STOP.value, name)
        with self._single_flight(name, run):
            instance = self._require(name)
            if instance.status == ServiceStatus.STOPPED:
                run.finish(RunOutcome.SUCCEEDED, None)
                logger.info(f"{name} is already stopped")
                return run
            self._check_transition(instance, ServiceStatus.STOPPED)
            return self._execute(self._context(instance, run), Operation.STOP,
                                 final_status=ServiceStatus.STOPPED)

    def update(self, name: str) -> LifecycleRun:
        """Pull new images and recreate; a failed recreate rolls back to the previous images"""
        run = LifecycleRun(Operation.UPDATE.value, name)
        with self._single_flight(name, run):
            instance = self._require(name)
            if instance.status not in UPDATABLE_STATUSES:
                raise InvalidTransitionError(name, instance.status.value, ServiceStatus.RUNNING.value)
            ctx = self._context(instance, run)
            return self._execute(ctx, Operation.UPDATE, final_status=ServiceStatus.RUNNING,
                                 on_critical=self._rollback_update, on_success=self._finish_update)

    def cancel(self, name: str) -> bool:
        """Ask the in-flight run on ``name`` to stop before its next step"""
        with self._inflight_lock:
            run = self._inflight.get(name)
        if run is None:
            return False
        run.cancel_event.set()
        logger.info(f"Cancellation requested for {run.operation} of {name}")
        return True

    def in_flight(self, name: str) -> Optional[str]:
        with self._inflight_lock:
            run = self._inflight.get(name)
        return run.operation if run else None

    # ============================================================ queries

    def plan(self, name: str, operation, service_type=None) -> Plan:
        """Preview the steps and resources of an operation without executing it"""
        validate_name(name)
        operation = Operation(operation)
        instance = self.registry.get(name)
        current = instance.status if instance else ServiceStatus.ABSENT

        if instance is not None:
            descriptor = get_descriptor(instance.type, self.descriptors)
        elif service_type is not None:
            descriptor = get_descriptor(service_type, self.descriptors)
        else:
            return Plan(instance=name, service_type='unknown', operation=operation.value,
                        current_status=current.value, steps=[], resources=ResourceSet(name),
                        allowed=False, reason=f"{name} is not installed")

        resources = self._resources_with_sharing(name, descriptor)
        steps = [PlannedStep(step, is_critical(operation, step), STEP_DESCRIPTIONS.get(step, ''))
                 for step in descriptor.flow(operation)]
        allowed, reason = self._plan_allowed(name, instance, operation)

        dependents = [i.name for i in self._dependent_instances(descriptor.type, exclude=name)
                      if name in i.dependencies]
        integrations = list(descriptor.integration_kinds)
        if operation == Operation.REMOVE and dependents:
            integrations.append(DEPENDENT_CONFIG_INTEGRATION)

        plan = Plan(instance=name, service_type=descriptor.type.value, operation=operation.value,
                    current_status=current.value, steps=steps, resources=resources,
                    dependents=dependents, integrations=integrations, allowed=allowed, reason=reason)
        if operation == Operation.REMOVE:
            for resource in resources.resources:
                if not resource.shared:
                    continue
                if resource.shared_with_instances:
                    plan.shared_retained.append(resource.identifier)
                else:
                    plan.shared_released.append(resource.identifier)
        return plan

    def status(self, name: str) -> Dict[str, Any]:
        validate_name(name)
        instance = self.registry.get(name)
        if instance is None:
            return {'name': name, 'status': ServiceStatus.ABSENT.value}
        descriptor = get_descriptor(instance.type, self.descriptors)
        resources = self._resources_with_sharing(name, descriptor)
        last_run = LifecycleRun.from_dict(instance.last_run) if instance.last_run else None
        return {
            'name': name,
            'type': instance.type.value,
            'status': instance.status.value,
            'last_error': instance.last_error,
            'created_at': instance.created_at.isoformat(),
            'updated_at': instance.updated_at.isoformat(),
            'dependencies': list(instance.dependencies),
            'dependents': [i.name for i in self._dependent_instances(instance.type, exclude=name)
                           if name in i.dependencies],
            'resources': [
                {'kind': r.kind.value, 'identifier': r.label, 'shared': r.shared,
                 'shared_with': sorted(r.shared_with_instances)}
                for r in resources.resources
            ],
            'integrations': list(descriptor.integration_kinds),
            'metadata': instance.metadata,
            'in_flight': self.in_flight(name),
            'last_run': last_run.summary() if last_run else None,
        }

    def list(self, type_filter=None) -> List[ServiceInstance]:
        return self.registry.list(type_filter)

    def verify(self) -> List[Dict[str, str]]:
        """
        Compare the registry with the runtime. A service registered as
        Running whose containers or directory are gone is marked Failed.
        """
        findings = []
        for instance in self.registry.list():
            if self.in_flight(instance.name):
                continue
            descriptor = get_descriptor(instance.type, self.descriptors)
            resources = resolve(instance.name, descriptor, self.settings.services_root)
            problem = None
            if not resources.directory.exists():
                problem = f"directory {resources.directory} is missing"
            elif instance.status in (ServiceStatus.RUNNING, ServiceStatus.STOPPED):
                containers = self.runtime.list_matching(ResourceKind.CONTAINER, resources.containers)
                if not containers:
                    problem = 'no containers found'
            if problem is None:
                continue

            finding = {'name': instance.name, 'status': instance.status.value, 'problem': problem}
            if instance.status in (ServiceStatus.RUNNING, ServiceStatus.STOPPED):
                self.registry.transition(instance.name, ServiceStatus.FAILED, f"drift: {problem}")
                finding['status'] = ServiceStatus.FAILED.value
            logger.warning(f"{instance.name}: {problem}")
            findings.append(finding)
        return findings

    # ========================================================== execution

    @contextmanager
    def _single_flight(self, name: str, run: LifecycleRun):
        with self._inflight_lock:
            current = self._inflight.get(name)
            if current is not None:
                raise ConcurrentOperationError(name, current.operation)
            self._inflight[name] = run
        try:
            yield
        finally:
            with self._inflight_lock:
                self._inflight.pop(name, None)

    def _execute(self, ctx: _RunContext, operation: Operation, final_status: Optional[ServiceStatus] = None,
                 on_critical=None, on_success=None) -> LifecycleRun:
        run = ctx.run
        run.steps = [StepRecord(step, is_critical(operation, step)) for step in ctx.descriptor.flow(operation)]

        for index, record in enumerate(run.steps):
            if run.cancel_event.is_set():
                self._cancel(ctx, run.steps[index:])

            handler = getattr(self, f"_step_{record.name}")
            record.started_at = record.started_at or datetime.now()
            logger.info(f"[{ctx.name}] {operation.value}: {record.name}")
            try:
                handler(ctx, record)
                record.status = StepStatus.SUCCEEDED
            except Exception as e:
                record.error = str(e)
                record.completed_at = datetime.now()
                if not record.critical:
                    record.status = StepStatus.FAILED_NON_CRITICAL
                    record.failure = NonCriticalStepFailure(record.name, e)
                    logger.warning(f"[{ctx.name}] {record.name} failed (continuing): {e}")
                else:
                    record.status = StepStatus.FAILED_CRITICAL
                    self._abort(ctx, record, run.steps[index + 1:], e, on_critical)
            record.completed_at = record.completed_at or datetime.now()
            self._notify(run, record)

        if on_success:
            on_success(ctx)
        if final_status is not None and self.registry.status_of(ctx.name) != final_status:
            self.registry.transition(ctx.name, final_status)
        run.finish(RunOutcome.COMPLETED_WITH_WARNINGS if run.warnings else RunOutcome.SUCCEEDED)
        self.registry.record_run(ctx.name, run.to_dict())
        for warning in run.warnings:
            logger.warning(f"[{ctx.name}] {warning}")
        logger.info(f"[{ctx.name}] {operation.value} finished: {run.outcome.value}")
        return run

    def _abort(self, ctx: _RunContext, record: StepRecord, remaining, cause: Exception, on_critical):
        for pending in remaining:
            pending.status = StepStatus.SKIPPED
        run = ctx.run
        error = f"{record.name}: {cause}"
        logger.error(f"[{ctx.name}] critical step {error}")
        if on_critical:
            run.rollback.extend(on_critical(ctx, record))
        run.finish(RunOutcome.FAILED, error)
        self._mark_failed(ctx.name, error)
        self.registry.record_run(ctx.name, run.to_dict())
        self._notify(run, record)
        failure = CriticalStepFailure(record.name, cause)
        failure.run = run
        record.failure = failure
        raise failure from cause

    def _cancel(self, ctx: _RunContext, remaining):
        for pending in remaining:
            pending.status = StepStatus.SKIPPED
        run = ctx.run
        error = RunCancelledError(ctx.name, run.last_completed_step)
        run.finish(RunOutcome.CANCELLED, str(error))
        self._mark_failed(ctx.name, str(error))
        self.registry.record_run(ctx.name, run.to_dict())
        logger.warning(str(error))
        error.run = run
        raise error

    def _mark_failed(self, name: str, error: str):
        current = self.registry.status_of(name)
        if current == ServiceStatus.ABSENT:
            return
        if current == ServiceStatus.FAILED:
            self.registry.update(name, last_error=error)
        else:
            self.registry.transition(name, ServiceStatus.FAILED, error)

    def _notify(self, run: LifecycleRun, record: StepRecord):
        if self.on_step:
            self.on_step(run, record)

    # ============================================================= helpers

    def _require(self, name: str) -> ServiceInstance:
        validate_name(name)
        instance = self.registry.get(name)
        if instance is None:
            raise UnknownServiceError(f"Service not found: {name}")
        return instance

    @staticmethod
    def _check_transition(instance: ServiceInstance, target: ServiceStatus):
        # Installing/Removing without a run in flight means an interrupted run: remove it first
        if instance.status in (ServiceStatus.INSTALLING, ServiceStatus.REMOVING) \
                or not can_transition(instance.status, target):
            raise InvalidTransitionError(instance.name, instance.status.value, target.value)

    def _context(self, instance: ServiceInstance, run: LifecycleRun) -> _RunContext:
        descriptor = get_descriptor(instance.type, self.descriptors)
        resources = resolve(instance.name, descriptor, self.settings.services_root)
        return _RunContext(instance, descriptor, resources, run, dependencies=list(instance.dependencies))

    def _resources_with_sharing(self, name: str, descriptor: ServiceDescriptor) -> ResourceSet:
        resources = resolve(name, descriptor, self.settings.services_root)
        shared = self.adapters[SHARED_RESOURCE_INTEGRATION]
        sharers = {r.identifier: shared.users(r.identifier, exclude=name) for r in resources.resources if r.shared}
        return with_sharing(resources, sharers)

    def _dependent_instances(self, service_type, exclude: Optional[str] = None) -> List[ServiceInstance]:
        types = dependents_of(service_type, self.descriptors)
        return [i for i in self.registry.list()
                if i.type in types and i.name != exclude and i.status not in INACTIVE_STATUSES]

    def _plan_allowed(self, name: str, instance: Optional[ServiceInstance], operation: Operation):
        running = self.in_flight(name)
        if running:
            return False, f"{running} already in progress"
        if operation == Operation.INSTALL:
            return (False, f"{name} already exists") if instance else (True, None)
        if instance is None:
            return False, f"{name} is not installed"
        if operation == Operation.REMOVE:
            return True, None
        if operation == Operation.UPDATE:
            if instance.status in UPDATABLE_STATUSES:
                return True, None
            return False, f"cannot update while {instance.status.value}"
        target = ServiceStatus.STOPPED if operation == Operation.STOP else ServiceStatus.RUNNING
        if instance.status == target:
            return True, f"already {target.value}"
        try:
            self._check_transition(instance, target)
        except InvalidTransitionError as e:
            return False, str(e)
        return True, None

    def _resolve_dependencies(self, descriptor: ServiceDescriptor, name: str, params: Dict[str, Any]) -> List[str]:
        """Names of the instances a new service will be linked to"""
        if not descriptor.dependency_types:
            return []
        live = [i for i in self.registry.list() if i.status not in INACTIVE_STATUSES and i.name != name]
        names: List[str] = []

        if ServiceType.ETHNODE in descriptor.dependency_types:
            requested = params.get('beacon_nodes')
            if isinstance(requested, str):
                requested = [n.strip() for n in requested.split(',') if n.strip()]
            if requested is None:
                requested = [i.name for i in live if i.type == ServiceType.ETHNODE]
            names.extend(requested)

        if ServiceType.SIGNER in descriptor.dependency_types:
            signer = params.get('signer')
            if signer is None:
                signers = [i.name for i in live if i.type == ServiceType.SIGNER]
                signer = signers[0] if len(signers) == 1 else None
            if signer:
                names.append(signer)

        by_name = {i.name: i for i in live}
        for dependency in names:
            instance = by_name.get(dependency)
            if instance is None or instance.type not in descriptor.dependency_types:
                raise UnknownServiceError(f"{dependency} is not an installed "
                                          f"{' or '.join(sorted(t.value for t in descriptor.dependency_types))}")
        return names

    def _override_files(self, directory: Path) -> List[Path]:
        override = directory / ROLLBACK_FILE
        return [override] if override.exists() else []

    def _ensure_network(self, resource: Resource) -> bool:
        if resource.shared:
            with self._resource_locks.hold(resource.identifier):
                return self.runtime.create_network(resource.identifier)
        return self.runtime.create_network(resource.identifier)

    def _run_adapters(self, ctx: _RunContext, record: StepRecord, hook: str):
        instance = self.registry.get(ctx.name) or ctx.instance
        errors = []
        for kind in ctx.descriptor.integration_kinds:
            adapter = self.adapters.get(kind)
            if adapter is None:
                continue
            try:
                record.warnings.extend(getattr(adapter, hook)(instance))
                record.notes.append(f"{kind} updated")
            except Exception as e:
                errors.append(f"{kind}: {e}")
        if errors:
            raise IntegrationError('; '.join(errors))

    # ======================================================= install steps

    def _step_create_directories(self, ctx: _RunContext, record: StepRecord):
        directory = ctx.directory
        if directory.exists() and any(directory.iterdir()):
            raise ServiceExistsError(f"{directory} already exists and is not empty")
        if not directory.exists():
            directory.mkdir(parents=True)
            ctx.created_directories.append(directory)
        record.notes.append(f"directory {directory}")

    def _step_copy_configs(self, ctx: _RunContext, record: StepRecord):
        written = ctx.rendered.write(ctx.directory)
        record.notes.extend(f"wrote {path.name}" for path in written)
        if ctx.descriptor.type == ServiceType.METRICS:
            metrics = self.adapters.get(METRICS_INTEGRATION)
            if metrics is not None:
                joined = metrics.bootstrap(ctx.name, ctx.directory)
                record.notes.append('wrote prometheus.yml')
                record.notes.extend(f"joined {network}" for network in joined)

    def _step_setup_networking(self, ctx: _RunContext, record: StepRecord):
        for resource in ctx.resources.networks:
            if self._ensure_network(resource):
                ctx.created_networks.append(resource)
                record.notes.append(f"created network {resource.identifier}")
            else:
                record.notes.append(f"network {resource.identifier} exists")

    def _step_connect_to_dependencies(self, ctx: _RunContext, record: StepRecord):
        adapter = self.adapters[DEPENDENT_CONFIG_INTEGRATION]
        if not ctx.dependencies:
            record.warnings.append('no beacon node or signer to connect to')
        for dependency_name in ctx.dependencies:
            dependency = self.registry.get(dependency_name)
            if dependency is None or dependency.status in INACTIVE_STATUSES:
                raise UnknownServiceError(f"Dependency {dependency_name} is no longer installed")
            for network in adapter.isolated_networks(dependency):
                if not self.runtime.network_exists(network):
                    raise IntegrationError(f"Network {network} of {dependency_name} does not exist")
            record.warnings.extend(adapter.link(self.registry.get(ctx.name), dependency))
            record.notes.append(f"linked to {dependency_name}")

    def _step_start_services(self, ctx: _RunContext, record: StepRecord):
        extra = self._override_files(ctx.directory)
        self.runtime.up(ctx.directory, extra_files=extra)
        if extra:
            record.notes.append(f"started with pinned images from {ROLLBACK_FILE}")

    def _step_integrate(self, ctx: _RunContext, record: StepRecord):
        self._run_adapters(ctx, record, 'on_after_install')

    def _rollback_install(self, ctx: _RunContext, failed: StepRecord) -> List[str]:
        """Best-effort cleanup of everything this install created"""
        notes = []
        # Containers and volumes only exist once compose up has been attempted
        start = ctx.run.step('start_services')
        if start is not None and start.status in (StepStatus.SUCCEEDED, StepStatus.FAILED_CRITICAL):
            try:
                containers = self.runtime.list_matching(ResourceKind.CONTAINER, ctx.resources.containers)
                for removed in self.runtime.remove_containers(containers):
                    notes.append(f"removed container {removed}")
                volumes = self.runtime.list_matching(ResourceKind.VOLUME, ctx.resources.volumes)
                for removed in self.runtime.remove_volumes(volumes):
                    notes.append(f"removed volume {removed}")
            except Exception as e:
                notes.append(f"container cleanup incomplete: {e}")

        shared = self.adapters[SHARED_RESOURCE_INTEGRATION]
        for resource in reversed(ctx.created_networks):
            try:
                if resource.shared:
                    with self._resource_locks.hold(resource.identifier):
                        if shared.on_shared_resource_check(resource.identifier, exclude=ctx.name):
                            notes.append(f"kept shared network {resource.identifier}")
                            continue
                        self.runtime.remove_network(resource.identifier)
                else:
                    self.runtime.remove_network(resource.identifier)
                notes.append(f"removed network {resource.identifier}")
            except Exception as e:
                notes.append(f"could not remove network {resource.identifier}: {e}")

        for directory in reversed(ctx.created_directories):
            try:
                shutil.rmtree(directory)
                notes.append(f"removed directory {directory}")
            except OSError as e:
                notes.append(f"could not remove {directory}: {e}")
        return notes

    # ======================================================== remove steps

    def _step_stop_services(self, ctx: _RunContext, record: StepRecord):
        handles = self.runtime.list_matching(ResourceKind.CONTAINER, ctx.resources.containers)
        by_timeout: Dict[int, list] = {}
        for handle in handles:
            client = handle.name[len(ctx.name) + 1:] if handle.name.startswith(f"{ctx.name}-") else handle.name
            by_timeout.setdefault(stop_timeout_for(client, self.settings.stop_timeout), []).append(handle)
        stopped = []
        for timeout, group in sorted(by_timeout.items()):
            stopped.extend(self.runtime.stop(group, timeout))
        record.notes.append(f"stopped {len(stopped)} container(s)")

    def _step_update_dependents(self, ctx: _RunContext, record: StepRecord):
        adapter = self.adapters.get(DEPENDENT_CONFIG_INTEGRATION)
        if adapter is None:
            return
        errors = []
        for dependent in self._dependent_instances(ctx.descriptor.type, exclude=ctx.name):
            # The dependent's files and containers change, so hold its slot like any operation on it
            guard = LifecycleRun('reconfigure', dependent.name)
            try:
                with self._single_flight(dependent.name, guard):
                    current = self.registry.get(dependent.name)
                    if current is None or current.status in INACTIVE_STATUSES:
                        continue
                    record.warnings.extend(adapter.on_dependency_removed(current, ctx.name))
                    record.notes.append(f"updated {dependent.name}")
            except ConcurrentOperationError as e:
                errors.append(f"{dependent.name}: not updated, {e.operation} in progress")
            except Exception as e:
                errors.append(f"{dependent.name}: {e}")
        if errors:
            raise IntegrationError('; '.join(errors))

    def _step_cleanup_integrations(self, ctx: _RunContext, record: StepRecord):
        self._run_adapters(ctx, record, 'on_before_remove')

    def _step_remove_containers(self, ctx: _RunContext, record: StepRecord):
        handles = self.runtime.list_matching(ResourceKind.CONTAINER, ctx.resources.containers)
        removed = self.runtime.remove_containers(handles)
        record.notes.append(f"removed {len(removed)} container(s)")

    def _step_remove_volumes(self, ctx: _RunContext, record: StepRecord):
        handles = self.runtime.list_matching(ResourceKind.VOLUME, ctx.resources.volumes)
        removed = self.runtime.remove_volumes(handles)
        record.notes.append(f"removed {len(removed)} volume(s)")

    def _step_remove_networks(self, ctx: _RunContext, record: StepRecord):
        shared = self.adapters[SHARED_RESOURCE_INTEGRATION]
        for resource in ctx.resources.networks:
            network = resource.identifier
            if not resource.shared:
                for container in self.runtime.disconnect_all(network):
                    record.notes.append(f"disconnected {container} from {network}")
                if self.runtime.remove_network(network):
                    record.notes.append(f"removed network {network}")
                continue

            with self._resource_locks.hold(network):
                if shared.on_shared_resource_check(network, exclude=ctx.name):
                    record.notes.append(f"kept shared network {network} (still in use)")
                    continue
                try:
                    if self.runtime.remove_network(network):
                        record.notes.append(f"released shared network {network}")
                except ResourceInUseError as e:
                    record.warnings.append(f"shared network {network} left in place: {e}")

    def _step_remove_directories(self, ctx: _RunContext, record: StepRecord):
        root = Path(self.settings.services_root).resolve()
        for resource in ctx.resources.directories:
            path = Path(resource.identifier)
            if path.resolve().parent != root:
                raise ValueError(f"Refusing to delete {path} outside {root}")
            if path.exists():
                shutil.rmtree(path)
                record.notes.append(f"deleted {path}")

    def _step_unregister(self, ctx: _RunContext, record: StepRecord):
        ports = (ctx.instance.metadata.get('ports') or {}).values()
        self.registry.transition(ctx.name, ServiceStatus.ABSENT)
        self.ports.release(ctx.name)
        if ports:
            record.notes.append(f"released ports {', '.join(str(p) for p in sorted(ports))}")

    # ================================================= start / update steps

    def _step_ensure_networks(self, ctx: _RunContext, record: StepRecord):
        for resource in ctx.resources.networks:
            if self._ensure_network(resource):
                record.notes.append(f"recreated network {resource.identifier}")
        adapter = self.adapters[DEPENDENT_CONFIG_INTEGRATION]
        for dependency_name in ctx.dependencies:
            dependency = self.registry.get(dependency_name)
            if dependency is None:
                continue
            for network in adapter.isolated_networks(dependency):
                if not self.runtime.network_exists(network):
                    raise IntegrationError(f"Network {network} of dependency {dependency_name} is missing")

    def _step_health_check(self, ctx: _RunContext, record: StepRecord):
        attempts = max(1, self.settings.health_check_retries)
        unhealthy: Dict[str, str] = {}
        for attempt in range(1, attempts + 1):
            states = self.runtime.service_states(ctx.directory)
            unhealthy = {service: state for service, state in states.items() if state != 'running'}
            if states and not unhealthy:
                record.notes.append(f"{len(states)} service(s) running")
                return
            if attempt < attempts:
                time.sleep(self.settings.health_check_interval)
        detail = ', '.join(f"{s}={state}" for s, state in sorted(unhealthy.items())) or 'no containers'
        raise HealthCheckError(f"not healthy after {attempts} check(s): {detail}")

    def _step_pull_images(self, ctx: _RunContext, record: StepRecord):
        ctx.previous_images = self.runtime.service_images(ctx.directory)
        record.notes.append(f"recorded {len(ctx.previous_images)} running image(s)")
        self.runtime.pull(ctx.directory)

    def _step_recreate_services(self, ctx: _RunContext, record: StepRecord):
        self.runtime.up(ctx.directory, recreate=True)

    def _rollback_update(self, ctx: _RunContext, failed: StepRecord) -> List[str]:
        if failed.name == 'pull_images':
            return ['containers were not touched']
        if not ctx.previous_images:
            return ['no previous images recorded, nothing to roll back to']
        try:
            override = write_rollback_override(ctx.directory, ctx.previous_images)
            self.runtime.up(ctx.directory, recreate=True, extra_files=[override])
        except Exception as e:
            return [f"rollback to previous images failed: {e}"]
        return [f"recreated {', '.join(sorted(ctx.previous_images))} from previous images ({ROLLBACK_FILE})"]

    def _finish_update(self, ctx: _RunContext):
        override = ctx.directory / ROLLBACK_FILE
        if override.exists():
            override.unlink()
            logger.info(f"[{ctx.name}] removed {ROLLBACK_FILE}")
        instance = self.registry.get(ctx.name)
        metadata = dict(instance.metadata)
        metadata['image_ids'] = self.runtime.service_images(ctx.directory)
        self.registry.update(ctx.name, metadata=metadata)

