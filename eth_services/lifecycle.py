"""
Lifecycle run records - one LifecycleRun per operation invocation, with an
ordered StepRecord per descriptor step. Used for progress reporting, the
final completion report and resumption after a failure.
"""
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import NonCriticalStepFailure, StepFailure
from .locator import ResourceSet


class StepStatus(str, Enum):
    PENDING = 'pending'
    SUCCEEDED = 'succeeded'
    FAILED_CRITICAL = 'failed_critical'
    FAILED_NON_CRITICAL = 'failed_non_critical'
    SKIPPED = 'skipped'


class RunOutcome(str, Enum):
    RUNNING = 'running'
    SUCCEEDED = 'succeeded'
    COMPLETED_WITH_WARNINGS = 'completed_with_warnings'
    FAILED = 'failed'
    CANCELLED = 'cancelled'
    NOT_FOUND = 'not_found'
    DECLINED = 'declined'


@dataclass
class StepRecord:
    name: str
    critical: bool
    status: StepStatus = StepStatus.PENDING
    error: Optional[str] = None
    notes: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    # Set while the run is live; the registry copy only keeps ``error``
    failure: Optional[StepFailure] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'critical': self.critical,
            'status': self.status.value,
            'error': self.error,
            'notes': list(self.notes),
            'warnings': list(self.warnings),
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StepRecord':
        return cls(
            name=data['name'],
            critical=bool(data.get('critical', True)),
            status=StepStatus(data.get('status', StepStatus.PENDING.value)),
            error=data.get('error'),
            notes=list(data.get('notes') or []),
            warnings=list(data.get('warnings') or []),
            started_at=_parse_time(data.get('started_at')),
            completed_at=_parse_time(data.get('completed_at')),
        )


@dataclass
class LifecycleRun:
    operation: str
    instance: str
    steps: List[StepRecord] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    outcome: RunOutcome = RunOutcome.RUNNING
    error: Optional[str] = None
    rollback: List[str] = field(default_factory=list)
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    def step(self, name: str) -> Optional[StepRecord]:
        for record in self.steps:
            if record.name == name:
                return record
        return None

    @property
    def last_completed_step(self) -> Optional[str]:
        done = [s.name for s in self.steps
                if s.status in (StepStatus.SUCCEEDED, StepStatus.FAILED_NON_CRITICAL)]
        return done[-1] if done else None

    @property
    def failed_step(self) -> Optional[StepRecord]:
        for record in self.steps:
            if record.status == StepStatus.FAILED_CRITICAL:
                return record
        return None

    @property
    def non_critical_failures(self) -> List[NonCriticalStepFailure]:
        return [s.failure for s in self.steps if isinstance(s.failure, NonCriticalStepFailure)]

    @property
    def warnings(self) -> List[str]:
        """Non-critical failures plus warnings raised by succeeding steps"""
        messages = []
        for s in self.steps:
            if s.status == StepStatus.FAILED_NON_CRITICAL:
                messages.append(f"{s.name}: {s.error}")
            messages.extend(f"{s.name}: {w}" for w in s.warnings)
        return messages

    @property
    def ok(self) -> bool:
        return self.outcome in (RunOutcome.SUCCEEDED, RunOutcome.COMPLETED_WITH_WARNINGS)

    def finish(self, outcome: RunOutcome, error: Optional[str] = None):
        self.outcome = outcome
        self.error = error
        self.completed_at = datetime.now()

    def summary(self) -> Dict[str, Any]:
        """Completion report handed back to the caller"""
        failed = self.failed_step
        return {
            'instance': self.instance,
            'operation': self.operation,
            'outcome': self.outcome.value,
            'failed_step': failed.name if failed else None,
            'error': self.error,
            'warnings': self.warnings,
            'last_completed_step': self.last_completed_step,
            'rollback': list(self.rollback),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'operation': self.operation,
            'instance': self.instance,
            'steps': [s.to_dict() for s in self.steps],
            'started_at': self.started_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'outcome': self.outcome.value,
            'error': self.error,
            'rollback': list(self.rollback),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LifecycleRun':
        return cls(
            operation=data['operation'],
            instance=data['instance'],
            steps=[StepRecord.from_dict(s) for s in data.get('steps') or []],
            started_at=_parse_time(data.get('started_at')) or datetime.now(),
            completed_at=_parse_time(data.get('completed_at')),
            outcome=RunOutcome(data.get('outcome', RunOutcome.FAILED.value)),
            error=data.get('error'),
            rollback=list(data.get('rollback') or []),
        )


@dataclass
class PlannedStep:
    name: str
    critical: bool
    description: str = ''


@dataclass
class Plan:
    """Preview of an operation: its steps and what it would touch"""
    instance: str
    service_type: str
    operation: str
    current_status: str
    steps: List[PlannedStep]
    resources: ResourceSet
    dependents: List[str] = field(default_factory=list)
    integrations: List[str] = field(default_factory=list)
    shared_retained: List[str] = field(default_factory=list)
    shared_released: List[str] = field(default_factory=list)
    allowed: bool = True
    reason: Optional[str] = None


def _parse_time(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
