"""Domain models for the delegation scheduler task list."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from taskhive.scheduler.mission import WorkerResult


class TaskStatus(str, Enum):
    """Task lifecycle states owned by a single scheduler loop."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


RESOLVED_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.BLOCKED, TaskStatus.CANCELLED})


class TaskPriority(str, Enum):
    """Selection tie-break; never preempts a running dispatch."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANKS[self]


_PRIORITY_RANKS = {
    TaskPriority.HIGH: 0,
    TaskPriority.MEDIUM: 1,
    TaskPriority.LOW: 2,
}


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TIMEOUT = "timeout"
    TRANSIENT = "transient"
    MALFORMED_RESULT = "malformed_result"
    QUOTA_EXHAUSTED = "quota_exhausted"
    NON_RETRYABLE = "non_retryable"


RETRYABLE_FAILURE_CLASSES = frozenset(
    {
        FailureClass.TIMEOUT,
        FailureClass.TRANSIENT,
        FailureClass.MALFORMED_RESULT,
        FailureClass.QUOTA_EXHAUSTED,
    },
)


class Approach(str, Enum):
    """How a dispatch attempt is shaped relative to the previous one."""

    SAME = "same"
    ADJUSTED = "adjusted"


class Route(str, Enum):
    """Where a task is executed."""

    LOCAL = "local"
    DELEGATE = "delegate"
    NESTED = "nested"


@dataclass(frozen=True, slots=True)
class TaskSpec:
    """Caller-supplied description of one subtask of a unit of work."""

    task_id: str
    content: str
    worker_kind: str = "default"
    priority: TaskPriority = TaskPriority.MEDIUM
    dependencies: frozenset[str] = frozenset()
    scope_must: tuple[str, ...] = ()
    scope_must_not: tuple[str, ...] = ()
    constraints: tuple[str, ...] = ()
    success_criteria: tuple[str, ...] = ()
    deliverables: tuple[str, ...] = ()
    estimated_steps: int = 1
    subtasks: tuple[TaskSpec, ...] = ()


@dataclass(frozen=True, slots=True)
class Work:
    """One unit of work submitted to a scheduler, already decomposed."""

    goal: str
    tasks: tuple[TaskSpec, ...]
    context_summary: str = ""
    constraints: tuple[str, ...] = ()


@dataclass(slots=True)
class TaskEvent:
    """One entry of a task's audit trail."""

    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SchedulerRunSummary:
    """Aggregate loop counters for reporting."""

    dispatched: int = 0
    local: int = 0
    succeeded: int = 0
    retried: int = 0
    blocked: int = 0
    cancelled: int = 0
    discarded: int = 0


@dataclass(slots=True)
class Task:
    """Trackable unit of work inside one TodoList."""

    spec: TaskSpec
    sequence: int
    max_attempts: int
    assigned_worker_kind: str
    status: TaskStatus = TaskStatus.PENDING
    attempt_count: int = 0
    result: WorkerResult | None = None
    blocker_reason: str | None = None
    failure_class: FailureClass | None = None
    route: Route | None = None
    approaches: list[Approach] = field(default_factory=list)
    events: list[TaskEvent] = field(default_factory=list)

    @property
    def task_id(self) -> str:
        return self.spec.task_id

    @property
    def content(self) -> str:
        return self.spec.content

    @property
    def priority(self) -> TaskPriority:
        return self.spec.priority

    @property
    def dependencies(self) -> frozenset[str]:
        return self.spec.dependencies

    @property
    def is_resolved(self) -> bool:
        """Completed, cancelled, or blocked: nothing more will happen automatically."""

        return self.status in RESOLVED_STATUSES
