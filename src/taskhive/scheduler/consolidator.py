"""Single-shot consolidation of a resolved task list into the final report."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any

from taskhive.scheduler.mission import Decision, ResultStatus, WorkerResult
from taskhive.scheduler.models import SchedulerRunSummary, TaskEvent, TaskSpec, TaskStatus
from taskhive.scheduler.todo_list import TodoList

RESUBMIT_SUFFIX = "-resubmit"


class ReportStatus(str, Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class CompletedEntry:
    task_id: str
    content: str
    attempts: int
    worker_kind: str
    result: WorkerResult


@dataclass(frozen=True, slots=True)
class BlockedEntry:
    task_id: str
    content: str
    attempts: int
    reason: str
    failure_class: str | None
    spec: TaskSpec


@dataclass(frozen=True, slots=True)
class CancelledEntry:
    task_id: str
    content: str
    attempts: int


@dataclass(frozen=True, slots=True)
class Report:
    """Final outcome of one top-level request: successes and documented blockers."""

    goal: str
    status: ReportStatus
    completed: tuple[CompletedEntry, ...]
    blocked: tuple[BlockedEntry, ...]
    cancelled: tuple[CancelledEntry, ...]
    summary: SchedulerRunSummary = field(default_factory=SchedulerRunSummary)
    events: dict[str, tuple[TaskEvent, ...]] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.completed) + len(self.blocked) + len(self.cancelled)

    def resubmission_specs(self) -> list[TaskSpec]:
        """Blocked tasks re-expressed as new tasks for external re-submission.

        The copies get fresh ids and no dependencies; the original blocked
        tasks stay blocked in this report.
        """

        return [
            replace(
                entry.spec,
                task_id=f"{entry.task_id}{RESUBMIT_SUFFIX}",
                dependencies=frozenset(),
            )
            for entry in self.blocked
        ]

    def to_payload(self, *, include_events: bool = False) -> dict[str, Any]:
        """Serialize report for JSON output."""

        payload: dict[str, Any] = {
            "goal": self.goal,
            "status": self.status.value,
            "completed": [
                {
                    "task_id": entry.task_id,
                    "content": entry.content,
                    "attempts": entry.attempts,
                    "worker_kind": entry.worker_kind,
                    "result": entry.result.to_payload(),
                }
                for entry in self.completed
            ],
            "blocked": [
                {
                    "task_id": entry.task_id,
                    "content": entry.content,
                    "attempts": entry.attempts,
                    "reason": entry.reason,
                    "failure_class": entry.failure_class,
                }
                for entry in self.blocked
            ],
            "cancelled": [
                {"task_id": entry.task_id, "content": entry.content, "attempts": entry.attempts}
                for entry in self.cancelled
            ],
            "summary": asdict(self.summary),
        }
        if include_events:
            payload["events"] = {
                task_id: [
                    {
                        "event_type": event.event_type,
                        "status_from": event.status_from.value if event.status_from else None,
                        "status_to": event.status_to.value if event.status_to else None,
                        "details": event.details,
                    }
                    for event in events
                ]
                for task_id, events in self.events.items()
            }
        return payload


def consolidate(
    todo_list: TodoList,
    *,
    goal: str,
    summary: SchedulerRunSummary | None = None,
) -> Report:
    """Reduce a resolved task list into one report.

    Pure function of the task list: running it twice on an unchanged list
    yields equal reports.
    """

    if todo_list.has_non_terminal():
        open_tasks = todo_list.with_status(TaskStatus.PENDING, TaskStatus.IN_PROGRESS)
        unresolved = ", ".join(task.task_id for task in open_tasks)
        raise RuntimeError(f"Cannot consolidate while tasks are unresolved: {unresolved}")

    tasks = todo_list.tasks()
    completed: list[CompletedEntry] = []
    blocked: list[BlockedEntry] = []
    cancelled: list[CancelledEntry] = []
    for task in tasks:
        if task.status == TaskStatus.COMPLETED and task.result is not None:
            completed.append(
                CompletedEntry(
                    task_id=task.task_id,
                    content=task.content,
                    attempts=task.attempt_count,
                    worker_kind=task.assigned_worker_kind,
                    result=task.result,
                ),
            )
        elif task.status == TaskStatus.BLOCKED:
            blocked.append(
                BlockedEntry(
                    task_id=task.task_id,
                    content=task.content,
                    attempts=task.attempt_count,
                    reason=task.blocker_reason or "unknown",
                    failure_class=task.failure_class.value if task.failure_class else None,
                    spec=task.spec,
                ),
            )
        elif task.status == TaskStatus.CANCELLED:
            cancelled.append(
                CancelledEntry(
                    task_id=task.task_id,
                    content=task.content,
                    attempts=task.attempt_count,
                ),
            )

    if cancelled:
        status = ReportStatus.CANCELLED
    elif blocked:
        status = ReportStatus.PARTIAL
    else:
        status = ReportStatus.COMPLETE

    return Report(
        goal=goal,
        status=status,
        completed=tuple(completed),
        blocked=tuple(blocked),
        cancelled=tuple(cancelled),
        summary=replace(summary) if summary is not None else SchedulerRunSummary(),
        events={task.task_id: tuple(task.events) for task in tasks},
    )


def report_to_worker_result(report: Report) -> WorkerResult:
    """Present a nested scheduler's report through the worker Result contract."""

    if report.status == ReportStatus.COMPLETE:
        deliverables: list[str] = []
        decisions: list[Decision] = []
        for entry in report.completed:
            for item in entry.result.deliverables:
                if item not in deliverables:
                    deliverables.append(item)
            decisions.extend(entry.result.decisions)
        return WorkerResult(
            status=ResultStatus.COMPLETE,
            deliverables=tuple(deliverables),
            decisions=tuple(decisions),
            rationale=f"{len(report.completed)} subtasks completed for: {report.goal}",
        )

    problems = [f"{entry.task_id}: {entry.reason}" for entry in report.blocked]
    problems.extend(f"{entry.task_id}: cancelled" for entry in report.cancelled)
    return WorkerResult(
        status=ResultStatus.BLOCKED,
        reason=f"{len(problems)} subtasks unresolved ({'; '.join(problems)})",
    )


def render_report_lines(report: Report) -> list[str]:
    """Human-readable report lines for CLI output."""

    lines = [
        f"Goal: {report.goal}",
        f"Status: {report.status.value}",
        (
            f"Tasks: total={report.total} completed={len(report.completed)} "
            f"blocked={len(report.blocked)} cancelled={len(report.cancelled)}"
        ),
        (
            f"Dispatch: dispatched={report.summary.dispatched} local={report.summary.local} "
            f"retried={report.summary.retried} discarded={report.summary.discarded}"
        ),
    ]
    if report.completed:
        lines.append("Completed:")
        for entry in report.completed:
            lines.append(
                f"  {entry.task_id} attempts={entry.attempts} kind={entry.worker_kind} "
                f"{entry.result.summary()}",
            )
    if report.blocked:
        lines.append("Blocked:")
        for entry in report.blocked:
            lines.append(
                f"  {entry.task_id} attempts={entry.attempts} "
                f"class={entry.failure_class or '-'} reason={entry.reason}",
            )
    if report.cancelled:
        lines.append("Cancelled:")
        for entry in report.cancelled:
            lines.append(f"  {entry.task_id} attempts={entry.attempts}")
    return lines
