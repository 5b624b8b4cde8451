"""Ordered task list owned by exactly one scheduler instance."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any

from taskhive.scheduler.mission import WorkerResult
from taskhive.scheduler.models import (
    Approach,
    FailureClass,
    Route,
    Task,
    TaskEvent,
    TaskSpec,
    TaskStatus,
)


class TodoList:
    """Task bookkeeping for one top-level request.

    Only the owning scheduler's loop thread calls the mutating methods; the
    list itself does no locking.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}

    def __len__(self) -> int:
        return len(self._tasks)

    def add(
        self,
        specs: Iterable[TaskSpec],
        *,
        max_attempts_for: Callable[[TaskSpec], int],
    ) -> list[Task]:
        """Append tasks in insertion order; ids must be unique within the list."""

        specs = list(specs)
        incoming_ids = [spec.task_id for spec in specs]
        known_ids = set(self._tasks) | set(incoming_ids)
        for spec in specs:
            if spec.task_id in self._tasks or incoming_ids.count(spec.task_id) > 1:
                raise ValueError(f"Duplicate task id: {spec.task_id!r}")
            unknown = sorted(spec.dependencies - known_ids)
            if unknown:
                raise ValueError(
                    f"Task {spec.task_id!r} depends on unknown tasks: {', '.join(unknown)}",
                )

        added: list[Task] = []
        for spec in specs:
            max_attempts = max_attempts_for(spec)
            if max_attempts < 1:
                raise ValueError(f"max_attempts must be >= 1 for task {spec.task_id!r}")
            task = Task(
                spec=spec,
                sequence=len(self._tasks),
                max_attempts=max_attempts,
                assigned_worker_kind=spec.worker_kind,
            )
            task.events.append(
                TaskEvent(
                    event_type="added",
                    status_from=None,
                    status_to=TaskStatus.PENDING,
                    details={"max_attempts": max_attempts},
                ),
            )
            self._tasks[spec.task_id] = task
            added.append(task)
        return added

    def get(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise RuntimeError(f"Task not found: {task_id}")
        return task

    def tasks(self) -> list[Task]:
        """All tasks in insertion order."""

        return sorted(self._tasks.values(), key=lambda task: task.sequence)

    def with_status(self, *statuses: TaskStatus) -> list[Task]:
        return [task for task in self.tasks() if task.status in statuses]

    def mark_in_progress(
        self,
        task_id: str,
        *,
        route: Route,
        worker_kind: str,
        approach: Approach = Approach.SAME,
    ) -> Task:
        """Start one dispatch attempt; consumes an attempt."""

        task = self._transition(task_id, expected=(TaskStatus.PENDING,))
        if task.attempt_count >= task.max_attempts:
            raise RuntimeError(
                f"Task {task_id} exhausted attempts ({task.attempt_count}/{task.max_attempts}).",
            )
        if any(self._tasks[dep].status != TaskStatus.COMPLETED for dep in task.dependencies):
            raise RuntimeError(f"Task {task_id} has unsatisfied dependencies.")
        task.attempt_count += 1
        task.route = route
        task.assigned_worker_kind = worker_kind
        task.approaches.append(approach)
        self._set_status(
            task,
            TaskStatus.IN_PROGRESS,
            "dispatch_started",
            {
                "attempt": task.attempt_count,
                "route": route.value,
                "worker_kind": worker_kind,
                "approach": approach.value,
            },
        )
        return task

    def mark_completed(self, task_id: str, result: WorkerResult) -> Task:
        task = self._transition(task_id, expected=(TaskStatus.IN_PROGRESS,))
        task.result = result
        task.blocker_reason = None
        task.failure_class = None
        self._set_status(task, TaskStatus.COMPLETED, "completed", {"attempt": task.attempt_count})
        return task

    def mark_blocked(
        self,
        task_id: str,
        reason: str,
        *,
        failure_class: FailureClass | None = None,
    ) -> Task:
        """Record an unresolved failure; the task is never re-dispatched automatically."""

        task = self._transition(task_id, expected=(TaskStatus.IN_PROGRESS, TaskStatus.PENDING))
        task.blocker_reason = reason
        task.failure_class = failure_class
        self._set_status(
            task,
            TaskStatus.BLOCKED,
            "blocked",
            {
                "reason": reason,
                "failure_class": failure_class.value if failure_class else None,
            },
        )
        return task

    def mark_pending(self, task_id: str, *, failure_class: FailureClass, reason: str) -> Task:
        """Re-queue after a retryable failure; the task re-enters normal selection."""

        task = self._transition(task_id, expected=(TaskStatus.IN_PROGRESS,))
        task.failure_class = failure_class
        self._set_status(
            task,
            TaskStatus.PENDING,
            "retry_scheduled",
            {"failure_class": failure_class.value, "reason": reason},
        )
        return task

    def mark_cancelled(self, task_id: str, reason: str) -> Task:
        task = self._transition(task_id, expected=(TaskStatus.PENDING, TaskStatus.IN_PROGRESS))
        self._set_status(task, TaskStatus.CANCELLED, "cancelled", {"reason": reason})
        return task

    def cancel_unresolved(self, reason: str) -> list[Task]:
        """Cancel every pending or in-progress task."""

        return [
            self.mark_cancelled(task.task_id, reason)
            for task in self.with_status(TaskStatus.PENDING, TaskStatus.IN_PROGRESS)
        ]

    def add_event(self, task_id: str, event_type: str, details: dict[str, Any]) -> None:
        task = self.get(task_id)
        task.events.append(
            TaskEvent(
                event_type=event_type,
                status_from=task.status,
                status_to=task.status,
                details=details,
            ),
        )

    def next_ready(self) -> Task | None:
        """Highest-priority pending task whose dependencies all completed.

        Ties are broken by priority rank, then insertion order.
        """

        ready = [
            task
            for task in self._tasks.values()
            if task.status == TaskStatus.PENDING
            and task.attempt_count < task.max_attempts
            and all(self._tasks[dep].status == TaskStatus.COMPLETED for dep in task.dependencies)
        ]
        if not ready:
            return None
        return min(ready, key=lambda task: (task.priority.rank, task.sequence))

    def stranded(self) -> list[tuple[Task, Task]]:
        """Pending tasks paired with a dependency that can no longer complete."""

        stranded: list[tuple[Task, Task]] = []
        for task in self.with_status(TaskStatus.PENDING):
            for dep_id in sorted(task.dependencies):
                dependency = self._tasks[dep_id]
                if dependency.status in {TaskStatus.BLOCKED, TaskStatus.CANCELLED}:
                    stranded.append((task, dependency))
                    break
        return stranded

    def has_non_terminal(self) -> bool:
        """True while any task is still pending or in progress.

        ``blocked`` counts as resolved here: it is terminal for the task's own
        retry lifecycle even though the request-level report surfaces it.
        """

        return any(not task.is_resolved for task in self._tasks.values())

    def _transition(self, task_id: str, *, expected: tuple[TaskStatus, ...]) -> Task:
        task = self.get(task_id)
        if task.status not in expected:
            allowed = ", ".join(status.value for status in expected)
            raise RuntimeError(
                f"Task {task_id} cannot transition from status={task.status.value} "
                f"(expected one of: {allowed}).",
            )
        return task

    def _set_status(
        self,
        task: Task,
        status: TaskStatus,
        event_type: str,
        details: dict[str, Any],
    ) -> None:
        previous = task.status
        task.status = status
        task.events.append(
            TaskEvent(
                event_type=event_type,
                status_from=previous,
                status_to=status,
                details=details,
            ),
        )
