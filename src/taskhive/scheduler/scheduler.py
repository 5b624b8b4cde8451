"""Scheduler execution loop: select, dispatch, apply outcomes, consolidate."""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass, field, replace
from typing import Any
from uuid import uuid4

from taskhive.config import LevelSettings, SchedulerSettings
from taskhive.scheduler.consolidator import Report, consolidate, report_to_worker_result
from taskhive.scheduler.decomposer import subwork_for, validate_work
from taskhive.scheduler.failure_classifier import classify_worker_failure
from taskhive.scheduler.mission import (
    Mission,
    MissionContext,
    MissionScope,
    ResultStatus,
    WorkerResult,
    parse_worker_result,
)
from taskhive.scheduler.models import (
    Approach,
    Route,
    SchedulerRunSummary,
    Task,
    TaskSpec,
    TaskStatus,
    Work,
)
from taskhive.scheduler.queue import DelegationQueue, QueueClosedError
from taskhive.scheduler.retry import approach_for_attempt, decide_retry
from taskhive.scheduler.routing import RouteDecision, RoutingDefaults, resolve_route
from taskhive.scheduler.todo_list import TodoList
from taskhive.scheduler.workers.base import Worker, WorkerTimeoutError
from taskhive.scheduler.workers.local import WorkerRegistry

logger = logging.getLogger(__name__)

ADJUSTED_APPROACH_CONSTRAINT = (
    "Previous attempts failed; narrow the work to the must-have scope items only."
)


@dataclass(slots=True)
class _InFlight:
    attempt: int
    mission_id: str
    deadline: float
    future: Future[Any]


@dataclass(slots=True)
class _Outcome:
    task_id: str
    attempt: int
    future: Future[Any]


@dataclass(slots=True)
class _Run:
    """State of one top-level request; discarded after the report is built."""

    run_id: str
    work: Work
    todo: TodoList
    dispatch_queue: DelegationQueue
    outcomes: queue.Queue[_Outcome] = field(default_factory=queue.Queue)
    in_flight: dict[str, _InFlight] = field(default_factory=dict)
    summary: SchedulerRunSummary = field(default_factory=SchedulerRunSummary)
    finished: bool = False


class Scheduler:
    """Owns one TodoList and one DelegationQueue per submitted request.

    All task state changes happen on the thread that called ``submit``;
    worker invocations run on the queue's dispatch threads and report back
    through an outcome queue.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        workers: WorkerRegistry,
        settings: SchedulerSettings | None = None,
        routing_defaults: RoutingDefaults | None = None,
        local_workers: WorkerRegistry | None = None,
        depth: int = 0,
        name: str = "root",
        abort_event: threading.Event | None = None,
    ) -> None:
        self.workers = workers
        self.settings = settings or SchedulerSettings()
        self.settings.validate()
        self.local_workers = local_workers or WorkerRegistry()
        defaults = routing_defaults or RoutingDefaults(
            local_max_steps=self.settings.local_max_steps,
        )
        self.routing_defaults = replace(
            defaults,
            local_kinds=defaults.local_kinds | frozenset(self.local_workers.kinds()),
        )
        self.depth = depth
        self.name = name
        self._shared_abort = abort_event
        self._abort = abort_event or threading.Event()
        self._abort_reason = "cancelled by caller"
        self._run_lock = threading.Lock()

    @property
    def level(self) -> LevelSettings:
        return self.settings.level(self.depth)

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """Abort the current request; safe to call from any thread."""

        self._abort_reason = reason
        self._abort.set()

    def submit(self, work: Work) -> Report:
        """Run one unit of work to quiescence and return its single report."""

        if not self._run_lock.acquire(blocking=False):
            raise RuntimeError(f"Scheduler {self.name} is already running a request.")
        try:
            if self._shared_abort is None:
                self._abort = threading.Event()
            self._abort_reason = "cancelled by caller"
            validate_work(
                work,
                min_tasks=self.settings.min_tasks,
                max_tasks=self.settings.max_tasks,
                recursive=False,
            )
            todo = TodoList()
            todo.add(work.tasks, max_attempts_for=self._max_attempts_for)
            run = _Run(
                run_id=uuid4().hex[:8],
                work=work,
                todo=todo,
                dispatch_queue=DelegationQueue(
                    max_concurrent=self.level.max_concurrent,
                    throttle_seconds=self.level.throttle_seconds,
                    name=f"{self.name}-queue",
                ),
            )
            logger.info(
                "Scheduler %s (depth %d) run %s started: %d tasks for goal %r",
                self.name,
                self.depth,
                run.run_id,
                len(todo),
                work.goal,
            )
            try:
                self._loop(run)
            finally:
                run.finished = True
                run.dispatch_queue.close()

            report = consolidate(todo, goal=work.goal, summary=run.summary)
            logger.info(
                "Scheduler %s run %s finished: status=%s completed=%d blocked=%d cancelled=%d",
                self.name,
                run.run_id,
                report.status.value,
                len(report.completed),
                len(report.blocked),
                len(report.cancelled),
            )
            return report
        finally:
            self._run_lock.release()

    def _max_attempts_for(self, spec: TaskSpec) -> int:
        if spec.subtasks and self.depth < self.settings.max_depth:
            return self.settings.nested_max_attempts
        return self.settings.leaf_max_attempts

    def _loop(self, run: _Run) -> None:
        while run.todo.has_non_terminal():
            if self._abort.is_set():
                self._cancel_run(run)
                return
            self._expire_overdue(run)
            self._block_stranded(run)
            self._dispatch_ready(run)
            if not run.todo.has_non_terminal():
                return
            if not run.in_flight:
                if run.todo.next_ready() is None:
                    self._block_unreachable(run)
                continue
            self._await_outcomes(run)

    def _dispatch_ready(self, run: _Run) -> None:
        while len(run.in_flight) < self.level.max_concurrent and not self._abort.is_set():
            task = run.todo.next_ready()
            if task is None:
                return
            attempt = task.attempt_count + 1
            approach = approach_for_attempt(attempt=attempt, max_attempts=task.max_attempts)
            decision = resolve_route(
                spec=task.spec,
                depth=self.depth,
                max_depth=self.settings.max_depth,
                defaults=self.routing_defaults,
                approach=approach,
            )
            mission = self._build_mission(run, task, decision, approach, attempt)
            run.todo.mark_in_progress(
                task.task_id,
                route=decision.route,
                worker_kind=decision.worker_kind,
                approach=approach,
            )
            if decision.route == Route.LOCAL:
                self._execute_locally(run, task, mission)
                continue
            self._delegate(run, task, decision, mission)

    def _execute_locally(self, run: _Run, task: Task, mission: Mission) -> None:
        run.summary.local += 1
        logger.debug("Executing %s locally (attempt %d)", task.task_id, mission.attempt)
        try:
            worker = self.local_workers.resolve(mission.worker_kind)
            result = parse_worker_result(worker.run(mission))
        except Exception as error:  # noqa: BLE001
            self._apply_failure(run, task, error)
            return
        self._apply_result(run, task, result)

    def _delegate(self, run: _Run, task: Task, decision: RouteDecision, mission: Mission) -> None:
        try:
            worker = self._worker_for(run, task, decision)
        except Exception as error:  # noqa: BLE001
            self._apply_failure(run, task, error)
            return

        try:
            future = run.dispatch_queue.submit(
                lambda: _invoke(worker, mission),
                label=f"{task.task_id}#{mission.attempt}",
            )
        except QueueClosedError:
            run.todo.mark_cancelled(task.task_id, "delegation queue closed")
            run.summary.cancelled += 1
            return

        run.summary.dispatched += 1
        run.in_flight[task.task_id] = _InFlight(
            attempt=mission.attempt,
            mission_id=mission.mission_id,
            deadline=time.monotonic() + self.settings.dispatch_timeout_seconds,
            future=future,
        )
        logger.info(
            "Dispatched %s attempt %d/%d via %s (%s, kind=%s)",
            task.task_id,
            mission.attempt,
            task.max_attempts,
            decision.route.value,
            mission.approach.value,
            decision.worker_kind,
        )
        future.add_done_callback(
            lambda done, task_id=task.task_id, attempt=mission.attempt: self._on_done(
                run,
                _Outcome(task_id=task_id, attempt=attempt, future=done),
            ),
        )

    def _worker_for(self, run: _Run, task: Task, decision: RouteDecision) -> Worker:
        if decision.route == Route.NESTED:
            return NestedSchedulerWorker(
                scheduler_factory=self._child_factory(task),
                spec=task.spec,
                parent_goal=run.work.goal,
            )
        return self.workers.resolve(decision.worker_kind)

    def _child_factory(self, task: Task) -> Callable[[], Scheduler]:
        abort = self._abort

        def factory() -> Scheduler:
            return Scheduler(
                workers=self.workers,
                settings=self.settings,
                routing_defaults=self.routing_defaults,
                local_workers=self.local_workers,
                depth=self.depth + 1,
                name=f"{self.name}/{task.task_id}",
                abort_event=abort,
            )

        return factory

    def _on_done(self, run: _Run, outcome: _Outcome) -> None:
        if run.finished:
            logger.info(
                "Discarding late result for %s attempt %d: run already reported",
                outcome.task_id,
                outcome.attempt,
            )
            return
        run.outcomes.put(outcome)

    def _await_outcomes(self, run: _Run) -> None:
        try:
            outcome = run.outcomes.get(timeout=self.settings.poll_interval_seconds)
        except queue.Empty:
            return
        self._process_outcome(run, outcome)
        while True:
            try:
                outcome = run.outcomes.get_nowait()
            except queue.Empty:
                return
            self._process_outcome(run, outcome)

    def _process_outcome(self, run: _Run, outcome: _Outcome) -> None:
        flight = run.in_flight.get(outcome.task_id)
        if flight is None or flight.attempt != outcome.attempt:
            run.summary.discarded += 1
            logger.info(
                "Discarding stale result for %s attempt %d",
                outcome.task_id,
                outcome.attempt,
            )
            return
        del run.in_flight[outcome.task_id]
        task = run.todo.get(outcome.task_id)
        if outcome.future.cancelled():
            run.todo.mark_cancelled(task.task_id, "dispatch cancelled before start")
            run.summary.cancelled += 1
            return
        error = outcome.future.exception()
        if error is not None:
            self._apply_failure(run, task, error)
            return
        self._apply_result(run, task, outcome.future.result())

    def _apply_result(self, run: _Run, task: Task, result: WorkerResult) -> None:
        if result.status == ResultStatus.COMPLETE:
            run.todo.mark_completed(task.task_id, result)
            run.summary.succeeded += 1
            logger.info("Task %s completed on attempt %d", task.task_id, task.attempt_count)
            return
        run.todo.mark_blocked(task.task_id, result.reason or "worker reported BLOCKED")
        run.summary.blocked += 1
        logger.warning("Task %s blocked by worker: %s", task.task_id, result.reason)

    def _apply_failure(self, run: _Run, task: Task, error: BaseException) -> None:
        classification = classify_worker_failure(error)
        details = classification.to_event_details()
        details["attempt"] = task.attempt_count
        details["error"] = str(error)
        run.todo.add_event(task.task_id, "attempt_failed", details)

        decision = decide_retry(
            failure_class=classification.failure_class,
            attempt_count=task.attempt_count,
            max_attempts=task.max_attempts,
        )
        if decision.should_retry:
            run.todo.mark_pending(
                task.task_id,
                failure_class=classification.failure_class,
                reason=f"{classification.reason_code}: {error}",
            )
            run.summary.retried += 1
            if decision.extra_delay:
                run.dispatch_queue.penalize(self.settings.quota_penalty_seconds)
            logger.info(
                "Task %s attempt %d failed (%s); %s",
                task.task_id,
                task.attempt_count,
                classification.reason_code,
                decision.reason,
            )
            return

        reason = f"{classification.reason_code}: {error}. {decision.reason}"
        run.todo.mark_blocked(task.task_id, reason, failure_class=classification.failure_class)
        run.summary.blocked += 1
        logger.warning("Task %s blocked: %s", task.task_id, reason)

    def _expire_overdue(self, run: _Run) -> None:
        now = time.monotonic()
        for task_id, flight in list(run.in_flight.items()):
            if now < flight.deadline:
                continue
            del run.in_flight[task_id]
            flight.future.cancel()
            self._apply_failure(
                run,
                run.todo.get(task_id),
                WorkerTimeoutError(
                    f"Dispatch {flight.mission_id} exceeded "
                    f"{self.settings.dispatch_timeout_seconds}s",
                ),
            )

    def _block_stranded(self, run: _Run) -> None:
        while True:
            stranded = run.todo.stranded()
            if not stranded:
                return
            for task, dependency in stranded:
                reason = f"dependency {dependency.task_id} ended {dependency.status.value}"
                run.todo.mark_blocked(task.task_id, reason)
                run.summary.blocked += 1
                logger.warning("Task %s blocked: %s", task.task_id, reason)

    def _block_unreachable(self, run: _Run) -> None:
        for task in run.todo.with_status(TaskStatus.PENDING):
            run.todo.mark_blocked(task.task_id, "no dispatchable path: dependencies never ready")
            run.summary.blocked += 1

    def _cancel_run(self, run: _Run) -> None:
        dropped = run.dispatch_queue.close()
        cancelled = run.todo.cancel_unresolved(self._abort_reason)
        run.summary.cancelled += len(cancelled)
        logger.warning(
            "Scheduler %s run %s cancelled: %d tasks cancelled, %d queued dispatches dropped, "
            "%d in-flight results will be discarded",
            self.name,
            run.run_id,
            len(cancelled),
            dropped,
            len(run.in_flight),
        )
        run.in_flight.clear()

    def _build_mission(
        self,
        run: _Run,
        task: Task,
        decision: RouteDecision,
        approach: Approach,
        attempt: int,
    ) -> Mission:
        spec = task.spec
        dependencies = sorted(
            (run.todo.get(dep) for dep in spec.dependencies),
            key=lambda dep: dep.sequence,
        )
        prior = tuple(
            f"{dep.task_id}: {dep.result.summary()}"
            for dep in dependencies
            if dep.result is not None
        )
        if run.work.context_summary:
            prior = (run.work.context_summary, *prior)
        constraints = (*run.work.constraints, *spec.constraints)
        if approach == Approach.ADJUSTED:
            constraints = (*constraints, ADJUSTED_APPROACH_CONSTRAINT)
        return Mission(
            mission_id=f"{run.run_id}-{task.task_id}-a{attempt}",
            task_id=task.task_id,
            worker_kind=decision.worker_kind,
            attempt=attempt,
            approach=approach,
            depth=self.depth,
            context=MissionContext(
                parent_objective=run.work.goal,
                prior_results_summary=prior,
                satisfied_prerequisites=tuple(dep.task_id for dep in dependencies),
            ),
            objective=spec.content,
            scope=MissionScope(must=spec.scope_must, must_not=spec.scope_must_not),
            constraints=constraints,
            success_criteria=spec.success_criteria,
            deliverables=spec.deliverables,
        )


class NestedSchedulerWorker:
    """Presents a child scheduler through the worker Mission/Result contract."""

    def __init__(
        self,
        *,
        scheduler_factory: Callable[[], Scheduler],
        spec: TaskSpec,
        parent_goal: str,
    ) -> None:
        self._scheduler_factory = scheduler_factory
        self._spec = spec
        self._parent_goal = parent_goal

    def run(self, mission: Mission) -> WorkerResult:
        child = self._scheduler_factory()
        work = subwork_for(
            self._spec,
            parent_goal=self._parent_goal,
            context_summary="; ".join(mission.context.prior_results_summary),
        )
        work = replace(work, constraints=mission.constraints)
        report = child.submit(work)
        return report_to_worker_result(report)


def _invoke(worker: Worker, mission: Mission) -> WorkerResult:
    return parse_worker_result(worker.run(mission))
