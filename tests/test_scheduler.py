from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace

import allure
import pytest
from conftest import RecordingWorker, complete, make_work

from taskhive.config import LevelSettings
from taskhive.scheduler.consolidator import ReportStatus
from taskhive.scheduler.decomposer import DecompositionError
from taskhive.scheduler.mission import Mission
from taskhive.scheduler.models import (
    Approach,
    FailureClass,
    Route,
    TaskSpec,
    TaskStatus,
    Work,
)
from taskhive.scheduler.routing import RoutingDefaults
from taskhive.scheduler.scheduler import ADJUSTED_APPROACH_CONSTRAINT, Scheduler
from taskhive.scheduler.workers import (
    CallableWorker,
    WorkerError,
    WorkerQuotaError,
    WorkerRegistry,
)

pytestmark = [
    allure.epic("Scheduler"),
    allure.feature("Execution Loop"),
]


def _scheduler(settings, worker, **kwargs) -> Scheduler:
    return Scheduler(workers=WorkerRegistry({"default": worker}), settings=settings, **kwargs)


def _fail_for(task_ids: set[str], error_factory):
    def behaviour(mission: Mission):
        if mission.task_id in task_ids:
            raise error_factory()
        return complete(mission)

    return behaviour


def test_five_tasks_dispatch_in_throttled_pairs(fast_settings) -> None:
    throttle = 0.05
    settings = replace(
        fast_settings,
        root=LevelSettings(max_concurrent=2, throttle_seconds=throttle),
    )
    worker = RecordingWorker()

    report = _scheduler(settings, worker).submit(make_work(5))

    assert report.status == ReportStatus.COMPLETE
    assert [entry.task_id for entry in report.completed] == ["t1", "t2", "t3", "t4", "t5"]
    assert report.summary.dispatched == 5
    assert worker.peak_active <= 2
    starts = sorted(worker.started_at)
    gaps = [later - earlier for earlier, later in zip(starts, starts[1:], strict=False)]
    assert all(gap >= throttle * 0.8 for gap in gaps)


def test_concurrency_cap_holds_with_slow_workers(fast_settings) -> None:
    worker = RecordingWorker(hold_seconds=0.05)

    report = _scheduler(fast_settings, worker).submit(make_work(6))

    assert report.status == ReportStatus.COMPLETE
    assert worker.peak_active == 2


def test_task_failing_every_attempt_is_blocked_after_same_then_adjusted(fast_settings) -> None:
    settings = replace(fast_settings, leaf_max_attempts=2)
    worker = RecordingWorker(
        behaviour=_fail_for({"t2"}, lambda: WorkerError("temporarily unavailable")),
    )

    report = _scheduler(settings, worker).submit(make_work(4))

    assert report.status == ReportStatus.PARTIAL
    assert [entry.task_id for entry in report.completed] == ["t1", "t3", "t4"]
    [blocked] = report.blocked
    assert blocked.task_id == "t2"
    assert blocked.attempts == 2
    assert blocked.failure_class == "transient"
    assert "Attempts exhausted (2/2)" in blocked.reason

    attempts = worker.attempts_for("t2")
    assert [mission.approach for mission in attempts] == [Approach.SAME, Approach.ADJUSTED]
    assert ADJUSTED_APPROACH_CONSTRAINT not in attempts[0].constraints
    assert ADJUSTED_APPROACH_CONSTRAINT in attempts[1].constraints
    assert [mission.attempt for mission in attempts] == [1, 2]


def test_permanent_failure_does_not_stop_independent_tasks(fast_settings) -> None:
    worker = RecordingWorker(
        behaviour=_fail_for({"t1"}, lambda: WorkerError("401 unauthorized: invalid api key")),
    )

    report = _scheduler(fast_settings, worker).submit(make_work(3))

    assert [entry.task_id for entry in report.completed] == ["t2", "t3"]
    [blocked] = report.blocked
    assert blocked.task_id == "t1"
    assert blocked.attempts == 1
    assert blocked.failure_class == "non_retryable"


def test_dependents_of_blocked_task_are_blocked_without_dispatch(fast_settings) -> None:
    work = Work(
        goal="release",
        tasks=(
            TaskSpec(task_id="build", content="build artifacts"),
            TaskSpec(task_id="publish", content="publish", dependencies=frozenset({"build"})),
            TaskSpec(task_id="docs", content="write docs"),
        ),
    )
    worker = RecordingWorker(
        behaviour=_fail_for({"build"}, lambda: WorkerError("forbidden")),
    )

    report = _scheduler(fast_settings, worker).submit(work)

    blocked = {entry.task_id: entry for entry in report.blocked}
    assert set(blocked) == {"build", "publish"}
    assert blocked["publish"].reason == "dependency build ended blocked"
    assert blocked["publish"].attempts == 0
    assert worker.attempts_for("publish") == []
    assert [entry.task_id for entry in report.completed] == ["docs"]


def test_dependent_mission_carries_prior_results(fast_settings) -> None:
    work = Work(
        goal="release",
        context_summary="quarterly release",
        tasks=(
            TaskSpec(task_id="build", content="build artifacts"),
            TaskSpec(task_id="test", content="run tests"),
            TaskSpec(
                task_id="publish",
                content="publish",
                dependencies=frozenset({"build", "test"}),
                scope_must=("upload wheel",),
                scope_must_not=("tag release",),
            ),
        ),
    )
    worker = RecordingWorker()

    report = _scheduler(fast_settings, worker).submit(work)

    assert report.status == ReportStatus.COMPLETE
    [mission] = worker.attempts_for("publish")
    assert mission.context.parent_objective == "release"
    assert mission.context.satisfied_prerequisites == ("build", "test")
    assert mission.context.prior_results_summary[0] == "quarterly release"
    prior = mission.context.prior_results_summary
    assert any(line.startswith("build: done build") for line in prior)
    assert mission.scope.must == ("upload wheel",)
    assert mission.scope.must_not == ("tag release",)


def test_worker_reported_blocked_is_not_retried(fast_settings) -> None:
    def behaviour(mission: Mission):
        if mission.task_id == "t3":
            return {"status": "BLOCKED", "reason": "needs production credentials"}
        return complete(mission)

    worker = RecordingWorker(behaviour=behaviour)

    report = _scheduler(fast_settings, worker).submit(make_work(3))

    [blocked] = report.blocked
    assert blocked.reason == "needs production credentials"
    assert blocked.failure_class is None
    assert len(worker.attempts_for("t3")) == 1


def test_malformed_result_is_retried(fast_settings) -> None:
    def behaviour(mission: Mission):
        if mission.task_id == "t1" and mission.attempt == 1:
            return {"files_touched": ["half.txt"]}
        return complete(mission)

    report = _scheduler(fast_settings, RecordingWorker(behaviour=behaviour)).submit(make_work(3))

    assert report.status == ReportStatus.COMPLETE
    t1 = next(entry for entry in report.completed if entry.task_id == "t1")
    assert t1.attempts == 2
    failures = [event for event in report.events["t1"] if event.event_type == "attempt_failed"]
    assert failures[0].details["failure_class"] == "malformed_result"


def test_quota_failure_delays_the_next_dispatch(fast_settings) -> None:
    settings = replace(fast_settings, quota_penalty_seconds=0.2)
    failed_at: list[float] = []

    def behaviour(mission: Mission):
        if mission.task_id == "t1" and mission.attempt == 1:
            failed_at.append(time.monotonic())
            raise WorkerQuotaError("quota exceeded for shared key")
        return complete(mission)

    worker = RecordingWorker(behaviour=behaviour)
    work = Work(
        goal="g",
        tasks=(
            TaskSpec(task_id="t1", content="a"),
            TaskSpec(task_id="t2", content="b", dependencies=frozenset({"t1"})),
            TaskSpec(task_id="t3", content="c", dependencies=frozenset({"t1"})),
        ),
    )

    report = _scheduler(settings, worker).submit(work)

    assert report.status == ReportStatus.COMPLETE
    retry_start = worker.started_at[1]
    assert retry_start - failed_at[0] >= 0.19
    retry_events = [e for e in report.events["t1"] if e.event_type == "retry_scheduled"]
    assert retry_events[0].details["failure_class"] == "quota_exhausted"


def test_dispatch_timeout_retries_and_discards_late_result(fast_settings) -> None:
    settings = replace(fast_settings, dispatch_timeout_seconds=0.1, leaf_max_attempts=2)

    def behaviour(mission: Mission):
        if mission.task_id == "t1" and mission.attempt == 1:
            time.sleep(0.4)
            return {"status": "COMPLETE", "rationale": "too late"}
        return complete(mission)

    report = _scheduler(settings, RecordingWorker(behaviour=behaviour)).submit(make_work(3))

    assert report.status == ReportStatus.COMPLETE
    t1 = next(entry for entry in report.completed if entry.task_id == "t1")
    assert t1.attempts == 2
    assert t1.result.rationale == "done t1"
    failures = [event for event in report.events["t1"] if event.event_type == "attempt_failed"]
    assert failures[0].details["failure_class"] == "timeout"


def test_attempt_expired_while_queued_never_reaches_the_worker(fast_settings) -> None:
    settings = replace(
        fast_settings,
        root=LevelSettings(max_concurrent=1, throttle_seconds=0.0),
        dispatch_timeout_seconds=0.2,
        leaf_max_attempts=2,
    )

    def behaviour(mission: Mission):
        if mission.task_id == "t1":
            time.sleep(0.5)
        return complete(mission)

    worker = RecordingWorker(behaviour=behaviour)

    report = _scheduler(settings, worker).submit(make_work(3))

    [blocked] = report.blocked
    assert blocked.task_id == "t1"
    assert blocked.attempts == 2
    assert [mission.attempt for mission in worker.attempts_for("t1")] == [1]
    assert [entry.task_id for entry in report.completed] == ["t2", "t3"]


def test_unknown_worker_kind_blocks_the_task(fast_settings) -> None:
    work = Work(
        goal="g",
        tasks=(
            TaskSpec(task_id="a", content="a"),
            TaskSpec(task_id="b", content="b", worker_kind="translator"),
            TaskSpec(task_id="c", content="c"),
        ),
    )

    report = _scheduler(fast_settings, RecordingWorker()).submit(work)

    [blocked] = report.blocked
    assert blocked.task_id == "b"
    assert blocked.failure_class == "non_retryable"
    assert "No worker registered for kind='translator'" in blocked.reason
    assert report.summary.dispatched == 2


def test_adjusted_attempt_uses_fallback_worker_kind(fast_settings) -> None:
    settings = replace(fast_settings, leaf_max_attempts=2)
    primary = RecordingWorker(behaviour=_fail_for({"t1"}, lambda: WorkerError("connection reset")))
    backup = RecordingWorker()
    scheduler = Scheduler(
        workers=WorkerRegistry({"default": primary, "backup": backup}),
        settings=settings,
        routing_defaults=RoutingDefaults(fallback_kinds={"default": "backup"}),
    )

    report = scheduler.submit(make_work(3))

    assert report.status == ReportStatus.COMPLETE
    [retry] = backup.attempts_for("t1")
    assert retry.approach == Approach.ADJUSTED
    assert retry.worker_kind == "backup"
    t1 = next(entry for entry in report.completed if entry.task_id == "t1")
    assert t1.worker_kind == "backup"


def test_small_local_kind_runs_inline(fast_settings) -> None:
    inline_calls: list[str] = []

    def inline(mission: Mission):
        inline_calls.append(mission.task_id)
        return {"status": "COMPLETE", "rationale": "inline"}

    work = Work(
        goal="g",
        tasks=(
            TaskSpec(task_id="a", content="a"),
            TaskSpec(task_id="b", content="b", worker_kind="inline"),
            TaskSpec(task_id="c", content="c", worker_kind="inline", estimated_steps=5),
        ),
    )
    delegated = RecordingWorker()
    scheduler = Scheduler(
        workers=WorkerRegistry({"default": delegated, "inline": delegated}),
        settings=fast_settings,
        local_workers=WorkerRegistry({"inline": CallableWorker(inline)}),
    )

    report = scheduler.submit(work)

    assert report.status == ReportStatus.COMPLETE
    assert inline_calls == ["b"]
    assert report.summary.local == 1
    assert report.summary.dispatched == 2
    assert {mission.task_id for mission in delegated.missions} == {"a", "c"}
    routes = [
        event.details["route"]
        for event in report.events["b"]
        if event.event_type == "dispatch_started"
    ]
    assert routes == [Route.LOCAL.value]


def test_task_with_subtasks_runs_in_nested_scheduler(fast_settings) -> None:
    subtasks = tuple(
        TaskSpec(task_id=f"s{index}", content=f"sub {index}", deliverables=(f"s{index}.md",))
        for index in range(1, 4)
    )
    work = Work(
        goal="g",
        tasks=(
            TaskSpec(task_id="a", content="a"),
            TaskSpec(task_id="research", content="research options", subtasks=subtasks),
            TaskSpec(task_id="c", content="c"),
        ),
    )
    worker = RecordingWorker()

    report = _scheduler(fast_settings, worker).submit(work)

    assert report.status == ReportStatus.COMPLETE
    research = next(entry for entry in report.completed if entry.task_id == "research")
    assert research.result.deliverables == ("s1.txt", "s2.txt", "s3.txt")
    sub_missions = [mission for mission in worker.missions if mission.task_id.startswith("s")]
    assert {mission.depth for mission in sub_missions} == {1}
    assert {mission.context.parent_objective for mission in sub_missions} == {"research options"}
    assert report.summary.dispatched == 3


def test_nested_scheduler_failure_surfaces_as_blocked_parent_task(fast_settings) -> None:
    settings = replace(fast_settings, leaf_max_attempts=1)
    subtasks = tuple(TaskSpec(task_id=f"s{index}", content=f"sub {index}") for index in range(1, 4))
    work = Work(
        goal="g",
        tasks=(
            TaskSpec(task_id="a", content="a"),
            TaskSpec(task_id="research", content="research", subtasks=subtasks),
            TaskSpec(task_id="c", content="c"),
        ),
    )
    worker = RecordingWorker(behaviour=_fail_for({"s2"}, lambda: WorkerError("network error")))

    report = _scheduler(settings, worker).submit(work)

    [blocked] = report.blocked
    assert blocked.task_id == "research"
    assert blocked.attempts == 1
    assert "s2:" in blocked.reason
    assert len(worker.attempts_for("s2")) == 1


def test_invalid_nested_decomposition_blocks_without_retry(fast_settings) -> None:
    work = Work(
        goal="g",
        tasks=(
            TaskSpec(task_id="a", content="a"),
            TaskSpec(
                task_id="research",
                content="research",
                subtasks=(TaskSpec(task_id="s1", content="only one"),),
            ),
            TaskSpec(task_id="c", content="c"),
        ),
    )
    worker = RecordingWorker()

    report = _scheduler(fast_settings, worker).submit(work)

    [blocked] = report.blocked
    assert blocked.task_id == "research"
    assert blocked.attempts == 1
    assert blocked.failure_class == FailureClass.NON_RETRYABLE
    assert "3-7 tasks" in blocked.reason
    assert worker.attempts_for("s1") == []


def test_cancellation_cancels_pending_and_discards_in_flight_result(fast_settings) -> None:
    settings = replace(fast_settings, root=LevelSettings(max_concurrent=1, throttle_seconds=0.0))
    release = threading.Event()
    worker = RecordingWorker(release=release)
    scheduler = _scheduler(settings, worker)

    with ThreadPoolExecutor(max_workers=1) as executor:
        future = executor.submit(scheduler.submit, make_work(4))
        assert worker.started.wait(timeout=5)
        scheduler.cancel("operator abort")
        report = future.result(timeout=5)
        release.set()

    assert report.status == ReportStatus.CANCELLED
    assert len(report.cancelled) == 4
    assert report.completed == ()
    assert len(worker.missions) == 1
    cancelled_events = [e for e in report.events["t1"] if e.event_type == "cancelled"]
    assert cancelled_events[0].details["reason"] == "operator abort"
    assert cancelled_events[0].status_from == TaskStatus.IN_PROGRESS


def test_cancellation_stops_a_running_nested_scheduler(fast_settings) -> None:
    single = LevelSettings(max_concurrent=1, throttle_seconds=0.0)
    settings = replace(fast_settings, root=single, nested=single)
    subtasks = tuple(TaskSpec(task_id=f"s{index}", content=f"sub {index}") for index in range(1, 5))
    work = Work(
        goal="g",
        tasks=(
            TaskSpec(task_id="research", content="research", subtasks=subtasks),
            TaskSpec(task_id="b", content="b"),
            TaskSpec(task_id="c", content="c"),
        ),
    )
    release = threading.Event()
    worker = RecordingWorker(release=release)
    scheduler = _scheduler(settings, worker)

    with ThreadPoolExecutor(max_workers=1) as executor:
        future = executor.submit(scheduler.submit, work)
        assert worker.started.wait(timeout=5)
        scheduler.cancel("operator abort")
        report = future.result(timeout=5)
        release.set()
        time.sleep(0.3)

    assert report.status == ReportStatus.CANCELLED
    assert [mission.task_id for mission in worker.missions] == ["s1"]


def test_cancelled_scheduler_serves_the_next_request(fast_settings) -> None:
    settings = replace(fast_settings, root=LevelSettings(max_concurrent=1, throttle_seconds=0.0))
    release = threading.Event()
    worker = RecordingWorker(release=release)
    scheduler = _scheduler(settings, worker)

    with ThreadPoolExecutor(max_workers=1) as executor:
        future = executor.submit(scheduler.submit, make_work(3))
        assert worker.started.wait(timeout=5)
        scheduler.cancel("operator abort")
        assert future.result(timeout=5).status == ReportStatus.CANCELLED
        release.set()

    report = scheduler.submit(make_work(3))

    assert report.status == ReportStatus.COMPLETE
    assert len(report.completed) == 3


def test_concurrent_submit_on_same_scheduler_is_rejected(fast_settings) -> None:
    release = threading.Event()
    worker = RecordingWorker(release=release)
    scheduler = _scheduler(fast_settings, worker)

    with ThreadPoolExecutor(max_workers=1) as executor:
        future = executor.submit(scheduler.submit, make_work(3))
        assert worker.started.wait(timeout=5)
        with pytest.raises(RuntimeError, match="already running"):
            scheduler.submit(make_work(3))
        release.set()
        assert future.result(timeout=5).status == ReportStatus.COMPLETE


def test_each_request_gets_a_fresh_task_list(fast_settings) -> None:
    scheduler = _scheduler(fast_settings, RecordingWorker())

    first = scheduler.submit(make_work(3))
    second = scheduler.submit(make_work(4))

    assert first.total == 3
    assert second.total == 4


def test_invalid_decomposition_is_rejected_before_dispatch(fast_settings) -> None:
    worker = RecordingWorker()

    with pytest.raises(DecompositionError, match="3-7 tasks"):
        _scheduler(fast_settings, worker).submit(make_work(2))
    assert worker.missions == []

