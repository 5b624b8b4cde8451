"""Shared test fixtures."""

from __future__ import annotations

import os
import sys
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

import pytest

from taskhive.config import LevelSettings, SchedulerSettings
from taskhive.scheduler.mission import Mission, WorkerResult
from taskhive.scheduler.models import TaskSpec, Work

ECHO_WORKER_COMMAND_TEMPLATE = (
    f"{sys.executable} -m taskhive.scheduler.workers.echo_worker "
    "--mission {mission_file} --result {result_file}"
)


@pytest.fixture(autouse=True)
def _clean_taskhive_env(monkeypatch):
    """Keep developer TASKHIVE_* variables out of tests."""
    for name in list(os.environ):
        if name.startswith("TASKHIVE_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def fast_settings() -> SchedulerSettings:
    return SchedulerSettings(
        root=LevelSettings(max_concurrent=2, throttle_seconds=0.0),
        nested=LevelSettings(max_concurrent=2, throttle_seconds=0.0),
        quota_penalty_seconds=0.0,
        poll_interval_seconds=0.01,
        dispatch_timeout_seconds=30.0,
    )


def make_work(count: int = 3, *, goal: str = "ship the feature", **overrides) -> Work:
    specs = tuple(
        TaskSpec(task_id=f"t{index}", content=f"step {index}", **overrides)
        for index in range(1, count + 1)
    )
    return Work(goal=goal, tasks=specs)


def complete(mission: Mission) -> WorkerResult | dict:
    return {
        "status": "COMPLETE",
        "files_touched": [f"{mission.task_id}.txt"],
        "rationale": f"done {mission.task_id}",
    }


@dataclass
class RecordingWorker:
    """In-process worker that records missions and measures overlap."""

    behaviour: Callable[[Mission], WorkerResult | dict] = complete
    hold_seconds: float = 0.0
    release: threading.Event | None = None
    missions: list[Mission] = field(default_factory=list)
    started_at: list[float] = field(default_factory=list)
    active: int = 0
    peak_active: int = 0
    started: threading.Event = field(default_factory=threading.Event)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def run(self, mission: Mission) -> WorkerResult | dict:
        with self._lock:
            self.missions.append(mission)
            self.started_at.append(time.monotonic())
            self.active += 1
            self.peak_active = max(self.peak_active, self.active)
        self.started.set()
        try:
            if self.release is not None:
                self.release.wait(timeout=10)
            elif self.hold_seconds:
                time.sleep(self.hold_seconds)
            return self.behaviour(mission)
        finally:
            with self._lock:
                self.active -= 1

    def attempts_for(self, task_id: str) -> list[Mission]:
        with self._lock:
            return [mission for mission in self.missions if mission.task_id == task_id]
