"""In-process workers and the worker-kind registry."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from taskhive.scheduler.mission import Mission, WorkerResult
from taskhive.scheduler.workers.base import Worker, WorkerError


class CallableWorker:
    """Adapt a plain function to the Worker protocol."""

    def __init__(self, func: Callable[[Mission], WorkerResult | dict[str, Any]]) -> None:
        self._func = func

    def run(self, mission: Mission) -> WorkerResult | dict[str, Any]:
        return self._func(mission)


class WorkerRegistry:
    """Maps capability tags (worker kinds) to concrete workers."""

    def __init__(self, workers: dict[str, Worker] | None = None) -> None:
        self._workers: dict[str, Worker] = {}
        for kind, worker in (workers or {}).items():
            self.register(kind, worker)

    def register(self, kind: str, worker: Worker) -> None:
        normalized = _normalize_kind(kind)
        if not normalized:
            raise ValueError("Worker kind must be a non-empty string")
        self._workers[normalized] = worker

    def kinds(self) -> tuple[str, ...]:
        return tuple(sorted(self._workers))

    def __contains__(self, kind: object) -> bool:
        return isinstance(kind, str) and _normalize_kind(kind) in self._workers

    def resolve(self, kind: str) -> Worker:
        worker = self._workers.get(_normalize_kind(kind))
        if worker is None:
            raise WorkerError(f"No worker registered for kind={kind!r}", transient=False)
        return worker


def _normalize_kind(value: str) -> str:
    return value.strip().lower()
