"""Admission control and pacing for one scheduler's outgoing dispatches."""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


class QueueClosedError(RuntimeError):
    """Raised when submitting to a queue that stopped admitting dispatches."""


@dataclass(frozen=True, slots=True)
class DispatchRecord:
    """Initiation of one dispatch, in start order."""

    ticket: int
    label: str
    started_at: float
    active_after_start: int


@dataclass(slots=True)
class _Request:
    ticket: int
    label: str
    dispatch_fn: Callable[[], Any]
    future: Future[Any]


class DelegationQueue:
    """Concurrency ceiling plus a minimum delay between dispatch initiations.

    ``submit`` never blocks the caller: it returns a ``Future`` that resolves
    with the dispatch function's return value (or exception).  A single pump
    thread starts queued requests in FIFO order once a slot is free and at
    least ``throttle_seconds`` passed since the previous initiation.  The
    throttle applies to every dispatch, including the one that takes a slot
    freed a moment ago.
    """

    def __init__(
        self,
        *,
        max_concurrent: int,
        throttle_seconds: float,
        name: str = "delegation-queue",
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if throttle_seconds < 0:
            raise ValueError("throttle_seconds must be >= 0")
        self.max_concurrent = max_concurrent
        self.throttle_seconds = throttle_seconds
        self.name = name
        self._cond = threading.Condition()
        self._waiting: deque[_Request] = deque()
        self._active = 0
        self._peak_active = 0
        self._last_started: float | None = None
        self._not_before = 0.0
        self._closed = False
        self._pump: threading.Thread | None = None
        self._tickets = itertools.count(1)
        self._dispatch_log: list[DispatchRecord] = []

    @property
    def active_count(self) -> int:
        with self._cond:
            return self._active

    @property
    def peak_active(self) -> int:
        with self._cond:
            return self._peak_active

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    @property
    def dispatch_log(self) -> list[DispatchRecord]:
        with self._cond:
            return list(self._dispatch_log)

    def submit(self, dispatch_fn: Callable[[], Any], *, label: str = "") -> Future[Any]:
        """Queue one dispatch and return its pending handle."""

        with self._cond:
            if self._closed:
                raise QueueClosedError(f"{self.name} is closed; dispatch {label!r} rejected.")
            request = _Request(
                ticket=next(self._tickets),
                label=label,
                dispatch_fn=dispatch_fn,
                future=Future(),
            )
            self._waiting.append(request)
            self._ensure_pump()
            self._cond.notify_all()
        return request.future

    def penalize(self, seconds: float) -> None:
        """Hold back the next initiation by an extra delay (quota/overload signal)."""

        if seconds <= 0:
            return
        with self._cond:
            self._not_before = max(self._not_before, time.monotonic() + seconds)
            self._cond.notify_all()
        logger.info("%s: next dispatch delayed by %.3fs after overload signal", self.name, seconds)

    def close(self) -> int:
        """Stop admitting dispatches and cancel queued, not-yet-started requests.

        In-flight dispatches keep running; returns how many queued requests
        were cancelled.
        """

        with self._cond:
            if self._closed:
                return 0
            self._closed = True
            dropped = list(self._waiting)
            self._waiting.clear()
            self._cond.notify_all()
        for request in dropped:
            request.future.cancel()
        if dropped:
            logger.info("%s: closed with %d queued dispatches cancelled", self.name, len(dropped))
        return len(dropped)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until nothing is queued or running; False on timeout."""

        with self._cond:
            return self._cond.wait_for(
                lambda: self._active == 0 and not self._waiting,
                timeout=timeout,
            )

    def _ensure_pump(self) -> None:
        if self._pump is not None and self._pump.is_alive():
            return
        self._pump = threading.Thread(target=self._pump_loop, daemon=True, name=f"{self.name}-pump")
        self._pump.start()

    def _pump_loop(self) -> None:
        while True:
            with self._cond:
                request = self._next_admitted()
                if request is None:
                    return
                started_at = time.monotonic()
                self._active += 1
                self._peak_active = max(self._peak_active, self._active)
                self._last_started = started_at
                self._dispatch_log.append(
                    DispatchRecord(
                        ticket=request.ticket,
                        label=request.label,
                        started_at=started_at,
                        active_after_start=self._active,
                    ),
                )
            logger.debug("%s: dispatch %s started", self.name, request.label or request.ticket)
            threading.Thread(
                target=self._run,
                args=(request,),
                daemon=True,
                name=f"{self.name}-dispatch-{request.ticket}",
            ).start()

    def _next_admitted(self) -> _Request | None:
        """Wait under the lock until the FIFO head may start."""

        while True:
            if self._closed:
                return None
            if not self._waiting or self._active >= self.max_concurrent:
                self._cond.wait()
                continue
            delay = self._ready_at() - time.monotonic()
            if delay > 0:
                self._cond.wait(timeout=delay)
                continue
            request = self._waiting.popleft()
            if request.future.set_running_or_notify_cancel():
                return request

    def _ready_at(self) -> float:
        ready_at = self._not_before
        if self._last_started is not None:
            ready_at = max(ready_at, self._last_started + self.throttle_seconds)
        return ready_at

    def _run(self, request: _Request) -> None:
        try:
            result = request.dispatch_fn()
        except BaseException as error:  # noqa: BLE001
            request.future.set_exception(error)
        else:
            request.future.set_result(result)
        finally:
            with self._cond:
                self._active -= 1
                self._cond.notify_all()
