"""Worker invocation boundary."""

from __future__ import annotations

from typing import Any, Protocol

from taskhive.scheduler.mission import Mission, WorkerResult


class WorkerError(RuntimeError):
    """Worker infrastructure failure with retryability hint."""

    def __init__(self, message: str, *, transient: bool = True) -> None:
        super().__init__(message)
        self.transient = transient


class WorkerTimeoutError(WorkerError):
    """Worker did not answer within its deadline."""

    def __init__(self, message: str) -> None:
        super().__init__(message, transient=True)


class WorkerQuotaError(WorkerError):
    """Shared external resource signalled overload or exhausted quota."""

    def __init__(self, message: str) -> None:
        super().__init__(message, transient=True)


class CommandFailedError(WorkerError):
    """External worker command exited with a non-zero code."""

    def __init__(self, message: str, *, exit_code: int, stdout: str, stderr: str) -> None:
        super().__init__(message, transient=True)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class Worker(Protocol):
    """Opaque capability that answers one Mission.

    Implementations may block for a long time and may raise; they return
    either a ``WorkerResult`` or a raw mapping that still has to pass
    ``parse_worker_result``.
    """

    def run(self, mission: Mission) -> WorkerResult | dict[str, Any]:
        """Execute the mission and return its result."""
