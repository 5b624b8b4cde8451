"""Worker implementations."""

from taskhive.scheduler.workers.base import (
    Worker,
    WorkerError,
    WorkerQuotaError,
    WorkerTimeoutError,
)
from taskhive.scheduler.workers.command_worker import CommandWorker
from taskhive.scheduler.workers.local import CallableWorker, WorkerRegistry

__all__ = [
    "CallableWorker",
    "CommandWorker",
    "Worker",
    "WorkerError",
    "WorkerQuotaError",
    "WorkerRegistry",
    "WorkerTimeoutError",
]
