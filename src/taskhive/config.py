"""Runtime configuration for the delegation scheduler."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class LevelSettings:
    """Dispatch pacing for one hierarchy level."""

    max_concurrent: int = 2
    throttle_seconds: float = 0.5


@dataclass(slots=True)
class SchedulerSettings:
    """Scheduler loop, retry and hierarchy settings."""

    root: LevelSettings = field(default_factory=LevelSettings)
    nested: LevelSettings = field(default_factory=LevelSettings)
    leaf_max_attempts: int = 3
    nested_max_attempts: int = 2
    max_depth: int = 1
    quota_penalty_seconds: float = 2.0
    dispatch_timeout_seconds: float = 600.0
    min_tasks: int = 3
    max_tasks: int = 7
    local_max_steps: int = 1
    poll_interval_seconds: float = 0.05

    def level(self, depth: int) -> LevelSettings:
        return self.root if depth == 0 else self.nested

    def validate(self) -> None:
        """Raise configuration error on values the scheduler cannot honour."""

        for name, level in (("ROOT", self.root), ("NESTED", self.nested)):
            if level.max_concurrent < 1:
                raise ValueError(f"TASKHIVE_{name}_MAX_CONCURRENT must be >= 1.")
            if level.throttle_seconds < 0:
                raise ValueError(f"TASKHIVE_{name}_THROTTLE_SECONDS must be >= 0.")
        if self.leaf_max_attempts < 1:
            raise ValueError("TASKHIVE_LEAF_MAX_ATTEMPTS must be >= 1.")
        if self.nested_max_attempts < 1:
            raise ValueError("TASKHIVE_NESTED_MAX_ATTEMPTS must be >= 1.")
        if self.max_depth < 0:
            raise ValueError("TASKHIVE_MAX_DEPTH must be >= 0.")
        if self.quota_penalty_seconds < 0:
            raise ValueError("TASKHIVE_QUOTA_PENALTY_SECONDS must be >= 0.")
        if self.dispatch_timeout_seconds <= 0:
            raise ValueError("TASKHIVE_DISPATCH_TIMEOUT_SECONDS must be > 0.")
        if not 1 <= self.min_tasks <= self.max_tasks:
            raise ValueError("TASKHIVE_MIN_TASKS must be >= 1 and <= TASKHIVE_MAX_TASKS.")
        if self.local_max_steps < 0:
            raise ValueError("TASKHIVE_LOCAL_MAX_STEPS must be >= 0.")
        if self.poll_interval_seconds <= 0:
            raise ValueError("TASKHIVE_POLL_INTERVAL_SECONDS must be > 0.")


@dataclass(slots=True)
class WorkerSettings:
    """External worker command settings."""

    command_templates: dict[str, str] = field(default_factory=dict)
    fallback_kinds: dict[str, str] = field(default_factory=dict)
    workdir_root: Path = Path(".taskhive/work")
    command_timeout_seconds: float = 600.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    workers: WorkerSettings = field(default_factory=WorkerSettings)
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults for local use."""

        settings = cls(
            scheduler=SchedulerSettings(
                root=LevelSettings(
                    max_concurrent=_env_int("TASKHIVE_ROOT_MAX_CONCURRENT", 2),
                    throttle_seconds=_env_float("TASKHIVE_ROOT_THROTTLE_SECONDS", 0.5),
                ),
                nested=LevelSettings(
                    max_concurrent=_env_int("TASKHIVE_NESTED_MAX_CONCURRENT", 2),
                    throttle_seconds=_env_float("TASKHIVE_NESTED_THROTTLE_SECONDS", 0.5),
                ),
                leaf_max_attempts=_env_int("TASKHIVE_LEAF_MAX_ATTEMPTS", 3),
                nested_max_attempts=_env_int("TASKHIVE_NESTED_MAX_ATTEMPTS", 2),
                max_depth=_env_int("TASKHIVE_MAX_DEPTH", 1),
                quota_penalty_seconds=_env_float("TASKHIVE_QUOTA_PENALTY_SECONDS", 2.0),
                dispatch_timeout_seconds=_env_float("TASKHIVE_DISPATCH_TIMEOUT_SECONDS", 600.0),
                min_tasks=_env_int("TASKHIVE_MIN_TASKS", 3),
                max_tasks=_env_int("TASKHIVE_MAX_TASKS", 7),
                local_max_steps=_env_int("TASKHIVE_LOCAL_MAX_STEPS", 1),
                poll_interval_seconds=_env_float("TASKHIVE_POLL_INTERVAL_SECONDS", 0.05),
            ),
            workers=WorkerSettings(
                command_templates=_collect_pairs("TASKHIVE_WORKER_COMMANDS"),
                fallback_kinds=_collect_pairs("TASKHIVE_WORKER_FALLBACKS"),
                workdir_root=Path(os.getenv("TASKHIVE_WORKDIR_ROOT", ".taskhive/work")),
                command_timeout_seconds=_env_float("TASKHIVE_COMMAND_TIMEOUT_SECONDS", 600.0),
            ),
            log_level=os.getenv("TASKHIVE_LOG_LEVEL", "WARNING").strip().upper(),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        self.scheduler.validate()
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"Invalid TASKHIVE_LOG_LEVEL: {self.log_level!r}. Use one of {_LOG_LEVELS}.",
            )
        if self.workers.command_timeout_seconds <= 0:
            raise ValueError("TASKHIVE_COMMAND_TIMEOUT_SECONDS must be > 0.")
        for kind, template in self.workers.command_templates.items():
            if not template.strip():
                raise ValueError(f"Empty worker command template for kind={kind!r}")

    @property
    def log_level_value(self) -> int:
        return logging.getLevelName(self.log_level)


def _collect_pairs(name: str) -> dict[str, str]:
    """Parse ``key|value,key|value`` lists, as used for worker commands and fallbacks."""

    raw = os.getenv(name, "").strip()
    if not raw:
        return {}

    pairs: dict[str, str] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "|" not in token:
            raise ValueError(
                f"Invalid {name} entry: {token!r}. Expected format '<kind>|<value>'.",
            )
        key, value = token.split("|", 1)
        key = key.strip().lower()
        value = value.strip()
        if not key or not value:
            raise ValueError(f"Invalid {name} entry: {token!r}. Kind and value are required.")
        pairs[key] = value
    return pairs


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {value!r}") from error
