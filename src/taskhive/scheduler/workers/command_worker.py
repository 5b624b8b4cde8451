"""Subprocess-based worker that answers missions through an external command."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from pathlib import Path
from typing import Any

from taskhive.scheduler.mission import (
    MalformedResultError,
    Mission,
    load_json,
    write_mission,
)
from taskhive.scheduler.workers.base import (
    CommandFailedError,
    WorkerError,
    WorkerTimeoutError,
)

logger = logging.getLogger(__name__)

_PREVIEW_LIMIT = 1200


class CommandWorker:
    """Run one command per mission.

    The mission is written to ``<workdir>/<mission_id>/mission.json``; the
    command must write its answer to ``result.json`` next to it.  Supported
    template placeholders: ``{mission_file}``, ``{result_file}``,
    ``{objective}`` and ``{worker_kind}``.
    """

    def __init__(
        self,
        *,
        command_template: str,
        workdir_root: Path,
        timeout_seconds: float = 600.0,
        poll_seconds: float = 0.05,
    ) -> None:
        if not command_template.strip():
            raise ValueError("Worker command template is empty.")
        self.command_template = command_template.strip()
        self.workdir_root = workdir_root
        self.timeout_seconds = timeout_seconds
        self.poll_seconds = poll_seconds

    def run(self, mission: Mission) -> dict[str, Any]:
        workdir = self.workdir_root / mission.mission_id
        mission_file = workdir / "mission.json"
        result_file = workdir / "result.json"
        stdout_path = workdir / "stdout.log"
        stderr_path = workdir / "stderr.log"
        write_mission(mission_file, mission)
        result_file.unlink(missing_ok=True)

        run_args = _build_run_args(
            command_template=self.command_template,
            mission_file=mission_file,
            result_file=result_file,
            objective=mission.objective,
            worker_kind=mission.worker_kind,
        )
        env = os.environ.copy()
        env["TASKHIVE_MISSION_FILE"] = str(mission_file)
        env["TASKHIVE_RESULT_FILE"] = str(result_file)
        env["TASKHIVE_WORKER_KIND"] = mission.worker_kind

        logger.debug("Starting worker command for mission %s: %s", mission.mission_id, run_args)
        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                exit_code, timed_out = _run_subprocess(
                    run_args=run_args,
                    env=env,
                    timeout_seconds=self.timeout_seconds,
                    poll_seconds=self.poll_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                )
        except FileNotFoundError as error:
            raise WorkerError(
                f"Worker command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise WorkerError(f"Worker command failed to start: {error}", transient=True) from error

        if timed_out:
            raise WorkerTimeoutError(
                f"Worker command timed out after {self.timeout_seconds}s "
                f"(mission {mission.mission_id}).",
            )
        if exit_code != 0:
            raise CommandFailedError(
                f"Worker command exited with code {exit_code}.",
                exit_code=exit_code,
                stdout=_read_preview(stdout_path),
                stderr=_read_preview(stderr_path),
            )
        if not result_file.exists():
            raise MalformedResultError(f"Worker result file not found: {result_file}")
        try:
            return load_json(result_file)
        except (ValueError, TypeError) as error:
            raise MalformedResultError(f"Worker result is not a JSON object: {error}") from error


def _build_run_args(
    *,
    command_template: str,
    mission_file: Path,
    result_file: Path,
    objective: str,
    worker_kind: str,
) -> list[str]:
    try:
        rendered = command_template.format(
            mission_file=shlex.quote(str(mission_file)),
            result_file=shlex.quote(str(result_file)),
            objective=shlex.quote(objective),
            worker_kind=shlex.quote(worker_kind),
        )
    except KeyError as error:
        raise WorkerError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise WorkerError("Worker command template rendered empty command.", transient=False)
    return argv


def _run_subprocess(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    timeout_seconds: float,
    poll_seconds: float,
    stdout_handle,
    stderr_handle,
) -> tuple[int, bool]:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, False
        if time.monotonic() - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            return 124, True
        time.sleep(poll_seconds)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _read_preview(path: Path) -> str:
    if not path.exists():
        return ""
    compact = path.read_text("utf-8", errors="replace").strip()
    return compact[:_PREVIEW_LIMIT]
