"""Controllers for scheduler CLI commands."""

from __future__ import annotations

import json
import shlex
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

from taskhive.config import Settings
from taskhive.scheduler.consolidator import Report, ReportStatus, render_report_lines
from taskhive.scheduler.decomposer import validate_work
from taskhive.scheduler.models import Work
from taskhive.scheduler.plan import read_plan
from taskhive.scheduler.routing import RoutingDefaults
from taskhive.scheduler.scheduler import Scheduler
from taskhive.scheduler.workers import CommandWorker, WorkerRegistry

ECHO_WORKER_COMMAND = (
    f"{shlex.quote(sys.executable)} -m taskhive.scheduler.workers.echo_worker "
    "--mission {mission_file} --result {result_file}"
)
DEFAULT_WORKER_COMMAND_TEMPLATES = {"default": ECHO_WORKER_COMMAND}


@dataclass(slots=True)
class RunPlanCommand:
    """CLI input for running one plan to completion."""

    plan_path: Path
    output_format: str = "text"
    include_events: bool = False


@dataclass(slots=True)
class ValidatePlanCommand:
    """CLI input for checking a plan without dispatching anything."""

    plan_path: Path


@dataclass(slots=True)
class RunPlanResult:
    lines: list[str]
    report: Report

    @property
    def success(self) -> bool:
        return self.report.status == ReportStatus.COMPLETE


class SchedulerCliController:
    """Coordinates plan loading, scheduler runs and settings inspection."""

    def run_plan(self, command: RunPlanCommand) -> RunPlanResult:
        settings = Settings.from_env()
        work = read_plan(command.plan_path)
        validate_work(
            work,
            min_tasks=settings.scheduler.min_tasks,
            max_tasks=settings.scheduler.max_tasks,
        )
        scheduler = Scheduler(
            workers=_worker_registry(settings=settings),
            settings=settings.scheduler,
            routing_defaults=RoutingDefaults.from_settings(settings),
        )
        report = _submit_interruptibly(scheduler, work)

        if command.output_format == "json":
            payload = report.to_payload(include_events=command.include_events)
            lines = [json.dumps(payload, ensure_ascii=False, indent=2)]
        else:
            lines = render_report_lines(report)
            if command.include_events:
                lines.extend(_event_lines(report))
        return RunPlanResult(lines=lines, report=report)

    def validate_plan(self, command: ValidatePlanCommand) -> list[str]:
        settings = Settings.from_env()
        work = read_plan(command.plan_path)
        validate_work(
            work,
            min_tasks=settings.scheduler.min_tasks,
            max_tasks=settings.scheduler.max_tasks,
        )
        nested = [spec.task_id for spec in work.tasks if spec.subtasks]
        lines = [
            f"Plan OK: goal={work.goal!r} tasks={len(work.tasks)} nested={len(nested)}",
        ]
        for spec in work.tasks:
            deps = ",".join(sorted(spec.dependencies)) or "-"
            lines.append(
                f"  {spec.task_id} kind={spec.worker_kind} priority={spec.priority.value} "
                f"deps={deps} subtasks={len(spec.subtasks)}",
            )
        return lines

    def show_config(self) -> list[str]:
        settings = Settings.from_env()
        scheduler = settings.scheduler
        templates = settings.workers.command_templates or DEFAULT_WORKER_COMMAND_TEMPLATES
        lines = [
            f"Log level: {settings.log_level}",
            (
                f"Root level: max_concurrent={scheduler.root.max_concurrent} "
                f"throttle_seconds={scheduler.root.throttle_seconds}"
            ),
            (
                f"Nested level: max_concurrent={scheduler.nested.max_concurrent} "
                f"throttle_seconds={scheduler.nested.throttle_seconds}"
            ),
            (
                f"Attempts: leaf={scheduler.leaf_max_attempts} "
                f"nested={scheduler.nested_max_attempts} max_depth={scheduler.max_depth}"
            ),
            (
                f"Timeouts: dispatch={scheduler.dispatch_timeout_seconds}s "
                f"command={settings.workers.command_timeout_seconds}s "
                f"quota_penalty={scheduler.quota_penalty_seconds}s"
            ),
            f"Decomposition: {scheduler.min_tasks}-{scheduler.max_tasks} tasks per level",
            f"Workdir: {settings.workers.workdir_root}",
            "Worker commands:",
        ]
        lines.extend(f"  {kind}: {template}" for kind, template in sorted(templates.items()))
        if settings.workers.fallback_kinds:
            lines.append("Worker fallbacks:")
            lines.extend(
                f"  {kind} -> {fallback}"
                for kind, fallback in sorted(settings.workers.fallback_kinds.items())
            )
        return lines


def _worker_registry(*, settings: Settings) -> WorkerRegistry:
    templates = settings.workers.command_templates or DEFAULT_WORKER_COMMAND_TEMPLATES
    registry = WorkerRegistry()
    for kind, template in templates.items():
        registry.register(
            kind,
            CommandWorker(
                command_template=template,
                workdir_root=settings.workers.workdir_root,
                timeout_seconds=settings.workers.command_timeout_seconds,
            ),
        )
    return registry


def _submit_interruptibly(scheduler: Scheduler, work: Work) -> Report:
    """Run the scheduler off the main thread so Ctrl-C turns into a cancellation."""

    with ThreadPoolExecutor(max_workers=1, thread_name_prefix="taskhive-run") as executor:
        future = executor.submit(scheduler.submit, work)
        try:
            return future.result()
        except KeyboardInterrupt:
            scheduler.cancel("interrupted by operator")
            return future.result()


def _event_lines(report: Report) -> list[str]:
    lines = ["Events:"]
    for task_id, events in report.events.items():
        for event in events:
            transition = (
                f"{event.status_from.value if event.status_from else '-'}"
                f"->{event.status_to.value if event.status_to else '-'}"
            )
            details = " ".join(f"{key}={value}" for key, value in sorted(event.details.items()))
            lines.append(f"  {task_id} {event.event_type} {transition} {details}".rstrip())
    return lines
