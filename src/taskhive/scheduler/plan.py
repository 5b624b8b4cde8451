"""JSON plan files: one unit of work with its task decomposition."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from taskhive.scheduler.mission import load_json, write_json
from taskhive.scheduler.models import TaskPriority, TaskSpec, Work


def read_plan(path: Path) -> Work:
    """Deserialize and validate a plan file.

    Structural problems raise ``ValueError`` or ``TypeError``; decomposition
    rules (task counts, cycles) are checked separately by ``validate_work``.
    """

    raw = load_json(path)
    goal = raw.get("goal")
    context_summary = raw.get("context_summary", "")
    if not isinstance(goal, str) or not goal.strip():
        raise ValueError("plan.goal must be a non-empty string")
    if not isinstance(context_summary, str):
        raise TypeError("plan.context_summary must be a string")
    tasks_raw = raw.get("tasks")
    if not isinstance(tasks_raw, list):
        raise TypeError("plan.tasks must be an array")
    return Work(
        goal=goal.strip(),
        tasks=tuple(_parse_task(item, path="plan.tasks") for item in tasks_raw),
        context_summary=context_summary,
        constraints=_string_tuple(raw, "constraints", path="plan"),
    )


def write_plan(path: Path, work: Work) -> None:
    """Serialize a unit of work in the same shape ``read_plan`` accepts."""

    write_json(
        path,
        {
            "goal": work.goal,
            "context_summary": work.context_summary,
            "constraints": list(work.constraints),
            "tasks": [_task_payload(spec) for spec in work.tasks],
        },
    )


def _parse_task(item: object, *, path: str) -> TaskSpec:
    if not isinstance(item, dict):
        raise TypeError(f"{path} entry must be an object")
    task_id = item.get("id")
    content = item.get("content")
    if not isinstance(task_id, str) or not task_id.strip():
        raise ValueError(f"{path}.id must be a non-empty string")
    here = f"{path}[{task_id}]"
    if not isinstance(content, str) or not content.strip():
        raise ValueError(f"{here}.content must be a non-empty string")

    worker_kind = item.get("worker_kind", "default")
    if not isinstance(worker_kind, str) or not worker_kind.strip():
        raise ValueError(f"{here}.worker_kind must be a non-empty string")

    priority_raw = item.get("priority", TaskPriority.MEDIUM.value)
    try:
        priority = TaskPriority(str(priority_raw).strip().lower())
    except ValueError as error:
        allowed = ", ".join(priority.value for priority in TaskPriority)
        raise ValueError(f"{here}.priority must be one of: {allowed}") from error

    estimated_steps = item.get("estimated_steps", 1)
    if isinstance(estimated_steps, bool) or not isinstance(estimated_steps, int):
        raise TypeError(f"{here}.estimated_steps must be an integer")

    scope = item.get("scope", {})
    if not isinstance(scope, dict):
        raise TypeError(f"{here}.scope must be an object")

    subtasks_raw = item.get("subtasks", [])
    if not isinstance(subtasks_raw, list):
        raise TypeError(f"{here}.subtasks must be an array")

    return TaskSpec(
        task_id=task_id.strip(),
        content=content.strip(),
        worker_kind=worker_kind.strip().lower(),
        priority=priority,
        dependencies=frozenset(_string_tuple(item, "dependencies", path=here)),
        scope_must=_string_tuple(scope, "must", path=f"{here}.scope"),
        scope_must_not=_string_tuple(scope, "mustNot", path=f"{here}.scope"),
        constraints=_string_tuple(item, "constraints", path=here),
        success_criteria=_string_tuple(item, "success_criteria", path=here),
        deliverables=_string_tuple(item, "deliverables", path=here),
        estimated_steps=estimated_steps,
        subtasks=tuple(_parse_task(sub, path=f"{here}.subtasks") for sub in subtasks_raw),
    )


def _string_tuple(raw: dict[str, Any], key: str, *, path: str) -> tuple[str, ...]:
    value = raw.get(key, [])
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise TypeError(f"{path}.{key} must be an array of strings")
    return tuple(value)


def _task_payload(spec: TaskSpec) -> dict[str, Any]:
    return {
        "id": spec.task_id,
        "content": spec.content,
        "worker_kind": spec.worker_kind,
        "priority": spec.priority.value,
        "dependencies": sorted(spec.dependencies),
        "scope": {"must": list(spec.scope_must), "mustNot": list(spec.scope_must_not)},
        "constraints": list(spec.constraints),
        "success_criteria": list(spec.success_criteria),
        "deliverables": list(spec.deliverables),
        "estimated_steps": spec.estimated_steps,
        "subtasks": [_task_payload(sub) for sub in spec.subtasks],
    }
