"""Validation of a unit of work's decomposition into tasks."""

from __future__ import annotations

from collections import deque

from taskhive.scheduler.models import TaskSpec, Work


class DecompositionError(ValueError):
    """Work cannot be scheduled as decomposed."""


def validate_work(
    work: Work,
    *,
    min_tasks: int = 3,
    max_tasks: int = 7,
    recursive: bool = True,
) -> None:
    """Check task count, ids, dependencies and acyclicity.

    Raises ``DecompositionError`` describing the first problem found.
    """

    if not work.goal.strip():
        raise DecompositionError("Work goal must be a non-empty string")
    _validate_specs(work.tasks, min_tasks=min_tasks, max_tasks=max_tasks, path=work.goal)
    if not recursive:
        return
    for spec in work.tasks:
        if spec.subtasks:
            validate_work(
                subwork_for(spec, parent_goal=work.goal),
                min_tasks=min_tasks,
                max_tasks=max_tasks,
                recursive=True,
            )


def subwork_for(spec: TaskSpec, *, parent_goal: str, context_summary: str = "") -> Work:
    """Work handed to a nested scheduler for a task with explicit subtasks."""

    return Work(
        goal=spec.content,
        tasks=spec.subtasks,
        context_summary=context_summary or f"Part of: {parent_goal}",
        constraints=spec.constraints,
    )


def _validate_specs(
    specs: tuple[TaskSpec, ...],
    *,
    min_tasks: int,
    max_tasks: int,
    path: str,
) -> None:
    if not min_tasks <= len(specs) <= max_tasks:
        raise DecompositionError(
            f"Work {path!r} must be split into {min_tasks}-{max_tasks} tasks, got {len(specs)}",
        )

    ids: set[str] = set()
    for spec in specs:
        if not spec.task_id.strip():
            raise DecompositionError(f"Work {path!r} has a task with an empty id")
        if spec.task_id in ids:
            raise DecompositionError(f"Duplicate task id in {path!r}: {spec.task_id!r}")
        ids.add(spec.task_id)
        if not spec.content.strip():
            raise DecompositionError(f"Task {spec.task_id!r} has empty content")
        if spec.estimated_steps < 0:
            raise DecompositionError(f"Task {spec.task_id!r} has negative estimated_steps")

    for spec in specs:
        if spec.task_id in spec.dependencies:
            raise DecompositionError(f"Task {spec.task_id!r} depends on itself")
        unknown = sorted(spec.dependencies - ids)
        if unknown:
            raise DecompositionError(
                f"Task {spec.task_id!r} depends on unknown tasks: {', '.join(unknown)}",
            )

    cycle = _find_cycle_members(specs)
    if cycle:
        raise DecompositionError(f"Dependency cycle between tasks: {', '.join(cycle)}")


def _find_cycle_members(specs: tuple[TaskSpec, ...]) -> list[str]:
    remaining = {spec.task_id: set(spec.dependencies) for spec in specs}
    dependents: dict[str, list[str]] = {spec.task_id: [] for spec in specs}
    for spec in specs:
        for dep in spec.dependencies:
            dependents[dep].append(spec.task_id)

    ready = deque(task_id for task_id, deps in remaining.items() if not deps)
    resolved = 0
    while ready:
        task_id = ready.popleft()
        resolved += 1
        for dependent in dependents[task_id]:
            remaining[dependent].discard(task_id)
            if not remaining[dependent]:
                ready.append(dependent)
    if resolved == len(specs):
        return []
    return sorted(task_id for task_id, deps in remaining.items() if deps)
