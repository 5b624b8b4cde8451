"""Route resolution: run a task locally, delegate it, or hand it to a nested scheduler."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from taskhive.config import Settings
from taskhive.scheduler.models import Approach, Route, TaskSpec

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RouteDecision:
    """Where one attempt of a task goes and which worker kind handles it."""

    route: Route
    worker_kind: str
    reason: str


@dataclass(slots=True)
class RoutingDefaults:
    """Settings snapshot for the directly-vs-delegate classifier.

    Misrouting only affects quality, never correctness: every route still
    honours the Mission/Result contract.
    """

    local_kinds: frozenset[str] = frozenset()
    local_max_steps: int = 1
    fallback_kinds: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.local_max_steps < 0:
            raise ValueError("local_max_steps must be >= 0")
        self.local_kinds = frozenset(_normalize_kind(kind) for kind in self.local_kinds)
        self.fallback_kinds = {
            _normalize_kind(kind): _normalize_kind(fallback)
            for kind, fallback in self.fallback_kinds.items()
        }
        for kind, fallback in self.fallback_kinds.items():
            if not kind or not fallback:
                raise ValueError("Worker fallback kinds must be non-empty strings")

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        local_kinds: frozenset[str] = frozenset(),
    ) -> RoutingDefaults:
        return cls(
            local_kinds=local_kinds,
            local_max_steps=settings.scheduler.local_max_steps,
            fallback_kinds=dict(settings.workers.fallback_kinds),
        )


def resolve_route(
    *,
    spec: TaskSpec,
    depth: int,
    max_depth: int,
    defaults: RoutingDefaults,
    approach: Approach = Approach.SAME,
) -> RouteDecision:
    """Classify one attempt of a task.

    Multi-step scope (explicit subtasks) goes to a nested scheduler while the
    depth limit allows it; small tasks of a locally handled kind run inline;
    everything else is delegated.  An adjusted approach swaps in the
    configured fallback worker kind when there is one.
    """

    worker_kind = _normalize_kind(spec.worker_kind)
    if approach == Approach.ADJUSTED:
        worker_kind = defaults.fallback_kinds.get(worker_kind, worker_kind)

    if spec.subtasks:
        if depth < max_depth:
            return RouteDecision(
                route=Route.NESTED,
                worker_kind=worker_kind,
                reason=f"{len(spec.subtasks)} subtasks at depth {depth} < {max_depth}",
            )
        logger.warning(
            "Task %s has subtasks but depth %d reached max_depth %d; delegating as a leaf",
            spec.task_id,
            depth,
            max_depth,
        )
        return RouteDecision(
            route=Route.DELEGATE,
            worker_kind=worker_kind,
            reason="depth limit reached; delegated as leaf",
        )

    if worker_kind in defaults.local_kinds and spec.estimated_steps <= defaults.local_max_steps:
        return RouteDecision(
            route=Route.LOCAL,
            worker_kind=worker_kind,
            reason=f"estimated_steps={spec.estimated_steps} <= {defaults.local_max_steps}",
        )

    return RouteDecision(route=Route.DELEGATE, worker_kind=worker_kind, reason="delegated")


def _normalize_kind(value: str) -> str:
    return value.strip().lower()
