"""Mission/Result wire contract between a scheduler and its workers."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from taskhive.scheduler.models import Approach

MISSION_CONTRACT_VERSION = 1


class ResultStatus(str, Enum):
    """Terminal status a worker must report."""

    COMPLETE = "COMPLETE"
    BLOCKED = "BLOCKED"


class MalformedResultError(ValueError):
    """Worker response does not match the required return format."""


@dataclass(frozen=True, slots=True)
class MissionContext:
    """What the worker needs to know about the surrounding work."""

    parent_objective: str
    prior_results_summary: tuple[str, ...] = ()
    satisfied_prerequisites: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class MissionScope:
    """Explicit inclusion and exclusion lists."""

    must: tuple[str, ...] = ()
    must_not: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ReturnFormat:
    """Exact shape the worker's answer must take."""

    required_fields: tuple[str, ...] = ("status",)
    statuses: tuple[str, ...] = (ResultStatus.COMPLETE.value, ResultStatus.BLOCKED.value)
    description: str = (
        "JSON object with files_touched (list of paths), decisions (list of "
        "{decision, rationale}), rationale (string) and a terminal status of "
        "COMPLETE, or status BLOCKED with a reason."
    )


@dataclass(frozen=True, slots=True)
class Mission:
    """Immutable request built fresh for every dispatch attempt."""

    mission_id: str
    task_id: str
    worker_kind: str
    attempt: int
    approach: Approach
    depth: int
    context: MissionContext
    objective: str
    scope: MissionScope = field(default_factory=MissionScope)
    constraints: tuple[str, ...] = ()
    success_criteria: tuple[str, ...] = ()
    deliverables: tuple[str, ...] = ()
    return_format: ReturnFormat = field(default_factory=ReturnFormat)
    contract_version: int = MISSION_CONTRACT_VERSION

    def to_payload(self) -> dict[str, Any]:
        """Serialize into the JSON wire shape."""

        payload = asdict(self)
        payload["approach"] = self.approach.value
        payload["scope"] = {"must": list(self.scope.must), "mustNot": list(self.scope.must_not)}
        payload["successCriteria"] = list(payload.pop("success_criteria"))
        payload["returnFormat"] = payload.pop("return_format")
        return payload


@dataclass(frozen=True, slots=True)
class Decision:
    """One decision reported by a worker, with rationale."""

    decision: str
    rationale: str = ""


@dataclass(frozen=True, slots=True)
class WorkerResult:
    """Validated worker answer."""

    status: ResultStatus
    deliverables: tuple[str, ...] = ()
    decisions: tuple[Decision, ...] = ()
    rationale: str = ""
    reason: str | None = None

    @property
    def is_complete(self) -> bool:
        return self.status == ResultStatus.COMPLETE

    def summary(self) -> str:
        """Short single-line summary used as prior-work context for dependents."""

        if self.status == ResultStatus.BLOCKED:
            return f"BLOCKED: {self.reason}"
        parts = [self.rationale.strip()] if self.rationale.strip() else []
        if self.deliverables:
            parts.append(f"deliverables: {', '.join(self.deliverables)}")
        return "; ".join(parts) or "COMPLETE"

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": self.status.value,
            "files_touched": list(self.deliverables),
            "decisions": [asdict(decision) for decision in self.decisions],
            "rationale": self.rationale,
        }
        if self.reason is not None:
            payload["reason"] = self.reason
        return payload


def parse_worker_result(raw: object) -> WorkerResult:
    """Validate a raw worker response against the return format.

    A response without a valid ``status`` is an infrastructure failure, never a
    semantic block, so it raises ``MalformedResultError``.
    """

    if isinstance(raw, WorkerResult):
        return raw
    if not isinstance(raw, Mapping):
        raise MalformedResultError(f"Worker result must be an object, got {type(raw).__name__}")

    status_raw = raw.get("status")
    if not isinstance(status_raw, str) or not status_raw.strip():
        raise MalformedResultError("Worker result is missing required field: status")
    try:
        status = ResultStatus(status_raw.strip().upper())
    except ValueError as error:
        raise MalformedResultError(f"Unsupported worker result status: {status_raw!r}") from error

    if status == ResultStatus.BLOCKED:
        reason = raw.get("reason")
        if not isinstance(reason, str) or not reason.strip():
            raise MalformedResultError("BLOCKED worker result must include a non-empty reason")
        return WorkerResult(status=status, reason=reason.strip())

    files_raw = raw.get("files_touched", raw.get("deliverables", []))
    if not isinstance(files_raw, list) or not all(isinstance(item, str) for item in files_raw):
        raise MalformedResultError("files_touched must be a list of strings")

    decisions_raw = raw.get("decisions", [])
    if not isinstance(decisions_raw, list):
        raise MalformedResultError("decisions must be a list")
    decisions: list[Decision] = []
    for item in decisions_raw:
        if isinstance(item, str):
            decisions.append(Decision(decision=item))
            continue
        if not isinstance(item, Mapping) or not isinstance(item.get("decision"), str):
            raise MalformedResultError("each decision must be a string or {decision, rationale}")
        rationale = item.get("rationale", "")
        if not isinstance(rationale, str):
            raise MalformedResultError("decision rationale must be a string")
        decisions.append(Decision(decision=item["decision"], rationale=rationale))

    rationale = raw.get("rationale", "")
    if not isinstance(rationale, str):
        raise MalformedResultError("rationale must be a string")

    return WorkerResult(
        status=status,
        deliverables=tuple(files_raw),
        decisions=tuple(decisions),
        rationale=rationale,
    )


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload using deterministic formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True), "utf-8")


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def write_mission(path: Path, mission: Mission) -> None:
    write_json(path, mission.to_payload())


def read_mission_payload(path: Path) -> dict[str, Any]:
    """Load a mission file and check the fields every worker relies on."""

    raw = load_json(path)
    required = {"mission_id", "task_id", "objective", "context", "scope", "returnFormat"}
    missing = [key for key in sorted(required) if key not in raw]
    if missing:
        raise ValueError(f"Mission missing required fields: {', '.join(missing)}")
    if not isinstance(raw["objective"], str) or not raw["objective"].strip():
        raise ValueError("mission.objective must be a non-empty string")
    return raw
