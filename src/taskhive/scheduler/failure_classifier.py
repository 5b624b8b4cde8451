"""Deterministic worker failure classification for scheduler retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from taskhive.scheduler.decomposer import DecompositionError
from taskhive.scheduler.mission import MalformedResultError
from taskhive.scheduler.models import FailureClass
from taskhive.scheduler.workers.base import (
    CommandFailedError,
    WorkerError,
    WorkerQuotaError,
    WorkerTimeoutError,
)

FAILURE_CLASSIFIER_VERSION = 1

_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "usage limit",
    "credits",
    "billing",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "overloaded",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "deadline exceeded",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "please retry",
    "try again later",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for task events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_worker_failure(  # noqa: PLR0911
    error: BaseException,
    *,
    transient_exit_codes: tuple[int, ...] = (137, 143),
) -> FailureClassification:
    """Classify a failed dispatch into a retry class.

    Exception type wins over message text, and a nested plan that fails
    validation is never retried. Message patterns are checked in
    order quota, rate limit, auth, timeout, transient.  Anything else is
    treated as transient.
    """

    if isinstance(error, MalformedResultError):
        return _classification(FailureClass.MALFORMED_RESULT, "malformed_result", None)
    if isinstance(error, WorkerTimeoutError | TimeoutError):
        return _classification(FailureClass.TIMEOUT, "timeout", None)
    if isinstance(error, WorkerQuotaError):
        return _classification(FailureClass.QUOTA_EXHAUSTED, "quota_signal", None)
    if isinstance(error, WorkerError) and not error.transient:
        return _classification(FailureClass.NON_RETRYABLE, "worker_non_retryable", None)
    if isinstance(error, DecompositionError):
        return _classification(FailureClass.NON_RETRYABLE, "invalid_decomposition", None)

    haystack = _normalize_text(error)

    pattern = _first_match(haystack, _QUOTA_PATTERNS)
    if pattern is not None:
        return _classification(FailureClass.QUOTA_EXHAUSTED, "quota", pattern)

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return _classification(FailureClass.QUOTA_EXHAUSTED, "rate_limit", pattern)

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return _classification(FailureClass.NON_RETRYABLE, "access_or_auth", pattern)

    pattern = _first_match(haystack, _TIMEOUT_PATTERNS)
    if pattern is not None:
        return _classification(FailureClass.TIMEOUT, "timeout_message", pattern)

    pattern = _first_match(haystack, _TRANSIENT_PATTERNS)
    if pattern is not None:
        return _classification(FailureClass.TRANSIENT, "generic_transient", pattern)

    if isinstance(error, CommandFailedError) and error.exit_code in transient_exit_codes:
        return _classification(FailureClass.TRANSIENT, "transient_exit_code", None)

    return _classification(FailureClass.TRANSIENT, "fallback_transient", None)


def _classification(
    failure_class: FailureClass,
    rule: str,
    pattern: str | None,
) -> FailureClassification:
    return FailureClassification(
        failure_class=failure_class,
        reason_code=f"{failure_class.value}:{rule}",
        matched_rule=rule,
        matched_pattern=pattern,
    )


def _normalize_text(error: BaseException) -> str:
    parts = [str(error)]
    if isinstance(error, CommandFailedError):
        parts.extend((error.stderr, error.stdout))
    return "\n".join(parts).lower()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
