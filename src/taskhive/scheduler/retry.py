"""Retry and failure-isolation policy for failed dispatch attempts."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from taskhive.scheduler.models import RETRYABLE_FAILURE_CLASSES, Approach, FailureClass


class RetryAction(str, Enum):
    RETRY = "retry"
    BLOCK = "block"


@dataclass(slots=True)
class RetryDecision:
    """Decision returned by retry policy."""

    action: RetryAction
    approach: Approach | None
    reason: str
    extra_delay: bool = False

    @property
    def should_retry(self) -> bool:
        return self.action == RetryAction.RETRY


def decide_retry(
    *,
    failure_class: FailureClass,
    attempt_count: int,
    max_attempts: int,
) -> RetryDecision:
    """Decide what happens after attempt ``attempt_count`` failed.

    The last available attempt always uses an adjusted approach; earlier
    retries repeat the same approach.  Exhaustion or a non-retryable class
    blocks the task without affecting its siblings.
    """

    if failure_class not in RETRYABLE_FAILURE_CLASSES:
        return RetryDecision(
            action=RetryAction.BLOCK,
            approach=None,
            reason=f"Failure class {failure_class.value} is not retryable.",
        )
    if attempt_count >= max_attempts:
        return RetryDecision(
            action=RetryAction.BLOCK,
            approach=None,
            reason=f"Attempts exhausted ({attempt_count}/{max_attempts}).",
        )
    next_attempt = attempt_count + 1
    approach = approach_for_attempt(attempt=next_attempt, max_attempts=max_attempts)
    return RetryDecision(
        action=RetryAction.RETRY,
        approach=approach,
        reason=f"Retrying as attempt {next_attempt}/{max_attempts} with {approach.value} approach.",
        extra_delay=failure_class == FailureClass.QUOTA_EXHAUSTED,
    )


def approach_for_attempt(*, attempt: int, max_attempts: int) -> Approach:
    """Approach used for a given 1-based attempt number."""

    if attempt > 1 and attempt == max_attempts:
        return Approach.ADJUSTED
    return Approach.SAME
