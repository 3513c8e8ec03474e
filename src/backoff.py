"""
Outcome classification and retry backoff.

Turns the result of a reconciler call into a scheduling decision: requeue
after a delay, or report a failure and stop.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from errors import ErrorKind, PermanentError, error_kind, should_retry
from plugins.reconcilers.base import ReconcileResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackoffPolicy:
    """Deterministic retry delay bounded by a floor and a ceiling (seconds)."""

    min_backoff: float = 30.0
    max_backoff: float = 300.0

    def delay(self, suggested: float = 0.0) -> float:
        """
        Compute the retry delay for a suggested value.

        A zero suggestion uses the floor directly, so a retry is never
        scheduled without a delay.
        """
        if not suggested:
            return self.min_backoff
        return min(max(suggested, self.min_backoff), self.max_backoff)


@dataclass
class Outcome:
    """
    Scheduling decision for one reconciliation.

    ``requeue_after`` of None means no explicit requeue. ``error`` set means
    the reconciliation is reported as failed and not rescheduled.
    """

    requeue_after: Optional[float] = None
    error: Optional[BaseException] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class OutcomeClassifier:
    """
    Maps reconciler results to outcomes.

    Transient and config errors are retried and reported as success with a
    requeue, so retries are not counted as failures. Permanent and
    unclassified errors are reported as failures. Config errors escalate to
    permanent once ``config_error_max_attempts`` attempts have failed
    (0 disables escalation).
    """

    def __init__(self, policy: BackoffPolicy, config_error_max_attempts: int = 10):
        self.policy = policy
        self.config_error_max_attempts = config_error_max_attempts

    def classify(self, result: ReconcileResult, attempt: int = 1) -> Outcome:
        """
        Classify a reconciler result.

        Args:
            result: The reconciler's result.
            attempt: 1-based count of consecutive configuration-error
                attempts including this one.

        Returns:
            The scheduling decision.
        """
        if result.error is None:
            return Outcome(requeue_after=max(result.requeue_after, 0) or None)

        kind = error_kind(result.error)

        if kind == ErrorKind.CONFIG and self._budget_exhausted(attempt):
            escalated = PermanentError(
                "config error persisted past retry budget", result.error
            ).with_context("attempts", attempt)
            logger.warning(
                f"Escalating config error to permanent after {attempt} attempts"
            )
            return Outcome(error=escalated)

        if should_retry(result.error):
            return Outcome(requeue_after=self.policy.delay(result.requeue_after))

        return Outcome(error=result.error)

    def _budget_exhausted(self, attempt: int) -> bool:
        return (
            self.config_error_max_attempts > 0
            and attempt >= self.config_error_max_attempts
        )
