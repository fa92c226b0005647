# =============================================================================
# Resilink -- Retry Policy
# =============================================================================

from __future__ import annotations

from .config import RetryConfig
from .types import FailureKind, RetryAction, RetryDecision

_GIVE_UP = RetryDecision(RetryAction.GIVE_UP)


class RetryPolicy:
    """Decides whether a failed request is retried and after how long.

    Pure: holds only configuration, so one instance can serve every
    request.  *attempt* is 1-based: the number of the retry about to be
    made.

    Args:
        config: Retry schedule. Defaults to 3 retries at 1s, 2s, 4s.
    """

    def __init__(self, config: RetryConfig | None = None) -> None:
        self._config = config or RetryConfig()

    @property
    def max_retries(self) -> int:
        return self._config.max_retries

    def is_retryable(self, outcome: int | FailureKind) -> bool:
        if isinstance(outcome, FailureKind):
            return outcome == FailureKind.TIMEOUT and self._config.retry_timeouts
        return outcome in self._config.retryable_statuses

    def delay(self, attempt: int) -> float:
        cfg = self._config
        return cfg.base_delay * cfg.multiplier ** (attempt - 1)

    def decide(self, outcome: int | FailureKind, attempt: int) -> RetryDecision:
        if not self.is_retryable(outcome):
            return _GIVE_UP
        if attempt > self._config.max_retries:
            return _GIVE_UP
        return RetryDecision(RetryAction.RETRY, self.delay(attempt))
