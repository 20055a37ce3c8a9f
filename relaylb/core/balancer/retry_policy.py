from __future__ import annotations

from enum import Enum

from relaylb.core.utils.cancellation import CancellationToken, sleep_with_cancellation
from relaylb.core.utils.retry import backoff_seconds, parse_quota_retry_delay

DEFAULT_MAX_RETRIES = 5
DEFAULT_BASE_DELAY_SECONDS = 1.0
DEFAULT_MAX_DELAY_SECONDS = 30.0
DEFAULT_HINT_BUFFER_SECONDS = 0.5


class RetryOutcome(str, Enum):
    RETRY = "retry"
    MAX_EXCEEDED = "max_exceeded"
    CANCELLED = "cancelled"


class RetryPolicy:
    """Bounded in-place retry for rate-limited responses, one instance per logical request."""

    def __init__(
        self,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
        max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS,
        hint_buffer_seconds: float = DEFAULT_HINT_BUFFER_SECONDS,
    ) -> None:
        self.max_retries = max_retries
        self._base_delay_seconds = base_delay_seconds
        self._max_delay_seconds = max_delay_seconds
        self._hint_buffer_seconds = hint_buffer_seconds
        self.retry_count = 0

    @property
    def exhausted(self) -> bool:
        return self.retry_count >= self.max_retries

    def compute_delay(self, body: str | None = None) -> float:
        server_delay = parse_quota_retry_delay(body)
        if server_delay is not None:
            return min(server_delay + self._hint_buffer_seconds, self._max_delay_seconds)
        return backoff_seconds(self.retry_count, base=self._base_delay_seconds, cap=self._max_delay_seconds)

    async def wait(self, body: str | None = None, token: CancellationToken | None = None) -> RetryOutcome:
        if self.exhausted:
            return RetryOutcome.MAX_EXCEEDED
        delay = self.compute_delay(body)
        self.retry_count += 1
        completed = await sleep_with_cancellation(delay, token)
        if not completed:
            return RetryOutcome.CANCELLED
        return RetryOutcome.RETRY
