"""
Retry policy for failed timer webhook deliveries.

Backoff follows a fixed ladder (1m, 5m, 15m by default). Once a timer has
failed max_retries times the policy is terminal and the timer expires.
"""
from collections.abc import Sequence

DEFAULT_RETRY_DELAYS_SECONDS = (60, 300, 900)
DEFAULT_MAX_RETRIES = 3


class RetryPolicy:
    """Maps a timer's retry_count to the delay before its next attempt."""

    def __init__(
        self,
        delays_seconds: Sequence[int] = DEFAULT_RETRY_DELAYS_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ):
        if not delays_seconds:
            raise ValueError("delays_seconds must not be empty")
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.delays_ms = tuple(int(delay * 1000) for delay in delays_seconds)
        self.max_retries = max_retries

    def next_delay(self, retry_count: int) -> int | None:
        """
        Delay in milliseconds before the next attempt.

        Returns None when retries are exhausted (terminal).
        """
        if retry_count >= self.max_retries:
            return None
        # ladder shorter than max_retries reuses its last step
        index = min(max(retry_count, 0), len(self.delays_ms) - 1)
        return self.delays_ms[index]

    def is_terminal(self, retry_count: int) -> bool:
        return self.next_delay(retry_count) is None

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            delays_seconds=settings.TIMER_RETRY_DELAYS_SECONDS,
            max_retries=settings.TIMER_MAX_RETRIES,
        )
