from __future__ import annotations


class BackoffStrategy:
    """Linear backoff for detection retries.

    Computes the wait as base + retry_count * increment, capped at a
    configurable maximum. No jitter, so consecutive waits never decrease.
    `max_retries` bounds how many backoff rounds a task may spend before
    the detection is treated as persistent."""

    def __init__(
        self,
        base_seconds: float = 30.0,
        increment_seconds: float = 30.0,
        max_seconds: float = 300.0,
        max_retries: int = 1,
    ) -> None:
        self._base = max(0.0, base_seconds)
        self._increment = max(0.0, increment_seconds)
        self._max = max(self._base, max_seconds)
        self._max_retries = max(0, max_retries)

    @property
    def max_retries(self) -> int:
        return self._max_retries

    def get_sleep(self, retry_count: int) -> float:
        """Backoff window in seconds for the given (0-based) consecutive detection count."""
        return min(self._max, self._base + max(retry_count, 0) * self._increment)

    def exhausted(self, retry_count: int) -> bool:
        """True once `retry_count` backoff rounds have already been spent."""
        return retry_count >= self._max_retries
