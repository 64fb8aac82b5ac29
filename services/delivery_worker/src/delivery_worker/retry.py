"""Backoff computation for retryable delivery failures."""

import datetime

from shared.enums import FailureClass

from delivery_worker.config import RetryConfig


class RetryPolicy:
    """Pure mapping from (failure class, attempt count) to a delay.

    ``backoff = base(failure_class) * 2 ** attempt_count``, capped at the
    configured ceiling. Throttling backs off from a shorter base than
    timeouts, and timeouts from a shorter base than 5xx-style provider
    errors. Placing the record back on the queue is the dispatcher's job.
    """

    def __init__(self, config: RetryConfig | None = None) -> None:
        self._config = config if config is not None else RetryConfig()

    @property
    def ceiling(self) -> datetime.timedelta:
        return datetime.timedelta(seconds=self._config.ceiling_seconds)

    def backoff(
        self, failure_class: FailureClass, attempt_count: int
    ) -> datetime.timedelta:
        """Delay before the next attempt.

        Raises ValueError for non-retryable classes or a negative count.
        """
        if not failure_class.retryable:
            raise ValueError(f"Failure class is not retryable: {failure_class!r}")
        if attempt_count < 0:
            raise ValueError(f"attempt_count must be >= 0, got {attempt_count}")

        base = self._config.base_for(failure_class)
        ceiling = self._config.ceiling_seconds
        # Clamp before the float multiply; the ceiling is reached far earlier.
        exponent = min(attempt_count, 62)
        seconds = min(base * (2**exponent), ceiling)
        return datetime.timedelta(seconds=seconds)
