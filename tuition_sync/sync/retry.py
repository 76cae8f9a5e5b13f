"""
tuition_sync/sync/retry.py
Bounded retry policy for post-commit refetches
"""
from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class RetryPolicy:
    """
    max_attempts counts the first refetch, so the default of 2 means one
    additional attempt. delays[i] is the pause before attempt i + 1; the last
    delay is reused when the schedule is shorter than the attempt count.
    """
    max_attempts: int = 2
    delays: Tuple[float, ...] = (1.0,)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if any(delay < 0 for delay in self.delays):
            raise ValueError("retry delays must be non-negative")

    def delay_before(self, attempt: int) -> float:
        """Seconds to wait before the given zero-based attempt"""
        if attempt <= 0 or not self.delays:
            return 0.0
        index = min(attempt - 1, len(self.delays) - 1)
        return self.delays[index]

    @classmethod
    def fixed(cls, max_attempts: int, delay: float) -> "RetryPolicy":
        return cls(max_attempts=max_attempts, delays=(delay,))

    @classmethod
    def exponential(cls, max_attempts: int, base_delay: float, factor: float = 2.0) -> "RetryPolicy":
        delays = tuple(base_delay * (factor ** i) for i in range(max(max_attempts - 1, 1)))
        return cls(max_attempts=max_attempts, delays=delays)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls.exponential(
            max_attempts=settings.REFETCH_MAX_ATTEMPTS,
            base_delay=settings.REFETCH_RETRY_DELAY_SECONDS,
            factor=settings.REFETCH_BACKOFF_FACTOR
        )


__all__ = ["RetryPolicy"]
