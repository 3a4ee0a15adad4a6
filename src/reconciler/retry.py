"""Retry policy for provider calls.

TransientError is retried with capped exponential backoff, RejectedError
never, UnauthenticatedError once after a credential refresh. The engine
applies the policy; this module only computes the schedule.
"""

from dataclasses import dataclass
from typing import Iterator

from errors import ProviderError, UnauthenticatedError


@dataclass(frozen=True)
class RetryPolicy:
    """Capped exponential backoff.

    Attributes:
        max_attempts: Total attempts including the first
        base_delay: Delay before the second attempt (seconds)
        max_delay: Upper bound on any single delay
        multiplier: Growth factor between consecutive delays
    """
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")

    @classmethod
    def from_settings(cls, settings) -> 'RetryPolicy':
        """Build from config.ReconcileSettings."""
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
        )

    def delay(self, attempt: int) -> float:
        """Delay after failed attempt number `attempt` (1-based)."""
        return min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 1))

    def delays(self) -> Iterator[float]:
        for attempt in range(1, self.max_attempts):
            yield self.delay(attempt)

    def should_retry(self, error: ProviderError, attempt: int) -> bool:
        return error.retryable and attempt < self.max_attempts


def needs_refresh(error: ProviderError) -> bool:
    return isinstance(error, UnauthenticatedError)
