"""Retry delay and pause policy for failing resources."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

# 2 ** 32 seconds of delay is already far past any sensible cap.
_MAX_EXPONENT = 32


@dataclass(frozen=True)
class ErrorBackoffController:
    """Pure policy: exponential delay capped at ``max_delay_ms``; pause after ``max_errors``."""

    base_delay_ms: int = 1000
    max_delay_ms: int = 60000
    max_errors: int = 5

    @classmethod
    def from_settings(cls, settings) -> "ErrorBackoffController":
        return cls(
            base_delay_ms=settings.backoff_base_delay_ms,
            max_delay_ms=settings.backoff_max_delay_ms,
            max_errors=settings.max_consecutive_errors,
        )

    def delay_ms(self, error_count: int) -> int:
        exponent = min(max(error_count, 0), _MAX_EXPONENT)
        return min(self.base_delay_ms * 2 ** exponent, self.max_delay_ms)

    def delay(self, error_count: int) -> timedelta:
        return timedelta(milliseconds=self.delay_ms(error_count))

    def should_pause(self, error_count: int, max_errors: Optional[int] = None) -> bool:
        limit = self.max_errors if max_errors is None else max_errors
        return error_count >= limit

    def next_retry_at(self, error_count: int, now: datetime) -> datetime:
        return now + self.delay(error_count)
