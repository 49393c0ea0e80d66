"""Retry policy shared by every job kind."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable


def exponential_backoff(base_delay: float, attempt: int) -> float:
    """``base * 2^(attempt - 1)`` for the attempt that just failed."""

    return base_delay * (2 ** max(0, attempt - 1))


def fixed_backoff(base_delay: float, attempt: int) -> float:
    return base_delay


@dataclass(frozen=True)
class RetryPolicy:
    """How many attempts a job gets and how long to wait between them."""

    max_attempts: int
    base_delay: float
    backoff: Callable[[float, int], float] = field(default=exponential_backoff)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay cannot be negative")

    def should_retry(self, attempts: int) -> bool:
        return attempts < self.max_attempts

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before the attempt after ``attempt``."""

        return self.backoff(self.base_delay, attempt)
