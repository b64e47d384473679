"""
Backoff policy for webhook retries.

Bounded exponential: min(base * 2^(n-1), cap), optionally spread by a
uniform +/- jitter factor so tasks enqueued together do not retry in
lock-step. The result never exceeds the cap.
"""
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from hookrelay.config import settings


@dataclass(frozen=True)
class BackoffPolicy:
    base_seconds: float = 60.0
    cap_seconds: float = 3600.0
    jitter: float = 0.0
    rng: random.Random = field(default_factory=random.Random, compare=False, repr=False)

    def __post_init__(self):
        if self.base_seconds <= 0:
            raise ValueError("base_seconds must be positive")
        if self.cap_seconds < self.base_seconds:
            raise ValueError("cap_seconds must be >= base_seconds")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")

    @classmethod
    def from_settings(cls) -> "BackoffPolicy":
        return cls(
            base_seconds=settings.BACKOFF_BASE_SECONDS,
            cap_seconds=settings.BACKOFF_CAP_SECONDS,
            jitter=settings.BACKOFF_JITTER,
        )

    def base_delay_seconds(self, attempt_number: int) -> float:
        """Un-jittered delay for the given attempt (1-based)."""
        if attempt_number < 1:
            raise ValueError(f"attempt_number must be >= 1, got {attempt_number}")
        # Past this exponent the product is already beyond any sane cap
        exponent = min(attempt_number - 1, 62)
        return min(self.base_seconds * (2 ** exponent), self.cap_seconds)

    def next_delay(self, attempt_number: int) -> timedelta:
        delay = self.base_delay_seconds(attempt_number)
        if self.jitter:
            delay *= self.rng.uniform(1 - self.jitter, 1 + self.jitter)
            delay = min(delay, self.cap_seconds)
        return timedelta(seconds=delay)

    def next_attempt_at(self, attempt_number: int, now: datetime) -> datetime:
        return now + self.next_delay(attempt_number)
