"""Backoff between attempts of a soft-failed job."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from config.settings import JobQueueConfig
from models.schemas import utcnow

POLICIES = ("exponential", "fixed")


@dataclass
class BackoffPolicy:
    """
    exponential: base * 2^(attempts-1), capped at max_seconds
    fixed:       base, every time

    `attempts` is the number of attempts already made (≥ 1 after a failure).
    A base of 0 makes failed jobs eligible again immediately.
    """
    policy: str = "exponential"
    base_seconds: float = 30.0
    max_seconds: float = 900.0

    def __post_init__(self):
        if self.policy not in POLICIES:
            raise ValueError(f"Unknown backoff policy {self.policy!r}, expected one of {POLICIES}")

    @classmethod
    def from_config(cls, config: JobQueueConfig) -> "BackoffPolicy":
        return cls(
            policy=config.backoff_policy,
            base_seconds=config.backoff_base_seconds,
            max_seconds=config.backoff_max_seconds,
        )

    def delay(self, attempts: int) -> float:
        if self.policy == "fixed":
            return min(self.base_seconds, self.max_seconds)
        exponent = max(attempts - 1, 0)
        return min(self.base_seconds * (2 ** exponent), self.max_seconds)

    def next_attempt_at(self, attempts: int, now: Optional[datetime] = None) -> datetime:
        return (now or utcnow()) + timedelta(seconds=self.delay(attempts))
