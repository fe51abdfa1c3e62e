"""Bounded polling policies."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class PollingPolicy:
    """Poll every ``interval_seconds``, at most ``max_attempts`` times."""

    interval_seconds: float
    max_attempts: int

    def __post_init__(self) -> None:
        if self.interval_seconds < 0:
            raise ValueError('interval_seconds must be >= 0')
        if self.max_attempts < 1:
            raise ValueError('max_attempts must be >= 1')

    @property
    def budget_seconds(self) -> float:
        return self.interval_seconds * self.max_attempts


ADDRESS_POLLING = PollingPolicy(interval_seconds=5.0, max_attempts=10)
READINESS_POLLING = PollingPolicy(interval_seconds=10.0, max_attempts=30)
