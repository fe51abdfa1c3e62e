"""Stuck-environment detector (detect only).

Provisioning that exhausts a polling budget leaves the record in
``provisioning`` indefinitely, and a provision job that never ran leaves it
in ``pending``. Nothing repairs these automatically; this detector lists
them so an operator can decide.

Usage::

    detector = StuckEnvironmentDetector.from_policies(ADDRESS_POLLING, READINESS_POLLING)
    report = detector.sweep(records, now=datetime.now(timezone.utc))
    # report.stuck lists environments past their threshold
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Mapping, Sequence

from envctl.environments.model import PENDING, PROVISIONING, EnvironmentRecord
from envctl.provisioning.polling import PollingPolicy

DEFAULT_GRACE_SECONDS = 300.0
DEFAULT_PENDING_THRESHOLD_SECONDS = 900.0


@dataclass(frozen=True, slots=True)
class StuckEnvironment:
    environment: EnvironmentRecord
    elapsed_seconds: float
    threshold_seconds: float


@dataclass(frozen=True, slots=True)
class StuckReport:
    """Result of a sweep.

    Attributes:
        stuck: Environments older than their status threshold.
        healthy: In-flight environments still within their threshold.
        skipped: Environments in statuses that are not evaluated.
        sweep_ts: Timestamp of the sweep.
    """

    stuck: tuple[StuckEnvironment, ...]
    healthy: tuple[EnvironmentRecord, ...]
    skipped: tuple[EnvironmentRecord, ...]
    sweep_ts: datetime

    @property
    def stuck_count(self) -> int:
        return len(self.stuck)

    @property
    def total_scanned(self) -> int:
        return len(self.stuck) + len(self.healthy) + len(self.skipped)

    @property
    def stuck_by_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for entry in self.stuck:
            status = entry.environment.status
            counts[status] = counts.get(status, 0) + 1
        return counts

    def to_dict(self) -> dict:
        return {
            'sweep_ts': self.sweep_ts.isoformat(),
            'total_scanned': self.total_scanned,
            'stuck_count': self.stuck_count,
            'stuck_by_status': self.stuck_by_status,
            'stuck': [
                {
                    'environment': entry.environment.to_dict(),
                    'elapsed_seconds': round(entry.elapsed_seconds, 1),
                    'threshold_seconds': entry.threshold_seconds,
                }
                for entry in self.stuck
            ],
        }


class StuckEnvironmentDetector:
    """Flags in-flight environments whose last update is older than a threshold.

    Args:
        thresholds: Seconds since ``updated_at`` per status. Statuses not in
            the mapping are skipped.
    """

    def __init__(self, thresholds: Mapping[str, float]) -> None:
        self._thresholds = MappingProxyType(dict(thresholds))

    @classmethod
    def from_policies(
        cls,
        address: PollingPolicy,
        readiness: PollingPolicy,
        *,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        pending_seconds: float = DEFAULT_PENDING_THRESHOLD_SECONDS,
    ) -> StuckEnvironmentDetector:
        return cls({
            PENDING: pending_seconds,
            PROVISIONING: address.budget_seconds + readiness.budget_seconds + grace_seconds,
        })

    @property
    def thresholds(self) -> Mapping[str, float]:
        return self._thresholds

    def sweep(self, environments: Sequence[EnvironmentRecord], *, now: datetime) -> StuckReport:
        """Categorise environments. ``now`` must be timezone-aware."""
        if now.tzinfo is None:
            raise ValueError('now must be timezone-aware')

        stuck: list[StuckEnvironment] = []
        healthy: list[EnvironmentRecord] = []
        skipped: list[EnvironmentRecord] = []

        for record in environments:
            threshold = self._thresholds.get(record.status)
            if threshold is None:
                skipped.append(record)
                continue
            elapsed = (now - record.updated_at).total_seconds()
            if elapsed > threshold:
                stuck.append(StuckEnvironment(record, elapsed, threshold))
            else:
                healthy.append(record)

        return StuckReport(
            stuck=tuple(stuck),
            healthy=tuple(healthy),
            skipped=tuple(skipped),
            sweep_ts=now,
        )
