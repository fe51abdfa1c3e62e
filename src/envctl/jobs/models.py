"""Job queue value types: jobs, retry policy, queue names and events."""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Mapping

PROVISION_QUEUE = 'vm-provision'
DEPROVISION_QUEUE = 'vm-deprovision'
STATUS_CHECK_QUEUE = 'vm-status-check'

KNOWN_QUEUES = (PROVISION_QUEUE, DEPROVISION_QUEUE, STATUS_CHECK_QUEUE)

OUTCOME_COMPLETED = 'completed'
OUTCOME_DEAD_LETTERED = 'dead-lettered'

# Completed jobs retained per queue for inspection.
COMPLETED_RETENTION = 100


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff: attempt n+1 waits ``base * 2**(n-1)`` seconds."""

    max_attempts: int = 3
    base_delay_seconds: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError('max_attempts must be >= 1')
        if self.base_delay_seconds < 0:
            raise ValueError('base_delay_seconds must be >= 0')

    def delay_after(self, attempts_made: int) -> float:
        """Delay before the next attempt, given ``attempts_made`` so far."""
        return self.base_delay_seconds * (2 ** max(attempts_made - 1, 0))

    def exhausted(self, attempts_made: int) -> bool:
        return attempts_made >= self.max_attempts


@dataclass(frozen=True, slots=True)
class Job:
    queue_name: str
    payload: dict[str, Any]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    attempt_count: int = 0
    max_attempts: int = 3
    outcome: str | None = None
    last_error: str | None = None
    enqueued_at: float = field(default_factory=time.time)
    available_at: float | None = None

    @property
    def is_live(self) -> bool:
        return self.outcome is None

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> Job:
        data: Mapping[str, Any] = json.loads(raw)
        return cls(**{k: data[k] for k in cls.__dataclass_fields__ if k in data})


@dataclass(frozen=True, slots=True)
class JobEvent:
    """Observable queue event handed to registry listeners.

    ``kind`` is one of ``completed``, ``failed`` (a retry was scheduled) or
    ``dead-lettered``.
    """

    kind: str
    job: Job
    error: BaseException | None = None
