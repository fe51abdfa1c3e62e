"""Environment record: the unit of provisioning.

Mirrors the ``environments`` table. Records are immutable snapshots; the
state machine produces new snapshots and the repository persists the
changed fields.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

PENDING = 'pending'
PROVISIONING = 'provisioning'
RUNNING = 'running'
STOPPED = 'stopped'
ERROR = 'error'
DELETING = 'deleting'

ENVIRONMENT_STATUSES = (PENDING, PROVISIONING, RUNNING, STOPPED, ERROR, DELETING)

PLANS = ('solo', 'team', 'enterprise')

_TIMESTAMP_FIELDS = ('created_at', 'updated_at')


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class EnvironmentRecord:
    """Row-level representation of one tenant environment."""

    id: str
    slug: str
    hostname: str
    owner_id: str
    plan: str
    status: str = PENDING
    provider_instance_id: str | None = None
    ipv4: str | None = None
    error_message: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_live(self) -> bool:
        return self.status != DELETING

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe mapping (ISO-8601 timestamps), used for rows and job payloads."""
        data = asdict(self)
        for name in _TIMESTAMP_FIELDS:
            data[name] = data[name].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> EnvironmentRecord:
        """Build a record from a row or job payload, ignoring unknown keys."""
        known = {name: data[name] for name in cls.__dataclass_fields__ if name in data}
        for name in _TIMESTAMP_FIELDS:
            value = known.get(name)
            if isinstance(value, str):
                known[name] = _parse_timestamp(value)
            elif value is None:
                known.pop(name, None)
        if known.get('provider_instance_id') is not None:
            known['provider_instance_id'] = str(known['provider_instance_id'])
        return cls(**known)


def build_hostname(slug: str, domain: str) -> str:
    return f'{slug}.{domain.strip(".")}'


def _parse_timestamp(value: str) -> datetime:
    # PostgREST emits "Z" suffixes on some columns.
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
