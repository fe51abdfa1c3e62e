"""Environment status state machine.

Implements the lifecycle graph:
  pending -> provisioning -> running
  pending | provisioning -> error
  running <-> stopped
  any live status -> deleting

And the explicit retry edge:
  error --(retry_from_error)--> pending

``deleting`` is terminal until the record is removed. Every status write
in the codebase goes through ``transition``, which validates against the
stored status and writes conditionally on it, so a holder of a stale copy
cannot move a record the graph no longer allows it to move.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from types import MappingProxyType
from typing import Any, Protocol

from envctl.errors import EnvironmentNotFound, InvalidStatusTransition
from envctl.observability.metrics import ENVIRONMENT_TRANSITIONS_TOTAL

from .model import (
    DELETING,
    ENVIRONMENT_STATUSES,
    ERROR,
    PENDING,
    PROVISIONING,
    RUNNING,
    STOPPED,
    EnvironmentRecord,
    utcnow,
)

ALLOWED_TRANSITIONS = MappingProxyType(
    {
        PENDING: frozenset({PROVISIONING, ERROR, DELETING}),
        PROVISIONING: frozenset({RUNNING, ERROR, DELETING}),
        RUNNING: frozenset({STOPPED, DELETING}),
        STOPPED: frozenset({RUNNING, DELETING}),
        ERROR: frozenset({PENDING, DELETING}),
        DELETING: frozenset(),
    }
)

# Statuses the provisioning pipeline may still move forward on its own.
IN_FLIGHT_STATUSES = frozenset({PENDING, PROVISIONING})


class EnvironmentWriter(Protocol):
    """The slice of the repository the state machine reads and writes through."""

    async def find(self, environment_id: str) -> EnvironmentRecord | None: ...

    async def update(
        self,
        environment_id: str,
        fields: dict[str, Any],
        *,
        expected_status: str | None = None,
    ) -> EnvironmentRecord | None: ...


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


def check_transition(from_status: str, to_status: str) -> None:
    """Raise InvalidStatusTransition unless the edge exists."""
    if from_status not in ENVIRONMENT_STATUSES:
        raise InvalidStatusTransition(from_status, to_status)
    if not can_transition(from_status, to_status):
        raise InvalidStatusTransition(from_status, to_status)


async def transition(
    repo: EnvironmentWriter,
    environment: EnvironmentRecord,
    to_status: str,
    *,
    now: datetime | None = None,
    **fields: Any,
) -> EnvironmentRecord:
    """Validate, persist and return the environment in ``to_status``.

    The edge is checked against the stored status, not ``environment.status``,
    and the write only lands if the stored status is still the one checked.
    ``fields`` are written in the same update (e.g. ``error_message``).

    Raises:
        InvalidStatusTransition: The stored status does not allow the edge,
            including when it changed between the read and the write.
        EnvironmentNotFound: The record no longer exists.
    """
    stored = await repo.find(environment.id)
    if stored is None:
        raise EnvironmentNotFound(environment.id)
    check_transition(stored.status, to_status)

    changes: dict[str, Any] = {**fields, 'status': to_status, 'updated_at': now or utcnow()}
    updated = await repo.update(environment.id, changes, expected_status=stored.status)
    if updated is None:
        latest = await repo.find(environment.id)
        if latest is None:
            raise EnvironmentNotFound(environment.id)
        raise InvalidStatusTransition(latest.status, to_status)

    if stored.status != to_status:
        ENVIRONMENT_TRANSITIONS_TOTAL.labels(
            from_status=stored.status, to_status=to_status,
        ).inc()
    return updated


async def touch(
    repo: EnvironmentWriter,
    environment: EnvironmentRecord,
    *,
    now: datetime | None = None,
    **fields: Any,
) -> EnvironmentRecord:
    """Persist non-status fields (instance handle, address) without a transition.

    The stored status is left as it is, whatever ``environment.status`` says.
    """
    if 'status' in fields:
        raise ValueError('use transition() to change status')
    changes: dict[str, Any] = {**fields, 'updated_at': now or utcnow()}
    stored = await repo.update(environment.id, changes)
    # The record may have been removed concurrently; return the local view.
    return stored if stored is not None else replace(environment, **changes)


async def retry_from_error(
    repo: EnvironmentWriter,
    environment: EnvironmentRecord,
    *,
    now: datetime | None = None,
) -> EnvironmentRecord:
    """Explicit retry transition from ``error`` back to ``pending``.

    Clears ``error_message``; this is the only place it is cleared.
    """
    if environment.status != ERROR:
        raise InvalidStatusTransition(environment.status, PENDING)
    return await transition(
        repo, environment, PENDING, now=now, error_message=None,
    )
