"""Request-path operations on environments.

Creation writes a ``pending`` record and enqueues provisioning; deletion
moves the record to ``deleting`` and enqueues teardown. Everything slow
happens in the job handlers. Owner scoping is enforced here: a record that
belongs to someone else is reported as not found.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

from envctl.errors import EnvironmentNotFound, ValidationError
from envctl.jobs.models import DEPROVISION_QUEUE, PROVISION_QUEUE, STATUS_CHECK_QUEUE, Job
from envctl.jobs.registry import JobRegistry
from envctl.observability.logging import get_logger
from envctl.operations.stuck_environments import StuckEnvironmentDetector, StuckReport
from envctl.protocols import EnvironmentRepository
from envctl.provisioning.polling import ADDRESS_POLLING, READINESS_POLLING

from .model import (
    DELETING,
    ENVIRONMENT_STATUSES,
    PENDING,
    PLANS,
    PROVISIONING,
    EnvironmentRecord,
    build_hostname,
    utcnow,
)
from .slugs import MAX_SLUG_ATTEMPTS, generate_unique_slug
from .state_machine import transition

logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


@dataclass(frozen=True, slots=True)
class EnvironmentPage:
    items: list[EnvironmentRecord]
    total: int
    offset: int
    limit: int


class EnvironmentService:
    def __init__(
        self,
        repo: EnvironmentRepository,
        registry: JobRegistry,
        *,
        domain: str,
        plans: Sequence[str] = PLANS,
        stuck_detector: StuckEnvironmentDetector | None = None,
        slug_attempts: int = MAX_SLUG_ATTEMPTS,
    ) -> None:
        self._repo = repo
        self._registry = registry
        self._domain = domain
        self._plans = tuple(plans)
        self._stuck_detector = stuck_detector or StuckEnvironmentDetector.from_policies(
            ADDRESS_POLLING, READINESS_POLLING,
        )
        self._slug_attempts = slug_attempts

    @property
    def plans(self) -> tuple[str, ...]:
        return self._plans

    async def _slug_taken(self, slug: str) -> bool:
        return await self._repo.find_by_slug(slug) is not None

    async def create_environment(self, owner_id: str, plan: str) -> EnvironmentRecord:
        if not owner_id:
            raise ValidationError('owner id is required')
        if plan not in self._plans:
            raise ValidationError(f'unknown plan {plan!r}; expected one of {", ".join(self._plans)}')

        slug = await generate_unique_slug(self._slug_taken, attempts=self._slug_attempts)
        now = utcnow()
        record = await self._repo.create(
            EnvironmentRecord(
                id=str(uuid.uuid4()),
                slug=slug,
                hostname=build_hostname(slug, self._domain),
                owner_id=owner_id,
                plan=plan,
                status=PENDING,
                created_at=now,
                updated_at=now,
            )
        )
        await self._registry.enqueue(
            PROVISION_QUEUE, {'environment': record.to_dict(), 'plan': plan},
        )
        logger.info('environment_created', environment_id=record.id, slug=slug, plan=plan)
        return record

    async def get_environment(self, environment_id: str, owner_id: str) -> EnvironmentRecord:
        record = await self._repo.find(environment_id)
        if record is None or record.owner_id != owner_id:
            raise EnvironmentNotFound(environment_id)
        return record

    async def list_environments(self, owner_id: str) -> list[EnvironmentRecord]:
        return await self._repo.list(owner_id=owner_id)

    async def delete_environment(self, environment_id: str, owner_id: str) -> EnvironmentRecord:
        """Mark for deletion and enqueue teardown.

        Deleting a record already in ``deleting`` re-enqueues teardown, which
        is how an operator retries a dead-lettered deprovision job.
        """
        record = await self.get_environment(environment_id, owner_id)
        if record.status != DELETING:
            record = await transition(self._repo, record, DELETING)
        await self._registry.enqueue(DEPROVISION_QUEUE, {'environment_id': record.id})
        logger.info('environment_delete_requested', environment_id=record.id)
        return record

    async def request_status_check(self, environment_id: str, owner_id: str) -> Job:
        record = await self.get_environment(environment_id, owner_id)
        return await self._registry.enqueue(STATUS_CHECK_QUEUE, {'environment_id': record.id})

    # ── Operator views ───────────────────────────────────────────

    async def list_all(
        self,
        *,
        status: str | None = None,
        search: str | None = None,
        offset: int = 0,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> EnvironmentPage:
        if status is not None and status not in ENVIRONMENT_STATUSES:
            raise ValidationError(f'unknown status {status!r}')
        if offset < 0:
            raise ValidationError('offset must be >= 0')
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        items = await self._repo.list(status=status, search=search, offset=offset, limit=limit)
        total = await self._repo.count(status=status, search=search)
        return EnvironmentPage(items=items, total=total, offset=offset, limit=limit)

    async def status_counts(self) -> dict[str, int]:
        counts = {'total': await self._repo.count()}
        for status in ENVIRONMENT_STATUSES:
            counts[status] = await self._repo.count(status=status)
        return counts

    async def find_stuck(self, now: datetime | None = None) -> StuckReport:
        candidates: list[EnvironmentRecord] = []
        for status in (PENDING, PROVISIONING):
            candidates.extend(await self._repo.list(status=status))
        return self._stuck_detector.sweep(candidates, now=now or utcnow())
