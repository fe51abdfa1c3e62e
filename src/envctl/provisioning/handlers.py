"""Job handlers bridging the queue to the orchestrator.

Payloads:
  vm-provision      {"environment": <record dict>, "plan": str}
  vm-deprovision    {"environment_id": str}
  vm-status-check   {"environment_id": str}

Handlers always reload the record; the payload snapshot is only used for its
id. A handler that raises hands the job back to the queue for retry.
"""

from __future__ import annotations

from typing import Any

from envctl.environments.model import ERROR, PENDING
from envctl.environments.state_machine import retry_from_error
from envctl.errors import ValidationError
from envctl.jobs.models import (
    DEPROVISION_QUEUE,
    PROVISION_QUEUE,
    STATUS_CHECK_QUEUE,
    Job,
)
from envctl.jobs.registry import JobRegistry
from envctl.observability.logging import get_logger
from envctl.protocols import EnvironmentRepository

from .orchestrator import ProvisioningOrchestrator
from .outcome import DeprovisionOutcome, ProvisionOutcome

logger = get_logger(__name__)


def _environment_id(payload: dict[str, Any]) -> str:
    environment = payload.get('environment')
    if isinstance(environment, dict) and environment.get('id'):
        return str(environment['id'])
    if payload.get('environment_id'):
        return str(payload['environment_id'])
    raise ValidationError('job payload has no environment id')


class ProvisioningJobHandlers:
    def __init__(
        self,
        orchestrator: ProvisioningOrchestrator,
        repo: EnvironmentRepository,
    ) -> None:
        self._orchestrator = orchestrator
        self._repo = repo

    async def provision(self, job: Job) -> ProvisionOutcome | None:
        environment_id = _environment_id(job.payload)
        plan = str(job.payload.get('plan') or job.payload.get('environment', {}).get('plan', ''))
        record = await self._repo.find(environment_id)
        if record is None:
            logger.warning('provision_skipped_missing', environment_id=environment_id)
            return None
        if record.status == ERROR:
            # Queue retry of a failed attempt: start over from pending.
            record = await retry_from_error(self._repo, record)
        if record.status != PENDING:
            logger.info('provision_skipped', environment_id=environment_id, status=record.status)
            return None
        return await self._orchestrator.provision(record, plan)

    async def deprovision(self, job: Job) -> DeprovisionOutcome | None:
        environment_id = _environment_id(job.payload)
        record = await self._repo.find(environment_id)
        if record is None:
            logger.warning('deprovision_skipped_missing', environment_id=environment_id)
            return None
        outcome = None
        if record.provider_instance_id:
            outcome = await self._orchestrator.deprovision(record)
        else:
            logger.info('deprovision_without_instance', environment_id=environment_id)
        await self._repo.delete(environment_id)
        logger.info('environment_removed', environment_id=environment_id)
        return outcome

    async def status_check(self, job: Job) -> str | None:
        environment_id = _environment_id(job.payload)
        record = await self._repo.find(environment_id)
        if record is None or not record.provider_instance_id:
            logger.info('status_check_skipped', environment_id=environment_id)
            return None
        live = await self._orchestrator.get_status(record)
        logger.info(
            'status_checked',
            environment_id=environment_id,
            live_status=live,
            stored_status=record.status,
        )
        return live


def register_job_handlers(
    registry: JobRegistry,
    orchestrator: ProvisioningOrchestrator,
    repo: EnvironmentRepository,
    *,
    provision_concurrency: int = 1,
    deprovision_concurrency: int = 1,
) -> ProvisioningJobHandlers:
    """Start workers for the three provisioning queues."""
    handlers = ProvisioningJobHandlers(orchestrator, repo)
    registry.register_worker(PROVISION_QUEUE, handlers.provision, concurrency=provision_concurrency)
    registry.register_worker(
        DEPROVISION_QUEUE, handlers.deprovision, concurrency=deprovision_concurrency,
    )
    registry.register_worker(STATUS_CHECK_QUEUE, handlers.status_check)
    return handlers
