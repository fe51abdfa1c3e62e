"""Job handler tests: payload handling and the queue-to-orchestrator path."""

from __future__ import annotations

import asyncio

import pytest

from envctl.environments.model import DELETING, ERROR, PENDING, RUNNING, EnvironmentRecord, utcnow
from envctl.environments.service import EnvironmentService
from envctl.errors import ValidationError
from envctl.jobs.brokers import InMemoryJobBroker
from envctl.jobs.models import (
    DEPROVISION_QUEUE,
    PROVISION_QUEUE,
    STATUS_CHECK_QUEUE,
    Job,
    RetryPolicy,
)
from envctl.jobs.registry import JobRegistry
from envctl.provisioning import handlers as handlers_module
from envctl.provisioning.handlers import ProvisioningJobHandlers, register_job_handlers
from envctl.provisioning.orchestrator import OrchestratorConfig, ProvisioningOrchestrator
from envctl.provisioning.polling import PollingPolicy

FAST_POLLING = OrchestratorConfig(
    address_polling=PollingPolicy(0, 3),
    readiness_polling=PollingPolicy(0, 3),
)


async def _no_sleep(_seconds: float) -> None:
    return None


class RecordingLogger:
    def __init__(self) -> None:
        self.records: list[tuple[str, dict]] = []

    def _record(self, event: str, **fields) -> None:
        self.records.append((event, fields))

    info = warning = error = _record


def _record(**overrides) -> EnvironmentRecord:
    now = utcnow()
    fields = dict(
        id='env-1',
        slug='calm-otter',
        hostname='calm-otter.example.test',
        owner_id='user-1',
        plan='team',
        created_at=now,
        updated_at=now,
    )
    fields.update(overrides)
    return EnvironmentRecord(**fields)


@pytest.fixture
def orchestrator(repo, compute, dns):
    return ProvisioningOrchestrator(repo, compute, dns, config=FAST_POLLING, sleep=_no_sleep)


@pytest.fixture
def handlers(orchestrator, repo):
    return ProvisioningJobHandlers(orchestrator, repo)


class TestProvisionHandler:
    @pytest.mark.asyncio
    async def test_provisions_from_snapshot_id(self, handlers, repo, dns):
        record = await repo.create(_record())
        job = Job(PROVISION_QUEUE, {'environment': record.to_dict(), 'plan': 'team'})

        outcome = await handlers.provision(job)

        assert outcome.status == RUNNING
        assert (await repo.find('env-1')).status == RUNNING
        assert dns.records == {'calm-otter': ['10.0.0.5']}

    @pytest.mark.asyncio
    async def test_uses_stored_record_not_snapshot(self, handlers, repo):
        record = await repo.create(_record())
        stale = record.to_dict() | {'slug': 'stale-slug'}
        job = Job(PROVISION_QUEUE, {'environment': stale, 'plan': 'team'})

        await handlers.provision(job)

        assert (await repo.find('env-1')).slug == 'calm-otter'

    @pytest.mark.asyncio
    async def test_missing_record_is_skipped(self, handlers, compute):
        job = Job(PROVISION_QUEUE, {'environment': _record().to_dict(), 'plan': 'team'})

        assert await handlers.provision(job) is None
        assert compute.instances == {}

    @pytest.mark.asyncio
    async def test_record_past_pending_is_skipped(self, handlers, repo, compute):
        await repo.create(_record(status=RUNNING, provider_instance_id='99'))
        job = Job(PROVISION_QUEUE, {'environment_id': 'env-1', 'plan': 'team'})

        assert await handlers.provision(job) is None
        assert compute.instances == {}

    @pytest.mark.asyncio
    async def test_error_record_is_retried_from_pending(self, handlers, repo):
        await repo.create(_record(status=ERROR, error_message='earlier failure'))
        job = Job(PROVISION_QUEUE, {'environment_id': 'env-1', 'plan': 'team'})

        outcome = await handlers.provision(job)

        assert outcome.status == RUNNING
        stored = await repo.find('env-1')
        assert stored.status == RUNNING
        assert stored.error_message is None

    @pytest.mark.asyncio
    async def test_payload_without_id_is_rejected(self, handlers):
        with pytest.raises(ValidationError):
            await handlers.provision(Job(PROVISION_QUEUE, {'plan': 'team'}))


class TestDeprovisionHandler:
    @pytest.mark.asyncio
    async def test_tears_down_and_removes_record(self, handlers, repo, compute, dns):
        instance_id = await compute.create_instance(
            product_id='V91', region='US-east', image_id='img', display_name='calm-otter',
        )
        dns.records['calm-otter'] = ['10.0.0.5']
        await repo.create(_record(status=DELETING, provider_instance_id=instance_id))

        outcome = await handlers.deprovision(Job(DEPROVISION_QUEUE, {'environment_id': 'env-1'}))

        assert outcome.status == DELETING
        assert compute.instances == {}
        assert dns.records == {}
        assert await repo.find('env-1') is None

    @pytest.mark.asyncio
    async def test_record_without_instance_is_just_removed(self, handlers, repo):
        await repo.create(_record(status=DELETING))

        outcome = await handlers.deprovision(Job(DEPROVISION_QUEUE, {'environment_id': 'env-1'}))

        assert outcome is None
        assert await repo.find('env-1') is None

    @pytest.mark.asyncio
    async def test_missing_record_is_skipped(self, handlers):
        assert await handlers.deprovision(Job(DEPROVISION_QUEUE, {'environment_id': 'gone'})) is None


class TestStatusCheckHandler:
    @pytest.mark.asyncio
    async def test_reports_live_status(self, handlers, repo, compute):
        instance_id = await compute.create_instance(
            product_id='V91', region='US-east', image_id='img', display_name='calm-otter',
        )
        await repo.create(_record(status=RUNNING, provider_instance_id=instance_id))

        # First fetch assigns the address, second reports running.
        assert await handlers.status_check(Job(STATUS_CHECK_QUEUE, {'environment_id': 'env-1'})) == 'provisioning'
        assert await handlers.status_check(Job(STATUS_CHECK_QUEUE, {'environment_id': 'env-1'})) == 'running'

    @pytest.mark.asyncio
    async def test_without_instance_is_skipped(self, handlers, repo):
        await repo.create(_record())

        assert await handlers.status_check(Job(STATUS_CHECK_QUEUE, {'environment_id': 'env-1'})) is None


class TestQueueToOrchestrator:
    @pytest.mark.asyncio
    async def test_create_then_delete_through_workers(self, repo, compute, dns, orchestrator):
        broker = InMemoryJobBroker()
        registry = JobRegistry(broker, RetryPolicy(2, 0.01), poll_timeout=0.02)
        await registry.initialize()
        register_job_handlers(registry, orchestrator, repo)
        service = EnvironmentService(repo, registry, domain='example.test')
        try:
            record = await service.create_environment('user-1', 'solo')
            assert record.status == PENDING

            async def _wait_for(predicate) -> None:
                while not await predicate():
                    await asyncio.sleep(0.01)

            async def _running() -> bool:
                stored = await repo.find(record.id)
                return stored is not None and stored.status == RUNNING

            await asyncio.wait_for(_wait_for(_running), 2.0)
            assert dns.records == {record.slug: ['10.0.0.5']}

            await service.delete_environment(record.id, 'user-1')

            async def _removed() -> bool:
                return await repo.find(record.id) is None

            await asyncio.wait_for(_wait_for(_removed), 2.0)
            assert compute.instances == {}
            assert dns.records == {}
            assert len(broker.completed(PROVISION_QUEUE)) == 1
            assert len(broker.completed(DEPROVISION_QUEUE)) == 1
        finally:
            await registry.shutdown()

    @pytest.mark.asyncio
    async def test_duplicate_provision_jobs_run_once(self, repo, compute, orchestrator, monkeypatch):
        events = RecordingLogger()
        monkeypatch.setattr(handlers_module, 'logger', events)
        broker = InMemoryJobBroker()
        registry = JobRegistry(broker, RetryPolicy(2, 0.01), poll_timeout=0.02)
        await registry.initialize()
        register_job_handlers(registry, orchestrator, repo, provision_concurrency=1)
        try:
            record = await repo.create(_record())
            payload = {'environment': record.to_dict(), 'plan': 'team'}
            await registry.enqueue(PROVISION_QUEUE, payload)
            await registry.enqueue(PROVISION_QUEUE, payload)

            async def _both_completed() -> None:
                while len(broker.completed(PROVISION_QUEUE)) < 2:
                    await asyncio.sleep(0.01)

            await asyncio.wait_for(_both_completed(), 2.0)

            assert len(compute.instances) == 1
            assert (await repo.find('env-1')).status == RUNNING
            assert broker.dead(PROVISION_QUEUE) == []
            assert ('provision_skipped', {'environment_id': 'env-1', 'status': RUNNING}) in events.records
        finally:
            await registry.shutdown()

    @pytest.mark.asyncio
    async def test_registers_one_worker_per_queue(self, repo, orchestrator):
        registry = JobRegistry(InMemoryJobBroker(), poll_timeout=0.02)
        await registry.initialize()
        try:
            register_job_handlers(
                registry, orchestrator, repo,
                provision_concurrency=3, deprovision_concurrency=2,
            )
            workers = registry.workers
            assert set(workers) == {PROVISION_QUEUE, DEPROVISION_QUEUE, STATUS_CHECK_QUEUE}
            assert workers[PROVISION_QUEUE].concurrency == 3
            assert workers[DEPROVISION_QUEUE].concurrency == 2
            assert workers[STATUS_CHECK_QUEUE].concurrency == 1
        finally:
            await registry.shutdown()
