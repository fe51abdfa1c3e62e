"""Provisioning orchestrator scenario tests."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import pytest

from envctl.environments.model import (
    DELETING,
    ERROR,
    PENDING,
    PROVISIONING,
    RUNNING,
    EnvironmentRecord,
)
from envctl.environments.state_machine import transition
from envctl.errors import (
    EnvironmentNotFound,
    InvalidStatusTransition,
    ProviderAPIError,
    StateError,
    ValidationError,
)
from envctl.inmemory import InMemoryDnsGateway, InMemoryEnvironmentRepository
from envctl.provisioning.orchestrator import OrchestratorConfig, ProvisioningOrchestrator
from envctl.provisioning.outcome import STEP_FAILED, STEP_SKIPPED, STEP_SUCCEEDED
from envctl.provisioning.polling import PollingPolicy

UBUNTU = [{'imageId': 'img-u22', 'name': 'ubuntu-22.04'}]


class ScriptedCompute:
    """Compute gateway whose detail/status responses are scripted per call.

    Entries in ``details``/``statuses`` are returned in order (the last one
    repeats); exceptions are raised. ``interrupts`` maps a method name to a
    coroutine factory run once inside that call, standing in for a request
    that lands while provisioning is in flight.
    """

    def __init__(
        self,
        *,
        details: list[Any] | None = None,
        statuses: list[Any] | None = None,
        images: list[dict] | None = None,
        create_error: Exception | None = None,
        delete_error: Exception | None = None,
    ) -> None:
        self.details = details or [{'status': 'provisioning', 'ipConfig': {}}]
        self.statuses = statuses or ['running']
        self.images = UBUNTU if images is None else images
        self.create_error = create_error
        self.delete_error = delete_error
        self.calls: list[tuple[str, Any]] = []
        self.interrupts: dict[str, Callable[[], Awaitable[Any]]] = {}

    async def _call(self, name: str, arg: Any) -> None:
        self.calls.append((name, arg))
        interrupt = self.interrupts.pop(name, None)
        if interrupt is not None:
            await interrupt()

    def _next(self, script: list[Any]) -> Any:
        item = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def list_images(self):
        await self._call('list_images', None)
        return list(self.images)

    async def get_or_create_ssh_secret(self, name, public_key):
        await self._call('ssh_secret', name)
        return 7

    async def create_instance(self, **kwargs):
        await self._call('create_instance', kwargs)
        if self.create_error:
            raise self.create_error
        return '203948'

    async def get_instance(self, instance_id):
        await self._call('get_instance', instance_id)
        return self._next(self.details)

    async def get_instance_status(self, instance_id):
        await self._call('get_instance_status', instance_id)
        return self._next(self.statuses)

    async def delete_instance(self, instance_id):
        await self._call('delete_instance', instance_id)
        if self.delete_error:
            raise self.delete_error

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]


class FailingDns(InMemoryDnsGateway):
    async def create_a_record(self, slug, ipv4):
        raise ProviderAPIError('cloudflare', 503, 'dns down')

    async def delete_a_record(self, slug):
        raise ProviderAPIError('cloudflare', 503, 'dns down')


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _address(ip: str = '10.0.0.5') -> dict:
    return {'status': 'provisioning', 'ipConfig': {'v4': {'ip': ip}}}


def _record(**overrides) -> EnvironmentRecord:
    now = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)
    fields = dict(
        id='env-1',
        slug='brave-tiger',
        hostname='brave-tiger.example.test',
        owner_id='user-1',
        plan='solo',
        created_at=now,
        updated_at=now,
    )
    fields.update(overrides)
    return EnvironmentRecord(**fields)


async def _setup(compute, dns=None, **config_overrides):
    repo = InMemoryEnvironmentRepository()
    record = await repo.create(_record(status=config_overrides.pop('status', PENDING),
                                       provider_instance_id=config_overrides.pop('instance_id', None)))
    config = OrchestratorConfig(
        address_polling=PollingPolicy(5.0, 3),
        readiness_polling=PollingPolicy(10.0, 4),
        **config_overrides,
    )
    sleep = RecordingSleep()
    orchestrator = ProvisioningOrchestrator(
        repo, compute, dns if dns is not None else InMemoryDnsGateway(),
        config=config, sleep=sleep,
    )
    return orchestrator, repo, record, sleep


class TestProvision:
    @pytest.mark.asyncio
    async def test_happy_path_reaches_running(self):
        compute = ScriptedCompute(details=[_address()], statuses=['installing', 'running'])
        dns = InMemoryDnsGateway()
        orchestrator, repo, record, _ = await _setup(compute, dns)

        outcome = await orchestrator.provision(record, 'solo')

        assert outcome.status == RUNNING
        assert outcome.instance_id == '203948'
        assert outcome.ipv4 == '10.0.0.5'
        assert outcome.dns.status == STEP_SUCCEEDED
        stored = await repo.find('env-1')
        assert stored.status == RUNNING
        assert stored.provider_instance_id == '203948'
        assert stored.ipv4 == '10.0.0.5'
        assert dns.records == {'brave-tiger': ['10.0.0.5']}

    @pytest.mark.asyncio
    async def test_create_payload(self):
        compute = ScriptedCompute(details=[_address()])
        orchestrator, _, record, _ = await _setup(compute, ssh_public_key='ssh-ed25519 AAAA')

        await orchestrator.provision(record, 'solo')

        [kwargs] = [args for name, args in compute.calls if name == 'create_instance']
        assert kwargs['product_id'] == 'V91'
        assert kwargs['region'] == 'US-east'
        assert kwargs['image_id'] == 'img-u22'
        assert kwargs['display_name'] == 'brave-tiger'
        assert kwargs['ssh_keys'] == [7]
        assert kwargs['user_data'].startswith('#cloud-config')

    @pytest.mark.asyncio
    async def test_unknown_plan_uses_default_product(self):
        compute = ScriptedCompute(details=[_address()])
        orchestrator, _, record, _ = await _setup(compute)

        await orchestrator.provision(record, 'galactic')

        [kwargs] = [args for name, args in compute.calls if name == 'create_instance']
        assert kwargs['product_id'] == 'V91'

    @pytest.mark.asyncio
    async def test_ssh_step_skipped_without_public_key(self):
        compute = ScriptedCompute(details=[_address()])
        orchestrator, _, record, _ = await _setup(compute)

        await orchestrator.provision(record, 'solo')

        assert 'ssh_secret' not in compute.names()
        [kwargs] = [args for name, args in compute.calls if name == 'create_instance']
        assert kwargs['ssh_keys'] == []

    @pytest.mark.asyncio
    async def test_no_address_within_budget_stays_provisioning(self):
        compute = ScriptedCompute()
        dns = InMemoryDnsGateway()
        orchestrator, repo, record, sleep = await _setup(compute, dns)

        outcome = await orchestrator.provision(record, 'solo')

        assert outcome.status == PROVISIONING
        assert outcome.ipv4 is None
        assert outcome.dns.status == STEP_SKIPPED
        assert compute.names().count('get_instance') == 3
        assert 'get_instance_status' not in compute.names()
        assert sleep.calls == [5.0, 5.0, 5.0]
        assert dns.records == {}
        stored = await repo.find('env-1')
        assert stored.status == PROVISIONING
        assert stored.provider_instance_id == '203948'
        assert stored.ipv4 is None

    @pytest.mark.asyncio
    async def test_address_poll_errors_count_as_attempts(self):
        compute = ScriptedCompute(details=[
            ProviderAPIError('contabo', 500, 'flaky'),
            _address('10.0.0.7'),
        ])
        orchestrator, _, record, _ = await _setup(compute)

        outcome = await orchestrator.provision(record, 'solo')

        assert outcome.ipv4 == '10.0.0.7'
        assert compute.names().count('get_instance') == 2

    @pytest.mark.asyncio
    async def test_dns_failure_does_not_change_status(self):
        compute = ScriptedCompute(details=[_address()], statuses=['running'])
        orchestrator, repo, record, _ = await _setup(compute, FailingDns())

        outcome = await orchestrator.provision(record, 'solo')

        assert outcome.status == RUNNING
        assert outcome.dns.status == STEP_FAILED
        assert 'dns down' in outcome.dns.detail
        stored = await repo.find('env-1')
        assert stored.status == RUNNING
        assert stored.error_message is None

    @pytest.mark.asyncio
    async def test_dns_skipped_when_not_configured(self):
        compute = ScriptedCompute(details=[_address()])
        repo = InMemoryEnvironmentRepository()
        record = await repo.create(_record())
        orchestrator = ProvisioningOrchestrator(repo, compute, None, sleep=RecordingSleep())

        outcome = await orchestrator.provision(record, 'solo')

        assert outcome.dns.status == STEP_SKIPPED
        assert outcome.status == RUNNING

    @pytest.mark.asyncio
    async def test_readiness_ceiling_leaves_provisioning(self):
        compute = ScriptedCompute(details=[_address()], statuses=['installing'])
        orchestrator, repo, record, sleep = await _setup(compute)

        outcome = await orchestrator.provision(record, 'solo')

        assert outcome.status == PROVISIONING
        assert outcome.ipv4 == '10.0.0.5'
        assert compute.names().count('get_instance_status') == 4
        # One address sleep, then readiness sleeps between its 4 checks only.
        assert sleep.calls == [5.0, 10.0, 10.0, 10.0]
        assert (await repo.find('env-1')).status == PROVISIONING

    @pytest.mark.asyncio
    async def test_readiness_check_errors_are_tolerated(self):
        compute = ScriptedCompute(
            details=[_address()],
            statuses=[ProviderAPIError('contabo', 502, 'gateway'), 'running'],
        )
        orchestrator, _, record, sleep = await _setup(compute)

        outcome = await orchestrator.provision(record, 'solo')

        assert outcome.status == RUNNING
        assert sleep.calls == [5.0, 10.0]

    @pytest.mark.asyncio
    async def test_create_failure_marks_error_and_reraises(self):
        compute = ScriptedCompute(create_error=ProviderAPIError('contabo', 400, 'product unavailable'))
        orchestrator, repo, record, _ = await _setup(compute)

        with pytest.raises(ProviderAPIError):
            await orchestrator.provision(record, 'solo')

        stored = await repo.find('env-1')
        assert stored.status == ERROR
        assert 'product unavailable' in stored.error_message
        assert stored.provider_instance_id is None

    @pytest.mark.asyncio
    async def test_missing_image_is_validation_error(self):
        compute = ScriptedCompute(images=[{'imageId': 'img-debian', 'name': 'debian-12'}])
        orchestrator, repo, record, _ = await _setup(compute)

        with pytest.raises(ValidationError):
            await orchestrator.provision(record, 'solo')

        assert 'create_instance' not in compute.names()
        assert (await repo.find('env-1')).status == ERROR

    @pytest.mark.asyncio
    async def test_configured_default_image_is_used(self):
        compute = ScriptedCompute(images=[], details=[_address()])
        orchestrator, _, record, _ = await _setup(compute, default_image_id='img-default')

        await orchestrator.provision(record, 'solo')

        [kwargs] = [args for name, args in compute.calls if name == 'create_instance']
        assert kwargs['image_id'] == 'img-default'

    @pytest.mark.asyncio
    @pytest.mark.parametrize('status', [PROVISIONING, RUNNING, ERROR, DELETING])
    async def test_requires_pending(self, status):
        compute = ScriptedCompute()
        orchestrator, _, record, _ = await _setup(compute, status=status)

        with pytest.raises(StateError):
            await orchestrator.provision(record, 'solo')
        assert compute.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize('compute', [
        ScriptedCompute(details=[_address()]),
        ScriptedCompute(),
        ScriptedCompute(details=[_address()], statuses=['installing']),
        ScriptedCompute(create_error=RuntimeError('boom')),
        ScriptedCompute(images=[]),
    ])
    async def test_never_left_pending(self, compute):
        orchestrator, repo, record, _ = await _setup(compute)
        try:
            await orchestrator.provision(record, 'solo')
        except Exception:
            pass
        assert (await repo.find('env-1')).status != PENDING


class TestProvisionSuperseded:
    @pytest.mark.asyncio
    async def test_delete_during_create_is_not_overwritten(self):
        compute = ScriptedCompute(details=[_address()])
        dns = InMemoryDnsGateway()
        orchestrator, repo, record, _ = await _setup(compute, dns)
        compute.interrupts['create_instance'] = lambda: transition(repo, record, DELETING)

        with pytest.raises(InvalidStatusTransition):
            await orchestrator.provision(record, 'solo')

        stored = await repo.find('env-1')
        assert stored.status == DELETING
        assert stored.error_message is None
        assert stored.provider_instance_id is None
        assert ('delete_instance', '203948') in compute.calls
        assert 'get_instance' not in compute.names()
        assert dns.records == {}

    @pytest.mark.asyncio
    async def test_removed_record_releases_instance_and_dns(self):
        compute = ScriptedCompute(details=[_address()], statuses=['running'])
        dns = InMemoryDnsGateway()
        orchestrator, repo, record, _ = await _setup(compute, dns)
        compute.interrupts['get_instance_status'] = lambda: repo.delete('env-1')

        with pytest.raises(EnvironmentNotFound):
            await orchestrator.provision(record, 'solo')

        assert await repo.find('env-1') is None
        assert ('delete_instance', '203948') in compute.calls
        assert dns.records == {}

    @pytest.mark.asyncio
    async def test_delete_after_instance_recorded_is_left_to_deprovision(self):
        compute = ScriptedCompute(details=[_address()], statuses=['running'])
        dns = InMemoryDnsGateway()
        orchestrator, repo, record, _ = await _setup(compute, dns)
        compute.interrupts['get_instance'] = lambda: transition(repo, record, DELETING)

        with pytest.raises(InvalidStatusTransition):
            await orchestrator.provision(record, 'solo')

        stored = await repo.find('env-1')
        assert stored.status == DELETING
        assert stored.error_message is None
        assert stored.provider_instance_id == '203948'
        assert 'delete_instance' not in compute.names()
        assert dns.records == {'brave-tiger': ['10.0.0.5']}


class TestDeprovision:
    @pytest.mark.asyncio
    async def test_requires_instance_handle_before_any_call(self):
        compute = ScriptedCompute()
        dns = InMemoryDnsGateway()
        dns.records['brave-tiger'] = ['10.0.0.5']
        orchestrator, _, record, _ = await _setup(compute, dns, status=RUNNING)

        with pytest.raises(StateError):
            await orchestrator.deprovision(record)
        assert compute.calls == []
        assert dns.records == {'brave-tiger': ['10.0.0.5']}

    @pytest.mark.asyncio
    async def test_deletes_instance_and_dns_then_marks_deleting(self):
        compute = ScriptedCompute()
        dns = InMemoryDnsGateway()
        dns.records['brave-tiger'] = ['10.0.0.5']
        orchestrator, repo, record, _ = await _setup(compute, dns, status=RUNNING, instance_id='203948')

        outcome = await orchestrator.deprovision(record)

        assert compute.calls == [('delete_instance', '203948')]
        assert dns.records == {}
        assert outcome.dns.status == STEP_SUCCEEDED
        assert outcome.status == DELETING
        assert (await repo.find('env-1')).status == DELETING

    @pytest.mark.asyncio
    async def test_dns_failure_is_non_fatal(self):
        compute = ScriptedCompute()
        orchestrator, repo, record, _ = await _setup(
            compute, FailingDns(), status=RUNNING, instance_id='203948',
        )

        outcome = await orchestrator.deprovision(record)

        assert outcome.dns.status == STEP_FAILED
        assert (await repo.find('env-1')).status == DELETING

    @pytest.mark.asyncio
    async def test_already_deleting_is_kept(self):
        compute = ScriptedCompute()
        orchestrator, repo, record, _ = await _setup(compute, status=DELETING, instance_id='203948')

        outcome = await orchestrator.deprovision(record)

        assert outcome.status == DELETING
        assert (await repo.find('env-1')).status == DELETING

    @pytest.mark.asyncio
    async def test_compute_failure_propagates(self):
        compute = ScriptedCompute(delete_error=ProviderAPIError('contabo', 500, 'nope'))
        dns = InMemoryDnsGateway()
        dns.records['brave-tiger'] = ['10.0.0.5']
        orchestrator, repo, record, _ = await _setup(compute, dns, status=DELETING, instance_id='203948')

        with pytest.raises(ProviderAPIError):
            await orchestrator.deprovision(record)
        assert dns.records == {'brave-tiger': ['10.0.0.5']}


class TestGetStatus:
    @pytest.mark.asyncio
    async def test_reads_live_status(self):
        compute = ScriptedCompute(statuses=['stopped'])
        orchestrator, _, record, _ = await _setup(compute, status=RUNNING, instance_id='203948')

        assert await orchestrator.get_status(record) == 'stopped'

    @pytest.mark.asyncio
    async def test_requires_instance_handle(self):
        compute = ScriptedCompute()
        orchestrator, _, record, _ = await _setup(compute)

        with pytest.raises(StateError):
            await orchestrator.get_status(record)
        assert compute.calls == []
