"""Environment provisioning orchestrator.

Drives one environment through instance creation, address acquisition, DNS
binding and readiness polling, and back out through teardown. Three systems
fail independently here (repository, compute provider, DNS provider); the
rules are:

* Anything failing before or during instance creation is fatal: the record
  goes to ``error`` with the message and the exception is re-raised so the
  job queue can retry.
* A status write rejected because the stored record moved on (deleted
  mid-provision) aborts without touching the record; instances and DNS
  records nobody else will tear down are released.
* Polling failures are logged and count as an attempt.
* DNS failures are logged and reported as a failed ``StepResult``; they never
  change the environment status.

The provider never pushes status, so both waits are bounded polls. A
provision that exhausts a polling budget returns with status
``provisioning`` and the record stays there until an operator intervenes.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Awaitable, Callable, Mapping

from envctl.environments.model import (
    DELETING,
    ERROR,
    PENDING,
    PROVISIONING,
    RUNNING,
    EnvironmentRecord,
)
from envctl.environments.state_machine import touch, transition
from envctl.errors import (
    EnvironmentNotFound,
    InvalidStatusTransition,
    StateError,
    ValidationError,
)
from envctl.observability.logging import get_logger
from envctl.observability.metrics import DNS_NONFATAL_FAILURES_TOTAL
from envctl.protocols import ComputeGateway, DnsGateway, EnvironmentRepository
from envctl.providers.catalog import (
    ImageNotFound,
    instance_ipv4,
    resolve_product_id,
    select_image,
)
from envctl.settings import DEFAULT_PLAN_PRODUCTS, DEFAULT_PRODUCT_ID, EnvctlSettings

from .bootstrap import BootstrapBuilder, minimal_cloud_config
from .outcome import DeprovisionOutcome, ProvisionOutcome, StepResult
from .polling import ADDRESS_POLLING, READINESS_POLLING, PollingPolicy

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]

INSTANCE_RUNNING = 'running'


@dataclass(frozen=True, slots=True)
class OrchestratorConfig:
    region: str = 'US-east'
    ssh_key_name: str = 'envctl-admin-key'
    ssh_public_key: str = ''
    default_image_id: str = ''
    plan_products: Mapping[str, str] = field(default_factory=lambda: DEFAULT_PLAN_PRODUCTS)
    default_product_id: str = DEFAULT_PRODUCT_ID
    address_polling: PollingPolicy = ADDRESS_POLLING
    readiness_polling: PollingPolicy = READINESS_POLLING

    @classmethod
    def from_settings(cls, settings: EnvctlSettings) -> OrchestratorConfig:
        return cls(
            region=settings.compute_region,
            ssh_key_name=settings.ssh_key_name,
            ssh_public_key=settings.ssh_public_key,
            default_image_id=settings.default_image_id,
            plan_products=MappingProxyType(dict(settings.plan_products)),
            default_product_id=settings.default_product_id,
            address_polling=PollingPolicy(
                settings.address_poll_interval_seconds, settings.address_poll_max_attempts,
            ),
            readiness_polling=PollingPolicy(
                settings.readiness_poll_interval_seconds, settings.readiness_poll_max_attempts,
            ),
        )


class ProvisioningOrchestrator:
    """Provision, deprovision and inspect environments.

    Args:
        repo: Environment persistence; every status write goes through the
            state machine.
        compute: Compute provider gateway.
        dns: DNS gateway, or None to skip DNS steps.
        config: Region, SSH key, catalog defaults and polling budgets.
        bootstrap: Builds the bootstrap script for an environment.
        sleep: Awaitable sleep, injectable so tests can shrink the budgets.
    """

    def __init__(
        self,
        repo: EnvironmentRepository,
        compute: ComputeGateway,
        dns: DnsGateway | None = None,
        *,
        config: OrchestratorConfig | None = None,
        bootstrap: BootstrapBuilder = minimal_cloud_config,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._repo = repo
        self._compute = compute
        self._dns = dns
        self._config = config or OrchestratorConfig()
        self._bootstrap = bootstrap
        self._sleep = sleep

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    # ── Provision ────────────────────────────────────────────────

    async def provision(self, environment: EnvironmentRecord, plan: str) -> ProvisionOutcome:
        if environment.status != PENDING:
            raise StateError(
                f'environment {environment.id} must be {PENDING!r} to provision, '
                f'not {environment.status!r}'
            )
        log = logger.bind(environment_id=environment.id, slug=environment.slug)
        current = environment
        instance_id: str | None = None
        dns_result: StepResult | None = None
        try:
            product_id = resolve_product_id(
                plan, self._config.plan_products, self._config.default_product_id,
            )
            image_id = await self._resolve_image(log)
            ssh_keys = await self._ssh_keys(log)

            instance_id = await self._compute.create_instance(
                product_id=product_id,
                region=self._config.region,
                image_id=image_id,
                display_name=environment.slug,
                user_data=self._bootstrap(environment),
                ssh_keys=ssh_keys,
            )
            current = await transition(
                self._repo, current, PROVISIONING, provider_instance_id=instance_id,
            )
            log.info('instance_created', instance_id=instance_id, product_id=product_id, image_id=image_id)

            ipv4 = await self._poll_address(instance_id, log)
            if ipv4 is None:
                log.warning(
                    'address_not_assigned',
                    instance_id=instance_id,
                    attempts=self._config.address_polling.max_attempts,
                )
                return ProvisionOutcome(environment.id, instance_id, PROVISIONING)

            current = await touch(self._repo, current, ipv4=ipv4)
            dns_result = await self._register_dns(current, ipv4, log)

            if await self._poll_readiness(instance_id, log):
                current = await transition(self._repo, current, RUNNING)
                log.info('environment_running', instance_id=instance_id, ipv4=ipv4)
            return ProvisionOutcome(environment.id, instance_id, current.status, ipv4, dns_result)
        except (InvalidStatusTransition, EnvironmentNotFound) as exc:
            await self._abandon(environment, instance_id, dns_result, exc, log)
            raise
        except Exception as exc:
            await self._record_failure(current, exc, log)
            raise

    async def _resolve_image(self, log) -> str:
        images = await self._compute.list_images()
        selection = select_image(images, default_image_id=self._config.default_image_id)
        if isinstance(selection, ImageNotFound):
            raise ValidationError(selection.reason)
        log.info('image_selected', image_id=selection.image_id, name=selection.name, match=selection.match)
        return selection.image_id

    async def _ssh_keys(self, log) -> list[int]:
        if not self._config.ssh_public_key:
            log.warning('ssh_key_not_configured', key_name=self._config.ssh_key_name)
            return []
        secret_id = await self._compute.get_or_create_ssh_secret(
            self._config.ssh_key_name, self._config.ssh_public_key,
        )
        return [secret_id]

    async def _poll_address(self, instance_id: str, log) -> str | None:
        policy = self._config.address_polling
        for attempt in range(1, policy.max_attempts + 1):
            await self._sleep(policy.interval_seconds)
            try:
                instance = await self._compute.get_instance(instance_id)
            except Exception as exc:
                log.warning('address_poll_failed', attempt=attempt, error=str(exc))
                continue
            ipv4 = instance_ipv4(instance)
            log.debug('address_poll', attempt=attempt, status=instance.get('status'))
            if ipv4:
                return ipv4
        return None

    async def _poll_readiness(self, instance_id: str, log) -> bool:
        policy = self._config.readiness_polling
        last_status: str | None = None
        for attempt in range(1, policy.max_attempts + 1):
            try:
                last_status = await self._compute.get_instance_status(instance_id)
            except Exception as exc:
                log.warning('readiness_poll_failed', attempt=attempt, error=str(exc))
            else:
                log.debug('readiness_poll', attempt=attempt, status=last_status)
                if last_status == INSTANCE_RUNNING:
                    return True
            if attempt < policy.max_attempts:
                await self._sleep(policy.interval_seconds)
        log.warning(
            'readiness_not_reached',
            instance_id=instance_id,
            attempts=policy.max_attempts,
            last_status=last_status,
        )
        return False

    async def _register_dns(self, environment: EnvironmentRecord, ipv4: str, log) -> StepResult:
        if self._dns is None:
            return StepResult.skipped('dns not configured')
        try:
            await self._dns.create_a_record(environment.slug, ipv4)
        except Exception as exc:
            DNS_NONFATAL_FAILURES_TOTAL.labels(operation='create').inc()
            log.warning('dns_register_failed', hostname=environment.hostname, error=str(exc))
            return StepResult.failed(exc)
        log.info('dns_registered', hostname=environment.hostname, ipv4=ipv4)
        return StepResult.succeeded(environment.hostname)

    async def _record_failure(self, current: EnvironmentRecord, exc: Exception, log) -> None:
        message = str(exc) or type(exc).__name__
        log.error('provision_failed', status=current.status, error=message)
        if current.status == ERROR:
            return
        try:
            await transition(self._repo, current, ERROR, error_message=message)
        except Exception:
            log.exception('provision_failure_not_recorded')

    async def _abandon(
        self,
        environment: EnvironmentRecord,
        instance_id: str | None,
        dns_result: StepResult | None,
        exc: Exception,
        log,
    ) -> None:
        """Stop a provision whose record moved underneath it.

        The stored record is left as found. Resources created by this run are
        released unless the stored record still holds the instance handle, in
        which case the deprovision job tears them down.
        """
        log.warning('provision_superseded', instance_id=instance_id, error=str(exc))
        if instance_id is None:
            return
        stored = await self._repo.find(environment.id)
        if stored is not None and stored.provider_instance_id == instance_id:
            return
        try:
            await self._compute.delete_instance(instance_id)
        except Exception as delete_exc:
            log.warning('orphan_instance_not_deleted', instance_id=instance_id, error=str(delete_exc))
        else:
            log.info('orphan_instance_deleted', instance_id=instance_id)
        if dns_result is not None and dns_result.ok:
            await self._remove_dns(environment, log)

    # ── Deprovision ──────────────────────────────────────────────

    async def deprovision(self, environment: EnvironmentRecord) -> DeprovisionOutcome:
        instance_id = environment.provider_instance_id
        if not instance_id:
            raise StateError(f'environment {environment.id} has no provider instance')
        log = logger.bind(environment_id=environment.id, slug=environment.slug)

        await self._compute.delete_instance(instance_id)
        log.info('instance_deleted', instance_id=instance_id)

        dns_result = await self._remove_dns(environment, log)

        if environment.status != DELETING:
            environment = await transition(self._repo, environment, DELETING)
        return DeprovisionOutcome(environment.id, instance_id, dns_result, environment.status)

    async def _remove_dns(self, environment: EnvironmentRecord, log) -> StepResult:
        if self._dns is None:
            return StepResult.skipped('dns not configured')
        try:
            removed = await self._dns.delete_a_record(environment.slug)
        except Exception as exc:
            DNS_NONFATAL_FAILURES_TOTAL.labels(operation='delete').inc()
            log.warning('dns_remove_failed', hostname=environment.hostname, error=str(exc))
            return StepResult.failed(exc)
        return StepResult.succeeded(f'{removed} record(s) removed')

    # ── Status ───────────────────────────────────────────────────

    async def get_status(self, environment: EnvironmentRecord) -> str:
        """Live instance status from the provider, bypassing the stored status."""
        if not environment.provider_instance_id:
            raise StateError(f'environment {environment.id} has no provider instance')
        return await self._compute.get_instance_status(environment.provider_instance_id)
