"""Standalone job worker process.

Runs the provisioning queues without the HTTP API, for deployments that
start API replicas with ``create_app(..., start_workers=False)``::

    envctl-worker            # settings from the environment
"""

from __future__ import annotations

import asyncio
import signal

from .main import build_dependencies, build_inmemory_dependencies
from .observability.logging import configure_logging, get_logger
from .provisioning.handlers import register_job_handlers
from .provisioning.orchestrator import OrchestratorConfig, ProvisioningOrchestrator
from .settings import EnvctlSettings

logger = get_logger(__name__)


async def run_worker(settings: EnvctlSettings, stop: asyncio.Event | None = None) -> None:
    """Consume the queues until ``stop`` is set, then drain and exit."""
    deps = build_inmemory_dependencies(settings) if settings.is_local else build_dependencies(settings)
    orchestrator = ProvisioningOrchestrator(
        deps.repo, deps.compute, deps.dns, config=OrchestratorConfig.from_settings(settings),
    )
    stop = stop or asyncio.Event()

    await deps.registry.initialize(recover_stalled=True)
    try:
        register_job_handlers(
            deps.registry,
            orchestrator,
            deps.repo,
            provision_concurrency=settings.provision_concurrency,
            deprovision_concurrency=settings.deprovision_concurrency,
        )
        logger.info("worker_running", environment=settings.environment)
        await stop.wait()
    finally:
        await deps.registry.shutdown()


def main() -> None:
    settings = EnvctlSettings.from_env()
    errors = settings.validate()
    if errors:
        raise SystemExit("envctl settings validation failed:\n" + "\n".join(errors))
    configure_logging(level=settings.log_level, json_output=settings.log_format == "json")

    async def _run() -> None:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        await run_worker(settings, stop)

    asyncio.run(_run())


if __name__ == "__main__":
    main()
