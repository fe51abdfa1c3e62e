"""envctl FastAPI application factory.

The create_app() factory is the single entry point for building the ASGI
application. It wires request-ID middleware, error mapping and routes, and
injects repository, gateway and job-registry implementations.

Usage:
    # Local development (in-memory repository, gateways and broker)
    from envctl.main import create_app
    app = create_app()

    # Non-local (Supabase, Contabo, Cloudflare, Redis from settings)
    app = create_app(EnvctlSettings.from_env())

    # Testing (full DI control)
    app = create_app(settings, deps=AppDependencies(...))
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from starlette.middleware.base import BaseHTTPMiddleware

from .environments.service import EnvironmentService
from .errors import (
    EnvctlError,
    EnvironmentNotFound,
    JobQueueError,
    ProviderAPIError,
    StateError,
    ValidationError,
    error_payload,
)
from .jobs.brokers import InMemoryJobBroker, RedisJobBroker
from .jobs.models import RetryPolicy
from .jobs.registry import JobRegistry
from .observability.logging import configure_logging, get_logger
from .observability.metrics import metrics_text
from .operations.stuck_environments import StuckEnvironmentDetector
from .protocols import ComputeGateway, DnsGateway, EnvironmentRepository
from .provisioning.handlers import register_job_handlers
from .provisioning.orchestrator import OrchestratorConfig, ProvisioningOrchestrator
from .routes.environments import create_environments_router, create_operations_router
from .settings import EnvctlSettings

logger = get_logger(__name__)


@dataclass(frozen=True)
class AppDependencies:
    """Container for injected repository/gateway/queue instances.

    Stored on ``app.state.deps`` so route handlers and tests can reach them.
    """

    repo: EnvironmentRepository
    compute: ComputeGateway
    dns: DnsGateway | None
    registry: JobRegistry


def _retry_policy(settings: EnvctlSettings) -> RetryPolicy:
    return RetryPolicy(settings.job_max_attempts, settings.job_backoff_base_seconds)


def build_inmemory_dependencies(settings: EnvctlSettings) -> AppDependencies:
    """Construct all-InMemory dependencies for local development."""
    from .inmemory import (
        InMemoryComputeGateway,
        InMemoryDnsGateway,
        InMemoryEnvironmentRepository,
    )

    return AppDependencies(
        repo=InMemoryEnvironmentRepository(),
        compute=InMemoryComputeGateway(),
        dns=InMemoryDnsGateway(),
        registry=JobRegistry(InMemoryJobBroker(), _retry_policy(settings)),
    )


def build_dependencies(settings: EnvctlSettings) -> AppDependencies:
    """Construct provider-backed dependencies from settings."""
    from .db.environment_repo import SupabaseEnvironmentRepository
    from .db.supabase_client import SupabaseClient
    from .providers.cloudflare_dns import CloudflareDNSClient
    from .providers.contabo_client import ContaboClient

    repo = SupabaseEnvironmentRepository(
        SupabaseClient(
            supabase_url=settings.supabase_url,
            service_role_key=settings.supabase_service_role_key,
        )
    )
    compute = ContaboClient(
        client_id=settings.compute_client_id,
        client_secret=settings.compute_client_secret,
        api_user=settings.compute_api_user,
        api_password=settings.compute_api_password,
        base_url=settings.compute_api_url,
        auth_url=settings.compute_auth_url,
        plan_products=settings.plan_products,
    )
    dns = CloudflareDNSClient(
        api_token=settings.dns_api_token,
        zone_id=settings.dns_zone_id,
        domain=settings.domain_name,
        base_url=settings.dns_api_url,
    )
    registry = JobRegistry(
        RedisJobBroker(settings.redis_url),
        _retry_policy(settings),
    )
    return AppDependencies(repo=repo, compute=compute, dns=dns, registry=registry)


# ── Middleware ──────────────────────────────────────────────────────


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Generate or propagate X-Request-ID and bind it to every log line of the request."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        with structlog.contextvars.bound_contextvars(request_id=request_id):
            response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


# ── Error mapping ───────────────────────────────────────────────────


def _status_for(exc: EnvctlError) -> int:
    if isinstance(exc, EnvironmentNotFound):
        return 404
    if isinstance(exc, StateError):
        return 409
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, JobQueueError):
        return 503
    if isinstance(exc, ProviderAPIError):
        return 502
    return 500


async def _envctl_error_handler(request: Request, exc: EnvctlError) -> JSONResponse:
    status_code = _status_for(exc)
    if status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=status_code, content=error_payload(exc))


# ── Factory ─────────────────────────────────────────────────────────


def create_app(
    settings: EnvctlSettings | None = None,
    *,
    deps: AppDependencies | None = None,
    start_workers: bool = True,
) -> FastAPI:
    """Create a configured envctl FastAPI application.

    Args:
        settings: Application settings. Defaults to local-dev settings.
        deps: Dependency overrides. When None, local mode uses InMemory
            implementations and non-local mode builds provider clients
            from settings.
        start_workers: Register job handlers at startup. API-only
            replicas pass False and leave the queues to worker processes.

    Raises:
        ValueError: If settings validation fails.
    """
    if settings is None:
        settings = EnvctlSettings()

    errors = settings.validate()
    if errors:
        raise ValueError(
            "envctl settings validation failed:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )

    if deps is None:
        deps = build_inmemory_dependencies(settings) if settings.is_local else build_dependencies(settings)

    config = OrchestratorConfig.from_settings(settings)
    orchestrator = ProvisioningOrchestrator(deps.repo, deps.compute, deps.dns, config=config)
    service = EnvironmentService(
        deps.repo,
        deps.registry,
        domain=settings.domain_name,
        plans=settings.plans,
        stuck_detector=StuckEnvironmentDetector.from_policies(
            config.address_polling, config.readiness_polling,
        ),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(
            level=settings.log_level, json_output=settings.log_format == "json",
        )
        logger.info("envctl_startup", environment=settings.environment)
        await deps.registry.initialize(recover_stalled=start_workers)
        if start_workers:
            register_job_handlers(
                deps.registry,
                orchestrator,
                deps.repo,
                provision_concurrency=settings.provision_concurrency,
                deprovision_concurrency=settings.deprovision_concurrency,
            )
        try:
            yield
        finally:
            await deps.registry.shutdown()
            logger.info("envctl_shutdown")

    app = FastAPI(
        title="envctl",
        description="Environment provisioning orchestrator",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.deps = deps
    app.state.settings = settings
    app.state.orchestrator = orchestrator
    app.state.service = service

    app.add_middleware(RequestIDMiddleware)
    app.add_exception_handler(EnvctlError, _envctl_error_handler)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "environment": settings.environment,
            "job_registry": "ready" if deps.registry.initialized else "stopped",
        }

    @app.get("/metrics")
    async def metrics():
        body, content_type = metrics_text()
        return Response(content=body, media_type=content_type)

    app.include_router(create_environments_router(service))
    app.include_router(create_operations_router(service))

    return app


def create_app_from_env() -> FastAPI:
    return create_app(EnvctlSettings.from_env())


# For uvicorn, use --factory flag:
#   uvicorn envctl.main:create_app_from_env --factory
# This avoids executing create_app() at import time.
