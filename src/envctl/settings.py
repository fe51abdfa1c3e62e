"""envctl configuration settings.

EnvctlSettings is the single configuration object accepted by create_app()
and run_worker(). It is a plain dataclass (not env-coupled)
so tests can inject config without touching os.environ.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

DEFAULT_PRODUCT_ID = "V91"

# Every plan currently maps to the same product. Overridable through
# PLAN_PRODUCT_MAP until the tiers get distinct provider products.
DEFAULT_PLAN_PRODUCTS: Mapping[str, str] = MappingProxyType(
    {
        "solo": DEFAULT_PRODUCT_ID,
        "team": DEFAULT_PRODUCT_ID,
        "enterprise": DEFAULT_PRODUCT_ID,
    }
)


@dataclass(frozen=True, slots=True)
class EnvctlSettings:
    """Configuration for the provisioning service.

    All fields have sensible defaults for local development.
    Non-local environments must supply provider credentials, the DNS zone
    and the queue broker address.
    """

    # ── Environment ────────────────────────────────────────────────
    environment: str = "local"
    """One of: local, dev, staging, production."""

    log_level: str = "INFO"
    log_format: str = "json"

    domain_name: str = "envctl.local"
    """Base domain; environment hostnames are ``<slug>.<domain_name>``."""

    # ── Compute provider ───────────────────────────────────────────
    compute_client_id: str = ""
    compute_client_secret: str = ""
    compute_api_user: str = ""
    compute_api_password: str = ""
    """Password-grant credentials. Never log these."""

    compute_region: str = "US-east"
    compute_api_url: str = "https://api.contabo.com"
    compute_auth_url: str = (
        "https://auth.contabo.com/auth/realms/contabo/protocol/openid-connect/token"
    )

    default_image_id: str = ""
    """Fallback image when no catalog entry matches. Empty means unset."""

    ssh_key_name: str = "envctl-admin-key"
    ssh_public_key: str = ""

    plan_products: Mapping[str, str] = field(default_factory=lambda: DEFAULT_PLAN_PRODUCTS)
    default_product_id: str = DEFAULT_PRODUCT_ID

    # ── DNS provider ───────────────────────────────────────────────
    dns_api_token: str = ""
    dns_zone_id: str = ""
    dns_api_url: str = "https://api.cloudflare.com/client/v4"

    # ── Repository ─────────────────────────────────────────────────
    supabase_url: str = ""
    supabase_service_role_key: str = ""

    # ── Job queue ──────────────────────────────────────────────────
    redis_url: str = "redis://localhost:6379/0"
    provision_concurrency: int = 1
    deprovision_concurrency: int = 1
    job_max_attempts: int = 3
    job_backoff_base_seconds: float = 2.0

    # ── Polling budgets ────────────────────────────────────────────
    address_poll_interval_seconds: float = 5.0
    address_poll_max_attempts: int = 10
    readiness_poll_interval_seconds: float = 10.0
    readiness_poll_max_attempts: int = 30

    @property
    def is_local(self) -> bool:
        return self.environment == "local"

    @property
    def plans(self) -> tuple[str, ...]:
        return tuple(self.plan_products)

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if self.provision_concurrency < 1 or self.deprovision_concurrency < 1:
            errors.append("worker concurrency must be >= 1")
        if self.job_max_attempts < 1:
            errors.append("job_max_attempts must be >= 1")
        if self.address_poll_max_attempts < 1 or self.readiness_poll_max_attempts < 1:
            errors.append("poll max attempts must be >= 1")
        if not self.is_local:
            for name in (
                "compute_client_id",
                "compute_client_secret",
                "compute_api_user",
                "compute_api_password",
                "dns_api_token",
                "dns_zone_id",
                "supabase_url",
                "supabase_service_role_key",
            ):
                if not getattr(self, name):
                    errors.append(f"{self.environment}: {name} is required")
            if self.domain_name == "envctl.local":
                errors.append(f"{self.environment}: domain_name must be set")
        return errors

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> EnvctlSettings:
        """Build settings from environment variables.

        This is a convenience factory for production use. Tests should
        construct EnvctlSettings directly.
        """
        if env is None:
            env = dict(os.environ)

        plan_map_raw = env.get("PLAN_PRODUCT_MAP", "")
        plan_map: dict[str, str] = dict(DEFAULT_PLAN_PRODUCTS)
        if plan_map_raw:
            plan_map = {}
            for pair in plan_map_raw.split(","):
                if "=" in pair:
                    plan, product = pair.split("=", 1)
                    plan_map[plan.strip()] = product.strip()

        defaults = cls()
        return cls(
            environment=env.get("ENVIRONMENT", "local"),
            log_level=env.get("LOG_LEVEL", defaults.log_level),
            log_format=env.get("LOG_FORMAT", defaults.log_format),
            domain_name=env.get("DOMAIN_NAME", defaults.domain_name),
            compute_client_id=env.get("CONTABO_CLIENT_ID", ""),
            compute_client_secret=env.get("CONTABO_CLIENT_SECRET", ""),
            compute_api_user=env.get("CONTABO_API_USER", ""),
            compute_api_password=env.get("CONTABO_API_PASSWORD", ""),
            compute_region=env.get("CONTABO_REGION", defaults.compute_region),
            compute_api_url=env.get("CONTABO_API_URL", defaults.compute_api_url),
            compute_auth_url=env.get("CONTABO_AUTH_URL", defaults.compute_auth_url),
            default_image_id=env.get("CONTABO_DEFAULT_IMAGE", ""),
            ssh_key_name=env.get("SSH_KEY_NAME", defaults.ssh_key_name),
            ssh_public_key=env.get("SSH_PUBLIC_KEY", ""),
            plan_products=MappingProxyType(plan_map),
            default_product_id=env.get("DEFAULT_PRODUCT_ID", DEFAULT_PRODUCT_ID),
            dns_api_token=env.get("CLOUDFLARE_API_TOKEN", ""),
            dns_zone_id=env.get("CLOUDFLARE_ZONE_ID", ""),
            dns_api_url=env.get("CLOUDFLARE_API_URL", defaults.dns_api_url),
            supabase_url=env.get("SUPABASE_URL", ""),
            supabase_service_role_key=env.get("SUPABASE_SERVICE_ROLE_KEY", ""),
            redis_url=env.get("REDIS_URL", defaults.redis_url),
            provision_concurrency=int(env.get("PROVISION_CONCURRENCY", "1")),
            deprovision_concurrency=int(env.get("DEPROVISION_CONCURRENCY", "1")),
            job_max_attempts=int(env.get("JOB_MAX_ATTEMPTS", "3")),
            job_backoff_base_seconds=float(env.get("JOB_BACKOFF_BASE_SECONDS", "2.0")),
            address_poll_interval_seconds=float(
                env.get("ADDRESS_POLL_INTERVAL_SECONDS", defaults.address_poll_interval_seconds)
            ),
            address_poll_max_attempts=int(
                env.get("ADDRESS_POLL_MAX_ATTEMPTS", defaults.address_poll_max_attempts)
            ),
            readiness_poll_interval_seconds=float(
                env.get("READINESS_POLL_INTERVAL_SECONDS", defaults.readiness_poll_interval_seconds)
            ),
            readiness_poll_max_attempts=int(
                env.get("READINESS_POLL_MAX_ATTEMPTS", defaults.readiness_poll_max_attempts)
            ),
        )
