"""Error hierarchy for environment provisioning.

The orchestrator, gateways and job queue raise these so callers can tell a
credential problem from an upstream API failure or a bad request without
inspecting ``httpx`` objects. None of them carry secrets.
"""

from __future__ import annotations

from typing import Any


class EnvctlError(Exception):
    """Base class for all envctl errors."""


# ── Provider errors ──────────────────────────────────────────────


class AuthenticationError(EnvctlError):
    """Credential exchange with the compute provider failed."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(f"authentication failed: {message}")


class ProviderAPIError(EnvctlError):
    """A compute or DNS provider call failed (transport error or non-2xx).

    ``status_code`` is 0 when no HTTP response was received.
    """

    def __init__(
        self,
        provider: str,
        status_code: int,
        message: str = "",
        *,
        response_body: str = "",
    ) -> None:
        self.provider = provider
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        super().__init__(f"{provider} API error {status_code}: {message}")


# ── Domain errors ────────────────────────────────────────────────


class ValidationError(EnvctlError):
    """Request or configuration data is invalid."""


class EnvironmentNotFound(ValidationError):
    """No environment matches the lookup (or it belongs to another owner)."""

    def __init__(self, environment_id: str) -> None:
        self.environment_id = environment_id
        super().__init__(f"environment {environment_id!r} not found")


class StateError(EnvctlError):
    """Operation invoked on an environment missing a required prior field."""


class InvalidStatusTransition(StateError):
    """Raised for transitions outside the environment status graph."""

    def __init__(self, from_status: str, to_status: str) -> None:
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"invalid status transition: {from_status!r} -> {to_status!r}"
        )


# ── Job errors ───────────────────────────────────────────────────


class JobQueueError(EnvctlError):
    """Queue misuse: unknown queue name or registry not initialized."""


class JobExhaustedError(EnvctlError):
    """A job used its whole attempt budget and was dead-lettered.

    Never raised to callers of ``enqueue``; it is logged by the worker and
    handed to registry listeners.
    """

    def __init__(
        self,
        queue_name: str,
        job_id: str,
        attempts: int,
        last_error: str | None = None,
    ) -> None:
        self.queue_name = queue_name
        self.job_id = job_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"job {job_id} on {queue_name!r} dead-lettered after "
            f"{attempts} attempts: {last_error}"
        )


def error_payload(exc: EnvctlError) -> dict[str, Any]:
    """Serialise an error for JSON responses."""
    return {"error": type(exc).__name__, "detail": str(exc)}
