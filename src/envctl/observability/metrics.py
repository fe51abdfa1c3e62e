"""Prometheus metrics for envctl.

Job outcomes, environment status transitions and provider call outcomes.
Stuck environments are not alerted on; operators watch the status
transition counters and the status-count endpoint.
"""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    generate_latest,
)

# ---------------------------------------------------------------------------
# Job queue
# ---------------------------------------------------------------------------

JOBS_ENQUEUED_TOTAL = Counter(
    "envctl_jobs_enqueued_total",
    "Jobs appended to a queue.",
    labelnames=["queue"],
    registry=REGISTRY,
)

JOB_OUTCOMES_TOTAL = Counter(
    "envctl_job_outcomes_total",
    "Job attempt outcomes: completed, failed (will retry), dead_lettered.",
    labelnames=["queue", "outcome"],
    registry=REGISTRY,
)

JOBS_IN_FLIGHT = Gauge(
    "envctl_jobs_in_flight",
    "Jobs currently executing in a worker slot.",
    labelnames=["queue"],
    registry=REGISTRY,
)

# ---------------------------------------------------------------------------
# Environments
# ---------------------------------------------------------------------------

ENVIRONMENT_TRANSITIONS_TOTAL = Counter(
    "envctl_environment_transitions_total",
    "Environment status transitions.",
    labelnames=["from_status", "to_status"],
    registry=REGISTRY,
)

DNS_NONFATAL_FAILURES_TOTAL = Counter(
    "envctl_dns_nonfatal_failures_total",
    "DNS operations that failed without affecting environment status.",
    labelnames=["operation"],
    registry=REGISTRY,
)

# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

PROVIDER_REQUESTS_TOTAL = Counter(
    "envctl_provider_requests_total",
    "Outbound provider API requests by provider and outcome.",
    labelnames=["provider", "outcome"],
    registry=REGISTRY,
)


def metrics_text() -> tuple[bytes, str]:
    """Generate Prometheus exposition text and content-type header."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
