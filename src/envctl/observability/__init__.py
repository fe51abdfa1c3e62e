"""Observability infrastructure for envctl.

Provides structured logging and Prometheus metrics for the job workers,
the orchestrator and the HTTP API.

Quick start::

    from envctl.observability import configure_logging, get_logger
    from envctl.observability.metrics import metrics_text

    configure_logging()
    logger = get_logger(__name__)
"""

from .logging import bind_job_context, configure_logging, get_logger
from .metrics import metrics_text

__all__ = [
    "bind_job_context",
    "configure_logging",
    "get_logger",
    "metrics_text",
]
