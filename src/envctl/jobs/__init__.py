"""Durable job queue: registry, workers and brokers."""

from .brokers import InMemoryJobBroker, JobBroker, RedisJobBroker
from .models import (
    DEPROVISION_QUEUE,
    KNOWN_QUEUES,
    PROVISION_QUEUE,
    STATUS_CHECK_QUEUE,
    Job,
    JobEvent,
    RetryPolicy,
)
from .registry import JobRegistry, Worker

__all__ = [
    "DEPROVISION_QUEUE",
    "InMemoryJobBroker",
    "Job",
    "JobBroker",
    "JobEvent",
    "JobRegistry",
    "KNOWN_QUEUES",
    "PROVISION_QUEUE",
    "RedisJobBroker",
    "RetryPolicy",
    "STATUS_CHECK_QUEUE",
    "Worker",
]
