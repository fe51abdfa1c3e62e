"""Environment model, status state machine and request-path service."""

from .model import (
    DELETING,
    ENVIRONMENT_STATUSES,
    ERROR,
    PENDING,
    PLANS,
    PROVISIONING,
    RUNNING,
    STOPPED,
    EnvironmentRecord,
    build_hostname,
)
from .state_machine import (
    ALLOWED_TRANSITIONS,
    can_transition,
    check_transition,
    retry_from_error,
    touch,
    transition,
)

__all__ = [
    'ALLOWED_TRANSITIONS',
    'DELETING',
    'ENVIRONMENT_STATUSES',
    'ERROR',
    'EnvironmentRecord',
    'PENDING',
    'PLANS',
    'PROVISIONING',
    'RUNNING',
    'STOPPED',
    'build_hostname',
    'can_transition',
    'check_transition',
    'retry_from_error',
    'touch',
    'transition',
]
