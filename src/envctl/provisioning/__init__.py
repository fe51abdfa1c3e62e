"""Provisioning orchestrator, polling policies and job handlers."""

from .handlers import ProvisioningJobHandlers, register_job_handlers
from .orchestrator import OrchestratorConfig, ProvisioningOrchestrator
from .outcome import DeprovisionOutcome, ProvisionOutcome, StepResult
from .polling import PollingPolicy

__all__ = [
    'DeprovisionOutcome',
    'OrchestratorConfig',
    'PollingPolicy',
    'ProvisionOutcome',
    'ProvisioningJobHandlers',
    'ProvisioningOrchestrator',
    'StepResult',
    'register_job_handlers',
]
