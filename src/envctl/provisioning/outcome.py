"""Results returned by the orchestrator."""

from __future__ import annotations

from dataclasses import dataclass

STEP_SUCCEEDED = 'succeeded'
STEP_FAILED = 'failed'
STEP_SKIPPED = 'skipped'


@dataclass(frozen=True, slots=True)
class StepResult:
    """Outcome of a non-fatal step (DNS registration or removal)."""

    status: str
    detail: str | None = None

    @classmethod
    def succeeded(cls, detail: str | None = None) -> StepResult:
        return cls(STEP_SUCCEEDED, detail)

    @classmethod
    def failed(cls, error: BaseException) -> StepResult:
        return cls(STEP_FAILED, str(error) or type(error).__name__)

    @classmethod
    def skipped(cls, reason: str) -> StepResult:
        return cls(STEP_SKIPPED, reason)

    @property
    def ok(self) -> bool:
        return self.status == STEP_SUCCEEDED


@dataclass(frozen=True, slots=True)
class ProvisionOutcome:
    """Where provisioning stopped.

    ``status`` is ``running`` when readiness was observed, ``provisioning``
    when a polling ceiling was reached first (the known gap: nothing
    advances the record afterwards).
    """

    environment_id: str
    instance_id: str
    status: str
    ipv4: str | None = None
    dns: StepResult = StepResult(STEP_SKIPPED, 'no address')


@dataclass(frozen=True, slots=True)
class DeprovisionOutcome:
    environment_id: str
    instance_id: str
    dns: StepResult
    status: str
