"""Lifecycle phases and the deployment state table.

The phase order is data, not control flow: ``PHASE_SEQUENCE`` is the
single ordered list the state machine walks, and ``VALID_TRANSITIONS``
is derived from it.  Inserting a phase means adding it to the enum,
the sequence and ``PHASE_STATES``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class LifecyclePhase(str, Enum):
    """Hook names, as they appear under ``hooks:`` in an appspec file."""

    BEFORE_INSTALL = "BeforeInstall"
    INSTALL = "Install"
    AFTER_INSTALL = "AfterInstall"
    APPLICATION_START = "ApplicationStart"
    VALIDATE_SERVICE = "ValidateService"


PHASE_SEQUENCE: list[LifecyclePhase] = [
    LifecyclePhase.BEFORE_INSTALL,
    LifecyclePhase.INSTALL,
    LifecyclePhase.AFTER_INSTALL,
    LifecyclePhase.APPLICATION_START,
    LifecyclePhase.VALIDATE_SERVICE,
]


class PhaseOutcome(str, Enum):
    """Result of running one hook."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class PhaseResult(BaseModel):
    """Outcome of one lifecycle phase on one host.

    ``script_ref`` and ``exit_code`` are None when the phase had no hook
    configured; such a phase still records a SUCCEEDED result.
    """

    model_config = ConfigDict(frozen=True)

    phase: LifecyclePhase
    script_ref: str | None = None
    identity: str | None = None
    started_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    duration_ms: int = 0
    exit_code: int | None = None
    outcome: PhaseOutcome
    output: str = ""
    rollback: bool = False  # True for results recorded on the rollback path

    @property
    def succeeded(self) -> bool:
        return self.outcome == PhaseOutcome.SUCCEEDED


class DeploymentState(str, Enum):
    """States of the per-host deployment state machine."""

    PENDING = "pending"
    BEFORE_INSTALL = "before_install"
    INSTALL = "install"
    AFTER_INSTALL = "after_install"
    APPLICATION_START = "application_start"
    VALIDATE_SERVICE = "validate_service"
    SUCCEEDED = "succeeded"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


PHASE_STATES: dict[LifecyclePhase, DeploymentState] = {
    LifecyclePhase.BEFORE_INSTALL: DeploymentState.BEFORE_INSTALL,
    LifecyclePhase.INSTALL: DeploymentState.INSTALL,
    LifecyclePhase.AFTER_INSTALL: DeploymentState.AFTER_INSTALL,
    LifecyclePhase.APPLICATION_START: DeploymentState.APPLICATION_START,
    LifecyclePhase.VALIDATE_SERVICE: DeploymentState.VALIDATE_SERVICE,
}

TERMINAL_STATES: frozenset[DeploymentState] = frozenset({
    DeploymentState.SUCCEEDED,
    DeploymentState.ROLLED_BACK,
    DeploymentState.FAILED,
})


def _build_transitions() -> dict[DeploymentState, set[DeploymentState]]:
    failure_exits = {DeploymentState.ROLLING_BACK, DeploymentState.FAILED}
    forward = [DeploymentState.PENDING] + [PHASE_STATES[p] for p in PHASE_SEQUENCE]
    table: dict[DeploymentState, set[DeploymentState]] = {}
    for current, following in zip(forward, forward[1:] + [DeploymentState.SUCCEEDED]):
        table[current] = {following} | failure_exits
    table[DeploymentState.ROLLING_BACK] = {
        DeploymentState.ROLLED_BACK,
        DeploymentState.FAILED,
    }
    for terminal in TERMINAL_STATES:
        table[terminal] = set()
    return table


# Valid state transitions, enforced by DeploymentMachine.
# Terminal states (SUCCEEDED, ROLLED_BACK, FAILED) have no outgoing transitions.
VALID_TRANSITIONS: dict[DeploymentState, set[DeploymentState]] = _build_transitions()
