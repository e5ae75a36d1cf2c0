"""Deployment model — one attempt to move a host to a target artifact."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from convoy.models.artifacts import Artifact
from convoy.models.phases import PhaseResult


class DeploymentKind(str, Enum):
    """Why a deployment was scheduled."""

    DEPLOY = "deploy"
    ROLLBACK = "rollback"  # issued by a rollout-wide rollback


class DeploymentOutcome(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class Deployment(BaseModel):
    """A finalized (or pending) deployment of one artifact to one host.

    ``phase_results`` is strictly ordered: the forward results in phase
    order, followed by the rollback replay results (``rollback=True``)
    when the rollback path ran.
    """

    model_config = ConfigDict(frozen=True)

    deployment_id: str = Field(default_factory=lambda: f"d-{uuid.uuid4().hex[:12]}")
    rollout_id: str
    host_id: str
    kind: DeploymentKind = DeploymentKind.DEPLOY
    artifact: Artifact
    previous_artifact: Artifact | None = None
    phase_results: list[PhaseResult] = []
    transitions: list[str] = []  # "from_state->to_state"
    outcome: DeploymentOutcome = DeploymentOutcome.PENDING
    failure_reason: str | None = None
    started_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    finished_at: datetime | None = None

    @property
    def is_final(self) -> bool:
        return self.outcome != DeploymentOutcome.PENDING

    @property
    def forward_results(self) -> list[PhaseResult]:
        return [r for r in self.phase_results if not r.rollback]

    @property
    def rollback_results(self) -> list[PhaseResult]:
        return [r for r in self.phase_results if r.rollback]
