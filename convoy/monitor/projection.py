"""RolloutProjection — pure read-only view over the Deployment Ledger.

The monitor displays what the ledger says; it never computes its own
truth and never caches.  Every ``snapshot()`` call re-reads the ledger.
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from convoy.core.deployment_ledger import DeploymentLedger, LedgerIntegrityError
from convoy.models.deployments import Deployment, DeploymentKind, DeploymentOutcome
from convoy.models.ledger import EntryKind
from convoy.models.rollouts import Rollout, RolloutStatus


class HostStatus(BaseModel):
    """Latest known outcome for one host of a rollout."""

    model_config = ConfigDict(frozen=True)

    host_id: str
    batch_index: int
    outcome: DeploymentOutcome = DeploymentOutcome.PENDING
    deployment_id: str | None = None
    last_phase: str | None = None
    failure_reason: str | None = None
    rolled_back_by_rollout: bool = False
    finished_at: datetime | None = None


class RolloutSnapshot(BaseModel):
    """A frozen, point-in-time snapshot of one rollout.

    Never persisted; computed fresh on every ``snapshot()`` call.
    """

    model_config = ConfigDict(frozen=True)

    rollout_id: str
    artifact_label: str = ""
    policy: str = ""
    failure_threshold: float = 0.0
    status: RolloutStatus = RolloutStatus.IN_PROGRESS
    halt_reason: str | None = None
    cancel_requested: bool = False
    batch_count: int = 0
    batches_done: int = 0
    hosts: list[HostStatus] = []
    chain_valid: bool = True
    last_updated: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def succeeded_count(self) -> int:
        return sum(1 for h in self.hosts if h.outcome == DeploymentOutcome.SUCCEEDED)

    @property
    def failed_hosts(self) -> list[HostStatus]:
        return [h for h in self.hosts if h.outcome == DeploymentOutcome.FAILED]

    @property
    def rolled_back_hosts(self) -> list[HostStatus]:
        return [h for h in self.hosts if h.outcome == DeploymentOutcome.ROLLED_BACK]


class RolloutProjection:
    """Read-only projection over the Deployment Ledger.

    Parameters
    ----------
    ledger:
        The DeploymentLedger to project from.
    """

    def __init__(self, ledger: DeploymentLedger) -> None:
        self._ledger = ledger

    def snapshot(self, rollout_id: str) -> RolloutSnapshot:
        """Produce a point-in-time snapshot of a rollout.

        Raises ``KeyError`` if the ledger holds nothing for the rollout.
        """
        entries = self._ledger.get_rollout_entries(rollout_id)
        if not entries:
            raise KeyError(f"Unknown rollout: {rollout_id}")

        rollout: Rollout | None = None
        deployments: list[Deployment] = []
        cancel_requested = False
        for entry in entries:
            if entry.entry_kind == EntryKind.ROLLOUT:
                rollout = Rollout.model_validate(entry.payload)
            elif entry.entry_kind == EntryKind.DEPLOYMENT:
                deployments.append(Deployment.model_validate(entry.payload))
            elif entry.entry_kind == EntryKind.CANCEL:
                cancel_requested = True

        hosts = self._host_statuses(rollout, deployments)
        return RolloutSnapshot(
            rollout_id=rollout_id,
            artifact_label=rollout.artifact.label if rollout else "",
            policy=rollout.policy.describe() if rollout else "",
            failure_threshold=rollout.failure_threshold if rollout else 0.0,
            status=rollout.status if rollout else RolloutStatus.IN_PROGRESS,
            halt_reason=rollout.halt_reason if rollout else None,
            cancel_requested=cancel_requested,
            batch_count=len(rollout.batches) if rollout else 0,
            batches_done=len(rollout.batch_results) if rollout else 0,
            hosts=hosts,
            chain_valid=self._check_chain_valid(rollout_id),
            last_updated=entries[-1].timestamp_utc,
        )

    def _host_statuses(
        self, rollout: Rollout | None, deployments: list[Deployment]
    ) -> list[HostStatus]:
        batch_of: dict[str, int] = {}
        if rollout is not None:
            for index, batch in enumerate(rollout.batches):
                for host_id in batch:
                    batch_of[host_id] = index

        forward: dict[str, Deployment] = {}
        rolled_back: set[str] = set()
        for deployment in deployments:
            batch_of.setdefault(deployment.host_id, -1)
            if deployment.kind == DeploymentKind.DEPLOY:
                forward[deployment.host_id] = deployment
            elif deployment.outcome == DeploymentOutcome.SUCCEEDED:
                rolled_back.add(deployment.host_id)

        statuses: list[HostStatus] = []
        for host_id in sorted(batch_of, key=lambda h: (batch_of[h], h)):
            deployment = forward.get(host_id)
            if deployment is None:
                statuses.append(HostStatus(host_id=host_id, batch_index=batch_of[host_id]))
                continue
            last = deployment.phase_results[-1] if deployment.phase_results else None
            statuses.append(
                HostStatus(
                    host_id=host_id,
                    batch_index=batch_of[host_id],
                    outcome=deployment.outcome,
                    deployment_id=deployment.deployment_id,
                    last_phase=last.phase.value if last else None,
                    failure_reason=deployment.failure_reason,
                    rolled_back_by_rollout=host_id in rolled_back,
                    finished_at=deployment.finished_at,
                )
            )
        return statuses

    def _check_chain_valid(self, rollout_id: str) -> bool:
        try:
            return self._ledger.verify_chain(rollout_id)
        except LedgerIntegrityError:
            return False
