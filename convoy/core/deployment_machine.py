"""Per-host deployment state machine.

Drives one deployment through the fixed lifecycle:

    pending -> before_install -> install -> after_install
            -> application_start -> validate_service -> succeeded

Any phase that does not succeed halts forward progress.  With automatic
rollback enabled and a previously deployed artifact on record, the
machine enters ``rolling_back`` and replays the whole lifecycle for that
artifact; success ends in ``rolled_back``, failure in ``failed``.
Without a rollback target the deployment goes straight to ``failed``.

Enforces:
- Valid state transitions only (VALID_TRANSITIONS table)
- One PhaseResult per executed phase, in phase order
- Host state written at entry (deploying) and at the terminal transition
- The host's last good artifact changes only on ``succeeded``
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from convoy.config import ConvoyConfig
from convoy.core.deployment_ledger import DeploymentLedger
from convoy.core.host_registry import HostRegistry
from convoy.core.lifecycle_executor import ExecutionUnavailable, HookExecutor
from convoy.core.manifests import ArtifactNotFound, ManifestError, ManifestSource
from convoy.models.artifacts import Artifact
from convoy.models.deployments import Deployment, DeploymentKind, DeploymentOutcome
from convoy.models.hosts import Host, HostLease, HostState
from convoy.models.manifest import HookManifest
from convoy.models.phases import (
    PHASE_SEQUENCE,
    PHASE_STATES,
    VALID_TRANSITIONS,
    DeploymentState,
    LifecyclePhase,
    PhaseOutcome,
    PhaseResult,
)

logger = logging.getLogger(__name__)

CancelCheck = Callable[[], bool]


class InvalidTransitionError(RuntimeError):
    """Raised when a requested state transition is not valid."""


class RollbackFailed(RuntimeError):
    """Raised on the rollback path when the replay of the prior artifact fails.

    Terminal for the host: no automatic retry, operator action required.
    """


class DeploymentMachine:
    """Runs one deployment of one artifact on one leased host.

    A machine instance is single-use: build one per host deployment.

    Parameters
    ----------
    registry:
        Host Registry holding the host and its lease.
    executor:
        Lifecycle executor that runs hook scripts.
    manifests:
        Resolves each artifact's hook manifest and bundle directory.
    ledger:
        When given, the finalized Deployment is appended to it.
    config:
        Retry and rollback settings.
    """

    def __init__(
        self,
        registry: HostRegistry,
        executor: HookExecutor,
        manifests: ManifestSource,
        *,
        ledger: DeploymentLedger | None = None,
        config: ConvoyConfig | None = None,
    ) -> None:
        self._registry = registry
        self._executor = executor
        self._manifests = manifests
        self._ledger = ledger
        self._config = config or ConvoyConfig()
        self.auto_rollback = self._config.auto_rollback

        self.state = DeploymentState.PENDING
        self._results: list[PhaseResult] = []
        self._transitions: list[str] = []
        self._deployment: Deployment | None = None

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(
        self,
        lease: HostLease,
        artifact: Artifact,
        *,
        rollout_id: str,
        kind: DeploymentKind = DeploymentKind.DEPLOY,
        cancel_check: CancelCheck | None = None,
    ) -> Deployment:
        """Drive the deployment to a terminal state and return it.

        The caller owns the lease; the machine only checks that it is live.
        """
        if self._deployment is not None:
            raise RuntimeError("DeploymentMachine instances are single-use")
        if not self._registry.holds(lease):
            raise ValueError(f"Lease {lease.lease_id} on {lease.host_id} is not held")

        host = self._registry.get(lease.host_id)
        previous = host.last_artifact
        deployment = Deployment(
            rollout_id=rollout_id,
            host_id=host.host_id,
            kind=kind,
            artifact=artifact,
            previous_artifact=previous,
        )
        self._deployment = deployment

        self._registry.mark_state(host.host_id, HostState.DEPLOYING)
        logger.info(
            "Deployment %s: %s %s to %s",
            deployment.deployment_id,
            kind.value,
            artifact.label,
            host.host_id,
        )

        try:
            manifest = self._manifests.manifest_for(artifact)
        except (ArtifactNotFound, ManifestError) as exc:
            # The bundle can disappear between validation and dispatch.
            failure = f"manifest unavailable: {exc}"
        else:
            failure = self._run_forward(deployment, host, artifact, manifest, cancel_check)

        if failure is None:
            self._transition(DeploymentState.SUCCEEDED)
            self._registry.record_success(host.host_id, artifact)
            return self._finish(deployment, DeploymentOutcome.SUCCEEDED)

        logger.warning(
            "Deployment %s on %s halted: %s",
            deployment.deployment_id,
            host.host_id,
            failure,
        )
        if kind == DeploymentKind.ROLLBACK:
            # A failed rollback deployment is not rolled back again.
            return self._fail(deployment, host, f"RollbackFailed: {failure}")
        if not self.auto_rollback:
            return self._fail(deployment, host, failure)
        if previous is None:
            return self._fail(
                deployment, host, f"{failure}; no previous artifact to roll back to"
            )

        self._transition(DeploymentState.ROLLING_BACK)
        self._registry.mark_state(host.host_id, HostState.ROLLING_BACK)
        try:
            self._run_rollback(deployment, host, previous)
        except RollbackFailed as exc:
            logger.error(
                "Rollback of %s to %s failed: %s (operator action required)",
                host.host_id,
                previous.label,
                exc,
            )
            return self._fail(deployment, host, f"{failure}; RollbackFailed: {exc}")

        self._transition(DeploymentState.ROLLED_BACK)
        self._registry.mark_state(host.host_id, HostState.HEALTHY)
        logger.info("Host %s rolled back to %s", host.host_id, previous.label)
        return self._finish(deployment, DeploymentOutcome.ROLLED_BACK, failure)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def _run_forward(
        self,
        deployment: Deployment,
        host: Host,
        artifact: Artifact,
        manifest: HookManifest,
        cancel_check: CancelCheck | None,
    ) -> str | None:
        """Walk the phase sequence; return a failure reason or None."""
        for phase in PHASE_SEQUENCE:
            if cancel_check is not None and cancel_check():
                return f"cancelled before {phase.value}"
            self._transition(PHASE_STATES[phase])
            result = self._run_phase(
                deployment, host, phase, manifest, artifact, rollback=False
            )
            self._results.append(result)
            if not result.succeeded:
                return _describe_failure(result)
        return None

    def _run_rollback(
        self, deployment: Deployment, host: Host, previous: Artifact
    ) -> None:
        """Replay the lifecycle for the previous artifact.

        Raises ``RollbackFailed`` on the first phase that does not succeed.
        """
        try:
            manifest = self._manifests.manifest_for(previous)
        except (ArtifactNotFound, ManifestError) as exc:
            raise RollbackFailed(str(exc)) from exc

        for phase in PHASE_SEQUENCE:
            result = self._run_phase(
                deployment, host, phase, manifest, previous, rollback=True
            )
            self._results.append(result)
            if not result.succeeded:
                raise RollbackFailed(_describe_failure(result))

    def _run_phase(
        self,
        deployment: Deployment,
        host: Host,
        phase: LifecyclePhase,
        manifest: HookManifest,
        artifact: Artifact,
        *,
        rollback: bool,
    ) -> PhaseResult:
        hook = manifest.hook_for(phase)
        if hook is None:
            return PhaseResult(phase=phase, outcome=PhaseOutcome.SUCCEEDED, rollback=rollback)

        env = {
            "DEPLOYMENT_ID": deployment.deployment_id,
            "APPLICATION_ARTIFACT": artifact.artifact_id,
            "ARTIFACT_CONTENT_HASH": artifact.content_hash,
            "ARTIFACT_LOCATION": artifact.location,
        }
        try:
            return self._retrying()(
                self._executor.run,
                host,
                phase,
                hook.script_ref,
                hook.timeout_seconds,
                identity=hook.identity,
                cwd=self._manifests.bundle_root(artifact),
                env=env,
                rollback=rollback,
            )
        except ExecutionUnavailable as exc:
            logger.error(
                "%s on %s unavailable after %d attempt(s): %s",
                phase.value,
                host.host_id,
                self._config.execution_attempts,
                exc,
            )
            return PhaseResult(
                phase=phase,
                script_ref=hook.script_ref,
                identity=hook.identity,
                outcome=PhaseOutcome.FAILED,
                output=f"ExecutionUnavailable: {exc}",
                rollback=rollback,
            )

    # ------------------------------------------------------------------
    # Transition logic
    # ------------------------------------------------------------------

    def _transition(self, target: DeploymentState) -> None:
        allowed = VALID_TRANSITIONS.get(self.state, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition from {self.state.value} to {target.value}. "
                f"Allowed: {sorted(s.value for s in allowed)}"
            )
        self._transitions.append(f"{self.state.value}->{target.value}")
        self.state = target

    def _fail(self, deployment: Deployment, host: Host, reason: str) -> Deployment:
        self._transition(DeploymentState.FAILED)
        self._registry.mark_state(host.host_id, HostState.FAILED)
        return self._finish(deployment, DeploymentOutcome.FAILED, reason)

    def _finish(
        self,
        deployment: Deployment,
        outcome: DeploymentOutcome,
        reason: str | None = None,
    ) -> Deployment:
        deployment = deployment.model_copy(
            update={
                "phase_results": list(self._results),
                "transitions": list(self._transitions),
                "outcome": outcome,
                "failure_reason": reason,
                "finished_at": datetime.now(timezone.utc),
            }
        )
        self._deployment = deployment
        if self._ledger is not None:
            self._ledger.append(deployment)
        logger.info(
            "Deployment %s on %s finished: %s",
            deployment.deployment_id,
            deployment.host_id,
            outcome.value,
        )
        return deployment

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(max(1, self._config.execution_attempts)),
            wait=wait_exponential(
                multiplier=self._config.execution_backoff_seconds,
                max=self._config.execution_backoff_max_seconds,
            ),
            retry=retry_if_exception_type(ExecutionUnavailable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )


def _describe_failure(result: PhaseResult) -> str:
    if result.outcome == PhaseOutcome.TIMED_OUT:
        return f"{result.phase.value} timed out"
    if result.exit_code is not None:
        return f"{result.phase.value} failed (exit {result.exit_code})"
    return f"{result.phase.value} failed"
