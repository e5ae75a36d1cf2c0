"""Rollout Coordinator — applies one artifact across a host set in batches.

The coordinator wires together the HostRegistry, LifecycleExecutor,
manifest source and DeploymentLedger.  Per batch it:

1. leases every host in the batch (all or nothing, HostBusy retried),
2. runs one DeploymentMachine per host in parallel,
3. joins every host before evaluating the batch,
4. stops and rolls back when the batch failure fraction exceeds the
   threshold, otherwise moves on to the next batch.

Batches are strictly sequential; hosts inside a batch finish in any order.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
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
from convoy.core.deployment_machine import DeploymentMachine
from convoy.core.host_registry import HostBusy, HostNotFound, HostRegistry
from convoy.core.lifecycle_executor import HookExecutor
from convoy.core.manifests import ManifestSource
from convoy.models.artifacts import Artifact
from convoy.models.deployments import Deployment, DeploymentKind, DeploymentOutcome
from convoy.models.hosts import HostLease, HostState, TagFilter
from convoy.models.rollouts import BatchPolicy, BatchResult, Rollout, RolloutStatus

logger = logging.getLogger(__name__)


class RolloutCoordinator:
    """Runs rollouts under a batch policy and a failure threshold.

    Parameters
    ----------
    registry:
        Host Registry providing hosts and leases.
    executor:
        Lifecycle executor shared by every deployment.
    manifests:
        Resolves hook manifests per artifact.
    ledger:
        Deployment Ledger receiving deployments and rollout snapshots.
    config:
        Retry, threshold and parallelism settings.
    """

    def __init__(
        self,
        registry: HostRegistry,
        executor: HookExecutor,
        manifests: ManifestSource,
        ledger: DeploymentLedger,
        *,
        config: ConvoyConfig | None = None,
    ) -> None:
        self.registry = registry
        self.executor = executor
        self.manifests = manifests
        self.ledger = ledger
        self.config = config or ConvoyConfig()

        self._rollouts: dict[str, Rollout] = {}
        self._cancel_events: dict[str, threading.Event] = {}

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    def start(
        self,
        artifact: Artifact,
        host_ids: Iterable[str],
        policy: BatchPolicy,
        *,
        failure_threshold: float | None = None,
        rollout_id: str | None = None,
    ) -> Rollout:
        """Run a rollout to completion and return its final state.

        Raises ``HostNotFound``, ``ArtifactNotFound`` or ``ValueError``
        before any host is touched when the input is invalid.
        """
        hosts = set(host_ids)
        if not hosts:
            raise ValueError("A rollout needs at least one host")
        for host_id in hosts:
            self.registry.get(host_id)
        self.manifests.manifest_for(artifact)

        threshold = (
            self.config.failure_threshold if failure_threshold is None else failure_threshold
        )
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"failure_threshold must be within [0, 1], got {threshold}")

        rollout = Rollout(
            rollout_id=rollout_id or _new_rollout_id(),
            artifact=artifact,
            policy=policy,
            failure_threshold=threshold,
            batches=policy.partition(hosts),
            prior_artifacts={h: self.registry.get(h).last_artifact for h in sorted(hosts)},
        )
        rid = rollout.rollout_id
        self._cancel_events[rid] = threading.Event()
        self._save(rollout)

        logger.info(
            "Rollout %s: %s to %d host(s) in %d batch(es) (%s, threshold=%.2f)",
            rid,
            artifact.label,
            len(hosts),
            len(rollout.batches),
            policy.describe(),
            threshold,
        )

        abort = False
        for index, batch in enumerate(rollout.batches):
            if self._is_cancelled(rid):
                rollout = self._save(rollout.model_copy(update={
                    "cancelled": True,
                    "halt_reason": f"cancelled before batch {index + 1}",
                }))
                break

            try:
                leases = self._acquire_batch(rid, batch)
            except HostBusy as exc:
                logger.error("Rollout %s batch %d cannot start: %s", rid, index + 1, exc)
                halted = BatchResult(
                    index=index, host_ids=batch, halted_reason=f"HostBusy: {exc}"
                )
                rollout = self._save(rollout.model_copy(update={
                    "batch_results": [*rollout.batch_results, halted],
                    "halt_reason": f"HostBusy: {exc}",
                    "status": RolloutStatus.HALTED,
                }))
                break

            try:
                deployments = self._run_hosts(rid, artifact, leases, DeploymentKind.DEPLOY)
            finally:
                self._release(leases)

            result = _batch_result(index, batch, deployments)
            rollout = self._save(rollout.model_copy(update={
                "batch_results": [*rollout.batch_results, result],
                "deployment_ids": [
                    *rollout.deployment_ids,
                    *(deployments[h].deployment_id for h in batch),
                ],
            }))
            logger.info(
                "Rollout %s batch %d/%d: %d succeeded, %d rolled back, %d failed",
                rid,
                index + 1,
                len(rollout.batches),
                len(result.succeeded),
                len(result.rolled_back),
                len(result.failed),
            )

            if self._is_cancelled(rid):
                rollout = self._save(rollout.model_copy(update={
                    "cancelled": True,
                    "halt_reason": f"cancelled during batch {index + 1}",
                }))
                break
            if result.failure_count and result.failure_fraction > threshold:
                logger.warning(
                    "Rollout %s: batch %d failure fraction %.2f exceeds threshold %.2f; "
                    "aborting remaining batches",
                    rid,
                    index + 1,
                    result.failure_fraction,
                    threshold,
                )
                abort = True
                break

        rollback_failed = False
        if abort:
            rollout, rollback_failed = self._rollback_touched_hosts(rollout)

        rollout = rollout.model_copy(update={
            "status": _final_status(rollout, rollback_failed),
            "finished_at": datetime.now(timezone.utc),
        })
        self._save(rollout)
        logger.info("Rollout %s finished: %s", rid, rollout.status.value)
        return rollout

    def start_by_tag(
        self,
        artifact: Artifact,
        tag_filter: TagFilter,
        policy: BatchPolicy,
        *,
        failure_threshold: float | None = None,
        rollout_id: str | None = None,
    ) -> Rollout:
        """Resolve the host set from a tag filter, then ``start``."""
        hosts = self.registry.list_by_tag(tag_filter)
        if not hosts:
            raise HostNotFound(f"No hosts match tag filter {tag_filter}")
        return self.start(
            artifact,
            {h.host_id for h in hosts},
            policy,
            failure_threshold=failure_threshold,
            rollout_id=rollout_id,
        )

    def status(self, rollout_id: str) -> Rollout:
        """Live rollout state, falling back to the last ledger snapshot."""
        rollout = self._rollouts.get(rollout_id) or self.ledger.get_rollout(rollout_id)
        if rollout is None:
            raise KeyError(f"Unknown rollout: {rollout_id}")
        return rollout

    def cancel(self, rollout_id: str, reason: str = "operator request") -> None:
        """Request cancellation of a rollout.

        In-flight hosts finish their current hook, dispatch nothing further
        and take the rollback path.  Un-started batches are skipped.
        """
        self.status(rollout_id)
        event = self._cancel_events.get(rollout_id)
        if event is not None:
            event.set()
        self.ledger.request_cancel(rollout_id, reason)
        logger.warning("Rollout %s cancel requested: %s", rollout_id, reason)

    # ------------------------------------------------------------------
    # Batch mechanics
    # ------------------------------------------------------------------

    def _acquire_batch(self, holder: str, batch: list[str]) -> dict[str, HostLease]:
        """Lease every host of a batch or none of them."""
        leases: dict[str, HostLease] = {}
        retrying = self._lease_retrying()
        try:
            for host_id in batch:
                leases[host_id] = retrying(self.registry.try_acquire, host_id, holder)
        except HostBusy:
            self._release(leases)
            raise
        return leases

    def _release(self, leases: dict[str, HostLease]) -> None:
        for lease in leases.values():
            self.registry.release(lease.host_id, lease)

    def _run_hosts(
        self,
        rollout_id: str,
        artifacts: Artifact | dict[str, Artifact],
        leases: dict[str, HostLease],
        kind: DeploymentKind,
    ) -> dict[str, Deployment]:
        """Run one state machine per leased host and wait for all of them."""
        workers = max(1, min(len(leases), self.config.max_parallel_hosts))
        results: dict[str, Deployment] = {}
        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix=f"convoy-{rollout_id}"
        ) as pool:
            futures = {
                pool.submit(
                    self._deploy_host,
                    rollout_id,
                    artifacts[host_id] if isinstance(artifacts, dict) else artifacts,
                    lease,
                    kind,
                ): host_id
                for host_id, lease in leases.items()
            }
            for future in as_completed(futures):
                results[futures[future]] = future.result()
        return results

    def _deploy_host(
        self,
        rollout_id: str,
        artifact: Artifact,
        lease: HostLease,
        kind: DeploymentKind,
    ) -> Deployment:
        machine = DeploymentMachine(
            self.registry,
            self.executor,
            self.manifests,
            ledger=self.ledger,
            config=self.config,
        )
        try:
            return machine.run(
                lease,
                artifact,
                rollout_id=rollout_id,
                kind=kind,
                cancel_check=lambda: self._is_cancelled(rollout_id),
            )
        except Exception as exc:
            # A crash is confined to its own host.
            logger.exception(
                "Rollout %s: %s of %s on %s crashed", rollout_id, kind.value,
                artifact.label, lease.host_id,
            )
            return self._abandon(rollout_id, artifact, lease.host_id, kind, exc)

    def _abandon(
        self,
        rollout_id: str,
        artifact: Artifact,
        host_id: str,
        kind: DeploymentKind,
        exc: Exception,
    ) -> Deployment:
        """Record a FAILED deployment for a host whose machine raised."""
        reason = f"{type(exc).__name__}: {exc}"
        if kind == DeploymentKind.ROLLBACK:
            reason = f"RollbackFailed: {reason}"
        host = self.registry.mark_state(host_id, HostState.FAILED)
        deployment = Deployment(
            rollout_id=rollout_id,
            host_id=host_id,
            kind=kind,
            artifact=artifact,
            previous_artifact=host.last_artifact,
            outcome=DeploymentOutcome.FAILED,
            failure_reason=reason,
            finished_at=datetime.now(timezone.utc),
        )
        self.ledger.append(deployment)
        return deployment

    def _rollback_touched_hosts(self, rollout: Rollout) -> tuple[Rollout, bool]:
        """Return hosts whose forward deployment succeeded to their prior artifact.

        Hosts that failed already ran their own rollback path.  With
        automatic rollback disabled nothing is rolled back here either.
        Returns the updated rollout and whether any rollback failed.
        """
        if not self.config.auto_rollback:
            logger.warning(
                "Rollout %s: automatic rollback disabled; leaving touched hosts in place",
                rollout.rollout_id,
            )
            return rollout, False
        succeeded = [h for result in rollout.batch_results for h in result.succeeded]
        targets: dict[str, Artifact] = {}
        for host_id in succeeded:
            prior = rollout.prior_artifacts.get(host_id)
            if prior is None:
                logger.warning(
                    "Rollout %s: host %s has no prior artifact; leaving it on %s",
                    rollout.rollout_id,
                    host_id,
                    rollout.artifact.label,
                )
                continue
            targets[host_id] = prior
        if not targets:
            return rollout, False

        logger.warning(
            "Rollout %s: rolling back %d host(s): %s",
            rollout.rollout_id,
            len(targets),
            ", ".join(sorted(targets)),
        )
        try:
            leases = self._acquire_batch(rollout.rollout_id, sorted(targets))
        except HostBusy as exc:
            logger.error(
                "Rollout %s: RollbackFailed, cannot lease hosts: %s", rollout.rollout_id, exc
            )
            return rollout, True

        try:
            deployments = self._run_hosts(
                rollout.rollout_id, targets, leases, DeploymentKind.ROLLBACK
            )
        finally:
            self._release(leases)

        failed = [
            h for h, d in deployments.items() if d.outcome != DeploymentOutcome.SUCCEEDED
        ]
        for host_id in failed:
            logger.error(
                "Rollout %s: RollbackFailed on %s: %s",
                rollout.rollout_id,
                host_id,
                deployments[host_id].failure_reason,
            )
        rollout = self._save(rollout.model_copy(update={
            "rollback_deployment_ids": [
                *rollout.rollback_deployment_ids,
                *(deployments[h].deployment_id for h in sorted(deployments)),
            ],
        }))
        return rollout, bool(failed)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _is_cancelled(self, rollout_id: str) -> bool:
        event = self._cancel_events.get(rollout_id)
        if event is not None and event.is_set():
            return True
        if self.ledger.cancel_requested(rollout_id):
            if event is not None:
                event.set()
            return True
        return False

    def _save(self, rollout: Rollout) -> Rollout:
        self._rollouts[rollout.rollout_id] = rollout
        self.ledger.append_rollout(rollout)
        return rollout

    def _lease_retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(max(1, self.config.lease_attempts)),
            wait=wait_exponential(
                multiplier=self.config.lease_backoff_seconds,
                max=self.config.lease_backoff_max_seconds,
            ),
            retry=retry_if_exception_type(HostBusy),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )


def _new_rollout_id() -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"r-{ts}-{uuid.uuid4().hex[:6]}"


def _batch_result(
    index: int, batch: list[str], deployments: dict[str, Deployment]
) -> BatchResult:
    by_outcome: dict[DeploymentOutcome, list[str]] = {o: [] for o in DeploymentOutcome}
    for host_id in batch:
        by_outcome[deployments[host_id].outcome].append(host_id)
    return BatchResult(
        index=index,
        host_ids=batch,
        succeeded=by_outcome[DeploymentOutcome.SUCCEEDED],
        failed=by_outcome[DeploymentOutcome.FAILED],
        rolled_back=by_outcome[DeploymentOutcome.ROLLED_BACK],
    )


def _final_status(rollout: Rollout, rollback_failed: bool) -> RolloutStatus:
    """Aggregate per-host outcomes into the rollout status.

    - HALTED: a batch could not start, or nothing was deployed at all
    - COMPLETED: every host of the rollout succeeded
    - ROLLED_BACK: every deployed host failed and was restored
    - PARTIALLY_FAILED: anything else, including any failed rollback
    """
    if rollout.status == RolloutStatus.HALTED:
        return RolloutStatus.HALTED

    succeeded = [h for r in rollout.batch_results for h in r.succeeded]
    failed = [h for r in rollout.batch_results for h in r.failed]
    rolled_back = [h for r in rollout.batch_results for h in r.rolled_back]
    deployed = len(succeeded) + len(failed) + len(rolled_back)

    if deployed == 0:
        return RolloutStatus.HALTED
    if rollback_failed or failed:
        return RolloutStatus.PARTIALLY_FAILED
    if len(succeeded) == len(rollout.host_ids):
        return RolloutStatus.COMPLETED
    if len(rolled_back) == deployed:
        return RolloutStatus.ROLLED_BACK
    return RolloutStatus.PARTIALLY_FAILED
