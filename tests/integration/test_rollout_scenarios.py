"""Integration tests — full rollouts with real hook scripts.

Wires RolloutCoordinator + LifecycleExecutor (local transport) +
BundleManifestSource + DeploymentLedger together against shell-script
bundles, and checks the end-to-end behaviour an operator relies on.
"""

from __future__ import annotations

import time
from pathlib import Path

import pytest

from convoy.core.deployment_ledger import DeploymentLedger
from convoy.core.host_registry import HostRegistry
from convoy.core.lifecycle_executor import LifecycleExecutor
from convoy.core.manifests import BundleManifestSource
from convoy.core.rollout_coordinator import RolloutCoordinator
from convoy.models.artifacts import Artifact
from convoy.models.deployments import DeploymentOutcome
from convoy.models.hosts import Host, HostState
from convoy.models.phases import PHASE_SEQUENCE, LifecyclePhase, PhaseOutcome
from convoy.models.rollouts import BatchPolicy, RolloutStatus

PHASES = [p.value for p in PHASE_SEQUENCE]


@pytest.fixture
def journal(tmp_dir: Path) -> Path:
    """File every hook appends ``HOST PHASE ARTIFACT`` to."""
    return tmp_dir / "journal.log"


@pytest.fixture
def make_artifact(bundle, journal):
    """Build a bundle whose hooks log to the journal; *overrides* replace hook bodies."""

    def _factory(name: str, overrides: dict[str, str] | None = None, timeout: float = 30) -> Artifact:
        log = f'echo "$HOST_ID $LIFECYCLE_EVENT $APPLICATION_ARTIFACT" >> {journal}'
        scripts = {phase: log for phase in PHASES}
        for phase, body in (overrides or {}).items():
            scripts[phase] = f"{log}\n{body}"
        root = bundle(name, scripts, timeout=timeout)
        return Artifact(artifact_id=name, location=str(root))

    return _factory


@pytest.fixture
def engine(ledger: DeploymentLedger, fast_config):
    """Factory: a coordinator over real hosts, optionally restored from the ledger."""

    def _factory(host_ids: list[str]) -> tuple[RolloutCoordinator, HostRegistry]:
        registry = HostRegistry([Host(host_id=h, tags={"role": "web"}) for h in host_ids])
        registry.restore_from_ledger(ledger)
        coordinator = RolloutCoordinator(
            registry,
            LifecycleExecutor(),
            BundleManifestSource(),
            ledger,
            config=fast_config,
        )
        return coordinator, registry

    return _factory


def _journal_lines(journal: Path) -> list[list[str]]:
    if not journal.exists():
        return []
    return [line.split() for line in journal.read_text().splitlines()]


class TestValidationFailureScenario:
    """H1 succeeds, H2's ValidateService fails, all at once."""

    FAIL_H2 = {"ValidateService": '[ "$HOST_ID" = H2 ] && exit 1\nexit 0'}

    def test_with_prior_artifact(self, engine, make_artifact, ledger):
        a0 = make_artifact("A0")
        a1 = make_artifact("A1", self.FAIL_H2)
        coordinator, _ = engine(["H1", "H2"])
        assert coordinator.start(a0, ["H1", "H2"], BatchPolicy.all_at_once()).status == (
            RolloutStatus.COMPLETED
        )

        coordinator, registry = engine(["H1", "H2"])  # fresh process, state from ledger
        rollout = coordinator.start(a1, ["H1", "H2"], BatchPolicy.all_at_once())

        assert rollout.status == RolloutStatus.PARTIALLY_FAILED
        assert registry.get("H1").state == HostState.HEALTHY
        assert registry.get("H2").state == HostState.HEALTHY
        assert registry.get("H2").last_artifact.artifact_id == "A0"

        h2 = [d for d in ledger.deployments_for_rollout(rollout.rollout_id)
              if d.host_id == "H2" and d.kind.value == "deploy"][0]
        assert h2.outcome == DeploymentOutcome.ROLLED_BACK
        failed = h2.forward_results[-1]
        assert failed.phase == LifecyclePhase.VALIDATE_SERVICE
        assert failed.exit_code == 1
        assert [r.phase for r in h2.rollback_results] == PHASE_SEQUENCE

    def test_without_prior_artifact(self, engine, make_artifact):
        a1 = make_artifact("A1", self.FAIL_H2)
        coordinator, registry = engine(["H1", "H2"])
        rollout = coordinator.start(a1, ["H1", "H2"], BatchPolicy.all_at_once())

        assert rollout.status == RolloutStatus.PARTIALLY_FAILED
        assert registry.get("H1").state == HostState.HEALTHY
        assert registry.get("H2").state == HostState.FAILED

    def test_sibling_host_is_not_aborted(self, engine, make_artifact, journal):
        a1 = make_artifact("A1", {"Install": '[ "$HOST_ID" = H2 ] && exit 1\nexit 0'})
        coordinator, _ = engine(["H1", "H2"])
        coordinator.start(a1, ["H1", "H2"], BatchPolicy.all_at_once())
        h1_phases = [phase for host, phase, _ in _journal_lines(journal) if host == "H1"]
        assert h1_phases == PHASES


class TestHookEnvironmentAndOrder:
    def test_every_phase_runs_in_order_with_artifact(self, engine, make_artifact, journal):
        a1 = make_artifact("A1")
        coordinator, _ = engine(["H1"])
        coordinator.start(a1, ["H1"], BatchPolicy.all_at_once())
        assert _journal_lines(journal) == [["H1", phase, "A1"] for phase in PHASES]

    def test_batches_are_sequential(self, engine, make_artifact, journal):
        a1 = make_artifact("A1")
        coordinator, _ = engine(["H1", "H2", "H3", "H4"])
        rollout = coordinator.start(a1, ["H4", "H3", "H2", "H1"], BatchPolicy.fixed_batch_size(2))
        assert rollout.status == RolloutStatus.COMPLETED
        hosts = [host for host, _, _ in _journal_lines(journal)]
        assert set(hosts[:10]) == {"H1", "H2"}
        assert set(hosts[10:]) == {"H3", "H4"}

    def test_rerun_is_a_full_redeploy(self, engine, make_artifact, journal, ledger):
        a1 = make_artifact("A1")
        coordinator, _ = engine(["H1", "H2"])
        first = coordinator.start(a1, ["H1", "H2"], BatchPolicy.all_at_once())
        coordinator, _ = engine(["H1", "H2"])
        second = coordinator.start(a1, ["H1", "H2"], BatchPolicy.all_at_once())

        assert first.rollout_id != second.rollout_id
        assert first.status == second.status == RolloutStatus.COMPLETED
        assert len(_journal_lines(journal)) == 2 * 2 * len(PHASES)
        assert ledger.verify_chain(first.rollout_id)
        assert ledger.verify_chain(second.rollout_id)


class TestTimeout:
    def test_hung_hook_times_out_promptly(self, engine, make_artifact, ledger):
        a1 = make_artifact("A1", {"ApplicationStart": "sleep 10"}, timeout=1)
        coordinator, registry = engine(["H1"])
        t0 = time.monotonic()
        rollout = coordinator.start(a1, ["H1"], BatchPolicy.all_at_once())
        elapsed = time.monotonic() - t0

        assert elapsed < 8
        deployment = ledger.get(rollout.deployment_ids[0])
        assert deployment.outcome == DeploymentOutcome.FAILED
        assert deployment.phase_results[-1].outcome == PhaseOutcome.TIMED_OUT
        assert registry.get("H1").state == HostState.FAILED


class TestHostBusyScenario:
    def test_busy_host_blocks_whole_batch(self, engine, make_artifact, journal, ledger):
        a1 = make_artifact("A1")
        coordinator, registry = engine(["H1", "H2", "H3"])
        registry.try_acquire("H2", "r-other-operator")

        rollout = coordinator.start(a1, ["H1", "H2", "H3"], BatchPolicy.all_at_once())

        assert rollout.status == RolloutStatus.HALTED
        assert "HostBusy" in rollout.halt_reason
        assert _journal_lines(journal) == []
        assert ledger.deployments_for_rollout(rollout.rollout_id) == []
        assert registry.lease_holder("H1") is None
