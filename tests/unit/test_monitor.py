"""Tests for the rollout monitor — ledger projection and Rich rendering."""

from __future__ import annotations

import pytest
from rich.console import Console
from rich.panel import Panel

from convoy.models.deployments import DeploymentOutcome
from convoy.models.hosts import Host
from convoy.models.phases import LifecyclePhase
from convoy.models.rollouts import BatchPolicy, RolloutStatus
from convoy.monitor.projection import HostStatus, RolloutProjection, RolloutSnapshot
from convoy.monitor.renderer import RolloutRenderer


def _render(renderable) -> str:
    console = Console(record=True, width=200)
    console.print(renderable)
    return console.export_text()


class TestRolloutProjection:
    def test_snapshot_of_finished_rollout(
        self, make_registry, make_coordinator, executor, ledger, v1, v2
    ):
        registry = make_registry(["h1", "h2", "h3"], on=v1)
        executor.fail("h2", "app-v2", LifecyclePhase.VALIDATE_SERVICE)
        rollout = make_coordinator(registry).start(
            v2, ["h1", "h2", "h3"], BatchPolicy.fixed_batch_size(2)
        )

        snapshot = RolloutProjection(ledger).snapshot(rollout.rollout_id)
        assert snapshot.status == rollout.status
        assert snapshot.batch_count == 2
        assert snapshot.batches_done == 1
        assert snapshot.chain_valid is True
        by_host = {h.host_id: h for h in snapshot.hosts}
        assert by_host["h1"].outcome == DeploymentOutcome.SUCCEEDED
        assert by_host["h1"].rolled_back_by_rollout is True
        assert by_host["h2"].outcome == DeploymentOutcome.ROLLED_BACK
        assert by_host["h2"].last_phase == "ValidateService"
        assert by_host["h3"].outcome == DeploymentOutcome.PENDING
        assert by_host["h3"].batch_index == 1

    def test_snapshot_shows_cancel_request(self, ledger, make_registry, make_coordinator, v1):
        rollout = make_coordinator(make_registry(["h1"])).start(
            v1, ["h1"], BatchPolicy.all_at_once()
        )
        ledger.request_cancel(rollout.rollout_id)
        assert RolloutProjection(ledger).snapshot(rollout.rollout_id).cancel_requested

    def test_unknown_rollout(self, ledger):
        with pytest.raises(KeyError):
            RolloutProjection(ledger).snapshot("r-nope")


class TestRolloutRenderer:
    def _snapshot(self, **overrides) -> RolloutSnapshot:
        defaults = dict(
            rollout_id="r-test-001",
            artifact_label="app-v2@222222222222",
            policy="2 host(s) per batch",
            status=RolloutStatus.PARTIALLY_FAILED,
            batch_count=2,
            batches_done=1,
            hosts=[
                HostStatus(host_id="h1", batch_index=0, outcome=DeploymentOutcome.SUCCEEDED),
                HostStatus(
                    host_id="h2",
                    batch_index=0,
                    outcome=DeploymentOutcome.ROLLED_BACK,
                    failure_reason="ValidateService failed (exit 1)",
                ),
                HostStatus(host_id="h3", batch_index=1),
            ],
        )
        defaults.update(overrides)
        return RolloutSnapshot(**defaults)

    def test_render_snapshot_is_panel(self):
        assert isinstance(RolloutRenderer().render_snapshot(self._snapshot()), Panel)

    def test_render_contains_hosts_and_status(self):
        text = _render(RolloutRenderer().render_snapshot(self._snapshot()))
        assert "r-test-001" in text
        assert "partially_failed" in text
        assert "ROLLED BACK" in text
        assert "ValidateService failed (exit 1)" in text
        assert "PENDING" in text

    def test_broken_chain_and_halt_shown(self):
        text = _render(RolloutRenderer().render_snapshot(
            self._snapshot(chain_valid=False, halt_reason="HostBusy: Host h3 is leased by r-9")
        ))
        assert "BROKEN" in text
        assert "HostBusy" in text

    def test_render_hosts(self, v1):
        table = RolloutRenderer().render_hosts([
            Host(host_id="web-1", address="10.0.1.15", tags={"role": "web"}, last_artifact=v1),
            Host(host_id="web-2"),
        ])
        text = _render(table)
        assert "web-1" in text and "role=web" in text
        assert "app-v1@" in text
        assert "none" in text

    def test_print_chain_verification(self):
        console = Console(record=True, width=120)
        renderer = RolloutRenderer(console=console)
        renderer.print_chain_verification("r-1", True)
        renderer.print_chain_verification("r-1", False)
        text = console.export_text()
        assert "is valid" in text
        assert "BROKEN" in text
