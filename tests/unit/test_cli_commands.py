"""Unit tests for the CLI — command registration, exit codes, rendering.

Runs the real engine against shell-script bundles in a temp directory,
via typer.testing.CliRunner.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from typer.testing import CliRunner

from convoy.cli.app import app
from convoy.core.deployment_ledger import DeploymentLedger

runner = CliRunner()

PHASES = ["BeforeInstall", "Install", "AfterInstall", "ApplicationStart", "ValidateService"]


@pytest.fixture(autouse=True)
def wide_terminal(monkeypatch):
    """Keep Rich from truncating table cells in captured output."""
    monkeypatch.setenv("COLUMNS", "220")


@pytest.fixture
def workspace(tmp_dir: Path, bundle) -> dict[str, Path]:
    """Inventory with two web hosts and one db host, plus a three-artifact catalog."""
    bundle("app-v1", {phase: "true" for phase in PHASES})
    bundle("app-v2", {**{phase: "true" for phase in PHASES},
                      "ValidateService": '[ "$HOST_ID" = web-2 ] && exit 1\nexit 0'})
    bundle("app-v3", {**{phase: "true" for phase in PHASES},
                      "ValidateService": "exit 1"})

    inventory = tmp_dir / "inventory.yml"
    inventory.write_text(
        "hosts:\n"
        "  - id: web-1\n"
        "    tags: {role: web}\n"
        "  - id: web-2\n"
        "    tags: {role: web}\n"
        "  - id: db-1\n"
        "    tags: {role: db}\n",
        encoding="utf-8",
    )
    catalog = tmp_dir / "artifacts.yml"
    catalog.write_text(
        "artifacts:\n"
        + "".join(f"  - id: {a}\n    location: bundles/{a}\n" for a in ("app-v1", "app-v2", "app-v3")),
        encoding="utf-8",
    )
    return {"inventory": inventory, "catalog": catalog, "ledger": tmp_dir / "ledger.db"}


def _start(ws: dict[str, Path], *args: str):
    return runner.invoke(app, [
        "start",
        "--inventory", str(ws["inventory"]),
        "--catalog", str(ws["catalog"]),
        "--ledger", str(ws["ledger"]),
        *args,
    ])


def _latest_rollout(ws: dict[str, Path]) -> str:
    return DeploymentLedger(ws["ledger"]).rollout_ids()[0]


class TestCliApp:
    def test_no_args_shows_help(self):
        result = runner.invoke(app, [])
        assert result.exit_code in (0, 2)
        assert "usage" in result.output.lower()

    def test_help_lists_commands(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("start", "status", "cancel", "hosts", "history"):
            assert command in result.output


class TestStart:
    def test_successful_rollout_exits_zero(self, workspace):
        result = _start(workspace, "--artifact", "app-v1", "--tags", "role=web")
        assert result.exit_code == 0, result.output
        assert "completed" in result.output

        ledger = DeploymentLedger(workspace["ledger"])
        rollout = ledger.get_rollout(_latest_rollout(workspace))
        assert rollout.host_ids == ["web-1", "web-2"]

    def test_partial_failure_exits_one(self, workspace):
        assert _start(workspace, "--artifact", "app-v1", "--tags", "role=web").exit_code == 0
        result = _start(workspace, "--artifact", "app-v2", "--tags", "role=web")
        assert result.exit_code == 1, result.output

    def test_total_failure_exits_two(self, workspace):
        assert _start(workspace, "--artifact", "app-v1", "--tags", "role=web").exit_code == 0
        result = _start(workspace, "--artifact", "app-v3", "--tags", "role=web")
        assert result.exit_code == 2, result.output

    def test_unknown_artifact_exits_three(self, workspace):
        result = _start(workspace, "--artifact", "app-v9")
        assert result.exit_code == 3
        assert "Unknown artifact" in result.output

    def test_unmatched_tag_filter_exits_three(self, workspace):
        result = _start(workspace, "--artifact", "app-v1", "--tags", "role=queue")
        assert result.exit_code == 3

    def test_malformed_tag_filter_exits_three(self, workspace):
        assert _start(workspace, "--artifact", "app-v1", "--tags", "role").exit_code == 3

    def test_bad_policy_exits_three(self, workspace):
        result = _start(workspace, "--artifact", "app-v1", "--policy", "rolling")
        assert result.exit_code == 3
        assert "batch policy" in result.output

    def test_fixed_policy(self, workspace):
        result = _start(workspace, "--artifact", "app-v1", "--policy", "fixed:1")
        assert result.exit_code == 0, result.output
        rollout = DeploymentLedger(workspace["ledger"]).get_rollout(_latest_rollout(workspace))
        assert rollout.batches == [["db-1"], ["web-1"], ["web-2"]]


class TestReadCommands:
    def test_status(self, workspace):
        _start(workspace, "--artifact", "app-v1", "--tags", "role=web")
        rid = _latest_rollout(workspace)
        result = runner.invoke(
            app, ["status", rid, "--verify-chain", "--ledger", str(workspace["ledger"])]
        )
        assert result.exit_code == 0, result.output
        assert "valid" in result.output
        assert "web-2" in result.output

    def test_status_unknown_rollout(self, workspace):
        _start(workspace, "--artifact", "app-v1")
        result = runner.invoke(app, ["status", "r-nope", "--ledger", str(workspace["ledger"])])
        assert result.exit_code == 3
        assert "not found" in result.output

    def test_status_without_ledger(self, tmp_dir):
        result = runner.invoke(app, ["status", "r-1", "--ledger", str(tmp_dir / "none.db")])
        assert result.exit_code == 3

    def test_hosts_shows_last_good_artifact(self, workspace):
        _start(workspace, "--artifact", "app-v1", "--tags", "role=web")
        result = runner.invoke(app, [
            "hosts", "--tags", "role=web",
            "--inventory", str(workspace["inventory"]),
            "--ledger", str(workspace["ledger"]),
        ])
        assert result.exit_code == 0, result.output
        assert "web-1" in result.output
        assert "db-1" not in result.output
        assert "app-v1" in result.output

    def test_history(self, workspace):
        _start(workspace, "--artifact", "app-v1", "--tags", "role=web")
        _start(workspace, "--artifact", "app-v2", "--tags", "role=web")
        result = runner.invoke(app, ["history", "web-2", "--ledger", str(workspace["ledger"])])
        assert result.exit_code == 0, result.output
        assert "app-v1" in result.output
        assert "app-v2" in result.output

    def test_history_empty(self, workspace):
        result = runner.invoke(app, ["history", "db-1", "--ledger", str(workspace["ledger"])])
        assert result.exit_code == 0
        assert "No deployments" in result.output


class TestCancel:
    def test_cancel_unknown_rollout(self, workspace):
        result = runner.invoke(app, ["cancel", "r-nope", "--ledger", str(workspace["ledger"])])
        assert result.exit_code == 3

    def test_cancel_finished_rollout_is_noop(self, workspace):
        _start(workspace, "--artifact", "app-v1")
        rid = _latest_rollout(workspace)
        result = runner.invoke(app, ["cancel", rid, "--ledger", str(workspace["ledger"])])
        assert result.exit_code == 0
        assert "already finished" in result.output
        assert not DeploymentLedger(workspace["ledger"]).cancel_requested(rid)
