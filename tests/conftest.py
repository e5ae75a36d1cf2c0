"""Shared test fixtures for Convoy."""

from __future__ import annotations

import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from convoy.config import ConvoyConfig
from convoy.core.deployment_ledger import DeploymentLedger
from convoy.core.host_registry import HostRegistry
from convoy.core.lifecycle_executor import ExecutionUnavailable
from convoy.core.manifests import StaticManifestSource
from convoy.core.rollout_coordinator import RolloutCoordinator
from convoy.models.artifacts import Artifact
from convoy.models.hosts import Host
from convoy.models.manifest import HookManifest, HookSpec
from convoy.models.phases import PHASE_SEQUENCE, LifecyclePhase, PhaseOutcome, PhaseResult

_EXIT_CODES = {
    PhaseOutcome.SUCCEEDED: 0,
    PhaseOutcome.FAILED: 1,
    PhaseOutcome.TIMED_OUT: -9,
}


class ScriptedExecutor:
    """In-memory HookExecutor whose outcomes are scripted per host/artifact/phase.

    Every phase succeeds unless told otherwise.  ``calls`` records
    ``(host_id, artifact_id, phase, rollback)`` in invocation order.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, LifecyclePhase, bool]] = []
        self.on_run: Callable[[str, str, LifecyclePhase], None] | None = None
        self._outcomes: dict[tuple[str, str, LifecyclePhase], PhaseOutcome] = {}
        self._unavailable: dict[tuple[str, str, LifecyclePhase], int] = {}
        self._lock = threading.Lock()

    def fail(
        self,
        host_id: str,
        artifact_id: str,
        phase: LifecyclePhase,
        outcome: PhaseOutcome = PhaseOutcome.FAILED,
    ) -> None:
        self._outcomes[(host_id, artifact_id, phase)] = outcome

    def unavailable(
        self, host_id: str, artifact_id: str, phase: LifecyclePhase, times: int = 1
    ) -> None:
        """Raise ExecutionUnavailable for the next *times* invocations."""
        self._unavailable[(host_id, artifact_id, phase)] = times

    def calls_for(self, host_id: str) -> list[tuple[str, LifecyclePhase, bool]]:
        return [(a, p, rb) for h, a, p, rb in self.calls if h == host_id]

    def run(
        self,
        host: Host,
        hook_name: LifecyclePhase,
        script_ref: str,
        timeout: float,
        *,
        identity: str | None = None,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        rollback: bool = False,
    ) -> PhaseResult:
        artifact_id = (env or {}).get("APPLICATION_ARTIFACT", "")
        key = (host.host_id, artifact_id, hook_name)
        with self._lock:
            self.calls.append((host.host_id, artifact_id, hook_name, rollback))
            remaining = self._unavailable.get(key, 0)
            if remaining:
                self._unavailable[key] = remaining - 1
        if remaining:
            raise ExecutionUnavailable(f"{host.host_id} unreachable")
        if self.on_run is not None:
            self.on_run(host.host_id, artifact_id, hook_name)

        outcome = self._outcomes.get(key, PhaseOutcome.SUCCEEDED)
        return PhaseResult(
            phase=hook_name,
            script_ref=script_ref,
            identity=identity,
            exit_code=_EXIT_CODES[outcome],
            outcome=outcome,
            output=f"{hook_name.value} on {host.host_id}",
            rollback=rollback,
        )


def full_manifest(timeout: float = 60.0) -> HookManifest:
    """A manifest with one hook for every lifecycle phase."""
    return HookManifest(
        hooks={
            phase: HookSpec(script_ref=f"scripts/{phase.value}.sh", timeout_seconds=timeout)
            for phase in PHASE_SEQUENCE
        }
    )


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def fast_config() -> ConvoyConfig:
    """Config with no retry backoff so contention tests stay quick."""
    return ConvoyConfig(
        _env_file=None,
        lease_attempts=2,
        lease_backoff_seconds=0.0,
        lease_backoff_max_seconds=0.0,
        execution_attempts=2,
        execution_backoff_seconds=0.0,
        execution_backoff_max_seconds=0.0,
        failure_threshold=0.0,
        auto_rollback=True,
    )


@pytest.fixture
def ledger(tmp_dir: Path) -> DeploymentLedger:
    """Provide a fresh DeploymentLedger backed by a temp SQLite database."""
    return DeploymentLedger(tmp_dir / "ledger.db")


@pytest.fixture
def v1() -> Artifact:
    return Artifact(artifact_id="app-v1", content_hash="sha256:" + "1" * 64)


@pytest.fixture
def v2() -> Artifact:
    return Artifact(artifact_id="app-v2", content_hash="sha256:" + "2" * 64)


@pytest.fixture
def manifests() -> StaticManifestSource:
    """Full five-hook manifests for app-v1 and app-v2."""
    return StaticManifestSource({"app-v1": full_manifest(), "app-v2": full_manifest()})


@pytest.fixture
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture
def make_registry() -> Callable[..., HostRegistry]:
    """Factory fixture: a registry of hosts, optionally already on an artifact."""

    def _factory(
        host_ids: list[str],
        *,
        on: Artifact | None = None,
        tags: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> HostRegistry:
        hosts = [
            Host(host_id=h, tags=dict(tags or {"role": "web"}), last_artifact=on)
            for h in host_ids
        ]
        return HostRegistry(hosts, **kwargs)

    return _factory


@pytest.fixture
def make_coordinator(
    executor: ScriptedExecutor,
    manifests: StaticManifestSource,
    ledger: DeploymentLedger,
    fast_config: ConvoyConfig,
) -> Callable[[HostRegistry], RolloutCoordinator]:
    """Factory fixture: a coordinator wired to the shared test doubles."""

    def _factory(registry: HostRegistry, **overrides: Any) -> RolloutCoordinator:
        cfg = fast_config.model_copy(update=overrides) if overrides else fast_config
        return RolloutCoordinator(registry, executor, manifests, ledger, config=cfg)

    return _factory


@pytest.fixture
def bundle(tmp_dir: Path) -> Callable[..., Path]:
    """Factory fixture: write an artifact bundle with an appspec and shell hooks.

    *scripts* maps phase name to the shell body of its hook.
    """

    def _factory(name: str, scripts: dict[str, str], timeout: float = 30) -> Path:
        root = tmp_dir / "bundles" / name
        (root / "scripts").mkdir(parents=True)
        lines = ["version: 0.0", "os: linux", "hooks:"]
        for phase, body in scripts.items():
            script = root / "scripts" / f"{phase}.sh"
            script.write_text(f"#!/bin/sh\n{body}\n", encoding="utf-8")
            lines += [
                f"  {phase}:",
                f"    - location: scripts/{phase}.sh",
                f"      timeout: {timeout}",
            ]
        (root / "appspec.yml").write_text("\n".join(lines) + "\n", encoding="utf-8")
        return root

    return _factory
