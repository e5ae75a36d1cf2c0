"""Hook manifest models — the in-memory form of an appspec file."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from convoy.models.phases import LifecyclePhase


class HookSpec(BaseModel):
    """One hook script: where it lives, how long it may run, who runs it."""

    model_config = ConfigDict(frozen=True)

    script_ref: str  # path relative to the artifact bundle
    timeout_seconds: float
    identity: str | None = None  # appspec ``runas``


class HookManifest(BaseModel):
    """Declarative mapping ``phase -> HookSpec`` for one artifact.

    Phases absent from ``hooks`` have no script and pass trivially.
    """

    model_config = ConfigDict(frozen=True)

    version: str = "0.0"
    os: str = "linux"
    hooks: dict[LifecyclePhase, HookSpec] = {}

    def hook_for(self, phase: LifecyclePhase) -> HookSpec | None:
        return self.hooks.get(phase)
