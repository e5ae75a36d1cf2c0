"""Convoy data models — all Pydantic v2, all frozen (immutable)."""

from convoy.models.artifacts import Artifact
from convoy.models.deployments import Deployment, DeploymentKind, DeploymentOutcome
from convoy.models.hosts import (
    Host,
    HostLease,
    HostState,
    TagFilter,
    matches_tags,
    parse_tag_filter,
)
from convoy.models.ledger import EntryKind, LedgerEntry
from convoy.models.manifest import HookManifest, HookSpec
from convoy.models.phases import (
    PHASE_SEQUENCE,
    PHASE_STATES,
    VALID_TRANSITIONS,
    DeploymentState,
    LifecyclePhase,
    PhaseOutcome,
    PhaseResult,
)
from convoy.models.rollouts import (
    BatchPolicy,
    BatchPolicyKind,
    BatchResult,
    Rollout,
    RolloutStatus,
)

__all__ = [
    # artifacts
    "Artifact",
    # hosts
    "Host",
    "HostLease",
    "HostState",
    "TagFilter",
    "matches_tags",
    "parse_tag_filter",
    # phases
    "LifecyclePhase",
    "PHASE_SEQUENCE",
    "PHASE_STATES",
    "PhaseOutcome",
    "PhaseResult",
    "DeploymentState",
    "VALID_TRANSITIONS",
    # deployments
    "Deployment",
    "DeploymentKind",
    "DeploymentOutcome",
    # rollouts
    "BatchPolicy",
    "BatchPolicyKind",
    "BatchResult",
    "Rollout",
    "RolloutStatus",
    # manifest
    "HookManifest",
    "HookSpec",
    # ledger
    "EntryKind",
    "LedgerEntry",
]
