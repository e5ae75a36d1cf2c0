"""Rollout and batch policy models."""

from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from convoy.models.artifacts import Artifact
from convoy.models.deployments import DeploymentOutcome


class BatchPolicyKind(str, Enum):
    ALL_AT_ONCE = "all_at_once"
    FIXED_BATCH_SIZE = "fixed_batch_size"
    PERCENTAGE_PER_BATCH = "percentage_per_batch"


class BatchPolicy(BaseModel):
    """Rule that partitions a host set into sequential batches.

    Use the constructors rather than building the model directly::

        BatchPolicy.all_at_once()
        BatchPolicy.fixed_batch_size(2)
        BatchPolicy.percentage_per_batch(25)
    """

    model_config = ConfigDict(frozen=True)

    kind: BatchPolicyKind
    value: float = 0

    @model_validator(mode="after")
    def _check_value(self) -> BatchPolicy:
        if self.kind == BatchPolicyKind.FIXED_BATCH_SIZE:
            if self.value < 1 or self.value != int(self.value):
                raise ValueError("fixed batch size must be a positive integer")
        elif self.kind == BatchPolicyKind.PERCENTAGE_PER_BATCH:
            if not 0 < self.value <= 100:
                raise ValueError("batch percentage must be in (0, 100]")
        return self

    @classmethod
    def all_at_once(cls) -> BatchPolicy:
        return cls(kind=BatchPolicyKind.ALL_AT_ONCE)

    @classmethod
    def fixed_batch_size(cls, n: int) -> BatchPolicy:
        return cls(kind=BatchPolicyKind.FIXED_BATCH_SIZE, value=n)

    @classmethod
    def percentage_per_batch(cls, p: float) -> BatchPolicy:
        return cls(kind=BatchPolicyKind.PERCENTAGE_PER_BATCH, value=p)

    @classmethod
    def parse(cls, text: str) -> BatchPolicy:
        """Parse the CLI form: ``all``, ``fixed:N`` or ``percent:P``."""
        name, _, arg = text.strip().partition(":")
        name = name.lower()
        try:
            if name in ("all", "all_at_once", "allatonce"):
                return cls.all_at_once()
            if name in ("fixed", "fixed_batch_size"):
                return cls.fixed_batch_size(int(arg))
            if name in ("percent", "percentage", "percentage_per_batch"):
                return cls.percentage_per_batch(float(arg.rstrip("%")))
        except ValueError as exc:
            raise ValueError(f"Invalid batch policy {text!r}: {exc}") from exc
        raise ValueError(
            f"Unknown batch policy {text!r}; expected all, fixed:N or percent:P"
        )

    def batch_size(self, host_count: int) -> int:
        if host_count == 0:
            return 0
        if self.kind == BatchPolicyKind.ALL_AT_ONCE:
            return host_count
        if self.kind == BatchPolicyKind.FIXED_BATCH_SIZE:
            return min(int(self.value), host_count)
        return max(1, math.ceil(host_count * self.value / 100))

    def partition(self, host_ids: list[str] | set[str]) -> list[list[str]]:
        """Split host ids (sorted for determinism) into ordered batches."""
        ordered = sorted(host_ids)
        size = self.batch_size(len(ordered))
        return [ordered[i:i + size] for i in range(0, len(ordered), size)]

    def describe(self) -> str:
        if self.kind == BatchPolicyKind.ALL_AT_ONCE:
            return "all at once"
        if self.kind == BatchPolicyKind.FIXED_BATCH_SIZE:
            return f"{int(self.value)} host(s) per batch"
        return f"{self.value:g}% per batch"


class RolloutStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    ROLLED_BACK = "rolled_back"
    HALTED = "halted"  # a batch could not start (e.g. HostBusy)

    @property
    def exit_code(self) -> int:
        """CLI exit code: 0 success, 1 partial failure, 2 total failure."""
        return _EXIT_CODES[self]


_EXIT_CODES: dict[RolloutStatus, int] = {
    RolloutStatus.COMPLETED: 0,
    RolloutStatus.IN_PROGRESS: 1,
    RolloutStatus.PARTIALLY_FAILED: 1,
    RolloutStatus.ROLLED_BACK: 2,
    RolloutStatus.HALTED: 2,
}

# Unknown artifact, unknown host, malformed policy or tag filter.
INVALID_INPUT_EXIT_CODE = 3


class BatchResult(BaseModel):
    """Per-host terminal outcomes for one batch."""

    model_config = ConfigDict(frozen=True)

    index: int
    host_ids: list[str]
    succeeded: list[str] = []
    failed: list[str] = []
    rolled_back: list[str] = []
    halted_reason: str | None = None

    @property
    def failure_count(self) -> int:
        return len(self.failed) + len(self.rolled_back)

    @property
    def failure_fraction(self) -> float:
        if not self.host_ids:
            return 0.0
        return self.failure_count / len(self.host_ids)


class Rollout(BaseModel):
    """A batched application of one artifact across a host set."""

    model_config = ConfigDict(frozen=True)

    rollout_id: str = Field(default_factory=lambda: f"r-{uuid.uuid4().hex[:12]}")
    artifact: Artifact
    policy: BatchPolicy
    failure_threshold: float = 0.0
    batches: list[list[str]] = []
    batch_results: list[BatchResult] = []
    deployment_ids: list[str] = []
    rollback_deployment_ids: list[str] = []
    # Each host's last good artifact as it was before this rollout touched it
    prior_artifacts: dict[str, Artifact | None] = {}
    status: RolloutStatus = RolloutStatus.IN_PROGRESS
    halt_reason: str | None = None
    cancelled: bool = False
    started_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    finished_at: datetime | None = None

    @property
    def host_ids(self) -> list[str]:
        return [h for batch in self.batches for h in batch]

    @property
    def worst_outcome(self) -> DeploymentOutcome | None:
        """Worst per-host forward outcome observed so far."""
        worst: DeploymentOutcome | None = None
        for result in self.batch_results:
            if result.failed:
                return DeploymentOutcome.FAILED
            if result.rolled_back:
                worst = DeploymentOutcome.ROLLED_BACK
            elif result.succeeded and worst is None:
                worst = DeploymentOutcome.SUCCEEDED
        return worst
