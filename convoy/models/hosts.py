"""Host, lease and tag-filter models."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from convoy.models.artifacts import Artifact


class HostState(str, Enum):
    """Deployment-facing state of a target host."""

    IDLE = "idle"
    DEPLOYING = "deploying"
    HEALTHY = "healthy"
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"


class Host(BaseModel):
    """A deployment target.

    Only the deployment state machine changes ``state`` and
    ``last_artifact`` (through the Host Registry).
    """

    model_config = ConfigDict(frozen=True)

    host_id: str
    address: str = ""
    tags: dict[str, str] = {}
    state: HostState = HostState.IDLE
    last_artifact: Artifact | None = None


class HostLease(BaseModel):
    """Exclusive, time-bounded ownership of one host."""

    model_config = ConfigDict(frozen=True)

    lease_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    host_id: str
    holder: str
    acquired_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    ttl_seconds: float = 6 * 3600.0

    @property
    def expires_at(self) -> datetime:
        return self.acquired_at + timedelta(seconds=self.ttl_seconds)

    def is_expired(self, now: datetime | None = None) -> bool:
        """Return True once the lease has outlived its TTL."""
        return (now or datetime.now(timezone.utc)) >= self.expires_at


TagFilter = dict[str, str]

# A filter value of "*" only requires the key to be present.
WILDCARD = "*"


def parse_tag_filter(text: str | None) -> TagFilter:
    """Parse ``"role=web,env=prod"`` into a tag filter.

    Empty or None input yields an empty filter, which matches every host.
    Raises ``ValueError`` for a malformed pair.
    """
    tag_filter: TagFilter = {}
    if not text:
        return tag_filter
    for pair in text.split(","):
        pair = pair.strip()
        if not pair:
            continue
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Malformed tag filter entry {pair!r}; expected key=value")
        tag_filter[key.strip()] = value.strip()
    return tag_filter


def matches_tags(tags: dict[str, str], tag_filter: TagFilter) -> bool:
    """Return True if *tags* satisfies every entry of *tag_filter*."""
    for key, expected in tag_filter.items():
        if key not in tags:
            return False
        if expected != WILDCARD and tags[key] != expected:
            return False
    return True
