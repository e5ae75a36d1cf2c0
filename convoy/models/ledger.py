"""Deployment Ledger entry model (append-only, hash-chained per rollout).

One entry per finalized fact:
- ``deployment``: a Deployment whose outcome is final
- ``rollout``: a Rollout snapshot (start, after each batch, end)
- ``cancel``: an operator cancel request
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class EntryKind(str, Enum):
    DEPLOYMENT = "deployment"
    ROLLOUT = "rollout"
    CANCEL = "cancel"


class LedgerEntry(BaseModel):
    """A single sealed record in the Deployment Ledger."""

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    rollout_id: str
    entry_kind: EntryKind
    subject_id: str  # deployment_id, or rollout_id for rollout/cancel entries
    host_id: str = ""
    outcome: str = ""  # deployment outcome or rollout status
    payload: dict[str, Any] = {}
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    schema_version: str = "2026-10"
    previous_entry_hash: str = ""
    entry_hash: str = ""
