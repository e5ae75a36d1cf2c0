"""Append-only, hash-chained Deployment Ledger backed by SQLite.

The ledger is the audit trail and the source of rollback targets.

Design:
- Append-only: only ``append*`` / ``request_cancel`` write; no update, no delete.
- Only finalized deployments are accepted, so readers never see an
  in-flight phase list.
- Hash-chained per rollout: each entry includes the SHA-256 of the
  previous entry of the same rollout.
- ``BEGIN IMMEDIATE`` around read-latest-hash + insert, so concurrent
  writers (threads or processes) cannot fork the chain.
- WAL journal mode for concurrent readers.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import closing
from datetime import datetime
from pathlib import Path

from convoy.core.hasher import compute_entry_hash
from convoy.models.artifacts import Artifact
from convoy.models.deployments import Deployment, DeploymentOutcome
from convoy.models.ledger import EntryKind, LedgerEntry
from convoy.models.rollouts import Rollout

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_LEDGER = """
CREATE TABLE IF NOT EXISTS deployment_ledger (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id            TEXT NOT NULL UNIQUE,
    rollout_id          TEXT NOT NULL,
    entry_kind          TEXT NOT NULL,
    subject_id          TEXT NOT NULL,
    host_id             TEXT NOT NULL DEFAULT '',
    outcome             TEXT NOT NULL DEFAULT '',
    payload_json        TEXT NOT NULL DEFAULT '{}',
    timestamp_utc       TEXT NOT NULL,
    schema_version      TEXT NOT NULL,
    previous_entry_hash TEXT NOT NULL DEFAULT '',
    entry_hash          TEXT NOT NULL UNIQUE
);
"""

_CREATE_IDX_ROLLOUT = """
CREATE INDEX IF NOT EXISTS idx_rollout ON deployment_ledger(rollout_id, id);
"""

_CREATE_IDX_HOST = """
CREATE INDEX IF NOT EXISTS idx_host_outcome
    ON deployment_ledger(entry_kind, host_id, outcome, id);
"""

_CREATE_IDX_SUBJECT = """
CREATE INDEX IF NOT EXISTS idx_subject ON deployment_ledger(entry_kind, subject_id, id);
"""

_COLUMNS = (
    "id, entry_id, rollout_id, entry_kind, subject_id, host_id, outcome, "
    "payload_json, timestamp_utc, schema_version, previous_entry_hash, entry_hash"
)


class LedgerIntegrityError(RuntimeError):
    """Raised when the hash chain is broken."""


class DeploymentLedger:
    """Append-only record of deployments, rollout snapshots and cancel requests.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        # isolation_level=None: transactions are managed explicitly
        conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            timeout=30.0,
            isolation_level=None,
        )
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_schema(self) -> None:
        with closing(self._connect()) as conn:
            conn.execute(_CREATE_LEDGER)
            conn.execute(_CREATE_IDX_ROLLOUT)
            conn.execute(_CREATE_IDX_HOST)
            conn.execute(_CREATE_IDX_SUBJECT)

    # ------------------------------------------------------------------
    # Writes (append-only)
    # ------------------------------------------------------------------

    def append(self, deployment: Deployment) -> LedgerEntry:
        """Append a finalized deployment.

        Raises ``ValueError`` if the deployment outcome is still PENDING.
        """
        if not deployment.is_final:
            raise ValueError(
                f"Deployment {deployment.deployment_id} is not finalized; "
                "only terminal deployments may be appended."
            )
        entry = LedgerEntry(
            rollout_id=deployment.rollout_id,
            entry_kind=EntryKind.DEPLOYMENT,
            subject_id=deployment.deployment_id,
            host_id=deployment.host_id,
            outcome=deployment.outcome.value,
            payload=deployment.model_dump(mode="json"),
        )
        sealed = self._append_entry(entry)
        logger.debug(
            "Ledger: deployment %s on %s -> %s",
            deployment.deployment_id,
            deployment.host_id,
            deployment.outcome.value,
        )
        return sealed

    def append_rollout(self, rollout: Rollout) -> LedgerEntry:
        """Append a snapshot of a rollout's current state."""
        entry = LedgerEntry(
            rollout_id=rollout.rollout_id,
            entry_kind=EntryKind.ROLLOUT,
            subject_id=rollout.rollout_id,
            outcome=rollout.status.value,
            payload=rollout.model_dump(mode="json"),
        )
        return self._append_entry(entry)

    def request_cancel(self, rollout_id: str, reason: str = "operator request") -> LedgerEntry:
        """Record a cancel request; a running coordinator polls for it."""
        entry = LedgerEntry(
            rollout_id=rollout_id,
            entry_kind=EntryKind.CANCEL,
            subject_id=rollout_id,
            payload={"reason": reason},
        )
        return self._append_entry(entry)

    def _append_entry(self, entry: LedgerEntry) -> LedgerEntry:
        with closing(self._connect()) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT entry_hash FROM deployment_ledger "
                    "WHERE rollout_id = ? ORDER BY id DESC LIMIT 1",
                    (entry.rollout_id,),
                ).fetchone()
                previous_hash = row[0] if row else ""

                entry_dict = entry.model_dump(mode="json")
                entry_dict["previous_entry_hash"] = previous_hash
                entry_dict["entry_hash"] = ""
                sealed = entry.model_copy(
                    update={
                        "previous_entry_hash": previous_hash,
                        "entry_hash": compute_entry_hash(entry_dict),
                    }
                )
                self._insert(conn, sealed)
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        return sealed

    @staticmethod
    def _insert(conn: sqlite3.Connection, entry: LedgerEntry) -> None:
        conn.execute(
            """
            INSERT INTO deployment_ledger
                (entry_id, rollout_id, entry_kind, subject_id, host_id, outcome,
                 payload_json, timestamp_utc, schema_version,
                 previous_entry_hash, entry_hash)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.entry_id,
                entry.rollout_id,
                entry.entry_kind.value,
                entry.subject_id,
                entry.host_id,
                entry.outcome,
                json.dumps(entry.payload),
                entry.timestamp_utc.isoformat()
                if isinstance(entry.timestamp_utc, datetime)
                else entry.timestamp_utc,
                entry.schema_version,
                entry.previous_entry_hash,
                entry.entry_hash,
            ),
        )

    # ------------------------------------------------------------------
    # Queries (read-only)
    # ------------------------------------------------------------------

    def get(self, deployment_id: str) -> Deployment:
        """Return a finalized deployment by id.

        Raises ``KeyError`` when no such deployment has been recorded.
        """
        row = self._fetch_one(
            f"SELECT {_COLUMNS} FROM deployment_ledger "
            "WHERE entry_kind = ? AND subject_id = ? ORDER BY id DESC LIMIT 1",
            (EntryKind.DEPLOYMENT.value, deployment_id),
        )
        if row is None:
            raise KeyError(f"Deployment not found: {deployment_id}")
        return Deployment.model_validate(self._row_to_entry(row).payload)

    def last_succeeded(self, host_id: str) -> Artifact | None:
        """Artifact of the most recent SUCCEEDED deployment on a host, or None."""
        row = self._fetch_one(
            f"SELECT {_COLUMNS} FROM deployment_ledger "
            "WHERE entry_kind = ? AND host_id = ? AND outcome = ? "
            "ORDER BY id DESC LIMIT 1",
            (EntryKind.DEPLOYMENT.value, host_id, DeploymentOutcome.SUCCEEDED.value),
        )
        if row is None:
            return None
        return Deployment.model_validate(self._row_to_entry(row).payload).artifact

    def host_history(self, host_id: str, limit: int = 50) -> list[Deployment]:
        """Most recent deployments on a host, newest first."""
        rows = self._fetch_all(
            f"SELECT {_COLUMNS} FROM deployment_ledger "
            "WHERE entry_kind = ? AND host_id = ? ORDER BY id DESC LIMIT ?",
            (EntryKind.DEPLOYMENT.value, host_id, limit),
        )
        return [Deployment.model_validate(self._row_to_entry(r).payload) for r in rows]

    def deployments_for_rollout(self, rollout_id: str) -> list[Deployment]:
        """All deployments of a rollout in the order they were finalized."""
        rows = self._fetch_all(
            f"SELECT {_COLUMNS} FROM deployment_ledger "
            "WHERE rollout_id = ? AND entry_kind = ? ORDER BY id ASC",
            (rollout_id, EntryKind.DEPLOYMENT.value),
        )
        return [Deployment.model_validate(self._row_to_entry(r).payload) for r in rows]

    def get_rollout(self, rollout_id: str) -> Rollout | None:
        """Latest recorded snapshot of a rollout, or None."""
        row = self._fetch_one(
            f"SELECT {_COLUMNS} FROM deployment_ledger "
            "WHERE rollout_id = ? AND entry_kind = ? ORDER BY id DESC LIMIT 1",
            (rollout_id, EntryKind.ROLLOUT.value),
        )
        if row is None:
            return None
        return Rollout.model_validate(self._row_to_entry(row).payload)

    def cancel_requested(self, rollout_id: str) -> bool:
        row = self._fetch_one(
            "SELECT 1 FROM deployment_ledger WHERE rollout_id = ? AND entry_kind = ? LIMIT 1",
            (rollout_id, EntryKind.CANCEL.value),
        )
        return row is not None

    def rollout_ids(self) -> list[str]:
        """All rollout ids, most recently active first."""
        rows = self._fetch_all(
            "SELECT rollout_id, MAX(id) AS last_id FROM deployment_ledger "
            "GROUP BY rollout_id ORDER BY last_id DESC",
            (),
        )
        return [row[0] for row in rows]

    def get_rollout_entries(self, rollout_id: str) -> list[LedgerEntry]:
        """All ledger entries for a rollout, ordered chronologically."""
        rows = self._fetch_all(
            f"SELECT {_COLUMNS} FROM deployment_ledger WHERE rollout_id = ? ORDER BY id ASC",
            (rollout_id,),
        )
        return [self._row_to_entry(r) for r in rows]

    # ------------------------------------------------------------------
    # Chain verification
    # ------------------------------------------------------------------

    def verify_chain(self, rollout_id: str) -> bool:
        """Verify the hash chain of a rollout.

        Returns True if valid, raises ``LedgerIntegrityError`` otherwise.
        """
        prev_hash = ""
        for entry in self.get_rollout_entries(rollout_id):
            if entry.previous_entry_hash != prev_hash:
                raise LedgerIntegrityError(
                    f"Chain broken at entry {entry.entry_id}: "
                    f"expected previous_hash={prev_hash!r}, "
                    f"got {entry.previous_entry_hash!r}"
                )
            expected_hash = compute_entry_hash(entry.model_dump(mode="json"))
            if entry.entry_hash != expected_hash:
                raise LedgerIntegrityError(
                    f"Tampered entry {entry.entry_id}: "
                    f"expected hash={expected_hash!r}, got {entry.entry_hash!r}"
                )
            prev_hash = entry.entry_hash
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _fetch_one(self, sql: str, params: tuple) -> tuple | None:
        with closing(self._connect()) as conn:
            return conn.execute(sql, params).fetchone()

    def _fetch_all(self, sql: str, params: tuple) -> list[tuple]:
        with closing(self._connect()) as conn:
            return conn.execute(sql, params).fetchall()

    @staticmethod
    def _row_to_entry(row: tuple) -> LedgerEntry:
        (
            _id,
            entry_id,
            rollout_id,
            entry_kind,
            subject_id,
            host_id,
            outcome,
            payload_json,
            timestamp_utc,
            schema_version,
            previous_entry_hash,
            entry_hash,
        ) = row
        return LedgerEntry(
            entry_id=entry_id,
            rollout_id=rollout_id,
            entry_kind=EntryKind(entry_kind),
            subject_id=subject_id,
            host_id=host_id,
            outcome=outcome,
            payload=json.loads(payload_json),
            timestamp_utc=timestamp_utc,
            schema_version=schema_version,
            previous_entry_hash=previous_entry_hash,
            entry_hash=entry_hash,
        )
