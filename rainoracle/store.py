"""SQLite-backed submission record store (the only state that survives restarts)."""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from collections import Counter
from pathlib import Path
from threading import Lock, RLock
from typing import Optional

from rainoracle.models import (
    DecisionKind,
    SubmissionRecord,
    SubmissionStatus,
    TriggerDecision,
    idempotency_key,
)

log = logging.getLogger("rainoracle.store")


class KeyedLocks:
    """Arena of re-entrant locks, one per key, created on first use."""

    def __init__(self) -> None:
        self._locks: dict[str, RLock] = {}
        self._guard = Lock()

    def get(self, key: str) -> RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = RLock()
                self._locks[key] = lock
            return lock

    def discard(self, key: str) -> None:
        with self._guard:
            self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class SubmissionStore:
    """Durable ``SubmissionRecord`` storage.

    ``lock_for(policy_id)`` hands out the per-policy lock callers hold for a
    whole read-decide-write sequence; the connection lock only wraps single
    statements, so different policies never wait on each other's network
    calls.
    """

    def __init__(self, path: str | Path = ":memory:") -> None:
        self._path = str(path)
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._path, check_same_thread=False, timeout=30.0)
        self._conn.row_factory = sqlite3.Row
        if self._path != ":memory:":
            self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")
        self._db_lock = Lock()
        self._keys = KeyedLocks()
        self._initialize_schema()

    def _initialize_schema(self) -> None:
        with self._db_lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS submissions (
                    key TEXT PRIMARY KEY,
                    policy_id TEXT NOT NULL,
                    decision_kind TEXT NOT NULL,
                    status TEXT NOT NULL,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    last_attempt_at INTEGER,
                    last_error TEXT,
                    tx_hash TEXT,
                    evidence_hash TEXT,
                    decision_json TEXT NOT NULL,
                    evidence_json TEXT NOT NULL,
                    created_at INTEGER,
                    updated_at INTEGER NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_submissions_policy ON submissions (policy_id);
                CREATE INDEX IF NOT EXISTS idx_submissions_status ON submissions (status);

                CREATE TABLE IF NOT EXISTS chain_meta (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    genesis_hash TEXT NOT NULL,
                    updated_at INTEGER NOT NULL
                );
                """
            )
            self._conn.commit()

    def close(self) -> None:
        with self._db_lock:
            self._conn.close()

    def lock_for(self, policy_id: str) -> RLock:
        return self._keys.get(policy_id)

    def drop_lock(self, policy_id: str) -> None:
        """Forget the lock of a policy the oracle no longer tracks."""
        self._keys.discard(policy_id)

    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> SubmissionRecord:
        return SubmissionRecord(
            policy_id=row["policy_id"],
            decision=TriggerDecision.from_dict(json.loads(row["decision_json"])),
            status=SubmissionStatus(row["status"]),
            retry_count=row["retry_count"],
            last_attempt_at=row["last_attempt_at"],
            last_error=row["last_error"],
            tx_hash=row["tx_hash"],
            evidence_hash=row["evidence_hash"],
            evidence_json=json.loads(row["evidence_json"]),
            created_at=row["created_at"],
        )

    def get(self, policy_id: str, kind: DecisionKind) -> Optional[SubmissionRecord]:
        with self._db_lock:
            row = self._conn.execute(
                "SELECT * FROM submissions WHERE key = ?",
                (idempotency_key(policy_id, kind),),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def for_policy(self, policy_id: str) -> list[SubmissionRecord]:
        with self._db_lock:
            rows = self._conn.execute(
                "SELECT * FROM submissions WHERE policy_id = ? ORDER BY created_at",
                (policy_id,),
            ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def records(self, status: SubmissionStatus | None = None) -> list[SubmissionRecord]:
        with self._db_lock:
            if status is None:
                rows = self._conn.execute(
                    "SELECT * FROM submissions ORDER BY created_at").fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM submissions WHERE status = ? ORDER BY created_at",
                    (status.value,),
                ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def outstanding(self) -> list[SubmissionRecord]:
        """Records that still need a chain write (Pending or Failed)."""
        return [r for r in self.records() if r.status != SubmissionStatus.CONFIRMED]

    def counts(self) -> dict[str, int]:
        c = Counter(r.status.value for r in self.records())
        return {s.value: c.get(s.value, 0) for s in SubmissionStatus}

    def put(self, record: SubmissionRecord) -> None:
        now = int(time.time())
        if record.created_at is None:
            record.created_at = now
        with self._db_lock:
            self._conn.execute(
                """
                INSERT INTO submissions (
                    key, policy_id, decision_kind, status, retry_count,
                    last_attempt_at, last_error, tx_hash, evidence_hash,
                    decision_json, evidence_json, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    status = excluded.status,
                    retry_count = excluded.retry_count,
                    last_attempt_at = excluded.last_attempt_at,
                    last_error = excluded.last_error,
                    tx_hash = excluded.tx_hash,
                    evidence_hash = excluded.evidence_hash,
                    decision_json = excluded.decision_json,
                    evidence_json = excluded.evidence_json,
                    updated_at = excluded.updated_at
                """,
                (
                    record.key,
                    record.policy_id,
                    record.decision_kind.value,
                    record.status.value,
                    record.retry_count,
                    record.last_attempt_at,
                    record.last_error,
                    record.tx_hash,
                    record.evidence_hash,
                    json.dumps(record.decision.to_dict(), sort_keys=True),
                    json.dumps(record.evidence_json, sort_keys=True),
                    record.created_at,
                    now,
                ),
            )
            self._conn.commit()

    # ------------------------------------------------------------------

    def check_chain(self, genesis_hash: str) -> bool:
        """Remember the ledger's genesis; wipe records if the chain changed.

        Returns True when a different chain was detected (records cleared).
        """
        now = int(time.time())
        with self._db_lock:
            row = self._conn.execute(
                "SELECT genesis_hash FROM chain_meta WHERE id = 1").fetchone()
            restarted = row is not None and row["genesis_hash"] != genesis_hash
            if restarted:
                log.warning("chain restart detected (genesis %s -> %s); "
                            "clearing submission records",
                            row["genesis_hash"][:18], genesis_hash[:18])
                self._conn.execute("DELETE FROM submissions")
            self._conn.execute(
                """
                INSERT INTO chain_meta (id, genesis_hash, updated_at) VALUES (1, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    genesis_hash = excluded.genesis_hash,
                    updated_at = excluded.updated_at
                """,
                (genesis_hash, now),
            )
            self._conn.commit()
        return restarted
