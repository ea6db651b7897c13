"""
Check-in Engine - Checkpoint Store

SQLite-backed persistence for per-role personnel usage counters and the
completion ledger. Every mutation is its own committed transaction, so a
crash loses at most the in-flight request and never leaves a torn write.

Tables:
  candidates   per-role candidate pool with monotonic usage counters
  assignments  confirmed (request, role) -> candidate journal; makes
               confirm idempotent across a crash before the ledger write
  ledger       request identifiers that completed successfully
  meta         schema version
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any, Iterable

from checkin.errors import CheckpointCorrupt, PersistenceFailure
from checkin.types import PersonnelCandidate, Role

logger = logging.getLogger("checkin.store")

SCHEMA_VERSION = "1"


class _Transaction:
    """
    Explicit write transaction.

    COMMIT on clean exit, ROLLBACK otherwise. sqlite3 errors surface as
    PersistenceFailure so callers handle one exception type.
    """

    def __init__(self, conn: sqlite3.Connection, label: str):
        self.conn = conn
        self.label = label

    def __enter__(self) -> sqlite3.Connection:
        try:
            self.conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise PersistenceFailure(f"{self.label}: cannot begin transaction: {e}") from e
        return self.conn

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            try:
                self.conn.execute("COMMIT")
                return False
            except sqlite3.Error as e:
                self._rollback()
                raise PersistenceFailure(f"{self.label}: commit failed: {e}") from e
        self._rollback()
        if isinstance(exc_val, sqlite3.Error):
            raise PersistenceFailure(f"{self.label}: {exc_val}") from exc_val
        return False

    def _rollback(self):
        if self.conn.in_transaction:
            try:
                self.conn.execute("ROLLBACK")
            except sqlite3.Error:
                logger.exception("Rollback failed (%s)", self.label)


class CheckpointStore:
    """Durable candidate counters + completion ledger."""

    def __init__(self, db_path: str | Path = "checkpoint.db"):
        self.db_path = str(db_path)
        self.conn: sqlite3.Connection | None = None
        try:
            # Autocommit mode; writes go through _Transaction
            self.conn = sqlite3.connect(self.db_path, isolation_level=None)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA synchronous=FULL")
            self.conn.execute("PRAGMA busy_timeout=5000")
            self._create_tables()
            self._check_schema()
        except sqlite3.DatabaseError as e:
            self.close()
            raise CheckpointCorrupt(
                f"checkpoint store unreadable: {self.db_path}: {e}"
            ) from e
        except CheckpointCorrupt:
            self.close()
            raise

    def __enter__(self) -> CheckpointStore:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def transaction(self, label: str = "write") -> _Transaction:
        return _Transaction(self._conn(), label)

    def _conn(self) -> sqlite3.Connection:
        if self.conn is None:
            raise PersistenceFailure(f"checkpoint store closed: {self.db_path}")
        return self.conn

    def _create_tables(self):
        self._conn().executescript("""
            CREATE TABLE IF NOT EXISTS candidates (
                role TEXT NOT NULL,
                candidate_id TEXT NOT NULL,
                usage_count INTEGER NOT NULL DEFAULT 0,
                seq INTEGER NOT NULL,
                active INTEGER NOT NULL DEFAULT 1,
                updated_at REAL NOT NULL,
                PRIMARY KEY (role, candidate_id)
            );

            CREATE TABLE IF NOT EXISTS assignments (
                request_id TEXT NOT NULL,
                role TEXT NOT NULL,
                candidate_id TEXT NOT NULL,
                confirmed_at REAL NOT NULL,
                PRIMARY KEY (request_id, role)
            );

            CREATE TABLE IF NOT EXISTS ledger (
                request_id TEXT PRIMARY KEY,
                completed_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_candidates_rank
                ON candidates(role, active, usage_count, seq);
        """)
        self._conn().execute(
            "INSERT OR IGNORE INTO meta (key, value) VALUES ('schema_version', ?)",
            (SCHEMA_VERSION,),
        )

    def _check_schema(self):
        row = self._conn().execute(
            "SELECT value FROM meta WHERE key = 'schema_version'"
        ).fetchone()
        if row is None or row["value"] != SCHEMA_VERSION:
            found = row["value"] if row else None
            raise CheckpointCorrupt(
                f"checkpoint schema version {found!r} != {SCHEMA_VERSION!r}: {self.db_path}"
            )
        check = self._conn().execute("PRAGMA quick_check").fetchone()
        if check is None or check[0] != "ok":
            raise CheckpointCorrupt(f"checkpoint integrity check failed: {self.db_path}")

    def _fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        try:
            return self._conn().execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"checkpoint read failed: {e}") from e

    def _fetchone(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        try:
            return self._conn().execute(sql, params).fetchone()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"checkpoint read failed: {e}") from e

    # ─── Candidates ──────────────────────────────────────────────────

    def load_candidates(self, role: Role, include_inactive: bool = False) -> list[PersonnelCandidate]:
        """Candidates for a role, sorted by (usage_count, seq)."""
        query = "SELECT candidate_id, usage_count, seq FROM candidates WHERE role = ?"
        if not include_inactive:
            query += " AND active = 1"
        query += " ORDER BY usage_count ASC, seq ASC"
        rows = self._fetchall(query, (role.value,))
        return [
            PersonnelCandidate(r["candidate_id"], r["usage_count"], r["seq"])
            for r in rows
        ]

    def replace_candidates(
        self,
        role: Role,
        candidates: Iterable[PersonnelCandidate],
        deactivate_missing: bool = True,
    ) -> None:
        """
        Rewrite the active pool for a role in one transaction.

        Candidates not listed are deactivated (their counters are kept so
        a later reappearance resumes where it left off).
        """
        now = time.time()
        with self.transaction(f"replace {role.value} candidates") as conn:
            if deactivate_missing:
                conn.execute(
                    "UPDATE candidates SET active = 0, updated_at = ? WHERE role = ?",
                    (now, role.value),
                )
            for c in candidates:
                conn.execute("""
                    INSERT INTO candidates
                    (role, candidate_id, usage_count, seq, active, updated_at)
                    VALUES (?, ?, ?, ?, 1, ?)
                    ON CONFLICT(role, candidate_id) DO UPDATE SET
                        usage_count = MAX(candidates.usage_count, excluded.usage_count),
                        seq = excluded.seq,
                        active = 1,
                        updated_at = excluded.updated_at
                """, (role.value, c.candidate_id, c.usage_count, c.seq, now))

    def confirm_assignment(
        self,
        role: Role,
        candidate_id: str,
        request_id: str | None = None,
    ) -> tuple[int, bool]:
        """
        Increment a candidate's usage counter.

        When request_id is given the (request, role) pair is journaled in
        the same transaction. A repeat confirm naming the journaled
        candidate is a no-op; a different candidate is counted and
        replaces the journal entry. Returns (usage_count, incremented).
        """
        now = time.time()
        with self.transaction(f"confirm {role.value} {candidate_id}") as conn:
            if request_id is not None:
                prior = conn.execute(
                    "SELECT candidate_id FROM assignments WHERE request_id = ? AND role = ?",
                    (request_id, role.value),
                ).fetchone()
                if prior is not None and prior["candidate_id"] == candidate_id:
                    row = conn.execute(
                        "SELECT usage_count FROM candidates WHERE role = ? AND candidate_id = ?",
                        (role.value, prior["candidate_id"]),
                    ).fetchone()
                    logger.warning(
                        "Assignment already confirmed: request=%s role=%s candidate=%s",
                        request_id, role.value, prior["candidate_id"],
                    )
                    return (row["usage_count"] if row else 0), False
                if prior is not None:
                    logger.warning(
                        "Assignment re-confirmed with another candidate: request=%s role=%s %s -> %s",
                        request_id, role.value, prior["candidate_id"], candidate_id,
                    )

            cur = conn.execute("""
                UPDATE candidates SET usage_count = usage_count + 1, updated_at = ?
                WHERE role = ? AND candidate_id = ?
            """, (now, role.value, candidate_id))
            if cur.rowcount == 0:
                raise ValueError(f"unknown {role.value} candidate: {candidate_id}")

            if request_id is not None:
                conn.execute("""
                    INSERT INTO assignments (request_id, role, candidate_id, confirmed_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(request_id, role) DO UPDATE SET
                        candidate_id = excluded.candidate_id,
                        confirmed_at = excluded.confirmed_at
                """, (request_id, role.value, candidate_id, now))

            row = conn.execute(
                "SELECT usage_count FROM candidates WHERE role = ? AND candidate_id = ?",
                (role.value, candidate_id),
            ).fetchone()
            return row["usage_count"], True

    def assignments_for(self, request_id: str) -> dict[Role, str]:
        rows = self._fetchall(
            "SELECT role, candidate_id FROM assignments WHERE request_id = ?",
            (request_id,),
        )
        return {Role(r["role"]): r["candidate_id"] for r in rows}

    # ─── Completion Ledger ───────────────────────────────────────────

    def is_completed(self, request_id: str) -> bool:
        row = self._fetchone("SELECT 1 FROM ledger WHERE request_id = ?", (request_id,))
        return row is not None

    def mark_completed(self, request_id: str) -> bool:
        """Append to the ledger. Returns False if it was already there."""
        return self.mark_completed_many([request_id]) == 1

    def mark_completed_many(self, request_ids: Iterable[str]) -> int:
        now = time.time()
        added = 0
        with self.transaction("ledger append") as conn:
            for rid in request_ids:
                cur = conn.execute(
                    "INSERT OR IGNORE INTO ledger (request_id, completed_at) VALUES (?, ?)",
                    (rid, now),
                )
                added += cur.rowcount
        return added

    def completed_ids(self) -> set[str]:
        return {r["request_id"] for r in self._fetchall("SELECT request_id FROM ledger")}

    def ledger_size(self) -> int:
        row = self._fetchone("SELECT COUNT(*) AS n FROM ledger")
        return row["n"] if row else 0

    # ─── Stats / Lifecycle ───────────────────────────────────────────

    def stats(self) -> dict[str, Any]:
        rows = self._fetchall("""
            SELECT role, COUNT(*) AS n, SUM(usage_count) AS used
            FROM candidates WHERE active = 1 GROUP BY role
        """)
        return {
            "ledger_size": self.ledger_size(),
            "candidates": {r["role"]: {"count": r["n"], "used": r["used"] or 0} for r in rows},
        }

    def close(self):
        if self.conn is not None:
            self.conn.close()
            self.conn = None


# ═══════════════════════════════════════════════════════════════════
# Legacy JSON import
# ═══════════════════════════════════════════════════════════════════

def _read_json_array(path: Path) -> list:
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise CheckpointCorrupt(f"legacy checkpoint unreadable: {path}: {e}") from e
    if not isinstance(data, list):
        raise CheckpointCorrupt(f"legacy checkpoint is not a JSON array: {path}")
    return data


def import_legacy(
    store: CheckpointStore,
    role_files: dict[Role, str | Path | None] | None = None,
    ledger_file: str | Path | None = None,
) -> dict[str, int]:
    """
    Import the older JSON checkpoint files.

    Role files hold `[{"id": ..., "count": ...}]`; the ledger file holds a
    list of completed names. Counters only ever move up: an existing
    counter higher than the legacy one is kept.
    """
    imported: dict[str, int] = {}

    for role, path in (role_files or {}).items():
        if not path:
            continue
        entries = _read_json_array(Path(path))
        existing = {c.candidate_id: c for c in store.load_candidates(role, include_inactive=True)}
        next_seq = max((c.seq for c in existing.values()), default=-1) + 1
        merged = []
        for entry in entries:
            if not isinstance(entry, dict) or not entry.get("id"):
                logger.warning("Skipping malformed legacy %s entry: %r", role.value, entry)
                continue
            cid = str(entry["id"])
            count = int(entry.get("count", 0) or 0)
            if cid in existing:
                seq = existing[cid].seq
                count = max(count, existing[cid].usage_count)
            else:
                seq = next_seq
                next_seq += 1
            merged.append(PersonnelCandidate(cid, count, seq))
        store.replace_candidates(role, merged, deactivate_missing=False)
        imported[role.value] = len(merged)
        logger.info("Imported %d legacy %s candidates from %s", len(merged), role.value, path)

    if ledger_file:
        names = [str(n) for n in _read_json_array(Path(ledger_file)) if n]
        imported["ledger"] = store.mark_completed_many(names)
        logger.info("Imported %d ledger entries from %s", imported["ledger"], ledger_file)

    return imported
