"""
SQLite-based persistence layer for EscrowFlow.

Stores escrow records, the per-record audit trail of committed
transitions, a snapshot of the reference ledger and a small key/value
table, so that an engine can recover state after restart.

Usage:
    store = EscrowStore("data/escrowflow.db")
    with store.transaction():
        record = store.get_escrow("alice", 1)
        ...
        store.save_escrow(updated)
        store.record_transition(entry)
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Iterator, Optional

from escrowflow_core.escrow import EscrowRecord, EscrowStatus

logger = logging.getLogger("escrowflow_storage")


@dataclass
class AuditEntry:
    """One committed transition of one escrow record."""
    key: str
    operation: str
    from_status: str        # "" for initialize
    to_status: str
    caller: str
    slot: int
    amount_moved: int = 0
    destination: str = ""   # ledger account credited, if any
    seq: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class EscrowStore:
    """Thin SQLite wrapper for persisting escrow state."""

    def __init__(self, db_path: str = "data/escrowflow.db"):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode; multi-statement units go through transaction().
        # The API hands calls to executor threads one at a time.
        self._conn = sqlite3.connect(db_path, isolation_level=None, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        # busy_timeout bounds how long a second writer waits for BEGIN IMMEDIATE
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._depth = 0
        self._create_tables()
        self._ensure_schema_version()
        logger.info(f"Storage opened: {db_path}")

    # ── schema ───────────────────────────────────────────────────

    # u64 quantities (escrow ids, amounts, balances) are stored as decimal
    # TEXT because SQLite integers are signed 64-bit.
    def _create_tables(self) -> None:
        c = self._conn
        c.execute("""
            CREATE TABLE IF NOT EXISTS escrows (
                depositor             TEXT NOT NULL,
                escrow_id             TEXT NOT NULL,
                key                   TEXT NOT NULL UNIQUE,
                beneficiary           TEXT NOT NULL,
                arbiter               TEXT NOT NULL,
                asset                 TEXT NOT NULL,
                vault                 TEXT NOT NULL,
                authority             TEXT NOT NULL DEFAULT '',
                amount                TEXT NOT NULL,
                status                TEXT NOT NULL,
                auto_release_deadline INTEGER NOT NULL DEFAULT 0,
                created_at            INTEGER NOT NULL DEFAULT 0,
                updated_at            INTEGER NOT NULL DEFAULT 0,
                dispute_reason        TEXT NOT NULL DEFAULT '',
                PRIMARY KEY (depositor, escrow_id)
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS transitions (
                seq          INTEGER PRIMARY KEY AUTOINCREMENT,
                key          TEXT NOT NULL,
                operation    TEXT NOT NULL,
                from_status  TEXT NOT NULL DEFAULT '',
                to_status    TEXT NOT NULL,
                caller       TEXT NOT NULL,
                slot         INTEGER NOT NULL,
                amount_moved TEXT NOT NULL DEFAULT '0',
                destination  TEXT NOT NULL DEFAULT ''
            )
        """)
        c.execute("CREATE INDEX IF NOT EXISTS idx_transitions_key ON transitions (key)")
        c.execute("""
            CREATE TABLE IF NOT EXISTS ledger_accounts (
                account_id TEXT PRIMARY KEY,
                owner      TEXT NOT NULL,
                asset      TEXT NOT NULL,
                balance    TEXT NOT NULL DEFAULT '0',
                custody    INTEGER NOT NULL DEFAULT 0,
                public_key TEXT NOT NULL DEFAULT '',
                nonce      INTEGER NOT NULL DEFAULT 0
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS meta (
                name  TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                id      INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL
            )
        """)

    CURRENT_SCHEMA_VERSION = 1

    def _ensure_schema_version(self) -> None:
        """Check / set schema version; run migrations when needed."""
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO schema_version (id, version) VALUES (1, ?)",
                (self.CURRENT_SCHEMA_VERSION,),
            )
        else:
            db_ver = row["version"]
            if db_ver < self.CURRENT_SCHEMA_VERSION:
                self._migrate(db_ver, self.CURRENT_SCHEMA_VERSION)
            elif db_ver > self.CURRENT_SCHEMA_VERSION:
                raise RuntimeError(
                    f"Database schema v{db_ver} is newer than this software "
                    f"(v{self.CURRENT_SCHEMA_VERSION}).  Upgrade EscrowFlow."
                )

    def _migrate(self, from_ver: int, to_ver: int) -> None:
        logger.info(f"Migrating database schema v{from_ver} → v{to_ver}")
        self._conn.execute(
            "UPDATE schema_version SET version = ? WHERE id = 1", (to_ver,)
        )

    def schema_version(self) -> int:
        row = self._conn.execute("SELECT version FROM schema_version WHERE id = 1").fetchone()
        return row["version"]

    # ── transactions ─────────────────────────────────────────────

    @contextmanager
    def transaction(self) -> Iterator[EscrowStore]:
        """One atomic write unit.

        Opens ``BEGIN IMMEDIATE`` so the write lock is taken before the
        record is read; a concurrent writer blocks (up to busy_timeout)
        and then sees the committed state.  Nested calls join the outer
        transaction.
        """
        if self._depth:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return

        c = self._conn
        c.execute("BEGIN IMMEDIATE")
        self._depth = 1
        try:
            yield self
        except BaseException:
            self._depth = 0
            c.execute("ROLLBACK")
            raise
        self._depth = 0
        c.execute("COMMIT")

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    # ── escrows ──────────────────────────────────────────────────

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> EscrowRecord:
        return EscrowRecord.from_dict(dict(row))

    def get_escrow(self, depositor: str, escrow_id: int) -> Optional[EscrowRecord]:
        row = self._conn.execute(
            "SELECT * FROM escrows WHERE depositor = ? AND escrow_id = ?",
            (depositor, str(escrow_id)),
        ).fetchone()
        return self._row_to_record(row) if row else None

    def get_escrow_by_key(self, key: str) -> Optional[EscrowRecord]:
        row = self._conn.execute("SELECT * FROM escrows WHERE key = ?", (key,)).fetchone()
        return self._row_to_record(row) if row else None

    def insert_escrow(self, record: EscrowRecord) -> None:
        """Insert a new record; raises sqlite3.IntegrityError if it exists."""
        self._conn.execute(
            """INSERT INTO escrows
               (depositor, escrow_id, key, beneficiary, arbiter, asset, vault,
                authority, amount, status, auto_release_deadline, created_at,
                updated_at, dispute_reason)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (record.depositor, str(record.escrow_id), record.key,
             record.beneficiary, record.arbiter, record.asset, record.vault,
             record.authority, str(record.amount), record.status.value,
             record.auto_release_deadline, record.created_at,
             record.updated_at, record.dispute_reason),
        )

    def save_escrow(self, record: EscrowRecord) -> None:
        """Write the mutable fields of an existing record."""
        cur = self._conn.execute(
            """UPDATE escrows
               SET status = ?, updated_at = ?, dispute_reason = ?
               WHERE key = ?""",
            (record.status.value, record.updated_at, record.dispute_reason, record.key),
        )
        if cur.rowcount != 1:
            raise sqlite3.DatabaseError(f"escrow {record.key} not found for update")

    def list_escrows(
        self,
        depositor: Optional[str] = None,
        status: Optional[EscrowStatus] = None,
    ) -> list[EscrowRecord]:
        sql = "SELECT * FROM escrows"
        clauses: list[str] = []
        params: list[Any] = []
        if depositor is not None:
            clauses.append("depositor = ?")
            params.append(depositor)
        if status is not None:
            clauses.append("status = ?")
            params.append(EscrowStatus(status).value)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at, depositor, CAST(escrow_id AS INTEGER)"
        rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_record(r) for r in rows]

    def count_by_status(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM escrows GROUP BY status"
        ).fetchall()
        return {r["status"]: r["n"] for r in rows}

    # ── audit trail ──────────────────────────────────────────────

    def record_transition(self, entry: AuditEntry) -> int:
        cur = self._conn.execute(
            """INSERT INTO transitions
               (key, operation, from_status, to_status, caller, slot,
                amount_moved, destination)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (entry.key, entry.operation, entry.from_status, entry.to_status,
             entry.caller, entry.slot, str(entry.amount_moved), entry.destination),
        )
        return cur.lastrowid

    def load_history(self, key: str) -> list[AuditEntry]:
        rows = self._conn.execute(
            "SELECT * FROM transitions WHERE key = ? ORDER BY seq", (key,)
        ).fetchall()
        return [
            AuditEntry(
                key=r["key"],
                operation=r["operation"],
                from_status=r["from_status"],
                to_status=r["to_status"],
                caller=r["caller"],
                slot=r["slot"],
                amount_moved=int(r["amount_moved"]),
                destination=r["destination"],
                seq=r["seq"],
            )
            for r in rows
        ]

    # ── ledger snapshot ──────────────────────────────────────────

    def save_ledger_state(self, rows: list[dict[str, Any]]) -> None:
        """Replace the stored ledger snapshot with *rows*."""
        with self.transaction():
            self._conn.execute("DELETE FROM ledger_accounts")
            self._conn.executemany(
                """INSERT INTO ledger_accounts
                   (account_id, owner, asset, balance, custody, public_key, nonce)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                [
                    (r["account_id"], r["owner"], r["asset"], str(r["balance"]),
                     int(bool(r.get("custody"))), r.get("public_key") or "",
                     int(r.get("nonce", 0)))
                    for r in rows
                ],
            )

    def load_ledger_state(self) -> list[dict[str, Any]]:
        rows = self._conn.execute("SELECT * FROM ledger_accounts").fetchall()
        result = []
        for r in rows:
            d = dict(r)
            d["balance"] = int(d["balance"])
            d["custody"] = bool(d["custody"])
            result.append(d)
        return result

    # ── meta ─────────────────────────────────────────────────────

    def get_meta(self, name: str) -> Optional[str]:
        row = self._conn.execute("SELECT value FROM meta WHERE name = ?", (name,)).fetchone()
        return row["value"] if row else None

    def set_meta(self, name: str, value: str) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO meta (name, value) VALUES (?, ?)", (name, value),
        )

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
