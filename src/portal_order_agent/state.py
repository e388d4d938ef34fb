from __future__ import annotations

import logging
import shutil
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from .models import AuditEntry, OrderRequest, OrderStatus, Session


logger = logging.getLogger(__name__)


class DuplicateOrder(ValueError):
    """An order with the same correlation id is already stored."""


@dataclass(frozen=True)
class StoredOrder:
    correlation_id: str
    portal: str
    request: OrderRequest
    status: OrderStatus
    attempts: int
    confirmation_number: Optional[str]
    error: Optional[str]
    escalation: Optional[str]
    last_screenshot: Optional[str]
    document_reference: Optional[str]
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class StoredAuditEntry:
    id: int
    correlation_id: str
    stage: str
    captured_at: datetime
    reference: Optional[str]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class StateStore:
    """
    SQLite-backed order queue, session slot and audit index.

    One connection is shared by the engine thread and the CLI; writes are serialized by a lock.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._backup_path = self.db_path.with_name(self.db_path.name + ".bak")
        self._lock = threading.RLock()

        # Self-heal on corrupted/missing DB: restore from backup when possible.
        self._conn = self._open_or_restore()
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._ensure_schema()

        # Ensure we have *some* backup available for next time.
        self._maybe_backup(if_missing=True)

    def close(self) -> None:
        self._conn.close()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, check_same_thread=False)

    def _open_or_restore(self) -> sqlite3.Connection:
        """
        Open the state DB. If it looks corrupted, move it aside and restore from the last-known-good backup.
        """
        if self.db_path.exists():
            try:
                conn = self._connect()
                if self._connection_is_healthy(conn):
                    return conn
                conn.close()
                raise sqlite3.DatabaseError("SQLite quick_check failed")
            except Exception as e:
                logger.warning("State DB appears corrupted/unreadable; attempting restore from backup. (%s)", e)
                self._quarantine_db_files()

                if self._backup_path.exists():
                    try:
                        shutil.copy2(self._backup_path, self.db_path)
                        conn = self._connect()
                        if self._connection_is_healthy(conn):
                            logger.warning("Restored state DB from backup: %s", self._backup_path)
                            return conn
                        conn.close()
                    except Exception:
                        logger.warning("Failed to restore state DB from backup; creating a fresh DB.", exc_info=True)
                else:
                    logger.warning("No state DB backup found; creating a fresh DB.")

        return self._connect()

    def _connection_is_healthy(self, conn: sqlite3.Connection) -> bool:
        try:
            # Touch schema_version to fail fast on "file is not a database".
            _ = conn.execute("PRAGMA schema_version;").fetchone()
            row = conn.execute("PRAGMA quick_check;").fetchone()
            return bool(row and row[0] == "ok")
        except Exception:
            return False

    def _quarantine_db_files(self) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        for p in (self.db_path, Path(str(self.db_path) + "-wal"), Path(str(self.db_path) + "-shm")):
            try:
                if p.exists():
                    p.replace(p.with_name(p.name + f".corrupt-{stamp}"))
            except Exception:
                logger.debug("Failed to quarantine path=%s", p, exc_info=True)

    def _maybe_backup(self, *, if_missing: bool) -> None:
        if if_missing and self._backup_path.exists():
            return

        try:
            self.backup()
        except Exception:
            logger.debug("Failed to write state DB backup.", exc_info=True)

    def backup(self) -> None:
        """
        Write/refresh a last-known-good backup of the state DB at `<db_path>.bak`.
        """
        out = self._backup_path
        out.parent.mkdir(parents=True, exist_ok=True)
        tmp = out.with_name(out.name + ".tmp")
        if tmp.exists():
            tmp.unlink()

        # Use SQLite online backup API for a consistent snapshot.
        dst = sqlite3.connect(tmp)
        try:
            with self._lock:
                self._conn.backup(dst)
            dst.commit()
        finally:
            dst.close()

        tmp.replace(out)

    def _ensure_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS portal_sessions (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              portal TEXT NOT NULL,
              state TEXT NOT NULL,
              created_at TEXT NOT NULL,
              expires_at TEXT NOT NULL,
              is_valid INTEGER NOT NULL DEFAULT 1
            );
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_portal_sessions_valid ON portal_sessions(portal, is_valid);"
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS orders (
              correlation_id TEXT PRIMARY KEY,
              portal TEXT NOT NULL,
              payload TEXT NOT NULL,
              status TEXT NOT NULL,
              attempts INTEGER NOT NULL DEFAULT 0,
              confirmation_number TEXT,
              error TEXT,
              escalation TEXT,
              last_screenshot TEXT,
              document_reference TEXT,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS order_events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              correlation_id TEXT NOT NULL,
              status TEXT NOT NULL,
              message TEXT,
              created_at TEXT NOT NULL
            );
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_entries (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              correlation_id TEXT NOT NULL,
              stage TEXT NOT NULL,
              captured_at TEXT NOT NULL,
              reference TEXT
            );
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              started_at TEXT NOT NULL,
              finished_at TEXT,
              ok INTEGER,
              message TEXT
            );
            """
        )
        self._conn.commit()

    # --- sessions ---

    def replace_session(self, portal: str, state: str, *, created_at: datetime, expires_at: datetime) -> Session:
        """
        Invalidate any valid session for `portal` and insert the new one in a single transaction.
        """
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE portal_sessions SET is_valid = 0 WHERE portal = ? AND is_valid = 1;",
                (portal,),
            )
            self._conn.execute(
                "INSERT INTO portal_sessions(portal, state, created_at, expires_at, is_valid) VALUES (?, ?, ?, ?, 1);",
                (portal, state, created_at.isoformat(), expires_at.isoformat()),
            )
        return Session(portal=portal, state=state, created_at=created_at, expires_at=expires_at, is_valid=True)

    def get_latest_valid_session(self, portal: str) -> Optional[Session]:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT portal, state, created_at, expires_at
                FROM portal_sessions
                WHERE portal = ? AND is_valid = 1
                ORDER BY id DESC
                LIMIT 1;
                """,
                (portal,),
            ).fetchone()
        if not row:
            return None
        return Session(
            portal=row[0],
            state=row[1],
            created_at=datetime.fromisoformat(row[2]),
            expires_at=datetime.fromisoformat(row[3]),
            is_valid=True,
        )

    def count_valid_sessions(self, portal: str) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM portal_sessions WHERE portal = ? AND is_valid = 1;",
                (portal,),
            ).fetchone()
        return int(row[0])

    def invalidate_sessions(self, portal: str) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute(
                "UPDATE portal_sessions SET is_valid = 0 WHERE portal = ? AND is_valid = 1;",
                (portal,),
            )
        return cur.rowcount

    # --- orders ---

    def enqueue_order(self, order: OrderRequest) -> None:
        now = _now_iso()
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    """
                    INSERT INTO orders(correlation_id, portal, payload, status, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?);
                    """,
                    (order.correlation_id, order.portal, order.model_dump_json(), OrderStatus.PENDING.value, now, now),
                )
                self._conn.execute(
                    "INSERT INTO order_events(correlation_id, status, message, created_at) VALUES (?, ?, ?, ?);",
                    (order.correlation_id, OrderStatus.PENDING.value, "enqueued", now),
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateOrder(f"Order {order.correlation_id!r} is already queued") from e

    def claim_next_pending(self, portal: Optional[str] = None) -> Optional[StoredOrder]:
        """
        Atomically move the oldest pending order to in_progress and return it.
        """
        with self._lock, self._conn:
            if portal:
                row = self._conn.execute(
                    "SELECT correlation_id FROM orders WHERE status = ? AND portal = ? ORDER BY created_at, rowid LIMIT 1;",
                    (OrderStatus.PENDING.value, portal),
                ).fetchone()
            else:
                row = self._conn.execute(
                    "SELECT correlation_id FROM orders WHERE status = ? ORDER BY created_at, rowid LIMIT 1;",
                    (OrderStatus.PENDING.value,),
                ).fetchone()
            if not row:
                return None
            now = _now_iso()
            self._conn.execute(
                "UPDATE orders SET status = ?, attempts = attempts + 1, updated_at = ? WHERE correlation_id = ?;",
                (OrderStatus.IN_PROGRESS.value, now, row[0]),
            )
            self._conn.execute(
                "INSERT INTO order_events(correlation_id, status, message, created_at) VALUES (?, ?, ?, ?);",
                (row[0], OrderStatus.IN_PROGRESS.value, "claimed", now),
            )
        return self.get_order(row[0])

    def set_order_status(
        self,
        correlation_id: str,
        status: OrderStatus,
        *,
        message: Optional[str] = None,
        confirmation_number: Optional[str] = None,
        error: Optional[str] = None,
        escalation: Optional[str] = None,
        last_screenshot: Optional[str] = None,
        document_reference: Optional[str] = None,
    ) -> None:
        now = _now_iso()
        with self._lock, self._conn:
            cur = self._conn.execute(
                """
                UPDATE orders SET
                  status = ?,
                  confirmation_number = COALESCE(?, confirmation_number),
                  error = COALESCE(?, error),
                  escalation = COALESCE(?, escalation),
                  last_screenshot = COALESCE(?, last_screenshot),
                  document_reference = COALESCE(?, document_reference),
                  updated_at = ?
                WHERE correlation_id = ?;
                """,
                (status.value, confirmation_number, error, escalation, last_screenshot, document_reference, now, correlation_id),
            )
            if cur.rowcount == 0:
                raise KeyError(f"Unknown order {correlation_id!r}")
            self._conn.execute(
                "INSERT INTO order_events(correlation_id, status, message, created_at) VALUES (?, ?, ?, ?);",
                (correlation_id, status.value, message, now),
            )

    def get_order(self, correlation_id: str) -> Optional[StoredOrder]:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT correlation_id, portal, payload, status, attempts, confirmation_number, error, escalation,
                       last_screenshot, document_reference, created_at, updated_at
                FROM orders WHERE correlation_id = ?;
                """,
                (correlation_id,),
            ).fetchone()
        return self._row_to_order(row) if row else None

    def list_orders(self, status: Optional[OrderStatus] = None) -> list[StoredOrder]:
        sql = """
            SELECT correlation_id, portal, payload, status, attempts, confirmation_number, error, escalation,
                   last_screenshot, document_reference, created_at, updated_at
            FROM orders
        """
        params: tuple = ()
        if status is not None:
            sql += " WHERE status = ?"
            params = (status.value,)
        sql += " ORDER BY created_at, rowid;"
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_order(r) for r in rows]

    def order_events(self, correlation_id: str) -> list[tuple[str, Optional[str], str]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT status, message, created_at FROM order_events WHERE correlation_id = ? ORDER BY id;",
                (correlation_id,),
            ).fetchall()
        return [(r[0], r[1], r[2]) for r in rows]

    @staticmethod
    def _row_to_order(row: tuple) -> StoredOrder:
        return StoredOrder(
            correlation_id=row[0],
            portal=row[1],
            request=OrderRequest.model_validate_json(row[2]),
            status=OrderStatus(row[3]),
            attempts=int(row[4]),
            confirmation_number=row[5],
            error=row[6],
            escalation=row[7],
            last_screenshot=row[8],
            document_reference=row[9],
            created_at=row[10],
            updated_at=row[11],
        )

    # --- audit index ---

    def record_audit_entry(self, correlation_id: str, entry: AuditEntry) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO audit_entries(correlation_id, stage, captured_at, reference) VALUES (?, ?, ?, ?);",
                (correlation_id, entry.stage, entry.captured_at.isoformat(), entry.reference),
            )

    def audit_entries(self, correlation_id: str) -> list[AuditEntry]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT stage, captured_at, reference FROM audit_entries WHERE correlation_id = ? ORDER BY id;",
                (correlation_id,),
            ).fetchall()
        return [AuditEntry(stage=r[0], captured_at=datetime.fromisoformat(r[1]), reference=r[2]) for r in rows]

    def audit_entries_before(self, cutoff: datetime) -> list[StoredAuditEntry]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, correlation_id, stage, captured_at, reference FROM audit_entries WHERE captured_at < ? ORDER BY id;",
                (cutoff.isoformat(),),
            ).fetchall()
        return [
            StoredAuditEntry(id=r[0], correlation_id=r[1], stage=r[2], captured_at=datetime.fromisoformat(r[3]), reference=r[4])
            for r in rows
        ]

    def delete_audit_entries(self, ids: Iterable[int]) -> int:
        id_list = list(ids)
        if not id_list:
            return 0
        with self._lock, self._conn:
            cur = self._conn.executemany("DELETE FROM audit_entries WHERE id = ?;", [(i,) for i in id_list])
        return cur.rowcount

    # --- runs ---

    def record_run_start(self) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute("INSERT INTO runs(started_at) VALUES (?);", (_now_iso(),))
        return int(cur.lastrowid)

    def record_run_finish(self, run_id: int, *, ok: bool, message: Optional[str] = None) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE runs SET finished_at = ?, ok = ?, message = ? WHERE id = ?;",
                (_now_iso(), 1 if ok else 0, message, run_id),
            )

        # Only refresh backups after a successful run finish (avoid snapshotting a potentially bad state).
        if ok:
            self._maybe_backup(if_missing=False)
