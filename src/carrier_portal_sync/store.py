from __future__ import annotations

import logging
import shutil
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, Optional

from .errors import StoreLockedError
from .models import LocalEnrollmentSnapshot, SyncLogEntry, SyncStatus


logger = logging.getLogger(__name__)

# Terminal status applied to enrollments the carrier portal no longer reports.
CARRIER_NOT_CONFIRMED = "CARRIER_NOT_CONFIRMED"
DISENROLLMENT_REASON = "Carrier portal sync - not found in portal"

# Statuses that count as "on the books" for reconciliation.
ACTIVE_STATUS_CODES = ("ACTIVE", "PENDING", "REINSTATED")

_ENROLLMENT_STATUSES = (
    ("ACTIVE", "Active", 0),
    ("PENDING", "Pending", 0),
    ("REINSTATED", "Reinstated", 0),
    ("REJECTED", "Rejected", 1),
    ("CANCELLED", "Cancelled", 1),
    ("DISENROLLED_VOLUNTARY", "Disenrolled - Voluntary", 1),
    ("DISENROLLED_INVOLUNTARY", "Disenrolled - Involuntary", 1),
    (CARRIER_NOT_CONFIRMED, "Disenrolled - Carrier Not Confirmed", 1),
)


@dataclass(frozen=True)
class EnrollmentRecord:
    id: str
    client_id: str
    carrier_id: str
    plan_name: Optional[str]
    status_code: str
    disenrollment_reason: Optional[str]
    termination_date: Optional[str]
    is_active: bool


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class BookStore:
    """
    SQLite-backed book of business: clients, enrollments, carriers and the append-only carrier sync log.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._backup_path = self.db_path.with_name(self.db_path.name + ".bak")

        # Self-heal on corrupted/missing DB: restore from backup when possible.
        self._conn: Optional[sqlite3.Connection] = self._open_or_restore()
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA foreign_keys=ON;")
        self._ensure_schema()

        self._maybe_backup(if_missing=True)

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreLockedError(f"Store is closed: {self.db_path}")
        return self._conn

    def _connect(self) -> sqlite3.Connection:
        # Autocommit mode; every write goes through `_transaction()`.
        return sqlite3.connect(self.db_path, isolation_level=None)

    def _open_or_restore(self) -> sqlite3.Connection:
        """
        Open the store. If it looks corrupted, move it aside and restore from the last-known-good backup.
        """
        if self.db_path.exists():
            try:
                conn = self._connect()
                if self._connection_is_healthy(conn):
                    return conn
                conn.close()
                raise sqlite3.DatabaseError("SQLite quick_check failed")
            except sqlite3.DatabaseError as e:
                logger.warning("Store DB appears corrupted/unreadable; attempting restore from backup. (%s)", e)
                self._quarantine_db_files()

                if self._backup_path.exists():
                    try:
                        shutil.copy2(self._backup_path, self.db_path)
                        conn = self._connect()
                        if self._connection_is_healthy(conn):
                            logger.warning("Restored store DB from backup: %s", self._backup_path)
                            return conn
                        conn.close()
                    except (OSError, sqlite3.DatabaseError):
                        logger.warning("Failed to restore store DB from backup; creating a fresh DB.", exc_info=True)
                else:
                    logger.warning("No store DB backup found; creating a fresh DB.")

        return self._connect()

    def _connection_is_healthy(self, conn: sqlite3.Connection) -> bool:
        try:
            _ = conn.execute("PRAGMA schema_version;").fetchone()
            row = conn.execute("PRAGMA quick_check;").fetchone()
            return bool(row and row[0] == "ok")
        except sqlite3.DatabaseError:
            return False

    def _quarantine_db_files(self) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        for p in (self.db_path, Path(str(self.db_path) + "-wal"), Path(str(self.db_path) + "-shm")):
            try:
                if p.exists():
                    p.replace(p.with_name(p.name + f".corrupt-{stamp}"))
            except OSError:
                logger.debug("Failed to quarantine path=%s", p, exc_info=True)

    def _maybe_backup(self, *, if_missing: bool) -> None:
        if if_missing and self._backup_path.exists():
            return
        try:
            self.backup()
        except (OSError, sqlite3.Error):
            logger.debug("Failed to write store DB backup.", exc_info=True)

    def backup(self) -> None:
        """
        Write/refresh a last-known-good backup at `<db_path>.bak` using the SQLite online backup API.
        """
        out = self._backup_path
        tmp = out.with_name(out.name + ".tmp")
        if tmp.exists():
            tmp.unlink()

        dst = sqlite3.connect(tmp)
        try:
            self.conn.backup(dst)
            dst.commit()
        finally:
            dst.close()

        tmp.replace(out)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self.conn
        conn.execute("BEGIN IMMEDIATE;")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK;")
            raise
        else:
            conn.execute("COMMIT;")

    def _ensure_schema(self) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS carriers (
                  id TEXT PRIMARY KEY,
                  name TEXT NOT NULL,
                  is_active INTEGER NOT NULL DEFAULT 1,
                  created_at TEXT NOT NULL
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS enrollment_statuses (
                  code TEXT PRIMARY KEY,
                  name TEXT NOT NULL,
                  is_terminal INTEGER NOT NULL DEFAULT 0
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS clients (
                  id TEXT PRIMARY KEY,
                  first_name TEXT NOT NULL,
                  last_name TEXT NOT NULL,
                  dob TEXT,
                  mbi TEXT,
                  is_active INTEGER NOT NULL DEFAULT 1,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS enrollments (
                  id TEXT PRIMARY KEY,
                  client_id TEXT NOT NULL REFERENCES clients(id),
                  carrier_id TEXT NOT NULL REFERENCES carriers(id),
                  plan_name TEXT,
                  status_code TEXT NOT NULL DEFAULT 'PENDING' REFERENCES enrollment_statuses(code),
                  disenrollment_reason TEXT,
                  termination_date TEXT,
                  is_active INTEGER NOT NULL DEFAULT 1,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_enrollments_carrier ON enrollments(carrier_id, is_active);"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS carrier_sync_logs (
                  id TEXT PRIMARY KEY,
                  carrier_id TEXT NOT NULL,
                  synced_at TEXT NOT NULL,
                  portal_count INTEGER NOT NULL DEFAULT 0,
                  matched INTEGER NOT NULL DEFAULT 0,
                  disenrolled INTEGER NOT NULL DEFAULT 0,
                  new_found INTEGER NOT NULL DEFAULT 0,
                  status TEXT NOT NULL CHECK (status IN ('COMPLETED', 'FAILED'))
                );
                """
            )
            conn.executemany(
                "INSERT OR IGNORE INTO enrollment_statuses(code, name, is_terminal) VALUES (?, ?, ?);",
                _ENROLLMENT_STATUSES,
            )

    # -- book keeping --------------------------------------------------------------------------------------------

    def ensure_carrier(self, carrier_id: str, name: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO carriers(id, name, created_at) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET name = excluded.name;
                """,
                (carrier_id, name, _utc_now()),
            )

    def add_client(
        self,
        *,
        first_name: str,
        last_name: str,
        dob: Optional[date] = None,
        mbi: Optional[str] = None,
        is_active: bool = True,
        client_id: Optional[str] = None,
    ) -> str:
        cid = client_id or str(uuid.uuid4())
        now = _utc_now()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO clients(id, first_name, last_name, dob, mbi, is_active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (cid, first_name, last_name, dob.isoformat() if dob else None, mbi, 1 if is_active else 0, now, now),
            )
        return cid

    def add_enrollment(
        self,
        *,
        client_id: str,
        carrier_id: str,
        plan_name: Optional[str] = None,
        status_code: str = "ACTIVE",
        enrollment_id: Optional[str] = None,
    ) -> str:
        eid = enrollment_id or str(uuid.uuid4())
        now = _utc_now()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO enrollments(id, client_id, carrier_id, plan_name, status_code, is_active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, 1, ?, ?);
                """,
                (eid, client_id, carrier_id, plan_name, status_code, now, now),
            )
        return eid

    def get_enrollment(self, enrollment_id: str) -> Optional[EnrollmentRecord]:
        row = self.conn.execute(
            """
            SELECT id, client_id, carrier_id, plan_name, status_code, disenrollment_reason, termination_date, is_active
            FROM enrollments WHERE id = ?;
            """,
            (enrollment_id,),
        ).fetchone()
        if not row:
            return None
        return EnrollmentRecord(
            id=row[0],
            client_id=row[1],
            carrier_id=row[2],
            plan_name=row[3],
            status_code=row[4],
            disenrollment_reason=row[5],
            termination_date=row[6],
            is_active=bool(row[7]),
        )

    # -- reconciliation ------------------------------------------------------------------------------------------

    def active_enrollments(self, carrier_id: str) -> list[LocalEnrollmentSnapshot]:
        """
        Snapshot of the carrier's enrollments that are still on the books, ordered by enrollment id.
        """
        placeholders = ", ".join("?" for _ in ACTIVE_STATUS_CODES)
        rows = self.conn.execute(
            f"""
            SELECT e.id, e.client_id, c.first_name, c.last_name, c.dob, c.mbi, e.plan_name, e.carrier_id
            FROM enrollments e
            JOIN clients c ON e.client_id = c.id
            WHERE e.carrier_id = ?
              AND e.status_code IN ({placeholders})
              AND e.is_active = 1
              AND c.is_active = 1
            ORDER BY e.id;
            """,
            (carrier_id, *ACTIVE_STATUS_CODES),
        ).fetchall()
        return [
            LocalEnrollmentSnapshot(
                enrollment_id=r[0],
                client_id=r[1],
                client_first_name=r[2],
                client_last_name=r[3],
                client_date_of_birth=r[4],
                client_mbi=r[5],
                plan_name=r[6],
                carrier_id=r[7],
                is_active=True,
            )
            for r in rows
        ]

    def apply_reconciliation(
        self, carrier_id: str, enrollment_ids: Iterable[str], entry: SyncLogEntry
    ) -> list[str]:
        """
        Flag every enrollment in `enrollment_ids` (which must belong to `carrier_id`) as not confirmed by the
        carrier and append `entry`, as one transaction. Either all of it lands or none of it does.

        Enrollments that stopped being active since the snapshot was taken (edited by the user meanwhile) are left
        alone. Returns the ids actually flagged; the log row's disenrolled count is set to match.
        """
        today = date.today().isoformat()
        now = _utc_now()
        with self._transaction() as conn:
            applied = [
                enrollment_id
                for enrollment_id in enrollment_ids
                if self._disenroll(conn, carrier_id, enrollment_id, today=today, now=now)
            ]
            self._insert_sync_log(conn, entry.model_copy(update={"disenrolled": len(applied)}))

        if entry.status is SyncStatus.COMPLETED:
            # Refresh the backup so we always have a recent last-known-good snapshot.
            self._maybe_backup(if_missing=False)
        return applied

    def _disenroll(
        self, conn: sqlite3.Connection, carrier_id: str, enrollment_id: str, *, today: str, now: str
    ) -> bool:
        cur = conn.execute(
            """
            UPDATE enrollments
            SET status_code = ?,
                disenrollment_reason = ?,
                termination_date = ?,
                is_active = 0,
                updated_at = ?
            WHERE id = ? AND carrier_id = ? AND is_active = 1;
            """,
            (CARRIER_NOT_CONFIRMED, DISENROLLMENT_REASON, today, now, enrollment_id, carrier_id),
        )
        if cur.rowcount != 1:
            logger.info("%s: enrollment %s is no longer active; left unchanged", carrier_id, enrollment_id)
            return False
        return True

    def append_sync_log(self, entry: SyncLogEntry) -> None:
        with self._transaction() as conn:
            self._insert_sync_log(conn, entry)

    def _insert_sync_log(self, conn: sqlite3.Connection, entry: SyncLogEntry) -> None:
        conn.execute(
            """
            INSERT INTO carrier_sync_logs(id, carrier_id, synced_at, portal_count, matched, disenrolled, new_found, status)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                entry.id,
                entry.carrier_id,
                entry.synced_at.isoformat(),
                entry.portal_count,
                entry.matched,
                entry.disenrolled,
                entry.new_found,
                entry.status.value,
            ),
        )

    def list_sync_logs(self, carrier_id: Optional[str] = None, *, limit: int = 50) -> list[SyncLogEntry]:
        sql = """
            SELECT sl.id, sl.carrier_id, cr.name, sl.synced_at, sl.portal_count, sl.matched, sl.disenrolled,
                   sl.new_found, sl.status
            FROM carrier_sync_logs sl
            LEFT JOIN carriers cr ON sl.carrier_id = cr.id
        """
        params: tuple = ()
        if carrier_id:
            sql += " WHERE sl.carrier_id = ?"
            params = (carrier_id,)
        sql += " ORDER BY sl.synced_at DESC, sl.rowid DESC LIMIT ?;"
        rows = self.conn.execute(sql, (*params, int(limit))).fetchall()
        return [
            SyncLogEntry(
                id=r[0],
                carrier_id=r[1],
                carrier_name=r[2],
                synced_at=r[3],
                portal_count=r[4],
                matched=r[5],
                disenrolled=r[6],
                new_found=r[7],
                status=r[8],
            )
            for r in rows
        ]
