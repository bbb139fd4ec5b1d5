import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Tuple

import structlog

from db.sqlite import connect, ensure_schema
from models.check import Check
from models.incident import Incident
from models.monitor import Monitor

logger = structlog.get_logger(__name__)


class StorageError(Exception):
    """Raised when a storage read or write fails."""


class ConflictError(StorageError):
    """Raised when a write violates a uniqueness constraint."""


def _wrap(e: sqlite3.Error) -> StorageError:
    if isinstance(e, sqlite3.IntegrityError) and "UNIQUE" in str(e):
        return ConflictError(str(e))
    return StorageError(str(e))


def _to_ts(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def _from_ts(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UptimeStorage:
    """SQLite persistence for monitors, checks and incidents.

    Every call goes through one connection guarded by one lock, and every
    write runs in a BEGIN IMMEDIATE transaction. Concurrent probe tasks are
    therefore serialized here, not in the scheduler's in-memory structures.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._lock = threading.Lock()
        self._conn = connect(db_path)
        ensure_schema(self._conn)

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
            except sqlite3.Error as e:
                raise StorageError(str(e)) from e

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageError(str(e)) from e
            try:
                yield self._conn
            except sqlite3.Error as e:
                self._rollback()
                raise _wrap(e) from e
            except Exception:
                self._rollback()
                raise
            try:
                self._conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback()
                raise StorageError(str(e)) from e

    def _rollback(self) -> None:
        if self._conn.in_transaction:
            self._conn.execute("ROLLBACK")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # --- MONITOR CRUD ---

    def create_monitor(
        self,
        url: str,
        name: Optional[str] = None,
        check_interval: int = 60,
        active: bool = True,
    ) -> Monitor:
        created_at = _utcnow()
        # Validate and normalize before touching the database.
        monitor = Monitor(id=0, name=name or url, url=url, check_interval=check_interval, active=active, created_at=created_at)
        url = str(monitor.url)
        with self._write() as conn:
            cur = conn.execute(
                "INSERT INTO monitors (name, url, check_interval, active, created_at_ts) VALUES (?, ?, ?, ?, ?)",
                (monitor.name, url, check_interval, int(active), _to_ts(created_at)),
            )
            monitor_id = cur.lastrowid
        logger.info("Added monitor", monitor_id=monitor_id, url=url)
        return monitor.model_copy(update={"id": monitor_id})

    def delete_monitor(self, monitor_id: int) -> bool:
        with self._write() as conn:
            cur = conn.execute("DELETE FROM monitors WHERE id = ?", (monitor_id,))
            deleted = cur.rowcount > 0
        if deleted:
            logger.info("Removed monitor", monitor_id=monitor_id)
        return deleted

    def get_monitor(self, monitor_id: int) -> Optional[Monitor]:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM monitors WHERE id = ?", (monitor_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_monitor(row)

    def list_monitors(self) -> List[Monitor]:
        with self._read() as conn:
            rows = conn.execute("SELECT * FROM monitors ORDER BY id").fetchall()
        return [self._row_to_monitor(row) for row in rows]

    def list_active_monitors(self) -> List[Monitor]:
        with self._read() as conn:
            rows = conn.execute("SELECT * FROM monitors WHERE active = 1 ORDER BY id").fetchall()
        return [self._row_to_monitor(row) for row in rows]

    @staticmethod
    def _row_to_monitor(row: sqlite3.Row) -> Monitor:
        return Monitor(
            id=row["id"],
            name=row["name"],
            url=row["url"],
            check_interval=row["check_interval"],
            active=bool(row["active"]),
            created_at=_from_ts(row["created_at_ts"]),
        )

    # --- CHECKS ---

    def insert_check(self, check: Check) -> int:
        with self._write() as conn:
            cur = conn.execute(
                """
                INSERT INTO checks (monitor_id, checked_at_ts, is_up, status_code, response_time_ms, error)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    check.monitor_id,
                    _to_ts(check.checked_at),
                    int(check.is_up),
                    check.status_code,
                    check.response_time_ms,
                    check.error,
                ),
            )
            return cur.lastrowid

    def query_checks(
        self,
        monitor_id: Optional[int] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Check]:
        """Checks ordered by checked_at ascending; monitor_id=None means all monitors."""
        sql = "SELECT * FROM checks WHERE 1=1"
        params: list = []
        if monitor_id is not None:
            sql += " AND monitor_id = ?"
            params.append(monitor_id)
        if since is not None:
            sql += " AND checked_at_ts >= ?"
            params.append(_to_ts(since))
        sql += " ORDER BY checked_at_ts ASC, id ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        with self._read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [
            Check(
                id=row["id"],
                monitor_id=row["monitor_id"],
                checked_at=_from_ts(row["checked_at_ts"]),
                is_up=bool(row["is_up"]),
                status_code=row["status_code"],
                response_time_ms=row["response_time_ms"],
                error=row["error"],
            )
            for row in rows
        ]

    def delete_checks_before(self, cutoff: datetime) -> int:
        with self._write() as conn:
            cur = conn.execute("DELETE FROM checks WHERE checked_at_ts < ?", (_to_ts(cutoff),))
            return cur.rowcount

    # --- INCIDENT TRACKING ---

    def create_incident(
        self,
        monitor_id: int,
        reason: Optional[str],
        started_at: Optional[datetime] = None,
    ) -> Tuple[int, bool]:
        """Opens an incident. Returns (incident_id, created).

        When the monitor already has an open incident, its id is returned with
        created=False and nothing is inserted.
        """
        with self._write() as conn:
            row = conn.execute(
                "SELECT id FROM incidents WHERE monitor_id = ? AND resolved_at_ts IS NULL",
                (monitor_id,),
            ).fetchone()
            if row is not None:
                logger.warning("Incident already open", monitor_id=monitor_id, incident_id=row["id"])
                return row["id"], False
            cur = conn.execute(
                "INSERT INTO incidents (monitor_id, started_at_ts, reason) VALUES (?, ?, ?)",
                (monitor_id, _to_ts(started_at or _utcnow()), reason),
            )
            return cur.lastrowid, True

    def resolve_incident(self, incident_id: int, resolved_at: Optional[datetime] = None) -> None:
        with self._write() as conn:
            conn.execute(
                "UPDATE incidents SET resolved_at_ts = ? WHERE id = ? AND resolved_at_ts IS NULL",
                (_to_ts(resolved_at or _utcnow()), incident_id),
            )

    def list_open_incidents(self) -> List[Incident]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM incidents WHERE resolved_at_ts IS NULL ORDER BY started_at_ts"
            ).fetchall()
        return [self._row_to_incident(row) for row in rows]

    def list_incidents(self, monitor_id: Optional[int] = None, limit: int = 50) -> List[Incident]:
        sql = "SELECT * FROM incidents"
        params: list = []
        if monitor_id is not None:
            sql += " WHERE monitor_id = ?"
            params.append(monitor_id)
        sql += " ORDER BY started_at_ts DESC, id DESC LIMIT ?"
        params.append(int(limit))
        with self._read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_incident(row) for row in rows]

    @staticmethod
    def _row_to_incident(row: sqlite3.Row) -> Incident:
        return Incident(
            id=row["id"],
            monitor_id=row["monitor_id"],
            started_at=_from_ts(row["started_at_ts"]),
            resolved_at=_from_ts(row["resolved_at_ts"]),
            reason=row["reason"],
        )
