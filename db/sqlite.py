# backend/db/sqlite.py
import sqlite3
from pathlib import Path

import structlog

logger = structlog.get_logger(__name__)

SCHEMA_VERSION = 1
BUSY_TIMEOUT_MS = 5000

def connect(path: str) -> sqlite3.Connection:
    """
    Opens the one connection the storage layer writes through.
    Transactions are opened explicitly (isolation_level=None) so writers can
    take the lock up front with BEGIN IMMEDIATE.
    """
    p = str(path or "").strip()
    if not p:
        raise ValueError("Missing db_path")
    if p != ":memory:":
        Path(p).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(p, timeout=BUSY_TIMEOUT_MS / 1000, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS};")
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA synchronous = NORMAL;")
    conn.execute("PRAGMA temp_store = MEMORY;")
    if p != ":memory:":
        mode = conn.execute("PRAGMA journal_mode = WAL;").fetchone()
        if mode and str(mode[0]).lower() != "wal":
            logger.warning("WAL journal mode unavailable", path=p, journal_mode=mode[0])
    return conn

def ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE TABLE IF NOT EXISTS schema_meta (k TEXT PRIMARY KEY, v TEXT NOT NULL);")
    row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
    cur = int(row["v"]) if row and row["v"] else 0
    if cur >= SCHEMA_VERSION:
        return
    if cur != 0:
        raise RuntimeError(f"Unsupported schema version upgrade path cur={cur} target={SCHEMA_VERSION}")

    conn.execute("BEGIN IMMEDIATE")
    try:
        _apply_v1(conn)
        conn.execute(
            "INSERT OR REPLACE INTO schema_meta (k, v) VALUES ('version', ?)",
            (str(SCHEMA_VERSION),),
        )
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise
    logger.info("Database schema created", version=SCHEMA_VERSION)

def _apply_v1(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS monitors (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          name TEXT NOT NULL,
          url TEXT NOT NULL UNIQUE,
          check_interval INTEGER NOT NULL DEFAULT 60,
          active INTEGER NOT NULL DEFAULT 1,
          created_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS checks (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          monitor_id INTEGER NOT NULL REFERENCES monitors(id) ON DELETE CASCADE,
          checked_at_ts REAL NOT NULL,
          is_up INTEGER NOT NULL,
          status_code INTEGER,
          response_time_ms INTEGER,
          error TEXT
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_checks_monitor_time ON checks (monitor_id, checked_at_ts);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_checks_time ON checks (checked_at_ts);")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS incidents (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          monitor_id INTEGER NOT NULL REFERENCES monitors(id) ON DELETE CASCADE,
          started_at_ts REAL NOT NULL,
          resolved_at_ts REAL,
          reason TEXT
        );
        """
    )
    # At most one open incident per monitor.
    conn.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_incidents_one_open "
        "ON incidents (monitor_id) WHERE resolved_at_ts IS NULL;"
    )
