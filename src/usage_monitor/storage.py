"""SQLite storage layer for usage-monitor."""

import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

import structlog

log = structlog.get_logger()

SCHEMA_VERSION = 1


SCHEMA = """
CREATE TABLE IF NOT EXISTS daemon_state (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at REAL
);

CREATE TABLE IF NOT EXISTS app_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    process_name TEXT NOT NULL,
    pid INTEGER NOT NULL,
    parent_process_name TEXT NOT NULL DEFAULT '',
    exe_path TEXT NOT NULL DEFAULT '',
    start_time INTEGER NOT NULL,
    end_time INTEGER
);

CREATE INDEX IF NOT EXISTS idx_app_events_pid_open
    ON app_events(pid, end_time);
CREATE INDEX IF NOT EXISTS idx_app_events_open
    ON app_events(end_time) WHERE end_time IS NULL;
CREATE INDEX IF NOT EXISTS idx_app_events_start
    ON app_events(start_time);
"""

# Statements handed to the event writer by the monitor
INSERT_APP_EVENT = (
    "INSERT INTO app_events (process_name, pid, parent_process_name, exe_path, start_time) "
    "VALUES (?, ?, ?, ?, ?)"
)
CLOSE_APP_EVENT = "UPDATE app_events SET end_time = ? WHERE pid = ? AND end_time IS NULL"


def init_database(db_path: Path) -> None:
    """Initialize database with WAL mode and schema.

    If the database exists with a different schema version, it is deleted
    and recreated. No migrations - schema mismatch means fresh start.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    if db_path.exists():
        conn = sqlite3.connect(db_path)
        try:
            existing_version = _get_schema_version_raw(conn)
            if existing_version != SCHEMA_VERSION:
                log.info(
                    "schema_mismatch",
                    existing=existing_version,
                    expected=SCHEMA_VERSION,
                    action="recreate",
                )
                conn.close()
                _remove_database_files(db_path)
            else:
                conn.close()
                return
        except sqlite3.DatabaseError:
            # Corrupted or incompatible DB - delete and recreate
            conn.close()
            _remove_database_files(db_path)

    conn = sqlite3.connect(db_path)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.executescript(SCHEMA)
        conn.execute(
            "INSERT OR REPLACE INTO daemon_state (key, value, updated_at) VALUES (?, ?, ?)",
            ("schema_version", str(SCHEMA_VERSION), time.time()),
        )
        conn.commit()
        log.info("database_initialized", path=str(db_path), version=SCHEMA_VERSION)
    finally:
        conn.close()


def _remove_database_files(db_path: Path) -> None:
    db_path.unlink()
    for suffix in (".db-wal", ".db-shm"):
        sidecar = db_path.with_suffix(suffix)
        if sidecar.exists():
            sidecar.unlink()


def _get_schema_version_raw(conn: sqlite3.Connection) -> int:
    """Get schema version without error handling (for init_database use)."""
    row = conn.execute("SELECT value FROM daemon_state WHERE key = 'schema_version'").fetchone()
    return int(row[0]) if row else 0


def get_connection(db_path: Path) -> sqlite3.Connection:
    """Get a database connection."""
    return sqlite3.connect(db_path)


class DatabaseNotAvailable(Exception):
    """Raised when database doesn't exist and command should exit gracefully."""

    pass


@contextmanager
def require_database(
    db_path: Path, *, exit_on_missing: bool = False
) -> Generator[sqlite3.Connection, None, None]:
    """Context manager for commands requiring database access.

    Args:
        db_path: Path to the database file
        exit_on_missing: If True, raise SystemExit(1) on missing database.
                        If False, raise DatabaseNotAvailable.

    Raises:
        DatabaseNotAvailable: If database doesn't exist and exit_on_missing is False
        SystemExit: If database doesn't exist and exit_on_missing is True
    """
    import click

    if not db_path.exists():
        if exit_on_missing:
            click.echo("Error: Database not found", err=True)
            raise SystemExit(1)
        click.echo("Database not found. Run 'usage-monitor daemon' first.")
        raise DatabaseNotAvailable()

    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Get current schema version from database."""
    try:
        row = conn.execute("SELECT value FROM daemon_state WHERE key = 'schema_version'").fetchone()
        return int(row[0]) if row else 0
    except sqlite3.OperationalError:
        return 0


def get_daemon_state(conn: sqlite3.Connection, key: str) -> str | None:
    """Get a value from daemon_state table."""
    try:
        row = conn.execute("SELECT value FROM daemon_state WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None
    except sqlite3.OperationalError:
        return None


def set_daemon_state(conn: sqlite3.Connection, key: str, value: str) -> None:
    """Set a value in daemon_state table."""
    conn.execute(
        "INSERT OR REPLACE INTO daemon_state (key, value, updated_at) VALUES (?, ?, ?)",
        (key, value, time.time()),
    )
    conn.commit()


def get_open_events(conn: sqlite3.Connection) -> list[tuple[int, str, int]]:
    """Return (pid, process_name, start_time) for every event without an end time.

    Errors propagate; startup reconciliation decides what to do with them.
    """
    cursor = conn.execute(
        "SELECT pid, process_name, start_time FROM app_events WHERE end_time IS NULL"
    )
    return [(int(r[0]), str(r[1]), int(r[2])) for r in cursor.fetchall()]


def get_app_events(
    conn: sqlite3.Connection,
    limit: int = 20,
    open_only: bool = False,
) -> list[dict]:
    """Get recorded app events, newest first."""
    where = "WHERE end_time IS NULL" if open_only else ""
    cursor = conn.execute(
        f"""SELECT id, process_name, pid, parent_process_name, exe_path, start_time, end_time
            FROM app_events
            {where}
            ORDER BY start_time DESC, id DESC
            LIMIT ?""",
        (limit,),
    )
    return [
        {
            "id": r[0],
            "process_name": r[1],
            "pid": r[2],
            "parent_process_name": r[3],
            "exe_path": r[4],
            "start_time": r[5],
            "end_time": r[6],
        }
        for r in cursor.fetchall()
    ]


def clear_history(conn: sqlite3.Connection) -> int:
    """Delete every app event. Returns the number of rows removed."""
    cursor = conn.execute("DELETE FROM app_events")
    conn.commit()
    deleted = cursor.rowcount
    log.info("history_cleared", events_deleted=deleted)
    return deleted


def prune_old_data(
    conn: sqlite3.Connection,
    events_days: int = 90,
) -> int:
    """Delete closed events that ended more than events_days ago.

    Open events are never pruned. Returns the number of rows removed.
    """
    cutoff = int(time.time()) - events_days * 86400
    cursor = conn.execute(
        "DELETE FROM app_events WHERE end_time IS NOT NULL AND end_time < ?",
        (cutoff,),
    )
    conn.commit()
    deleted = cursor.rowcount
    log.info("prune_complete", events_deleted=deleted, cutoff=cutoff)
    return deleted
