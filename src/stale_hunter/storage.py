"""SQLite storage layer for stale-hunter.

Holds the set of protected identities and per-app daily usage counters.
"""

import sqlite3
import time
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Generator

import structlog

log = structlog.get_logger()

SCHEMA_VERSION = 3  # Added active time and memory sampling to usage_records


SCHEMA = """
CREATE TABLE IF NOT EXISTS daemon_state (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at REAL
);

CREATE TABLE IF NOT EXISTS protected_apps (
    bundle_id TEXT PRIMARY KEY,
    protected_at REAL NOT NULL
);

-- One row per app identity per local calendar day
CREATE TABLE IF NOT EXISTS usage_records (
    bundle_id TEXT NOT NULL,
    day TEXT NOT NULL,
    app_name TEXT NOT NULL,
    launch_count INTEGER NOT NULL DEFAULT 0,
    activation_count INTEGER NOT NULL DEFAULT 0,
    quit_count INTEGER NOT NULL DEFAULT 0,
    peak_memory_bytes INTEGER NOT NULL DEFAULT 0,
    active_seconds REAL NOT NULL DEFAULT 0,  -- Time spent frontmost
    memory_sum_bytes INTEGER NOT NULL DEFAULT 0,  -- Sum over memory_samples refreshes
    memory_samples INTEGER NOT NULL DEFAULT 0,
    updated_at REAL NOT NULL,
    PRIMARY KEY (bundle_id, day)
);

CREATE INDEX IF NOT EXISTS idx_usage_records_day ON usage_records(day);

-- Last foreground time per running instance, written by the daemon
CREATE TABLE IF NOT EXISTS app_activity (
    app_id TEXT PRIMARY KEY,
    last_active_at REAL NOT NULL
);
"""


def init_database(db_path: Path) -> str:
    """Initialize database with WAL mode and schema.

    If the database exists with a different schema version, it is deleted
    and recreated. No migrations - schema mismatch means fresh start.

    Returns:
        "ready" if an existing database was kept, "created" otherwise
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    if db_path.exists():
        conn = sqlite3.connect(db_path)
        try:
            existing_version = _get_schema_version_raw(conn)
            if existing_version == SCHEMA_VERSION:
                conn.close()
                return "ready"
            log.info(
                "schema_mismatch",
                existing=existing_version,
                expected=SCHEMA_VERSION,
                action="recreate",
            )
        except sqlite3.OperationalError:
            log.warning("database_unreadable", path=str(db_path), action="recreate")
        conn.close()
        _remove_database(db_path)

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
    return "created"


def _remove_database(db_path: Path) -> None:
    """Delete the database file and its WAL/SHM companions."""
    db_path.unlink()
    for suffix in (".db-wal", ".db-shm"):
        companion = db_path.with_suffix(suffix)
        if companion.exists():
            companion.unlink()


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

    Yields:
        sqlite3.Connection: Database connection

    Raises:
        DatabaseNotAvailable: If database doesn't exist and exit_on_missing is False
        SystemExit: If database doesn't exist and exit_on_missing is True
    """
    import click

    if not db_path.exists():
        if exit_on_missing:
            click.echo("Error: Database not found", err=True)
            raise SystemExit(1)
        click.echo("Database not found. Run 'stale-hunter watch' first.")
        raise DatabaseNotAvailable()

    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Get current schema version from database."""
    try:
        return _get_schema_version_raw(conn)
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


# --- Protected Apps ---


def get_protected_apps(conn: sqlite3.Connection) -> set[str]:
    """Return every protected identity."""
    cursor = conn.execute("SELECT bundle_id FROM protected_apps")
    return {row[0] for row in cursor.fetchall()}


def set_protected(conn: sqlite3.Connection, bundle_id: str, protected: bool) -> None:
    """Persist one identity's protection flag."""
    if protected:
        conn.execute(
            "INSERT OR REPLACE INTO protected_apps (bundle_id, protected_at) VALUES (?, ?)",
            (bundle_id, time.time()),
        )
    else:
        conn.execute("DELETE FROM protected_apps WHERE bundle_id = ?", (bundle_id,))
    conn.commit()


# --- App Activity ---


def load_activity(conn: sqlite3.Connection) -> dict[str, float]:
    """Return last_active_at per app id as last written by the daemon."""
    cursor = conn.execute("SELECT app_id, last_active_at FROM app_activity")
    return {row[0]: row[1] for row in cursor.fetchall()}


def save_activity(
    conn: sqlite3.Connection, activity: dict[str, float], *, replace_all: bool = True
) -> None:
    """Persist last_active_at per app id.

    With replace_all, ids not in activity are forgotten (complete reads);
    otherwise rows are only upserted (partial reads).
    """
    if replace_all:
        conn.execute("DELETE FROM app_activity")
    conn.executemany(
        "INSERT OR REPLACE INTO app_activity (app_id, last_active_at) VALUES (?, ?)",
        activity.items(),
    )
    conn.commit()


# --- Usage Records ---


def day_key(timestamp: float | None = None) -> str:
    """Local calendar day (YYYY-MM-DD) for a timestamp (default: now)."""
    moment = datetime.now() if timestamp is None else datetime.fromtimestamp(timestamp)
    return moment.date().isoformat()


def _bump_usage(
    conn: sqlite3.Connection,
    bundle_id: str,
    app_name: str,
    column: str,
    day: str | None,
) -> None:
    """Increment one counter column, creating the day's row if needed."""
    now = time.time()
    conn.execute(
        f"""INSERT INTO usage_records (bundle_id, day, app_name, {column}, updated_at)
            VALUES (?, ?, ?, 1, ?)
            ON CONFLICT (bundle_id, day) DO UPDATE SET
                {column} = {column} + 1,
                app_name = excluded.app_name,
                updated_at = excluded.updated_at""",
        (bundle_id, day or day_key(now), app_name, now),
    )
    conn.commit()


def record_launch(
    conn: sqlite3.Connection, bundle_id: str, app_name: str, day: str | None = None
) -> None:
    """Count one launch of an app."""
    _bump_usage(conn, bundle_id, app_name, "launch_count", day)


def record_activation(
    conn: sqlite3.Connection, bundle_id: str, app_name: str, day: str | None = None
) -> None:
    """Count one activation (brought to front) of an app."""
    _bump_usage(conn, bundle_id, app_name, "activation_count", day)


def record_quit(
    conn: sqlite3.Connection, bundle_id: str, app_name: str, day: str | None = None
) -> None:
    """Count one quit of an app."""
    _bump_usage(conn, bundle_id, app_name, "quit_count", day)


def record_memory_sample(
    conn: sqlite3.Connection,
    bundle_id: str,
    app_name: str,
    memory_bytes: int,
    day: str | None = None,
) -> None:
    """Add one resident-memory reading to the day's average and peak."""
    now = time.time()
    conn.execute(
        """INSERT INTO usage_records
               (bundle_id, day, app_name, peak_memory_bytes, memory_sum_bytes,
                memory_samples, updated_at)
           VALUES (?, ?, ?, ?, ?, 1, ?)
           ON CONFLICT (bundle_id, day) DO UPDATE SET
               peak_memory_bytes = MAX(peak_memory_bytes, excluded.peak_memory_bytes),
               memory_sum_bytes = memory_sum_bytes + excluded.memory_sum_bytes,
               memory_samples = memory_samples + 1,
               updated_at = excluded.updated_at""",
        (bundle_id, day or day_key(now), app_name, memory_bytes, memory_bytes, now),
    )
    conn.commit()


def add_active_time(
    conn: sqlite3.Connection,
    bundle_id: str,
    app_name: str,
    seconds: float,
    day: str | None = None,
) -> None:
    """Add time an app spent frontmost to the day's total."""
    now = time.time()
    conn.execute(
        """INSERT INTO usage_records (bundle_id, day, app_name, active_seconds, updated_at)
           VALUES (?, ?, ?, ?, ?)
           ON CONFLICT (bundle_id, day) DO UPDATE SET
               active_seconds = active_seconds + excluded.active_seconds,
               updated_at = excluded.updated_at""",
        (bundle_id, day or day_key(now), app_name, seconds, now),
    )
    conn.commit()


def get_usage_records(conn: sqlite3.Connection, day: str | None = None) -> list[dict]:
    """Get usage records for a day (default: today), most launched first."""
    cursor = conn.execute(
        """SELECT bundle_id, day, app_name, launch_count, activation_count,
                  quit_count, peak_memory_bytes, active_seconds, memory_sum_bytes,
                  memory_samples, updated_at
           FROM usage_records
           WHERE day = ?
           ORDER BY launch_count DESC, app_name ASC""",
        (day or day_key(),),
    )
    return [
        {
            "bundle_id": r[0],
            "day": r[1],
            "app_name": r[2],
            "launch_count": r[3],
            "activation_count": r[4],
            "quit_count": r[5],
            "peak_memory_bytes": r[6],
            "active_seconds": r[7],
            "average_memory_bytes": r[8] // r[9] if r[9] else 0,
            "updated_at": r[10],
        }
        for r in cursor.fetchall()
    ]


def prune_old_usage(
    conn: sqlite3.Connection,
    usage_days: int = 90,
    *,
    today: date | None = None,
) -> int:
    """Delete usage records older than usage_days.

    Args:
        conn: Database connection
        usage_days: Keep this many days of records
        today: Reference day (default: local today)

    Returns:
        Number of records deleted

    Raises:
        ValueError: If retention days < 1
    """
    if usage_days < 1:
        raise ValueError("Retention days must be >= 1")

    cutoff = ((today or date.today()) - timedelta(days=usage_days)).isoformat()
    cursor = conn.execute("DELETE FROM usage_records WHERE day < ?", (cutoff,))
    deleted = cursor.rowcount
    conn.commit()

    log.info("prune_complete", usage_deleted=deleted)
    return deleted
