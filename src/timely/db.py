"""
SQLite database for timely.

Holds the schema, versioned migrations and connection helpers shared by the
event store, the category tables and the device registry.
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Union

from .errors import StorageError

logger = logging.getLogger(__name__)

# Applied in order; PRAGMA user_version records how many have run.
MIGRATIONS = [
    # 1: initial schema
    """
    CREATE TABLE IF NOT EXISTS devices (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        platform TEXT NOT NULL,
        last_sync TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS categories (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL UNIQUE,
        parent_id INTEGER REFERENCES categories(id),
        productivity_score REAL NOT NULL DEFAULT 0.0
    );

    CREATE TABLE IF NOT EXISTS category_rules (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        category_id INTEGER NOT NULL REFERENCES categories(id),
        field TEXT NOT NULL CHECK(field IN ('app', 'title', 'url_domain')),
        pattern TEXT NOT NULL,
        is_builtin INTEGER NOT NULL DEFAULT 0,
        priority INTEGER NOT NULL DEFAULT 0
    );

    CREATE TABLE IF NOT EXISTS events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        device_id TEXT NOT NULL REFERENCES devices(id),
        timestamp TEXT NOT NULL,
        duration REAL NOT NULL DEFAULT 0.0,
        app TEXT NOT NULL DEFAULT '',
        title TEXT NOT NULL DEFAULT '',
        url TEXT,
        url_domain TEXT,
        category_id INTEGER REFERENCES categories(id),
        is_afk INTEGER NOT NULL DEFAULT 0
    );

    CREATE INDEX IF NOT EXISTS idx_events_timestamp ON events(timestamp);
    CREATE INDEX IF NOT EXISTS idx_events_device ON events(device_id);
    CREATE INDEX IF NOT EXISTS idx_events_category ON events(category_id);
    CREATE INDEX IF NOT EXISTS idx_category_rules_field
        ON category_rules(field, pattern);
    """,
    # 2: push cursor for multi-device sync
    """
    CREATE TABLE IF NOT EXISTS sync_log (
        device_id TEXT PRIMARY KEY,
        last_synced_event_id INTEGER NOT NULL DEFAULT 0,
        last_sync_at TEXT NOT NULL
    );
    """,
    # 3: natural key lookup used by the hub merge
    """
    CREATE INDEX IF NOT EXISTS idx_events_natural_key
        ON events(device_id, timestamp, app, title);
    """,
]


@contextmanager
def storage_errors() -> Iterator[None]:
    """Re-raise sqlite3 errors as StorageError."""
    try:
        yield
    except sqlite3.Error as e:
        raise StorageError(f"Database error: {e}") from e


@contextmanager
def transaction(conn: sqlite3.Connection, immediate: bool = False) -> Iterator[sqlite3.Connection]:
    """Run a block inside a transaction.

    ``immediate`` takes the write lock up front, so a read-then-write sequence
    cannot interleave with another writer. Nested use joins the outer
    transaction.
    """
    if conn.in_transaction:
        with storage_errors():
            yield conn
        return

    with storage_errors():
        conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
        try:
            yield conn
        except BaseException:
            conn.rollback()
            raise
        conn.commit()


def run_migrations(conn: sqlite3.Connection) -> None:
    """Apply any migrations newer than the database's user_version."""
    current_version = conn.execute("PRAGMA user_version").fetchone()[0]

    for index, migration in enumerate(MIGRATIONS):
        version = index + 1
        if version > current_version:
            logger.debug("Applying schema migration %d", version)
            conn.executescript(migration)
            conn.execute(f"PRAGMA user_version = {version}")


def open_db(db_path: Union[str, Path]) -> sqlite3.Connection:
    """Open (creating if needed) a timely database and bring its schema up to date."""
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with storage_errors():
        conn = sqlite3.connect(str(path), isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA foreign_keys=ON")
        run_migrations(conn)
    return conn


@contextmanager
def get_connection(db_path: Union[str, Path]) -> Iterator[sqlite3.Connection]:
    """Context manager for short-lived database connections."""
    conn = open_db(db_path)
    try:
        yield conn
    finally:
        conn.close()
