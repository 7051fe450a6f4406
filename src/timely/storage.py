#!/usr/bin/env python3
"""
Event storage for timely.
Handles all reads and writes of activity events and the sync cursor.
"""

import sqlite3
from datetime import datetime
from typing import List, Optional, Tuple

from .db import storage_errors, transaction
from .models import Event, SyncLog, parse_rfc3339, to_rfc3339, utc_now

EVENT_COLUMNS = """
    e.id, e.device_id, e.timestamp, e.duration, e.app, e.title, e.url,
    e.url_domain, e.category_id, c.name AS category_name, e.is_afk
"""


def event_from_row(row: sqlite3.Row) -> Event:
    """Build an Event from a row selected with EVENT_COLUMNS."""
    return Event(
        id=row["id"],
        device_id=row["device_id"],
        timestamp=parse_rfc3339(row["timestamp"]),
        duration=row["duration"],
        app=row["app"],
        title=row["title"],
        url=row["url"],
        url_domain=row["url_domain"],
        category_id=row["category_id"],
        category_name=row["category_name"],
        is_afk=bool(row["is_afk"]),
    )


class EventStore:
    """Manages storage and retrieval of activity events.

    Callers in the capture path are expected to be the only writer for their
    device; the store relies on SQLite for everything else.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def insert(
        self,
        device_id: str,
        timestamp: datetime,
        duration: float,
        app: str,
        title: str,
        url: Optional[str] = None,
        url_domain: Optional[str] = None,
        category_id: Optional[int] = None,
        is_afk: bool = False,
    ) -> int:
        """Append a new event and return its id."""
        with transaction(self.conn):
            cursor = self.conn.execute(
                """
                INSERT INTO events (device_id, timestamp, duration, app, title,
                                    url, url_domain, category_id, is_afk)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    device_id,
                    to_rfc3339(timestamp),
                    duration,
                    app,
                    title,
                    url,
                    url_domain,
                    category_id,
                    int(is_afk),
                ),
            )
            return cursor.lastrowid

    def extend(self, event_id: int, new_duration: float) -> None:
        """Set the duration of an ongoing event."""
        with transaction(self.conn):
            self.conn.execute(
                "UPDATE events SET duration = ? WHERE id = ?",
                (new_duration, event_id),
            )

    def update_category(self, event_id: int, category_id: Optional[int]) -> None:
        with transaction(self.conn):
            self.conn.execute(
                "UPDATE events SET category_id = ? WHERE id = ?",
                (category_id, event_id),
            )

    def get(self, event_id: int) -> Optional[Event]:
        with storage_errors():
            row = self.conn.execute(
                f"""
                SELECT {EVENT_COLUMNS}
                FROM events e
                LEFT JOIN categories c ON c.id = e.category_id
                WHERE e.id = ?
                """,
                (event_id,),
            ).fetchone()
        return event_from_row(row) if row else None

    def get_last(self, device_id: str) -> Optional[Event]:
        """Most recently inserted event for a device."""
        with storage_errors():
            row = self.conn.execute(
                f"""
                SELECT {EVENT_COLUMNS}
                FROM events e
                LEFT JOIN categories c ON c.id = e.category_id
                WHERE e.device_id = ?
                ORDER BY e.id DESC
                LIMIT 1
                """,
                (device_id,),
            ).fetchone()
        return event_from_row(row) if row else None

    def query_range(
        self, start: datetime, end: datetime, limit: Optional[int] = None
    ) -> List[Event]:
        """Events whose start lies within [start, end], newest first."""
        with storage_errors():
            rows = self.conn.execute(
                f"""
                SELECT {EVENT_COLUMNS}
                FROM events e
                LEFT JOIN categories c ON c.id = e.category_id
                WHERE e.timestamp >= ? AND e.timestamp <= ?
                ORDER BY e.timestamp DESC
                LIMIT ?
                """,
                (to_rfc3339(start), to_rfc3339(end), -1 if limit is None else limit),
            ).fetchall()
        return [event_from_row(row) for row in rows]

    def query_after_id(self, device_id: str, after_id: int, limit: int) -> List[Event]:
        """Events of one device with id > after_id, oldest first."""
        with storage_errors():
            rows = self.conn.execute(
                f"""
                SELECT {EVENT_COLUMNS}
                FROM events e
                LEFT JOIN categories c ON c.id = e.category_id
                WHERE e.device_id = ? AND e.id > ?
                ORDER BY e.id ASC
                LIMIT ?
                """,
                (device_id, after_id, limit),
            ).fetchall()
        return [event_from_row(row) for row in rows]

    def count_after_id(self, device_id: str, after_id: int) -> int:
        with storage_errors():
            row = self.conn.execute(
                "SELECT COUNT(*) FROM events WHERE device_id = ? AND id > ?",
                (device_id, after_id),
            ).fetchone()
        return row[0]

    # Sync cursor

    def get_cursor(self, device_id: str) -> Optional[SyncLog]:
        with storage_errors():
            row = self.conn.execute(
                """
                SELECT device_id, last_synced_event_id, last_sync_at
                FROM sync_log WHERE device_id = ?
                """,
                (device_id,),
            ).fetchone()
        if row is None:
            return None
        return SyncLog(
            device_id=row["device_id"],
            last_synced_event_id=row["last_synced_event_id"],
            last_sync_at=row["last_sync_at"],
        )

    def set_cursor(self, device_id: str, last_event_id: int) -> None:
        with transaction(self.conn):
            self.conn.execute(
                """
                INSERT INTO sync_log (device_id, last_synced_event_id, last_sync_at)
                VALUES (?, ?, ?)
                ON CONFLICT(device_id) DO UPDATE SET
                    last_synced_event_id = excluded.last_synced_event_id,
                    last_sync_at = excluded.last_sync_at
                """,
                (device_id, last_event_id, to_rfc3339(utc_now())),
            )

    # Hub side

    def upsert_remote_event(
        self,
        device_id: str,
        timestamp: datetime,
        duration: float,
        app: str,
        title: str,
        url: Optional[str] = None,
        url_domain: Optional[str] = None,
        category_id: Optional[int] = None,
        is_afk: bool = False,
    ) -> bool:
        """Merge one pushed event on (device_id, timestamp, app, title).

        Inserts when the key is new and returns True. Otherwise keeps the
        longer of the two durations, taking the incoming mutable fields only
        when the incoming duration is strictly greater, and returns False.
        The lookup and the write share one IMMEDIATE transaction.
        """
        ts = to_rfc3339(timestamp)
        with transaction(self.conn, immediate=True):
            existing = self.conn.execute(
                """
                SELECT id, duration FROM events
                WHERE device_id = ? AND timestamp = ? AND app = ? AND title = ?
                ORDER BY id
                LIMIT 1
                """,
                (device_id, ts, app, title),
            ).fetchone()

            if existing is None:
                self.conn.execute(
                    """
                    INSERT INTO events (device_id, timestamp, duration, app, title,
                                        url, url_domain, category_id, is_afk)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (device_id, ts, duration, app, title, url, url_domain,
                     category_id, int(is_afk)),
                )
                return True

            if duration > existing["duration"]:
                self.conn.execute(
                    """
                    UPDATE events
                    SET duration = ?, url = ?, url_domain = ?, category_id = ?, is_afk = ?
                    WHERE id = ?
                    """,
                    (duration, url, url_domain, category_id, int(is_afk), existing["id"]),
                )
            return False

    def device_event_counts(self) -> List[Tuple[str, str, str, Optional[str], int]]:
        """(id, name, platform, last_sync, event_count) for every known device."""
        with storage_errors():
            rows = self.conn.execute(
                """
                SELECT d.id, d.name, d.platform, d.last_sync,
                       (SELECT COUNT(*) FROM events WHERE device_id = d.id) AS event_count
                FROM devices d
                ORDER BY d.name
                """
            ).fetchall()
        return [
            (row["id"], row["name"], row["platform"], row["last_sync"], row["event_count"])
            for row in rows
        ]

    def total_event_count(self) -> int:
        with storage_errors():
            return self.conn.execute("SELECT COUNT(*) FROM events").fetchone()[0]
