#!/usr/bin/env python3
"""
Heartbeat segmentation for timely.
Turns a stream of snapshots into extended or newly created events.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .categories import CategoryStore, classify
from .config import HEARTBEAT_MERGE_GAP_SECS
from .models import Event, Snapshot, utc_now
from .storage import EventStore

logger = logging.getLogger(__name__)

EXTENDED = "extended"
CREATED = "created"


@dataclass(frozen=True)
class HeartbeatResult:
    """What a single heartbeat did to the event table."""

    action: str
    event_id: int
    duration: float = 0.0


class HeartbeatSegmenter:
    """Extend-or-segment reducer over the event table of one database."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        merge_gap: float = HEARTBEAT_MERGE_GAP_SECS,
        activity_logger: Optional["ActivityLogger"] = None,
    ):
        self.events = EventStore(conn)
        self.categories = CategoryStore(conn)
        self.merge_gap = merge_gap
        self.activity_logger = activity_logger or ActivityLogger(verbose=False)

    def process_heartbeat(
        self, device_id: str, snapshot: Snapshot, now: Optional[datetime] = None
    ) -> HeartbeatResult:
        now = now or utc_now()
        last = self.events.get_last(device_id)

        if last is not None and last.same_activity(snapshot):
            elapsed = (now - last.timestamp).total_seconds()
            if elapsed < last.duration + self.merge_gap:
                self.events.extend(last.id, elapsed)
                return HeartbeatResult(EXTENDED, last.id, elapsed)

        category_id = classify(snapshot, self.categories.list_rules())
        if category_id is None:
            category_id = self.categories.uncategorized_id()

        event_id = self.events.insert(
            device_id=device_id,
            timestamp=now,
            duration=0.0,
            app=snapshot.app,
            title=snapshot.title,
            url=snapshot.url,
            url_domain=snapshot.url_domain,
            category_id=category_id,
            is_afk=snapshot.is_afk,
        )
        self.activity_logger.log_activity_switch(last, snapshot)
        return HeartbeatResult(CREATED, event_id)


def process_heartbeat(
    conn: sqlite3.Connection,
    device_id: str,
    snapshot: Snapshot,
    now: Optional[datetime] = None,
) -> HeartbeatResult:
    """Apply one heartbeat using the default merge gap."""
    return HeartbeatSegmenter(conn).process_heartbeat(device_id, snapshot, now)


class ActivityLogger:
    """Progress lines for the capture loop, silenced unless verbose."""

    def __init__(self, verbose: bool = True):
        self.verbose = verbose

    def log_tracking_start(self, device_id: str, poll_interval: float) -> None:
        if not self.verbose:
            return
        logger.info("Tracking started on device %s (polling every %ss)", device_id, poll_interval)

    def log_activity_switch(self, previous: Optional[Event], snapshot: Snapshot) -> None:
        """Log a new segment, with the duration of the one it replaces."""
        if not self.verbose:
            return

        new_label = "AFK" if snapshot.is_afk else _label(snapshot.app, snapshot.title)
        if previous is None:
            logger.info("Initial activity: %s", new_label)
            return

        old_label = "AFK" if previous.is_afk else _label(previous.app, previous.title)
        logger.info("Switch: %s (%.1fs) -> %s", old_label, previous.duration, new_label)

    def log_sensor_failure(self, error: Exception) -> None:
        logger.warning("Snapshot collection failed: %s", error)

    def log_sync(self, accepted: int, duplicates: int, batches: int) -> None:
        if not self.verbose:
            return
        logger.info(
            "Sync pushed %d batches: %d accepted, %d duplicates",
            batches, accepted, duplicates,
        )

    def log_tracking_stop(self) -> None:
        if self.verbose:
            logger.info("Tracking stopped")


def _label(app: str, title: str) -> str:
    return f"{app} - {title}" if title else app
