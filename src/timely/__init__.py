"""
timely - activity tracking with multi-device sync.

This package records what is in the foreground of a workstation and
provides:

- Heartbeat-driven segmentation of activity snapshots into events
- Rule-based categorization with builtin and user rules
- Background operation via a capture daemon
- Cursor-based sync of events to a central hub
- JSON and CSV export, and import of JSON exports
- SQLite storage with versioned migrations
"""

__version__ = "0.3.0"
__license__ = "MIT"

from .categories import CategoryStore, classify
from .daemon import ActivityDaemon, CaptureDaemon, CancellationToken
from .heartbeat import HeartbeatSegmenter, process_heartbeat
from .hub import SyncHub, build_app
from .storage import EventStore
from .sync import SyncManager

__all__ = [
    "ActivityDaemon",
    "CancellationToken",
    "CaptureDaemon",
    "CategoryStore",
    "EventStore",
    "HeartbeatSegmenter",
    "SyncHub",
    "SyncManager",
    "build_app",
    "classify",
    "process_heartbeat",
]
