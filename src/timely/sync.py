#!/usr/bin/env python3
"""
Sync Manager for timely.
Pushes unsynced local events to the hub and tracks the push cursor.
"""

import logging
import sqlite3
from typing import Any, Dict, Optional

from .config import SYNC_BATCH_SIZE, Config
from .devices import DeviceRegistry
from .errors import ConfigError, SyncError
from .http_sync import HttpSyncClient, SyncResultCollector
from .models import Device, SyncPushResult
from .storage import EventStore

logger = logging.getLogger(__name__)


class SyncManager:
    """Orchestrates cursor-based pushes to the hub."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        config: Config,
        http_client: Optional[HttpSyncClient] = None,
        batch_size: int = SYNC_BATCH_SIZE,
    ):
        self.conn = conn
        self.config = config
        self.batch_size = batch_size
        self.events = EventStore(conn)
        self.devices = DeviceRegistry(conn)
        self._http_client = http_client

    @property
    def http_client(self) -> HttpSyncClient:
        if self._http_client is None:
            if not self.config.hub_url:
                raise ConfigError("Hub URL not configured (run: timely sync setup --hub URL)")
            self._http_client = HttpSyncClient(self.config.hub_url, self.config.api_key)
        return self._http_client

    def push_events(self, device: Optional[Device] = None) -> SyncPushResult:
        """Push every event newer than the cursor, one batch at a time.

        The cursor only moves after the hub acknowledges a batch, so a failed
        batch is resent in full by the next push.
        """
        client = self.http_client
        device = device or self.devices.get_or_create()

        sync_log = self.events.get_cursor(device.id)
        cursor = sync_log.last_synced_event_id if sync_log else 0
        collector = SyncResultCollector()

        while True:
            batch = self.events.query_after_id(device.id, cursor, self.batch_size)
            if not batch:
                break

            counts = client.push_batch(device, batch)

            last_id = batch[-1].id
            self.events.set_cursor(device.id, last_id)
            cursor = last_id
            collector.record_batch(counts["accepted"], counts["duplicates"])
            logger.debug("Pushed batch ending at event %d", last_id)

            if len(batch) < self.batch_size:
                break

        collector.log_summary()
        return collector.get_results()

    def setup(self, hub_url: str, api_key: Optional[str] = None) -> Dict[str, Any]:
        """Save the hub settings, enable sync and register this device."""
        if not hub_url:
            raise ConfigError("Hub URL must not be empty")

        self.config.hub_url = hub_url
        if api_key is not None:
            self.config.api_key = api_key
        self.config.sync_enabled = True
        self.config.save()
        self._http_client = None

        device = self.devices.get_or_create()
        logger.info("Registering device '%s' with hub at %s", device.name, self.config.hub_url)
        self.http_client.register(device)

        return {
            "hub_url": self.config.hub_url,
            "device_id": device.id,
            "device_name": device.name,
            "registered": True,
            "sync_enabled": True,
            "auth": bool(self.config.api_key),
        }

    def get_sync_status(self) -> Dict[str, Any]:
        """Local sync state plus whatever the hub reports, if reachable."""
        device = self.devices.get_or_create()
        sync_log = self.events.get_cursor(device.id)
        cursor = sync_log.last_synced_event_id if sync_log else 0

        hub_reachable = False
        remote = None
        if self.config.hub_url:
            try:
                remote = self.http_client.get_status()
                hub_reachable = True
            except SyncError as e:
                logger.debug("Hub status unavailable: %s", e)

        return {
            "sync_enabled": self.config.sync_enabled,
            "hub_url": self.config.hub_url or None,
            "hub_reachable": hub_reachable,
            "device": device.name,
            "last_sync_at": sync_log.last_sync_at if sync_log else None,
            "pending_events": self.events.count_after_id(device.id, cursor),
            "remote": remote,
        }
