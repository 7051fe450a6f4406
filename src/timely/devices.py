#!/usr/bin/env python3
"""
Device identity for timely.
Resolves the local device and records devices seen by the hub.
"""

import logging
import platform
import socket
import sqlite3
import sys
import uuid
from typing import List, Optional

from .db import storage_errors, transaction
from .models import Device, parse_rfc3339, to_rfc3339, utc_now

logger = logging.getLogger(__name__)


def current_platform() -> str:
    """Platform label stored with the device: macos, linux or unknown."""
    if sys.platform == "darwin":
        return "macos"
    if sys.platform.startswith("linux"):
        return "linux"
    return "unknown"


class DeviceIdentifier:
    """Generates device identification information."""

    @staticmethod
    def get_device_name() -> str:
        """Get the device/laptop name for identification."""
        try:
            hostname = socket.gethostname()
        except OSError:
            hostname = ""

        # On macOS, remove .local suffix
        if hostname.endswith(".local"):
            hostname = hostname[:-6]

        # If hostname is generic, fall back to platform node
        if not hostname or hostname in ["localhost", "unknown"]:
            hostname = platform.node()
            if hostname.endswith(".local"):
                hostname = hostname[:-6]

        return hostname or f"{current_platform()}-{platform.machine()}"


def _device_from_row(row: sqlite3.Row) -> Device:
    return Device(
        id=row["id"],
        name=row["name"],
        platform=row["platform"],
        last_sync=parse_rfc3339(row["last_sync"]),
    )


class DeviceRegistry:
    """Reads and writes the devices table."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def get_or_create(
        self, hostname: Optional[str] = None, platform_name: Optional[str] = None
    ) -> Device:
        """Resolve the local device by (hostname, platform), creating it once."""
        hostname = hostname or DeviceIdentifier.get_device_name()
        platform_name = platform_name or current_platform()
        now = utc_now()

        with transaction(self.conn, immediate=True):
            row = self.conn.execute(
                "SELECT id, name, platform, last_sync FROM devices WHERE name = ? AND platform = ?",
                (hostname, platform_name),
            ).fetchone()

            if row is not None:
                device = _device_from_row(row)
                self.conn.execute(
                    "UPDATE devices SET last_sync = ? WHERE id = ?",
                    (to_rfc3339(now), device.id),
                )
                return device

            device = Device(
                id=str(uuid.uuid4()), name=hostname, platform=platform_name, last_sync=now
            )
            self.conn.execute(
                "INSERT INTO devices (id, name, platform, last_sync) VALUES (?, ?, ?, ?)",
                (device.id, device.name, device.platform, to_rfc3339(now)),
            )
        logger.info("Registered local device %s (%s, %s)", device.id, hostname, platform_name)
        return device

    def upsert_remote(self, device_id: str, name: str, platform_name: str) -> None:
        """Insert or refresh a device identity reported by a client."""
        with transaction(self.conn):
            self.conn.execute(
                """
                INSERT INTO devices (id, name, platform, last_sync)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    platform = excluded.platform,
                    last_sync = excluded.last_sync
                """,
                (device_id, name, platform_name, to_rfc3339(utc_now())),
            )

    def get(self, device_id: str) -> Optional[Device]:
        with storage_errors():
            row = self.conn.execute(
                "SELECT id, name, platform, last_sync FROM devices WHERE id = ?",
                (device_id,),
            ).fetchone()
        return _device_from_row(row) if row else None

    def list_devices(self) -> List[Device]:
        with storage_errors():
            rows = self.conn.execute(
                "SELECT id, name, platform, last_sync FROM devices ORDER BY name"
            ).fetchall()
        return [_device_from_row(row) for row in rows]
