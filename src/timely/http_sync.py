#!/usr/bin/env python3
"""
HTTP synchronization client for timely.
Handles all HTTP communication with the sync hub.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

import requests

from .errors import SyncError
from .models import Device, Event, SyncPushResult, to_rfc3339

logger = logging.getLogger(__name__)

# (connect, read) in seconds
DEFAULT_TIMEOUT = (5, 30)


class SyncPayloadBuilder:
    """Builds payloads for the hub endpoints."""

    @staticmethod
    def event_to_dict(event: Event) -> Dict[str, Any]:
        return {
            "timestamp": to_rfc3339(event.timestamp),
            "duration": event.duration,
            "app": event.app,
            "title": event.title,
            "url": event.url,
            "url_domain": event.url_domain,
            "category_name": event.category_name,
            "is_afk": event.is_afk,
        }

    @staticmethod
    def device_to_dict(device: Device) -> Dict[str, str]:
        return {"id": device.id, "name": device.name, "platform": device.platform}

    def create_push_payload(self, device: Device, events: Iterable[Event]) -> Dict[str, Any]:
        """Create payload for the push endpoint."""
        return {
            "device": self.device_to_dict(device),
            "events": [self.event_to_dict(event) for event in events],
        }

    def create_register_payload(self, device: Device) -> Dict[str, str]:
        return {"device_id": device.id, "name": device.name, "platform": device.platform}


class HttpSyncClient:
    """HTTP client for talking to a sync hub."""

    def __init__(self, hub_url: str, api_key: Optional[str] = None, timeout=DEFAULT_TIMEOUT):
        self.hub_url = hub_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.payload_builder = SyncPayloadBuilder()

    def _url(self, path: str) -> str:
        return f"{self.hub_url}/api/sync/{path}"

    def _get_headers(self) -> Dict[str, str]:
        """Get request headers including the API key if configured."""
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    def _request(self, method: str, path: str, payload: Optional[Dict] = None) -> Dict[str, Any]:
        """Send one request and return the ``data`` member of the envelope."""
        url = self._url(path)
        try:
            response = requests.request(
                method,
                url,
                json=payload,
                headers=self._get_headers(),
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise SyncError(f"{path} request to {self.hub_url} failed: {e}") from e

        if not 200 <= response.status_code < 300:
            raise SyncError(
                f"{path} returned HTTP {response.status_code}: {response.text}"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise SyncError(f"{path} response parse error: {e}") from e

        if not isinstance(body, dict):
            raise SyncError(f"{path} response is not an object")
        return body.get("data") or {}

    def push_batch(self, device: Device, events: List[Event]) -> Dict[str, int]:
        """Push one batch; returns the hub's {accepted, duplicates} counts."""
        payload = self.payload_builder.create_push_payload(device, events)
        data = self._request("POST", "push", payload)
        try:
            return {
                "accepted": int(data["accepted"]),
                "duplicates": int(data["duplicates"]),
            }
        except (KeyError, TypeError, ValueError) as e:
            raise SyncError(f"Hub push response missing counts: {data!r}") from e

    def register(self, device: Device) -> Dict[str, Any]:
        payload = self.payload_builder.create_register_payload(device)
        return self._request("POST", "register", payload)

    def get_status(self) -> Dict[str, Any]:
        return self._request("GET", "status")

    def test_connection(self) -> bool:
        """Whether the hub answers the status endpoint."""
        try:
            self.get_status()
        except SyncError as e:
            logger.debug("Hub at %s unreachable: %s", self.hub_url, e)
            return False
        return True


class SyncResultCollector:
    """Accumulates per-batch results into one SyncPushResult."""

    def __init__(self):
        self.result = SyncPushResult()

    def record_batch(self, accepted: int, duplicates: int) -> None:
        self.result.accepted += accepted
        self.result.duplicates += duplicates
        self.result.batches += 1

    def get_results(self) -> SyncPushResult:
        return SyncPushResult(
            accepted=self.result.accepted,
            duplicates=self.result.duplicates,
            batches=self.result.batches,
        )

    def log_summary(self) -> None:
        logger.info(
            "Sync completed: %d accepted, %d duplicates (%d batches)",
            self.result.accepted, self.result.duplicates, self.result.batches,
        )
