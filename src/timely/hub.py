#!/usr/bin/env python3
"""
Sync hub for timely.

``SyncHub`` merges event streams pushed by client devices into one database.
``build_app`` exposes it over HTTP with FastAPI:

  POST /api/sync/register  - record a device identity
  POST /api/sync/push      - merge a batch of events from one device
  GET  /api/sync/status    - devices known to the hub with event counts

Every response is an ``{ok, data}`` / ``{ok, error, error_code}`` envelope.
When an API key is configured, requests must carry it in ``X-API-Key``.
"""

import logging
import secrets
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .categories import CategoryStore
from .db import get_connection
from .devices import DeviceRegistry
from .errors import TimelyError, UnauthorizedError, failure, success
from .models import parse_rfc3339
from .storage import EventStore

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"


class SyncHub:
    """Hub-side ingest, registration and status over one connection."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.events = EventStore(conn)
        self.categories = CategoryStore(conn)
        self.devices = DeviceRegistry(conn)

    def _resolve_category(self, name: Optional[str], cache: Dict[str, Optional[int]]) -> Optional[int]:
        if not name:
            return None
        if name not in cache:
            category = self.categories.get_category_by_name(name)
            cache[name] = category.id if category else None
        return cache[name]

    def ingest_push(
        self, device: Mapping[str, str], events: Iterable[Mapping[str, Any]]
    ) -> Dict[str, int]:
        """Merge one pushed batch and count inserted vs. already-known events."""
        device_id = device["id"]
        self.devices.upsert_remote(device_id, device["name"], device["platform"])

        accepted = 0
        duplicates = 0
        category_cache: Dict[str, Optional[int]] = {}

        for event in events:
            timestamp = event["timestamp"]
            if not isinstance(timestamp, datetime):
                timestamp = parse_rfc3339(timestamp)

            inserted = self.events.upsert_remote_event(
                device_id=device_id,
                timestamp=timestamp,
                duration=float(event["duration"]),
                app=event["app"],
                title=event["title"],
                url=event.get("url"),
                url_domain=event.get("url_domain"),
                category_id=self._resolve_category(event.get("category_name"), category_cache),
                is_afk=bool(event.get("is_afk", False)),
            )
            if inserted:
                accepted += 1
            else:
                duplicates += 1

        logger.info(
            "Push from %s: %d accepted, %d duplicates", device_id, accepted, duplicates
        )
        return {"accepted": accepted, "duplicates": duplicates}

    def register(self, device_id: str, name: str, platform_name: str) -> Dict[str, Any]:
        self.devices.upsert_remote(device_id, name, platform_name)
        logger.info("Registered device %s (%s, %s)", device_id, name, platform_name)
        return {"device_id": device_id, "name": name, "registered": True}

    def status(self) -> Dict[str, Any]:
        devices = [
            {
                "id": device_id,
                "name": name,
                "platform": platform_name,
                "last_sync": last_sync,
                "event_count": event_count,
            }
            for device_id, name, platform_name, last_sync, event_count
            in self.events.device_event_counts()
        ]
        return {"devices": devices, "total_events": self.events.total_event_count()}


# Request models


class PushDevice(BaseModel):
    id: str
    name: str
    platform: str


class PushEvent(BaseModel):
    timestamp: datetime
    duration: float = Field(ge=0)
    app: str
    title: str
    url: Optional[str] = None
    url_domain: Optional[str] = None
    category_name: Optional[str] = None
    is_afk: bool = False


class PushRequest(BaseModel):
    device: PushDevice
    events: List[PushEvent]


class RegisterRequest(BaseModel):
    device_id: str
    name: str
    platform: str


def build_app(db_path: Union[str, Path], api_key: Optional[str] = None) -> FastAPI:
    """Build the hub application for the database at ``db_path``.

    ``api_key`` of None runs the hub in open mode.
    """
    db_path = Path(db_path)

    with get_connection(db_path) as conn:
        CategoryStore(conn).seed_builtin_categories()

    app = FastAPI(title="timely sync hub", docs_url=None, redoc_url=None)

    @app.middleware("http")
    async def require_api_key(request: Request, call_next):
        if api_key is None:
            return await call_next(request)

        client_key = request.headers.get(API_KEY_HEADER)
        if client_key is None:
            error = UnauthorizedError("Missing X-API-Key header (hub has auth enabled)")
        elif not secrets.compare_digest(client_key.encode("utf-8"), api_key.encode("utf-8")):
            error = UnauthorizedError("Invalid API key")
        else:
            return await call_next(request)
        return JSONResponse(status_code=401, content=failure(error))

    @app.exception_handler(TimelyError)
    async def timely_error_handler(request: Request, exc: TimelyError):
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=500,
            content={"ok": False, "error": str(exc), "error_code": "sync_error"},
        )

    @app.post("/api/sync/register")
    def register(req: RegisterRequest):
        with get_connection(db_path) as conn:
            data = SyncHub(conn).register(req.device_id, req.name, req.platform)
        return success(data)

    @app.post("/api/sync/push")
    def push(req: PushRequest):
        with get_connection(db_path) as conn:
            data = SyncHub(conn).ingest_push(
                req.device.model_dump(), [event.model_dump() for event in req.events]
            )
        return success(data)

    @app.get("/api/sync/status")
    def status():
        with get_connection(db_path) as conn:
            data = SyncHub(conn).status()
        return success(data)

    return app


def serve(
    db_path: Union[str, Path],
    host: str = "127.0.0.1",
    port: int = 7890,
    api_key: Optional[str] = None,
) -> None:
    """Run the hub with uvicorn until interrupted."""
    app = build_app(db_path, api_key)
    logger.info(
        "Hub listening on %s:%d (db %s, auth %s)",
        host, port, db_path, "on" if api_key else "off",
    )
    uvicorn.run(app, host=host, port=port, log_level="info")
