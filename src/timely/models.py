#!/usr/bin/env python3
"""
Data types shared by the capture, categorization and sync layers.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_rfc3339(value: datetime) -> str:
    """Render a datetime as RFC 3339 text in UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_rfc3339(text: str) -> datetime:
    """Parse RFC 3339 text into an aware UTC datetime.

    Naive values are taken to be UTC. A trailing ``Z`` is accepted.
    """
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    value = datetime.fromisoformat(text)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class Snapshot:
    """One point-in-time observation of the user's current activity."""

    app: str
    title: str
    url: Optional[str] = None
    url_domain: Optional[str] = None
    is_afk: bool = False


class RuleField(Enum):
    """Snapshot field a category rule is matched against."""

    APP = "app"
    TITLE = "title"
    URL_DOMAIN = "url_domain"

    def select(self, snapshot: Snapshot) -> Optional[str]:
        """Return the value of this field on ``snapshot``."""
        if self is RuleField.APP:
            return snapshot.app
        if self is RuleField.TITLE:
            return snapshot.title
        if self is RuleField.URL_DOMAIN:
            return snapshot.url_domain
        raise ValueError(f"Unhandled rule field: {self!r}")

    @classmethod
    def parse(cls, value: str) -> "RuleField":
        try:
            return cls(value)
        except ValueError:
            choices = ", ".join(member.value for member in cls)
            raise ValueError(
                f"Invalid rule field {value!r} (expected one of: {choices})"
            ) from None


@dataclass
class Event:
    """A durable span of one continuous activity."""

    id: int
    device_id: str
    timestamp: datetime
    duration: float
    app: str
    title: str
    url: Optional[str] = None
    url_domain: Optional[str] = None
    category_id: Optional[int] = None
    category_name: Optional[str] = None
    is_afk: bool = False

    def same_activity(self, snapshot: Snapshot) -> bool:
        """Whether ``snapshot`` continues this event.

        The full URL is not compared; only its domain matters.
        """
        return (
            self.app == snapshot.app
            and self.title == snapshot.title
            and self.url_domain == snapshot.url_domain
            and self.is_afk == snapshot.is_afk
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "device_id": self.device_id,
            "timestamp": to_rfc3339(self.timestamp),
            "duration": self.duration,
            "app": self.app,
            "title": self.title,
            "url": self.url,
            "url_domain": self.url_domain,
            "category_id": self.category_id,
            "category_name": self.category_name,
            "is_afk": self.is_afk,
        }


@dataclass
class Category:
    id: int
    name: str
    parent_id: Optional[int] = None
    productivity_score: float = 0.0


@dataclass
class CategoryRule:
    id: int
    category_id: int
    field: RuleField
    pattern: str
    is_builtin: bool = False
    priority: int = 0
    category_name: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category_id": self.category_id,
            "category_name": self.category_name,
            "field": self.field.value,
            "pattern": self.pattern,
            "is_builtin": self.is_builtin,
            "priority": self.priority,
        }


@dataclass
class Device:
    id: str
    name: str
    platform: str
    last_sync: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "platform": self.platform,
            "last_sync": to_rfc3339(self.last_sync),
        }


@dataclass
class SyncLog:
    """Durable push cursor for one device."""

    device_id: str
    last_synced_event_id: int
    last_sync_at: str


@dataclass
class SyncPushResult:
    """Totals accumulated over one push invocation."""

    accepted: int = 0
    duplicates: int = 0
    batches: int = 0

    def to_dict(self) -> dict:
        return {
            "accepted": self.accepted,
            "duplicates": self.duplicates,
            "batches": self.batches,
        }


@dataclass
class DaemonStatus:
    running: bool
    pid: Optional[int] = None

    def to_dict(self) -> dict:
        return {"running": self.running, "pid": self.pid}
