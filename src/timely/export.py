#!/usr/bin/env python3
"""
Export and import of activity events.
Events leave as JSON or CSV over a time range and come back in from the JSON
export, re-attributed to the local device.
"""

import csv
import json
import logging
import re
import sqlite3
from datetime import datetime, time, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, TextIO, Union

from .categories import CategoryStore
from .db import transaction
from .errors import InvalidTimeRangeError, NoDataError, TimelyError
from .models import Device, Event, parse_rfc3339, to_rfc3339, utc_now
from .storage import EventStore

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("json", "csv")
CSV_COLUMNS = ("timestamp", "duration", "app", "title", "url", "url_domain", "category", "is_afk")

_RELATIVE_RE = re.compile(r"(\d+)([dhm])")
_DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}")
_RELATIVE_UNITS = {"d": "days", "h": "hours", "m": "minutes"}


def _local_midnight(day, tzinfo) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tzinfo).astimezone(timezone.utc)


def parse_time(text: str, now: Optional[datetime] = None) -> datetime:
    """Parse a time bound given on the command line.

    Accepts ``now``, ``today``, ``yesterday``, relative offsets into the past
    (``7d``, ``2h``, ``30m``), RFC 3339 datetimes and ``YYYY-MM-DD`` dates
    (local midnight). Returns an aware UTC datetime.
    """
    value = text.strip().lower()
    now = now or utc_now()
    local_now = now.astimezone()

    if value == "now":
        return now
    if value == "today":
        return _local_midnight(local_now.date(), local_now.tzinfo)
    if value == "yesterday":
        return _local_midnight(local_now.date() - timedelta(days=1), local_now.tzinfo)

    match = _RELATIVE_RE.fullmatch(value)
    if match:
        amount, unit = match.groups()
        return now - timedelta(**{_RELATIVE_UNITS[unit]: int(amount)})

    if _DATE_RE.fullmatch(value):
        day = datetime.strptime(value, "%Y-%m-%d").date()
        return _local_midnight(day, local_now.tzinfo)

    try:
        return parse_rfc3339(text.strip())
    except ValueError:
        raise InvalidTimeRangeError(
            f"Cannot parse {text!r}. Use: now, today, yesterday, Nd, Nh, Nm, "
            f"YYYY-MM-DD or an RFC 3339 datetime"
        ) from None


def export_events(conn: sqlite3.Connection, start: datetime, end: datetime) -> List[Event]:
    """Events starting within [start, end], newest first.

    Raises NoDataError when the range is empty.
    """
    if start > end:
        raise InvalidTimeRangeError("Start of the range is after its end")
    events = EventStore(conn).query_range(start, end)
    if not events:
        raise NoDataError()
    return events


def write_csv(events: List[Event], out: TextIO) -> None:
    writer = csv.writer(out, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for event in events:
        writer.writerow([
            to_rfc3339(event.timestamp),
            event.duration,
            event.app,
            event.title,
            event.url or "",
            event.url_domain or "",
            event.category_name or "",
            "true" if event.is_afk else "false",
        ])


def load_import_file(path: Union[str, Path]) -> List[Dict[str, Any]]:
    """Read events from a JSON export, with or without the success envelope."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            content = json.load(f)
    except OSError as e:
        raise TimelyError(f"Cannot read import file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise TimelyError(f"Import file {path} is not valid JSON: {e}") from e

    if isinstance(content, dict) and "data" in content:
        content = content["data"]
    if not isinstance(content, list):
        raise TimelyError(f"Import file {path} does not contain a list of events")
    return content


def import_events(
    conn: sqlite3.Connection, device: Device, records: List[Dict[str, Any]]
) -> int:
    """Insert exported events under ``device``; all or nothing.

    Categories are resolved by name in this database; exported ids are
    ignored.
    """
    events = EventStore(conn)
    categories = CategoryStore(conn)
    category_ids: Dict[str, Optional[int]] = {}

    with transaction(conn):
        for index, record in enumerate(records):
            try:
                timestamp = parse_rfc3339(record["timestamp"])
                duration = float(record.get("duration", 0.0))
                app = str(record["app"])
                title = str(record.get("title") or "")
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                raise TimelyError(f"Event {index} in import file is malformed: {e!r}") from e

            name = record.get("category_name")
            if name and name not in category_ids:
                category = categories.get_category_by_name(name)
                category_ids[name] = category.id if category else None

            events.insert(
                device.id,
                timestamp,
                duration,
                app,
                title,
                record.get("url"),
                record.get("url_domain"),
                category_ids.get(name) if name else None,
                bool(record.get("is_afk", False)),
            )

    logger.info("Imported %d events for device %s", len(records), device.name)
    return len(records)
