"""Tests for heartbeat segmentation."""

from datetime import timedelta
from unittest.mock import Mock

import pytest

from timely.categories import CategoryStore
from timely.devices import DeviceRegistry
from timely.heartbeat import (
    CREATED,
    EXTENDED,
    ActivityLogger,
    HeartbeatSegmenter,
    process_heartbeat,
)
from timely.models import Snapshot
from timely.storage import EventStore


@pytest.fixture
def segmenter(conn):
    return HeartbeatSegmenter(conn)


def test_first_heartbeat_creates_event(segmenter, conn, device, coding_snapshot, t0):
    result = segmenter.process_heartbeat(device.id, coding_snapshot, now=t0)

    assert result.action == CREATED
    event = EventStore(conn).get(result.event_id)
    assert event.duration == 0.0
    assert event.timestamp == t0
    assert event.category_name == "work/coding"


def test_same_activity_within_gap_extends(segmenter, conn, device, coding_snapshot, t0):
    first = segmenter.process_heartbeat(device.id, coding_snapshot, now=t0)
    second = segmenter.process_heartbeat(
        device.id, coding_snapshot, now=t0 + timedelta(seconds=5)
    )
    third = segmenter.process_heartbeat(
        device.id, coding_snapshot, now=t0 + timedelta(seconds=10)
    )

    assert second.action == EXTENDED
    assert third.action == EXTENDED
    assert first.event_id == second.event_id == third.event_id
    assert EventStore(conn).get(first.event_id).duration == 10.0


def test_gap_larger_than_merge_window_segments(segmenter, device, coding_snapshot, t0):
    first = segmenter.process_heartbeat(device.id, coding_snapshot, now=t0)
    # duration 0 + 65s gap; 65 is not < 65
    second = segmenter.process_heartbeat(
        device.id, coding_snapshot, now=t0 + timedelta(seconds=65)
    )

    assert second.action == CREATED
    assert second.event_id != first.event_id


def test_gap_just_inside_merge_window_extends(segmenter, device, coding_snapshot, t0):
    segmenter.process_heartbeat(device.id, coding_snapshot, now=t0)
    result = segmenter.process_heartbeat(
        device.id, coding_snapshot, now=t0 + timedelta(seconds=64)
    )
    assert result.action == EXTENDED
    assert result.duration == 64.0


@pytest.mark.parametrize(
    "changed",
    [
        Snapshot(app="Terminal", title="main.py - timely"),
        Snapshot(app="Code", title="other.py - timely"),
        Snapshot(app="Code", title="main.py - timely", url_domain="example.com"),
        Snapshot(app="Code", title="main.py - timely", is_afk=True),
    ],
)
def test_change_in_identity_field_segments(segmenter, device, coding_snapshot, t0, changed):
    first = segmenter.process_heartbeat(device.id, coding_snapshot, now=t0)
    second = segmenter.process_heartbeat(device.id, changed, now=t0 + timedelta(seconds=5))

    assert second.action == CREATED
    assert second.event_id != first.event_id


def test_url_change_alone_extends(segmenter, device, browser_snapshot, t0):
    segmenter.process_heartbeat(device.id, browser_snapshot, now=t0)
    moved = Snapshot(
        app=browser_snapshot.app,
        title=browser_snapshot.title,
        url="https://github.com/issues",
        url_domain="github.com",
    )
    result = segmenter.process_heartbeat(device.id, moved, now=t0 + timedelta(seconds=5))
    assert result.action == EXTENDED


def test_unmatched_snapshot_falls_back_to_uncategorized(segmenter, conn, device, t0):
    result = segmenter.process_heartbeat(
        device.id, Snapshot(app="Finder", title="Downloads"), now=t0
    )
    event = EventStore(conn).get(result.event_id)
    assert event.category_name == "uncategorized"


def test_extend_does_not_load_rules(conn, device, coding_snapshot, t0):
    segmenter = HeartbeatSegmenter(conn)
    segmenter.process_heartbeat(device.id, coding_snapshot, now=t0)

    segmenter.categories = Mock(spec=CategoryStore)
    segmenter.process_heartbeat(device.id, coding_snapshot, now=t0 + timedelta(seconds=5))

    segmenter.categories.list_rules.assert_not_called()


def test_devices_are_segmented_independently(conn, coding_snapshot, t0):
    segmenter = HeartbeatSegmenter(conn)
    registry = DeviceRegistry(conn)
    laptop = registry.get_or_create("laptop", "macos")
    desktop = registry.get_or_create("desktop", "macos")

    a = segmenter.process_heartbeat(laptop.id, coding_snapshot, now=t0)
    b = segmenter.process_heartbeat(desktop.id, coding_snapshot, now=t0 + timedelta(seconds=1))

    assert a.action == CREATED
    assert b.action == CREATED


def test_module_level_process_heartbeat(conn, device, coding_snapshot, t0):
    result = process_heartbeat(conn, device.id, coding_snapshot, now=t0)
    assert result.action == CREATED


def test_custom_merge_gap(conn, device, coding_snapshot, t0):
    segmenter = HeartbeatSegmenter(conn, merge_gap=10)
    segmenter.process_heartbeat(device.id, coding_snapshot, now=t0)
    result = segmenter.process_heartbeat(
        device.id, coding_snapshot, now=t0 + timedelta(seconds=11)
    )
    assert result.action == CREATED


def test_activity_logger_logs_switches(caplog, coding_snapshot):
    activity_logger = ActivityLogger(verbose=True)
    with caplog.at_level("INFO", logger="timely.heartbeat"):
        activity_logger.log_activity_switch(None, coding_snapshot)
    assert "Initial activity: Code - main.py - timely" in caplog.text


def test_quiet_activity_logger_logs_nothing(caplog, coding_snapshot):
    activity_logger = ActivityLogger(verbose=False)
    with caplog.at_level("INFO", logger="timely.heartbeat"):
        activity_logger.log_activity_switch(None, coding_snapshot)
        activity_logger.log_tracking_stop()
    assert caplog.text == ""
