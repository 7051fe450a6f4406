"""Pytest configuration and fixtures."""

import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

from timely.categories import CategoryStore
from timely.config import Config
from timely.db import open_db
from timely.devices import DeviceRegistry
from timely.models import Snapshot


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    temp_path = tempfile.mkdtemp()
    yield temp_path
    shutil.rmtree(temp_path)


@pytest.fixture
def db_path(temp_dir):
    return Path(temp_dir) / "timely.db"


@pytest.fixture
def conn(db_path):
    """Migrated database with builtin categories seeded."""
    connection = open_db(db_path)
    CategoryStore(connection).seed_builtin_categories()
    yield connection
    connection.close()


@pytest.fixture
def device(conn):
    return DeviceRegistry(conn).get_or_create("test-laptop", "macos")


@pytest.fixture
def config(temp_dir):
    return Config(temp_dir)


@pytest.fixture
def t0():
    return datetime(2024, 1, 15, 14, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def coding_snapshot():
    return Snapshot(app="Code", title="main.py - timely")


@pytest.fixture
def browser_snapshot():
    return Snapshot(
        app="Safari",
        title="Pull requests",
        url="https://github.com/pulls",
        url_domain="github.com",
    )


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")
    config.addinivalue_line("markers", "unit: mark test as unit test")
