#!/usr/bin/env python3
"""
Error types and the JSON response envelope used at process boundaries.
"""

from typing import Any, Dict


class TimelyError(Exception):
    """Base class for all errors raised by timely."""

    error_code = "error"


class StorageError(TimelyError):
    """A database read or write failed."""

    error_code = "db_error"


class ConfigError(TimelyError):
    """Required configuration is missing or invalid."""

    error_code = "config_error"


class SyncError(TimelyError):
    """A push, registration or status call to the hub failed."""

    error_code = "sync_error"


class NoDataError(TimelyError):
    error_code = "no_data"

    def __init__(self, message: str = "No data for the requested time range"):
        super().__init__(message)


class InvalidTimeRangeError(TimelyError):
    error_code = "invalid_time_range"


class PlatformNotSupportedError(TimelyError):
    error_code = "platform_not_supported"

    def __init__(self, platform_name: str):
        super().__init__(f"Platform not supported: {platform_name}")
        self.platform_name = platform_name


class CategoryNotFoundError(TimelyError):
    error_code = "category_not_found"

    def __init__(self, name: str):
        super().__init__(f"Category not found: {name}")


class RuleNotFoundError(TimelyError):
    error_code = "rule_not_found"

    def __init__(self, rule_id: int):
        super().__init__(f"Rule not found: {rule_id}")
        self.rule_id = rule_id


class DaemonNotRunningError(TimelyError):
    error_code = "daemon_not_running"

    def __init__(self):
        super().__init__("Daemon not running")


class DaemonAlreadyRunningError(TimelyError):
    error_code = "daemon_already_running"

    def __init__(self, pid: int):
        super().__init__(f"Daemon already running (pid {pid})")
        self.pid = pid


class UnauthorizedError(TimelyError):
    error_code = "unauthorized"


def success(data: Any) -> Dict[str, Any]:
    """Wrap ``data`` in a success envelope."""
    return {"ok": True, "data": data}


def failure(error: Exception) -> Dict[str, Any]:
    """Build a failure envelope for ``error``."""
    return {
        "ok": False,
        "error": str(error),
        "error_code": getattr(error, "error_code", "error"),
    }
