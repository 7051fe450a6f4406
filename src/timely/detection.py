#!/usr/bin/env python3
"""
Snapshot sensors for timely.
Handles all macOS-specific detection logic: active application, window
title, browser tab and idle time. Other platforms are not supported.
"""

import logging
import subprocess  # nosec B404 - Required for macOS AppleScript integration
import sys
import time
import unicodedata
from typing import Dict, Optional, Tuple
from urllib.parse import urlsplit

from .errors import PlatformNotSupportedError, TimelyError
from .models import Snapshot

logger = logging.getLogger(__name__)

AFK_THRESHOLD_SECS = 180


def _require_macos() -> None:
    if sys.platform != "darwin":
        raise PlatformNotSupportedError(sys.platform)


def _appkit():
    _require_macos()
    try:
        import AppKit
    except ImportError as e:
        raise TimelyError("pyobjc-framework-Cocoa not installed") from e
    return AppKit


def _quartz():
    _require_macos()
    try:
        import Quartz
    except ImportError as e:
        raise TimelyError("pyobjc-framework-Quartz not installed") from e
    return Quartz


def extract_domain(url: str) -> str:
    """Host part of ``url`` without scheme, port or path."""
    if "://" not in url:
        url = "//" + url
    return urlsplit(url).hostname or ""


class ApplicationDetector:
    """Detects the currently active application."""

    def get_active_application(self) -> Optional[str]:
        workspace = _appkit().NSWorkspace.sharedWorkspace()
        active_app = workspace.frontmostApplication()
        if active_app is None:
            return None
        return str(active_app.localizedName())


class WindowTitleDetector:
    """Looks up the frontmost on-screen window title of an application."""

    def __init__(self, cache_ttl: float = 2.0):
        self.cache_ttl = cache_ttl
        self._title_cache: Dict[str, Tuple[str, float]] = {}

    def get_window_title(self, app_name: str) -> str:
        cached = self._get_from_cache(app_name)
        if cached is not None:
            return cached

        title = self._get_title_via_quartz(app_name) or ""
        self._title_cache[app_name] = (title, time.time())
        return title

    def _get_from_cache(self, app_name: str) -> Optional[str]:
        if app_name in self._title_cache:
            title, timestamp = self._title_cache[app_name]
            if time.time() - timestamp < self.cache_ttl:
                return title
            del self._title_cache[app_name]
        return None

    def _get_title_via_quartz(self, app_name: str) -> Optional[str]:
        quartz = _quartz()
        window_list = quartz.CGWindowListCopyWindowInfo(
            quartz.kCGWindowListOptionOnScreenOnly, quartz.kCGNullWindowID
        )
        for window in window_list or []:
            if window.get("kCGWindowOwnerName", "") != app_name:
                continue
            if window.get("kCGWindowLayer", 0) != 0:
                continue
            title = window.get("kCGWindowName", "")
            if title and title.strip():
                return str(title)
        return None


class BrowserTabDetector:
    """Reads the active tab URL of supported browsers through AppleScript."""

    CHROMIUM_BROWSERS = (
        "Google Chrome",
        "Chromium",
        "Brave Browser",
        "Microsoft Edge",
        "Vivaldi",
        "Arc",
    )

    def __init__(self, applescript_timeout: float = 1.0):
        self.applescript_timeout = applescript_timeout

    def _script_for(self, app_name: str) -> Optional[str]:
        if app_name in self.CHROMIUM_BROWSERS:
            return (
                f'tell application "{app_name}"\n'
                "try\n"
                "return URL of active tab of front window\n"
                "on error\n"
                'return ""\n'
                "end try\n"
                "end tell"
            )
        if app_name == "Safari":
            return (
                'tell application "Safari"\n'
                "try\n"
                "return URL of front document\n"
                "on error\n"
                'return ""\n'
                "end try\n"
                "end tell"
            )
        return None

    def get_active_url(self, app_name: str) -> Optional[str]:
        script = self._script_for(app_name)
        if script is None:
            return None

        try:
            result = subprocess.run(  # nosec B603 B607
                ["osascript", "-e", script],
                capture_output=True,
                text=True,
                timeout=self.applescript_timeout,
            )
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.debug("Browser tab lookup for %s failed: %s", app_name, e)
            return None

        url = result.stdout.strip()
        if result.returncode != 0 or not url:
            return None
        return url


class IdleDetector:
    """Reports whether the user has been idle past a threshold."""

    def __init__(self, idle_threshold: float = AFK_THRESHOLD_SECS):
        self.idle_threshold = idle_threshold

    def get_system_idle_time(self) -> float:
        quartz = _quartz()
        return float(
            quartz.CGEventSourceSecondsSinceLastEventType(
                quartz.kCGEventSourceStateHIDSystemState, quartz.kCGAnyInputEventType
            )
        )

    def is_afk(self) -> bool:
        return self.get_system_idle_time() >= self.idle_threshold


class TitleCleaner:
    """Normalizes window titles before they are stored."""

    UNICODE_REPLACEMENTS = {
        "“": '"',
        "”": '"',
        "‘": "'",
        "’": "'",
        "✳": "*",
        "●": "*",
    }

    def clean_title(self, title: str) -> str:
        if not title:
            return title

        title = unicodedata.normalize("NFC", title)
        for unicode_char, replacement in self.UNICODE_REPLACEMENTS.items():
            title = title.replace(unicode_char, replacement)
        return title.strip()


class SnapshotCollector:
    """Combines the individual detectors into one Snapshot."""

    def __init__(
        self,
        app_detector: Optional[ApplicationDetector] = None,
        window_detector: Optional[WindowTitleDetector] = None,
        browser_detector: Optional[BrowserTabDetector] = None,
        idle_detector: Optional[IdleDetector] = None,
    ):
        # Composition - allow dependency injection
        self.app_detector = app_detector or ApplicationDetector()
        self.window_detector = window_detector or WindowTitleDetector()
        self.browser_detector = browser_detector or BrowserTabDetector()
        self.idle_detector = idle_detector or IdleDetector()
        self.title_cleaner = TitleCleaner()

    def collect(self) -> Snapshot:
        app = self.app_detector.get_active_application() or ""
        title = self.title_cleaner.clean_title(self.window_detector.get_window_title(app))

        try:
            is_afk = self.idle_detector.is_afk()
        except TimelyError as e:
            logger.debug("Idle check failed, assuming active: %s", e)
            is_afk = False

        url = self.browser_detector.get_active_url(app)
        url_domain = extract_domain(url) if url else None

        return Snapshot(
            app=app,
            title=title,
            url=url,
            url_domain=url_domain or None,
            is_afk=is_afk,
        )


_default_collector: Optional[SnapshotCollector] = None


def collect_snapshot() -> Snapshot:
    """Observe the current activity.

    Raises PlatformNotSupportedError anywhere but macOS.
    """
    global _default_collector
    _require_macos()
    if _default_collector is None:
        _default_collector = SnapshotCollector()
    return _default_collector.collect()
