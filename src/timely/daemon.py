#!/usr/bin/env python3
"""
Capture daemon for timely.
Runs the poll loop and handles running it as a background service.
"""

import fcntl
import logging
import os
import signal
import sqlite3
import sys
import threading
import time
from pathlib import Path
from typing import Callable, Optional, Union

from .categories import CategoryStore
from .config import POLL_INTERVAL_SECS, Config
from .db import open_db
from .detection import collect_snapshot
from .devices import DeviceRegistry
from .errors import DaemonAlreadyRunningError, DaemonNotRunningError, TimelyError
from .heartbeat import ActivityLogger, HeartbeatSegmenter
from .models import DaemonStatus, Device, Snapshot
from .sync import SyncManager

logger = logging.getLogger(__name__)

SLEEP_SLICE_SECS = 0.1
START_TIMEOUT_SECS = 3.0
LOG_FILENAME = "timely.log"


class CancellationToken:
    """Cooperative stop flag shared by the loop and the signal handlers."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def install_signal_handlers(token: CancellationToken) -> None:
    """SIGTERM and SIGINT only cancel the token; the loop does the cleanup."""

    def _handler(signum, frame):
        logger.info("Received signal %d, stopping", signum)
        token.cancel()

    signal.signal(signal.SIGTERM, _handler)
    signal.signal(signal.SIGINT, _handler)


def is_process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class PidFile:
    """PID file written on start and removed on clean exit.

    The writer keeps an exclusive flock on the file until ``remove``, so a
    second starter fails without touching the recorded PID.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._handle = None

    def read(self) -> Optional[int]:
        try:
            content = self.path.read_text().strip()
        except FileNotFoundError:
            return None
        try:
            return int(content)
        except ValueError:
            logger.warning("Ignoring malformed PID file %s", self.path)
            return None

    def write(self, pid: Optional[int] = None) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.path, "a+")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            handle.close()
            raise DaemonAlreadyRunningError(self.read() or 0) from e

        handle.seek(0)
        handle.truncate()
        handle.write(str(pid if pid is not None else os.getpid()))
        handle.flush()
        self._handle = handle

    def remove(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    def running_pid(self) -> Optional[int]:
        """PID recorded in the file if that process is still alive."""
        pid = self.read()
        if pid is not None and is_process_alive(pid):
            return pid
        return None

    def __enter__(self) -> "PidFile":
        self.write()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.remove()


class CaptureDaemon:
    """Polls the sensors and feeds the heartbeat segmenter until cancelled."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        config: Config,
        snapshot_source: Callable[[], Snapshot] = collect_snapshot,
        poll_interval: float = POLL_INTERVAL_SECS,
        sleep: Callable[[float], None] = time.sleep,
        sync_manager: Optional[SyncManager] = None,
    ):
        self.conn = conn
        self.config = config
        self.snapshot_source = snapshot_source
        self.poll_interval = poll_interval
        self.sleep = sleep
        self.activity_logger = ActivityLogger(config.verbose_logging)
        self.segmenter = HeartbeatSegmenter(conn, activity_logger=self.activity_logger)
        self.categories = CategoryStore(conn)
        self.devices = DeviceRegistry(conn)
        self.sync_manager = sync_manager or SyncManager(conn, config)

    def tick(self, device: Device) -> None:
        """Collect one snapshot and record it."""
        try:
            snapshot = self.snapshot_source()
        except Exception as e:  # sensors may fail in arbitrary ways
            self.activity_logger.log_sensor_failure(e)
            return

        try:
            self.segmenter.process_heartbeat(device.id, snapshot)
        except TimelyError as e:
            logger.error("Heartbeat error: %s", e)

    def sync(self, device: Device) -> None:
        try:
            result = self.sync_manager.push_events(device)
        except TimelyError as e:
            logger.error("Sync error: %s", e)
            return
        self.activity_logger.log_sync(result.accepted, result.duplicates, result.batches)

    def _sleep_interval(self, token: CancellationToken) -> None:
        slices = max(1, int(round(self.poll_interval / SLEEP_SLICE_SECS)))
        for _ in range(slices):
            if token.cancelled:
                return
            self.sleep(SLEEP_SLICE_SECS)

    def run(self, token: CancellationToken) -> None:
        self.categories.seed_builtin_categories()
        device = self.devices.get_or_create()

        sync_enabled = self.config.sync_enabled
        sync_interval = self.config.sync_interval
        logger.info("timely daemon started (device: %s, pid: %d)", device.name, os.getpid())
        if sync_enabled:
            logger.info("Sync enabled (interval: %ds)", sync_interval)
        self.activity_logger.log_tracking_start(device.id, self.poll_interval)

        sync_counter = 0.0
        while not token.cancelled:
            self.tick(device)

            sync_counter += self.poll_interval
            if sync_enabled and sync_counter >= sync_interval:
                sync_counter = 0.0
                self.sync(device)

            self._sleep_interval(token)

        self.activity_logger.log_tracking_stop()


class ActivityDaemon:
    """Starts, stops and reports on the background capture process."""

    def __init__(self, config: Config, pidfile: Optional[Union[str, Path]] = None):
        self.config = config
        self.pid_file = PidFile(pidfile or config.pid_path)

    def run_foreground(self, token: Optional[CancellationToken] = None) -> None:
        """Run the capture loop in this process until signalled."""
        token = token or CancellationToken()
        install_signal_handlers(token)

        existing = self.pid_file.running_pid()
        if existing is not None and existing != os.getpid():
            raise DaemonAlreadyRunningError(existing)

        conn = open_db(self.config.db_path)
        try:
            with self.pid_file:
                CaptureDaemon(conn, self.config).run(token)
        finally:
            conn.close()
        logger.info("timely daemon stopped")

    def daemonize(self) -> bool:
        """Double-fork into the background.

        Returns True in the detached grandchild and False in the caller.
        """
        pid = os.fork()
        if pid > 0:
            # Reap the first child, which exits right after the second fork
            os.waitpid(pid, 0)
            return False

        # Decouple from parent environment
        os.chdir("/")
        os.setsid()
        os.umask(0o077)  # Restrictive umask: owner read/write only

        if os.fork() > 0:
            os._exit(0)

        sys.stdout.flush()
        sys.stderr.flush()
        log_path = self.config.data_dir / LOG_FILENAME
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(os.devnull, "r") as devnull:
            os.dup2(devnull.fileno(), sys.stdin.fileno())
        with open(log_path, "a") as log_file:
            os.dup2(log_file.fileno(), sys.stdout.fileno())
            os.dup2(log_file.fileno(), sys.stderr.fileno())
        return True

    def start(self) -> None:
        """Start the daemon in the background."""
        pid = self.pid_file.running_pid()
        if pid is not None:
            raise DaemonAlreadyRunningError(pid)
        # Process doesn't exist, remove stale pidfile
        self.pid_file.remove()

        logger.info("Starting timely daemon...")
        if not self.daemonize():
            return

        exit_code = 0
        try:
            self.run_foreground()
        except TimelyError as e:
            logger.error("Daemon exited with error: %s", e)
            exit_code = 1
        finally:
            os._exit(exit_code)

    def wait_for_start(
        self,
        timeout: float = START_TIMEOUT_SECS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> DaemonStatus:
        """Poll until the detached daemon has written its PID file or time runs out."""
        deadline = time.monotonic() + timeout
        status = self.status()
        while not status.running and time.monotonic() < deadline:
            sleep(SLEEP_SLICE_SECS)
            status = self.status()
        return status

    def stop(self) -> int:
        """Send SIGTERM to the running daemon and return its PID."""
        pid = self.pid_file.running_pid()
        if pid is None:
            self.pid_file.remove()
            raise DaemonNotRunningError()

        os.kill(pid, signal.SIGTERM)
        self.pid_file.remove()
        logger.info("Stopped daemon with PID %d", pid)
        return pid

    def status(self) -> DaemonStatus:
        pid = self.pid_file.running_pid()
        if pid is None:
            return DaemonStatus(running=False)
        return DaemonStatus(running=True, pid=pid)
