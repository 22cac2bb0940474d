"""
Periodic scheduler for the sync daemon.

Provides a DaemonScheduler class that manages:
- The engine tick at a configurable interval (seconds, fractional allowed)
- Signal handling for graceful shutdown (SIGTERM/SIGINT)
- PID file management for daemon control
- Tick statistics for the status command
"""

from __future__ import annotations

import logging
import os
import signal
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from carddav_sync.utils.paths import DEFAULT_CONFIG_DIR, default_pid_file

logger = logging.getLogger(__name__)


DEFAULT_PID_FILE = default_pid_file(DEFAULT_CONFIG_DIR)

# Longest single sleep slice, so shutdown requests are noticed quickly
SLEEP_SLICE = 0.5


class DaemonError(Exception):
    """Base exception for daemon-related errors."""

    pass


class PIDFileError(DaemonError):
    """Raised when PID file operations fail."""

    pass


class DaemonAlreadyRunningError(DaemonError):
    """Raised when attempting to start a daemon that is already running."""

    pass


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class DaemonStats:
    """
    Statistics from daemon operation.

    Tracks uptime and tick outcomes.
    """

    started_at: datetime = field(default_factory=_utc_now)
    tick_count: int = 0
    tick_success_count: int = 0
    tick_error_count: int = 0
    last_tick_at: datetime | None = None
    last_tick_success: bool = False
    last_error: str | None = None
    overrun_count: int = 0
    last_tick_duration: float = 0.0


class PIDFileManager:
    """
    Manages the PID file of the daemon process.

    Prevents two daemons from running against the same storage.
    """

    def __init__(self, pid_file: Path | None = None):
        """
        Initialize the PID file manager.

        Args:
            pid_file: Path to the PID file. Defaults to ~/.carddav-sync/daemon.pid
        """
        self.pid_file = pid_file or DEFAULT_PID_FILE

    def create(self) -> None:
        """
        Write the current process ID, replacing a stale file.

        Raises:
            PIDFileError: If the PID file cannot be created.
            DaemonAlreadyRunningError: If a daemon is already running.
        """
        existing_pid = self.read()
        if existing_pid is not None:
            if self.is_process_running(existing_pid):
                raise DaemonAlreadyRunningError(
                    f"Daemon already running with PID {existing_pid}"
                )
            logger.warning(
                f"Removing stale PID file (process {existing_pid} not running)"
            )
            self.remove()

        pid = os.getpid()
        tmp_file = self.pid_file.with_name(f".{self.pid_file.name}.{pid}")
        try:
            self.pid_file.parent.mkdir(parents=True, exist_ok=True)
            # Readers never see a partially written PID
            tmp_file.write_text(str(pid))
            os.replace(tmp_file, self.pid_file)
            logger.debug(f"Created PID file: {self.pid_file} (PID: {pid})")
        except OSError as e:
            tmp_file.unlink(missing_ok=True)
            raise PIDFileError(f"Failed to create PID file {self.pid_file}: {e}") from e

    def read(self) -> int | None:
        """
        Read the PID from the PID file.

        Returns:
            The stored PID, or None if the file doesn't exist.

        Raises:
            PIDFileError: If the file exists but cannot be read or parsed.
        """
        if not self.pid_file.exists():
            return None

        content = ""
        try:
            content = self.pid_file.read_text().strip()
            return int(content)
        except ValueError as e:
            raise PIDFileError(f"Invalid PID in file {self.pid_file}: {content}") from e
        except OSError as e:
            raise PIDFileError(f"Failed to read PID file {self.pid_file}: {e}") from e

    def remove(self) -> None:
        """
        Remove the PID file if present.

        Raises:
            PIDFileError: If the file exists but cannot be removed.
        """
        if not self.pid_file.exists():
            return

        try:
            self.pid_file.unlink()
            logger.debug(f"Removed PID file: {self.pid_file}")
        except OSError as e:
            raise PIDFileError(f"Failed to remove PID file {self.pid_file}: {e}") from e

    @staticmethod
    def is_process_running(pid: int) -> bool:
        """Check whether a process with the given PID exists."""
        try:
            os.kill(pid, 0)
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists, owned by someone else
            return True


class DaemonScheduler:
    """
    Runs a tick callback immediately and then every ``interval`` seconds.

    Usage:
        scheduler = DaemonScheduler(interval=30)
        scheduler.set_tick_callback(engine.tick)
        scheduler.run()  # blocks until SIGTERM/SIGINT or stop()

    Attributes:
        interval: Seconds between ticks
        pid_file: Path to PID file, or None when no PID file is kept
        stats: Daemon statistics
    """

    def __init__(
        self,
        interval: float = 30.0,
        pid_file: Path | None = None,
        run_immediately: bool = True,
        use_pid_file: bool = True,
    ):
        """
        Initialize the scheduler.

        Args:
            interval: Tick interval in seconds
            pid_file: Path to PID file. Defaults to ~/.carddav-sync/daemon.pid
            run_immediately: Run a tick before the first wait
            use_pid_file: Create and remove a PID file around run()
        """
        if interval <= 0:
            raise ValueError(f"Interval must be positive, got {interval}")
        self.interval = float(interval)
        self.run_immediately = run_immediately
        self._pid_manager = PIDFileManager(pid_file) if use_pid_file else None
        self._tick_callback: Callable[[], bool] | None = None
        self._running = False
        self._shutdown = threading.Event()
        self._original_handlers: dict[int, object] = {}
        self.stats = DaemonStats()

    @property
    def pid_file(self) -> Path | None:
        return self._pid_manager.pid_file if self._pid_manager else None

    def set_tick_callback(self, callback: Callable[[], bool]) -> None:
        """
        Set the function run on every tick.

        Args:
            callback: Returns True on success, False on partial failure.
                      Exceptions are caught and counted as errors.
        """
        self._tick_callback = callback

    def _setup_signal_handlers(self) -> None:
        # signal.signal() only works from the main thread
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not in main thread; signal handlers not installed")
            return
        for signum in (signal.SIGTERM, signal.SIGINT):
            self._original_handlers[signum] = signal.signal(signum, self._signal_handler)
        logger.debug("Signal handlers installed for SIGTERM and SIGINT")

    def _restore_signal_handlers(self) -> None:
        for signum, handler in self._original_handlers.items():
            signal.signal(signum, handler)  # type: ignore[arg-type]
        self._original_handlers.clear()

    def _signal_handler(self, signum: int, frame: object) -> None:
        signal_name = signal.Signals(signum).name
        logger.info(f"Received {signal_name}, initiating graceful shutdown...")
        self._shutdown.set()

    def run_tick(self) -> bool:
        """
        Execute the tick callback and update statistics.

        Returns:
            True if the tick succeeded, False otherwise.
        """
        if self._tick_callback is None:
            logger.warning("No tick callback configured, skipping")
            return False

        self.stats.tick_count += 1
        self.stats.last_tick_at = _utc_now()

        started = time.monotonic()
        try:
            logger.debug(f"Starting tick #{self.stats.tick_count}")
            success = self._tick_callback()
        except Exception as e:
            self.stats.last_tick_duration = time.monotonic() - started
            self.stats.tick_error_count += 1
            self.stats.last_tick_success = False
            self.stats.last_error = str(e)
            logger.error(f"Tick failed with exception: {e}", exc_info=True)
            return False

        self.stats.last_tick_duration = time.monotonic() - started
        if success:
            self.stats.tick_success_count += 1
            self.stats.last_tick_success = True
            self.stats.last_error = None
        else:
            self.stats.tick_error_count += 1
            self.stats.last_tick_success = False
            logger.warning("Tick completed with errors")
        return success

    def _sleep_interruptible(self, seconds: float) -> bool:
        """
        Sleep for the given duration unless shutdown is requested.

        Wall-clock time is used so a system suspend does not delay the
        next tick past its due time.

        Returns:
            True if the sleep completed, False if interrupted by shutdown.
        """
        end_time = time.time() + seconds
        while not self._shutdown.is_set():
            remaining = end_time - time.time()
            if remaining <= 0:
                break
            self._shutdown.wait(min(SLEEP_SLICE, remaining))
        return not self._shutdown.is_set()

    def _next_due(self, previous_due: float) -> float:
        """
        Due time of the next tick on the fixed interval grid.

        A tick that ran past one or more due times skips them instead of
        firing back to back.
        """
        now = time.time()
        due = previous_due + self.interval
        if due > now:
            return due
        missed = int((now - previous_due) // self.interval)
        self.stats.overrun_count += 1
        logger.warning(
            f"Tick took {self.stats.last_tick_duration:.2f}s, longer than the "
            f"{self.interval:g}s interval; skipping {missed} slot(s)"
        )
        return previous_due + (missed + 1) * self.interval

    def run(self) -> None:
        """
        Run the scheduler loop until shutdown.

        Raises:
            DaemonAlreadyRunningError: If another daemon is already running.
            PIDFileError: If the PID file cannot be written.
        """
        logger.info(f"Starting scheduler (interval: {self.interval:g}s)")

        if self._pid_manager:
            self._pid_manager.create()
            logger.info(f"Daemon started (PID: {os.getpid()}, PID file: {self.pid_file})")

        self._setup_signal_handlers()
        self._running = True
        self._shutdown.clear()
        self.stats = DaemonStats()

        try:
            if self.run_immediately:
                self.run_tick()

            next_due = time.time() + self.interval
            while not self._shutdown.is_set():
                if not self._sleep_interruptible(next_due - time.time()):
                    break
                self.run_tick()
                next_due = self._next_due(next_due)
        finally:
            self._running = False
            self._restore_signal_handlers()
            if self._pid_manager:
                self._pid_manager.remove()
            logger.info("Scheduler stopped")

    def stop(self) -> None:
        """Request shutdown; safe to call from any thread or the tick itself."""
        logger.info("Stop requested")
        self._shutdown.set()

    def is_running(self) -> bool:
        return self._running

    @classmethod
    def get_running_pid(cls, pid_file: Path | None = None) -> int | None:
        """
        Get the PID of the currently running daemon.

        Returns:
            PID if a daemon is running, None otherwise.
        """
        manager = PIDFileManager(pid_file)
        pid = manager.read()
        if pid is None:
            return None
        if manager.is_process_running(pid):
            return pid
        return None

    @classmethod
    def stop_running_daemon(cls, pid_file: Path | None = None) -> bool:
        """
        Send SIGTERM to the running daemon.

        Returns:
            True if the signal was sent, False if no daemon is running.
        """
        pid = cls.get_running_pid(pid_file)
        if pid is None:
            logger.info("No running daemon found")
            return False

        try:
            os.kill(pid, signal.SIGTERM)
            logger.info(f"Sent SIGTERM to daemon (PID: {pid})")
            return True
        except ProcessLookupError:
            logger.warning(f"Daemon process {pid} not found")
            return False
        except PermissionError:
            logger.error(f"Permission denied sending signal to PID {pid}")
            return False


__all__ = [
    "DaemonScheduler",
    "DaemonStats",
    "DaemonError",
    "PIDFileError",
    "DaemonAlreadyRunningError",
    "PIDFileManager",
    "DEFAULT_PID_FILE",
]
