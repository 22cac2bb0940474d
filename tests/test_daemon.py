"""
Tests for the daemon module.

Tests interval parsing, scheduler ticks and shutdown, signal handling and
PID file management.
"""

import os
import signal
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from carddav_sync.daemon import (
    DEFAULT_PID_FILE,
    DaemonAlreadyRunningError,
    DaemonError,
    DaemonScheduler,
    DaemonStats,
    PIDFileError,
    PIDFileManager,
    parse_interval,
)


class TestParseInterval:
    """Tests for interval parsing functionality."""

    def test_parse_interval_units(self):
        """Test parsing intervals with unit suffixes."""
        assert parse_interval("500ms") == 0.5
        assert parse_interval("30s") == 30
        assert parse_interval("5m") == 300
        assert parse_interval("1h") == 3600
        assert parse_interval("1d") == 86400

    def test_parse_interval_plain_numbers_are_seconds(self):
        """Test plain numbers and numeric strings pass through as seconds."""
        assert parse_interval(30) == 30.0
        assert parse_interval(2.5) == 2.5
        assert parse_interval("30") == 30.0
        assert parse_interval("0.25") == 0.25

    def test_parse_interval_case_and_whitespace(self):
        """Test parsing ignores case and surrounding whitespace."""
        assert parse_interval(" 5M ") == 300
        assert parse_interval("250 MS") == 0.25

    @pytest.mark.parametrize("value", ["", "abc", "5x", "m5", "-5s"])
    def test_parse_interval_invalid_format_raises_error(self, value):
        """Test invalid formats are rejected."""
        with pytest.raises(ValueError):
            parse_interval(value)

    @pytest.mark.parametrize("value", [None, True, [30]])
    def test_parse_interval_invalid_type_raises_error(self, value):
        """Test unsupported types are rejected."""
        with pytest.raises(ValueError, match="Invalid interval type"):
            parse_interval(value)


class TestPIDFileManager:
    """Tests for PID file handling."""

    def test_default_path(self):
        """Test the default PID file location."""
        assert PIDFileManager().pid_file == DEFAULT_PID_FILE

    def test_create_read_remove(self, tmp_path):
        """Test the PID file lifecycle."""
        manager = PIDFileManager(tmp_path / "nested" / "daemon.pid")
        manager.create()
        assert manager.read() == os.getpid()
        manager.remove()
        assert manager.read() is None
        manager.remove()

    def test_invalid_pid_raises_error(self, tmp_path):
        """Test garbage in the PID file is reported."""
        pid_file = tmp_path / "daemon.pid"
        pid_file.write_text("not-a-pid")
        with pytest.raises(PIDFileError):
            PIDFileManager(pid_file).read()

    def test_create_detects_running_daemon(self, tmp_path):
        """Test a live PID blocks a second daemon."""
        pid_file = tmp_path / "daemon.pid"
        pid_file.write_text(str(os.getpid()))
        with pytest.raises(DaemonAlreadyRunningError):
            PIDFileManager(pid_file).create()

    def test_create_leaves_no_temp_file(self, tmp_path):
        """Test the PID is written through a rename."""
        PIDFileManager(tmp_path / "daemon.pid").create()
        assert [p.name for p in tmp_path.iterdir()] == ["daemon.pid"]

    def test_create_replaces_stale_file(self, tmp_path):
        """Test a PID file of a dead process is replaced."""
        pid_file = tmp_path / "daemon.pid"
        pid_file.write_text("999999999")
        manager = PIDFileManager(pid_file)
        with patch.object(PIDFileManager, "is_process_running", return_value=False):
            manager.create()
        assert manager.read() == os.getpid()

    def test_errors_are_daemon_errors(self):
        """Test the exception hierarchy."""
        assert issubclass(PIDFileError, DaemonError)
        assert issubclass(DaemonAlreadyRunningError, DaemonError)


class TestDaemonScheduler:
    """Tests for DaemonScheduler."""

    def test_rejects_non_positive_interval(self):
        """Test the interval must be positive."""
        with pytest.raises(ValueError):
            DaemonScheduler(interval=0)

    def test_fractional_interval(self):
        """Test sub-second intervals are allowed."""
        assert DaemonScheduler(interval=0.5, use_pid_file=False).interval == 0.5

    def test_without_pid_file(self):
        """Test use_pid_file=False keeps no PID file."""
        assert DaemonScheduler(use_pid_file=False).pid_file is None

    def test_run_tick_without_callback(self):
        """Test a tick without a callback fails quietly."""
        scheduler = DaemonScheduler(use_pid_file=False)
        assert not scheduler.run_tick()
        assert scheduler.stats.tick_count == 0

    def test_run_tick_counts_outcomes(self):
        """Test success, failure and exceptions are counted."""
        scheduler = DaemonScheduler(use_pid_file=False)
        callback = MagicMock(side_effect=[True, False, RuntimeError("boom")])
        scheduler.set_tick_callback(callback)

        assert scheduler.run_tick()
        assert not scheduler.run_tick()
        assert not scheduler.run_tick()

        stats = scheduler.stats
        assert stats.tick_count == 3
        assert stats.tick_success_count == 1
        assert stats.tick_error_count == 2
        assert stats.last_error == "boom"
        assert stats.last_tick_at is not None

    def test_run_until_stopped(self, tmp_path):
        """Test the loop ticks repeatedly and cleans up its PID file."""
        pid_file = tmp_path / "daemon.pid"
        scheduler = DaemonScheduler(interval=0.01, pid_file=pid_file)
        seen_pid_file = []

        def tick():
            seen_pid_file.append(pid_file.exists())
            if scheduler.stats.tick_count >= 3:
                scheduler.stop()
            return True

        scheduler.set_tick_callback(tick)
        scheduler.run()

        assert scheduler.stats.tick_count == 3
        assert all(seen_pid_file)
        assert not pid_file.exists()
        assert not scheduler.is_running()

    def test_overrunning_tick_skips_slots(self):
        """Test a tick longer than the interval is counted, not repeated."""
        scheduler = DaemonScheduler(interval=0.05, use_pid_file=False)

        def tick():
            if scheduler.stats.tick_count == 2:
                time.sleep(0.2)
                scheduler.stop()
            return True

        scheduler.set_tick_callback(tick)
        scheduler.run()

        assert scheduler.stats.tick_count == 2
        assert scheduler.stats.overrun_count == 1
        assert scheduler.stats.last_tick_duration >= 0.2

    def test_next_due_stays_on_grid(self):
        """Test due times advance by whole intervals."""
        scheduler = DaemonScheduler(interval=10, use_pid_file=False)
        with patch("carddav_sync.daemon.scheduler.time.time", return_value=1025.0):
            assert scheduler._next_due(1000.0) == 1030.0
            assert scheduler._next_due(1020.0) == 1030.0
        assert scheduler.stats.overrun_count == 1

    def test_run_without_immediate_tick(self):
        """Test run_immediately=False waits one interval first."""
        scheduler = DaemonScheduler(interval=60, run_immediately=False, use_pid_file=False)
        scheduler.set_tick_callback(MagicMock(return_value=True))
        timer = threading.Timer(0.1, scheduler.stop)
        timer.start()
        scheduler.run()
        timer.join()
        assert scheduler.stats.tick_count == 0

    def test_signal_handler_requests_shutdown(self):
        """Test SIGTERM and SIGINT set the shutdown flag."""
        scheduler = DaemonScheduler(use_pid_file=False)
        scheduler._signal_handler(signal.SIGTERM, None)
        assert scheduler._shutdown.is_set()
        assert not scheduler._sleep_interruptible(10)

    def test_handlers_restored_after_run(self):
        """Test the original signal handlers are put back."""
        original = signal.getsignal(signal.SIGTERM)
        scheduler = DaemonScheduler(interval=0.01, use_pid_file=False)
        scheduler.set_tick_callback(lambda: scheduler.stop() or True)
        scheduler.run()
        assert signal.getsignal(signal.SIGTERM) == original


class TestDaemonClassMethods:
    """Tests for daemon control helpers."""

    def test_get_running_pid(self, tmp_path):
        """Test running, stale and missing PID files."""
        pid_file = tmp_path / "daemon.pid"
        assert DaemonScheduler.get_running_pid(pid_file) is None
        pid_file.write_text(str(os.getpid()))
        assert DaemonScheduler.get_running_pid(pid_file) == os.getpid()
        with patch.object(PIDFileManager, "is_process_running", return_value=False):
            assert DaemonScheduler.get_running_pid(pid_file) is None

    def test_stop_running_daemon(self, tmp_path):
        """Test SIGTERM is sent to the recorded PID."""
        pid_file = tmp_path / "daemon.pid"
        assert not DaemonScheduler.stop_running_daemon(pid_file)
        pid_file.write_text("4242")
        with (
            patch.object(PIDFileManager, "is_process_running", return_value=True),
            patch("carddav_sync.daemon.scheduler.os.kill") as kill,
        ):
            assert DaemonScheduler.stop_running_daemon(pid_file)
        kill.assert_called_once_with(4242, signal.SIGTERM)

    def test_stats_defaults(self):
        """Test fresh statistics."""
        stats = DaemonStats()
        assert stats.tick_count == 0
        assert stats.last_tick_at is None
        assert stats.started_at.tzinfo is not None
