"""
Logging setup for carddav_sync.

The daemon usually runs in a container whose stderr is collected, so the
console handler is the main sink. It writes either colored text for people
or one JSON object per line for log shippers. A dated log file is added
only when a log directory or CARDDAV_SYNC_LOG_FILE is configured.

Fields set with log_context() (startup, scheduler tick, watcher batch) are
attached to every record the same thread emits while the context is open.

Environment:
- CARDDAV_SYNC_DEBUG: any of 1/true/yes forces DEBUG
- CARDDAV_SYNC_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR or CRITICAL
- CARDDAV_SYNC_LOG_FORMAT: 'text' (default) or 'json'
- CARDDAV_SYNC_LOG_FILE: explicit log file, or 'none' to disable
"""

import json
import logging
import os
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, TextIO

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
VERBOSE_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
)
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

ENV_LOG_LEVEL = "CARDDAV_SYNC_LOG_LEVEL"
ENV_DEBUG = "CARDDAV_SYNC_DEBUG"
ENV_LOG_FILE = "CARDDAV_SYNC_LOG_FILE"
ENV_LOG_FORMAT = "CARDDAV_SYNC_LOG_FORMAT"

ROOT_LOGGER_NAME = "carddav_sync"
LOG_FILE_PREFIX = "carddav_sync_"

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

_context = threading.local()


# =============================================================================
# Context
# =============================================================================


def current_context() -> dict[str, Any]:
    """Fields of the innermost open log_context() on this thread."""
    return dict(getattr(_context, "fields", {}))


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """
    Attach fields to every record logged by this thread inside the block.

    Contexts nest; inner fields override outer ones until the block exits.

    Usage:
        with log_context(phase="tick"):
            engine.sync_engine.outbound_pass()
    """
    previous = current_context()
    _context.fields = {**previous, **fields}
    try:
        yield
    finally:
        _context.fields = previous


class ContextFilter(logging.Filter):
    """Copy the thread's log context onto each record as ``record.context``."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "context"):
            record.context = current_context()
        return True


# =============================================================================
# Formatters
# =============================================================================


def _context_suffix(record: logging.LogRecord) -> str:
    context = getattr(record, "context", None)
    if not context:
        return ""
    return " [" + ", ".join(f"{k}={v}" for k, v in context.items()) + "]"


def stream_supports_color(stream: TextIO) -> bool:
    """Whether ANSI colors should be written to ``stream``."""
    if not hasattr(stream, "isatty") or not stream.isatty():
        return False
    # https://no-color.org/
    if os.environ.get("NO_COLOR"):
        return False
    return os.environ.get("TERM", "") != "dumb"


class ContextFormatter(logging.Formatter):
    """Plain text formatter that appends the record's log context."""

    def format(self, record: logging.LogRecord) -> str:
        return super().format(record) + _context_suffix(record)


class ColoredFormatter(ContextFormatter):
    """
    Text formatter that colors the level name and message by severity.

    Colors are dropped automatically when stderr is not a color terminal.
    """

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        use_colors: bool = True,
    ):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and stream_supports_color(sys.stderr)

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname) if self.use_colors else None
        if color is None:
            return super().format(record)

        # Other handlers share the record, so color a copy
        colored = logging.makeLogRecord(record.__dict__)
        colored.levelname = f"{color}{record.levelname}{self.RESET}"
        colored.msg = f"{color}{record.msg}{self.RESET}"
        return super().format(colored)


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for collected container logs."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "context", None)
        if context:
            entry["context"] = context
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


# =============================================================================
# Environment
# =============================================================================


def get_log_level_from_env() -> int:
    """
    Logging level from CARDDAV_SYNC_DEBUG or CARDDAV_SYNC_LOG_LEVEL.

    Unknown level names fall back to INFO.
    """
    if os.environ.get(ENV_DEBUG, "").lower() in ("1", "true", "yes"):
        return logging.DEBUG
    return _LEVELS.get(os.environ.get(ENV_LOG_LEVEL, "INFO").upper(), logging.INFO)


def get_log_format_from_env() -> str:
    """Console format from CARDDAV_SYNC_LOG_FORMAT: 'json' or 'text'."""
    value = os.environ.get(ENV_LOG_FORMAT, "").strip().lower()
    return "json" if value == "json" else "text"


def get_log_file_path(log_dir: Optional[Path] = None) -> Optional[Path]:
    """
    Resolve the log file destination.

    CARDDAV_SYNC_LOG_FILE wins when set ('none' or 'disabled' turn file
    logging off). Otherwise a dated file in ``log_dir`` is used, or no file
    at all when ``log_dir`` is None.
    """
    log_file = os.environ.get(ENV_LOG_FILE)
    if log_file:
        if log_file.lower() in ("none", "disabled"):
            return None
        return Path(log_file)

    if log_dir is None:
        return None
    return log_dir / f"{LOG_FILE_PREFIX}{datetime.now().strftime('%Y%m%d')}.log"


# =============================================================================
# Setup
# =============================================================================


def _console_handler(
    level: int, verbose: bool, use_colors: bool, json_format: bool
) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    formatter: logging.Formatter
    if json_format:
        formatter = JSONFormatter()
    else:
        fmt = VERBOSE_FORMAT if verbose else DEFAULT_FORMAT
        formatter = ColoredFormatter(fmt, DATE_FORMAT, use_colors=use_colors)
    handler.setFormatter(formatter)
    return handler


def _file_handler(path: Path) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    # The file keeps DEBUG regardless of the console level
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(ContextFormatter(VERBOSE_FORMAT, DATE_FORMAT))
    return handler


def setup_logging(
    level: Optional[int] = None,
    verbose: bool = False,
    log_dir: Optional[Path] = None,
    log_file: Optional[Path] = None,
    enable_file_logging: bool = True,
    use_colors: bool = True,
    json_format: Optional[bool] = None,
) -> logging.Logger:
    """
    Configure the carddav_sync logger hierarchy.

    Calling it again replaces the previous handlers.

    Args:
        level: Console level; read from the environment when None
        verbose: Force DEBUG and include file/line in console output
        log_dir: Directory for dated log files
        log_file: Explicit log file, overrides log_dir
        enable_file_logging: If False, never add a file handler
        use_colors: Color console text output when the terminal allows
        json_format: Emit JSON lines on the console; read from the
                     environment when None

    Returns:
        The package root logger

    Example:
        # Container default: console only, level and format from environment
        setup_logging()

        # Interactive CLI with daily files
        setup_logging(verbose=True, log_dir=Path("~/.carddav-sync/logs"))
    """
    if level is None:
        level = get_log_level_from_env()
    if verbose:
        level = logging.DEBUG
    if json_format is None:
        json_format = get_log_format_from_env() == "json"

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(level)
    logger.propagate = False

    context_filter = ContextFilter()
    handlers = [_console_handler(level, verbose, use_colors, json_format)]

    file_path = (log_file or get_log_file_path(log_dir)) if enable_file_logging else None
    file_error: Optional[OSError] = None
    if file_path is not None:
        try:
            handlers.append(_file_handler(file_path))
        except OSError as e:
            file_error = e

    for handler in handlers:
        handler.addFilter(context_filter)
        logger.addHandler(handler)

    if file_error is not None:
        logger.warning(f"Could not create log file {file_path}: {file_error}")
    elif file_path is not None:
        logger.debug(f"Log file: {file_path}")
    return logger


def cleanup_old_logs(log_dir: Optional[Path], keep_count: int = 10) -> int:
    """
    Delete all but the ``keep_count`` newest dated log files.

    Returns:
        Number of files deleted
    """
    if keep_count <= 0 or log_dir is None or not log_dir.exists():
        return 0

    logs = sorted(
        log_dir.glob(f"{LOG_FILE_PREFIX}*.log"),
        key=lambda p: p.stat().st_mtime,
        reverse=True,
    )
    deleted = 0
    for old_log in logs[keep_count:]:
        try:
            old_log.unlink()
            deleted += 1
        except OSError as e:
            logging.getLogger(__name__).debug(f"Could not remove {old_log}: {e}")
    return deleted


def get_logger(name: str) -> logging.Logger:
    """Logger under the carddav_sync hierarchy for ``name``."""
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


def set_log_level(level: int) -> None:
    """Change the console level at runtime; file handlers stay at DEBUG."""
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)
    for handler in logger.handlers:
        if not isinstance(handler, logging.FileHandler):
            handler.setLevel(level)


__all__ = [
    "setup_logging",
    "get_logger",
    "set_log_level",
    "cleanup_old_logs",
    "log_context",
    "current_context",
    "ContextFilter",
    "ContextFormatter",
    "ColoredFormatter",
    "JSONFormatter",
    "get_log_level_from_env",
    "get_log_format_from_env",
    "get_log_file_path",
    "DEFAULT_FORMAT",
    "VERBOSE_FORMAT",
    "DATE_FORMAT",
    "ROOT_LOGGER_NAME",
]
