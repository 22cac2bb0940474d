"""
carddav_sync.daemon - Daemon and scheduler module

Background loop with configurable tick interval and signal handling.
"""

import re

_UNIT_SECONDS = {
    "ms": 0.001,
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
}


def parse_interval(interval: str | int | float) -> float:
    """Parse an interval value into seconds.

    Accepts interval strings with units (ms, s, m, h, d) or plain numbers.

    Args:
        interval: Interval value. Examples:
            - "500ms" -> 0.5 seconds
            - "30s" -> 30 seconds
            - "5m" -> 5 minutes (300 seconds)
            - "1h" -> 1 hour (3600 seconds)
            - "1d" -> 1 day (86400 seconds)
            - 30 / 2.5 -> pass-through
            - "30" -> 30 seconds (numeric string)

    Returns:
        Interval in seconds.

    Raises:
        ValueError: If the interval format is invalid or uses an unknown unit.
    """
    if isinstance(interval, bool):
        raise ValueError("Invalid interval type: bool. Expected str or number.")

    if isinstance(interval, (int, float)):
        return float(interval)

    if isinstance(interval, str):
        text = interval.lower().strip()
        try:
            return float(text)
        except ValueError:
            pass

        match = re.match(r"^(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)$", text)
        if not match:
            raise ValueError(
                f"Invalid interval format: '{interval}'. "
                "Use format like '500ms', '30s', '5m', '1h', or '1d'."
            )

        return float(match.group(1)) * _UNIT_SECONDS[match.group(2)]

    raise ValueError(
        f"Invalid interval type: {type(interval).__name__}. Expected str or number."
    )


# Imports after parse_interval to avoid circular dependencies
from carddav_sync.daemon.scheduler import (  # noqa: E402
    DEFAULT_PID_FILE,
    DaemonAlreadyRunningError,
    DaemonError,
    DaemonScheduler,
    DaemonStats,
    PIDFileError,
    PIDFileManager,
)

__all__ = [
    "parse_interval",
    "DaemonScheduler",
    "DaemonStats",
    "DaemonError",
    "PIDFileError",
    "DaemonAlreadyRunningError",
    "PIDFileManager",
    "DEFAULT_PID_FILE",
]
