"""Formatting utilities for consistent output across CLI and daemon logs."""

import time

_UNITS = ("B", "KB", "MB", "GB", "TB")


def format_bytes(num_bytes: int) -> str:
    """Format a byte count for display (binary multiples).

    Returns:
        "0 B", "512 B", "1.5 KB", "500.0 MB", "2.3 GB"
    """
    value = float(max(num_bytes, 0))
    for unit in _UNITS:
        if value < 1024 or unit == _UNITS[-1]:
            if unit == "B":
                return f"{int(value)} B"
            return f"{value:.1f} {unit}"
        value /= 1024
    raise AssertionError("unreachable")


def format_idle(seconds: float) -> str:
    """Format an idle duration (compact).

    Returns:
        - Under a minute: "just now"
        - Under an hour: "12m"
        - Under a day: "2h 5m"
        - Otherwise: "3d 4h"
    """
    seconds = max(seconds, 0.0)
    if seconds < 60:
        return "just now"
    minutes = int(seconds // 60)
    if minutes < 60:
        return f"{minutes}m"
    hours, minutes = divmod(minutes, 60)
    if hours < 24:
        return f"{hours}h {minutes}m"
    days, hours = divmod(hours, 24)
    return f"{days}d {hours}h"


def format_since(timestamp: float, *, now: float | None = None) -> str:
    """Format time elapsed since timestamp, e.g. "12m ago"."""
    if now is None:
        now = time.time()
    idle = format_idle(now - timestamp)
    return idle if idle == "just now" else f"{idle} ago"


def format_duration(seconds: float) -> str:
    """Format an accumulated duration, e.g. "45s", "12m", "2h 5m"."""
    seconds = max(seconds, 0.0)
    if seconds < 60:
        return f"{int(seconds)}s"
    return format_idle(seconds)
