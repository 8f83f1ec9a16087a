"""Formatting utilities for CLI output."""

import time
from datetime import datetime


def format_duration(
    start_time: float,
    end_time: float | None,
    *,
    now: float | None = None,
) -> str:
    """Format event duration for list views (compact).

    Args:
        start_time: Event start timestamp
        end_time: Event end timestamp, or None if still running
        now: Current time for ongoing duration calculation (defaults to time.time())

    Returns:
        "45s", "3m 4s", "2h 5m"; ongoing events get a trailing asterisk ("10s*").
    """
    ongoing = end_time is None
    if ongoing:
        end_time = time.time() if now is None else now
    seconds = max(0, int(end_time - start_time))

    if seconds < 60:
        text = f"{seconds}s"
    elif seconds < 3600:
        text = f"{seconds // 60}m {seconds % 60}s"
    else:
        text = f"{seconds // 3600}h {seconds % 3600 // 60}m"

    return f"{text}*" if ongoing else text


def format_timestamp(epoch: float | None) -> str:
    """Format an epoch timestamp as local time, or "-" if missing."""
    if epoch is None:
        return "-"
    return datetime.fromtimestamp(epoch).strftime("%Y-%m-%d %H:%M:%S")
