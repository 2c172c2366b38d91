"""Formatting and conversion utilities.

Countdown labels, resource amounts, timestamp conversion.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Mapping


def whole_seconds_left(seconds: float) -> int:
    """Round a remaining duration up to whole seconds, floored at zero."""
    if seconds <= 0:
        return 0
    return int(math.ceil(seconds))


def format_remaining(seconds: float) -> str:
    """Format a remaining duration as ``M:SS`` or ``H:MM:SS``."""
    total = whole_seconds_left(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def format_amounts(amounts: Mapping[str, int]) -> str:
    """Render ``{"wood": 5, "iron": 0}`` as ``+5 wood``; zero entries are skipped."""
    parts = [f"+{value} {key}" for key, value in amounts.items() if value > 0]
    return ", ".join(parts) if parts else "nothing"


def to_epoch(value: datetime) -> float:
    """Convert a datetime to epoch seconds; naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def from_epoch(seconds: float) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)
