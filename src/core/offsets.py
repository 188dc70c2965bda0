"""Alert offset labels — parsing and dispatch priority.

Labels are short strings such as "1h", "15m", "5min", "1day" or "now".
The offset set is configurable; nothing here hard-codes which labels exist.
"""

from __future__ import annotations

import re
from datetime import timedelta

DEFAULT_OFFSETS: tuple[str, ...] = ("1h", "15m", "5m", "1m", "now")

_LABEL_RE = re.compile(r"^(\d+)\s*(m|min|mins|minute|minutes|h|hour|hours|d|day|days)$")

_UNIT_MINUTES = {
    "m": 1, "min": 1, "mins": 1, "minute": 1, "minutes": 1,
    "h": 60, "hour": 60, "hours": 60,
    "d": 1440, "day": 1440, "days": 1440,
}


class InvalidOffsetError(ValueError):
    """Raised when an offset label cannot be parsed."""


def parse_offset(label: str) -> timedelta:
    """Convert an offset label to the timedelta before meeting start.

    >>> parse_offset("15m")
    datetime.timedelta(seconds=900)
    """
    if not isinstance(label, str):
        raise InvalidOffsetError(f"Offset label must be a string, got {label!r}")
    text = label.strip().lower()
    if text == "now":
        return timedelta(0)

    match = _LABEL_RE.match(text)
    if match is None:
        raise InvalidOffsetError(f"Unrecognised offset label: {label!r}")
    amount, unit = int(match.group(1)), match.group(2)
    return timedelta(minutes=amount * _UNIT_MINUTES[unit])


def offset_priority(label: str) -> tuple[timedelta, str]:
    """Sort key for simultaneously due entries: "now" first, then 1m, 5m, ..."""
    return parse_offset(label), label


def parse_offset_list(raw: str | list[str] | tuple[str, ...]) -> list[str]:
    """Parse a comma-separated (or list) offset spec into validated labels.

    Duplicates are dropped, first occurrence wins. Raises InvalidOffsetError
    on any bad label or on an empty result.
    """
    if isinstance(raw, str):
        items = [part.strip() for part in raw.split(",")]
    else:
        items = [str(part).strip() for part in raw]

    labels: list[str] = []
    for item in items:
        if not item:
            continue
        parse_offset(item)
        if item not in labels:
            labels.append(item)

    if not labels:
        raise InvalidOffsetError("At least one alert offset is required")
    return labels
