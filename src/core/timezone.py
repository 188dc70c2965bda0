"""Timezone normalizer — pure conversion functions.

All storage and comparison happens on a single canonical UTC instant.
Local formatting only happens at the display boundary.

No I/O and no state: this module only transforms data.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.core.errors import InvalidDateError


@dataclass(frozen=True)
class LocalDisplay:
    """A UTC instant rendered for a device: date and 24h time."""

    date: str   # YYYY-MM-DD
    time: str   # HH:MM


@dataclass(frozen=True)
class TimezoneInfo:
    """Diagnostic snapshot of a zone at a given instant."""

    timezone: str
    offset_hours: float
    offset_string: str      # e.g. "UTC+2", "UTC-5.5"
    local_date: str
    local_time: str
    utc_iso: str


def get_zone(name: str) -> ZoneInfo:
    """Resolve an IANA zone name. Raises InvalidDateError if unknown."""
    if not name or not isinstance(name, str):
        raise InvalidDateError(f"Missing time zone: {name!r}")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidDateError(f"Unknown time zone {name!r}: {exc}") from exc


def _parse_local(raw: str) -> datetime:
    text = raw.strip()
    if "T" not in text and " " not in text:
        raise InvalidDateError(f"Missing time component in {raw!r}")
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError as exc:
        raise InvalidDateError(f"Unparsable date/time {raw!r}: {exc}") from exc


def to_canonical_utc(local_date_time: str | datetime, device_time_zone: str) -> datetime:
    """Convert a device-local date/time to an aware UTC datetime.

    Args:
        local_date_time: ISO-8601 string ("2024-01-01T14:00", "2024-01-01 14:00:30",
            "2024-01-01T14:00:00+02:00", "...Z") or a datetime. Values that
            already carry an offset are honoured as-is; naive values are
            interpreted in ``device_time_zone``.
        device_time_zone: IANA zone name, e.g. "Asia/Jerusalem".

    Seconds and microseconds are preserved.

    Raises:
        InvalidDateError: on unparsable input or an unknown zone.
    """
    if isinstance(local_date_time, datetime):
        parsed = local_date_time
    elif isinstance(local_date_time, str):
        parsed = _parse_local(local_date_time)
    else:
        raise InvalidDateError(f"Unsupported date/time value: {local_date_time!r}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        parsed = parsed.replace(tzinfo=get_zone(device_time_zone))

    return parsed.astimezone(timezone.utc)


def ensure_utc(instant: datetime) -> datetime:
    """Return ``instant`` in UTC. Naive datetimes are rejected."""
    if not isinstance(instant, datetime):
        raise InvalidDateError(f"Expected a datetime, got {instant!r}")
    if instant.tzinfo is None or instant.utcoffset() is None:
        raise InvalidDateError(f"Naive datetime is ambiguous: {instant.isoformat()}")
    return instant.astimezone(timezone.utc)


def to_local_display(instant: datetime, device_time_zone: str) -> LocalDisplay:
    """Render a UTC instant as local "YYYY-MM-DD" / "HH:MM" in the given zone."""
    local = ensure_utc(instant).astimezone(get_zone(device_time_zone))
    return LocalDisplay(date=local.strftime("%Y-%m-%d"), time=local.strftime("%H:%M"))


def dates_equal_ignoring_time(a: datetime, b: datetime, time_zone: str) -> bool:
    """Check whether two instants fall on the same calendar day in ``time_zone``.

    The zone is mandatory: comparing in UTC implicitly is what produces
    off-by-one-day results near midnight.
    """
    zone = get_zone(time_zone)
    return _local_date(a, zone) == _local_date(b, zone)


def _local_date(instant: datetime, zone: ZoneInfo) -> date:
    return ensure_utc(instant).astimezone(zone).date()


def timezone_info(time_zone: str, now: datetime | None = None) -> TimezoneInfo:
    """Describe ``time_zone`` at ``now`` (defaults to the current instant)."""
    zone = get_zone(time_zone)
    instant = ensure_utc(now) if now is not None else datetime.now(timezone.utc)
    local = instant.astimezone(zone)

    offset = local.utcoffset()
    hours = offset.total_seconds() / 3600 if offset is not None else 0.0
    hours_text = f"{hours:g}"
    sign = "+" if hours >= 0 else ""

    return TimezoneInfo(
        timezone=time_zone,
        offset_hours=hours,
        offset_string=f"UTC{sign}{hours_text}",
        local_date=local.strftime("%Y-%m-%d"),
        local_time=local.strftime("%H:%M:%S"),
        utc_iso=instant.isoformat(),
    )


def format_utc(instant: datetime) -> str:
    """Serialize an instant as ISO-8601 UTC with a trailing "Z"."""
    return ensure_utc(instant).isoformat().replace("+00:00", "Z")


def parse_utc(raw: str) -> datetime:
    """Parse an ISO-8601 string written by :func:`format_utc`.

    Raises InvalidDateError when the value is unparsable or lacks an offset.
    """
    if not isinstance(raw, str):
        raise InvalidDateError(f"Expected an ISO-8601 string, got {raw!r}")
    text = raw.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise InvalidDateError(f"Unparsable instant {raw!r}: {exc}") from exc
    return ensure_utc(parsed)


def utc_now() -> datetime:
    """Default clock: the current aware UTC instant."""
    return datetime.now(timezone.utc)
