"""
Meeting Alerts — Data Models.

Alert entries are the only state this engine owns. Meetings live in the
calendar collaborator and are only referenced by id.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from src.core.errors import InvalidDateError
from src.core.timezone import format_utc, parse_utc


class AlertState(str, Enum):
    """Lifecycle of an alert entry. Fired and cancelled are terminal."""

    PENDING = "pending"
    FIRED = "fired"
    CANCELLED = "cancelled"


@dataclass
class Meeting:
    """A scheduled meeting as supplied by the calendar collaborator."""

    meeting_id: str
    start_utc: datetime
    title: str = ""
    duration: timedelta | None = None
    recurrence: str | None = None     # e.g. an RRULE, passed through untouched


@dataclass
class AlertEntry:
    """A single reminder for a meeting, e.g. "15m before start".

    ``fire_at_utc`` is derived once when the entry is created and never
    recomputed from local time.
    """

    meeting_id: str
    offset_label: str                  # "1h", "15m", "5m", "1m", "now", ...
    fire_at_utc: datetime
    state: AlertState = AlertState.PENDING
    attempts: int = 0                  # failed dispatch attempts so far
    updated_at_utc: datetime | None = None
    title: str | None = None           # meeting title, shown in the alert text

    @property
    def key(self) -> tuple[str, str]:
        return self.meeting_id, self.offset_label

    @property
    def is_pending(self) -> bool:
        return self.state is AlertState.PENDING

    def to_record(self) -> dict:
        """Serialize to the persisted schema (one element of a meeting's array)."""
        record = {
            "offsetLabel": self.offset_label,
            "fireAtUtc": format_utc(self.fire_at_utc),
            "state": self.state.value,
            "attempts": self.attempts,
        }
        if self.updated_at_utc is not None:
            record["updatedAtUtc"] = format_utc(self.updated_at_utc)
        if self.title:
            record["title"] = self.title
        return record

    @classmethod
    def from_record(cls, meeting_id: str, record: dict) -> AlertEntry:
        """Rebuild an entry from its persisted form.

        Raises ValueError (InvalidDateError included) on malformed records.
        """
        if not isinstance(record, dict):
            raise ValueError(f"Alert record must be an object, got {type(record).__name__}")
        try:
            label = record["offsetLabel"]
            fire_at = parse_utc(record["fireAtUtc"])
            state = AlertState(record["state"])
        except KeyError as exc:
            raise ValueError(f"Alert record missing field {exc}") from exc

        if not isinstance(label, str) or not label:
            raise ValueError(f"Invalid offset label: {label!r}")

        updated_raw = record.get("updatedAtUtc")
        try:
            updated_at = parse_utc(updated_raw) if updated_raw else None
        except InvalidDateError:
            updated_at = None

        title = record.get("title")
        if not isinstance(title, str) or not title:
            title = None

        return cls(
            meeting_id=meeting_id,
            offset_label=label,
            fire_at_utc=fire_at,
            state=state,
            attempts=int(record.get("attempts", 0)),
            updated_at_utc=updated_at,
            title=title,
        )
