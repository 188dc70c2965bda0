"""Meeting Alerts — error taxonomy.

Input errors are raised to the caller. Runtime errors (corrupt store,
unavailable persistence, failed dispatch, overlapping writes) are reported
to the error sink and never crash the tick loop.
"""

from __future__ import annotations


class AlertError(Exception):
    """Base class for every alert engine error."""

    def __init__(self, message: str, meeting_id: str | None = None) -> None:
        super().__init__(message)
        self.meeting_id = meeting_id


class InvalidDateError(AlertError, ValueError):
    """Raised when a date/time input cannot be parsed or is ambiguous (naive)."""


class StoreCorruptedError(AlertError):
    """Persisted schedule data could not be read. The store resets to empty."""


class StoreUnavailableError(AlertError):
    """Persistence timed out or failed. The store keeps running in memory only."""


class DispatchFailure(AlertError):
    """The notification dispatcher failed to deliver an alert."""

    def __init__(
        self,
        message: str,
        meeting_id: str | None = None,
        offset_label: str | None = None,
        attempts: int = 0,
        final: bool = False,
    ) -> None:
        super().__init__(message, meeting_id)
        self.offset_label = offset_label
        self.attempts = attempts
        self.final = final


class ConcurrentUpsertConflict(AlertError):
    """A second write for the same meeting arrived while one was in flight."""
