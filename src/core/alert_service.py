"""
Meeting Alerts — Calendar-facing Alert Service.

Entry point for the calendar collaborator: meeting create/update/delete
events come in here, get normalized to UTC and become store upserts or
cancellations. Also re-syncs the whole schedule from a meeting list and
cancels alerts whose meeting no longer exists.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Iterable

from src.core.errors import InvalidDateError
from src.core.offsets import DEFAULT_OFFSETS, parse_offset, parse_offset_list
from src.core.timezone import ensure_utc, to_canonical_utc, utc_now

if TYPE_CHECKING:
    from src.data.alert_store import AlertStore
    from src.data.models import AlertEntry, Meeting

logger = logging.getLogger(__name__)


class AlertService:
    """Turns meeting events into alert schedule changes."""

    def __init__(
        self,
        store: AlertStore,
        offsets: Iterable[str] = DEFAULT_OFFSETS,
        default_time_zone: str = "UTC",
        skip_past: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._offsets = parse_offset_list(list(offsets))
        self._default_tz = default_time_zone
        self._skip_past = skip_past
        self._clock = clock

    @property
    def offsets(self) -> list[str]:
        return list(self._offsets)

    def _offsets_for(self, meeting_id: str, start: datetime) -> list[str]:
        """Offsets to arm for a meeting starting at ``start``.

        With skip_past, offsets whose fire time already passed are dropped
        unless the same alert is already pending, still waiting for a tick.
        """
        if not self._skip_past:
            return list(self._offsets)
        now = self._clock()
        armed = {
            (e.offset_label, e.fire_at_utc) for e in self._store.pending_entries(meeting_id)
        }
        keep = []
        for label in self._offsets:
            fire_at = start - parse_offset(label)
            if fire_at >= now or (label, fire_at) in armed:
                keep.append(label)
        return keep

    async def schedule_meeting(
        self,
        meeting_id: str,
        start_local_time: str | datetime,
        device_time_zone: str | None = None,
        title: str | None = None,
    ) -> list[AlertEntry]:
        """Handle a meeting create/update event.

        Raises:
            InvalidDateError: ``start_local_time`` or the zone is invalid.
        """
        start = to_canonical_utc(start_local_time, device_time_zone or self._default_tz)
        return await self._upsert(meeting_id, start, title)

    async def schedule(self, meeting: Meeting) -> list[AlertEntry]:
        """Handle a meeting whose start is already a canonical UTC instant."""
        return await self._upsert(meeting.meeting_id, ensure_utc(meeting.start_utc), meeting.title)

    async def _upsert(
        self, meeting_id: str, start: datetime, title: str | None,
    ) -> list[AlertEntry]:
        offsets = self._offsets_for(meeting_id, start)
        if len(offsets) < len(self._offsets):
            logger.debug(
                "Meeting %s: skipping %d alerts already in the past",
                meeting_id, len(self._offsets) - len(offsets),
            )
        return await self._store.upsert_meeting_alerts(meeting_id, start, offsets, title or None)

    async def cancel_meeting(self, meeting_id: str) -> int:
        """Handle a meeting delete event. Unknown ids are a no-op."""
        return await self._store.cancel_meeting_alerts(meeting_id)

    async def refresh_all(self, meetings: Iterable[Meeting]) -> dict[str, int]:
        """Re-sync alerts from the full meeting list.

        Meetings with an unusable start time are skipped and logged.
        Alerts of meetings missing from the list are cancelled.

        Returns:
            {"scheduled": meetings upserted, "skipped": invalid meetings,
             "cancelled": entries cancelled for missing meetings}
        """
        seen: set[str] = set()
        scheduled = skipped = 0
        for meeting in meetings:
            seen.add(meeting.meeting_id)
            try:
                await self.schedule(meeting)
            except InvalidDateError as exc:
                logger.error("Invalid meeting time for %s: %s", meeting.meeting_id, exc)
                skipped += 1
                continue
            scheduled += 1

        cancelled = await self.cleanup_orphans(seen)
        logger.info(
            "Alert refresh: %d meetings scheduled, %d skipped, %d orphan alerts cancelled",
            scheduled, skipped, cancelled,
        )
        return {"scheduled": scheduled, "skipped": skipped, "cancelled": cancelled}

    async def cleanup_orphans(self, existing_meeting_ids: Iterable[str]) -> int:
        """Cancel pending alerts for meetings not in ``existing_meeting_ids``.

        Returns:
            Number of entries cancelled.
        """
        existing = set(existing_meeting_ids)
        cancelled = 0
        for meeting_id in self._store.meeting_ids():
            if meeting_id in existing:
                continue
            count = await self.cancel_meeting(meeting_id)
            if count:
                logger.info("Cancelled %d orphan alerts for meeting %s", count, meeting_id)
            cancelled += count
        return cancelled

    def meeting_title(self, meeting_id: str) -> str | None:
        return self._store.meeting_title(meeting_id)

    def stats(self) -> dict[str, int]:
        return self._store.stats()
