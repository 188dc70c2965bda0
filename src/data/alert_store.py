"""
Meeting Alerts — Alert Schedule Store.

Owns every AlertEntry. The in-memory map is authoritative; each mutation is
written through to a PersistenceBackend so schedules survive restarts.

Writes for one meeting are serialized with a per-meeting asyncio.Lock, so
an upsert always replaces the meeting's previous entries instead of leaving
stale ones behind. Backend calls run in a worker thread with a timeout;
when they fail the store keeps working from memory (degraded mode) and
reports the failure instead of raising.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import Counter, defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable

from src.core.errors import (
    ConcurrentUpsertConflict,
    StoreCorruptedError,
    StoreUnavailableError,
)
from src.core.offsets import InvalidOffsetError, offset_priority, parse_offset
from src.core.timezone import ensure_utc, utc_now
from src.data.models import AlertEntry, AlertState
from src.ports.error_sink import LoggingErrorSink

if TYPE_CHECKING:
    from src.ports.error_sink import ErrorSink
    from src.ports.persistence_port import PersistenceBackend

logger = logging.getLogger(__name__)


def dispatch_order(entry: AlertEntry) -> tuple:
    """Sort key: fire time, then offset priority ("now" before "1m" ...), then meeting."""
    return (entry.fire_at_utc, offset_priority(entry.offset_label), entry.meeting_id)


class AlertStore:
    """Persisted mapping of meeting id to its alert entries."""

    def __init__(
        self,
        backend: PersistenceBackend | None = None,
        error_sink: ErrorSink | None = None,
        clock: Callable[[], datetime] = utc_now,
        io_timeout: float = 2.0,
    ) -> None:
        if backend is None:
            from src.data.db import AlertScheduleDB
            backend = AlertScheduleDB(timeout=io_timeout)

        self._backend = backend
        self._sink = error_sink or LoggingErrorSink()
        self._clock = clock
        self._io_timeout = io_timeout
        self._entries: dict[str, list[AlertEntry]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: defaultdict[str, int] = defaultdict(int)
        self._dirty: set[str] = set()
        self._degraded = False

    # ------------------------------------------------------------------
    # Loading and persistence
    # ------------------------------------------------------------------

    @property
    def degraded(self) -> bool:
        """True while persistence is failing and the store runs in memory only."""
        return self._degraded

    async def load(self) -> int:
        """Replace in-memory state with the persisted schedule.

        Unreadable rows are skipped; an unreadable backend yields an empty
        store. Both are reported as StoreCorruptedError. Never raises.

        Returns:
            Number of entries loaded.
        """
        self._entries = {}
        try:
            keys = await self._io(self._backend.keys)
        except Exception as exc:
            self._sink.report(StoreCorruptedError(f"Cannot read alert schedule: {exc!r}"))
            logger.warning("Alert store reset to empty after read failure")
            return 0

        loaded = 0
        for meeting_id in keys:
            try:
                raw = await self._io(self._backend.get, meeting_id)
                entries = self._decode(meeting_id, raw)
            except Exception as exc:
                self._sink.report(StoreCorruptedError(
                    f"Discarding unreadable alerts for meeting {meeting_id}: {exc!r}",
                    meeting_id=meeting_id,
                ))
                continue
            if entries:
                self._entries[meeting_id] = entries
                loaded += len(entries)

        logger.info(
            "Alert store loaded %d entries for %d meetings", loaded, len(self._entries),
        )
        return loaded

    @staticmethod
    def _decode(meeting_id: str, raw: str | None) -> list[AlertEntry]:
        if raw is None:
            return []
        records = json.loads(raw)
        if not isinstance(records, list):
            raise ValueError("Alert payload is not an array")

        entries: list[AlertEntry] = []
        pending_labels: set[str] = set()
        for record in records:
            try:
                entry = AlertEntry.from_record(meeting_id, record)
                parse_offset(entry.offset_label)
            except (TypeError, InvalidOffsetError) as exc:
                raise ValueError(str(exc)) from exc
            if entry.is_pending:
                # At most one pending entry per label; keep the first.
                if entry.offset_label in pending_labels:
                    continue
                pending_labels.add(entry.offset_label)
            entries.append(entry)
        return entries

    async def _io(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), self._io_timeout)

    async def _persist(self, meeting_id: str) -> None:
        """Write one meeting through to the backend, or mark it dirty."""
        if self._degraded:
            self._dirty.add(meeting_id)
            return
        try:
            await self._write(meeting_id)
        except Exception as exc:
            self._degraded = True
            self._dirty.add(meeting_id)
            self._sink.report(StoreUnavailableError(
                f"Persisting alerts failed, continuing in memory only: {exc!r}",
                meeting_id=meeting_id,
            ))

    async def _write(self, meeting_id: str) -> None:
        entries = self._entries.get(meeting_id)
        if not entries:
            await self._io(self._backend.delete, meeting_id)
            return
        payload = json.dumps([e.to_record() for e in entries])
        await self._io(self._backend.set, meeting_id, payload)

    async def flush(self) -> bool:
        """Retry persisting every meeting touched while degraded.

        Returns True when the store is fully persisted again.
        """
        if not self._degraded and not self._dirty:
            return True
        for meeting_id in sorted(self._dirty):
            try:
                await self._write(meeting_id)
            except Exception as exc:
                logger.warning("Alert store flush still failing: %r", exc)
                return False
            self._dirty.discard(meeting_id)

        if self._degraded:
            logger.info("Alert store persistence recovered")
        self._degraded = False
        return True

    # ------------------------------------------------------------------
    # Per-meeting serialization
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _locked(
        self, meeting_id: str, report_conflict: bool = False,
    ) -> AsyncIterator[None]:
        """Hold the meeting's write lock.

        Locks are created on first use and dropped again once nobody holds or
        waits for them and the meeting has no entries left.
        """
        lock = self._locks.get(meeting_id)
        if lock is None:
            lock = self._locks[meeting_id] = asyncio.Lock()
        elif report_conflict and lock.locked():
            self._sink.report(ConcurrentUpsertConflict(
                f"Overlapping write for meeting {meeting_id}; waiting for the first to finish",
                meeting_id=meeting_id,
            ))

        self._lock_users[meeting_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[meeting_id] -= 1
            if not self._lock_users[meeting_id]:
                del self._lock_users[meeting_id]
                if meeting_id not in self._entries:
                    self._locks.pop(meeting_id, None)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def upsert_meeting_alerts(
        self,
        meeting_id: str,
        start_instant: datetime,
        offsets: list[str] | tuple[str, ...],
        title: str | None = None,
    ) -> list[AlertEntry]:
        """Make the meeting's pending alerts match ``start_instant`` and ``offsets``.

        For each offset, ``fire_at = start_instant - offset``. Pending entries
        that already match are kept; pending entries with another label or
        another fire time are cancelled and replaced. An entry that already
        fired at exactly the same instant is not re-armed. A ``title`` is
        stored on every entry of the meeting; without one, new entries keep
        the title the meeting already has.

        Raises:
            InvalidDateError: ``start_instant`` is naive.
            InvalidOffsetError: an offset label is malformed.

        Returns:
            The meeting's current entries for the requested offsets, in
            dispatch order.
        """
        start = ensure_utc(start_instant)
        targets: dict[str, datetime] = {}
        for label in offsets:
            if label not in targets:
                targets[label] = start - parse_offset(label)

        async with self._locked(meeting_id, report_conflict=True):
            now = self._clock()
            entries = self._entries.setdefault(meeting_id, [])
            pending = {e.offset_label: e for e in entries if e.is_pending}
            fired = {
                (e.offset_label, e.fire_at_utc): e
                for e in entries if e.state is AlertState.FIRED
            }

            retitled = False
            if title:
                for entry in entries:
                    if entry.title != title:
                        entry.title = title
                        retitled = True
            else:
                title = self._title_of(entries)

            result: list[AlertEntry] = []
            created = cancelled = 0
            for label, fire_at in targets.items():
                current = pending.pop(label, None)
                if current is not None and current.fire_at_utc == fire_at:
                    result.append(current)
                    continue
                if current is not None:
                    self._close(current, AlertState.CANCELLED, now)
                    cancelled += 1

                already_fired = fired.get((label, fire_at))
                if already_fired is not None:
                    result.append(already_fired)
                    continue

                entry = AlertEntry(
                    meeting_id=meeting_id,
                    offset_label=label,
                    fire_at_utc=fire_at,
                    updated_at_utc=now,
                    title=title,
                )
                entries.append(entry)
                result.append(entry)
                created += 1

            for stale in pending.values():
                self._close(stale, AlertState.CANCELLED, now)
                cancelled += 1

            if not entries:
                self._entries.pop(meeting_id, None)
            if created or cancelled or retitled:
                await self._persist(meeting_id)

        logger.info(
            "Alerts for meeting %s: %d created, %d cancelled, %d kept",
            meeting_id, created, cancelled, len(result) - created,
        )
        return sorted(result, key=dispatch_order)

    async def cancel_meeting_alerts(self, meeting_id: str) -> int:
        """Cancel every pending alert of a meeting. Unknown ids are a no-op.

        Returns:
            Number of entries cancelled.
        """
        if meeting_id not in self._entries:
            return 0

        async with self._locked(meeting_id):
            now = self._clock()
            cancelled = 0
            for entry in self._entries.get(meeting_id, []):
                if entry.is_pending:
                    self._close(entry, AlertState.CANCELLED, now)
                    cancelled += 1
            if cancelled:
                await self._persist(meeting_id)

        if cancelled:
            logger.info("Cancelled %d alerts for meeting %s", cancelled, meeting_id)
        return cancelled

    async def mark_fired(self, entry: AlertEntry, now: datetime | None = None) -> bool:
        """Transition a pending entry to fired. Returns False if it was not pending.

        ``now`` stamps the transition; it defaults to the store clock.
        """
        async with self._locked(entry.meeting_id):
            if not self._owns(entry) or not entry.is_pending:
                return False
            self._close(entry, AlertState.FIRED, self._stamp(now))
            await self._persist(entry.meeting_id)
        return True

    async def record_failed_attempt(
        self, entry: AlertEntry, now: datetime | None = None,
    ) -> int:
        """Count a failed dispatch attempt. Returns the attempt total so far."""
        async with self._locked(entry.meeting_id):
            if not self._owns(entry) or not entry.is_pending:
                return entry.attempts
            entry.attempts += 1
            entry.updated_at_utc = self._stamp(now)
            await self._persist(entry.meeting_id)
        return entry.attempts

    async def purge_stale(
        self, retention_window: timedelta, now: datetime | None = None,
    ) -> int:
        """Delete fired/cancelled entries older than ``retention_window``.

        Pending entries are never deleted.

        Returns:
            Number of entries deleted.
        """
        cutoff = self._stamp(now) - retention_window
        removed = 0
        for meeting_id in list(self._entries):
            async with self._locked(meeting_id):
                entries = self._entries.get(meeting_id, [])
                keep = [e for e in entries if e.is_pending or _age_anchor(e) > cutoff]
                dropped = len(entries) - len(keep)
                if not dropped:
                    continue
                removed += dropped
                if keep:
                    self._entries[meeting_id] = keep
                else:
                    self._entries.pop(meeting_id, None)
                await self._persist(meeting_id)

        if removed:
            logger.info("Purged %d stale alert entries", removed)
        return removed

    def _stamp(self, now: datetime | None) -> datetime:
        return ensure_utc(now) if now is not None else self._clock()

    @staticmethod
    def _close(entry: AlertEntry, state: AlertState, now: datetime) -> None:
        entry.state = state
        entry.updated_at_utc = now

    def _owns(self, entry: AlertEntry) -> bool:
        return any(e is entry for e in self._entries.get(entry.meeting_id, []))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_due_entries(self, as_of: datetime) -> list[AlertEntry]:
        """Pending entries with ``fire_at_utc <= as_of``, in dispatch order."""
        cutoff = ensure_utc(as_of)
        due = [
            entry
            for entries in self._entries.values()
            for entry in entries
            if entry.is_pending and entry.fire_at_utc <= cutoff
        ]
        return sorted(due, key=dispatch_order)

    def is_pending(self, entry: AlertEntry) -> bool:
        """True if ``entry`` is still owned by the store and pending."""
        return entry.is_pending and self._owns(entry)

    def pending_entries(self, meeting_id: str | None = None) -> list[AlertEntry]:
        """All pending entries (optionally for one meeting), in dispatch order."""
        if meeting_id is not None:
            pools = [self._entries.get(meeting_id, [])]
        else:
            pools = list(self._entries.values())
        return sorted(
            (e for pool in pools for e in pool if e.is_pending), key=dispatch_order,
        )

    def entries_for(self, meeting_id: str) -> list[AlertEntry]:
        """Every entry (any state) for a meeting, in dispatch order."""
        return sorted(self._entries.get(meeting_id, []), key=dispatch_order)

    def meeting_ids(self) -> list[str]:
        return sorted(self._entries)

    def meeting_title(self, meeting_id: str) -> str | None:
        """Title stored with the meeting's alerts, if any."""
        return self._title_of(self._entries.get(meeting_id, []))

    @staticmethod
    def _title_of(entries: list[AlertEntry]) -> str | None:
        return next((e.title for e in reversed(entries) if e.title), None)

    def stats(self) -> dict[str, int]:
        """Counts by state, plus number of meetings tracked."""
        counts = Counter(
            entry.state.value for entries in self._entries.values() for entry in entries
        )
        return {
            "meetings": len(self._entries),
            "pending": counts.get(AlertState.PENDING.value, 0),
            "fired": counts.get(AlertState.FIRED.value, 0),
            "cancelled": counts.get(AlertState.CANCELLED.value, 0),
        }


def _age_anchor(entry: AlertEntry) -> datetime:
    return entry.updated_at_utc or entry.fire_at_utc
