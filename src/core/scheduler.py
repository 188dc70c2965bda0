"""
Meeting Alerts — Alert Scheduler.

On every tick, reads "now" once, asks the store for due entries and hands
them to the notification dispatcher in dispatch order. An entry moves
pending -> fired on successful dispatch. Failed dispatches stay pending
and are retried on later ticks until the attempt budget runs out, after
which the entry is closed as fired and the failure reported.

The scheduler can run its own cooperative loop (``run``) or be driven by a
host timer / OS wake-up calling ``tick`` directly.

This module is provider-agnostic: it depends on the NotificationDispatcher
and ErrorSink protocols, not on specific implementations.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable

from src.core.errors import AlertError, DispatchFailure
from src.core.timezone import ensure_utc, utc_now
from src.ports.error_sink import LoggingErrorSink

if TYPE_CHECKING:
    from src.data.alert_store import AlertStore
    from src.data.models import AlertEntry
    from src.ports.error_sink import ErrorSink
    from src.ports.notification_port import NotificationDispatcher

logger = logging.getLogger(__name__)


@dataclass
class TickReport:
    """What a single tick did."""

    now: datetime
    dispatched: list[AlertEntry] = field(default_factory=list)
    retrying: list[AlertEntry] = field(default_factory=list)
    force_closed: list[AlertEntry] = field(default_factory=list)
    skipped: int = 0       # cancelled between snapshot and dispatch
    purged: int = 0


class AlertScheduler:
    """Fires due alert entries through a NotificationDispatcher."""

    def __init__(
        self,
        store: AlertStore,
        dispatcher: NotificationDispatcher,
        error_sink: ErrorSink | None = None,
        clock: Callable[[], datetime] = utc_now,
        tick_interval: float = 15.0,
        max_attempts: int = 3,
        retention_window: timedelta = timedelta(hours=24),
        purge_interval: timedelta = timedelta(hours=1),
        dispatch_timeout: float = 10.0,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if tick_interval <= 0:
            raise ValueError("tick_interval must be positive")

        self._store = store
        self._dispatcher = dispatcher
        self._sink = error_sink or LoggingErrorSink()
        self._clock = clock
        self._tick_interval = tick_interval
        self._max_attempts = max_attempts
        self._retention_window = retention_window
        self._purge_interval = purge_interval
        self._dispatch_timeout = dispatch_timeout

        self._tick_lock = asyncio.Lock()
        self._wake_event = asyncio.Event()
        self._stop_event: asyncio.Event | None = None
        self._last_now: datetime | None = None
        self._last_purge: datetime | None = None

    @property
    def tick_interval(self) -> float:
        return self._tick_interval

    # ------------------------------------------------------------------
    # Single tick
    # ------------------------------------------------------------------

    async def tick(self, now: datetime | None = None) -> TickReport:
        """Dispatch every entry due at ``now`` (defaults to the injected clock).

        Ticks never overlap: a tick that arrives while another is running
        waits for it, then sees the updated entry states.
        """
        async with self._tick_lock:
            current = ensure_utc(now) if now is not None else self._clock()
            if self._last_now is not None and current < self._last_now:
                logger.warning(
                    "Clock moved backward from %s to %s", self._last_now.isoformat(),
                    current.isoformat(),
                )
            self._last_now = current

            report = TickReport(now=current)
            for entry in self._store.list_due_entries(current):
                if not self._store.is_pending(entry):
                    report.skipped += 1
                    continue
                await self._dispatch_one(entry, report)

            await self._maybe_purge(current, report)

        if report.dispatched or report.retrying or report.force_closed:
            logger.info(
                "Tick at %s: %d dispatched, %d retrying, %d force-closed",
                current.isoformat(), len(report.dispatched),
                len(report.retrying), len(report.force_closed),
            )
        return report

    async def _dispatch_one(self, entry: AlertEntry, report: TickReport) -> None:
        error: Exception | None = None
        try:
            delivered = await asyncio.wait_for(
                self._dispatcher.dispatch(entry), self._dispatch_timeout,
            )
        except Exception as exc:
            delivered = False
            error = exc

        if delivered:
            if await self._store.mark_fired(entry, now=report.now):
                report.dispatched.append(entry)
            return

        attempts = await self._store.record_failed_attempt(entry, now=report.now)
        final = attempts >= self._max_attempts
        reason = f"{error!r}" if error is not None else "dispatcher returned failure"
        self._sink.report(DispatchFailure(
            f"Alert {entry.offset_label} for meeting {entry.meeting_id} not delivered "
            f"(attempt {attempts}/{self._max_attempts}): {reason}",
            meeting_id=entry.meeting_id,
            offset_label=entry.offset_label,
            attempts=attempts,
            final=final,
        ))

        if final:
            await self._store.mark_fired(entry, now=report.now)
            report.force_closed.append(entry)
        else:
            report.retrying.append(entry)

    async def _maybe_purge(self, now: datetime, report: TickReport) -> None:
        if self._last_purge is not None and abs(now - self._last_purge) < self._purge_interval:
            return
        self._last_purge = now
        report.purged = await self._store.purge_stale(self._retention_window, now=now)
        if self._store.degraded:
            await self._store.flush()

    # ------------------------------------------------------------------
    # Cooperative loop
    # ------------------------------------------------------------------

    def wake(self) -> None:
        """Run the next tick immediately (e.g. from an OS background task)."""
        self._wake_event.set()

    def stop(self) -> None:
        """Ask a running ``run`` loop to exit after the current tick."""
        if self._stop_event is not None:
            self._stop_event.set()
        self._wake_event.set()

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Tick every ``tick_interval`` seconds (or on ``wake``) until stopped.

        A failing tick is reported and the loop carries on.
        """
        self._stop_event = stop_event or asyncio.Event()
        logger.info("Alert scheduler started (tick every %.1fs)", self._tick_interval)

        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception as exc:
                logger.exception("Alert scheduler tick crashed")
                self._sink.report(AlertError(f"Tick failed: {exc!r}"))

            if self._stop_event.is_set():
                break
            try:
                await asyncio.wait_for(self._wake_event.wait(), self._tick_interval)
            except asyncio.TimeoutError:
                pass
            self._wake_event.clear()

        logger.info("Alert scheduler stopped")
