"""Telegram notification adapters — implement NotificationPort and NotificationDispatcher.

TelegramNotifier wraps a telegram.Bot instance. TelegramAlertDispatcher
turns due alert entries into messages for every configured recipient.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable

from telegram import Bot
from telegram.error import TelegramError

from src.core.offsets import parse_offset
from src.core.timezone import to_local_display

if TYPE_CHECKING:
    from src.data.models import AlertEntry
    from src.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Telegram implementation of NotificationPort."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def send_message(self, user_id: int, text: str) -> None:
        await self._bot.send_message(chat_id=user_id, text=text)


def _humanize(label: str) -> str:
    minutes = int(parse_offset(label).total_seconds() // 60)
    if minutes == 0:
        return "now"
    if minutes % 1440 == 0:
        days = minutes // 1440
        return "1 day" if days == 1 else f"{days} days"
    if minutes % 60 == 0:
        hours = minutes // 60
        return "1 hour" if hours == 1 else f"{hours} hours"
    return "1 minute" if minutes == 1 else f"{minutes} minutes"


def alert_title(label: str) -> str:
    """Notification title for an offset label, e.g. "Meeting in 15 minutes"."""
    minutes = int(parse_offset(label).total_seconds() // 60)
    if minutes == 0:
        return "🚀 Meeting starting now!"
    if minutes <= 5:
        return f"🔥 Meeting in {_humanize(label)}!"
    if minutes <= 15:
        return f"🔔 Meeting in {_humanize(label)}"
    return f"⏰ Meeting in {_humanize(label)}"


def format_alert_message(
    entry: AlertEntry, title: str | None, time_zone: str,
) -> str:
    """Build the message body for a due alert."""
    meeting_start = entry.fire_at_utc + parse_offset(entry.offset_label)
    local = to_local_display(meeting_start, time_zone)
    name = title or f"Meeting {entry.meeting_id}"

    lines = [alert_title(entry.offset_label)]
    if parse_offset(entry.offset_label).total_seconds() == 0:
        lines.append(f"JOIN NOW: \"{name}\" is starting ({local.time})")
    else:
        lines.append(f"\"{name}\" starts at {local.time} on {local.date}")
    return "\n".join(lines)


class TelegramAlertDispatcher:
    """Telegram implementation of NotificationDispatcher.

    Sends each alert to every recipient. Recipients that already received an
    alert are not messaged again when a partially failed dispatch is retried,
    and dispatching a fully delivered entry is a no-op that reports success.
    Delivery records are kept for ``retention`` behind the newest alert seen.
    """

    def __init__(
        self,
        notifier: NotificationPort,
        recipients: list[int],
        time_zone: str = "UTC",
        describe: Callable[[str], str | None] | None = None,
        retention: timedelta = timedelta(hours=24),
    ) -> None:
        self._notifier = notifier
        self._recipients = list(recipients)
        self._time_zone = time_zone
        self._describe = describe
        self._retention = retention
        self._sent: dict[tuple[str, str, datetime], set[int]] = {}
        self._newest: datetime | None = None

    async def dispatch(self, entry: AlertEntry) -> bool:
        self._prune(entry.fire_at_utc)
        key = (entry.meeting_id, entry.offset_label, entry.fire_at_utc)
        sent = self._sent.setdefault(key, set())
        remaining = [chat_id for chat_id in self._recipients if chat_id not in sent]
        if not remaining:
            logger.debug("Alert %s already delivered, skipping", key)
            return True

        title = entry.title
        if self._describe is not None:
            title = self._describe(entry.meeting_id) or title
        text = format_alert_message(entry, title, self._time_zone)

        ok = True
        for chat_id in remaining:
            try:
                await self._notifier.send_message(chat_id, text)
            except TelegramError as exc:
                logger.error("Failed to send alert to %d: %s", chat_id, exc)
                ok = False
                continue
            sent.add(chat_id)
        return ok

    def _prune(self, fire_at: datetime) -> None:
        if self._newest is not None and fire_at <= self._newest:
            return
        self._newest = fire_at
        horizon = fire_at - self._retention
        for key in [k for k in self._sent if k[2] < horizon]:
            del self._sent[key]
