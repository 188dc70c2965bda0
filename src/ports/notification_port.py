"""Notification ports — abstract interfaces for delivering alerts.

Core modules depend on these protocols, never on a specific messaging provider.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from src.data.models import AlertEntry


class NotificationPort(Protocol):
    """Sends a plain text message to a user."""

    async def send_message(self, user_id: int, text: str) -> None: ...


class NotificationDispatcher(Protocol):
    """Delivers a due alert entry.

    Returns True on success, False on failure. Must be safe to call for an
    unknown, already-fired or already-cancelled entry (a no-op).
    """

    async def dispatch(self, entry: AlertEntry) -> bool: ...
