"""Persistence port — abstract key-value interface for the alert schedule.

Keys are meeting ids; values are the JSON-serialized alert arrays.
Implementations are synchronous; the store calls them from a worker thread
with a bounded timeout.
"""

from __future__ import annotations

from typing import Protocol


class PersistenceBackend(Protocol):
    """Abstract key-value store used by the alert schedule store."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...
