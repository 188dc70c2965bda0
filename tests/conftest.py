"""Shared test fixtures and configuration.

Sets up fake environment variables so src.config doesn't sys.exit(),
and provides common fixtures like a temp DB, a fake clock and a
recording dispatcher.
"""

import os

# Patch env vars BEFORE any src imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("ALLOWED_USER_IDS", "12345")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("TIMEZONE", "UTC")

from datetime import datetime, timezone

import pytest


class FakeClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


class RecordingDispatcher:
    """NotificationDispatcher that records calls and can be told to fail."""

    def __init__(self, fail_for: set | None = None, raise_for: set | None = None) -> None:
        self.calls = []
        self.fail_for = fail_for or set()
        self.raise_for = raise_for or set()

    async def dispatch(self, entry) -> bool:
        self.calls.append((entry.meeting_id, entry.offset_label))
        if entry.key in self.raise_for:
            raise RuntimeError("push service down")
        return entry.key not in self.fail_for


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return FakeClock(utc(2024, 1, 1, 12, 0))


@pytest.fixture
def sink():
    from src.ports.error_sink import CollectingErrorSink
    return CollectingErrorSink()


@pytest.fixture
def backend():
    from src.data.db import InMemoryBackend
    return InMemoryBackend()


@pytest.fixture
def store(backend, sink, clock):
    """Return an AlertStore over an in-memory backend with a fake clock."""
    from src.data.alert_store import AlertStore
    return AlertStore(backend=backend, error_sink=sink, clock=clock, io_timeout=1.0)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_alerts.db")


@pytest.fixture
def alert_db(tmp_db_path):
    """Return an AlertScheduleDB instance backed by a temp file."""
    from src.data.db import AlertScheduleDB
    return AlertScheduleDB(db_path=tmp_db_path)
