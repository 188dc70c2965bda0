"""Tests for src.data.alert_store — AlertStore upsert/cancel/due/purge/persistence."""

from __future__ import annotations

import asyncio
import json
import time
from datetime import timedelta

import pytest

from conftest import utc
from src.core.errors import (
    ConcurrentUpsertConflict,
    InvalidDateError,
    StoreCorruptedError,
    StoreUnavailableError,
)
from src.core.offsets import InvalidOffsetError
from src.data.alert_store import AlertStore
from src.data.db import InMemoryBackend
from src.data.models import AlertState

START = utc(2024, 1, 1, 14, 0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class SlowBackend(InMemoryBackend):
    """Backend whose writes block for ``delay`` seconds."""

    def __init__(self, delay: float) -> None:
        super().__init__()
        self.delay = delay

    def set(self, key: str, value: str) -> None:
        time.sleep(self.delay)
        super().set(key, value)


class BrokenBackend(InMemoryBackend):
    """Backend whose reads and/or writes raise."""

    def __init__(self, fail_reads: bool = False, fail_writes: bool = True) -> None:
        super().__init__()
        self.fail_reads = fail_reads
        self.fail_writes = fail_writes

    def keys(self) -> list[str]:
        if self.fail_reads:
            raise OSError("disk unreadable")
        return super().keys()

    def set(self, key: str, value: str) -> None:
        if self.fail_writes:
            raise OSError("disk full")
        super().set(key, value)


def _pending_snapshot(store: AlertStore) -> set[tuple]:
    return {(e.meeting_id, e.offset_label, e.fire_at_utc) for e in store.pending_entries()}


# ---------------------------------------------------------------------------
# upsert_meeting_alerts
# ---------------------------------------------------------------------------


class TestUpsert:
    @pytest.mark.asyncio
    async def test_one_pending_entry_per_offset(self, store):
        entries = await store.upsert_meeting_alerts("m1", START, ["15m", "5m", "now"])

        assert len(entries) == 3
        assert all(e.state is AlertState.PENDING for e in entries)
        fire_times = {e.offset_label: e.fire_at_utc for e in entries}
        assert fire_times == {
            "15m": utc(2024, 1, 1, 13, 45),
            "5m": utc(2024, 1, 1, 13, 55),
            "now": utc(2024, 1, 1, 14, 0),
        }

    @pytest.mark.asyncio
    async def test_result_in_dispatch_order(self, store):
        entries = await store.upsert_meeting_alerts("m1", START, ["now", "1h", "5m"])
        assert [e.offset_label for e in entries] == ["1h", "5m", "now"]

    @pytest.mark.asyncio
    async def test_idempotent(self, store, backend):
        first = await store.upsert_meeting_alerts("m1", START, ["15m", "5m", "now"])
        payload = backend.get("m1")
        second = await store.upsert_meeting_alerts("m1", START, ["15m", "5m", "now"])

        assert [id(e) for e in first] == [id(e) for e in second]
        assert len(store.entries_for("m1")) == 3
        assert backend.get("m1") == payload

    @pytest.mark.asyncio
    async def test_reschedule_replaces_entries(self, store):
        await store.upsert_meeting_alerts("m1", START, ["15m", "5m", "now"])
        await store.upsert_meeting_alerts("m1", utc(2024, 1, 1, 15, 0), ["15m", "5m", "now"])

        pending = store.pending_entries("m1")
        assert [e.fire_at_utc for e in pending] == [
            utc(2024, 1, 1, 14, 45), utc(2024, 1, 1, 14, 55), utc(2024, 1, 1, 15, 0),
        ]
        cancelled = [e for e in store.entries_for("m1") if e.state is AlertState.CANCELLED]
        assert len(cancelled) == 3

    @pytest.mark.asyncio
    async def test_dropped_offset_is_cancelled(self, store):
        await store.upsert_meeting_alerts("m1", START, ["15m", "5m"])
        await store.upsert_meeting_alerts("m1", START, ["5m"])

        assert [e.offset_label for e in store.pending_entries("m1")] == ["5m"]
        states = {e.offset_label: e.state for e in store.entries_for("m1")}
        assert states["15m"] is AlertState.CANCELLED

    @pytest.mark.asyncio
    async def test_duplicate_labels_collapse(self, store):
        entries = await store.upsert_meeting_alerts("m1", START, ["5m", "5m", "now"])
        assert [e.offset_label for e in entries] == ["5m", "now"]

    @pytest.mark.asyncio
    async def test_fired_entry_not_rearmed_for_same_instant(self, store):
        entries = await store.upsert_meeting_alerts("m1", START, ["15m", "now"])
        await store.mark_fired(entries[0])

        again = await store.upsert_meeting_alerts("m1", START, ["15m", "now"])

        assert again[0].state is AlertState.FIRED
        assert [e.offset_label for e in store.pending_entries("m1")] == ["now"]

    @pytest.mark.asyncio
    async def test_fired_entry_rearmed_when_time_changes(self, store):
        entries = await store.upsert_meeting_alerts("m1", START, ["15m"])
        await store.mark_fired(entries[0])

        again = await store.upsert_meeting_alerts("m1", utc(2024, 1, 1, 16, 0), ["15m"])

        assert again[0].state is AlertState.PENDING
        assert again[0].fire_at_utc == utc(2024, 1, 1, 15, 45)

    @pytest.mark.asyncio
    async def test_empty_offsets_cancel_everything(self, store):
        await store.upsert_meeting_alerts("m1", START, ["15m", "now"])
        assert await store.upsert_meeting_alerts("m1", START, []) == []
        assert store.pending_entries("m1") == []

    @pytest.mark.asyncio
    async def test_naive_start_rejected(self, store):
        from datetime import datetime

        with pytest.raises(InvalidDateError):
            await store.upsert_meeting_alerts("m1", datetime(2024, 1, 1, 14, 0), ["now"])
        assert store.meeting_ids() == []

    @pytest.mark.asyncio
    async def test_bad_offset_rejected_without_changes(self, store):
        await store.upsert_meeting_alerts("m1", START, ["15m"])
        with pytest.raises(InvalidOffsetError):
            await store.upsert_meeting_alerts("m1", START, ["15m", "whenever"])
        assert [e.offset_label for e in store.pending_entries("m1")] == ["15m"]

    @pytest.mark.asyncio
    async def test_concurrent_upserts_are_serialized(self, sink, clock):
        store = AlertStore(backend=SlowBackend(0.05), error_sink=sink, clock=clock, io_timeout=1.0)

        await asyncio.gather(
            store.upsert_meeting_alerts("m1", START, ["15m", "5m", "now"]),
            store.upsert_meeting_alerts("m1", utc(2024, 1, 1, 15, 0), ["15m", "5m", "now"]),
        )

        pending = store.pending_entries("m1")
        assert len(pending) == 3
        assert {e.fire_at_utc for e in pending} == {
            utc(2024, 1, 1, 14, 45), utc(2024, 1, 1, 14, 55), utc(2024, 1, 1, 15, 0),
        }
        assert sink.of_type(ConcurrentUpsertConflict)


# ---------------------------------------------------------------------------
# cancel_meeting_alerts
# ---------------------------------------------------------------------------


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancels_all_pending(self, store):
        await store.upsert_meeting_alerts("m1", START, ["15m", "5m", "now"])
        assert await store.cancel_meeting_alerts("m1") == 3
        assert store.pending_entries("m1") == []
        assert all(e.state is AlertState.CANCELLED for e in store.entries_for("m1"))

    @pytest.mark.asyncio
    async def test_unknown_meeting_is_noop(self, store, sink):
        assert await store.cancel_meeting_alerts("ghost") == 0
        assert sink.errors == []

    @pytest.mark.asyncio
    async def test_idempotent(self, store):
        await store.upsert_meeting_alerts("m1", START, ["now"])
        await store.cancel_meeting_alerts("m1")
        assert await store.cancel_meeting_alerts("m1") == 0

    @pytest.mark.asyncio
    async def test_other_meetings_untouched(self, store):
        await store.upsert_meeting_alerts("m1", START, ["now"])
        await store.upsert_meeting_alerts("m2", START, ["now"])
        await store.cancel_meeting_alerts("m1")
        assert [e.meeting_id for e in store.pending_entries()] == ["m2"]


# ---------------------------------------------------------------------------
# list_due_entries
# ---------------------------------------------------------------------------


class TestListDueEntries:
    @pytest.mark.asyncio
    async def test_only_due_pending_entries(self, store):
        await store.upsert_meeting_alerts("m1", START, ["15m", "5m", "now"])
        due = store.list_due_entries(utc(2024, 1, 1, 13, 55))
        assert [e.offset_label for e in due] == ["15m", "5m"]

    @pytest.mark.asyncio
    async def test_boundary_is_inclusive(self, store):
        await store.upsert_meeting_alerts("m1", START, ["15m"])
        assert len(store.list_due_entries(utc(2024, 1, 1, 13, 45))) == 1
        assert store.list_due_entries(utc(2024, 1, 1, 13, 44, 59)) == []

    @pytest.mark.asyncio
    async def test_equal_fire_times_use_offset_priority(self, store):
        await store.upsert_meeting_alerts("c", utc(2024, 1, 1, 14, 5), ["5m"])
        await store.upsert_meeting_alerts("b", utc(2024, 1, 1, 14, 1), ["1m"])
        await store.upsert_meeting_alerts("a", utc(2024, 1, 1, 14, 0), ["now"])
        await store.upsert_meeting_alerts("d", utc(2024, 1, 1, 14, 15), ["15m"])

        due = store.list_due_entries(START)
        assert [e.offset_label for e in due] == ["now", "1m", "5m", "15m"]

    @pytest.mark.asyncio
    async def test_fire_time_before_priority(self, store):
        await store.upsert_meeting_alerts("a", utc(2024, 1, 1, 13, 0), ["now"])
        await store.upsert_meeting_alerts("b", utc(2024, 1, 1, 13, 0), ["1h"])
        due = store.list_due_entries(START)
        assert [(e.meeting_id, e.offset_label) for e in due] == [("b", "1h"), ("a", "now")]

    @pytest.mark.asyncio
    async def test_excludes_fired_and_cancelled(self, store):
        entries = await store.upsert_meeting_alerts("m1", START, ["15m", "5m"])
        await store.mark_fired(entries[0])
        await store.upsert_meeting_alerts("m2", START, ["5m"])
        await store.cancel_meeting_alerts("m2")

        due = store.list_due_entries(START)
        assert [(e.meeting_id, e.offset_label) for e in due] == [("m1", "5m")]


# ---------------------------------------------------------------------------
# State transitions
# ---------------------------------------------------------------------------


class TestTransitions:
    @pytest.mark.asyncio
    async def test_mark_fired(self, store, clock):
        entry = (await store.upsert_meeting_alerts("m1", START, ["now"]))[0]
        clock.set(START)
        assert await store.mark_fired(entry) is True
        assert entry.state is AlertState.FIRED
        assert entry.updated_at_utc == START

    @pytest.mark.asyncio
    async def test_mark_fired_is_terminal(self, store):
        entry = (await store.upsert_meeting_alerts("m1", START, ["now"]))[0]
        await store.cancel_meeting_alerts("m1")
        assert await store.mark_fired(entry) is False
        assert entry.state is AlertState.CANCELLED

    @pytest.mark.asyncio
    async def test_record_failed_attempt(self, store):
        entry = (await store.upsert_meeting_alerts("m1", START, ["now"]))[0]
        assert await store.record_failed_attempt(entry) == 1
        assert await store.record_failed_attempt(entry) == 2
        assert entry.is_pending

    @pytest.mark.asyncio
    async def test_is_pending_tracks_store_state(self, store):
        entry = (await store.upsert_meeting_alerts("m1", START, ["now"]))[0]
        assert store.is_pending(entry) is True
        await store.cancel_meeting_alerts("m1")
        assert store.is_pending(entry) is False

    @pytest.mark.asyncio
    async def test_explicit_now_stamps_transitions(self, store, clock):
        fired, failing = await store.upsert_meeting_alerts("m1", START, ["5m", "now"])
        tick_time = utc(2024, 1, 1, 14, 0, 30)

        await store.mark_fired(fired, now=tick_time)
        await store.record_failed_attempt(failing, now=tick_time)

        assert fired.updated_at_utc == tick_time
        assert failing.updated_at_utc == tick_time
        assert clock() != tick_time


# ---------------------------------------------------------------------------
# purge_stale
# ---------------------------------------------------------------------------


class TestPurgeStale:
    @pytest.mark.asyncio
    async def test_removes_old_closed_entries_only(self, store, clock, backend):
        entries = await store.upsert_meeting_alerts("m1", START, ["15m", "5m", "now"])
        clock.set(utc(2024, 1, 1, 13, 45))
        await store.mark_fired(entries[0])
        await store.upsert_meeting_alerts("m2", START, ["now"])
        await store.cancel_meeting_alerts("m2")

        removed = await store.purge_stale(timedelta(hours=24), now=utc(2024, 1, 2, 14, 0))

        assert removed == 2
        assert [e.offset_label for e in store.entries_for("m1")] == ["5m", "now"]
        assert "m2" not in store.meeting_ids()
        assert backend.get("m2") is None

    @pytest.mark.asyncio
    async def test_keeps_recent_closed_entries(self, store, clock):
        entry = (await store.upsert_meeting_alerts("m1", START, ["now"]))[0]
        clock.set(START)
        await store.mark_fired(entry)
        removed = await store.purge_stale(timedelta(hours=24), now=utc(2024, 1, 2, 13, 0))
        assert removed == 0
        assert store.entries_for("m1") == [entry]

    @pytest.mark.asyncio
    async def test_never_removes_pending(self, store):
        await store.upsert_meeting_alerts("m1", START, ["now"])
        removed = await store.purge_stale(timedelta(0), now=utc(2030, 1, 1))
        assert removed == 0
        assert len(store.pending_entries()) == 1

    @pytest.mark.asyncio
    async def test_purged_meetings_release_their_locks(self, store):
        for i in range(100):
            await store.upsert_meeting_alerts(f"m{i}", START, ["now"])
            await store.cancel_meeting_alerts(f"m{i}")

        await store.purge_stale(timedelta(0), now=utc(2024, 1, 2))

        assert store.meeting_ids() == []
        assert store._locks == {}

    @pytest.mark.asyncio
    async def test_meetings_with_entries_keep_their_locks(self, store):
        await store.upsert_meeting_alerts("m1", START, ["now"])
        await store.upsert_meeting_alerts("m2", START, [])
        await store.cancel_meeting_alerts("ghost")

        assert set(store._locks) == {"m1"}


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class TestPersistence:
    @pytest.mark.asyncio
    async def test_round_trip(self, store, backend, sink, clock):
        await store.upsert_meeting_alerts("m1", START, ["15m", "5m", "now"])
        await store.upsert_meeting_alerts("m2", utc(2024, 1, 1, 18, 30), ["1h"])
        fired = store.pending_entries("m1")[0]
        await store.mark_fired(fired)

        reloaded = AlertStore(backend=backend, error_sink=sink, clock=clock)
        assert await reloaded.load() == 4
        assert _pending_snapshot(reloaded) == _pending_snapshot(store)
        assert reloaded.stats() == store.stats()

    @pytest.mark.asyncio
    async def test_round_trip_through_sqlite(self, alert_db, sink, clock):
        store = AlertStore(backend=alert_db, error_sink=sink, clock=clock)
        await store.upsert_meeting_alerts("m1", START, ["15m", "5m", "now"])

        reloaded = AlertStore(backend=alert_db, error_sink=sink, clock=clock)
        await reloaded.load()
        assert _pending_snapshot(reloaded) == _pending_snapshot(store)

    @pytest.mark.asyncio
    async def test_persisted_schema(self, store, backend):
        await store.upsert_meeting_alerts("m1", START, ["now"])
        records = json.loads(backend.get("m1"))
        assert records[0]["offsetLabel"] == "now"
        assert records[0]["fireAtUtc"] == "2024-01-01T14:00:00Z"
        assert records[0]["state"] == "pending"
        assert "title" not in records[0]

    @pytest.mark.asyncio
    async def test_title_stored_on_every_entry(self, store, backend):
        await store.upsert_meeting_alerts("m1", START, ["5m", "now"], title="Standup")
        records = json.loads(backend.get("m1"))
        assert [r["title"] for r in records] == ["Standup", "Standup"]
        assert store.meeting_title("m1") == "Standup"
        assert store.meeting_title("m2") is None

    @pytest.mark.asyncio
    async def test_retitle_is_persisted(self, store, backend):
        await store.upsert_meeting_alerts("m1", START, ["now"], title="Standup")
        await store.upsert_meeting_alerts("m1", START, ["now"], title="Retro")
        assert json.loads(backend.get("m1"))[0]["title"] == "Retro"

    @pytest.mark.asyncio
    async def test_corrupted_row_is_skipped_and_reported(self, sink, clock):
        backend = InMemoryBackend({
            "bad": "{not json",
            "weird": json.dumps([{"offsetLabel": "soon", "fireAtUtc": "2024-01-01T14:00:00Z",
                                  "state": "pending"}]),
            "good": json.dumps([{"offsetLabel": "now", "fireAtUtc": "2024-01-01T14:00:00Z",
                                 "state": "pending"}]),
        })
        store = AlertStore(backend=backend, error_sink=sink, clock=clock)

        assert await store.load() == 1
        assert store.meeting_ids() == ["good"]
        corrupted = sink.of_type(StoreCorruptedError)
        assert {e.meeting_id for e in corrupted} == {"bad", "weird"}

    @pytest.mark.asyncio
    async def test_duplicate_pending_rows_collapse_on_load(self, sink, clock):
        record = {"offsetLabel": "now", "fireAtUtc": "2024-01-01T14:00:00Z", "state": "pending"}
        backend = InMemoryBackend({"m1": json.dumps([record, record])})
        store = AlertStore(backend=backend, error_sink=sink, clock=clock)
        assert await store.load() == 1

    @pytest.mark.asyncio
    async def test_unreadable_backend_gives_empty_store(self, sink, clock):
        store = AlertStore(backend=BrokenBackend(fail_reads=True), error_sink=sink, clock=clock)
        assert await store.load() == 0
        assert store.meeting_ids() == []
        assert sink.of_type(StoreCorruptedError)

    @pytest.mark.asyncio
    async def test_write_failure_degrades_to_memory(self, sink, clock):
        backend = BrokenBackend(fail_writes=True)
        store = AlertStore(backend=backend, error_sink=sink, clock=clock)

        entries = await store.upsert_meeting_alerts("m1", START, ["15m", "now"])

        assert len(entries) == 2
        assert store.degraded is True
        assert len(sink.of_type(StoreUnavailableError)) == 1

        await store.upsert_meeting_alerts("m2", START, ["now"])
        assert len(sink.of_type(StoreUnavailableError)) == 1

        backend.fail_writes = False
        assert await store.flush() is True
        assert store.degraded is False
        assert set(backend.keys()) == {"m1", "m2"}

    @pytest.mark.asyncio
    async def test_flush_still_failing(self, sink, clock):
        store = AlertStore(backend=BrokenBackend(), error_sink=sink, clock=clock)
        await store.upsert_meeting_alerts("m1", START, ["now"])
        assert await store.flush() is False
        assert store.degraded is True

    @pytest.mark.asyncio
    async def test_write_timeout_degrades_to_memory(self, sink, clock):
        store = AlertStore(backend=SlowBackend(0.5), error_sink=sink, clock=clock, io_timeout=0.05)
        entries = await store.upsert_meeting_alerts("m1", START, ["now"])
        assert entries[0].is_pending
        assert store.degraded is True
        assert sink.of_type(StoreUnavailableError)


class TestStats:
    @pytest.mark.asyncio
    async def test_counts(self, store):
        entries = await store.upsert_meeting_alerts("m1", START, ["15m", "now"])
        await store.mark_fired(entries[0])
        await store.upsert_meeting_alerts("m2", START, ["now"])
        await store.cancel_meeting_alerts("m2")
        assert store.stats() == {"meetings": 2, "pending": 1, "fired": 1, "cancelled": 1}
