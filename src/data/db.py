"""
Meeting Alerts — Alert Schedule Database.

Alert schedules persist in SQLite across restarts and device reboots.
Each row holds one meeting's serialized alert array, keyed by meeting id.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


class AlertScheduleDB:
    """SQLite-backed key-value storage for alert schedules.

    Implements the PersistenceBackend protocol.
    """

    def __init__(self, db_path: str | None = None, timeout: float = 2.0) -> None:
        if db_path is None:
            from src.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        self._timeout = timeout
        self._shared: sqlite3.Connection | None = None
        if db_path == ":memory:":
            self._shared = sqlite3.connect(db_path, check_same_thread=False)
        else:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        if self._shared is not None:
            return self._shared
        conn = sqlite3.connect(self._db_path, timeout=self._timeout)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        """Create the alert_schedules table if it doesn't exist."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS alert_schedules (
                    meeting_id  TEXT PRIMARY KEY,
                    payload     TEXT NOT NULL,
                    updated_at  TEXT NOT NULL
                )
            """)
        logger.debug("Alert schedule table initialized at %s", self._db_path)

    def get(self, key: str) -> str | None:
        """Fetch the serialized alert array for a meeting, or None."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payload FROM alert_schedules WHERE meeting_id = ?", (key,)
            ).fetchone()
        if row is None:
            return None
        return row[0]

    def set(self, key: str, value: str) -> None:
        """Insert or replace a meeting's serialized alert array."""
        now = datetime.now(timezone.utc).isoformat()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO alert_schedules (meeting_id, payload, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(meeting_id) DO UPDATE SET
                    payload = excluded.payload,
                    updated_at = excluded.updated_at
                """,
                (key, value, now),
            )

    def delete(self, key: str) -> None:
        """Remove a meeting's row. Unknown keys are ignored."""
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM alert_schedules WHERE meeting_id = ?", (key,)
            )
        if cursor.rowcount > 0:
            logger.debug("Alert schedule row for meeting %s deleted", key)

    def keys(self) -> list[str]:
        """Return every stored meeting id."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT meeting_id FROM alert_schedules ORDER BY meeting_id"
            ).fetchall()
        return [r[0] for r in rows]


class InMemoryBackend:
    """Dict-backed PersistenceBackend, for tests and hosts without a disk."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._data)
