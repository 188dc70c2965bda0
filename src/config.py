"""
Meeting Alerts — Centralized configuration.

Loads all settings from .env and validates required keys.
This module is the foundation for every other module in the project.
"""

from __future__ import annotations

import os
import sys
from datetime import timedelta
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

from src.core.offsets import DEFAULT_OFFSETS, parse_offset_list
from src.core.timezone import get_zone

# Load .env from project root (two levels up from src/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram — delivers alerts and accepts /remind commands
    TELEGRAM_BOT_TOKEN: str

    # Chats that receive alerts and may issue commands
    ALLOWED_USER_IDS: list[int] = []

    # SQLite
    DATABASE_PATH: str = "data/alerts.db"

    # Device time zone used for naive meeting times and message display
    TIMEZONE: str = "UTC"

    # Alert offsets before meeting start, e.g. "1h,15m,5m,1m,now"
    ALERT_OFFSETS: list[str] = list(DEFAULT_OFFSETS)
    SKIP_PAST_ALERTS: bool = True

    # Scheduler
    TICK_INTERVAL_SECONDS: float = 15.0
    MAX_DISPATCH_ATTEMPTS: int = 3
    DISPATCH_TIMEOUT_SECONDS: float = 10.0
    RETENTION_HOURS: int = 24
    PURGE_INTERVAL_MINUTES: int = 60

    # Persistence calls fail soft after this many seconds
    STORE_TIMEOUT_SECONDS: float = 2.0

    @field_validator("ALLOWED_USER_IDS", mode="before")
    @classmethod
    def parse_user_ids(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(uid.strip()) for uid in v.split(",") if uid.strip()]
        return []

    @field_validator("ALERT_OFFSETS", mode="before")
    @classmethod
    def parse_offsets(cls, v: str | list[str]) -> list[str]:
        return parse_offset_list(v)

    @field_validator("TIMEZONE")
    @classmethod
    def check_timezone(cls, v: str) -> str:
        get_zone(v)
        return v

    @field_validator("SKIP_PAST_ALERTS", mode="before")
    @classmethod
    def parse_bool(cls, v: str | bool) -> bool:
        if isinstance(v, str):
            return v.strip().lower() in ("1", "true", "yes", "on")
        return bool(v)

    @field_validator("TICK_INTERVAL_SECONDS", "STORE_TIMEOUT_SECONDS", "DISPATCH_TIMEOUT_SECONDS")
    @classmethod
    def positive_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("MAX_DISPATCH_ATTEMPTS")
    @classmethod
    def at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @property
    def retention_window(self) -> timedelta:
        return timedelta(hours=self.RETENTION_HOURS)

    @property
    def purge_interval(self) -> timedelta:
        return timedelta(minutes=self.PURGE_INTERVAL_MINUTES)


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    token = os.getenv("TELEGRAM_BOT_TOKEN", "")

    if not token or token.startswith("your-"):
        print("ERROR: TELEGRAM_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    return Settings(
        TELEGRAM_BOT_TOKEN=token,
        ALLOWED_USER_IDS=os.getenv("ALLOWED_USER_IDS", ""),
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/alerts.db"),
        TIMEZONE=os.getenv("TIMEZONE", "UTC"),
        ALERT_OFFSETS=os.getenv("ALERT_OFFSETS", ",".join(DEFAULT_OFFSETS)),
        SKIP_PAST_ALERTS=os.getenv("SKIP_PAST_ALERTS", "true"),
        TICK_INTERVAL_SECONDS=os.getenv("TICK_INTERVAL_SECONDS", "15"),
        MAX_DISPATCH_ATTEMPTS=os.getenv("MAX_DISPATCH_ATTEMPTS", "3"),
        DISPATCH_TIMEOUT_SECONDS=os.getenv("DISPATCH_TIMEOUT_SECONDS", "10"),
        RETENTION_HOURS=os.getenv("RETENTION_HOURS", "24"),
        PURGE_INTERVAL_MINUTES=os.getenv("PURGE_INTERVAL_MINUTES", "60"),
        STORE_TIMEOUT_SECONDS=os.getenv("STORE_TIMEOUT_SECONDS", "2"),
    )


# Singleton — imported by all other modules as:
#   from src.config import settings
settings = _load_settings()
