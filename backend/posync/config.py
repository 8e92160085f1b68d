# backend/posync/config.py
from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # SQLite DB stored next to the terminal (backend/instance/posync.sqlite3)
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///posync.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Remote (authoritative) API
    REMOTE_API_BASE_URL = os.environ.get("REMOTE_API_BASE_URL", "http://127.0.0.1:3000/api")
    REMOTE_API_TOKEN = os.environ.get("REMOTE_API_TOKEN")
    REMOTE_API_TIMEOUT_SECONDS = float(os.environ.get("REMOTE_API_TIMEOUT_SECONDS", "30"))

    # Sync policy (see SyncPolicy below)
    SYNC_MAX_RETRIES = int(os.environ.get("SYNC_MAX_RETRIES", "5"))
    SYNC_DUPLICATE_WINDOW_SECONDS = int(os.environ.get("SYNC_DUPLICATE_WINDOW_SECONDS", "600"))
    SYNC_TRANSACTION_DUPLICATE_WINDOW_SECONDS = int(
        os.environ.get("SYNC_TRANSACTION_DUPLICATE_WINDOW_SECONDS", "300")
    )
    SYNC_REFRESH_COOLDOWN_SECONDS = int(os.environ.get("SYNC_REFRESH_COOLDOWN_SECONDS", "120"))
    SYNC_LOCK_TIMEOUT_SECONDS = float(os.environ.get("SYNC_LOCK_TIMEOUT_SECONDS", "300"))
    SYNC_BATCH_SIZE = int(os.environ.get("SYNC_BATCH_SIZE", "50"))
    SYNC_RETRY_BACKOFF_SECONDS = float(os.environ.get("SYNC_RETRY_BACKOFF_SECONDS", "5"))
    SYNC_RETRY_BACKOFF_MAX_SECONDS = float(os.environ.get("SYNC_RETRY_BACKOFF_MAX_SECONDS", "300"))

    # Triggers
    SYNC_INTERVAL_SECONDS = float(os.environ.get("SYNC_INTERVAL_SECONDS", "30"))
    SYNC_ONLINE_DELAY_SECONDS = float(os.environ.get("SYNC_ONLINE_DELAY_SECONDS", "1.0"))
    SYNC_FOCUS_DELAY_SECONDS = float(os.environ.get("SYNC_FOCUS_DELAY_SECONDS", "0.5"))
    SYNC_CLEANUP_INTERVAL_SECONDS = float(os.environ.get("SYNC_CLEANUP_INTERVAL_SECONDS", "1800"))
    SYNC_STALE_MAX_AGE_DAYS = int(os.environ.get("SYNC_STALE_MAX_AGE_DAYS", "7"))

    SYNC_AUTOSTART = _env_bool("SYNC_AUTOSTART", False)
    SYNC_ASSUME_ONLINE = _env_bool("SYNC_ASSUME_ONLINE", True)


@dataclass(frozen=True)
class SyncPolicy:
    """
    Tunable sync policy, built once from the app config and handed to every component.

    The duplicate window and retry cap depend on deployment latency and usage patterns,
    so neither is a constant.
    """
    max_retries: int = 5
    duplicate_window: timedelta = timedelta(minutes=10)
    transaction_duplicate_window: timedelta = timedelta(minutes=5)
    refresh_cooldown: timedelta = timedelta(minutes=2)
    lock_timeout: float = 300.0
    batch_size: int = 50
    retry_backoff: float = 5.0
    retry_backoff_max: float = 300.0
    interval: float = 30.0
    online_delay: float = 1.0
    focus_delay: float = 0.5
    cleanup_interval: float = 1800.0
    stale_max_age: timedelta = timedelta(days=7)

    @classmethod
    def from_config(cls, config) -> "SyncPolicy":
        return cls(
            max_retries=int(config.get("SYNC_MAX_RETRIES", 5)),
            duplicate_window=timedelta(seconds=int(config.get("SYNC_DUPLICATE_WINDOW_SECONDS", 600))),
            transaction_duplicate_window=timedelta(
                seconds=int(config.get("SYNC_TRANSACTION_DUPLICATE_WINDOW_SECONDS", 300))
            ),
            refresh_cooldown=timedelta(seconds=int(config.get("SYNC_REFRESH_COOLDOWN_SECONDS", 120))),
            lock_timeout=float(config.get("SYNC_LOCK_TIMEOUT_SECONDS", 300)),
            batch_size=max(int(config.get("SYNC_BATCH_SIZE", 50)), 1),
            retry_backoff=float(config.get("SYNC_RETRY_BACKOFF_SECONDS", 5)),
            retry_backoff_max=float(config.get("SYNC_RETRY_BACKOFF_MAX_SECONDS", 300)),
            interval=float(config.get("SYNC_INTERVAL_SECONDS", 30)),
            online_delay=float(config.get("SYNC_ONLINE_DELAY_SECONDS", 1.0)),
            focus_delay=float(config.get("SYNC_FOCUS_DELAY_SECONDS", 0.5)),
            cleanup_interval=float(config.get("SYNC_CLEANUP_INTERVAL_SECONDS", 1800)),
            stale_max_age=timedelta(days=int(config.get("SYNC_STALE_MAX_AGE_DAYS", 7))),
        )

    def backoff_seconds(self, retry_count: int) -> float:
        """Delay before a record with `retry_count` failed attempts is due again."""
        if retry_count <= 0 or self.retry_backoff <= 0:
            return 0.0
        return min(self.retry_backoff * (2 ** (retry_count - 1)), self.retry_backoff_max)
