"""Configuration helpers for backend runtime."""

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class GameSettings:
    database_url: str | None
    host: str
    port: int
    log_level: str
    stale_after_minutes: int
    purge_after_hours: int
    assignment_retries: int
    admin_token: str | None = None


def load_settings() -> GameSettings:
    return GameSettings(
        database_url=os.getenv("OFFICEMAFIA_DATABASE_URL") or None,
        host=os.getenv("OFFICEMAFIA_HOST", "127.0.0.1"),
        port=int(os.getenv("OFFICEMAFIA_PORT", "8000")),
        log_level=os.getenv("OFFICEMAFIA_LOG_LEVEL", "INFO").upper(),
        stale_after_minutes=int(os.getenv("OFFICEMAFIA_STALE_AFTER_MINUTES", "120")),
        purge_after_hours=int(os.getenv("OFFICEMAFIA_PURGE_AFTER_HOURS", "24")),
        assignment_retries=int(os.getenv("OFFICEMAFIA_ASSIGNMENT_RETRIES", "3")),
        admin_token=os.getenv("OFFICEMAFIA_ADMIN_TOKEN") or None,
    )
