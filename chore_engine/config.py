"""
Chore Engine — Centralized configuration.

Loads all settings from .env and validates them.
This module is the foundation for every other module in the project.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError, field_validator

# Load .env from project root (two levels up from chore_engine/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # SQLite
    DATABASE_PATH: str = "data/chores.db"
    DB_BUSY_TIMEOUT_SECONDS: float = 5.0

    # Household-local calendar day for "today" / overdue decisions
    TIMEZONE: str = "UTC"

    # Accept path: bounded wait on the task lock
    ACCEPT_LOCK_TIMEOUT_SECONDS: float = 3.0

    # Assignment generation
    GENERATION_DAYS_AHEAD: int = 14
    MAX_GENERATION_DAYS: int = 365

    # Periodic maintenance (sweep + generate)
    MAINTENANCE_INTERVAL_MINUTES: int = 60

    @field_validator("DB_BUSY_TIMEOUT_SECONDS", "ACCEPT_LOCK_TIMEOUT_SECONDS", mode="before")
    @classmethod
    def parse_timeout(cls, v: str | float) -> float:
        value = float(v)
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value

    @field_validator(
        "GENERATION_DAYS_AHEAD", "MAX_GENERATION_DAYS", "MAINTENANCE_INTERVAL_MINUTES",
        mode="before",
    )
    @classmethod
    def parse_positive_int(cls, v: str | int) -> int:
        value = int(v)
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("TIMEZONE")
    @classmethod
    def check_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {v!r}") from exc
        return v


def _load_settings() -> Settings:
    """Load settings from environment, exiting on invalid values."""
    try:
        return Settings(
            DATABASE_PATH=os.getenv("DATABASE_PATH", "data/chores.db"),
            DB_BUSY_TIMEOUT_SECONDS=os.getenv("DB_BUSY_TIMEOUT_SECONDS", "5"),
            TIMEZONE=os.getenv("TIMEZONE", "UTC"),
            ACCEPT_LOCK_TIMEOUT_SECONDS=os.getenv("ACCEPT_LOCK_TIMEOUT_SECONDS", "3"),
            GENERATION_DAYS_AHEAD=os.getenv("GENERATION_DAYS_AHEAD", "14"),
            MAX_GENERATION_DAYS=os.getenv("MAX_GENERATION_DAYS", "365"),
            MAINTENANCE_INTERVAL_MINUTES=os.getenv("MAINTENANCE_INTERVAL_MINUTES", "60"),
        )
    except ValidationError as exc:
        print(f"ERROR: invalid configuration in .env:\n{exc}", file=sys.stderr)
        sys.exit(1)


# Singleton — imported by all other modules as:
#   from chore_engine.config import settings
settings = _load_settings()
