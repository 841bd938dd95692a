"""Runtime settings for the dose engine, read from the environment.

Values are read when `Settings.from_env()` is called rather than at import,
so tests can monkeypatch the environment.
"""

import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .db import dsn_from_env
from .errors import ConfigError


def _int_env(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        val = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")
    if val < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {val}")
    return val


def load_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigError(f"unknown time zone {name!r}")


@dataclass(frozen=True)
class Settings:
    dsn: str
    store: str = "pg"
    default_tz: str = "UTC"
    horizon_days: int = 14
    coverage_hours: int = 48
    sweep_cooldown_s: int = 300
    due_lookahead_min: int = 60
    window_min: int = 30
    redis_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        store = os.getenv("NK_STORE", "pg").lower()
        if store not in ("pg", "memory"):
            raise ConfigError(f"NK_STORE must be 'pg' or 'memory', got {store!r}")
        default_tz = os.getenv("NK_DEFAULT_TZ", "UTC")
        load_zone(default_tz)
        return cls(
            dsn=dsn_from_env(),
            store=store,
            default_tz=default_tz,
            horizon_days=_int_env("NK_HORIZON_DAYS", 14),
            coverage_hours=_int_env("NK_COVERAGE_HOURS", 48),
            sweep_cooldown_s=_int_env("NK_SWEEP_COOLDOWN_S", 300, minimum=0),
            due_lookahead_min=_int_env("NK_DUE_LOOKAHEAD_MIN", 60, minimum=0),
            window_min=_int_env("NK_WINDOW_MIN", 30, minimum=0),
            redis_url=os.getenv("REDIS_URL") or None,
        )

    @property
    def horizon(self) -> timedelta:
        return timedelta(days=self.horizon_days)

    @property
    def coverage(self) -> timedelta:
        return timedelta(hours=self.coverage_hours)

    @property
    def sweep_cooldown(self) -> timedelta:
        return timedelta(seconds=self.sweep_cooldown_s)

    @property
    def due_lookahead(self) -> timedelta:
        return timedelta(minutes=self.due_lookahead_min)

    @property
    def window(self) -> timedelta:
        return timedelta(minutes=self.window_min)
