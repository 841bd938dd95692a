"""Per-caregiver debounce for the horizon maintainer.

The store only remembers when a caregiver's last sweep ran; callers pass the
current time in, so tests control time and each service instance (or Redis
namespace) keeps caregivers isolated. This is a rate limit, not a lock:
two callers can both see "due" and both sweep.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Dict, Optional

from .models import parse_ts

logger = logging.getLogger("nk.doses.cooldown")


class MemoryCooldown:
    """Process-local; suitable for a single worker."""

    def __init__(self, period: timedelta):
        self.period = period
        self._last: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def last_run(self, caregiver_id: str) -> Optional[datetime]:
        with self._lock:
            return self._last.get(caregiver_id)

    def should_run(self, caregiver_id: str, now: datetime) -> bool:
        last = self.last_run(caregiver_id)
        return last is None or (now - last) >= self.period

    def mark(self, caregiver_id: str, now: datetime) -> None:
        with self._lock:
            self._last[caregiver_id] = now

    def clear(self, caregiver_id: Optional[str] = None) -> None:
        with self._lock:
            if caregiver_id is None:
                self._last.clear()
            else:
                self._last.pop(caregiver_id, None)


class RedisCooldown:
    """Shared across workers. Keys expire after the period, so a missing key
    means the sweep is due."""

    def __init__(self, client, period: timedelta, prefix: str = "nk:sweep:"):
        self.client = client
        self.period = period
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, period: timedelta) -> "RedisCooldown":
        import redis

        return cls(redis.from_url(url), period)

    def _key(self, caregiver_id: str) -> str:
        return f"{self.prefix}{caregiver_id}"

    def last_run(self, caregiver_id: str) -> Optional[datetime]:
        raw = self.client.get(self._key(caregiver_id))
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            return parse_ts(raw)
        except ValueError:
            logger.warning("cooldown_unreadable caregiver=%s value=%r", caregiver_id, raw)
            return None

    def should_run(self, caregiver_id: str, now: datetime) -> bool:
        last = self.last_run(caregiver_id)
        return last is None or (now - last) >= self.period

    def mark(self, caregiver_id: str, now: datetime) -> None:
        ttl = max(1, int(self.period.total_seconds()))
        self.client.set(self._key(caregiver_id), now.isoformat(), ex=ttl)

    def clear(self, caregiver_id: Optional[str] = None) -> None:
        if caregiver_id is None:
            for key in self.client.scan_iter(f"{self.prefix}*"):
                self.client.delete(key)
        else:
            self.client.delete(self._key(caregiver_id))
