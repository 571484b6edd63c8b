"""Read-through cache for snapshot, rule and deployment listings."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Callable, Hashable, Iterable

# purpose: keep listing reads cheap between writes without a process-wide singleton
# inputs: ttl in seconds, optional clock returning timezone-aware datetimes
# outputs: cached loader results until TTL expiry or explicit invalidation
# status: pilot

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _CacheEntry:
    """Stored payload with expiry metadata."""

    value: Any
    expires_at: datetime


class TTLCache:
    """Per-key TTL cache with an injectable clock."""

    def __init__(self, ttl_seconds: float = 300, clock: Clock | None = None) -> None:
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or _utcnow
        self._entries: dict[Hashable, _CacheEntry] = {}
        self._lock = Lock()

    def _prune_expired(self, now: datetime) -> None:
        expired_keys = [
            key for key, entry in self._entries.items() if entry.expires_at <= now
        ]
        for key in expired_keys:
            self._entries.pop(key, None)

    def get(self, key: Hashable) -> Any | None:
        """Return the cached value when present and fresh."""

        now = self._clock()
        with self._lock:
            self._prune_expired(now)
            entry = self._entries.get(key)
            return None if entry is None else entry.value

    def set(self, key: Hashable, value: Any) -> None:
        expires_at = self._clock() + self.ttl
        with self._lock:
            self._entries[key] = _CacheEntry(value=value, expires_at=expires_at)

    def get_or_load(self, key: Hashable, loader: Callable[[], Any]) -> Any:
        """Return the cached value or load, store and return a fresh one."""

        cached = self.get(key)
        if cached is not None:
            return cached
        value = loader()
        self.set(key, value)
        return value

    def invalidate(self, keys: Iterable[Hashable] | None = None) -> None:
        """Drop the supplied keys, or everything when no keys are given."""

        with self._lock:
            if keys is None:
                self._entries.clear()
                return
            for key in keys:
                self._entries.pop(key, None)
