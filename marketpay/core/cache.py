"""In-process TTL cache with explicit, entity-scoped invalidation.

Keys are built by the helpers below so that writers and readers agree on the
exact key for an entity. There is no prefix or pattern deletion: a money event
invalidates the keys of the entities it touched and nothing else.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Iterable

from marketpay.config import get_settings

logger = logging.getLogger(__name__)


class TTLCache:
    """Thread-safe in-memory cache with per-entry expiry."""

    def __init__(self, default_ttl: int = 300) -> None:
        self._entries: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()
        self.default_ttl = default_ttl
        self.stats = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0, "evictions": 0}

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.stats["misses"] += 1
                return default
            expires_at, value = entry
            if expires_at <= time.monotonic():
                del self._entries[key]
                self.stats["evictions"] += 1
                self.stats["misses"] += 1
                return default
            self.stats["hits"] += 1
            return value

    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        with self._lock:
            self._cleanup_expired()
            self._entries[key] = (time.monotonic() + ttl, value)
            self.stats["sets"] += 1

    def _cleanup_expired(self) -> None:
        """Drop expired entries; the caller holds ``_lock``."""

        now = time.monotonic()
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        self.stats["evictions"] += len(expired)

    def delete(self, key: str) -> bool:
        with self._lock:
            removed = self._entries.pop(key, None) is not None
            if removed:
                self.stats["deletes"] += 1
            return removed

    def delete_many(self, keys: Iterable[str]) -> int:
        return sum(1 for key in keys if self.delete(key))

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def earnings_key(user_id: int) -> str:
    return f"earnings:user:{user_id}"


def processor_account_key(external_account_id: str) -> str:
    return f"processor_account:{external_account_id}"


cache = TTLCache(default_ttl=get_settings().CACHE_TTL_SECONDS)


def invalidate_users(*user_ids: int | None) -> None:
    """Drop cached per-user views after a money event touching those users."""

    keys = [earnings_key(user_id) for user_id in user_ids if user_id is not None]
    removed = cache.delete_many(keys)
    if removed:
        logger.debug("Cache invalidated", extra={"keys": keys, "removed": removed})


__all__ = [
    "TTLCache",
    "cache",
    "earnings_key",
    "processor_account_key",
    "invalidate_users",
]
