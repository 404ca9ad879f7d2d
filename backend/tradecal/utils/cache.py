"""
In-memory TTL cache.

Expiry is measured against an injected clock so tests can move time
forward instead of sleeping. Values are never None; None means "miss".
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from loguru import logger

from tradecal.utils.datetime import utcnow


Clock = Callable[[], datetime]


@dataclass
class _Entry:
    value: Any
    expires_at: datetime


class Cache:
    """Keyed values that expire ttl_seconds after they were set."""

    def __init__(self, clock: Optional[Clock] = None, default_ttl_seconds: int = 300):
        self._entries: Dict[str, _Entry] = {}
        self._clock = clock or utcnow
        self.default_ttl_seconds = default_ttl_seconds

    def _live(self, key: str) -> Optional[_Entry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            logger.debug(f"Cache expired: {key}")
            del self._entries[key]
            return None
        return entry

    def get(self, key: str) -> Optional[Any]:
        entry = self._live(key)
        if entry is None:
            return None
        logger.debug(f"Cache hit: {key}")
        return entry.value

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._entries[key] = _Entry(value=value, expires_at=self._clock() + timedelta(seconds=ttl))
        logger.debug(f"Cache set: {key} (TTL: {ttl}s)")

    def get_or_set(self, key: str, factory: Callable[[], Any], ttl_seconds: Optional[int] = None) -> Any:
        """
        Cached value for key, computing it with factory on a miss.

        An exception from factory propagates and nothing is stored, so the
        next call tries again.
        """
        entry = self._live(key)
        if entry is not None:
            logger.debug(f"Cache hit: {key}")
            return entry.value

        value = factory()
        self.set(key, value, ttl_seconds)
        return value

    def delete(self, key: str) -> None:
        if self._entries.pop(key, None) is not None:
            logger.debug(f"Cache deleted: {key}")

    def clear(self) -> None:
        self._entries.clear()
        logger.debug("Cache cleared")

    def cleanup_expired(self) -> int:
        """Drop expired entries; returns how many were dropped."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"Cleaned up {len(expired)} expired cache entries")
        return len(expired)

    def __contains__(self, key: str) -> bool:
        return self._live(key) is not None

    def __len__(self) -> int:
        return len(self._entries)
