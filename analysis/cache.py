"""
Read-through cache collaborator owned by the orchestration layer.
The scoring core never touches it.
"""

import time
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

DAILY_TTL_SECONDS = 6 * 60 * 60
INTRADAY_TTL_SECONDS = 5 * 60
FUNDAMENTALS_TTL_SECONDS = 60 * 60


class Cache(ABC):
    """Minimal key/value cache interface with per-entry TTL."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Returns the cached value, or None when missing or expired."""
        pass

    @abstractmethod
    def set(self, key: str, value: Any, ttl: float) -> None:
        """Stores `value` for `ttl` seconds."""
        pass


class InMemoryTTLCache(Cache):
    """
    Process-local TTL cache. Expired entries are evicted lazily on read and
    in bulk by `purge_expired`.
    """
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() > expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl: float) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, expires_at) in self._entries.items() if now > expires_at]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.info(f"Cache cleanup: evicted {len(expired)} expired entries.")
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


def ohlcv_cache_key(symbol: str, interval: str) -> str:
    return f"ohlcv:{symbol.upper()}:{interval}"


def fundamentals_cache_key(symbol: str) -> str:
    return f"fundamentals:{symbol.upper()}"


def ttl_for_interval(interval: str,
                     daily_ttl: float = DAILY_TTL_SECONDS,
                     intraday_ttl: float = INTRADAY_TTL_SECONDS) -> float:
    """Daily and weekly bars change slowly; intraday bars get a short TTL."""
    if interval.lower() in ('1d', '1wk', '1w', '1mo'):
        return daily_ttl
    return intraday_ttl
