"""
Idempotency Cache for the sync engine
Key -> value store with per-entry TTL, used to skip sources whose sync interval
has not elapsed and to keep once-per-period maintenance tasks at-most-once.
Also holds short-lived vendor credentials (TDX token, MP session id).
"""
import asyncio
import logging
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Tuple, Type

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(hours=1)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class IdempotencyCache:
    """
    In-memory TTL cache.

    Entries expire on read; a background sweep (optional) trims expired
    entries so the map does not grow with devices that disappear.
    """

    def __init__(self, max_size: int = 100000, clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize the cache.

        Args:
            max_size: Maximum number of keys kept; oldest inserts are evicted first
            clock: Returns the current (timezone-aware) time; injectable for tests
        """
        self.max_size = max_size
        self._clock = clock or _utc_now
        self._entries: "OrderedDict[str, Tuple[Any, datetime]]" = OrderedDict()
        self._lock = asyncio.Lock()
        self._hits = 0
        self._misses = 0
        self._type_mismatches = 0
        self._cleanup_task: Optional[asyncio.Task] = None

    async def set(self, key: str, value: Any, ttl: Optional[timedelta] = None):
        """Store value under key until now + ttl (default one hour)."""
        expires_at = self._clock() + (ttl if ttl is not None else DEFAULT_TTL)
        async with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = (value, expires_at)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    async def get(self, key: str, expected_type: Optional[Type] = None) -> Optional[Any]:
        """
        Return the cached value, or None when absent or expired.

        When expected_type is given and the stored value is not an instance of
        it, the read is treated as a miss (logged, never raised).
        """
        async with self._lock:
            value = self._get_live(key)
            if value is None:
                self._misses += 1
                return None
            if expected_type is not None and not isinstance(value, expected_type):
                self._type_mismatches += 1
                self._misses += 1
                logger.warning(
                    f"Cache type mismatch for '{key}': expected {expected_type.__name__}, "
                    f"got {type(value).__name__}; treating as miss"
                )
                return None
            self._hits += 1
            return value

    async def exists(self, key: str) -> bool:
        async with self._lock:
            return self._get_live(key) is not None

    async def remove(self, key: str) -> bool:
        async with self._lock:
            return self._entries.pop(key, None) is not None

    def _get_live(self, key: str) -> Optional[Any]:
        """Lookup without locking; drops the entry if it has expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    async def cleanup_expired(self) -> int:
        """Remove expired entries; returns how many were dropped."""
        now = self._clock()
        async with self._lock:
            expired = [k for k, (_, expires_at) in self._entries.items() if now >= expires_at]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug(f"Cleaned up {len(expired)} expired cache entries")
        return len(expired)

    async def start_cleanup_task(self, interval_seconds: int = 300):
        """Start periodic sweep of expired entries"""
        if self._cleanup_task is not None:
            return

        async def cleanup_loop():
            while True:
                try:
                    await asyncio.sleep(interval_seconds)
                    await self.cleanup_expired()
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    logger.error(f"Error in cache cleanup loop: {e}", exc_info=True)

        self._cleanup_task = asyncio.create_task(cleanup_loop(), name="idempotency-cache-cleanup")
        logger.info(f"Started cache cleanup task (interval: {interval_seconds}s)")

    async def stop_cleanup_task(self):
        """Stop the periodic sweep"""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    def get_stats(self) -> dict:
        total = self._hits + self._misses
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "hits": self._hits,
            "misses": self._misses,
            "type_mismatches": self._type_mismatches,
            "hit_rate": (self._hits / total * 100) if total else 0.0,
        }


async def should_skip(
    cache: IdempotencyCache,
    key: str,
    now: datetime,
    interval: timedelta,
) -> bool:
    """
    True when key was marked done less than interval ago.

    The stored value is the time of the last successful sync; anything else
    under the key counts as a miss.
    """
    if not await cache.exists(key):
        return False
    last_sync = await cache.get(key, expected_type=datetime)
    return last_sync is not None and now - last_sync < interval
