import asyncio
import base64
import json
import logging
import os
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SWEEP_INTERVAL_SECONDS = 5 * 60

TTL_VERY_SHORT = 60
TTL_SHORT = 5 * 60
TTL_MEDIUM = 30 * 60
TTL_LONG = 60 * 60
TTL_VERY_LONG = 24 * 60 * 60
TTL_WEEK = 7 * 24 * 60 * 60

# Key namespaces for cached responses. Entity types double as namespaces.
SEARCH_NAMESPACE = "search"
POPULAR_NAMESPACE = "popular"
RECENT_NAMESPACE = "recent"
ANALYTICS_NAMESPACE = "analytics"
USER_NAMESPACES = ("user_profile", "user_reviews", "user_bookings", "user_wishlist")


@dataclass
class CacheEntry:
    key: str
    value: object
    stored_at: float
    ttl_seconds: float

    def is_expired(self, now: float) -> bool:
        return self.ttl_seconds <= 0 or now - self.stored_at > self.ttl_seconds


def compile_pattern(pattern: str) -> re.Pattern[str]:
    """Translate a ``*`` glob into a regex matched against the whole key."""
    return re.compile(".*".join(re.escape(part) for part in pattern.split("*")))


class TTLCache:
    def __init__(
        self,
        sweep_interval: float | None = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.sweep_interval = sweep_interval
        self.clock = clock
        self._store: dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None
        if sweep_interval:
            self._sweeper = threading.Thread(target=self._sweep_loop, name="ttl-cache-sweeper", daemon=True)
            self._sweeper.start()

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.sweep_interval):
            try:
                removed = self.cleanup()
            except Exception:
                logger.exception("Cache sweep failed")
                continue
            if removed:
                logger.debug("Cache sweep removed %d expired entries", removed)

    def cleanup(self) -> int:
        now = self.clock()
        with self._lock:
            expired = [key for key, entry in self._store.items() if entry.is_expired(now)]
            for key in expired:
                del self._store[key]
        return len(expired)

    def get(self, key: str) -> object | None:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if entry.is_expired(self.clock()):
                self._store.pop(key, None)
                return None
            return entry.value

    def set(self, key: str, value: object, ttl_seconds: float) -> None:
        with self._lock:
            self._store[key] = CacheEntry(key=key, value=value, stored_at=self.clock(), ttl_seconds=ttl_seconds)

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def delete_pattern(self, pattern: str) -> int:
        regex = compile_pattern(pattern)
        with self._lock:
            matched = [key for key in self._store if regex.fullmatch(key)]
            for key in matched:
                del self._store[key]
        return len(matched)

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def destroy(self) -> None:
        self._stop.set()
        if self._sweeper is not None and self._sweeper is not threading.current_thread():
            self._sweeper.join(timeout=1)
        self._sweeper = None
        self.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)


class CacheManager:
    """Error-tolerant access to a :class:`TTLCache`.

    Every storage failure is logged and reported as a miss or a no-op, so
    callers can treat the cache as strictly optional.
    """

    def __init__(self, cache: TTLCache) -> None:
        self.cache = cache
        self._refresh_tasks: set[asyncio.Task] = set()

    @property
    def clock(self) -> Callable[[], float]:
        return self.cache.clock

    @staticmethod
    def generate_key(prefix: str, params: dict[str, Any] | None = None) -> str:
        ordered = {name: (params or {})[name] for name in sorted(params or {})}
        payload = json.dumps(ordered, separators=(",", ":"), default=str)
        return f"{prefix}:{base64.b64encode(payload.encode('utf-8')).decode('ascii')}"

    def get(self, key: str) -> Any | None:
        try:
            return self.cache.get(key)
        except Exception:
            logger.exception("Cache get error for %s", key)
            return None

    def set(self, key: str, data: Any, ttl: float = TTL_LONG) -> bool:
        try:
            self.cache.set(key, data, ttl)
            return True
        except Exception:
            logger.exception("Cache set error for %s", key)
            return False

    def delete(self, key: str) -> bool:
        try:
            self.cache.delete(key)
            return True
        except Exception:
            logger.exception("Cache delete error for %s", key)
            return False

    def delete_pattern(self, pattern: str) -> bool:
        try:
            removed = self.cache.delete_pattern(pattern)
        except Exception:
            logger.exception("Cache delete pattern error for %s", pattern)
            return False
        logger.debug("Deleted %s cache entries matching %s", removed, pattern)
        return True

    def exists(self, key: str) -> bool:
        try:
            return self.cache.exists(key)
        except Exception:
            logger.exception("Cache exists error for %s", key)
            return False

    def clear(self) -> bool:
        try:
            self.cache.clear()
            return True
        except Exception:
            logger.exception("Cache clear error")
            return False

    async def get_with_swr(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[T]],
        ttl: float = TTL_LONG,
        stale_time: float = TTL_SHORT,
    ) -> T:
        cached = self.get(key)
        if isinstance(cached, dict) and "timestamp" in cached and "data" in cached:
            age = self.clock() - cached["timestamp"]
            if age < stale_time:
                return cached["data"]
            if age < ttl:
                task = asyncio.get_running_loop().create_task(self._refresh_in_background(key, fetch_fn, ttl))
                self._refresh_tasks.add(task)
                task.add_done_callback(self._refresh_tasks.discard)
                return cached["data"]

        fresh = await fetch_fn()
        self.set(key, {"data": fresh, "timestamp": self.clock()}, ttl)
        return fresh

    async def _refresh_in_background(self, key: str, fetch_fn: Callable[[], Awaitable[Any]], ttl: float) -> None:
        try:
            fresh = await fetch_fn()
        except Exception:
            logger.exception("Background refresh failed for %s", key)
            return
        self.set(key, {"data": fresh, "timestamp": self.clock()}, ttl)

    async def wait_for_refreshes(self) -> None:
        while self._refresh_tasks:
            await asyncio.gather(*list(self._refresh_tasks), return_exceptions=True)

    def destroy(self) -> None:
        for task in list(self._refresh_tasks):
            task.cancel()
        self._refresh_tasks.clear()
        self.cache.destroy()


def _default_cache() -> TTLCache:
    sweep_interval = float(os.getenv("CACHE_SWEEP_INTERVAL_SECONDS", str(DEFAULT_SWEEP_INTERVAL_SECONDS)))
    return TTLCache(sweep_interval=sweep_interval or None)


_cache_manager: CacheManager | None = None
_cache_manager_lock = threading.Lock()


def get_cache_manager() -> CacheManager:
    global _cache_manager
    with _cache_manager_lock:
        if _cache_manager is None:
            _cache_manager = CacheManager(_default_cache())
        return _cache_manager


def reset_cache_manager() -> None:
    global _cache_manager
    with _cache_manager_lock:
        if _cache_manager is not None:
            _cache_manager.destroy()
        _cache_manager = None
