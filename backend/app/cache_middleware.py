import asyncio
import functools
import json
import logging
import threading
from typing import Any, Callable, Iterable

from fastapi import Request
from fastapi.responses import JSONResponse, Response
from starlette.concurrency import run_in_threadpool

from .cache import (
    POPULAR_NAMESPACE,
    RECENT_NAMESPACE,
    SEARCH_NAMESPACE,
    TTL_MEDIUM,
    USER_NAMESPACES,
    CacheManager,
    get_cache_manager,
)
from .endpoints import call_handler, find_request, require_request_param

logger = logging.getLogger(__name__)

CACHE_STATUS_HEADER = "X-Cache-Status"

# Recomputed by JSONResponse when the body is rebuilt.
_SKIPPED_HEADERS = {"content-length"}


class CacheMetrics:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.errors = 0

    def record_hit(self) -> None:
        with self._lock:
            self.hits += 1

    def record_miss(self) -> None:
        with self._lock:
            self.misses += 1

    def record_error(self) -> None:
        with self._lock:
            self.errors += 1

    def get_stats(self) -> dict:
        with self._lock:
            total = self.hits + self.misses
            return {
                "hits": self.hits,
                "misses": self.misses,
                "errors": self.errors,
                "hit_rate": (self.hits / total) * 100 if total else 0.0,
                "total_requests": total,
            }

    def reset(self) -> None:
        with self._lock:
            self.hits = 0
            self.misses = 0
            self.errors = 0


cache_metrics = CacheMetrics()


def _default_skip(request: Request) -> bool:
    return request.method != "GET"


def _tag(response: Response, cache_status: str, ttl: float | None = None) -> Response:
    response.headers[CACHE_STATUS_HEADER] = cache_status
    if ttl is not None:
        response.headers["Cache-Control"] = f"public, s-maxage={int(ttl)}"
    return response


def _rebuild(data: Any, status_code: int, headers: dict[str, str], cache_status: str, ttl: float) -> JSONResponse:
    response = _tag(JSONResponse(data, status_code=status_code), cache_status, ttl)
    for name, value in headers.items():
        if name.lower() in _SKIPPED_HEADERS or name in response.headers:
            continue
        response.headers[name] = value
    return response


def with_cache(
    ttl: float = TTL_MEDIUM,
    key_prefix: str = "api",
    cache_key_fn: Callable[[Request], str] | None = None,
    skip_cache_fn: Callable[[Request], bool] | None = None,
    manager: CacheManager | None = None,
    metrics: CacheMetrics | None = None,
) -> Callable:
    """Cache 2xx JSON responses of a FastAPI endpoint.

    The endpoint must declare ``request: Request``. Responses carry an
    ``X-Cache-Status`` of HIT, MISS, BYPASS or ERROR. A failure in the cache
    machinery falls back to calling the endpoint; errors raised by the
    endpoint itself propagate unchanged.
    """

    skip_cache = skip_cache_fn or _default_skip
    metrics = metrics or cache_metrics

    def cache_key(request: Request) -> str:
        if cache_key_fn is not None:
            return cache_key_fn(request)
        return f"{key_prefix}:{request.url}"

    def decorator(handler: Callable) -> Callable:
        require_request_param(handler)

        @functools.wraps(handler)
        async def wrapper(*args: Any, **kwargs: Any) -> Response:
            request = find_request(handler, args, kwargs)
            if skip_cache(request):
                return await call_handler(handler, *args, **kwargs)

            try:
                cache = manager or get_cache_manager()
                key = cache_key(request)
                cached = cache.get(key)
                if isinstance(cached, dict) and "data" in cached:
                    response = _rebuild(cached["data"], cached["status"], cached.get("headers") or {}, "HIT", ttl)
                    metrics.record_hit()
                    return response
            except Exception:
                logger.exception("Cache middleware error in %s", handler.__name__)
                metrics.record_error()
                return _tag(await call_handler(handler, *args, **kwargs), "ERROR")

            metrics.record_miss()
            response = await call_handler(handler, *args, **kwargs)
            if not 200 <= response.status_code < 300:
                return _tag(response, "BYPASS")

            try:
                data = json.loads(response.body)
            except (AttributeError, TypeError, ValueError):
                logger.exception("Failed to cache response for %s", key)
                return _tag(response, "BYPASS")

            headers = dict(response.headers.items())
            cache.set(key, {"data": data, "status": response.status_code, "headers": headers}, ttl)
            return _rebuild(data, response.status_code, headers, "MISS", ttl)

        return wrapper

    return decorator


class CacheInvalidation:
    """Drop cached entries when the underlying records change."""

    def __init__(self, manager: CacheManager | None = None) -> None:
        self._manager = manager

    @property
    def manager(self) -> CacheManager:
        return self._manager or get_cache_manager()

    async def _delete_patterns(self, patterns: list[str]) -> list[bool]:
        manager = self.manager
        results = await asyncio.gather(
            *(run_in_threadpool(manager.delete_pattern, pattern) for pattern in patterns),
            return_exceptions=True,
        )
        outcome = []
        for pattern, result in zip(patterns, results):
            if isinstance(result, BaseException):
                logger.error("Invalidation of %s failed: %s", pattern, result)
                outcome.append(False)
            else:
                outcome.append(bool(result))
        return outcome

    async def invalidate_entity(self, entity_type: str, entity_id: str | None = None) -> list[bool]:
        patterns = [
            f"{entity_type}:*",
            f"{SEARCH_NAMESPACE}:*{entity_type}*",
            f"{POPULAR_NAMESPACE}:{entity_type}*",
            f"{RECENT_NAMESPACE}:{entity_type}*",
        ]
        if entity_id:
            patterns.append(f"{entity_type}:{entity_id}:*")
        return await self._delete_patterns(patterns)

    async def invalidate_user(self, user_id: str) -> list[bool]:
        return await self._delete_patterns([f"{namespace}:{user_id}*" for namespace in USER_NAMESPACES])

    async def invalidate_search(self) -> list[bool]:
        return await self._delete_patterns([f"{SEARCH_NAMESPACE}:*"])

    async def invalidate_namespaces(self, namespaces: Iterable[str]) -> list[bool]:
        """Drop every key under the given namespaces, leaving other keys alone."""
        return await self._delete_patterns([f"{namespace}:*" for namespace in namespaces])

    async def invalidate_all(self) -> bool:
        return self.manager.clear()
