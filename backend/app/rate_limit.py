import functools
import logging
import math
import os
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable

from fastapi import Request, status
from fastapi.responses import JSONResponse, Response

from .cache import TTLCache, get_cache_manager
from .endpoints import call_handler, find_request, require_request_param

logger = logging.getLogger(__name__)

DEFAULT_MESSAGE = "Rate limit exceeded"

# Read-check-increment must be atomic across every limiter sharing a store.
_COUNTER_LOCK = threading.Lock()


@dataclass
class RateLimitConfig:
    window_ms: int
    max_requests: int
    key_generator: Callable[[Request], str] | None = None
    message: str = DEFAULT_MESSAGE
    on_limit_reached: Callable[[Request | None, str], None] | None = None


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: datetime
    total_hits: int


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def default_key_generator(request: Request) -> str:
    return f"rate_limit:{client_ip(request)}"


def scoped_key_generator(scope: str) -> Callable[[Request], str]:
    def key_generator(request: Request) -> str:
        return f"rate_limit:{scope}:{client_ip(request)}"

    return key_generator


def _preset(name: str, window_ms: int, max_requests: int, message: str) -> RateLimitConfig:
    max_requests = int(os.getenv(f"RATE_LIMIT_{name}_MAX_REQUESTS", str(max_requests)))
    return RateLimitConfig(window_ms=window_ms, max_requests=max_requests, message=message)


RATE_LIMIT_CONFIGS: dict[str, RateLimitConfig] = {
    "PUBLIC": _preset("PUBLIC", 15 * 60 * 1000, 1000, "Too many requests from this IP, please try again later."),
    "SEARCH": _preset("SEARCH", 60 * 1000, 60, "Search rate limit exceeded. Please wait before searching again."),
    "AUTH": _preset("AUTH", 15 * 60 * 1000, 5, "Too many authentication attempts. Please try again later."),
    "USER_CONTENT": _preset("USER_CONTENT", 60 * 1000, 30, "Rate limit exceeded. Please slow down your requests."),
    "ADMIN": _preset("ADMIN", 60 * 1000, 100, "Admin API rate limit exceeded."),
}


class RateLimitStats:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.blocked = 0
        self.allowed = 0

    def record_blocked(self) -> None:
        with self._lock:
            self.blocked += 1

    def record_allowed(self) -> None:
        with self._lock:
            self.allowed += 1

    def get_stats(self) -> dict:
        with self._lock:
            total = self.blocked + self.allowed
            return {
                "blocked": self.blocked,
                "allowed": self.allowed,
                "total": total,
                "block_rate": (self.blocked / total) * 100 if total else 0.0,
            }

    def reset(self) -> None:
        with self._lock:
            self.blocked = 0
            self.allowed = 0


rate_limit_stats = RateLimitStats()


class RateLimiter:
    """Fixed-window request counter stored in a :class:`TTLCache`.

    Windows are anchored to the epoch, so every key rolls over at the same
    instant. Counters live at ``<key>:<window index>`` and expire with the
    window. Storage failures fail open.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        store: TTLCache | None = None,
        clock: Callable[[], float] | None = None,
        stats: RateLimitStats | None = None,
    ) -> None:
        self.config = config
        self._store = store
        self._clock = clock
        self.stats = stats or rate_limit_stats

    @property
    def store(self) -> TTLCache:
        return self._store if self._store is not None else get_cache_manager().cache

    def now_ms(self) -> int:
        clock = self._clock or getattr(self.store, "clock", None)
        return int(clock() * 1000)

    def _window(self, now_ms: int) -> int:
        return now_ms // self.config.window_ms

    def _reset_time(self, window: int) -> datetime:
        return datetime.fromtimestamp((window + 1) * self.config.window_ms / 1000, tz=timezone.utc)

    def key_for(self, request: Request) -> str:
        key_generator = self.config.key_generator or default_key_generator
        return key_generator(request)

    def is_allowed(self, request: Request) -> RateLimitResult:
        return self._check(self.key_for(request), request)

    def is_allowed_for_key(self, key: str) -> RateLimitResult:
        return self._check(key, None)

    def _check(self, key: str, request: Request | None) -> RateLimitResult:
        max_requests = self.config.max_requests
        try:
            window = self._window(self.now_ms())
            window_key = f"{key}:{window}"
            reset_time = self._reset_time(window)
            store = self.store
            with _COUNTER_LOCK:
                count = store.get(window_key) or 0
                if count < max_requests:
                    store.set(window_key, count + 1, math.ceil(self.config.window_ms / 1000))
        except Exception:
            logger.exception("Rate limiter error for %s", key)
            return self._fail_open()

        if count >= max_requests:
            logger.info("Rate limit reached for %s (%d/%d)", key, count, max_requests)
            self.stats.record_blocked()
            if self.config.on_limit_reached:
                try:
                    self.config.on_limit_reached(request, key)
                except Exception:
                    logger.exception("on_limit_reached callback failed for %s", key)
            return RateLimitResult(allowed=False, remaining=0, reset_time=reset_time, total_hits=count)

        self.stats.record_allowed()
        return RateLimitResult(
            allowed=True,
            remaining=max(0, max_requests - count - 1),
            reset_time=reset_time,
            total_hits=count + 1,
        )

    def _fail_open(self) -> RateLimitResult:
        try:
            reset_time = self._reset_time(self._window(self.now_ms()))
        except Exception:
            reset_time = datetime.now(timezone.utc)
        return RateLimitResult(
            allowed=True,
            remaining=self.config.max_requests - 1,
            reset_time=reset_time,
            total_hits=1,
        )


def retry_after_seconds(result: RateLimitResult, now: float) -> int:
    return max(0, math.ceil(result.reset_time.timestamp() - now))


def format_reset(reset_time: datetime) -> str:
    return reset_time.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def rate_limit_headers(config: RateLimitConfig, result: RateLimitResult) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(config.max_requests),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": format_reset(result.reset_time),
    }


def rate_limited_response(config: RateLimitConfig, result: RateLimitResult, now: float | None = None) -> JSONResponse:
    response = JSONResponse(
        {"success": False, "message": config.message or DEFAULT_MESSAGE, "rateLimitExceeded": True},
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
    )
    response.headers.update(rate_limit_headers(config, replace(result, remaining=0)))
    response.headers["Retry-After"] = str(retry_after_seconds(result, time.time() if now is None else now))
    return response


def with_rate_limit(config: RateLimitConfig, store: TTLCache | None = None) -> Callable:
    """Reject requests over ``config.max_requests`` per window with a 429.

    The decorated endpoint must declare ``request: Request``. Failures inside
    the limiter itself let the request through.
    """

    limiter = RateLimiter(config, store=store)

    def decorator(handler: Callable) -> Callable:
        require_request_param(handler)

        @functools.wraps(handler)
        async def wrapper(*args: Any, **kwargs: Any) -> Response:
            try:
                request = find_request(handler, args, kwargs)
                result = limiter.is_allowed(request)
                if not result.allowed:
                    return rate_limited_response(limiter.config, result, limiter.now_ms() / 1000)
                headers = rate_limit_headers(config, result)
            except Exception:
                logger.exception("Rate limit middleware error in %s", handler.__name__)
                return await call_handler(handler, *args, **kwargs)

            response = await call_handler(handler, *args, **kwargs)
            response.headers.update(headers)
            return response

        wrapper.limiter = limiter
        return wrapper

    return decorator


class IPRateLimiter:
    _instances: dict[str, RateLimiter] = {}
    _lock = threading.Lock()

    @classmethod
    def get_instance(cls, name: str, config: RateLimitConfig) -> RateLimiter:
        with cls._lock:
            if name not in cls._instances:
                cls._instances[name] = RateLimiter(config)
            return cls._instances[name]

    @classmethod
    def check_limit(cls, request: Request, limiter_name: str, config: RateLimitConfig) -> JSONResponse | None:
        limiter = cls.get_instance(limiter_name, config)
        result = limiter.is_allowed(request)
        if not result.allowed:
            return rate_limited_response(limiter.config, result, limiter.now_ms() / 1000)
        return None

    @classmethod
    def clear_instances(cls) -> None:
        with cls._lock:
            cls._instances.clear()


class UserRateLimiter:
    @staticmethod
    def generate_user_key(user_id: str, endpoint: str) -> str:
        return f"user_rate_limit:{user_id}:{endpoint}"

    @classmethod
    def check_user_limit(
        cls,
        user_id: str,
        endpoint: str,
        config: RateLimitConfig,
        store: TTLCache | None = None,
    ) -> RateLimitResult:
        key = cls.generate_user_key(user_id, endpoint)
        limiter = RateLimiter(replace(config, key_generator=lambda _request: key), store=store)
        return limiter.is_allowed_for_key(key)
