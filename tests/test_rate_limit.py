import json
import unittest
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

from starlette.requests import Request

from backend.app.cache import TTLCache, reset_cache_manager
from backend.app.rate_limit import (
    RATE_LIMIT_CONFIGS,
    IPRateLimiter,
    RateLimitConfig,
    RateLimiter,
    RateLimitStats,
    UserRateLimiter,
    client_ip,
    default_key_generator,
    format_reset,
    rate_limited_response,
)


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_request(headers: dict | None = None, client: tuple | None = ("127.0.0.1", 5000)) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/api/hotels",
        "query_string": b"",
        "headers": [(name.lower().encode(), value.encode()) for name, value in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


class BrokenStore:
    def get(self, key):
        raise RuntimeError("store unavailable")

    def set(self, key, value, ttl_seconds):
        raise RuntimeError("store unavailable")


class RateLimiterTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.store = TTLCache(sweep_interval=None, clock=self.clock)
        self.stats = RateLimitStats()

    def limiter(self, window_ms: int, max_requests: int, **kwargs) -> RateLimiter:
        config = RateLimitConfig(window_ms=window_ms, max_requests=max_requests, **kwargs)
        return RateLimiter(config, store=self.store, stats=self.stats)

    def test_window_boundary(self):
        limiter = self.limiter(1000, 3)
        results = [limiter.is_allowed_for_key("k") for _ in range(3)]
        self.assertTrue(all(result.allowed for result in results))
        self.assertEqual([result.remaining for result in results], [2, 1, 0])
        self.assertEqual([result.total_hits for result in results], [1, 2, 3])

        blocked = limiter.is_allowed_for_key("k")
        self.assertFalse(blocked.allowed)
        self.assertEqual(blocked.remaining, 0)
        self.assertEqual(blocked.total_hits, 3)

        self.clock.advance(1)
        fresh = limiter.is_allowed_for_key("k")
        self.assertTrue(fresh.allowed)
        self.assertEqual(fresh.total_hits, 1)
        self.assertEqual(fresh.remaining, 2)

    def test_two_request_quota_per_minute(self):
        limiter = self.limiter(60_000, 2)
        self.clock.now = 600.0
        first = limiter.is_allowed_for_key("ip:1.2.3.4")
        second = limiter.is_allowed_for_key("ip:1.2.3.4")
        third = limiter.is_allowed_for_key("ip:1.2.3.4")
        self.assertEqual((first.allowed, first.total_hits), (True, 1))
        self.assertEqual((second.allowed, second.total_hits), (True, 2))
        self.assertEqual((third.allowed, third.total_hits, third.remaining), (False, 2, 0))

    def test_rejected_requests_do_not_consume_quota(self):
        limiter = self.limiter(1000, 1)
        limiter.is_allowed_for_key("k")
        for _ in range(5):
            limiter.is_allowed_for_key("k")
        self.assertEqual(self.store.get("k:1000"), 1)

    def test_reset_time_is_end_of_window(self):
        limiter = self.limiter(60_000, 5)
        self.clock.now = 630.5
        result = limiter.is_allowed_for_key("k")
        self.assertEqual(result.reset_time, datetime.fromtimestamp(660, tz=timezone.utc))

    def test_windows_are_anchored_to_epoch(self):
        limiter = self.limiter(1000, 1)
        self.clock.now = 1000.9
        self.assertTrue(limiter.is_allowed_for_key("k").allowed)
        self.clock.now = 1001.0
        self.assertTrue(limiter.is_allowed_for_key("k").allowed)

    def test_counter_expires_with_window(self):
        limiter = self.limiter(1500, 5)
        limiter.is_allowed_for_key("k")
        window_key = f"k:{int(self.clock() * 1000) // 1500}"
        self.assertEqual(self.store._store[window_key].ttl_seconds, 2)

    def test_keys_are_independent(self):
        limiter = self.limiter(1000, 1)
        self.assertTrue(limiter.is_allowed_for_key("a").allowed)
        self.assertTrue(limiter.is_allowed_for_key("b").allowed)
        self.assertFalse(limiter.is_allowed_for_key("a").allowed)

    def test_on_limit_reached_callback(self):
        calls = []
        limiter = self.limiter(1000, 1, on_limit_reached=lambda request, key: calls.append((request, key)))
        limiter.is_allowed_for_key("k")
        limiter.is_allowed_for_key("k")
        self.assertEqual(calls, [(None, "k")])

        request = make_request({"x-forwarded-for": "9.9.9.9"})
        limiter.is_allowed(request)
        limiter.is_allowed(request)
        self.assertEqual(calls[-1], (request, "rate_limit:9.9.9.9"))

    def test_failing_callback_still_rejects(self):
        def explode(request, key):
            raise RuntimeError("callback failed")

        limiter = self.limiter(1000, 1, on_limit_reached=explode)
        self.assertTrue(limiter.is_allowed_for_key("k").allowed)
        with self.assertLogs("backend.app.rate_limit", level="ERROR"):
            blocked = limiter.is_allowed_for_key("k")
        self.assertFalse(blocked.allowed)
        self.assertEqual((blocked.remaining, blocked.total_hits), (0, 1))
        stats = self.stats.get_stats()
        self.assertEqual((stats["allowed"], stats["blocked"]), (1, 1))

    def test_fail_open_when_storage_breaks(self):
        config = RateLimitConfig(window_ms=1000, max_requests=10)
        limiter = RateLimiter(config, store=BrokenStore(), clock=self.clock, stats=self.stats)
        with self.assertLogs("backend.app.rate_limit", level="ERROR"):
            result = limiter.is_allowed_for_key("k")
        self.assertTrue(result.allowed)
        self.assertEqual(result.remaining, 9)
        self.assertEqual(result.reset_time, datetime.fromtimestamp(1001, tz=timezone.utc))

    def test_increment_is_atomic_across_threads(self):
        limiter = self.limiter(60_000, 5)
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: limiter.is_allowed_for_key("k"), range(40)))
        self.assertEqual(sum(result.allowed for result in results), 5)

    def test_stats_count_allowed_and_blocked(self):
        limiter = self.limiter(1000, 1)
        limiter.is_allowed_for_key("k")
        limiter.is_allowed_for_key("k")
        limiter.is_allowed_for_key("k")
        stats = self.stats.get_stats()
        self.assertEqual(stats["allowed"], 1)
        self.assertEqual(stats["blocked"], 2)
        self.assertEqual(stats["total"], 3)
        self.assertAlmostEqual(stats["block_rate"], 200 / 3)
        self.stats.reset()
        self.assertEqual(self.stats.get_stats()["total"], 0)


class KeyGeneratorTests(unittest.TestCase):
    def test_forwarded_for_wins(self):
        request = make_request({"x-forwarded-for": "1.2.3.4, 10.0.0.1", "x-real-ip": "5.6.7.8"})
        self.assertEqual(client_ip(request), "1.2.3.4")
        self.assertEqual(default_key_generator(request), "rate_limit:1.2.3.4")

    def test_real_ip_then_peer(self):
        self.assertEqual(client_ip(make_request({"x-real-ip": "5.6.7.8"})), "5.6.7.8")
        self.assertEqual(client_ip(make_request()), "127.0.0.1")

    def test_unknown_without_any_address(self):
        self.assertEqual(client_ip(make_request(client=None)), "unknown")


class RateLimitedResponseTests(unittest.TestCase):
    def test_rejection_payload_and_headers(self):
        clock = FakeClock(1_000.0)
        config = RateLimitConfig(window_ms=60_000, max_requests=1, message="Slow down")
        limiter = RateLimiter(config, store=TTLCache(sweep_interval=None, clock=clock))
        limiter.is_allowed_for_key("k")
        result = limiter.is_allowed_for_key("k")

        response = rate_limited_response(config, result, now=clock())
        self.assertEqual(response.status_code, 429)
        self.assertEqual(
            json.loads(response.body),
            {"success": False, "message": "Slow down", "rateLimitExceeded": True},
        )
        self.assertEqual(response.headers["X-RateLimit-Limit"], "1")
        self.assertEqual(response.headers["X-RateLimit-Remaining"], "0")
        self.assertEqual(response.headers["X-RateLimit-Reset"], "1970-01-01T00:17:00.000Z")
        self.assertEqual(response.headers["Retry-After"], "20")

    def test_format_reset_uses_utc_z_suffix(self):
        self.assertEqual(format_reset(datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)), "2024-01-02T03:04:05.000Z")


class NamedLimiterTests(unittest.TestCase):
    def setUp(self):
        reset_cache_manager()
        IPRateLimiter.clear_instances()
        self.addCleanup(reset_cache_manager)
        self.addCleanup(IPRateLimiter.clear_instances)
        self.config = RateLimitConfig(window_ms=3_600_000, max_requests=1, message="Admin limit")

    def test_registry_reuses_instances(self):
        first = IPRateLimiter.get_instance("admin", self.config)
        self.assertIs(first, IPRateLimiter.get_instance("admin", RATE_LIMIT_CONFIGS["PUBLIC"]))

    def test_check_limit_returns_rejection_when_blocked(self):
        request = make_request({"x-forwarded-for": "4.4.4.4"})
        self.assertIsNone(IPRateLimiter.check_limit(request, "admin", self.config))
        blocked = IPRateLimiter.check_limit(request, "admin", self.config)
        self.assertEqual(blocked.status_code, 429)
        self.assertEqual(json.loads(blocked.body)["message"], "Admin limit")

    def test_user_limits_are_per_user_and_endpoint(self):
        store = TTLCache(sweep_interval=None)
        self.assertEqual(UserRateLimiter.generate_user_key("u1", "reviews"), "user_rate_limit:u1:reviews")
        self.assertTrue(UserRateLimiter.check_user_limit("u1", "reviews", self.config, store=store).allowed)
        self.assertFalse(UserRateLimiter.check_user_limit("u1", "reviews", self.config, store=store).allowed)
        self.assertTrue(UserRateLimiter.check_user_limit("u2", "reviews", self.config, store=store).allowed)
        self.assertTrue(UserRateLimiter.check_user_limit("u1", "bookings", self.config, store=store).allowed)


class PresetTests(unittest.TestCase):
    def test_presets(self):
        self.assertEqual(
            {name: (config.window_ms, config.max_requests) for name, config in RATE_LIMIT_CONFIGS.items()},
            {
                "PUBLIC": (900_000, 1000),
                "SEARCH": (60_000, 60),
                "AUTH": (900_000, 5),
                "USER_CONTENT": (60_000, 30),
                "ADMIN": (60_000, 100),
            },
        )


if __name__ == "__main__":
    unittest.main()
