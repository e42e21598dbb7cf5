"""Fixed-window request counters.

Counters live in process memory unless a Redis client is supplied, in which
case they are shared through atomic INCR + PEXPIRE. The in-memory buckets are
best-effort: each worker process counts on its own and nothing evicts stale
keys beyond overwriting an expired window.
"""

import logging
import threading
import time
from collections import namedtuple

logger = logging.getLogger(__name__)

RateLimitResult = namedtuple("RateLimitResult", ["ok", "limit", "remaining", "reset_ms"])


class RateLimiter:
    def __init__(self, redis_client=None, fail_closed=False, clock=time.time):
        self._redis = redis_client
        self._fail_closed = fail_closed
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets = {}

    def hit(self, key, limit, window):
        """Count one request against ``key`` and report whether it is allowed.

        ``window`` is in seconds. ``reset_ms`` is the epoch millisecond at which
        the current window closes.
        """
        now_ms = int(self._clock() * 1000)
        window_ms = int(window * 1000)

        if self._redis is not None:
            try:
                return self._hit_redis(key, limit, window_ms, now_ms)
            except Exception as redis_err:
                logger.error("Redis rate limit failure: %s", redis_err)
                if self._fail_closed:
                    return RateLimitResult(False, limit, 0, now_ms + window_ms)

        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None or bucket["reset_ms"] <= now_ms:
                reset_ms = now_ms + window_ms
                self._buckets[key] = {"reset_ms": reset_ms, "count": 1}
                return RateLimitResult(True, limit, limit - 1, reset_ms)

            if bucket["count"] >= limit:
                return RateLimitResult(False, limit, 0, bucket["reset_ms"])

            bucket["count"] += 1
            return RateLimitResult(True, limit, limit - bucket["count"], bucket["reset_ms"])

    def _hit_redis(self, key, limit, window_ms, now_ms):
        redis_key = f"ratelimit:{key}"
        current = self._redis.incr(redis_key)
        if current == 1:
            self._redis.pexpire(redis_key, window_ms)
            ttl_ms = window_ms
        else:
            ttl_ms = self._redis.pttl(redis_key)
            if ttl_ms is None or ttl_ms < 0:
                # Key lost its expiry; restart the window rather than block forever.
                self._redis.pexpire(redis_key, window_ms)
                ttl_ms = window_ms

        reset_ms = now_ms + ttl_ms
        if current > limit:
            return RateLimitResult(False, limit, 0, reset_ms)
        return RateLimitResult(True, limit, limit - current, reset_ms)

    def reset(self):
        with self._lock:
            self._buckets.clear()
