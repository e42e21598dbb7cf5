from utils.rate_limit import RateLimiter


class FakeClock:
    def __init__(self, start=1_000.0):
        self.now = start

    def __call__(self):
        return self.now


class FakeRedis:
    """Minimal stand-in for the three Redis commands the limiter uses."""

    def __init__(self, clock):
        self._clock = clock
        self._values = {}
        self._expires_at = {}

    def _purge(self, key):
        expires_at = self._expires_at.get(key)
        if expires_at is not None and expires_at <= self._clock() * 1000:
            self._values.pop(key, None)
            self._expires_at.pop(key, None)

    def incr(self, key):
        self._purge(key)
        self._values[key] = self._values.get(key, 0) + 1
        return self._values[key]

    def pexpire(self, key, ms):
        self._expires_at[key] = self._clock() * 1000 + ms

    def pttl(self, key):
        self._purge(key)
        if key not in self._values:
            return -2
        if key not in self._expires_at:
            return -1
        return int(self._expires_at[key] - self._clock() * 1000)


class BrokenRedis:
    def incr(self, key):
        raise ConnectionError("redis down")


def test_fixed_window_counts_and_resets():
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)

    results = [limiter.hit("k", limit=3, window=60) for _ in range(4)]
    assert [r.ok for r in results] == [True, True, True, False]
    assert [r.remaining for r in results] == [2, 1, 0, 0]
    assert {r.reset_ms for r in results} == {1_060_000}

    clock.now += 60
    fresh = limiter.hit("k", limit=3, window=60)
    assert fresh.ok
    assert fresh.remaining == 2
    assert fresh.reset_ms == 1_120_000


def test_keys_are_independent():
    limiter = RateLimiter(clock=FakeClock())
    assert limiter.hit("a", limit=1, window=60).ok
    assert not limiter.hit("a", limit=1, window=60).ok
    assert limiter.hit("b", limit=1, window=60).ok


def test_reset_clears_buckets():
    limiter = RateLimiter(clock=FakeClock())
    limiter.hit("a", limit=1, window=60)
    limiter.reset()
    assert limiter.hit("a", limit=1, window=60).ok


def test_redis_backend_shares_counters_between_limiters():
    clock = FakeClock()
    shared = FakeRedis(clock)
    first = RateLimiter(shared, clock=clock)
    second = RateLimiter(shared, clock=clock)

    assert first.hit("k", limit=2, window=10).remaining == 1
    assert second.hit("k", limit=2, window=10).remaining == 0
    blocked = first.hit("k", limit=2, window=10)
    assert not blocked.ok
    assert blocked.reset_ms == 1_010_000

    clock.now += 10
    assert second.hit("k", limit=2, window=10).ok


def test_redis_failure_falls_back_to_memory_or_fails_closed():
    clock = FakeClock()
    assert RateLimiter(BrokenRedis(), clock=clock).hit("k", limit=1, window=60).ok

    strict = RateLimiter(BrokenRedis(), fail_closed=True, clock=clock).hit("k", limit=1, window=60)
    assert not strict.ok
    assert strict.remaining == 0
