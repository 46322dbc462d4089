from queuepilot.core.rate_limit import RateLimiter


def test_allows_up_to_limit() -> None:
    limiter = RateLimiter(max_calls=2, window_seconds=60)
    assert limiter.allow("trig-a")
    assert limiter.allow("trig-a")
    assert not limiter.allow("trig-a")


def test_keys_are_independent() -> None:
    limiter = RateLimiter(max_calls=1, window_seconds=60)
    assert limiter.allow("trig-a")
    assert limiter.allow("trig-b")
    assert not limiter.allow("trig-a")


def test_reset() -> None:
    limiter = RateLimiter(max_calls=1, window_seconds=60)
    limiter.allow("trig-a")
    limiter.reset("trig-a")
    assert limiter.allow("trig-a")
    limiter.reset()
    assert limiter.allow("trig-a")
