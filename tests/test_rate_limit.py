"""Tests for fixed-window rate limiting."""

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tablecode.config import Settings
from tablecode.service.errors import RateLimitedError
from tablecode.service.rate_limit import (
    MemoryRateLimitBackend,
    RateLimiter,
    RateLimiters,
    RateLimitPolicy,
    forgot_pin_key,
    owner_login_key,
    pin_reset_key,
)


class ManualClock:
    def __init__(self):
        self.ms = 1_000_000

    def __call__(self):
        return self.ms


class BrokenBackend:
    async def increment(self, key, window_ms):
        raise RedisConnectionError("redis down")


@pytest.fixture
def ms_clock():
    return ManualClock()


@pytest.fixture
def limiter(ms_clock):
    backend = MemoryRateLimitBackend(clock=ms_clock)
    return RateLimiter(RateLimitPolicy("test", 3, 1000), backend)


async def test_fourth_call_denied_then_allowed_after_window(limiter, ms_clock):
    for expected_remaining in (2, 1, 0):
        decision = await limiter.check("1.2.3.4")
        assert decision.allowed
        assert decision.remaining == expected_remaining

    ms_clock.ms += 250
    denied = await limiter.check("1.2.3.4")
    assert not denied.allowed
    assert 0 < denied.retry_after_ms <= 750

    ms_clock.ms += 750
    assert (await limiter.check("1.2.3.4")).allowed


async def test_keys_are_independent(limiter):
    for _ in range(3):
        await limiter.check("a")
    assert not (await limiter.check("a")).allowed
    assert (await limiter.check("b")).allowed


async def test_enforce_raises_with_retry_after(limiter):
    for _ in range(3):
        await limiter.enforce("k")
    with pytest.raises(RateLimitedError) as excinfo:
        await limiter.enforce("k")
    assert excinfo.value.status_code == 429
    assert excinfo.value.retry_after_ms > 0
    assert excinfo.value.detail == {"retry_after_ms": excinfo.value.retry_after_ms}


async def test_policies_sharing_a_backend_do_not_collide(ms_clock):
    backend = MemoryRateLimitBackend(clock=ms_clock)
    first = RateLimiter(RateLimitPolicy("first", 1, 1000), backend)
    second = RateLimiter(RateLimitPolicy("second", 1, 1000), backend)
    assert (await first.check("same")).allowed
    assert (await second.check("same")).allowed
    assert not (await first.check("same")).allowed


async def test_backend_failure_fails_open():
    limiter = RateLimiter(RateLimitPolicy("test", 1, 1000), BrokenBackend())
    for _ in range(5):
        assert (await limiter.check("k")).allowed


async def test_expired_windows_are_swept(ms_clock):
    backend = MemoryRateLimitBackend(clock=ms_clock, sweep_every=1)
    limiter = RateLimiter(RateLimitPolicy("test", 5, 100), backend)
    for key in ("a", "b", "c"):
        await limiter.check(key)
    assert len(backend) == 3
    ms_clock.ms += 200
    await limiter.check("d")
    assert len(backend) == 1


def test_policy_validation():
    with pytest.raises(ValueError):
        RateLimitPolicy("bad", 0, 1000)
    with pytest.raises(ValueError):
        RateLimitPolicy("bad", 1, 0)


def test_limiters_from_settings():
    settings = Settings(
        jwt_secret="x" * 40,
        admin_rate_limit_max=5,
        admin_rate_limit_window_ms=900_000,
    )
    limiters = RateLimiters.from_settings(settings)
    assert limiters.admin_login.policy == RateLimitPolicy("admin-login", 5, 900_000)
    assert limiters.owner_login.policy.name == "login-code"
    # One shared backend so a single sweep covers every policy
    assert limiters.api.backend is limiters.forgot_pin.backend


def test_key_builders_normalize_codes():
    assert owner_login_key(" abc234 ") == "ABC234"
    assert forgot_pin_key("1.2.3.4", "abc234") == "1.2.3.4:ABC234"
    assert pin_reset_key("1.2.3.4", "tenant-1") == "1.2.3.4:tenant-1"
