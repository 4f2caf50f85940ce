"""Fixed-window rate limiting over a pluggable counter backend."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple

from redis.exceptions import RedisError

from tablecode.config import Settings
from tablecode.logging import get_logger
from tablecode.service.errors import RateLimitedError
from tablecode.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    max_requests: int
    window_ms: int

    def __post_init__(self) -> None:
        if self.max_requests < 1:
            raise ValueError(f"{self.name}: max_requests must be positive")
        if self.window_ms < 1:
            raise ValueError(f"{self.name}: window_ms must be positive")


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_ms: int
    remaining: int


class RateLimitBackend(Protocol):
    async def increment(self, key: str, window_ms: int) -> Tuple[int, int]:
        """Count one hit; return (hits in window, ms until the window resets)."""
        ...


class MemoryRateLimitBackend:
    """Process-local counters; expired windows are evicted lazily."""

    def __init__(
        self,
        *,
        clock: Callable[[], int] = _monotonic_ms,
        sweep_every: int = 1024,
    ) -> None:
        self._clock = clock
        self._windows: Dict[str, Tuple[int, int]] = {}
        self._lock = threading.Lock()
        self._sweep_every = sweep_every
        self._since_sweep = 0

    async def increment(self, key: str, window_ms: int) -> Tuple[int, int]:
        now = self._clock()
        with self._lock:
            self._maybe_sweep(now)
            count, reset_at = self._windows.get(key, (0, 0))
            if now >= reset_at:
                count, reset_at = 0, now + window_ms
            count += 1
            self._windows[key] = (count, reset_at)
            return count, reset_at - now

    def _maybe_sweep(self, now: int) -> None:
        self._since_sweep += 1
        if self._since_sweep < self._sweep_every:
            return
        self._since_sweep = 0
        expired = [key for key, (_, reset_at) in self._windows.items() if now >= reset_at]
        for key in expired:
            del self._windows[key]

    def __len__(self) -> int:
        return len(self._windows)


class RedisRateLimitBackend:
    """Shared counters so every worker sees the same window."""

    def __init__(self, cache: RedisCache) -> None:
        self.cache = cache

    async def increment(self, key: str, window_ms: int) -> Tuple[int, int]:
        return await self.cache.increment_window(key, window_ms)


class RateLimiter:
    """Applies one policy to arbitrary keys.

    Backend failures fail open: the request is allowed and a warning logged,
    since the limiter is one layer among several.
    """

    def __init__(self, policy: RateLimitPolicy, backend: RateLimitBackend) -> None:
        self.policy = policy
        self.backend = backend

    def _namespaced(self, key: str) -> str:
        return f"{self.policy.name}:{key}"

    async def check(self, key: str) -> RateLimitDecision:
        try:
            count, reset_in_ms = await self.backend.increment(
                self._namespaced(key), self.policy.window_ms
            )
        except (RedisError, OSError) as exc:
            logger.warning(
                "rate_limit_backend_failed",
                policy=self.policy.name,
                error=str(exc),
            )
            return RateLimitDecision(allowed=True, retry_after_ms=0, remaining=0)
        if count > self.policy.max_requests:
            return RateLimitDecision(
                allowed=False,
                retry_after_ms=max(1, reset_in_ms),
                remaining=0,
            )
        return RateLimitDecision(
            allowed=True,
            retry_after_ms=0,
            remaining=self.policy.max_requests - count,
        )

    async def enforce(self, key: str) -> RateLimitDecision:
        decision = await self.check(key)
        if not decision.allowed:
            logger.info(
                "rate_limited",
                policy=self.policy.name,
                retry_after_ms=decision.retry_after_ms,
            )
            raise RateLimitedError(decision.retry_after_ms)
        return decision


@dataclass
class RateLimiters:
    """The limiter set used by the HTTP surface and auth flows."""

    api: RateLimiter
    admin_login: RateLimiter
    pin_reset: RateLimiter
    owner_login: RateLimiter
    forgot_pin: RateLimiter
    forgot_pin_verify: RateLimiter

    @classmethod
    def from_settings(
        cls, settings: Settings, backend: Optional[RateLimitBackend] = None
    ) -> "RateLimiters":
        shared = backend or MemoryRateLimitBackend()

        def make(name: str, max_requests: int, window_ms: int) -> RateLimiter:
            return RateLimiter(RateLimitPolicy(name, max_requests, window_ms), shared)

        return cls(
            api=make("api", settings.rate_limit_max, settings.rate_limit_window_ms),
            admin_login=make(
                "admin-login",
                settings.admin_rate_limit_max,
                settings.admin_rate_limit_window_ms,
            ),
            pin_reset=make(
                "pin-reset",
                settings.pin_reset_rate_limit_max,
                settings.pin_reset_rate_limit_window_ms,
            ),
            owner_login=make(
                "login-code",
                settings.login_rate_limit_max,
                settings.login_rate_limit_window_ms,
            ),
            forgot_pin=make(
                "forgot-pin",
                settings.forgot_pin_rate_limit_max,
                settings.forgot_pin_rate_limit_window_ms,
            ),
            forgot_pin_verify=make(
                "forgot-pin-verify",
                settings.forgot_pin_verify_rate_limit_max,
                settings.forgot_pin_verify_rate_limit_window_ms,
            ),
        )


# Key builders; the limiter prefixes the policy name.
def api_key(ip: str) -> str:
    return ip


def admin_login_key(ip: str) -> str:
    return ip


def pin_reset_key(ip: str, tenant_id: str) -> str:
    return f"{ip}:{tenant_id}"


def owner_login_key(code: str) -> str:
    return code.strip().upper()


def forgot_pin_key(ip: str, code: str) -> str:
    return f"{ip}:{code.strip().upper()}"
