from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as aioredis


class RedisCache:
    """Thin Redis wrapper for rate-limit windows and pending PIN resets."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed window: the first hit in a window starts its expiry
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local window_ms = tonumber(ARGV[1])

local count = redis.call('INCR', key)
if count == 1 then
  redis.call('PEXPIRE', key, window_ms)
end

local ttl = redis.call('PTTL', key)
if ttl < 0 then
  redis.call('PEXPIRE', key, window_ms)
  ttl = window_ms
end
return {count, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        """Close the Redis connection pool on shutdown."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate keys so caller-supplied codes cannot inject delimiters."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def increment_window(self, key: str, window_ms: int) -> Tuple[int, int]:
        """Count a hit in the current window; returns (count, ms until reset)."""

        count, ttl = await self._fixed_window(
            keys=[self._normalize_rate_key(key)], args=[int(window_ms)]
        )
        return int(count), max(0, int(ttl))

    @staticmethod
    def _pin_reset_key(code: str) -> str:
        return f"auth:pin_reset:{code}"

    async def get_pin_reset(self, code: str) -> Optional[Dict[str, Any]]:
        cached = await self.client.get(self._pin_reset_key(code))
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (TypeError, ValueError):
            return None

    async def set_pin_reset(
        self, code: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        await self.client.set(
            self._pin_reset_key(code), json.dumps(payload), ex=max(1, int(ttl_seconds))
        )

    async def delete_pin_reset(self, code: str) -> None:
        await self.client.delete(self._pin_reset_key(code))
