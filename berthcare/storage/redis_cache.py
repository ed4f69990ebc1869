from __future__ import annotations

from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from berthcare.logging import get_logger
from berthcare.storage.errors import StoreUnavailable

logger = get_logger(__name__)

# Two key namespaces with different TTL semantics
BLACKLIST_PREFIX = "auth:blacklist:"
RATE_LIMIT_PREFIX = "ratelimit:"


class RedisCache:
    """Redis-backed ephemeral guard state: access-token blacklist and rate counters.

    Every operation is a single round-trip so concurrent requests from the
    same client never race between a read and a write. Communication errors
    surface as :class:`StoreUnavailable`; callers decide the fail policy.
    """

    # Fixed window counter: the TTL is set when the key is created and never
    # refreshed, so the window cannot be extended by hammering it. A key that
    # somehow lost its TTL gets one back instead of living forever.
    _FIXED_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
local window = tonumber(ARGV[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], window)
  return {count, window}
end
local ttl = redis.call('TTL', KEYS[1])
if ttl < 0 then
  redis.call('EXPIRE', KEYS[1], window)
  ttl = window
end
return {count, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 2.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()

    async def blacklist_token(self, fingerprint: str, ttl_seconds: int) -> None:
        """Blacklist an access token fingerprint until the token would have expired.

        ``SET NX`` keeps an existing entry (and its TTL) intact, which makes a
        repeated logout with the same token a no-op.
        """
        ttl = max(1, int(ttl_seconds))
        try:
            await self.client.set(f"{BLACKLIST_PREFIX}{fingerprint}", "1", ex=ttl, nx=True)
        except RedisError as exc:
            logger.error("cache_blacklist_write_failed", error=str(exc))
            raise StoreUnavailable(
                "blacklist write failed", {"operation": "blacklist_token"}, store="cache"
            ) from exc

    async def is_blacklisted(self, fingerprint: str) -> bool:
        try:
            return bool(await self.client.exists(f"{BLACKLIST_PREFIX}{fingerprint}"))
        except RedisError as exc:
            raise StoreUnavailable(
                "blacklist lookup failed", {"operation": "is_blacklisted"}, store="cache"
            ) from exc

    async def increment_counter(
        self, counter_key: str, window_seconds: int
    ) -> Tuple[int, int]:
        """Atomically bump a fixed-window counter.

        Returns:
            ``(count, ttl_seconds)`` where ``ttl_seconds`` is the time left
            in the current window.
        """
        try:
            count, ttl = await self._fixed_window(
                keys=[f"{RATE_LIMIT_PREFIX}{counter_key}"],
                args=[max(1, int(window_seconds))],
            )
        except RedisError as exc:
            raise StoreUnavailable(
                "rate counter increment failed",
                {"operation": "increment_counter"},
                store="cache",
            ) from exc
        return int(count), int(ttl)
