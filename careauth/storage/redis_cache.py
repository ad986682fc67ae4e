from __future__ import annotations

from datetime import datetime, timezone

import redis.asyncio as aioredis
from redis import Redis

_DENYLIST_PREFIX = "auth:access:denylist:"


def _ttl_seconds(expires_at: datetime) -> int:
    """Seconds until ``expires_at``, clamped to at least one.

    Redis rejects zero or negative TTLs, and a revocation entry must outlive
    the token it shadows by at least a tick.
    """

    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    else:
        expires_at = expires_at.astimezone(timezone.utc)
    return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))


class RedisCache:
    """Thin Redis wrapper holding the shared access-token denylist."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client avoids binding the async one to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def denylist_access_token(self, jti: str, expires_at: datetime) -> None:
        """Add an access token id to the denylist until the token would expire."""
        await self.client.set(f"{_DENYLIST_PREFIX}{jti}", "1", ex=_ttl_seconds(expires_at))

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(await self.client.exists(f"{_DENYLIST_PREFIX}{jti}"))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper exposing the same awaitable surface.

    Used in test mode so the client is never bound to a per-test event loop.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def denylist_access_token(self, jti: str, expires_at: datetime) -> None:
        self._sync_client.set(f"{_DENYLIST_PREFIX}{jti}", "1", ex=_ttl_seconds(expires_at))

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(self._sync_client.exists(f"{_DENYLIST_PREFIX}{jti}"))

    async def close(self) -> None:
        self._sync_client.close()
