"""Token caches shared between client instances pointed at the same server."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import MutableMapping
from datetime import datetime, timezone
from importlib import import_module
from typing import Protocol, cast

from pydantic import ValidationError
from redis.asyncio import Redis

from .auth import AuthToken

DEFAULT_TTL_SECONDS = 3600
REDIS_KEY_PREFIX = "password-safe:token:"

logger = logging.getLogger(__name__)


class TokenCache(Protocol):
    """Cache contract used by :class:`password_safe.auth.TokenManager`."""

    async def get(self, key: str) -> AuthToken | None:  # pragma: no cover - protocol
        """Return the cached token for ``key`` if present."""

    async def set(self, key: str, token: AuthToken) -> None:  # pragma: no cover - protocol
        """Store ``token`` under ``key``."""

    async def invalidate(self, key: str) -> None:  # pragma: no cover - protocol
        """Drop the entry stored under ``key``."""


class InMemoryTokenCache:
    """Process-local cache backed by ``cachetools.TTLCache``."""

    def __init__(self, maxsize: int = 64, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        try:
            ttl_cache_cls = getattr(import_module("cachetools"), "TTLCache")
        except ModuleNotFoundError as exc:  # pragma: no cover - dependency declared in pyproject
            raise RuntimeError("cachetools must be installed to enable token caching") from exc

        self._cache: MutableMapping[str, AuthToken] = cast(
            MutableMapping[str, AuthToken], ttl_cache_cls(maxsize=maxsize, ttl=ttl_seconds)
        )
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> AuthToken | None:
        async with self._lock:
            return self._cache.get(key)

    async def set(self, key: str, token: AuthToken) -> None:
        async with self._lock:
            self._cache[key] = token

    async def invalidate(self, key: str) -> None:
        async with self._lock:
            self._cache.pop(key, None)

    async def clear(self) -> None:
        """Remove all cached entries."""

        async with self._lock:
            self._cache.clear()


class RedisTokenCache:
    """Cache stored in Redis so several processes can share one session."""

    def __init__(self, redis: Redis, *, key_prefix: str = REDIS_KEY_PREFIX) -> None:
        self._redis = redis
        self._key_prefix = key_prefix

    @classmethod
    def from_url(cls, redis_url: str, *, key_prefix: str = REDIS_KEY_PREFIX) -> RedisTokenCache:
        redis = Redis.from_url(  # pyright: ignore[reportUnknownMemberType]
            redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        return cls(redis, key_prefix=key_prefix)

    async def get(self, key: str) -> AuthToken | None:
        raw = await self._redis.get(self._key(key))
        if raw is None:
            return None
        try:
            return AuthToken.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding undecodable cached token", extra={"cache_key": key})
            await self._redis.delete(self._key(key))
            return None

    async def set(self, key: str, token: AuthToken) -> None:
        remaining = int((token.expires_at - datetime.now(timezone.utc)).total_seconds())
        if remaining <= 0:
            return
        await self._redis.set(self._key(key), token.model_dump_json(), ex=remaining)

    async def invalidate(self, key: str) -> None:
        await self._redis.delete(self._key(key))

    async def close(self) -> None:
        await self._redis.aclose()

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"


__all__ = [
    "DEFAULT_TTL_SECONDS",
    "InMemoryTokenCache",
    "RedisTokenCache",
    "TokenCache",
]
