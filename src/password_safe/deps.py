"""Process-wide providers and FastAPI dependencies for the Password Safe client."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import Depends

from .cache import InMemoryTokenCache, RedisTokenCache, TokenCache
from .client import PasswordSafeClient
from .config import PasswordSafeConfig

logger = logging.getLogger(__name__)

_client: PasswordSafeClient | None = None
_token_cache: TokenCache | None = None


def get_token_cache(config: PasswordSafeConfig | None = None) -> TokenCache:
    """Return the shared token cache, backed by Redis when a URL is configured."""

    global _token_cache
    if _token_cache is None:
        redis_url = config.token_cache_redis_url if config is not None else None
        if redis_url:
            logger.info("Sharing Password Safe session tokens through Redis")
            _token_cache = RedisTokenCache.from_url(redis_url)
        else:
            _token_cache = InMemoryTokenCache()
    return _token_cache


def configure_password_safe_client(
    config: PasswordSafeConfig | None = None,
    *,
    token_cache: TokenCache | None = None,
) -> PasswordSafeClient:
    """Build the process-wide client from ``config`` (or the environment).

    Raises :class:`password_safe.exceptions.PasswordSafeConfigError` when the
    configuration does not describe exactly one authentication scheme.
    """

    global _client
    settings = config or PasswordSafeConfig()
    _client = PasswordSafeClient(
        settings,
        token_cache=token_cache or get_token_cache(settings),
    )
    return _client


def get_password_safe_client() -> PasswordSafeClient:
    """Provide a singleton PasswordSafeClient instance."""

    if _client is None:
        return configure_password_safe_client()
    return _client


async def close_password_safe_client() -> None:
    """Dispose of the singleton client and shared cache, e.g. on application shutdown."""

    global _client, _token_cache
    if _client is not None:
        await _client.close()
        _client = None
    if isinstance(_token_cache, RedisTokenCache):
        await _token_cache.close()
    _token_cache = None


PasswordSafeClientDep = Annotated[PasswordSafeClient, Depends(get_password_safe_client)]


__all__ = [
    "PasswordSafeClientDep",
    "close_password_safe_client",
    "configure_password_safe_client",
    "get_password_safe_client",
    "get_token_cache",
]
