"""Session token lifecycle for the Password Safe API.

Two mutually exclusive schemes are supported:

* ``PS-Auth``: an API key plus run-as identity, verified with ``GET Auth``.
  The server does not report a lifetime, so one hour is assumed.
* OAuth client credentials: ``POST Auth/Connect/Token`` followed by the
  mandatory ``POST Auth/SignAppIn``. The token is unusable until sign-in
  succeeds.

:class:`TokenManager` owns the current token and makes sure concurrent callers
share a single authentication round trip.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Final

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import PasswordSafeConfig
from .decoding import load_json
from .exceptions import AuthenticationError

if TYPE_CHECKING:
    from .cache import TokenCache

PS_AUTH_TOKEN_TYPE: Final[str] = "PS-Auth"
API_KEY_TOKEN_LIFETIME_SECONDS: Final[int] = 3600

AUTH_ENDPOINT: Final[str] = "Auth"
TOKEN_ENDPOINT: Final[str] = "Auth/Connect/Token"
SIGN_APP_IN_ENDPOINT: Final[str] = "Auth/SignAppIn"
SIGN_OUT_ENDPOINT: Final[str] = "Auth/Signout"

Clock = Callable[[], datetime]
ClientFactory = Callable[[], Awaitable[httpx.AsyncClient]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthToken(BaseModel):
    """Session token plus the moment it was obtained."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    access_token: str | None = Field(default=None, repr=False)
    token_type: str | None = None
    expires_in: int = 0
    issued_at: datetime = Field(default_factory=utcnow)

    @property
    def expires_at(self) -> datetime:
        return self.issued_at + timedelta(seconds=self.expires_in)

    @property
    def is_api_key(self) -> bool:
        return self.token_type == PS_AUTH_TOKEN_TYPE

    def is_expired(self, buffer: timedelta = timedelta(0), *, now: datetime | None = None) -> bool:
        """Return ``True`` once ``now + buffer`` reaches the expiry instant."""

        current = now or utcnow()
        return current + buffer >= self.expires_at


def build_api_key_header(config: PasswordSafeConfig) -> str:
    header = f"{PS_AUTH_TOKEN_TYPE} key={config.api_key}; runas={config.run_as_username}"
    if config.run_as_password:
        header += f"; pwd=[{config.run_as_password}]"
    return header


def build_authorization_header(config: PasswordSafeConfig, token: AuthToken) -> str:
    """Compute the ``Authorization`` value matching the scheme ``token`` came from."""

    if token.is_api_key:
        return build_api_key_header(config)
    return f"{token.token_type} {token.access_token}"


class TokenManager:
    """Obtains, caches and refreshes the session token for one client."""

    def __init__(
        self,
        config: PasswordSafeConfig,
        client_factory: ClientFactory,
        *,
        cache: TokenCache | None = None,
        logger: logging.Logger | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._config = config
        self._client_factory = client_factory
        self._cache = cache
        self._logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self._buffer = timedelta(minutes=config.token_buffer_minutes)
        self._token: AuthToken | None = None
        self._lock = asyncio.Lock()
        self._inflight: asyncio.Task[AuthToken] | None = None

    @property
    def token(self) -> AuthToken | None:
        return self._token

    @property
    def cache_key(self) -> str:
        config = self._config
        if config.use_oauth:
            principal = config.oauth_client_id
            secret = f"{config.oauth_client_id}:{config.oauth_client_secret}"
        else:
            principal = config.run_as_username
            secret = f"{config.api_key}:{config.run_as_password or ''}"
        # Clients holding different credentials never share a session.
        digest = hashlib.sha256(secret.encode("utf-8")).hexdigest()[:16]
        return f"{config.normalized_base_url}|{principal}|{digest}"

    def is_expired(self, token: AuthToken) -> bool:
        return token.is_expired(self._buffer, now=self._clock())

    def authorization_header(self, token: AuthToken) -> str:
        return build_authorization_header(self._config, token)

    async def ensure_token(self) -> AuthToken:
        """Return a usable token, authenticating at most once across concurrent callers."""

        token = self._token
        if token is not None and not self.is_expired(token):
            return token

        async with self._lock:
            token = self._token
            if token is not None and not self.is_expired(token):
                self._logger.debug("Using existing Password Safe session token")
                return token

            if token is not None and not self._config.auto_refresh_token:
                raise AuthenticationError(
                    "Password Safe session token expired and automatic refresh is disabled"
                )

            cached = await self._lookup_cache()
            if cached is not None:
                self._token = cached
                return cached

            if self._inflight is None:
                self._inflight = asyncio.ensure_future(self._authenticate_once())
                self._inflight.add_done_callback(self._observe_failure)
            inflight = self._inflight

        return await asyncio.shield(inflight)

    async def invalidate(self) -> None:
        """Forget the current token locally and in the shared cache."""

        self._token = None
        if self._cache is not None:
            await self._cache.invalidate(self.cache_key)

    async def _lookup_cache(self) -> AuthToken | None:
        if self._cache is None:
            return None
        cached = await self._cache.get(self.cache_key)
        if cached is None or self.is_expired(cached):
            return None
        self._logger.debug("Using cached Password Safe session token")
        return cached

    async def _authenticate_once(self) -> AuthToken:
        try:
            self._logger.info(
                "Authenticating with Password Safe",
                extra={"auth_scheme": "oauth" if self._config.use_oauth else "api_key"},
            )
            if self._config.use_oauth:
                token = await self._authenticate_with_oauth()
            else:
                token = await self._authenticate_with_api_key()
            self._token = token
            if self._cache is not None:
                await self._cache.set(self.cache_key, token)
            return token
        finally:
            self._inflight = None

    async def _authenticate_with_api_key(self) -> AuthToken:
        response = await self._send(
            "GET",
            AUTH_ENDPOINT,
            headers={"Authorization": build_api_key_header(self._config)},
        )
        if not response.is_success:
            raise AuthenticationError(
                f"API key authentication failed with status code {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

        self._logger.info("Authenticated with Password Safe API key")
        # The PS-Auth header is rebuilt from config, so the API key is never stored.
        return AuthToken(
            access_token=None,
            token_type=PS_AUTH_TOKEN_TYPE,
            expires_in=API_KEY_TOKEN_LIFETIME_SECONDS,
            issued_at=self._clock(),
        )

    async def _authenticate_with_oauth(self) -> AuthToken:
        response = await self._send(
            "POST",
            TOKEN_ENDPOINT,
            data={
                "grant_type": "client_credentials",
                "client_id": self._config.oauth_client_id or "",
                "client_secret": self._config.oauth_client_secret or "",
            },
        )
        if not response.is_success:
            raise AuthenticationError(
                f"OAuth authentication failed with status code {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

        token = self._parse_token(response.text)
        sign_in = await self._send(
            "POST",
            SIGN_APP_IN_ENDPOINT,
            headers={"Authorization": build_authorization_header(self._config, token)},
        )
        if not sign_in.is_success:
            raise AuthenticationError(
                f"SignAppIn failed with status code {sign_in.status_code}",
                status_code=sign_in.status_code,
                body=sign_in.text,
            )

        self._logger.info("Signed application into Password Safe with OAuth token")
        return token

    def _parse_token(self, body: str) -> AuthToken:
        payload = load_json(body)
        if not isinstance(payload, dict):
            raise AuthenticationError("Failed to deserialize authentication response")
        try:
            token = AuthToken.model_validate({**payload, "issued_at": self._clock()})
        except ValidationError as exc:
            raise AuthenticationError("Failed to deserialize authentication response") from exc
        if not token.access_token or not token.token_type:
            raise AuthenticationError("Authentication response did not include an access token")
        return token

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        client = await self._client_factory()
        started = time.perf_counter()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.RequestError as exc:
            raise AuthenticationError(
                f"HTTP error occurred while calling {method} {url}: {exc}"
            ) from exc
        self._logger.debug(
            "Authentication request completed",
            extra={
                "auth_request": {
                    "method": method,
                    "url": url,
                    "status_code": response.status_code,
                    "elapsed_ms": round((time.perf_counter() - started) * 1000, 1),
                }
            },
        )
        return response

    def _observe_failure(self, task: asyncio.Task[AuthToken]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.warning("Password Safe authentication failed: %s", exc)


__all__ = [
    "API_KEY_TOKEN_LIFETIME_SECONDS",
    "AuthToken",
    "PS_AUTH_TOKEN_TYPE",
    "SIGN_OUT_ENDPOINT",
    "TokenManager",
    "build_api_key_header",
    "build_authorization_header",
    "utcnow",
]
