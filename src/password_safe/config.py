"""Configuration for the Password Safe client."""

from __future__ import annotations

from importlib import import_module
from typing import Any, Callable, TypeAlias, cast

from .exceptions import PasswordSafeConfigError


class _BaseSettingsProtocol:
    model_config: dict[str, Any]


FieldCallable: TypeAlias = Callable[..., Any]
SettingsConfigDict: TypeAlias = dict[str, Any]


try:
    Field = cast(FieldCallable, getattr(import_module("pydantic"), "Field"))
except ModuleNotFoundError as exc:  # pragma: no cover - dependency declared in pyproject
    raise RuntimeError("pydantic must be installed to use PasswordSafeConfig") from exc

try:
    _settings_module = import_module("pydantic_settings")
except ModuleNotFoundError as exc:  # pragma: no cover - dependency declared in pyproject
    raise RuntimeError("pydantic-settings must be installed to use PasswordSafeConfig") from exc

BaseSettings = cast(type[_BaseSettingsProtocol], getattr(_settings_module, "BaseSettings"))


class PasswordSafeConfig(BaseSettings):
    """Settings used by :class:`password_safe.client.PasswordSafeClient`."""

    base_url: str | None = Field(
        default=None,
        description="Base URL of the Password Safe public API, e.g. https://host/BeyondTrust/api/public/v3/",
    )
    api_key: str | None = Field(default=None, description="API registration key")
    run_as_username: str | None = Field(
        default=None, description="User the API key acts on behalf of"
    )
    run_as_password: str | None = Field(
        default=None, description="Optional password of the run-as user"
    )
    use_oauth: bool = Field(
        default=False,
        description="Authenticate with the OAuth client-credentials grant instead of an API key",
    )
    oauth_client_id: str | None = Field(default=None, description="OAuth client identifier")
    oauth_client_secret: str | None = Field(default=None, description="OAuth client secret")
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="HTTP timeout (seconds) for Password Safe requests",
    )
    default_password_duration: int = Field(
        default=60,
        ge=1,
        description="Duration (minutes) requested when opening a password request",
    )
    token_buffer_minutes: int = Field(
        default=5,
        ge=0,
        description="Refresh the session this many minutes before it expires",
    )
    auto_refresh_token: bool = Field(
        default=True,
        description="Transparently re-authenticate when the session token expires",
    )
    verify_ssl: bool = Field(
        default=True,
        description="Whether to verify TLS certificates when calling Password Safe",
    )
    token_cache_redis_url: str | None = Field(
        default=None,
        description="Share session tokens between processes through this Redis instance",
    )

    model_config: SettingsConfigDict = {
        "env_prefix": "PASSWORD_SAFE_",
        "env_file": ".env",
        "extra": "ignore",
    }

    def validate_auth(self) -> None:
        """Ensure exactly one authentication scheme is fully configured."""

        if not _present(self.base_url):
            raise PasswordSafeConfigError("base_url is required")

        if self.use_oauth:
            if not _present(self.oauth_client_id):
                raise PasswordSafeConfigError("oauth_client_id is required when use_oauth is true")
            if not _present(self.oauth_client_secret):
                raise PasswordSafeConfigError(
                    "oauth_client_secret is required when use_oauth is true"
                )
            return

        if not _present(self.run_as_username):
            raise PasswordSafeConfigError("run_as_username is required when use_oauth is false")
        if not _present(self.api_key):
            raise PasswordSafeConfigError("api_key is required when use_oauth is false")

    @property
    def normalized_base_url(self) -> str:
        """Base URL with a trailing slash so relative endpoints resolve beneath it."""

        base = (self.base_url or "").strip()
        return base if base.endswith("/") else f"{base}/"


def _present(value: str | None) -> bool:
    return bool(value and value.strip())


__all__ = ["PasswordSafeConfig"]
