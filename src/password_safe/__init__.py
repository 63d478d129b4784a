"""Async client for the Password Safe credential vaulting API."""

from .auth import API_KEY_TOKEN_LIFETIME_SECONDS, PS_AUTH_TOKEN_TYPE, AuthToken, TokenManager
from .cache import InMemoryTokenCache, RedisTokenCache, TokenCache
from .client import DEFAULT_CHECKIN_REASON, PasswordSafeClient
from .config import PasswordSafeConfig
from .exceptions import (
    ApiError,
    AuthenticationError,
    InvalidArgumentError,
    PasswordSafeConfigError,
    PasswordSafeError,
)
from .schemas import (
    ActiveRequest,
    CredentialTestResult,
    ManagedAccount,
    ManagedPassword,
    ManagedSystem,
    PasswordRequest,
    PasswordRequestResult,
    Secret,
    SecretOwner,
    SecretUrl,
)

__all__ = [
    "API_KEY_TOKEN_LIFETIME_SECONDS",
    "ActiveRequest",
    "ApiError",
    "AuthToken",
    "AuthenticationError",
    "CredentialTestResult",
    "DEFAULT_CHECKIN_REASON",
    "InMemoryTokenCache",
    "InvalidArgumentError",
    "ManagedAccount",
    "ManagedPassword",
    "ManagedSystem",
    "PS_AUTH_TOKEN_TYPE",
    "PasswordRequest",
    "PasswordRequestResult",
    "PasswordSafeClient",
    "PasswordSafeConfig",
    "PasswordSafeConfigError",
    "PasswordSafeError",
    "RedisTokenCache",
    "Secret",
    "SecretOwner",
    "SecretUrl",
    "TokenCache",
    "TokenManager",
]
