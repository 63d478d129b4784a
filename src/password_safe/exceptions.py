"""Custom exceptions raised by the Password Safe client."""

from __future__ import annotations


class PasswordSafeError(Exception):
    """Base error raised for any Password Safe related issue."""


class PasswordSafeConfigError(PasswordSafeError, ValueError):
    """Raised when the client is misconfigured or missing credentials."""


class InvalidArgumentError(PasswordSafeError, ValueError):
    """Raised when a caller passes an unusable argument, before any network call."""


class ApiError(PasswordSafeError):
    """Raised when the Password Safe API returns an unexpected response."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class AuthenticationError(ApiError):
    """Raised when a usable session token cannot be obtained."""


__all__ = [
    "ApiError",
    "AuthenticationError",
    "InvalidArgumentError",
    "PasswordSafeConfigError",
    "PasswordSafeError",
]
