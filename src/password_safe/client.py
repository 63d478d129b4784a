"""Async client for the Password Safe public REST API."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from types import TracebackType
from typing import Any, Final
from uuid import UUID

import httpx

from .auth import SIGN_OUT_ENDPOINT, AuthToken, Clock, TokenManager, utcnow
from .cache import TokenCache
from .config import PasswordSafeConfig
from .decoding import (
    as_model_list,
    decode_object,
    decode_object_or_first,
    decode_object_or_list,
    decode_raw_string,
    decode_request_id,
    load_json,
)
from .exceptions import ApiError, InvalidArgumentError
from .schemas import (
    ActiveRequest,
    CredentialTestResult,
    ManagedAccount,
    ManagedPassword,
    ManagedSystem,
    PasswordRequest,
    PasswordRequestResult,
    Secret,
)

DEFAULT_CHECKIN_REASON: Final[str] = "API Check-in"
DEFAULT_ACCESS_TYPE: Final[str] = "View"


class PasswordSafeClient:
    """Authenticates against Password Safe and discloses managed credentials."""

    def __init__(
        self,
        config: PasswordSafeConfig | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        token_cache: TokenCache | None = None,
        logger: logging.Logger | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.config: PasswordSafeConfig = config or PasswordSafeConfig()
        self.config.validate_auth()
        self._logger: logging.Logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self._client: httpx.AsyncClient | None = http_client
        self._owns_client = http_client is None
        self._transport = transport
        self._client_lock: asyncio.Lock = asyncio.Lock()
        self._closed = False
        self._tokens = TokenManager(
            self.config,
            self._get_client,
            cache=token_cache,
            logger=self._logger,
            clock=clock,
        )

    async def __aenter__(self) -> PasswordSafeClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying HTTP client. Safe to call more than once."""

        if self._closed:
            return
        self._closed = True
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    @property
    def token(self) -> AuthToken | None:
        """The session token currently held, if any."""

        return self._tokens.token

    # -- authentication -------------------------------------------------

    async def authenticate(self) -> AuthToken:
        """Return a valid session token, authenticating if necessary."""

        return await self._tokens.ensure_token()

    def preload_authentication(self) -> asyncio.Task[None]:
        """Start authenticating in the background so the first call does not wait."""

        async def _preload() -> None:
            try:
                await self._tokens.ensure_token()
            except ApiError as exc:
                self._logger.error("Failed to preload Password Safe authentication: %s", exc)
                return
            self._logger.info("Password Safe authentication preloaded")

        return asyncio.create_task(_preload())

    async def sign_out(self) -> bool:
        """End the server-side session; a no-op when never authenticated."""

        token = self._tokens.token
        if token is None:
            return True

        self._logger.info("Signing out from Password Safe")
        response = await self._send(
            "POST",
            SIGN_OUT_ENDPOINT,
            headers={"Authorization": self._tokens.authorization_header(token)},
            authenticated=False,
        )
        if not response.is_success:
            raise ApiError(
                f"Sign-out failed with status code {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        await self._tokens.invalidate()
        self._logger.info("Signed out from Password Safe")
        return True

    # -- managed accounts and systems ----------------------------------

    async def get_managed_account_by_id(self, managed_account_id: int | str) -> ManagedAccount:
        account_id = _require_id(managed_account_id, "managed_account_id")
        self._logger.info("Retrieving managed account", extra=self._log_context(account_id=account_id))

        response = await self._send("GET", f"ManagedAccounts/{account_id}")
        self._raise_for_status(response, "Failed to retrieve managed account")
        account = decode_object_or_first(response.text, ManagedAccount)
        if account is None or not account.managed_account_id:
            raise ApiError(
                f"Failed to parse managed account response: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )
        return account

    async def get_managed_account_by_name(
        self,
        account_name: str,
        system_name: str | None = None,
        domain_name: str | None = None,
        is_domain_linked: bool = False,
    ) -> ManagedAccount:
        """Resolve an account by name on a managed system or a linked domain."""

        params = _account_lookup_params(account_name, system_name, domain_name, is_domain_linked)
        self._logger.info(
            "Retrieving managed account by name",
            extra=self._log_context(account_name=account_name, domain_linked=is_domain_linked),
        )

        response = await self._send("GET", "ManagedAccounts", params=params)
        self._raise_for_status(response, "Failed to retrieve managed account")

        account = decode_object_or_first(response.text, ManagedAccount)
        if account is not None and account.managed_account_id:
            return account
        if as_model_list(load_json(response.text), ManagedAccount) == []:
            raise ApiError(
                "No managed accounts found matching the criteria",
                status_code=response.status_code,
                body=response.text,
            )
        raise ApiError(
            f"Failed to parse managed account response: {response.text}",
            status_code=response.status_code,
            body=response.text,
        )

    async def get_managed_accounts(
        self,
        system_id: int | str | None = None,
        account_name: str | None = None,
    ) -> list[ManagedAccount]:
        """List accounts, optionally scoped to one system and filtered by name."""

        params: dict[str, str] | None = None
        if system_id is None or not str(system_id).strip():
            endpoint = "ManagedAccounts"
        else:
            endpoint = f"ManagedSystems/{str(system_id).strip()}/ManagedAccounts"
            if account_name:
                params = {"name": account_name}

        self._logger.info("Listing managed accounts", extra=self._log_context(endpoint=endpoint))
        response = await self._send("GET", endpoint, params=params)
        self._raise_for_status(response, "Failed to get managed accounts")
        accounts = decode_object_or_list(response.text, ManagedAccount)
        if accounts is None:
            raise ApiError(
                f"Failed to parse managed accounts response: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )
        return accounts

    async def get_managed_systems(self, system_id: int | str | None = None) -> list[ManagedSystem]:
        """List managed systems, or fetch a single one wrapped in a list."""

        if system_id is None or not str(system_id).strip():
            endpoint = "ManagedSystems"
        else:
            endpoint = f"ManagedSystems/{str(system_id).strip()}"

        self._logger.info("Listing managed systems", extra=self._log_context(endpoint=endpoint))
        response = await self._send("GET", endpoint)
        self._raise_for_status(response, "Failed to get managed systems")
        systems = decode_object_or_list(response.text, ManagedSystem)
        if systems is None:
            raise ApiError(
                f"Failed to parse managed systems response: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )
        return systems

    # -- password requests ----------------------------------------------

    async def get_managed_account_password_by_id(
        self,
        managed_account_id: int | str,
        reason: str | None = None,
        *,
        duration_minutes: int | None = None,
    ) -> ManagedPassword:
        """Open (or reuse) a disclosure request for the account and return its password."""

        account = await self.get_managed_account_by_id(managed_account_id)
        return await self._retrieve_password(account, reason, duration_minutes)

    async def get_managed_account_password_by_name(
        self,
        account_name: str,
        system_name: str | None = None,
        domain_name: str | None = None,
        is_domain_linked: bool = False,
        reason: str | None = None,
        *,
        duration_minutes: int | None = None,
    ) -> ManagedPassword:
        account = await self.get_managed_account_by_name(
            account_name, system_name, domain_name, is_domain_linked
        )
        return await self._retrieve_password(account, reason, duration_minutes)

    async def get_managed_account_password_by_request_id(self, request_id: str) -> ManagedPassword:
        """Fetch the credential for an already open request."""

        request_id = _require_id(request_id, "request_id")
        self._logger.info(
            "Retrieving password by request ID", extra=self._log_context(request_id=request_id)
        )
        return await self._fetch_credential(request_id)

    async def create_password_request(self, request: PasswordRequest) -> PasswordRequestResult:
        """Submit a disclosure request, reusing an open one on ``409 Conflict``."""

        if request is None:
            raise InvalidArgumentError("request must not be None")

        self._logger.info(
            "Creating password request", extra=self._log_context(account_id=request.account_id)
        )
        response = await self._send("POST", "Requests", json=request.to_payload())

        if response.status_code == httpx.codes.CONFLICT:
            self._logger.warning(
                "Password request conflict, looking for an existing request",
                extra=self._log_context(account_id=request.account_id),
            )
            existing = await self._find_active_request(request.account_id)
            if existing is not None:
                return existing
            raise ApiError(
                f"Failed to create password request with status code {response.status_code} "
                "and no existing request was found",
                status_code=response.status_code,
                body=response.text,
            )
        self._raise_for_status(response, "Failed to create password request")

        result = decode_object(response.text, PasswordRequestResult)
        if result is not None:
            return result

        request_id = decode_request_id(response.text)
        if request_id is not None:
            now = self._clock()
            return PasswordRequestResult(
                request_id=request_id,
                status="Approved",
                created_date=now,
                expiration_date=now + timedelta(minutes=request.duration_minutes),
                system_id=request.system_id,
                account_id=request.account_id,
                access_type=request.access_type,
            )

        raise ApiError(
            f"Failed to parse password request response: {response.text}",
            status_code=response.status_code,
            body=response.text,
        )

    async def check_in_password(self, request_id: str, reason: str | None = None) -> bool:
        """Release a disclosure request before it expires."""

        request_id = _require_id(request_id, "request_id")
        self._logger.info("Checking in password", extra=self._log_context(request_id=request_id))

        response = await self._send(
            "PUT",
            f"Requests/{request_id}/Checkin",
            json={"Reason": reason or DEFAULT_CHECKIN_REASON},
        )
        if response.status_code == httpx.codes.NO_CONTENT or response.is_success:
            self._logger.info("Checked in password", extra=self._log_context(request_id=request_id))
            return True
        raise ApiError(
            f"Failed to check in password with status code {response.status_code}. "
            f"Details: {response.text}",
            status_code=response.status_code,
            body=response.text,
        )

    # -- credential test / change ---------------------------------------

    async def test_credential_by_account_id(self, managed_account_id: int | str) -> bool:
        account_id = _require_id(managed_account_id, "managed_account_id")
        self._logger.info("Testing credentials", extra=self._log_context(account_id=account_id))

        response = await self._send("POST", f"ManagedAccounts/{account_id}/Credentials/Test")
        self._raise_for_status(response, "Failed to test credentials")
        result = decode_object(response.text, CredentialTestResult)
        if result is None:
            raise ApiError(
                f"Failed to parse credential test response: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )
        return result.success

    async def test_credential_by_account_name(
        self,
        account_name: str,
        system_name: str | None = None,
        domain_name: str | None = None,
        is_domain_linked: bool = False,
    ) -> bool:
        account = await self.get_managed_account_by_name(
            account_name, system_name, domain_name, is_domain_linked
        )
        return await self.test_credential_by_account_id(account.managed_account_id)

    async def change_credential_by_account_id(
        self, managed_account_id: int | str, queue: bool = False
    ) -> None:
        """Rotate the account's credential now, or queue the change when ``queue`` is set."""

        account_id = _require_id(managed_account_id, "managed_account_id")
        self._logger.info(
            "Changing credentials", extra=self._log_context(account_id=account_id, queue=queue)
        )

        response = await self._send(
            "POST",
            f"ManagedAccounts/{account_id}/Credentials/Change",
            json={"Queue": True} if queue else None,
        )
        self._raise_for_status(response, "Failed to change credentials")

    async def change_credential_by_account_name(
        self,
        account_name: str,
        system_name: str | None = None,
        domain_name: str | None = None,
        is_domain_linked: bool = False,
        queue: bool = False,
    ) -> None:
        account = await self.get_managed_account_by_name(
            account_name, system_name, domain_name, is_domain_linked
        )
        await self.change_credential_by_account_id(account.managed_account_id, queue=queue)

    # -- secrets safe -----------------------------------------------------

    async def get_secret_by_id(self, secret_id: UUID | str) -> Secret | None:
        """Return the secret, or ``None`` when the server reports it missing."""

        secret_key = _require_id(secret_id, "secret_id")
        self._logger.info("Retrieving secret by ID", extra=self._log_context(secret_id=secret_key))

        response = await self._send("GET", f"Secrets-Safe/Secrets/{secret_key}")
        if response.status_code == httpx.codes.NOT_FOUND:
            return None
        self._raise_for_status(response, "Failed to retrieve secret by ID")
        secret = decode_object(response.text, Secret)
        if secret is None:
            raise ApiError(
                f"Failed to parse secret response: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )
        return secret

    async def get_secret_by_name(self, title: str) -> Secret | None:
        """Return the first secret whose title matches, if any."""

        if not title or not title.strip():
            raise InvalidArgumentError("title cannot be empty")
        self._logger.info("Retrieving secret by title", extra=self._log_context(title=title))

        response = await self._send("GET", "Secrets-Safe/Secrets", params={"Title": title})
        self._raise_for_status(response, "Failed to retrieve secret by name")
        secrets = decode_object_or_list(response.text, Secret)
        if secrets is None:
            raise ApiError(
                f"Failed to parse secrets response: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )
        return secrets[0] if secrets else None

    # -- internals --------------------------------------------------------

    async def _retrieve_password(
        self,
        account: ManagedAccount,
        reason: str | None,
        duration_minutes: int | None,
    ) -> ManagedPassword:
        request = PasswordRequest(
            system_id=account.managed_system_id,
            account_id=account.managed_account_id,
            duration_minutes=duration_minutes or self.config.default_password_duration,
            reason=reason,
            access_type=DEFAULT_ACCESS_TYPE,
        )
        result = await self.create_password_request(request)
        if not result.request_id:
            raise ApiError("Password request response did not include a request ID")

        return await self._fetch_credential(
            result.request_id,
            account_id=account.managed_account_id,
            system_id=account.managed_system_id,
            expiration_date=result.expiration_date,
        )

    async def _fetch_credential(
        self,
        request_id: str,
        *,
        account_id: int | None = None,
        system_id: int | None = None,
        expiration_date: datetime | None = None,
    ) -> ManagedPassword:
        response = await self._send("GET", f"Credentials/{request_id}")
        self._raise_for_status(response, f"Failed to get password for request {request_id}")

        stamp: dict[str, Any] = {"request_id": request_id}
        if account_id is not None:
            stamp["account_id"] = account_id
        if system_id is not None:
            stamp["system_id"] = system_id
        if expiration_date is not None:
            stamp["expiration_date"] = expiration_date

        password = decode_object(response.text, ManagedPassword)
        if password is not None:
            return password.model_copy(update=stamp)

        raw = decode_raw_string(response.text)
        if raw is not None:
            return ManagedPassword(password=raw, **stamp)

        raise ApiError(
            f"Failed to parse password response: {response.text}",
            status_code=response.status_code,
            body=response.text,
        )

    async def _find_active_request(self, account_id: int) -> PasswordRequestResult | None:
        target = str(account_id)
        response = await self._send(
            "GET", "Requests", params={"status": "active", "queue": "req"}
        )
        if not response.is_success:
            self._logger.warning(
                "Failed to list active requests",
                extra=self._log_context(status_code=response.status_code),
            )
            return None

        requests = as_model_list(load_json(response.text), ActiveRequest, skip_invalid=True)
        if requests is None:
            self._logger.warning("Active request listing could not be parsed")
            return None

        for candidate in requests:
            if candidate.account_id != target or not candidate.request_id:
                continue
            now = self._clock()
            self._logger.info(
                "Reusing existing password request",
                extra=self._log_context(request_id=candidate.request_id, account_id=account_id),
            )
            return PasswordRequestResult(
                request_id=candidate.request_id,
                status=candidate.status,
                system_id=candidate.system_id or 0,
                account_id=account_id,
                created_date=candidate.approved_date or now,
                expiration_date=candidate.expires_date
                or now + timedelta(minutes=self.config.default_password_duration),
            )

        self._logger.info(
            "No existing request found", extra=self._log_context(account_id=account_id)
        )
        return None

    async def _send(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, str] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
        authenticated: bool = True,
    ) -> httpx.Response:
        request_headers = dict(headers or {})
        if authenticated:
            token = await self._tokens.ensure_token()
            request_headers["Authorization"] = self._tokens.authorization_header(token)

        client = await self._get_client()
        try:
            return await client.request(
                method, url, params=params, json=json, headers=request_headers
            )
        except httpx.RequestError as exc:
            raise ApiError(f"HTTP error occurred while calling {method} {url}: {exc}") from exc

    async def _get_client(self) -> httpx.AsyncClient:
        if self._closed:
            raise ApiError("PasswordSafeClient has been closed")
        if self._client is None:
            async with self._client_lock:
                if self._client is None:
                    self._client = httpx.AsyncClient(
                        base_url=self.config.normalized_base_url,
                        timeout=self.config.timeout_seconds,
                        verify=self.config.verify_ssl,
                        headers={"Accept": "application/json"},
                        transport=self._transport,
                    )
        return self._client

    def _raise_for_status(self, response: httpx.Response, message: str) -> None:
        if response.is_success:
            return
        raise ApiError(
            f"{message} with status code {response.status_code}",
            status_code=response.status_code,
            body=response.text,
        )

    def _log_context(self, **fields: Any) -> dict[str, dict[str, Any]]:
        return {"password_safe": fields}


def _require_id(value: int | str | UUID | None, name: str) -> str:
    text = "" if value is None else str(value).strip()
    if not text:
        raise InvalidArgumentError(f"{name} cannot be empty")
    return text


def _account_lookup_params(
    account_name: str,
    system_name: str | None,
    domain_name: str | None,
    is_domain_linked: bool,
) -> dict[str, str]:
    if not account_name or not account_name.strip():
        raise InvalidArgumentError("account_name cannot be empty")

    if is_domain_linked:
        if not domain_name or not domain_name.strip():
            raise InvalidArgumentError("domain_name is required when is_domain_linked is true")
        return {"accountname": f"{domain_name}\\{account_name}", "type": "domainlinked"}

    if not system_name or not system_name.strip():
        raise InvalidArgumentError("system_name is required when is_domain_linked is false")
    return {"systemName": system_name, "accountName": account_name}


__all__ = ["DEFAULT_CHECKIN_REASON", "PasswordSafeClient"]
