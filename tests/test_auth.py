"""Tests for the session token lifecycle: both schemes, expiry and single-flight refresh."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from password_safe import (
    API_KEY_TOKEN_LIFETIME_SECONDS,
    AuthenticationError,
    AuthToken,
    InMemoryTokenCache,
    PasswordSafeClient,
    PS_AUTH_TOKEN_TYPE,
)

from .conftest import FakePasswordSafe

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class TestTokenExpiry:
    @pytest.mark.parametrize(
        ("elapsed", "buffer", "expected"),
        [
            (0, 0, False),
            (3599, 0, False),
            (3600, 0, True),
            (3299, 300, False),
            (3300, 300, True),
            (0, 7200, True),
        ],
    )
    def test_expired_iff_now_reaches_expiry_minus_buffer(self, elapsed, buffer, expected):
        token = AuthToken(access_token="t", token_type="Bearer", expires_in=3600, issued_at=T0)
        now = T0 + timedelta(seconds=elapsed)
        assert token.is_expired(timedelta(seconds=buffer), now=now) is expected

    def test_access_token_is_hidden_from_repr(self):
        token = AuthToken(access_token="very-secret", token_type="Bearer", expires_in=60)
        assert "very-secret" not in repr(token)


class TestApiKeyAuthentication:
    @pytest.mark.asyncio
    async def test_success_synthesizes_a_one_hour_ps_auth_token(self, client, server, clock):
        server.add("GET", "Auth", httpx.Response(200, text="not even json"))

        token = await client.authenticate()

        assert token.token_type == PS_AUTH_TOKEN_TYPE
        assert token.expires_in == API_KEY_TOKEN_LIFETIME_SECONDS == 3600
        assert token.issued_at == clock.now
        [request] = server.calls("GET", "Auth")
        assert request.headers["Authorization"] == "PS-Auth key=k3y; runas=svc-reader; pwd=[s3cret]"

    @pytest.mark.asyncio
    async def test_header_omits_password_when_not_configured(self, api_key_config, server):
        config = api_key_config.model_copy(update={"run_as_password": None})
        async with PasswordSafeClient(config, transport=httpx.MockTransport(server)) as client:
            await client.authenticate()

        [request] = server.calls("GET", "Auth")
        assert request.headers["Authorization"] == "PS-Auth key=k3y; runas=svc-reader"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403, 500])
    async def test_failure_raises_with_status_code(self, client, server, status):
        server.add("GET", "Auth", httpx.Response(status))

        with pytest.raises(AuthenticationError) as excinfo:
            await client.authenticate()

        assert excinfo.value.status_code == status
        assert client.token is None

    @pytest.mark.asyncio
    async def test_valid_token_is_reused(self, client, server, clock):
        first = await client.authenticate()
        clock.advance(minutes=10)
        second = await client.authenticate()

        assert first is second
        assert len(server.calls("GET", "Auth")) == 1

    @pytest.mark.asyncio
    async def test_token_inside_buffer_is_refreshed(self, client, server, clock):
        await client.authenticate()
        clock.advance(minutes=56)
        refreshed = await client.authenticate()

        assert refreshed.issued_at == clock.now
        assert len(server.calls("GET", "Auth")) == 2

    @pytest.mark.asyncio
    async def test_expired_token_without_auto_refresh_is_an_error(
        self, api_key_config, server, clock
    ):
        config = api_key_config.model_copy(update={"auto_refresh_token": False})
        async with PasswordSafeClient(
            config, transport=httpx.MockTransport(server), clock=clock
        ) as client:
            await client.authenticate()
            clock.advance(hours=2)
            with pytest.raises(AuthenticationError):
                await client.authenticate()

        assert len(server.calls("GET", "Auth")) == 1


class TestOAuthAuthentication:
    @pytest.fixture
    def oauth_server(self) -> FakePasswordSafe:
        fake = FakePasswordSafe()
        fake.add(
            "POST",
            "Auth/Connect/Token",
            httpx.Response(
                200, json={"access_token": "abc", "token_type": "Bearer", "expires_in": 1800}
            ),
        )
        fake.add("POST", "Auth/SignAppIn", httpx.Response(200, json={"UserId": 7}))
        return fake

    @pytest.mark.asyncio
    async def test_token_grant_then_sign_in(self, oauth_config, oauth_server, clock):
        async with PasswordSafeClient(
            oauth_config, transport=httpx.MockTransport(oauth_server), clock=clock
        ) as client:
            token = await client.authenticate()

        assert token.access_token == "abc"
        assert token.token_type == "Bearer"
        assert token.expires_in == 1800
        assert token.issued_at == clock.now

        [grant] = oauth_server.calls("POST", "Auth/Connect/Token")
        assert grant.headers["Content-Type"] == "application/x-www-form-urlencoded"
        form = parse_qs(grant.content.decode())
        assert form == {
            "grant_type": ["client_credentials"],
            "client_id": ["client-id"],
            "client_secret": ["client-secret"],
        }
        [sign_in] = oauth_server.calls("POST", "Auth/SignAppIn")
        assert sign_in.headers["Authorization"] == "Bearer abc"

    @pytest.mark.asyncio
    async def test_failed_sign_in_discards_the_token(self, oauth_config, oauth_server):
        oauth_server.add(
            "POST",
            "Auth/SignAppIn",
            [httpx.Response(401), httpx.Response(200, json={})],
        )
        async with PasswordSafeClient(
            oauth_config, transport=httpx.MockTransport(oauth_server)
        ) as client:
            with pytest.raises(AuthenticationError) as excinfo:
                await client.authenticate()
            assert excinfo.value.status_code == 401
            assert client.token is None

            token = await client.authenticate()

        assert token.access_token == "abc"
        assert len(oauth_server.calls("POST", "Auth/Connect/Token")) == 2

    @pytest.mark.asyncio
    async def test_token_endpoint_failure(self, oauth_config, oauth_server):
        oauth_server.add("POST", "Auth/Connect/Token", httpx.Response(400, json={"error": "bad"}))
        async with PasswordSafeClient(
            oauth_config, transport=httpx.MockTransport(oauth_server)
        ) as client:
            with pytest.raises(AuthenticationError) as excinfo:
                await client.authenticate()

        assert excinfo.value.status_code == 400
        assert oauth_server.calls("POST", "Auth/SignAppIn") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", ["<html>oops</html>", "[]", '{"token_type": "Bearer"}'])
    async def test_undecodable_token_response(self, oauth_config, oauth_server, body):
        oauth_server.add("POST", "Auth/Connect/Token", httpx.Response(200, text=body))
        async with PasswordSafeClient(
            oauth_config, transport=httpx.MockTransport(oauth_server)
        ) as client:
            with pytest.raises(AuthenticationError):
                await client.authenticate()

    @pytest.mark.asyncio
    async def test_bearer_header_is_applied_to_business_calls(self, oauth_config, oauth_server):
        oauth_server.add(
            "GET", "ManagedSystems", httpx.Response(200, json=[{"ManagedSystemID": 3}])
        )
        async with PasswordSafeClient(
            oauth_config, transport=httpx.MockTransport(oauth_server)
        ) as client:
            await client.get_managed_systems()

        [request] = oauth_server.calls("GET", "ManagedSystems")
        assert request.headers["Authorization"] == "Bearer abc"


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_authentication(self, api_key_config):
        fake = FakePasswordSafe()

        async def slow_auth(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(0.05)
            return httpx.Response(200, json={})

        fake.add("GET", "Auth", slow_auth)
        async with PasswordSafeClient(
            api_key_config, transport=httpx.MockTransport(fake)
        ) as client:
            tokens = await asyncio.gather(*(client.authenticate() for _ in range(10)))

        assert len(fake.calls("GET", "Auth")) == 1
        assert all(token is tokens[0] for token in tokens)

    @pytest.mark.asyncio
    async def test_concurrent_failure_is_seen_by_every_caller(self, api_key_config):
        fake = FakePasswordSafe()

        async def slow_reject(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(0.02)
            return httpx.Response(401)

        fake.add("GET", "Auth", slow_reject)
        async with PasswordSafeClient(
            api_key_config, transport=httpx.MockTransport(fake)
        ) as client:
            results = await asyncio.gather(
                *(client.authenticate() for _ in range(5)), return_exceptions=True
            )

        assert all(isinstance(result, AuthenticationError) for result in results)
        assert len(fake.calls("GET", "Auth")) == 1

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_abort_shared_authentication(self, api_key_config):
        fake = FakePasswordSafe()
        release = asyncio.Event()

        async def gated_auth(request: httpx.Request) -> httpx.Response:
            await release.wait()
            return httpx.Response(200, json={})

        fake.add("GET", "Auth", gated_auth)
        async with PasswordSafeClient(
            api_key_config, transport=httpx.MockTransport(fake)
        ) as client:
            first = asyncio.create_task(client.authenticate())
            second = asyncio.create_task(client.authenticate())
            await asyncio.sleep(0.01)
            first.cancel()
            release.set()

            token = await second
            with pytest.raises(asyncio.CancelledError):
                await first

        assert token.token_type == PS_AUTH_TOKEN_TYPE
        assert len(fake.calls("GET", "Auth")) == 1


class TestSharedCache:
    @pytest.mark.asyncio
    async def test_second_client_reuses_cached_token(self, api_key_config, server):
        cache = InMemoryTokenCache()
        transport = httpx.MockTransport(server)

        async with PasswordSafeClient(api_key_config, transport=transport, token_cache=cache) as a:
            first = await a.authenticate()
        async with PasswordSafeClient(api_key_config, transport=transport, token_cache=cache) as b:
            second = await b.authenticate()

        assert second == first
        assert len(server.calls("GET", "Auth")) == 1

    @pytest.mark.asyncio
    async def test_different_api_key_does_not_reuse_cached_session(self, api_key_config):
        fake = FakePasswordSafe()

        def check_key(request: httpx.Request) -> httpx.Response:
            if request.headers["Authorization"].startswith("PS-Auth key=k3y;"):
                return httpx.Response(200, json={})
            return httpx.Response(401)

        fake.add("GET", "Auth", check_key)
        cache = InMemoryTokenCache()
        transport = httpx.MockTransport(fake)
        wrong_key = api_key_config.model_copy(update={"api_key": "WRONG"})

        async with PasswordSafeClient(api_key_config, transport=transport, token_cache=cache) as a:
            await a.authenticate()
        async with PasswordSafeClient(wrong_key, transport=transport, token_cache=cache) as b:
            with pytest.raises(AuthenticationError) as excinfo:
                await b.authenticate()

        assert excinfo.value.status_code == 401
        assert len(fake.calls("GET", "Auth")) == 2

    @pytest.mark.asyncio
    async def test_expired_cached_token_is_not_used(self, api_key_config, server, clock):
        cache = InMemoryTokenCache()
        transport = httpx.MockTransport(server)

        async with PasswordSafeClient(
            api_key_config, transport=transport, token_cache=cache, clock=clock
        ) as a:
            await a.authenticate()
        clock.advance(hours=1)
        async with PasswordSafeClient(
            api_key_config, transport=transport, token_cache=cache, clock=clock
        ) as b:
            token = await b.authenticate()

        assert token.issued_at == clock.now
        assert len(server.calls("GET", "Auth")) == 2

    @pytest.mark.asyncio
    async def test_preload_authenticates_in_background(self, client, server):
        task = client.preload_authentication()
        await task

        assert client.token is not None
        assert len(server.calls("GET", "Auth")) == 1

    @pytest.mark.asyncio
    async def test_preload_failure_is_logged_not_raised(self, client, server, caplog):
        server.add("GET", "Auth", httpx.Response(401))

        await client.preload_authentication()

        assert client.token is None
        assert "Failed to preload" in caplog.text

    @pytest.mark.asyncio
    async def test_preload_on_closed_client_is_logged_not_raised(
        self, api_key_config, server, caplog
    ):
        client = PasswordSafeClient(api_key_config, transport=httpx.MockTransport(server))
        await client.close()

        await client.preload_authentication()

        assert client.token is None
        assert "Failed to preload" in caplog.text
        assert server.requests == []
