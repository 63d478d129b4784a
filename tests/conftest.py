"""
Shared test fixtures for the Password Safe client test suite.

Provides configuration factories, a frozen clock and an in-memory fake of
the Password Safe API served through ``httpx.MockTransport``.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Union

import httpx
import pytest
import pytest_asyncio

from password_safe import PasswordSafeClient, PasswordSafeConfig

BASE_URL = "https://pws.example.com/BeyondTrust/api/public/v3/"
BASE_PATH = "/BeyondTrust/api/public/v3/"

Handler = Callable[[httpx.Request], Union[httpx.Response, Awaitable[httpx.Response]]]
Route = Union[httpx.Response, Handler, list]


class FrozenClock:
    """Deterministic replacement for ``datetime.now(timezone.utc)``."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakePasswordSafe:
    """Route table keyed by ``(method, relative path)`` that records every request."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], Route] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, route: Route) -> None:
        self.routes[(method.upper(), path)] = route

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.method == method.upper() and _relative(request) == path
        ]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, _relative(request)))
        if route is None:
            return httpx.Response(404, text=f"no route for {request.method} {request.url.path}")
        if isinstance(route, list):
            route = route.pop(0) if len(route) > 1 else route[0]
        if isinstance(route, httpx.Response):
            return httpx.Response(
                route.status_code, content=route.content, headers=route.headers
            )
        result = route(request)
        if isinstance(result, httpx.Response):
            return result
        return await result


def _relative(request: httpx.Request) -> str:
    path = request.url.path
    return path[len(BASE_PATH) :] if path.startswith(BASE_PATH) else path.lstrip("/")


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def api_key_config() -> PasswordSafeConfig:
    return PasswordSafeConfig(
        base_url=BASE_URL,
        api_key="k3y",
        run_as_username="svc-reader",
        run_as_password="s3cret",
        default_password_duration=30,
    )


@pytest.fixture
def oauth_config() -> PasswordSafeConfig:
    return PasswordSafeConfig(
        base_url=BASE_URL,
        use_oauth=True,
        oauth_client_id="client-id",
        oauth_client_secret="client-secret",
    )


@pytest.fixture
def server() -> FakePasswordSafe:
    """Fake API that accepts the API key on ``GET Auth``."""

    fake = FakePasswordSafe()
    fake.add("GET", "Auth", httpx.Response(200, json={"UserId": 1}))
    return fake


@pytest_asyncio.fixture
async def client(api_key_config, server, clock):
    async with PasswordSafeClient(
        api_key_config,
        transport=httpx.MockTransport(server),
        clock=clock,
    ) as instance:
        yield instance
