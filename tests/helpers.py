"""Shared test helpers: clocks, configs, requests, and a mocked GitHub."""

from __future__ import annotations

import time

from collections.abc import Callable
from typing import Any
from urllib.parse import parse_qs, urlparse

import httpx

from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient
from starlette.requests import Request

from authgate.adapters.base import Adapter
from authgate.adapters.memory import MemoryAdapter
from authgate.config import CsrfSettings, GateConfig, RouteSettings, SessionSettings
from authgate.gate import AuthGate
from authgate.models import SessionContext
from authgate.providers.base import Provider, ProviderRegistry
from authgate.providers.github import EMAILS_URL, ORGS_URL, TOKEN_URL, USER_URL, GitHubProvider
from authgate.session import session_context


SECRET_KEY = "test-secret-key-for-testing-0123456789"
GITHUB_CALLBACK = "http://testserver/auth/github/callback"

DEFAULT_GITHUB_USER: dict[str, Any] = {
    "id": 42,
    "login": "octocat",
    "name": "The Octocat",
    "email": None,
    "avatar_url": "https://avatars.example.com/u/42",
}
DEFAULT_GITHUB_EMAILS: list[dict[str, Any]] = [
    {"email": "secondary@example.com", "primary": False, "verified": True},
    {"email": "octocat@example.com", "primary": True, "verified": True},
]


class FakeClock:
    """Controllable clock returning epoch seconds."""

    def __init__(self, start: float | None = None) -> None:
        self.now = time.time() if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_config(clock: Callable[[], float] | None = None, **overrides: Any) -> GateConfig:
    """Build a GateConfig with a fixed secret and optional fake clock."""
    return GateConfig(
        session=overrides.pop("session", SessionSettings()),
        csrf=overrides.pop("csrf", CsrfSettings()),
        routes=overrides.pop("routes", RouteSettings()),
        secret_key=SECRET_KEY,
        clock=clock or time.time,
        **overrides,
    )


def make_request(
    path: str = "/",
    method: str = "GET",
    headers: dict[str, str] | None = None,
    query_string: str = "",
) -> Request:
    """Build a bare Starlette request without a body."""
    raw_headers = [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in (headers or {}).items()]
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "query_string": query_string.encode("latin-1"),
        "headers": raw_headers,
        "state": {},
    }
    return Request(scope)


def github_handler(
    *,
    user: dict[str, Any] | None = None,
    emails: list[dict[str, Any]] | None = None,
    orgs: list[dict[str, Any]] | None = None,
    token_status: int = 200,
    token_body: dict[str, Any] | None = None,
    calls: list[httpx.Request] | None = None,
) -> Callable[[httpx.Request], httpx.Response]:
    """Route GitHub API requests to canned responses."""

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        url = str(request.url)
        if request.method == "POST" and url == TOKEN_URL:
            body = token_body if token_body is not None else {
                "access_token": "gho_test_token",
                "token_type": "bearer",
                "scope": "read:user,user:email",
            }
            return httpx.Response(token_status, json=body)
        if url == USER_URL:
            return httpx.Response(200, json=user if user is not None else DEFAULT_GITHUB_USER)
        if url == EMAILS_URL:
            return httpx.Response(200, json=emails if emails is not None else DEFAULT_GITHUB_EMAILS)
        if url == ORGS_URL:
            return httpx.Response(200, json=orgs or [])
        return httpx.Response(404, json={"message": "Not Found"})

    return handler


def make_github(
    allowed_orgs: list[str] | None = None,
    clock: Callable[[], float] | None = None,
    **handler_kwargs: Any,
) -> GitHubProvider:
    """GitHub provider talking to a mocked API."""
    return GitHubProvider(
        client_id="gh-client-id",
        client_secret="gh-client-secret",
        callback_url=GITHUB_CALLBACK,
        allowed_orgs=allowed_orgs,
        secret_key=SECRET_KEY,
        clock=clock or time.time,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(github_handler(**handler_kwargs))),
    )


def query_of(url: str) -> dict[str, str]:
    """The query parameters of *url*, one value each."""
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


def make_gate(
    adapter: Adapter | None = None,
    clock: Callable[[], float] | None = None,
    providers: list[Provider] | None = None,
    **config_overrides: Any,
) -> AuthGate:
    """An AuthGate over *adapter* with a mocked GitHub provider by default."""
    registry = ProviderRegistry(*(providers if providers is not None else [make_github(clock=clock)]))
    config = make_config(clock, **config_overrides)
    return AuthGate(registry, adapter or MemoryAdapter(clock=config.clock), config)


def login(client: TestClient, provider: str = "github", code: str = "abc") -> httpx.Response:
    """Run both handshake legs and return the callback response."""
    begin = client.get(f"/login/{provider}")
    state = query_of(begin.headers["location"])["state"]
    return client.get(f"/auth/{provider}/callback", params={"code": code, "state": state})


def build_app(gate: AuthGate) -> FastAPI:
    """A small application protected by *gate*."""
    app = FastAPI()
    gate.install(app)

    @app.get("/")
    async def home() -> dict[str, str]:
        return {"page": "home"}

    @app.get("/me")
    async def me(context: SessionContext = Depends(session_context)) -> dict[str, Any]:
        return {"user_id": context.user_id, "expires_at": context.session.expires_at}

    @app.post("/items")
    async def create_item(
        csrf_token: str | None = Depends(gate.csrf.dependency),
        context: SessionContext = Depends(session_context),
    ) -> dict[str, Any]:
        return {"created": True, "user_id": context.user_id, "csrf_token": csrf_token}

    return app
