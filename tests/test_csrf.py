"""Tests for the CSRF guard and the token extractors."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

from typing import Any

import pytest
import pytest_asyncio

from fastapi import Depends
from fastapi.testclient import TestClient
from starlette.requests import Request
from starlette.responses import JSONResponse

from authgate.adapters.memory import MemoryAdapter
from authgate.config import CsrfSettings
from authgate.csrf import CsrfGuard
from authgate.exceptions import (
    CsrfTokenExpiredError,
    CsrfTokenInvalidError,
    CsrfTokenNotFoundError,
    MissingSessionError,
)
from authgate.extractors import chain, from_cookie, from_form, from_header, from_query
from authgate.models import CsrfToken, SessionContext, User
from authgate.session import SESSION_STATE_KEY
from tests.helpers import FakeClock, build_app, login, make_config, make_gate, make_request


def csrf_request(token: str | None = None, method: str = "POST") -> Request:
    headers = {"X-Csrf-Token": token} if token else {}
    return make_request("/items", method=method, headers=headers)


def form_request(body: bytes, content_type: str = "application/x-www-form-urlencoded") -> Request:
    async def receive() -> dict[str, Any]:
        return {"type": "http.request", "body": body, "more_body": False}

    scope = {
        "type": "http",
        "method": "POST",
        "path": "/items",
        "query_string": b"",
        "headers": [(b"content-type", content_type.encode("latin-1"))],
    }
    return Request(scope, receive)


@pytest.fixture
def adapter() -> MemoryAdapter:
    return MemoryAdapter()


@pytest_asyncio.fixture
async def context(adapter: MemoryAdapter, clock: FakeClock) -> SessionContext:
    user = await adapter.create_user(User(email="alice@example.com"))
    session = await adapter.create_session(
        user.id, clock.now + 3600, CsrfToken(token="current-token", expires_at=clock.now + 60)
    )
    return SessionContext(session=session)


@pytest.mark.asyncio
class TestProtect:
    """CsrfGuard.protect."""

    async def test_ignored_method_needs_no_session(self, adapter: MemoryAdapter, clock: FakeClock) -> None:
        guard = CsrfGuard(adapter, make_config(clock))
        assert await guard.protect(csrf_request(method="GET"), None) is None

    async def test_missing_session(self, adapter: MemoryAdapter, clock: FakeClock) -> None:
        guard = CsrfGuard(adapter, make_config(clock))
        with pytest.raises(MissingSessionError):
            await guard.protect(csrf_request("current-token"), None)

    async def test_missing_token(self, adapter: MemoryAdapter, clock: FakeClock, context: SessionContext) -> None:
        guard = CsrfGuard(adapter, make_config(clock))
        with pytest.raises(CsrfTokenNotFoundError):
            await guard.protect(csrf_request(), context)

    async def test_invalid_token(self, adapter: MemoryAdapter, clock: FakeClock, context: SessionContext) -> None:
        guard = CsrfGuard(adapter, make_config(clock))
        with pytest.raises(CsrfTokenInvalidError):
            await guard.protect(csrf_request("forged-token"), context)

    async def test_expired_token(self, adapter: MemoryAdapter, clock: FakeClock, context: SessionContext) -> None:
        guard = CsrfGuard(adapter, make_config(clock))
        clock.advance(60)
        with pytest.raises(CsrfTokenExpiredError):
            await guard.protect(csrf_request("current-token"), context)

    async def test_expiry_checked_before_match(
        self, adapter: MemoryAdapter, clock: FakeClock, context: SessionContext
    ) -> None:
        guard = CsrfGuard(adapter, make_config(clock))
        clock.advance(120)
        with pytest.raises(CsrfTokenExpiredError):
            await guard.protect(csrf_request("forged-token"), context)

    async def test_valid_token_rotates(self, adapter: MemoryAdapter, clock: FakeClock, context: SessionContext) -> None:
        guard = CsrfGuard(adapter, make_config(clock))
        request = csrf_request("current-token")

        replacement = await guard.protect(request, context)

        assert replacement
        assert replacement != "current-token"
        stored = await adapter.get_session(context.session_id)
        assert stored.csrf_token.token == replacement
        assert stored.csrf_token.expires_at == clock.now + 30 * 60
        assert getattr(request.state, SESSION_STATE_KEY).csrf_token == replacement

    async def test_token_is_single_use(self, adapter: MemoryAdapter, clock: FakeClock, context: SessionContext) -> None:
        guard = CsrfGuard(adapter, make_config(clock))
        request = csrf_request("current-token")
        await guard.protect(request, context)
        rotated = getattr(request.state, SESSION_STATE_KEY)
        with pytest.raises(CsrfTokenInvalidError):
            await guard.protect(csrf_request("current-token"), rotated)

    async def test_custom_generator(self, adapter: MemoryAdapter, clock: FakeClock, context: SessionContext) -> None:
        guard = CsrfGuard(adapter, make_config(clock, token_generator=lambda: "generated"))
        assert await guard.protect(csrf_request("current-token"), context) == "generated"

    async def test_custom_ignored_methods(self, adapter: MemoryAdapter, clock: FakeClock) -> None:
        config = make_config(clock, csrf=CsrfSettings(ignored_methods=["GET"]))
        guard = CsrfGuard(adapter, config)
        assert guard.is_ignored(csrf_request(method="GET"))
        assert not guard.is_ignored(csrf_request(method="HEAD"))

    async def test_skip_predicate(self, adapter: MemoryAdapter, clock: FakeClock) -> None:
        config = make_config(clock, csrf_skip=lambda request: request.url.path == "/items")
        guard = CsrfGuard(adapter, config)
        assert await guard.protect(csrf_request(), None) is None

    async def test_issue(self, adapter: MemoryAdapter, clock: FakeClock, context: SessionContext) -> None:
        guard = CsrfGuard(adapter, make_config(clock))
        issued = await guard.issue(context)
        assert issued.csrf_token != "current-token"
        assert issued.session.expires_at == context.session.expires_at


@pytest.mark.asyncio
class TestExtractors:
    """Token extractors."""

    async def test_cookie(self) -> None:
        request = make_request(headers={"Cookie": "sid=abc; other=1"})
        assert await from_cookie("sid")(request) == "abc"
        assert await from_cookie("missing")(request) is None

    async def test_header(self) -> None:
        request = make_request(headers={"X-Csrf-Token": "abc"})
        assert await from_header("x-csrf-token")(request) == "abc"

    async def test_query(self) -> None:
        request = make_request(query_string="csrf_token=abc")
        assert await from_query("csrf_token")(request) == "abc"

    async def test_form(self) -> None:
        assert await from_form("csrf_token")(form_request(b"csrf_token=abc&title=x")) == "abc"

    async def test_form_ignores_other_content_types(self) -> None:
        request = form_request(b'{"csrf_token": "abc"}', content_type="application/json")
        assert await from_form("csrf_token")(request) is None

    async def test_chain(self) -> None:
        request = make_request(headers={"X-Other": "second"})
        extractor = chain(from_header("X-Csrf-Token"), from_header("X-Other"))
        assert await extractor(request) == "second"
        assert await chain(from_header("X-Nope"))(request) is None


def current_csrf_token(client: TestClient) -> str:
    return client.get("/session").json()["csrf_token"]


class TestCsrfDependency:
    """The guard as a FastAPI dependency behind the middleware."""

    def test_mutating_request_rotates_token(self, clock: FakeClock) -> None:
        with TestClient(build_app(make_gate(clock=clock)), follow_redirects=False) as client:
            login(client)
            token = current_csrf_token(client)
            response = client.post("/items", headers={"X-Csrf-Token": token})
            assert response.status_code == 200
            body = response.json()
            assert body["created"] is True
            assert body["csrf_token"] != token
            assert response.headers["X-Csrf-Token"] == body["csrf_token"]

            replay = client.post("/items", headers={"X-Csrf-Token": token})
            assert replay.status_code == 403
            assert replay.json()["error"] == "csrf_token_invalid"

            follow_up = client.post("/items", headers={"X-Csrf-Token": body["csrf_token"]})
            assert follow_up.status_code == 200

    def test_missing_token(self, clock: FakeClock) -> None:
        with TestClient(build_app(make_gate(clock=clock)), follow_redirects=False) as client:
            login(client)
            response = client.post("/items")
        assert response.status_code == 403
        assert response.json()["error"] == "csrf_token_not_found"

    def test_expired_token_then_reissue(self, clock: FakeClock) -> None:
        with TestClient(build_app(make_gate(clock=clock)), follow_redirects=False) as client:
            login(client)
            token = current_csrf_token(client)
            clock.advance(31 * 60)
            expired = client.post("/items", headers={"X-Csrf-Token": token})
            assert expired.status_code == 403
            assert expired.json()["error"] == "csrf_token_expired"

            fresh = current_csrf_token(client)
            assert client.post("/items", headers={"X-Csrf-Token": fresh}).status_code == 200

    def test_anonymous_post_redirects(self, clock: FakeClock) -> None:
        with TestClient(build_app(make_gate(clock=clock)), follow_redirects=False) as client:
            response = client.post("/items", headers={"X-Csrf-Token": "anything"})
        assert response.status_code == 302

    def test_form_field_token(self, clock: FakeClock) -> None:
        gate = make_gate(clock=clock, csrf_extractor=chain(from_header("X-Csrf-Token"), from_form("csrf_token")))
        with TestClient(build_app(gate), follow_redirects=False) as client:
            login(client)
            token = current_csrf_token(client)
            response = client.post("/items", data={"csrf_token": token})
        assert response.status_code == 200

    def test_rotated_token_on_handler_response(self, clock: FakeClock) -> None:
        """Handlers returning their own Response still hand out the new token."""
        gate = make_gate(clock=clock)
        app = build_app(gate)

        @app.post("/raw")
        async def raw(csrf_token: str | None = Depends(gate.csrf.dependency)) -> JSONResponse:
            return JSONResponse({"saved": True})

        with TestClient(app, follow_redirects=False) as client:
            login(client)
            token = current_csrf_token(client)
            response = client.post("/raw", headers={"X-Csrf-Token": token})
            assert response.status_code == 200
            rotated = response.headers["X-Csrf-Token"]
            assert rotated != token
            assert rotated == current_csrf_token(client)

            follow_up = client.post("/raw", headers={"X-Csrf-Token": rotated})
            assert follow_up.status_code == 200

    def test_rotated_token_header_not_duplicated(self, clock: FakeClock) -> None:
        with TestClient(build_app(make_gate(clock=clock)), follow_redirects=False) as client:
            login(client)
            response = client.post("/items", headers={"X-Csrf-Token": current_csrf_token(client)})
        assert response.headers.get_list("x-csrf-token") == [response.json()["csrf_token"]]

    def test_safe_request_sends_no_token_header(self, clock: FakeClock) -> None:
        with TestClient(build_app(make_gate(clock=clock)), follow_redirects=False) as client:
            login(client)
            assert "x-csrf-token" not in client.get("/me").headers
