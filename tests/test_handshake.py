"""Tests for the two-phase OAuth handshake and its routes."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

import base64

from collections.abc import Iterator

import pytest

from fastapi.testclient import TestClient

from authgate.adapters.memory import MemoryAdapter
from authgate.exceptions import AdapterError, SessionNotFoundError, UserNotFoundError
from authgate.handshake import STATE_CHARSET, STATE_LENGTH, generate_state
from authgate.models import CsrfToken, Session
from tests.helpers import FakeClock, build_app, login, make_gate, make_github, query_of


class FailingSessionAdapter(MemoryAdapter):
    """Memory adapter whose session creation always fails."""

    async def create_session(
        self,
        user_id: str,
        expires_at: float,
        csrf_token: CsrfToken | None = None,
    ) -> Session:
        msg = "backend down"
        raise AdapterError(msg, operation="create_session")


@pytest.fixture
def adapter() -> MemoryAdapter:
    return MemoryAdapter()


@pytest.fixture
def client(adapter: MemoryAdapter, clock: FakeClock) -> Iterator[TestClient]:
    app = build_app(make_gate(adapter, clock))
    with TestClient(app, follow_redirects=False) as test_client:
        yield test_client


class TestGenerateState:
    """Handshake state values."""

    def test_decodes_to_charset(self) -> None:
        raw = base64.urlsafe_b64decode(generate_state()).decode("ascii")
        assert len(raw) == STATE_LENGTH
        assert set(raw) <= set(STATE_CHARSET)

    def test_url_safe(self) -> None:
        state = generate_state()
        assert set(state.rstrip("=")) <= set(STATE_CHARSET + "_")

    def test_unique(self) -> None:
        assert len({generate_state() for _ in range(50)}) == 50


class TestBeginAuth:
    """The login routes."""

    def test_redirects_to_github(self, client: TestClient) -> None:
        response = client.get("/login/github")
        assert response.status_code == 307
        location = response.headers["location"]
        assert location.startswith("https://github.com/login/oauth/authorize?")
        query = query_of(location)
        assert query["client_id"] == "gh-client-id"
        assert query["code_challenge_method"] == "S256"
        assert len(base64.urlsafe_b64decode(query["state"])) == STATE_LENGTH

    def test_provider_query_param(self, client: TestClient) -> None:
        response = client.get("/login", params={"provider": "github"})
        assert response.status_code == 307
        assert response.headers["location"].startswith("https://github.com/")

    def test_client_state_is_reused(self, client: TestClient, adapter: MemoryAdapter) -> None:
        response = client.get("/login/github", params={"state": "client-chosen-state"})
        assert query_of(response.headers["location"])["state"] == "client-chosen-state"

    def test_missing_provider(self, client: TestClient) -> None:
        response = client.get("/login")
        assert response.status_code == 400
        assert response.json()["error"] == "missing_provider_name"

    def test_unknown_provider(self, client: TestClient) -> None:
        response = client.get("/login/gitlab")
        assert response.status_code == 400
        assert response.json()["error"] == "provider_not_found"

    def test_login_route_needs_no_session(self, client: TestClient) -> None:
        """Handshake routes are never redirected to login."""
        assert client.get("/login/github").status_code == 307


class TestCompleteAuth:
    """The callback route."""

    def test_sets_session_cookie(self, client: TestClient, adapter: MemoryAdapter, clock: FakeClock) -> None:
        response = login(client)
        assert response.status_code == 302
        assert response.headers["location"] == "/"

        set_cookie = response.headers["set-cookie"].lower()
        assert set_cookie.startswith("authgate_session=")
        assert "httponly" in set_cookie
        assert "samesite=lax" in set_cookie
        assert "path=/" in set_cookie

        token = response.cookies["authgate_session"]
        assert token

    @pytest.mark.asyncio
    async def test_session_stored(self, adapter: MemoryAdapter, clock: FakeClock) -> None:
        app = build_app(make_gate(adapter, clock))
        with TestClient(app, follow_redirects=False) as client:
            token = login(client).cookies["authgate_session"]
        session = await adapter.get_session(token)
        user = await adapter.get_user_by_email("octocat@example.com")
        assert session.user_id == user.id
        assert session.expires_at == clock.now + 7 * 3600
        assert session.csrf_token.token
        assert session.csrf_token.expires_at == clock.now + 30 * 60

    def test_replayed_callback(self, client: TestClient) -> None:
        begin = client.get("/login/github")
        state = query_of(begin.headers["location"])["state"]
        assert client.get("/auth/github/callback", params={"code": "abc", "state": state}).status_code == 302
        replay = client.get("/auth/github/callback", params={"code": "abc", "state": state})
        assert replay.status_code == 400
        assert replay.json()["error"] == "invalid_state"
        assert "set-cookie" not in replay.headers

    @pytest.mark.asyncio
    async def test_missing_code_creates_nothing(self, adapter: MemoryAdapter, clock: FakeClock) -> None:
        app = build_app(make_gate(adapter, clock))
        with TestClient(app, follow_redirects=False) as client:
            begin = client.get("/login/github")
            state = query_of(begin.headers["location"])["state"]
            response = client.get("/auth/github/callback", params={"state": state})
        assert response.status_code == 400
        assert response.json()["error"] == "missing_code"
        assert "set-cookie" not in response.headers
        with pytest.raises(UserNotFoundError):
            await adapter.get_user_by_email("octocat@example.com")

    def test_authorization_denied(self, client: TestClient) -> None:
        response = client.get(
            "/auth/github/callback",
            params={"error": "access_denied", "error_description": "The user denied access"},
        )
        assert response.status_code == 400
        assert response.json() == {
            "error": "authorization_denied",
            "error_description": "The user denied access",
        }

    def test_token_exchange_failure(self, clock: FakeClock) -> None:
        gate = make_gate(clock=clock, providers=[make_github(token_status=500)])
        with TestClient(build_app(gate), follow_redirects=False) as client:
            response = login(client)
        assert response.status_code == 502
        assert response.json()["error"] == "token_exchange_failed"

    def test_failed_session_creation_sets_no_cookie(self, clock: FakeClock) -> None:
        gate = make_gate(FailingSessionAdapter(), clock)
        with TestClient(build_app(gate), follow_redirects=False) as client:
            response = login(client)
        assert response.status_code == 500
        assert response.json()["error"] == "adapter_error"
        assert "set-cookie" not in response.headers

    def test_unknown_provider_callback(self, client: TestClient) -> None:
        response = client.get("/auth/gitlab/callback", params={"code": "abc", "state": "x"})
        assert response.status_code == 400
        assert response.json()["error"] == "provider_not_found"


class TestHandshakeBinding:
    """A handshake completes only in the browser that began it."""

    def test_begin_sets_handshake_cookie(self, client: TestClient) -> None:
        response = client.get("/login/github")
        set_cookie = response.headers["set-cookie"].lower()
        assert set_cookie.startswith("authgate_session_handshake=")
        assert "httponly" in set_cookie
        assert "samesite=lax" in set_cookie
        assert "max-age=600" in set_cookie
        state = query_of(response.headers["location"])["state"]
        assert state not in response.headers["set-cookie"]

    def test_callback_from_other_browser(self, adapter: MemoryAdapter, clock: FakeClock) -> None:
        """A state begun by one client cannot be redeemed by another."""
        app = build_app(make_gate(adapter, clock))
        with TestClient(app, follow_redirects=False) as victim, TestClient(
            app, follow_redirects=False
        ) as attacker:
            state = query_of(victim.get("/login/github").headers["location"])["state"]

            forged = attacker.get("/auth/github/callback", params={"code": "abc", "state": state})
            assert forged.status_code == 400
            assert forged.json()["error"] == "invalid_state"
            assert "authgate_session=" not in forged.headers.get("set-cookie", "")
            assert "authgate_session" not in attacker.cookies

            # The state survives for the browser that began it.
            response = victim.get("/auth/github/callback", params={"code": "abc", "state": state})
            assert response.status_code == 302
            assert response.cookies["authgate_session"]

    def test_client_state_bound_to_browser(self, adapter: MemoryAdapter, clock: FakeClock) -> None:
        app = build_app(make_gate(adapter, clock))
        with TestClient(app, follow_redirects=False) as first, TestClient(app, follow_redirects=False) as second:
            first.get("/login/github", params={"state": "client-chosen-state"})
            response = second.get(
                "/auth/github/callback", params={"code": "abc", "state": "client-chosen-state"}
            )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_state"

    def test_cookie_for_other_state(self, client: TestClient) -> None:
        client.get("/login/github")
        with TestClient(client.app, follow_redirects=False) as other_client:
            other = query_of(other_client.get("/login/github").headers["location"])["state"]
        response = client.get("/auth/github/callback", params={"code": "abc", "state": other})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_state"

    def test_success_clears_handshake_cookie(self, client: TestClient) -> None:
        response = login(client)
        cookies = [c.lower() for c in response.headers.get_list("set-cookie")]
        cleared = [c for c in cookies if c.startswith("authgate_session_handshake=")]
        assert len(cleared) == 1
        assert "max-age=0" in cleared[0]
        assert "authgate_session_handshake" not in client.cookies

    def test_failure_keeps_handshake_cookie(self, clock: FakeClock) -> None:
        gate = make_gate(clock=clock, providers=[make_github(token_status=500)])
        with TestClient(build_app(gate), follow_redirects=False) as client:
            response = login(client)
            assert response.status_code == 502
            assert "set-cookie" not in response.headers
            assert "authgate_session_handshake" in client.cookies


class TestLogout:
    """The logout route."""

    @pytest.mark.asyncio
    async def test_deletes_session_and_cookie(self, adapter: MemoryAdapter, clock: FakeClock) -> None:
        app = build_app(make_gate(adapter, clock))
        with TestClient(app, follow_redirects=False) as client:
            token = login(client).cookies["authgate_session"]
            response = client.get("/logout")
            assert response.status_code == 302
            assert response.headers["location"] == "/login"
            assert "max-age=0" in response.headers["set-cookie"].lower()
            assert client.get("/me").status_code == 302

        with pytest.raises(SessionNotFoundError):
            await adapter.get_session(token)

    def test_without_session(self, client: TestClient) -> None:
        response = client.get("/logout")
        assert response.status_code == 302
        assert response.headers["location"] == "/login"

    def test_unknown_session(self, client: TestClient) -> None:
        response = client.get("/logout", headers={"Cookie": "authgate_session=stale-token"})
        assert response.status_code == 302


class TestSessionInfo:
    """The session route."""

    def test_describes_session(self, client: TestClient) -> None:
        login(client)
        response = client.get("/session")
        assert response.status_code == 200
        body = response.json()
        assert body["user_id"]
        assert body["csrf_token"]
        assert response.headers["X-Csrf-Token"] == body["csrf_token"]

    def test_reissues_expired_csrf_token(self, client: TestClient, clock: FakeClock) -> None:
        login(client)
        first = client.get("/session").json()
        clock.advance(31 * 60)
        second = client.get("/session").json()
        assert second["csrf_token"] != first["csrf_token"]
        assert second["csrf_expires_at"] == clock.now + 30 * 60

    def test_keeps_valid_csrf_token(self, client: TestClient, clock: FakeClock) -> None:
        login(client)
        first = client.get("/session").json()
        clock.advance(60)
        assert client.get("/session").json()["csrf_token"] == first["csrf_token"]

    def test_requires_session(self, client: TestClient) -> None:
        response = client.get("/session")
        assert response.status_code == 302
        assert response.headers["location"] == "/login"
