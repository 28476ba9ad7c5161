"""Sliding sessions for protected routes.

:class:`SessionManager` resolves the session behind a request and slides
its expiry. :class:`ProtectMiddleware` applies it to every route except
the handshake routes: soft failures (no cookie, unknown or expired
session) redirect to the login route, hard failures (adapter I/O) go to
the configured error handler. Handlers receive the resolved
:class:`~authgate.models.SessionContext` through :func:`session_context`.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from typing import TYPE_CHECKING, Any

from starlette.requests import Request
from starlette.responses import RedirectResponse

from .adapters.base import call_with_timeout
from .exceptions import (
    AuthGateException,
    ExpiredSessionError,
    MissingCookieError,
    MissingSessionError,
    is_soft_failure,
)
from .http import SessionCookie
from .models import SessionContext


if TYPE_CHECKING:
    from .adapters.base import Adapter
    from .config import GateConfig


logger = logging.getLogger("authgate.session")

# Attribute of ``request.state`` holding the resolved SessionContext.
SESSION_STATE_KEY = "authgate_session"
# Attribute of ``request.state`` holding a CSRF token rotated during the request.
CSRF_STATE_KEY = "authgate_csrf_token"


def _under(path: str, prefix: str) -> bool:
    if prefix == "/":
        return True
    return path == prefix or path.startswith(prefix + "/")


class SessionManager:
    """Validates, slides and re-issues sessions.

    Parameters
    ----------
    adapter : Adapter
        Storage holding the sessions.
    config : GateConfig
        Validated runtime configuration.
    """

    def __init__(self, adapter: Adapter, config: GateConfig) -> None:
        self.adapter = adapter
        self.config = config
        self.cookie = SessionCookie(config.session)

    def is_skipped(self, request: Request) -> bool:
        """Whether *request* bypasses session protection."""
        path = request.url.path
        if any(_under(path, prefix) for prefix in self.config.skip_prefixes):
            return True
        return bool(self.config.skip and self.config.skip(request))

    async def resolve(self, request: Request) -> SessionContext:
        """Resolve and slide the session behind *request*.

        Parameters
        ----------
        request : Request
            The incoming request.

        Returns
        -------
        SessionContext
            The session with its expiry slid to ``now + ttl``.

        Raises
        ------
        MissingCookieError
            If the request carries no session token.
        SessionNotFoundError
            If the token is unknown or its record is corrupt.
        ExpiredSessionError
            If the session has expired.
        AdapterError
            On storage failures or timeouts.
        """
        token = await self.config.session_extractor(request)
        if not token:
            msg = "session cookie missing"
            raise MissingCookieError(msg)

        timeout = self.config.session.adapter_timeout
        session = await call_with_timeout(self.adapter.get_session(token), timeout, "get_session")

        now = self.config.now()
        if not session.is_valid(now):
            msg = "session expired"
            raise ExpiredSessionError(msg, user_id=session.user_id)

        slid = session.with_expiry(now + self.config.session.ttl)
        session = await call_with_timeout(self.adapter.refresh_session(slid), timeout, "refresh_session")
        return SessionContext(session=session)


class ProtectMiddleware:
    """ASGI middleware guarding every non-handshake route.

    Extracts and slides the session, stores the
    :class:`~authgate.models.SessionContext` in ``request.state`` and
    appends the re-issued session cookie to the downstream response.
    """

    def __init__(self, app: Any, manager: SessionManager) -> None:
        """Initialize the middleware.

        Parameters
        ----------
        app : ASGI application
            The wrapped application.
        manager : SessionManager
            Resolves sessions.
        """
        self.app = app
        self.manager = manager

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> None:
        """Handle ASGI request."""
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        if self.manager.is_skipped(request):
            await self.app(scope, receive, send)
            return

        config = self.manager.config
        try:
            context = await self.manager.resolve(request)
        except Exception as exc:  # noqa: BLE001
            if is_soft_failure(exc):
                logger.debug("Redirecting %s to login: %s", request.url.path, exc)
                response = RedirectResponse(url=config.routes.login_url, status_code=302)
            elif isinstance(exc, AuthGateException):
                logger.warning("Session resolution failed: %s", exc)
                response = config.error_handler(request, exc)
            else:
                logger.exception("Unexpected failure resolving the session")
                response = config.error_handler(request, exc)
            await response(scope, receive, send)
            return

        state = scope.setdefault("state", {})
        state[SESSION_STATE_KEY] = context
        cookie = self.manager.cookie.header(context.session_id, context.session.expires_at)
        csrf_header = config.csrf.header_name.lower().encode("latin-1")

        async def send_with_cookie(message: dict[str, Any]) -> None:
            if message["type"] == "http.response.start":
                headers = [*message.get("headers", []), cookie]
                # A handler returning its own Response drops dependency headers.
                rotated = state.get(CSRF_STATE_KEY)
                if rotated and all(name.lower() != csrf_header for name, _ in headers):
                    headers.append((csrf_header, rotated.encode("latin-1")))
                message["headers"] = headers
            await send(message)

        await self.app(scope, receive, send_with_cookie)


def session_context(request: Request) -> SessionContext:
    """FastAPI dependency handing the resolved session to a handler.

    Raises
    ------
    MissingSessionError
        If the request was not resolved by :class:`ProtectMiddleware`.
    """
    context = getattr(request.state, SESSION_STATE_KEY, None)
    if context is None:
        msg = "no active session"
        raise MissingSessionError(msg)
    return context
