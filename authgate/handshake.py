"""OAuth handshake orchestration and routes.

A handshake spans two requests. ``begin`` resolves a state value, binds
it to the browser with a handshake cookie and redirects to the provider;
``callback`` checks that binding and hands the provider's parameters
back to the same provider, which exchanges the code and upserts the
user, and then a session is created and its cookie set. Failures at any
step go to the configured error handler; nothing is retried.

Provides login, callback, logout, and session endpoints through
:func:`create_auth_router`.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging
import secrets

from base64 import urlsafe_b64encode
from typing import TYPE_CHECKING

from fastapi import APIRouter
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response

from .adapters.base import call_with_timeout
from .exceptions import (
    AuthGateException,
    InvalidStateError,
    MissingProviderNameError,
    SessionNotFoundError,
)
from .http import HandshakeCookie, RequestParams, SessionCookie
from .providers.base import STATE_TTL
from .session import session_context


if TYPE_CHECKING:
    from .adapters.base import Adapter
    from .config import GateConfig
    from .csrf import CsrfGuard
    from .providers.base import ProviderRegistry


logger = logging.getLogger("authgate.handshake")

STATE_CHARSET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz-"
STATE_LENGTH = 64


def generate_state() -> str:
    """Generate a fresh handshake state.

    64 characters are drawn from ``STATE_CHARSET`` with a CSPRNG and the
    result is base64url-encoded.

    Returns
    -------
    str
        The encoded state.
    """
    raw = "".join(secrets.choice(STATE_CHARSET) for _ in range(STATE_LENGTH))
    return urlsafe_b64encode(raw.encode("ascii")).decode("ascii")


class AuthOrchestrator:
    """Drives the two-phase OAuth handshake, logout, and session info.

    Parameters
    ----------
    registry : ProviderRegistry
        The configured providers.
    adapter : Adapter
        Storage for users, accounts and sessions.
    config : GateConfig
        Validated runtime configuration.
    csrf : CsrfGuard
        Issues the CSRF token bound to new sessions.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        adapter: Adapter,
        config: GateConfig,
        csrf: CsrfGuard,
    ) -> None:
        self.registry = registry
        self.adapter = adapter
        self.config = config
        self.csrf = csrf
        self.cookie = SessionCookie(config.session)
        self.handshake_cookie = HandshakeCookie(config.session, config.secret_key, int(STATE_TTL))

    def _fail(self, request: Request, exc: Exception) -> Response:
        if isinstance(exc, AuthGateException):
            logger.warning("Handshake failed: %s", exc)
        else:
            logger.exception("Unexpected handshake failure")
        return self.config.error_handler(request, exc)

    async def begin_auth(self, request: Request, provider_id: str) -> Response:
        """Start a handshake and redirect to the provider.

        Reuses the ``state`` query parameter when the client supplies
        one, else generates a fresh state. The state is bound to the
        calling browser with a short-lived handshake cookie.

        Parameters
        ----------
        request : Request
            The login request.
        provider_id : str
            The provider to authenticate with.

        Returns
        -------
        Response
            A 307 redirect to the provider, or the error handler's response.
        """
        try:
            if not provider_id:
                msg = "provider name missing"
                raise MissingProviderNameError(msg)
            provider = self.registry.get(provider_id)
            state = request.query_params.get("state") or generate_state()
            intent = await provider.begin_auth(self.adapter, state)
            url = intent.auth_url()
        except Exception as exc:  # noqa: BLE001
            return self._fail(request, exc)

        response = RedirectResponse(url=url, status_code=307)
        self.handshake_cookie.set(response, provider_id, state)
        return response

    async def complete_auth(self, request: Request, provider_id: str) -> Response:
        """Finish a handshake, create the session and set its cookie.

        Parameters
        ----------
        request : Request
            The provider's callback request.
        provider_id : str
            The provider the handshake ran against.

        Returns
        -------
        Response
            A redirect to ``success_url`` carrying the session cookie, or
            the error handler's response (without a cookie).
        """
        try:
            if not provider_id:
                msg = "provider name missing"
                raise MissingProviderNameError(msg)
            provider = self.registry.get(provider_id)
            params = RequestParams(request)
            # Provider-reported errors are answered as such; anything else
            # must come back to the browser that began the handshake.
            if not params.get("error") and not self.handshake_cookie.matches(
                request, provider_id, params.get("state")
            ):
                msg = "handshake was not started by this browser"
                raise InvalidStateError(msg, provider=provider_id)
            user = await provider.complete_auth(self.adapter, params)

            now = self.config.now()
            session = await call_with_timeout(
                self.adapter.create_session(
                    user.id,
                    now + self.config.session.ttl,
                    self.csrf.new_token(now),
                ),
                self.config.session.adapter_timeout,
                "create_session",
            )
        except Exception as exc:  # noqa: BLE001
            return self._fail(request, exc)

        response = RedirectResponse(url=self.config.routes.success_url, status_code=302)
        self.cookie.set(response, session.session_token, session.expires_at)
        self.handshake_cookie.clear(response)
        logger.info("Session created for user %s via %s", user.id, provider_id)
        return response

    async def logout(self, request: Request) -> Response:
        """Delete the session, clear the cookie and redirect to login.

        A missing or unknown session is not an error.
        """
        try:
            token = await self.config.session_extractor(request)
            if token:
                try:
                    await call_with_timeout(
                        self.adapter.delete_session(token),
                        self.config.session.adapter_timeout,
                        "delete_session",
                    )
                except SessionNotFoundError:
                    logger.debug("Logout for an unknown session")
        except Exception as exc:  # noqa: BLE001
            return self._fail(request, exc)

        response = RedirectResponse(url=self.config.routes.login_url, status_code=302)
        self.cookie.clear(response)
        return response

    async def session_info(self, request: Request) -> Response:
        """Describe the active session.

        Re-issues the CSRF token first when it has expired, so clients can
        always obtain a usable token here.
        """
        try:
            context = session_context(request)
            if context.session.csrf_token.has_expired(self.config.now()):
                context = await self.csrf.issue(context)
        except Exception as exc:  # noqa: BLE001
            return self._fail(request, exc)

        response = JSONResponse(
            content={
                "user_id": context.user_id,
                "expires_at": context.session.expires_at,
                "csrf_token": context.csrf_token,
                "csrf_expires_at": context.session.csrf_token.expires_at,
            }
        )
        response.headers[self.config.csrf.header_name] = context.csrf_token
        return response


def create_auth_router(orchestrator: AuthOrchestrator) -> APIRouter:
    """Create a FastAPI router with the handshake routes.

    Parameters
    ----------
    orchestrator : AuthOrchestrator
        Handles the requests.

    Returns
    -------
    APIRouter
        Router with login, callback, logout and session routes.
    """
    routes = orchestrator.config.routes
    router = APIRouter(tags=["authentication"])

    @router.get(routes.login_url, name="authgate_login_query")
    async def login_by_query(request: Request) -> Response:
        """Start a handshake for the ``provider`` query parameter."""
        return await orchestrator.begin_auth(request, request.query_params.get("provider", ""))

    @router.get(f"{routes.login_url}/{{provider}}", name="authgate_login")
    async def login(request: Request, provider: str) -> Response:
        """Start a handshake with *provider*."""
        return await orchestrator.begin_auth(request, provider)

    @router.get(f"{routes.callback_url}/{{provider}}/callback", name="authgate_callback")
    async def callback(request: Request, provider: str) -> Response:
        """Complete a handshake with *provider*."""
        return await orchestrator.complete_auth(request, provider)

    @router.get(routes.logout_url, name="authgate_logout")
    async def logout(request: Request) -> Response:
        """Log out the current user."""
        return await orchestrator.logout(request)

    @router.get(routes.session_url, name="authgate_session")
    async def session(request: Request) -> Response:
        """Return the active session and its CSRF token."""
        return await orchestrator.session_info(request)

    return router
