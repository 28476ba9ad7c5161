"""CSRF guard bound to the active session.

Each session carries one CSRF token with its own, shorter lifetime.
Mutating requests must echo it (by default in the ``X-Csrf-Token``
header). A token that validates is replaced immediately, so every token
is accepted at most once; the replacement is handed back in the response
header of the protected call.

Usage
-----
>>> @app.post("/items")
... async def create_item(
...     context: SessionContext = Depends(session_context),
...     csrf_token: str | None = Depends(gate.csrf.dependency),
... ): ...
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from typing import TYPE_CHECKING

from starlette.requests import Request

from .adapters.base import call_with_timeout
from .exceptions import (
    CsrfTokenExpiredError,
    CsrfTokenInvalidError,
    CsrfTokenNotFoundError,
    MissingSessionError,
)
from .models import CsrfToken, SessionContext
from .session import CSRF_STATE_KEY, SESSION_STATE_KEY


if TYPE_CHECKING:
    from .adapters.base import Adapter
    from .config import GateConfig


logger = logging.getLogger("authgate.csrf")


class CsrfGuard:
    """Issues, validates and rotates CSRF tokens.

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
        self.ignored_methods = frozenset(config.csrf.ignored_methods)

    def new_token(self, now: float | None = None) -> CsrfToken:
        """Create a fresh CSRF sub-record starting at *now*."""
        now = self.config.now() if now is None else now
        return CsrfToken(token=self.config.token_generator(), expires_at=now + self.config.csrf.ttl)

    def is_ignored(self, request: Request) -> bool:
        """Whether *request* is exempt from CSRF validation."""
        if request.method.upper() in self.ignored_methods:
            return True
        return bool(self.config.csrf_skip and self.config.csrf_skip(request))

    async def issue(self, context: SessionContext) -> SessionContext:
        """Replace the session's CSRF token with a fresh one.

        Parameters
        ----------
        context : SessionContext
            The active session.

        Returns
        -------
        SessionContext
            The session as stored after the replacement.
        """
        session = context.session.with_csrf_token(self.new_token())
        stored = await call_with_timeout(
            self.adapter.update_session(session),
            self.config.session.adapter_timeout,
            "update_session",
        )
        return SessionContext(session=stored)

    async def protect(self, request: Request, context: SessionContext | None) -> str | None:
        """Validate and rotate the CSRF token of a mutating request.

        Parameters
        ----------
        request : Request
            The incoming request.
        context : SessionContext or None
            The session resolved for the request.

        Returns
        -------
        str or None
            The replacement token, or None when the request is exempt.

        Raises
        ------
        MissingSessionError
            If there is no session to bind the token to.
        CsrfTokenNotFoundError
            If the request carries no token.
        CsrfTokenExpiredError
            If the session's token has expired.
        CsrfTokenInvalidError
            If the submitted token does not match.
        """
        if self.is_ignored(request):
            return None

        if context is None:
            msg = "CSRF validation requires an active session"
            raise MissingSessionError(msg)

        submitted = await self.config.csrf_extractor(request)
        if not submitted:
            msg = "CSRF token missing"
            raise CsrfTokenNotFoundError(msg, method=request.method)

        current = context.session.csrf_token
        if current.has_expired(self.config.now()):
            msg = "CSRF token expired"
            raise CsrfTokenExpiredError(msg, user_id=context.user_id)
        if not current.matches(submitted):
            logger.warning("CSRF token mismatch for user %s on %s", context.user_id, request.url.path)
            msg = "CSRF token invalid"
            raise CsrfTokenInvalidError(msg, user_id=context.user_id)

        rotated = await self.issue(context)
        setattr(request.state, SESSION_STATE_KEY, rotated)
        setattr(request.state, CSRF_STATE_KEY, rotated.csrf_token)
        return rotated.csrf_token

    async def dependency(self, request: Request) -> str | None:
        """FastAPI dependency running :meth:`protect`.

        :class:`~authgate.session.ProtectMiddleware` writes the
        replacement token to the response header named by
        ``csrf.header_name``, whatever the handler returns. Failures
        propagate to the exception handlers registered by
        :meth:`AuthGate.install`.
        """
        return await self.protect(request, getattr(request.state, SESSION_STATE_KEY, None))
