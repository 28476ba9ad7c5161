"""Transport helpers shared by the handshake routes and the middleware.

The error handler is the single seam from an internal error to an HTTP
response. The session cookie is always written through
:class:`SessionCookie` so every response carries identical attributes.
"""

from __future__ import annotations

import hashlib
import hmac
import logging

from collections.abc import Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from starlette.responses import JSONResponse, Response

from .exceptions import AuthGateException


if TYPE_CHECKING:
    from starlette.requests import Request

    from .config import SessionSettings


logger = logging.getLogger("authgate.http")


ErrorHandler = Callable[["Request", Exception], Response]


def default_error_handler(request: Request, exc: Exception) -> Response:  # pylint: disable=unused-argument
    """Map an exception to a JSON error response.

    authgate exceptions answer with their own status and error code.
    Anything else is reported as an opaque 500.

    Parameters
    ----------
    request : Request
        The request that failed.
    exc : Exception
        The failure.

    Returns
    -------
    Response
        ``{"error": ..., "error_description": ...}`` with the mapped status.
    """
    if isinstance(exc, AuthGateException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.error, "error_description": exc.message},
        )
    logger.error("Unhandled error: %s", exc)
    return JSONResponse(
        status_code=500,
        content={"error": "server_error", "error_description": "An internal error occurred"},
    )


class SessionCookie:
    """Writes and clears the session cookie.

    Parameters
    ----------
    settings : SessionSettings
        Cookie name and attributes. HttpOnly is always set.
    """

    def __init__(self, settings: SessionSettings) -> None:
        self.name = settings.cookie_name
        self.secure = settings.cookie_secure
        self.samesite = settings.cookie_samesite
        self.path = settings.cookie_path
        self.domain = settings.cookie_domain or None

    def set(self, response: Response, token: str, expires_at: float) -> None:
        """Set the cookie on *response*, expiring at *expires_at*."""
        response.set_cookie(
            key=self.name,
            value=token,
            expires=datetime.fromtimestamp(expires_at, tz=timezone.utc),
            path=self.path,
            domain=self.domain,
            secure=self.secure,
            httponly=True,
            samesite=self.samesite,
        )

    def clear(self, response: Response) -> None:
        """Expire the cookie on *response*."""
        response.delete_cookie(
            key=self.name,
            path=self.path,
            domain=self.domain,
            secure=self.secure,
            httponly=True,
            samesite=self.samesite,
        )

    def header(self, token: str, expires_at: float) -> tuple[bytes, bytes]:
        """Build a raw ``Set-Cookie`` header for use outside a Response."""
        scratch = Response()
        self.set(scratch, token, expires_at)
        return b"set-cookie", scratch.headers["set-cookie"].encode("latin-1")


class HandshakeCookie:
    """Binds a handshake state to the browser that started it.

    The cookie carries an HMAC of the provider id and state, never the
    state itself. It is SameSite=Lax so the provider's top-level
    redirect back to the callback still sends it.

    Parameters
    ----------
    settings : SessionSettings
        Session cookie attributes; the name gets a ``_handshake`` suffix.
    secret_key : str
        Key for the HMAC.
    max_age : int
        Lifetime in seconds, matching the stored state.
    """

    def __init__(self, settings: SessionSettings, secret_key: str, max_age: int) -> None:
        self.name = f"{settings.cookie_name}_handshake"
        self.secure = settings.cookie_secure
        self.path = settings.cookie_path
        self.domain = settings.cookie_domain or None
        self.max_age = max_age
        self._key = secret_key.encode()

    def _digest(self, provider_id: str, state: str) -> str:
        return hmac.new(self._key, f"{provider_id}:{state}".encode(), hashlib.sha256).hexdigest()

    def set(self, response: Response, provider_id: str, state: str) -> None:
        """Bind *state* for *provider_id* to the browser receiving *response*."""
        response.set_cookie(
            key=self.name,
            value=self._digest(provider_id, state),
            max_age=self.max_age,
            path=self.path,
            domain=self.domain,
            secure=self.secure,
            httponly=True,
            samesite="lax",
        )

    def matches(self, request: Request, provider_id: str, state: str) -> bool:
        """Whether *request* comes from the browser that began this handshake."""
        bound = request.cookies.get(self.name, "")
        if not bound or not state:
            return False
        return hmac.compare_digest(bound, self._digest(provider_id, state))

    def clear(self, response: Response) -> None:
        """Expire the cookie on *response*."""
        response.delete_cookie(
            key=self.name,
            path=self.path,
            domain=self.domain,
            secure=self.secure,
            httponly=True,
            samesite="lax",
        )


class RequestParams:
    """Named request parameters handed to providers on the callback.

    Parameters
    ----------
    request : Request
        The callback request; its query string is the parameter source.
    """

    def __init__(self, request: Request) -> None:
        self._params = request.query_params

    def get(self, name: str) -> str:
        """Return the parameter *name*, or an empty string when absent."""
        return self._params.get(name, "")
