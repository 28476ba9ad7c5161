"""authgate exception hierarchy.

All authgate exceptions inherit from AuthGateException, enabling
catch-all handling while supporting specific error types. Each class
carries the HTTP status the default error handler responds with and a
stable machine-readable ``error`` code.

Failures that represent an expected anonymous or expired state also
inherit from :class:`LoginRequired`; the session middleware answers
those with a redirect to the login route instead of an error response.
"""

from __future__ import annotations

from typing import Any, ClassVar


class AuthGateException(Exception):
    """Base exception for all authgate errors."""

    status_code: ClassVar[int] = 500
    error: ClassVar[str] = "server_error"

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize authgate exception.

        Parameters
        ----------
        message : str
            Human-readable error message.
        **context : Any
            Additional context (provider, session_id, method, etc.).
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        """Format exception with context."""
        if self.context:
            ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx})"
        return self.message


class LoginRequired:
    """Marker for soft failures that resolve to a login redirect."""


class ConfigurationError(AuthGateException):
    """Invalid configuration detected while building the gate."""

    error = "configuration_error"


# ── Handshake input ──────────────────────────────────────────────────


class InvalidRequestError(AuthGateException):
    """Malformed input on one of the handshake routes."""

    status_code = 400
    error = "invalid_request"


class MissingProviderNameError(InvalidRequestError):
    """The provider could not be determined from the request."""

    error = "missing_provider_name"


class ProviderNotFoundError(InvalidRequestError):
    """No provider is registered under the requested id."""

    error = "provider_not_found"

    def __init__(self, message: str, provider: str | None = None, **context: Any) -> None:
        """Initialize provider lookup error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        provider : str, optional
            The provider id that was requested.
        **context : Any
            Additional context.
        """
        super().__init__(message, provider=provider, **context)
        self.provider = provider


class MissingCodeError(InvalidRequestError):
    """The provider callback carried no authorization code."""

    error = "missing_code"


class InvalidStateError(InvalidRequestError):
    """The handshake state is missing, unknown, expired, or already used."""

    error = "invalid_state"


class AuthorizationDeniedError(InvalidRequestError):
    """The identity provider reported an error on the callback."""

    error = "authorization_denied"


class RegistryFrozenError(AuthGateException):
    """A provider was registered after the registry started serving."""

    error = "registry_frozen"


# ── Provider failures ────────────────────────────────────────────────


class ProviderError(AuthGateException):
    """Base exception for failures inside a provider collaborator."""

    status_code = 502
    error = "provider_error"

    def __init__(self, message: str, provider: str | None = None, **context: Any) -> None:
        """Initialize provider error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        provider : str, optional
            The provider id (e.g., "github", "entraid").
        **context : Any
            Additional context.
        """
        super().__init__(message, provider=provider, **context)
        self.provider = provider


class ProviderUnimplementedError(ProviderError):
    """The provider does not implement the requested operation."""

    status_code = 500
    error = "provider_unimplemented"


class NoAuthURLError(ProviderError):
    """The provider produced an empty authorization URL."""

    status_code = 500
    error = "no_auth_url"


class TokenExchangeError(ProviderError):
    """Exchanging the authorization code for tokens failed.

    Authorization codes are single use, so the handshake has to be
    restarted from the beginning; the exchange is never retried.
    """

    error = "token_exchange_failed"


class UpstreamProfileFetchError(ProviderError):
    """Fetching the external user profile failed."""

    error = "upstream_profile_fetch_failed"


class NoVerifiedPrimaryEmailError(UpstreamProfileFetchError):
    """The upstream account exposes no verified primary email address."""

    error = "no_verified_primary_email"


class OrganizationNotAllowedError(ProviderError):
    """The upstream account is not a member of any allowed organization."""

    status_code = 403
    error = "organization_not_allowed"


class UserUpsertError(ProviderError):
    """Creating or linking the local user and account failed."""

    status_code = 500
    error = "user_upsert_failed"


# ── Storage adapter ──────────────────────────────────────────────────


class AdapterError(AuthGateException):
    """I/O-class failure inside the storage adapter.

    Raised for backend connectivity problems and timeouts. Always a hard
    failure: it reaches the configured error handler.
    """

    error = "adapter_error"


class AdapterUnimplementedError(AdapterError):
    """The storage backend does not support the requested operation."""

    error = "adapter_unimplemented"

    def __init__(self, message: str, operation: str | None = None, **context: Any) -> None:
        """Initialize unimplemented error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        operation : str, optional
            Name of the adapter operation that is not supported.
        **context : Any
            Additional context.
        """
        super().__init__(message, operation=operation, **context)
        self.operation = operation


class NotFoundError(AuthGateException):
    """A requested record does not exist in the storage backend."""

    status_code = 404
    error = "not_found"


class UserNotFoundError(NotFoundError):
    """No user matches the lookup."""

    error = "user_not_found"


class AccountNotFoundError(NotFoundError):
    """No linked account matches the lookup."""

    error = "account_not_found"


class VerificationTokenNotFoundError(NotFoundError):
    """The verification token is unknown, expired, or already used."""

    error = "verification_token_not_found"


class ValidationError(AuthGateException):
    """A record handed to the storage adapter failed validation."""

    status_code = 400
    error = "validation_error"


# ── Session ──────────────────────────────────────────────────────────


class SessionError(AuthGateException):
    """Base exception for session failures."""

    status_code = 403
    error = "session_error"


class MissingSessionError(SessionError):
    """No active session is available for the request.

    Raised by the CSRF guard and the ``session_context`` dependency;
    CSRF validation fails closed without a session to bind to.
    """

    error = "missing_session"


class MissingCookieError(SessionError, LoginRequired):
    """The request carries no session cookie."""

    error = "missing_cookie"


class SessionNotFoundError(SessionError, NotFoundError, LoginRequired):
    """The session token is unknown or its stored record is corrupt."""

    status_code = 403
    error = "session_not_found"


class ExpiredSessionError(SessionError, LoginRequired):
    """The session has passed its expiry."""

    error = "expired_session"


# ── CSRF ─────────────────────────────────────────────────────────────


class CsrfError(AuthGateException):
    """Base exception for CSRF violations."""

    status_code = 403
    error = "csrf_failed"


class CsrfTokenNotFoundError(CsrfError):
    """The request carries no CSRF token."""

    error = "csrf_token_not_found"


class CsrfTokenInvalidError(CsrfError):
    """The submitted CSRF token does not match the session's token."""

    error = "csrf_token_invalid"


class CsrfTokenExpiredError(CsrfError):
    """The session's CSRF token has expired."""

    error = "csrf_token_expired"


def is_soft_failure(exc: BaseException) -> bool:
    """Return True when *exc* should redirect to login rather than error.

    Parameters
    ----------
    exc : BaseException
        The exception raised while resolving a session.

    Returns
    -------
    bool
        True for expected anonymous or expired states.
    """
    return isinstance(exc, LoginRequired)
