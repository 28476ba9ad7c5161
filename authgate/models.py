"""Type definitions for authgate.

Shared records passed between the providers, the storage adapters,
and the session and CSRF layers. Timestamps are Unix epoch seconds.
"""

from __future__ import annotations

import hmac
import time

from dataclasses import dataclass, field, replace
from enum import Enum


class AccountType(str, Enum):
    """Kind of external identity an account links to."""

    OAUTH2 = "oauth2"
    OIDC = "oidc"
    SAML = "saml"
    EMAIL = "email"
    WEBAUTHN = "webauthn"


class ProviderType(str, Enum):
    """Protocol family implemented by a provider."""

    OAUTH2 = "oauth2"
    OIDC = "oidc"
    SAML = "saml"
    EMAIL = "email"
    WEBAUTHN = "webauthn"
    UNKNOWN = "unknown"


@dataclass
class Account:
    """One external identity linked to a local user.

    Attributes
    ----------
    provider : str
        Id of the provider that owns the identity.
    provider_account_id : str
        The account id at the provider.
    type : AccountType
        The account type.
    access_token : str or None
        Provider access token. Opaque to authgate.
    refresh_token : str or None
        Provider refresh token. Opaque to authgate.
    expires_at : float or None
        Expiry of the access token.
    token_type : str or None
        Token type reported by the provider.
    scope : str or None
        Granted scopes.
    id_token : str or None
        OIDC ID token, if any.
    session_state : str or None
        Provider session state, if any.
    user_id : str or None
        Owning user.
    id : str
        Storage identifier, assigned by the adapter.
    """

    provider: str
    provider_account_id: str
    type: AccountType = AccountType.OAUTH2
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: float | None = None
    token_type: str | None = None
    scope: str | None = None
    id_token: str | None = None
    session_state: str | None = None
    user_id: str | None = None
    id: str = ""
    created_at: float = 0.0
    updated_at: float = 0.0


@dataclass
class User:
    """A user of the application.

    Attributes
    ----------
    email : str
        Email address, unique per user.
    name : str
        Display name.
    email_verified : bool or None
        Whether the provider verified the address.
    image : str or None
        Avatar URL.
    accounts : list[Account]
        Linked external identities.
    id : str
        Storage identifier, assigned by the adapter.
    """

    email: str
    name: str = ""
    email_verified: bool | None = None
    image: str | None = None
    accounts: list[Account] = field(default_factory=list)
    id: str = ""
    created_at: float = 0.0
    updated_at: float = 0.0


@dataclass(frozen=True)
class CsrfToken:
    """CSRF sub-record embedded in a session.

    Attributes
    ----------
    token : str
        The token value clients echo back on mutating requests.
    expires_at : float
        Expiry, independent from (and shorter than) the session's.
    """

    token: str = ""
    expires_at: float = 0.0

    def has_expired(self, now: float | None = None) -> bool:
        """Check whether the token is past its expiry."""
        now = time.time() if now is None else now
        return now >= self.expires_at

    def matches(self, value: str) -> bool:
        """Compare *value* with the stored token in constant time."""
        if not self.token or not value:
            return False
        return hmac.compare_digest(self.token.encode(), value.encode())


@dataclass
class Session:
    """Server-tracked session bound to the session cookie.

    Attributes
    ----------
    session_token : str
        Opaque, unguessable token carried by the cookie.
    user_id : str
        Owning user.
    expires_at : float
        Absolute expiry. The session is valid iff ``now < expires_at``.
    csrf_token : CsrfToken
        CSRF sub-record bound to this session.
    id : str
        Storage identifier, assigned by the adapter.
    """

    session_token: str
    user_id: str
    expires_at: float
    csrf_token: CsrfToken = field(default_factory=CsrfToken)
    id: str = ""
    created_at: float = 0.0
    updated_at: float = 0.0

    def is_valid(self, now: float | None = None) -> bool:
        """Return True while ``now`` is before the session's expiry."""
        now = time.time() if now is None else now
        return now < self.expires_at

    def with_expiry(self, expires_at: float) -> Session:
        """Return a copy with a new expiry."""
        return replace(self, expires_at=expires_at)

    def with_csrf_token(self, csrf_token: CsrfToken) -> Session:
        """Return a copy with a new CSRF sub-record."""
        return replace(self, csrf_token=csrf_token)


@dataclass(frozen=True)
class VerificationToken:
    """Single-use token bound to an identifier.

    Attributes
    ----------
    identifier : str
        What the token verifies (an email address, a handshake scope, ...).
    token : str
        The secret value.
    expires_at : float
        Expiry; expired tokens cannot be used.
    """

    identifier: str
    token: str
    expires_at: float
    created_at: float = 0.0


@dataclass(frozen=True)
class SessionContext:
    """Resolved session handed explicitly to downstream handlers.

    Attributes
    ----------
    session : Session
        The session after its expiry was slid.
    """

    session: Session

    @property
    def session_id(self) -> str:
        """The session token."""
        return self.session.session_token

    @property
    def user_id(self) -> str:
        """The owning user's id."""
        return self.session.user_id

    @property
    def csrf_token(self) -> str:
        """The session's current CSRF token value."""
        return self.session.csrf_token.token
