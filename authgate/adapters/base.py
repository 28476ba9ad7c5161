"""Abstract base class for pluggable storage adapters.

The adapter is the only durable owner of users, linked accounts,
sessions, and verification tokens. The core holds copies for the
duration of a request and relies on the adapter for atomic
read-modify-write on sessions.

Error contract
--------------
- a missing record raises a :class:`~authgate.exceptions.NotFoundError`
  subclass (``SessionNotFoundError`` for sessions);
- invalid input raises :class:`~authgate.exceptions.ValidationError`;
- an unsupported operation raises
  :class:`~authgate.exceptions.AdapterUnimplementedError`;
- backend I/O failures raise :class:`~authgate.exceptions.AdapterError`.
"""

# pylint: disable=unnecessary-ellipsis

from __future__ import annotations

import asyncio
import secrets

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, NoReturn, TypeVar

from ..exceptions import AdapterError, AdapterUnimplementedError, ValidationError


if TYPE_CHECKING:
    from collections.abc import Awaitable

    from ..models import Account, CsrfToken, Session, User, VerificationToken


T = TypeVar("T")


async def call_with_timeout(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """Await an adapter call, turning a timeout into ``AdapterError``.

    Parameters
    ----------
    awaitable : Awaitable
        The pending adapter call.
    timeout : float
        Upper bound in seconds.
    operation : str
        Adapter operation name, for the error context.

    Returns
    -------
    T
        The adapter call's result.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as exc:
        msg = f"adapter {operation} timed out after {timeout}s"
        raise AdapterError(msg, operation=operation) from exc


def generate_session_token() -> str:
    """Generate an opaque, unguessable session token."""
    return secrets.token_urlsafe(32)


def generate_id() -> str:
    """Generate a storage identifier."""
    return secrets.token_hex(16)


def validate_user(user: User) -> None:
    """Reject users that cannot be stored."""
    if not user.email:
        msg = "user email is required"
        raise ValidationError(msg)


def validate_account(account: Account) -> None:
    """Reject accounts that cannot be linked."""
    if not account.provider or not account.provider_account_id:
        msg = "account provider and provider_account_id are required"
        raise ValidationError(msg, provider=account.provider)
    if not account.user_id:
        msg = "account user_id is required"
        raise ValidationError(msg, provider=account.provider)


class Adapter(ABC):
    """Storage adapter interface.

    Every operation is a coroutine. Implementations must be safe to call
    from concurrent request tasks and must never lower a stored session
    expiry: refresh and update keep the later of the stored and the
    submitted ``expires_at``.
    """

    # ── Users ────────────────────────────────────────────────────────

    @abstractmethod
    async def create_user(self, user: User) -> User:
        """Create a user.

        Parameters
        ----------
        user : User
            The user to store. ``id`` and timestamps are assigned.

        Returns
        -------
        User
            The stored user.

        Raises
        ------
        ValidationError
            If the email is missing or already taken.
        """
        ...

    @abstractmethod
    async def get_user(self, user_id: str) -> User:
        """Get a user by id, raising ``UserNotFoundError``."""
        ...

    @abstractmethod
    async def get_user_by_email(self, email: str) -> User:
        """Get a user by email, raising ``UserNotFoundError``."""
        ...

    @abstractmethod
    async def get_user_by_account(self, provider: str, provider_account_id: str) -> User:
        """Get the user owning a linked account.

        Parameters
        ----------
        provider : str
            The provider id.
        provider_account_id : str
            The account id at the provider.

        Returns
        -------
        User
            The owning user.

        Raises
        ------
        AccountNotFoundError
            If no such account is linked.
        """
        ...

    @abstractmethod
    async def update_user(self, user: User) -> User:
        """Replace the stored fields of an existing user."""
        ...

    @abstractmethod
    async def delete_user(self, user_id: str) -> None:
        """Delete a user with its accounts and sessions."""
        ...

    # ── Accounts ─────────────────────────────────────────────────────

    @abstractmethod
    async def link_account(self, account: Account) -> Account:
        """Link an external account to ``account.user_id``.

        Linking an already linked provider account refreshes its tokens.

        Parameters
        ----------
        account : Account
            The account to link.

        Returns
        -------
        Account
            The stored account.

        Raises
        ------
        ValidationError
            If required fields are missing.
        UserNotFoundError
            If the owning user does not exist.
        """
        ...

    @abstractmethod
    async def unlink_account(self, provider: str, provider_account_id: str) -> None:
        """Remove a linked account, raising ``AccountNotFoundError``."""
        ...

    # ── Sessions ─────────────────────────────────────────────────────

    @abstractmethod
    async def create_session(
        self,
        user_id: str,
        expires_at: float,
        csrf_token: CsrfToken | None = None,
    ) -> Session:
        """Create a session with a fresh opaque token.

        Parameters
        ----------
        user_id : str
            The owning user.
        expires_at : float
            Absolute expiry.
        csrf_token : CsrfToken, optional
            Initial CSRF sub-record.

        Returns
        -------
        Session
            The stored session.
        """
        ...

    @abstractmethod
    async def get_session(self, session_token: str) -> Session:
        """Get a session by token.

        Raises
        ------
        SessionNotFoundError
            If the token is unknown or the stored record is corrupt.
        AdapterError
            On backend failures.
        """
        ...

    @abstractmethod
    async def update_session(self, session: Session) -> Session:
        """Atomically store the session's CSRF sub-record and expiry.

        The stored expiry never decreases.
        """
        ...

    @abstractmethod
    async def refresh_session(self, session: Session) -> Session:
        """Atomically slide the session's expiry.

        Parameters
        ----------
        session : Session
            The session carrying the new ``expires_at``.

        Returns
        -------
        Session
            The stored session, whose expiry is the later of the stored
            and the submitted value.
        """
        ...

    @abstractmethod
    async def delete_session(self, session_token: str) -> None:
        """Delete a session, raising ``SessionNotFoundError``."""
        ...

    # ── Verification tokens ──────────────────────────────────────────

    @abstractmethod
    async def create_verification_token(self, verification_token: VerificationToken) -> VerificationToken:
        """Store a single-use verification token."""
        ...

    @abstractmethod
    async def use_verification_token(self, identifier: str, token: str) -> VerificationToken:
        """Consume a verification token.

        Parameters
        ----------
        identifier : str
            What the token verifies.
        token : str
            The token value.

        Returns
        -------
        VerificationToken
            The consumed token. It cannot be used again.

        Raises
        ------
        VerificationTokenNotFoundError
            If the token is unknown, expired, or already used.
        """
        ...

    async def close(self) -> None:  # noqa: B027
        """Release backend resources."""


class UnimplementedAdapter(Adapter):
    """Adapter whose every storage operation is unsupported.

    Compose it into a partial adapter to make missing capabilities fail
    loudly with :class:`AdapterUnimplementedError` instead of silently
    doing nothing.
    """

    def _unimplemented(self, operation: str) -> NoReturn:
        msg = f"{type(self).__name__} does not support {operation}"
        raise AdapterUnimplementedError(msg, operation=operation)

    async def create_user(self, user: User) -> User:
        self._unimplemented("create_user")

    async def get_user(self, user_id: str) -> User:
        self._unimplemented("get_user")

    async def get_user_by_email(self, email: str) -> User:
        self._unimplemented("get_user_by_email")

    async def get_user_by_account(self, provider: str, provider_account_id: str) -> User:
        self._unimplemented("get_user_by_account")

    async def update_user(self, user: User) -> User:
        self._unimplemented("update_user")

    async def delete_user(self, user_id: str) -> None:
        self._unimplemented("delete_user")

    async def link_account(self, account: Account) -> Account:
        self._unimplemented("link_account")

    async def unlink_account(self, provider: str, provider_account_id: str) -> None:
        self._unimplemented("unlink_account")

    async def create_session(
        self,
        user_id: str,
        expires_at: float,
        csrf_token: CsrfToken | None = None,
    ) -> Session:
        self._unimplemented("create_session")

    async def get_session(self, session_token: str) -> Session:
        self._unimplemented("get_session")

    async def update_session(self, session: Session) -> Session:
        self._unimplemented("update_session")

    async def refresh_session(self, session: Session) -> Session:
        self._unimplemented("refresh_session")

    async def delete_session(self, session_token: str) -> None:
        self._unimplemented("delete_session")

    async def create_verification_token(self, verification_token: VerificationToken) -> VerificationToken:
        self._unimplemented("create_verification_token")

    async def use_verification_token(self, identifier: str, token: str) -> VerificationToken:
        self._unimplemented("use_verification_token")
