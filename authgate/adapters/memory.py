"""In-memory storage adapter.

Default backend for single-process deployments, development, and tests.
Every read-modify-write runs under one ``asyncio.Lock``.
"""

from __future__ import annotations

import asyncio
import time

from dataclasses import replace
from typing import TYPE_CHECKING

from ..exceptions import (
    AccountNotFoundError,
    SessionNotFoundError,
    UserNotFoundError,
    ValidationError,
    VerificationTokenNotFoundError,
)
from ..models import CsrfToken, Session, VerificationToken
from .base import Adapter, generate_id, generate_session_token, validate_account, validate_user


if TYPE_CHECKING:
    from collections.abc import Callable

    from ..models import Account, User


class MemoryAdapter(Adapter):
    """In-memory adapter for single-process deployments.

    Records are copied on the way in and out, so callers never share
    mutable state with the store.

    Parameters
    ----------
    clock : Callable[[], float], optional
        Current time in epoch seconds, used for timestamps and for
        expiring sessions and verification tokens (default: time.time).
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        """Initialize the memory adapter."""
        self._clock = clock
        self._users: dict[str, User] = {}
        self._accounts: dict[tuple[str, str], Account] = {}
        self._sessions: dict[str, Session] = {}
        self._verification_tokens: dict[tuple[str, str], VerificationToken] = {}
        self._lock = asyncio.Lock()

    def _user_copy(self, user: User) -> User:
        accounts = [replace(a) for a in self._accounts.values() if a.user_id == user.id]
        return replace(user, accounts=accounts)

    def _email_taken(self, email: str, exclude_id: str = "") -> bool:
        return any(u.email == email and u.id != exclude_id for u in self._users.values())

    # ── Users ────────────────────────────────────────────────────────

    async def create_user(self, user: User) -> User:
        """Create a user."""
        validate_user(user)
        async with self._lock:
            if self._email_taken(user.email):
                msg = "a user with this email already exists"
                raise ValidationError(msg)
            now = self._clock()
            stored = replace(user, id=user.id or generate_id(), accounts=[], created_at=now, updated_at=now)
            self._users[stored.id] = stored
            return self._user_copy(stored)

    async def get_user(self, user_id: str) -> User:
        """Get a user by id."""
        async with self._lock:
            user = self._users.get(user_id)
            if user is None:
                msg = "user not found"
                raise UserNotFoundError(msg, user_id=user_id)
            return self._user_copy(user)

    async def get_user_by_email(self, email: str) -> User:
        """Get a user by email."""
        async with self._lock:
            for user in self._users.values():
                if user.email == email:
                    return self._user_copy(user)
        msg = "user not found"
        raise UserNotFoundError(msg)

    async def get_user_by_account(self, provider: str, provider_account_id: str) -> User:
        """Get the user owning a linked account."""
        async with self._lock:
            account = self._accounts.get((provider, provider_account_id))
            if account is None or account.user_id not in self._users:
                msg = "account not found"
                raise AccountNotFoundError(msg, provider=provider)
            return self._user_copy(self._users[account.user_id])

    async def update_user(self, user: User) -> User:
        """Replace the stored fields of an existing user."""
        validate_user(user)
        async with self._lock:
            existing = self._users.get(user.id)
            if existing is None:
                msg = "user not found"
                raise UserNotFoundError(msg, user_id=user.id)
            if self._email_taken(user.email, exclude_id=user.id):
                msg = "a user with this email already exists"
                raise ValidationError(msg)
            stored = replace(user, accounts=[], created_at=existing.created_at, updated_at=self._clock())
            self._users[stored.id] = stored
            return self._user_copy(stored)

    async def delete_user(self, user_id: str) -> None:
        """Delete a user with its accounts and sessions."""
        async with self._lock:
            if self._users.pop(user_id, None) is None:
                msg = "user not found"
                raise UserNotFoundError(msg, user_id=user_id)
            for key in [k for k, a in self._accounts.items() if a.user_id == user_id]:
                del self._accounts[key]
            for token in [t for t, s in self._sessions.items() if s.user_id == user_id]:
                del self._sessions[token]

    # ── Accounts ─────────────────────────────────────────────────────

    async def link_account(self, account: Account) -> Account:
        """Link an external account, refreshing it if already linked."""
        validate_account(account)
        async with self._lock:
            if account.user_id not in self._users:
                msg = "user not found"
                raise UserNotFoundError(msg, user_id=account.user_id)
            key = (account.provider, account.provider_account_id)
            now = self._clock()
            existing = self._accounts.get(key)
            if existing is not None and existing.user_id != account.user_id:
                msg = "account is linked to another user"
                raise ValidationError(msg, provider=account.provider)
            stored = replace(
                account,
                id=existing.id if existing else (account.id or generate_id()),
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            self._accounts[key] = stored
            return replace(stored)

    async def unlink_account(self, provider: str, provider_account_id: str) -> None:
        """Remove a linked account."""
        async with self._lock:
            if self._accounts.pop((provider, provider_account_id), None) is None:
                msg = "account not found"
                raise AccountNotFoundError(msg, provider=provider)

    # ── Sessions ─────────────────────────────────────────────────────

    async def create_session(
        self,
        user_id: str,
        expires_at: float,
        csrf_token: CsrfToken | None = None,
    ) -> Session:
        """Create a session with a fresh opaque token."""
        async with self._lock:
            if user_id not in self._users:
                msg = "user not found"
                raise UserNotFoundError(msg, user_id=user_id)
            now = self._clock()
            self._purge_expired(now)
            session = Session(
                session_token=generate_session_token(),
                user_id=user_id,
                expires_at=expires_at,
                csrf_token=csrf_token or CsrfToken(),
                id=generate_id(),
                created_at=now,
                updated_at=now,
            )
            self._sessions[session.session_token] = session
            return replace(session)

    async def get_session(self, session_token: str) -> Session:
        """Get a session by token."""
        async with self._lock:
            session = self._sessions.get(session_token)
            if session is None:
                msg = "session not found"
                raise SessionNotFoundError(msg)
            return replace(session)

    async def update_session(self, session: Session) -> Session:
        """Store the CSRF sub-record and the later of both expiries."""
        async with self._lock:
            stored = self._sessions.get(session.session_token)
            if stored is None:
                msg = "session not found"
                raise SessionNotFoundError(msg)
            updated = replace(
                stored,
                csrf_token=session.csrf_token,
                expires_at=max(stored.expires_at, session.expires_at),
                updated_at=self._clock(),
            )
            self._sessions[session.session_token] = updated
            return replace(updated)

    async def refresh_session(self, session: Session) -> Session:
        """Slide the expiry, never moving it backwards."""
        async with self._lock:
            stored = self._sessions.get(session.session_token)
            if stored is None:
                msg = "session not found"
                raise SessionNotFoundError(msg)
            if session.expires_at > stored.expires_at:
                stored = replace(stored, expires_at=session.expires_at, updated_at=self._clock())
                self._sessions[session.session_token] = stored
            return replace(stored)

    async def delete_session(self, session_token: str) -> None:
        """Delete a session."""
        async with self._lock:
            if self._sessions.pop(session_token, None) is None:
                msg = "session not found"
                raise SessionNotFoundError(msg)

    def _purge_expired(self, now: float) -> None:
        """Drop expired sessions and verification tokens (caller holds lock)."""
        for token in [t for t, s in self._sessions.items() if not s.is_valid(now)]:
            del self._sessions[token]
        for key in [k for k, v in self._verification_tokens.items() if v.expires_at <= now]:
            del self._verification_tokens[key]

    # ── Verification tokens ──────────────────────────────────────────

    async def create_verification_token(self, verification_token: VerificationToken) -> VerificationToken:
        """Store a single-use verification token."""
        if not verification_token.identifier or not verification_token.token:
            msg = "verification token identifier and token are required"
            raise ValidationError(msg)
        async with self._lock:
            now = self._clock()
            self._purge_expired(now)
            stored = replace(verification_token, created_at=now)
            self._verification_tokens[(stored.identifier, stored.token)] = stored
            return stored

    async def use_verification_token(self, identifier: str, token: str) -> VerificationToken:
        """Consume a verification token."""
        async with self._lock:
            stored = self._verification_tokens.pop((identifier, token), None)
            if stored is None or stored.expires_at <= self._clock():
                msg = "verification token not found"
                raise VerificationTokenNotFoundError(msg, identifier=identifier)
            return stored

    async def close(self) -> None:
        """Drop all records."""
        async with self._lock:
            self._users.clear()
            self._accounts.clear()
            self._sessions.clear()
            self._verification_tokens.clear()
