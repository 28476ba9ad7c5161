"""Redis storage adapter.

Production backend shared by every worker of a deployment.

Key layout (all under ``prefix``):
- ``user:{id}`` hash and ``user_email:{email}`` unique index;
- ``account:{provider}:{provider_account_id}`` JSON string, indexed per
  user in ``user:{id}:accounts``;
- ``session:{token}`` hash with an absolute ``EXPIREAT``, indexed per
  user in ``user:{id}:sessions``;
- ``verification:{identifier}:{token}`` hash with an ``EXPIREAT``.

Session writes are optimistic ``WATCH``/``MULTI`` transactions retried on
conflict, so concurrent refreshes never roll an expiry back.
"""

from __future__ import annotations

import contextlib
import json
import logging
import time

from collections.abc import Callable, Iterator
from dataclasses import asdict, replace

from redis.asyncio import Redis
from redis.exceptions import RedisError, WatchError

from ..exceptions import (
    AccountNotFoundError,
    AdapterError,
    SessionNotFoundError,
    UserNotFoundError,
    ValidationError,
    VerificationTokenNotFoundError,
)
from ..models import Account, AccountType, CsrfToken, Session, User, VerificationToken
from .base import Adapter, generate_id, generate_session_token, validate_account, validate_user


logger = logging.getLogger("authgate.adapters.redis")

MAX_WATCH_RETRIES = 16


@contextlib.contextmanager
def _backend_errors(operation: str) -> Iterator[None]:
    """Translate redis failures into ``AdapterError``."""
    try:
        yield
    except RedisError as exc:
        msg = f"redis {operation} failed: {exc}"
        raise AdapterError(msg, operation=operation) from exc


def _opt(value: str | None) -> str:
    return "" if value is None else value


def _encode_bool(value: bool | None) -> str:
    if value is None:
        return ""
    return "1" if value else "0"


def _decode_bool(value: str | None) -> bool | None:
    if not value:
        return None
    return value == "1"


class RedisAdapter(Adapter):
    """Redis-backed adapter for multi-worker deployments.

    Parameters
    ----------
    redis_url : str
        Redis connection URL.
    prefix : str
        Key prefix for all Redis keys.
    redis_client : Redis, optional
        Pre-configured Redis client (for testing with fakeredis). It must
        decode responses to ``str``.
    clock : Callable[[], float], optional
        Current time in epoch seconds for timestamps and verification
        token expiry (default: time.time). Key TTLs follow the server clock.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        prefix: str = "authgate",
        *,
        redis_client: Redis | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the Redis adapter."""
        self._clock = clock
        self._redis_url = redis_url
        self._prefix = prefix
        self._client = redis_client
        self._owns_client = redis_client is None

    async def _redis(self) -> Redis:
        """Get the Redis client, connecting lazily."""
        if self._client is None:
            self._client = Redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    # ── Keys ─────────────────────────────────────────────────────────

    def _user_key(self, user_id: str) -> str:
        return f"{self._prefix}:user:{user_id}"

    def _email_key(self, email: str) -> str:
        return f"{self._prefix}:user_email:{email.lower()}"

    def _user_accounts_key(self, user_id: str) -> str:
        return f"{self._prefix}:user:{user_id}:accounts"

    def _user_sessions_key(self, user_id: str) -> str:
        return f"{self._prefix}:user:{user_id}:sessions"

    def _account_key(self, provider: str, provider_account_id: str) -> str:
        return f"{self._prefix}:account:{provider}:{provider_account_id}"

    def _session_key(self, session_token: str) -> str:
        return f"{self._prefix}:session:{session_token}"

    def _verification_key(self, identifier: str, token: str) -> str:
        return f"{self._prefix}:verification:{identifier}:{token}"

    # ── Encoding ─────────────────────────────────────────────────────

    @staticmethod
    def _encode_user(user: User) -> dict[str, str]:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "email_verified": _encode_bool(user.email_verified),
            "image": _opt(user.image),
            "created_at": str(user.created_at),
            "updated_at": str(user.updated_at),
        }

    @staticmethod
    def _decode_user(data: dict[str, str], accounts: list[Account]) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            name=data.get("name", ""),
            email_verified=_decode_bool(data.get("email_verified")),
            image=data.get("image") or None,
            accounts=accounts,
            created_at=float(data.get("created_at", 0)),
            updated_at=float(data.get("updated_at", 0)),
        )

    @staticmethod
    def _encode_account(account: Account) -> str:
        data = asdict(account)
        data["type"] = account.type.value
        return json.dumps(data)

    @staticmethod
    def _decode_account(raw: str) -> Account:
        data = json.loads(raw)
        data["type"] = AccountType(data["type"])
        return Account(**data)

    @staticmethod
    def _encode_session(session: Session) -> dict[str, str]:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "expires_at": repr(session.expires_at),
            "csrf_token": session.csrf_token.token,
            "csrf_expires_at": repr(session.csrf_token.expires_at),
            "created_at": repr(session.created_at),
            "updated_at": repr(session.updated_at),
        }

    @staticmethod
    def _decode_session(session_token: str, data: dict[str, str]) -> Session:
        if not data:
            msg = "session not found"
            raise SessionNotFoundError(msg)
        try:
            return Session(
                session_token=session_token,
                user_id=data["user_id"],
                expires_at=float(data["expires_at"]),
                csrf_token=CsrfToken(
                    token=data.get("csrf_token", ""),
                    expires_at=float(data.get("csrf_expires_at", 0)),
                ),
                id=data.get("id", ""),
                created_at=float(data.get("created_at", 0)),
                updated_at=float(data.get("updated_at", 0)),
            )
        except (KeyError, ValueError) as exc:
            logger.warning("Discarding corrupt session record")
            msg = "session record is corrupt"
            raise SessionNotFoundError(msg) from exc

    async def _load_accounts(self, r: Redis, user_id: str) -> list[Account]:
        keys = await r.smembers(self._user_accounts_key(user_id))
        if not keys:
            return []
        raws = await r.mget(sorted(keys))
        return [self._decode_account(raw) for raw in raws if raw]

    async def _load_user(self, r: Redis, user_id: str) -> User:
        data = await r.hgetall(self._user_key(user_id))
        if not data:
            msg = "user not found"
            raise UserNotFoundError(msg, user_id=user_id)
        return self._decode_user(data, await self._load_accounts(r, user_id))

    # ── Users ────────────────────────────────────────────────────────

    async def create_user(self, user: User) -> User:
        """Create a user, claiming its email atomically."""
        validate_user(user)
        now = self._clock()
        stored = replace(user, id=user.id or generate_id(), accounts=[], created_at=now, updated_at=now)
        with _backend_errors("create_user"):
            r = await self._redis()
            if not await r.set(self._email_key(stored.email), stored.id, nx=True):
                msg = "a user with this email already exists"
                raise ValidationError(msg)
            await r.hset(self._user_key(stored.id), mapping=self._encode_user(stored))
        return stored

    async def get_user(self, user_id: str) -> User:
        """Get a user by id."""
        with _backend_errors("get_user"):
            r = await self._redis()
            return await self._load_user(r, user_id)

    async def get_user_by_email(self, email: str) -> User:
        """Get a user by email."""
        with _backend_errors("get_user_by_email"):
            r = await self._redis()
            user_id = await r.get(self._email_key(email))
            if not user_id:
                msg = "user not found"
                raise UserNotFoundError(msg)
            return await self._load_user(r, user_id)

    async def get_user_by_account(self, provider: str, provider_account_id: str) -> User:
        """Get the user owning a linked account."""
        with _backend_errors("get_user_by_account"):
            r = await self._redis()
            raw = await r.get(self._account_key(provider, provider_account_id))
            if not raw:
                msg = "account not found"
                raise AccountNotFoundError(msg, provider=provider)
            account = self._decode_account(raw)
            try:
                return await self._load_user(r, account.user_id or "")
            except UserNotFoundError as exc:
                msg = "account not found"
                raise AccountNotFoundError(msg, provider=provider) from exc

    async def update_user(self, user: User) -> User:
        """Replace the stored fields of an existing user."""
        validate_user(user)
        with _backend_errors("update_user"):
            r = await self._redis()
            existing = await self._load_user(r, user.id)
            if existing.email.lower() != user.email.lower():
                if not await r.set(self._email_key(user.email), user.id, nx=True):
                    msg = "a user with this email already exists"
                    raise ValidationError(msg)
                await r.delete(self._email_key(existing.email))
            stored = replace(user, accounts=existing.accounts, created_at=existing.created_at, updated_at=self._clock())
            await r.hset(self._user_key(user.id), mapping=self._encode_user(stored))
        return stored

    async def delete_user(self, user_id: str) -> None:
        """Delete a user with its accounts and sessions."""
        with _backend_errors("delete_user"):
            r = await self._redis()
            user = await self._load_user(r, user_id)
            account_keys = await r.smembers(self._user_accounts_key(user_id))
            session_tokens = await r.smembers(self._user_sessions_key(user_id))
            async with r.pipeline(transaction=True) as pipe:
                pipe.delete(self._user_key(user_id))
                pipe.delete(self._email_key(user.email))
                pipe.delete(self._user_accounts_key(user_id))
                pipe.delete(self._user_sessions_key(user_id))
                for key in account_keys:
                    pipe.delete(key)
                for token in session_tokens:
                    pipe.delete(self._session_key(token))
                await pipe.execute()

    # ── Accounts ─────────────────────────────────────────────────────

    async def link_account(self, account: Account) -> Account:
        """Link an external account, refreshing it if already linked."""
        validate_account(account)
        user_id = account.user_id or ""
        key = self._account_key(account.provider, account.provider_account_id)
        with _backend_errors("link_account"):
            r = await self._redis()
            if not await r.exists(self._user_key(user_id)):
                msg = "user not found"
                raise UserNotFoundError(msg, user_id=user_id)
            now = self._clock()
            raw = await r.get(key)
            existing = self._decode_account(raw) if raw else None
            if existing is not None and existing.user_id != user_id:
                msg = "account is linked to another user"
                raise ValidationError(msg, provider=account.provider)
            stored = replace(
                account,
                id=existing.id if existing else (account.id or generate_id()),
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            async with r.pipeline(transaction=True) as pipe:
                pipe.set(key, self._encode_account(stored))
                pipe.sadd(self._user_accounts_key(user_id), key)
                await pipe.execute()
        return stored

    async def unlink_account(self, provider: str, provider_account_id: str) -> None:
        """Remove a linked account."""
        key = self._account_key(provider, provider_account_id)
        with _backend_errors("unlink_account"):
            r = await self._redis()
            raw = await r.get(key)
            if not raw:
                msg = "account not found"
                raise AccountNotFoundError(msg, provider=provider)
            account = self._decode_account(raw)
            async with r.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                pipe.srem(self._user_accounts_key(account.user_id or ""), key)
                await pipe.execute()

    # ── Sessions ─────────────────────────────────────────────────────

    async def create_session(
        self,
        user_id: str,
        expires_at: float,
        csrf_token: CsrfToken | None = None,
    ) -> Session:
        """Create a session with a fresh opaque token."""
        now = self._clock()
        session = Session(
            session_token=generate_session_token(),
            user_id=user_id,
            expires_at=expires_at,
            csrf_token=csrf_token or CsrfToken(),
            id=generate_id(),
            created_at=now,
            updated_at=now,
        )
        key = self._session_key(session.session_token)
        with _backend_errors("create_session"):
            r = await self._redis()
            if not await r.exists(self._user_key(user_id)):
                msg = "user not found"
                raise UserNotFoundError(msg, user_id=user_id)
            async with r.pipeline(transaction=True) as pipe:
                pipe.hset(key, mapping=self._encode_session(session))
                pipe.expireat(key, int(expires_at) + 1)
                pipe.sadd(self._user_sessions_key(user_id), session.session_token)
                await pipe.execute()
        return session

    async def get_session(self, session_token: str) -> Session:
        """Get a session by token."""
        with _backend_errors("get_session"):
            r = await self._redis()
            data = await r.hgetall(self._session_key(session_token))
        return self._decode_session(session_token, data)

    async def _modify_session(
        self,
        session_token: str,
        operation: str,
        change: Callable[[Session], Session],
    ) -> Session:
        """Apply *change* to the stored session in an optimistic transaction."""
        key = self._session_key(session_token)
        with _backend_errors(operation):
            r = await self._redis()
            async with r.pipeline(transaction=True) as pipe:
                for _ in range(MAX_WATCH_RETRIES):
                    try:
                        await pipe.watch(key)
                        stored = self._decode_session(session_token, await pipe.hgetall(key))
                        updated = change(stored)
                        pipe.multi()
                        pipe.hset(key, mapping=self._encode_session(updated))
                        pipe.expireat(key, int(updated.expires_at) + 1)
                        await pipe.execute()
                    except WatchError:
                        logger.debug("Session write conflict during %s, retrying", operation)
                        continue
                    finally:
                        await pipe.reset()
                    return updated
        msg = f"redis {operation} gave up after {MAX_WATCH_RETRIES} write conflicts"
        raise AdapterError(msg, operation=operation)

    async def update_session(self, session: Session) -> Session:
        """Store the CSRF sub-record and the later of both expiries."""

        def change(stored: Session) -> Session:
            return replace(
                stored,
                csrf_token=session.csrf_token,
                expires_at=max(stored.expires_at, session.expires_at),
                updated_at=self._clock(),
            )

        return await self._modify_session(session.session_token, "update_session", change)

    async def refresh_session(self, session: Session) -> Session:
        """Slide the expiry, never moving it backwards."""

        def change(stored: Session) -> Session:
            if session.expires_at <= stored.expires_at:
                return stored
            return replace(stored, expires_at=session.expires_at, updated_at=self._clock())

        return await self._modify_session(session.session_token, "refresh_session", change)

    async def delete_session(self, session_token: str) -> None:
        """Delete a session."""
        key = self._session_key(session_token)
        with _backend_errors("delete_session"):
            r = await self._redis()
            user_id = await r.hget(key, "user_id")
            if not user_id:
                msg = "session not found"
                raise SessionNotFoundError(msg)
            async with r.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                pipe.srem(self._user_sessions_key(user_id), session_token)
                await pipe.execute()

    # ── Verification tokens ──────────────────────────────────────────

    async def create_verification_token(self, verification_token: VerificationToken) -> VerificationToken:
        """Store a single-use verification token."""
        if not verification_token.identifier or not verification_token.token:
            msg = "verification token identifier and token are required"
            raise ValidationError(msg)
        stored = replace(verification_token, created_at=self._clock())
        key = self._verification_key(stored.identifier, stored.token)
        with _backend_errors("create_verification_token"):
            r = await self._redis()
            async with r.pipeline(transaction=True) as pipe:
                pipe.hset(key, mapping={"expires_at": repr(stored.expires_at), "created_at": repr(stored.created_at)})
                pipe.expireat(key, int(stored.expires_at) + 1)
                await pipe.execute()
        return stored

    async def use_verification_token(self, identifier: str, token: str) -> VerificationToken:
        """Consume a verification token; read and delete are one transaction."""
        key = self._verification_key(identifier, token)
        with _backend_errors("use_verification_token"):
            r = await self._redis()
            async with r.pipeline(transaction=True) as pipe:
                pipe.hgetall(key)
                pipe.delete(key)
                data, _ = await pipe.execute()
        if not data or float(data.get("expires_at", 0)) <= self._clock():
            msg = "verification token not found"
            raise VerificationTokenNotFoundError(msg, identifier=identifier)
        return VerificationToken(
            identifier=identifier,
            token=token,
            expires_at=float(data["expires_at"]),
            created_at=float(data.get("created_at", 0)),
        )

    async def close(self) -> None:
        """Close the Redis connection if this adapter opened it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
