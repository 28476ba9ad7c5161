"""Identity provider abstractions.

Defines the :class:`Provider` contract the handshake orchestrator talks
to, the :class:`ProviderRegistry` that holds the configured providers,
and :class:`OAuthProvider`, a reference base for HTTP OAuth2 providers
built on ``httpx``.
"""

# pylint: disable=logging-too-many-args,unnecessary-ellipsis

from __future__ import annotations

import logging
import time

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, NoReturn, Protocol
from urllib.parse import urlencode

import httpx

from ..exceptions import (
    AdapterError,
    AuthorizationDeniedError,
    ConfigurationError,
    InvalidStateError,
    MissingCodeError,
    NoAuthURLError,
    NotFoundError,
    ProviderNotFoundError,
    ProviderUnimplementedError,
    RegistryFrozenError,
    TokenExchangeError,
    UpstreamProfileFetchError,
    UserUpsertError,
    ValidationError,
    VerificationTokenNotFoundError,
)
from ..log import redact_sensitive_data
from ..models import Account, AccountType, ProviderType, User, VerificationToken
from .pkce import PKCEChallenge


if TYPE_CHECKING:
    from collections.abc import Callable

    from ..adapters.base import Adapter


logger = logging.getLogger("authgate.providers")

STATE_TTL = 600.0


class AuthParams(Protocol):
    """Named request parameters available on the callback."""

    def get(self, name: str) -> str:
        """Return the parameter *name*, or an empty string when absent."""
        ...


@dataclass(frozen=True)
class AuthIntent:
    """Where to send the user to start a handshake.

    Attributes
    ----------
    url : str
        The provider's authorization URL.
    provider : str
        Id of the provider that produced the intent.
    """

    url: str
    provider: str = ""

    def auth_url(self) -> str:
        """Return the authorization URL.

        Raises
        ------
        NoAuthURLError
            If the provider produced an empty URL.
        """
        if not self.url:
            msg = "provider returned no authorization URL"
            raise NoAuthURLError(msg, provider=self.provider)
        return self.url


class Provider(ABC):
    """Contract every identity provider implements."""

    @property
    @abstractmethod
    def id(self) -> str:
        """Unique provider id, used in the handshake routes."""
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Human readable name."""
        ...

    @property
    @abstractmethod
    def type(self) -> ProviderType:
        """Protocol family."""
        ...

    @abstractmethod
    async def begin_auth(self, adapter: Adapter, state: str) -> AuthIntent:
        """Start a handshake bound to *state*.

        Parameters
        ----------
        adapter : Adapter
            Storage the provider may use to bind the state.
        state : str
            The handshake state to round-trip through the provider.

        Returns
        -------
        AuthIntent
            Where to redirect the user.
        """
        ...

    @abstractmethod
    async def complete_auth(self, adapter: Adapter, params: AuthParams) -> User:
        """Finish a handshake from the callback parameters.

        Exchanges the code, fetches the external profile and upserts the
        user and its linked account.

        Parameters
        ----------
        adapter : Adapter
            Storage used for the upsert.
        params : AuthParams
            The callback's request parameters.

        Returns
        -------
        User
            The canonical local user.
        """
        ...

    async def close(self) -> None:  # noqa: B027
        """Release provider resources. Call from app shutdown."""


class UnimplementedProvider(Provider):
    """Provider whose handshake operations are unsupported.

    Useful as an explicit placeholder: it can be registered, but every
    handshake against it fails with :class:`ProviderUnimplementedError`.

    Parameters
    ----------
    provider_id : str
        The provider id.
    name : str, optional
        Display name (defaults to the id).
    """

    def __init__(self, provider_id: str, name: str = "") -> None:
        self._id = provider_id
        self._name = name or provider_id

    @property
    def id(self) -> str:
        return self._id

    @property
    def name(self) -> str:
        return self._name

    @property
    def type(self) -> ProviderType:
        return ProviderType.UNKNOWN

    def _unimplemented(self, operation: str) -> NoReturn:
        msg = f"provider does not implement {operation}"
        raise ProviderUnimplementedError(msg, provider=self._id, operation=operation)

    async def begin_auth(self, adapter: Adapter, state: str) -> AuthIntent:
        self._unimplemented("begin_auth")

    async def complete_auth(self, adapter: Adapter, params: AuthParams) -> User:
        self._unimplemented("complete_auth")


class ProviderRegistry:
    """Configured providers keyed by id.

    Populated at startup and frozen once traffic begins; registering
    after :meth:`freeze` raises :class:`RegistryFrozenError`.

    Parameters
    ----------
    *providers : Provider
        Providers to register immediately.
    """

    def __init__(self, *providers: Provider) -> None:
        self._providers: dict[str, Provider] = {}
        self._frozen = False
        self.register(*providers)

    def register(self, *providers: Provider) -> None:
        """Register providers.

        Raises
        ------
        RegistryFrozenError
            If the registry has been frozen.
        ConfigurationError
            If a provider has no id or its id is already taken.
        """
        if self._frozen:
            msg = "cannot register providers after the registry is frozen"
            raise RegistryFrozenError(msg)
        for provider in providers:
            if not provider.id:
                msg = "provider id must not be empty"
                raise ConfigurationError(msg)
            if provider.id in self._providers:
                msg = f"provider {provider.id!r} is already registered"
                raise ConfigurationError(msg, provider=provider.id)
            self._providers[provider.id] = provider

    def get(self, provider_id: str) -> Provider:
        """Look up a provider.

        Raises
        ------
        ProviderNotFoundError
            If no provider is registered under *provider_id*.
        """
        try:
            return self._providers[provider_id]
        except KeyError:
            msg = f"provider {provider_id!r} is not registered"
            raise ProviderNotFoundError(msg, provider=provider_id) from None

    def freeze(self) -> None:
        """Reject further registrations."""
        self._frozen = True

    @property
    def frozen(self) -> bool:
        """Whether the registry is frozen."""
        return self._frozen

    def ids(self) -> list[str]:
        """Registered provider ids, in registration order."""
        return list(self._providers)

    def providers(self) -> list[Provider]:
        """Registered providers, in registration order."""
        return list(self._providers.values())

    async def close(self) -> None:
        """Close every registered provider."""
        for provider in self._providers.values():
            await provider.close()

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._providers

    def __len__(self) -> int:
        return len(self._providers)


# ── OAuth2 reference base ────────────────────────────────────────────


@dataclass
class TokenSet:
    """Tokens returned by a provider's token endpoint."""

    access_token: str
    token_type: str = "bearer"
    refresh_token: str | None = None
    expires_in: int | None = None
    scope: str | None = None
    id_token: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def expires_at(self) -> float | None:
        """Absolute expiry of the access token, when reported."""
        if self.expires_in is None:
            return None
        return time.time() + self.expires_in


@dataclass
class Profile:
    """External user profile, normalized across providers."""

    id: str
    email: str
    name: str = ""
    image: str | None = None
    email_verified: bool | None = None


class OAuthProvider(Provider):
    """Base class for OAuth2 authorization-code providers.

    Subclasses set the endpoints and implement :meth:`fetch_profile`.
    The handshake state is stored as a single-use verification token on
    begin and consumed on callback; the PKCE verifier is derived from
    the state with ``secret_key``.

    Parameters
    ----------
    client_id : str
        The OAuth2 client ID.
    client_secret : str
        The OAuth2 client secret.
    callback_url : str
        The redirect URI registered with the provider.
    scopes : list[str]
        Requested OAuth2 scopes.
    authorize_url : str
        The provider's authorization endpoint.
    token_url : str
        The provider's token exchange endpoint.
    userinfo_url : str
        The provider's profile endpoint.
    secret_key : str
        Key for PKCE verifier derivation, shared by all workers.
    use_pkce : bool
        Whether to send a PKCE challenge (default True).
    http_client : httpx.AsyncClient, optional
        Pre-configured client (for testing).
    clock : Callable[[], float], optional
        Time source for handshake state expiry (default: time.time).
    """

    provider_id: str = ""
    display_name: str = ""
    provider_type: ProviderType = ProviderType.OAUTH2
    account_type: AccountType = AccountType.OAUTH2

    def __init__(
        self,
        client_id: str,
        client_secret: str = "",
        callback_url: str = "",
        scopes: list[str] | None = None,
        *,
        authorize_url: str = "",
        token_url: str = "",
        userinfo_url: str = "",
        secret_key: str = "",
        use_pkce: bool = True,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize OAuth provider."""
        if not client_id:
            msg = "client_id is required"
            raise ConfigurationError(msg, provider=self.provider_id)
        if use_pkce and not secret_key:
            msg = "secret_key is required when PKCE is enabled"
            raise ConfigurationError(msg, provider=self.provider_id)
        self.client_id = client_id
        self.client_secret = client_secret
        self.callback_url = callback_url
        self.scopes = scopes or []
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.userinfo_url = userinfo_url
        self.use_pkce = use_pkce
        self._secret_key = secret_key
        self._http_client = http_client
        self._clock = clock

    @property
    def id(self) -> str:
        return self.provider_id

    @property
    def name(self) -> str:
        return self.display_name or self.provider_id

    @property
    def type(self) -> ProviderType:
        return self.provider_type

    @property
    def state_identifier(self) -> str:
        """Verification token identifier binding this provider's states."""
        return f"oauth_state:{self.provider_id}"

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=30.0)
        return self._http_client

    async def close(self) -> None:
        """Close the shared HTTP client. Call from app shutdown lifecycle."""
        if self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None

    def pkce_for(self, state: str) -> PKCEChallenge | None:
        """The PKCE pair bound to *state*, or None when PKCE is off."""
        if not self.use_pkce:
            return None
        return PKCEChallenge.derive(self._secret_key, self.provider_id, state)

    def build_authorize_url(self, state: str, extra_params: dict[str, str] | None = None) -> str:
        """Build the full authorization URL.

        Parameters
        ----------
        state : str
            The handshake state.
        extra_params : dict, optional
            Additional query parameters.

        Returns
        -------
        str
            The full authorization URL.
        """
        params: dict[str, str] = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.callback_url,
            "state": state,
            "scope": " ".join(self.scopes),
        }
        pkce = self.pkce_for(state)
        if pkce:
            params["code_challenge"] = pkce.challenge
            params["code_challenge_method"] = pkce.method
        if extra_params:
            params.update(extra_params)
        return f"{self.authorize_url}?{urlencode(params)}"

    async def begin_auth(self, adapter: Adapter, state: str) -> AuthIntent:
        """Bind *state* and return the authorization URL."""
        if not state:
            msg = "handshake state must not be empty"
            raise InvalidStateError(msg, provider=self.provider_id)
        await adapter.create_verification_token(
            VerificationToken(
                identifier=self.state_identifier,
                token=state,
                expires_at=self._clock() + STATE_TTL,
            )
        )
        return AuthIntent(url=self.build_authorize_url(state), provider=self.provider_id)

    async def complete_auth(self, adapter: Adapter, params: AuthParams) -> User:
        """Validate the callback, exchange the code and upsert the user."""
        error = params.get("error")
        if error:
            msg = params.get("error_description") or f"authorization failed: {error}"
            raise AuthorizationDeniedError(msg, provider=self.provider_id, reason=error)

        code = params.get("code")
        if not code:
            msg = "authorization code not provided"
            raise MissingCodeError(msg, provider=self.provider_id)

        state = params.get("state")
        await self._consume_state(adapter, state)

        pkce = self.pkce_for(state)
        tokens = await self.exchange_code(code, pkce.verifier if pkce else None)
        profile = await self.fetch_profile(tokens)
        user = await self.upsert_user(adapter, profile, tokens)
        logger.info("User %s authenticated via %s", user.id, self.provider_id)
        return user

    async def _consume_state(self, adapter: Adapter, state: str) -> None:
        if not state:
            msg = "state parameter missing"
            raise InvalidStateError(msg, provider=self.provider_id)
        try:
            await adapter.use_verification_token(self.state_identifier, state)
        except VerificationTokenNotFoundError as exc:
            msg = "invalid, expired or already used state parameter"
            raise InvalidStateError(msg, provider=self.provider_id) from exc

    async def exchange_code(self, code: str, pkce_verifier: str | None = None) -> TokenSet:
        """Exchange an authorization code for tokens.

        Never retried: codes are single use.

        Raises
        ------
        TokenExchangeError
            On HTTP failure, an ``error`` body, or a missing access token.
        """
        data: dict[str, str] = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.callback_url,
            "client_id": self.client_id,
        }
        if self.client_secret:
            data["client_secret"] = self.client_secret
        if pkce_verifier:
            data["code_verifier"] = pkce_verifier

        try:
            client = await self._get_client()
            resp = await client.post(
                self.token_url,
                data=data,
                headers={"Accept": "application/json"},
                timeout=30.0,
            )
            resp.raise_for_status()
            raw = resp.json()
        except httpx.HTTPStatusError as exc:
            msg = f"token exchange failed: {exc.response.status_code}"
            raise TokenExchangeError(msg, provider=self.provider_id) from exc
        except httpx.HTTPError as exc:
            msg = f"token exchange request failed: {exc}"
            raise TokenExchangeError(msg, provider=self.provider_id) from exc
        except ValueError as exc:
            msg = "token endpoint returned invalid JSON"
            raise TokenExchangeError(msg, provider=self.provider_id) from exc

        if "error" in raw:
            msg = f"token error: {raw.get('error_description', raw['error'])}"
            raise TokenExchangeError(msg, provider=self.provider_id)
        if not raw.get("access_token"):
            msg = "token endpoint returned no access token"
            raise TokenExchangeError(msg, provider=self.provider_id)

        return TokenSet(
            access_token=raw["access_token"],
            token_type=raw.get("token_type", "bearer"),
            refresh_token=raw.get("refresh_token"),
            expires_in=raw.get("expires_in"),
            scope=raw.get("scope"),
            id_token=raw.get("id_token"),
            raw=raw,
        )

    async def get_json(self, url: str, access_token: str) -> Any:
        """GET a JSON resource with the bearer token.

        Raises
        ------
        UpstreamProfileFetchError
            On HTTP failure or an invalid body.
        """
        try:
            client = await self._get_client()
            resp = await client.get(
                url,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
                timeout=10.0,
            )
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as exc:
            msg = f"profile request failed: {exc.response.status_code}"
            raise UpstreamProfileFetchError(msg, provider=self.provider_id, url=url) from exc
        except httpx.HTTPError as exc:
            msg = f"profile request failed: {exc}"
            raise UpstreamProfileFetchError(msg, provider=self.provider_id, url=url) from exc
        except ValueError as exc:
            msg = "profile endpoint returned invalid JSON"
            raise UpstreamProfileFetchError(msg, provider=self.provider_id, url=url) from exc

    @abstractmethod
    async def fetch_profile(self, tokens: TokenSet) -> Profile:
        """Fetch and normalize the external profile."""
        ...

    async def upsert_user(self, adapter: Adapter, profile: Profile, tokens: TokenSet) -> User:
        """Find or create the local user and link the external account.

        The user is looked up by linked account first, then by email,
        and created when neither matches. Only an email the provider
        reports as verified may attach the account to an existing user.

        Raises
        ------
        UserUpsertError
            If any storage operation fails, or the email belongs to an
            existing user but is not verified by the provider.
        """
        logger.debug("Upserting profile %s", redact_sensitive_data(profile.__dict__))
        try:
            try:
                user = await adapter.get_user_by_account(self.provider_id, profile.id)
            except NotFoundError:
                user = await self._user_for_new_account(adapter, profile)
            await adapter.link_account(
                Account(
                    provider=self.provider_id,
                    provider_account_id=profile.id,
                    type=self.account_type,
                    access_token=tokens.access_token,
                    refresh_token=tokens.refresh_token,
                    expires_at=tokens.expires_at,
                    token_type=tokens.token_type,
                    scope=tokens.scope,
                    id_token=tokens.id_token,
                    user_id=user.id,
                )
            )
            return await adapter.get_user(user.id)
        except (AdapterError, NotFoundError, ValidationError) as exc:
            msg = f"could not store user: {exc.message}"
            raise UserUpsertError(msg, provider=self.provider_id) from exc

    async def _user_for_new_account(self, adapter: Adapter, profile: Profile) -> User:
        try:
            existing = await adapter.get_user_by_email(profile.email)
        except NotFoundError:
            return await adapter.create_user(
                User(
                    email=profile.email,
                    name=profile.name,
                    email_verified=profile.email_verified,
                    image=profile.image,
                )
            )
        if profile.email_verified is not True:
            logger.warning("Refused to link an unverified %s email to user %s", self.provider_id, existing.id)
            msg = "email belongs to an existing user and is not verified by the provider"
            raise UserUpsertError(msg, provider=self.provider_id)
        return existing
