"""Microsoft EntraID (Azure AD) provider."""

from __future__ import annotations

from typing import Any

from ..exceptions import ConfigurationError, UpstreamProfileFetchError
from ..models import AccountType, ProviderType
from .base import OAuthProvider, Profile, TokenSet


GRAPH_API_URL = "https://graph.microsoft.com/v1.0/"

DEFAULT_SCOPES = ["openid", "profile", "email", "User.Read"]

# Well known tenants; a tenant id or verified domain works as well.
COMMON_TENANT = "common"
ORGANIZATIONS_TENANT = "organizations"
CONSUMERS_TENANT = "consumers"


class EntraIDProvider(OAuthProvider):
    """Microsoft identity platform v2 provider.

    The profile comes from Microsoft Graph ``/me``; ``mail`` is preferred
    and ``userPrincipalName`` is the fallback for accounts without a
    mailbox.

    Parameters
    ----------
    client_id : str
        Application (client) ID.
    client_secret : str
        Client secret.
    callback_url : str
        Redirect URI registered for the application.
    tenant : str
        ``common``, ``organizations``, ``consumers``, or a tenant id.
    scopes : list[str], optional
        Scopes requested in addition to the defaults.
    **kwargs : Any
        Passed to :class:`OAuthProvider`.
    """

    provider_id = "entraid"
    display_name = "Microsoft EntraID"
    provider_type = ProviderType.OIDC
    account_type = AccountType.OIDC

    def __init__(
        self,
        client_id: str,
        client_secret: str = "",
        callback_url: str = "",
        tenant: str = COMMON_TENANT,
        scopes: list[str] | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize EntraID provider."""
        tenant = tenant or COMMON_TENANT
        if "/" in tenant:
            msg = f"invalid tenant: {tenant!r}"
            raise ConfigurationError(msg, provider=self.provider_id)
        self.tenant = tenant
        requested = list(DEFAULT_SCOPES)
        for scope in scopes or []:
            if scope not in requested:
                requested.append(scope)
        base = f"https://login.microsoftonline.com/{tenant}/oauth2/v2.0"
        super().__init__(
            client_id=client_id,
            client_secret=client_secret,
            callback_url=callback_url,
            scopes=requested,
            authorize_url=f"{base}/authorize",
            token_url=f"{base}/token",
            userinfo_url=f"{GRAPH_API_URL}me",
            **kwargs,
        )

    async def fetch_profile(self, tokens: TokenSet) -> Profile:
        """Fetch the signed-in user from Microsoft Graph."""
        data = await self.get_json(self.userinfo_url, tokens.access_token)
        if not isinstance(data, dict) or not data.get("id"):
            msg = "Graph profile has no id"
            raise UpstreamProfileFetchError(msg, provider=self.provider_id)

        user_id = data["id"]
        return Profile(
            id=user_id,
            email=data.get("mail") or data.get("userPrincipalName") or "",
            name=data.get("displayName") or "",
            image=f"{GRAPH_API_URL}users/{user_id}/photo/$value",
        )
