"""GitHub OAuth2 provider."""

from __future__ import annotations

import logging

from typing import Any

from ..exceptions import (
    NoVerifiedPrimaryEmailError,
    OrganizationNotAllowedError,
    UpstreamProfileFetchError,
)
from .base import OAuthProvider, Profile, TokenSet


logger = logging.getLogger("authgate.providers.github")

AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
TOKEN_URL = "https://github.com/login/oauth/access_token"  # noqa: S105
USER_URL = "https://api.github.com/user"
EMAILS_URL = "https://api.github.com/user/emails"
ORGS_URL = "https://api.github.com/user/orgs"

DEFAULT_SCOPES = ["user:email", "read:user"]


class GitHubProvider(OAuthProvider):
    """GitHub OAuth2 provider.

    GitHub has no OIDC; the profile comes from the REST API. When the
    profile hides the email address and the granted scopes allow it, the
    primary verified address is read from ``/user/emails``.

    Parameters
    ----------
    client_id : str
        GitHub OAuth app client ID.
    client_secret : str
        GitHub OAuth app client secret.
    callback_url : str
        Redirect URI registered with the OAuth app.
    scopes : list[str], optional
        Scopes requested in addition to ``user:email read:user``.
    allowed_orgs : list[str], optional
        When set, only members of one of these organizations may sign in.
        Requires the ``read:org`` scope, which is added automatically.
    **kwargs : Any
        Passed to :class:`OAuthProvider` (``secret_key``, ``http_client``).
    """

    provider_id = "github"
    display_name = "GitHub"

    def __init__(
        self,
        client_id: str,
        client_secret: str = "",
        callback_url: str = "",
        scopes: list[str] | None = None,
        allowed_orgs: list[str] | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize GitHub provider."""
        requested = list(DEFAULT_SCOPES)
        for scope in scopes or []:
            if scope not in requested:
                requested.append(scope)
        self.allowed_orgs = [org.lower() for org in allowed_orgs or []]
        if self.allowed_orgs and "read:org" not in requested:
            requested.append("read:org")
        super().__init__(
            client_id=client_id,
            client_secret=client_secret,
            callback_url=callback_url,
            scopes=requested,
            authorize_url=AUTHORIZE_URL,
            token_url=TOKEN_URL,
            userinfo_url=USER_URL,
            **kwargs,
        )

    def _may_read_emails(self) -> bool:
        return any(scope.strip() in ("user", "user:email") for scope in self.scopes)

    async def fetch_profile(self, tokens: TokenSet) -> Profile:
        """Fetch the GitHub user, its primary email and org memberships."""
        data = await self.get_json(self.userinfo_url, tokens.access_token)
        if not isinstance(data, dict) or "id" not in data:
            msg = "GitHub profile has no id"
            raise UpstreamProfileFetchError(msg, provider=self.provider_id)

        email = data.get("email") or ""
        verified: bool | None = None
        if not email and self._may_read_emails():
            email = await self._primary_email(tokens.access_token)
            verified = True
        if not email:
            msg = "no verified primary email found"
            raise NoVerifiedPrimaryEmailError(msg, provider=self.provider_id)

        if self.allowed_orgs:
            await self._check_orgs(tokens.access_token)

        return Profile(
            id=str(data["id"]),
            email=email,
            name=data.get("name") or data.get("login", ""),
            image=data.get("avatar_url"),
            email_verified=verified,
        )

    async def _primary_email(self, access_token: str) -> str:
        emails = await self.get_json(EMAILS_URL, access_token)
        for entry in emails:
            if entry.get("primary") and entry.get("verified"):
                return entry.get("email", "")
        return ""

    async def _check_orgs(self, access_token: str) -> None:
        orgs = await self.get_json(ORGS_URL, access_token)
        member_of = {org.get("login", "").lower() for org in orgs}
        if not member_of.intersection(self.allowed_orgs):
            logger.info("Rejected GitHub sign-in outside the allowed organizations")
            msg = "user is not a member of an allowed organization"
            raise OrganizationNotAllowedError(msg, provider=self.provider_id)

