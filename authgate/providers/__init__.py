"""Identity providers and the provider registry."""

from __future__ import annotations

import time

from typing import TYPE_CHECKING

from .base import (
    AuthIntent,
    AuthParams,
    OAuthProvider,
    Profile,
    Provider,
    ProviderRegistry,
    TokenSet,
    UnimplementedProvider,
)
from .entraid import EntraIDProvider
from .github import GitHubProvider


if TYPE_CHECKING:
    from collections.abc import Callable

    from ..config import AuthGateSettings


def create_providers_from_settings(
    settings: AuthGateSettings, clock: Callable[[], float] = time.time
) -> list[Provider]:
    """Create the providers enabled in *settings*.

    Parameters
    ----------
    settings : AuthGateSettings
        Loaded settings. A provider section that is ``None`` is skipped.
    clock : Callable[[], float], optional
        Time source for handshake state expiry.

    Returns
    -------
    list[Provider]
        The configured providers, ready to register.
    """
    providers: list[Provider] = []
    if settings.github is not None:
        gh = settings.github
        providers.append(
            GitHubProvider(
                client_id=gh.client_id,
                client_secret=gh.client_secret,
                callback_url=gh.callback_url,
                scopes=gh.scopes.split() or None,
                allowed_orgs=gh.allowed_orgs or None,
                secret_key=settings.secret_key,
                clock=clock,
            )
        )
    if settings.entraid is not None:
        entra = settings.entraid
        providers.append(
            EntraIDProvider(
                client_id=entra.client_id,
                client_secret=entra.client_secret,
                callback_url=entra.callback_url,
                tenant=entra.tenant,
                scopes=entra.scopes.split() or None,
                secret_key=settings.secret_key,
                clock=clock,
            )
        )
    return providers


__all__ = [
    "AuthIntent",
    "AuthParams",
    "EntraIDProvider",
    "GitHubProvider",
    "OAuthProvider",
    "Profile",
    "Provider",
    "ProviderRegistry",
    "TokenSet",
    "UnimplementedProvider",
    "create_providers_from_settings",
]
