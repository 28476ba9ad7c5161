"""PKCE (Proof Key for Code Exchange) implementation.

RFC 7636 - Proof Key for Code Exchange for OAuth 2.0.
Uses S256 challenge method (SHA-256 hash of the code verifier).

Verifiers are derived from the handshake state with an HMAC, so the
callback can recompute the verifier without storing it anywhere.
"""

from __future__ import annotations

import hashlib
import hmac

from base64 import urlsafe_b64encode
from dataclasses import dataclass


def _b64(data: bytes) -> str:
    return urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


@dataclass(frozen=True)
class PKCEChallenge:
    """PKCE code verifier and challenge pair.

    Attributes
    ----------
    verifier : str
        The code verifier (43 characters of base64url).
    challenge : str
        The code challenge (base64url-encoded SHA-256 hash of verifier).
    method : str
        The challenge method, always "S256".
    """

    verifier: str
    challenge: str
    method: str = "S256"

    @classmethod
    def from_verifier(cls, verifier: str) -> PKCEChallenge:
        """Build the S256 challenge for *verifier*."""
        digest = hashlib.sha256(verifier.encode("ascii")).digest()
        return cls(verifier=verifier, challenge=_b64(digest))

    @classmethod
    def derive(cls, secret: str, provider_id: str, state: str) -> PKCEChallenge:
        """Derive the pair bound to one provider and handshake state.

        Parameters
        ----------
        secret : str
            Key shared by every worker that may serve the callback.
        provider_id : str
            The provider the handshake runs against.
        state : str
            The handshake state.

        Returns
        -------
        PKCEChallenge
            The same pair for the same inputs.
        """
        mac = hmac.new(secret.encode(), f"{provider_id}:{state}".encode(), hashlib.sha256)
        return cls.from_verifier(_b64(mac.digest()))
