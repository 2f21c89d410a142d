"""PKCE (Proof Key for Code Exchange) generation for OAuth 2.0 flows.

Implements RFC 7636 verifier and S256 challenge generation. Pure functions
of randomness; safe to call repeatedly and discard the result.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
import string

from tidecloak.auth.models.security import PKCETransaction

# RFC 7636 Section 4.1 unreserved characters
UNRESERVED_ALPHABET = (
    string.ascii_uppercase + string.ascii_lowercase + string.digits + "-._~"
)

VERIFIER_LENGTH = 96


def make_verifier(length: int = VERIFIER_LENGTH) -> str:
    """Generate a random code verifier of exactly ``length`` characters.

    Each cryptographically secure random byte is mapped onto the unreserved
    alphabet by modulo.

    Args:
        length: Number of characters to produce

    Returns:
        Random verifier string
    """
    return "".join(
        UNRESERVED_ALPHABET[b % len(UNRESERVED_ALPHABET)]
        for b in secrets.token_bytes(length)
    )


def make_challenge(verifier: str) -> str:
    """Derive the S256 code challenge for a verifier.

    RFC 7636 Section 4.2: BASE64URL-ENCODE(SHA256(verifier)) without padding.

    Args:
        verifier: The code verifier to hash

    Returns:
        Base64url-encoded SHA256 digest of the verifier
    """
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def make_pkce() -> PKCETransaction:
    """Generate a fresh verifier/challenge pair using the S256 method."""
    verifier = make_verifier(VERIFIER_LENGTH)
    return PKCETransaction(
        verifier=verifier,
        challenge=make_challenge(verifier),
        method="S256",
    )
