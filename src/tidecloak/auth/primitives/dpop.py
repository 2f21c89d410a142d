"""DPoP (Demonstrating Proof of Possession) proof signing, RFC 9449.

Generates a per-client key pair and signs short-lived proof JWTs that bind
token requests to that key. Keys live in memory for the lifetime of the
signer; a new signer means a new key and therefore new tokens.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import re
import time
import uuid
from typing import Any
from urllib.parse import urlparse

import jwt
from cryptography.hazmat.primitives.asymmetric import ec, ed25519
from jwt.algorithms import ECAlgorithm, OKPAlgorithm

from tidecloak.auth.models.errors import DPoPError

logger = logging.getLogger(__name__)

MAX_NONCE_LENGTH = 512
# Nonces end up in HTTP headers, so printable ASCII only
VALID_NONCE_PATTERN = re.compile(r"^[\x21-\x7E]+$")

_CURVES = {
    "ES256": ec.SECP256R1,
    "ES384": ec.SECP384R1,
    "ES512": ec.SECP521R1,
}

SUPPORTED_ALGORITHMS = (*_CURVES, "EdDSA")


def validate_nonce(nonce: Any) -> str:
    """Check a server-provided nonce is safe to echo back.

    Raises:
        DPoPError: If the nonce is empty, too long or not printable ASCII
    """
    if not isinstance(nonce, str) or not nonce:
        raise DPoPError("DPoP nonce must be a non-empty string")
    if len(nonce) > MAX_NONCE_LENGTH:
        raise DPoPError(
            f"DPoP nonce exceeds maximum length of {MAX_NONCE_LENGTH} characters"
        )
    if not VALID_NONCE_PATTERN.match(nonce):
        raise DPoPError("DPoP nonce contains invalid characters")
    return nonce


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


class DPoPSigner:
    """Holds a DPoP key pair and the latest authorization server nonce."""

    def __init__(
        self,
        algorithm: str = "ES256",
        server_supported_algorithms: list[str] | None = None,
    ):
        """Initialize the signer and generate its key pair.

        Args:
            algorithm: Signature algorithm (ES256, ES384, ES512 or EdDSA)
            server_supported_algorithms: Algorithms the authorization server
                advertises; the requested one must be among them

        Raises:
            DPoPError: If the algorithm is unknown or not server-supported
        """
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise DPoPError(f"Unknown signature algorithm: {algorithm}")
        if (
            server_supported_algorithms is not None
            and algorithm not in server_supported_algorithms
        ):
            raise DPoPError(
                f"Requested algorithm '{algorithm}' is not supported by the server. "
                f"Server supports: {', '.join(server_supported_algorithms)}"
            )

        self.algorithm = algorithm
        self.nonce: str | None = None
        if algorithm == "EdDSA":
            self._private_key = ed25519.Ed25519PrivateKey.generate()
        else:
            self._private_key = ec.generate_private_key(_CURVES[algorithm]())

    @property
    def public_jwk(self) -> dict[str, Any]:
        """Public half of the key as a JWK (no private members)."""
        public_key = self._private_key.public_key()
        if self.algorithm == "EdDSA":
            full = OKPAlgorithm.to_jwk(public_key, as_dict=True)
        else:
            full = ECAlgorithm.to_jwk(public_key, as_dict=True)
        return {k: full[k] for k in ("kty", "crv", "x", "y") if k in full}

    def update_nonce(self, nonce: str) -> None:
        """Remember the nonce from a ``DPoP-Nonce`` response header."""
        self.nonce = validate_nonce(nonce)
        logger.debug("Updated DPoP nonce")

    def proof(
        self,
        url: str,
        method: str,
        access_token: str | None = None,
        nonce: str | None = None,
    ) -> str:
        """Sign a DPoP proof for one HTTP request.

        Args:
            url: Target URL; query and fragment are dropped for ``htu``
            method: HTTP method for ``htm``
            access_token: Bound access token, hashed into ``ath`` when calling
                a resource server
            nonce: Server nonce; defaults to the last one seen

        Returns:
            Compact-serialized proof JWT for the ``DPoP`` header
        """
        parsed = urlparse(url)
        payload: dict[str, Any] = {
            "jti": str(uuid.uuid4()),
            "htm": method.upper(),
            "htu": f"{parsed.scheme}://{parsed.netloc}{parsed.path}",
            "iat": int(time.time()),
        }
        if access_token is not None:
            payload["ath"] = _b64url(hashlib.sha256(access_token.encode()).digest())
        nonce = nonce if nonce is not None else self.nonce
        if nonce is not None:
            payload["nonce"] = nonce

        return jwt.encode(
            payload,
            self._private_key,
            algorithm=self.algorithm,
            headers={"typ": "dpop+jwt", "jwk": self.public_jwk},
        )
