"""Security-related models for the authorization code flow.

Contains the PKCE transaction generated for each login attempt.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class PKCETransaction:
    """PKCE (Proof Key for Code Exchange) values for one authorization attempt.

    The verifier is kept client-side until the code comes back, the challenge
    travels with the authorization request (RFC 7636).
    """

    verifier: str = field()
    challenge: str = field()
    method: str = field(default="S256")

    def __post_init__(self) -> None:
        """Validate PKCE values meet RFC 7636 requirements."""
        if not (43 <= len(self.verifier) <= 128):
            raise ValueError("verifier must be 43-128 characters")
        if self.method != "S256":
            raise ValueError("Only S256 code challenge method is supported")
