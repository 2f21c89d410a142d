"""Token models for the external-mode token endpoint and device storage.

Contains the token endpoint response and the token set persisted through
the platform adapter.
"""

from __future__ import annotations

import time
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict


@dataclass
class NativeTokenData:
    """Token set persisted on the device by the platform adapter.

    ``expires_at`` is a Unix timestamp. ``doken`` is the delegated
    encryption session token issued alongside the standard tokens.
    """

    access_token: str
    refresh_token: str | None = None
    id_token: str | None = None
    expires_at: float | None = None
    doken: str | None = None


class TokenResponse(BaseModel):
    """OAuth 2.0 token response (RFC 6749 Section 5).

    Represents both successful responses (Section 5.1) and error responses
    (Section 5.2) from the token endpoint.
    """

    model_config = ConfigDict(extra="allow")

    # Success response fields (RFC 6749 Section 5.1)
    access_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int | None = None
    refresh_token: str | None = None
    refresh_expires_in: int | None = None
    id_token: str | None = None
    scope: str | None = None
    doken: str | None = None

    # Error response fields (RFC 6749 Section 5.2)
    error: str | None = None
    error_description: str | None = None

    def is_success(self) -> bool:
        return self.error is None and self.access_token is not None

    def to_token_data(self, previous: NativeTokenData | None = None) -> NativeTokenData:
        """Convert a successful response into a storable token set.

        Refresh responses may omit the refresh token or doken; the previous
        values are carried over in that case.

        Raises:
            ValueError: If the response is not successful
        """
        if not self.is_success():
            raise ValueError("Cannot convert error response to token data")

        return NativeTokenData(
            access_token=self.access_token,
            refresh_token=self.refresh_token
            or (previous.refresh_token if previous else None),
            id_token=self.id_token or (previous.id_token if previous else None),
            expires_at=(
                time.time() + self.expires_in if self.expires_in is not None else None
            ),
            doken=self.doken or (previous.doken if previous else None),
        )


@dataclass(frozen=True)
class TokenRequest:
    """Authorization code grant (RFC 6749 Section 4.1.3) with PKCE verifier."""

    token_endpoint: str
    code: str
    redirect_uri: str
    client_id: str
    code_verifier: str

    grant_type: str = "authorization_code"

    def to_form_data(self) -> dict[str, str]:
        """Form fields for the application/x-www-form-urlencoded body."""
        return {
            "grant_type": self.grant_type,
            "code": self.code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
            "code_verifier": self.code_verifier,
        }


@dataclass(frozen=True)
class RefreshTokenRequest:
    """Refresh token grant (RFC 6749 Section 6)."""

    token_endpoint: str
    refresh_token: str
    client_id: str

    grant_type: str = "refresh_token"

    def to_form_data(self) -> dict[str, str]:
        return {
            "grant_type": self.grant_type,
            "refresh_token": self.refresh_token,
            "client_id": self.client_id,
        }
