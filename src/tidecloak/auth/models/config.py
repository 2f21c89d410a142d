"""Configuration models for the IAM session manager.

Validates the Keycloak-style adapter JSON (``auth-server-url``, ``realm``,
``resource`` ...) plus the mode-specific sub-configuration for delegated and
external modes. Models are frozen: a loaded config never changes.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Literal, Mapping

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

AuthModeName = Literal["direct", "delegated", "external"]
SessionMode = Literal["online", "offline"]

# Names the adapter JSON has used for each mode
MODE_ALIASES: dict[str, AuthModeName] = {
    "direct": "direct",
    "frontchannel": "direct",
    "front-channel": "direct",
    "delegated": "delegated",
    "hybrid": "delegated",
    "bff": "delegated",
    "external": "external",
    "native": "external",
}

DEFAULT_SCOPE = "openid profile email"
DEFAULT_PROVIDER = "tidecloak-auth"

HeadersSource = Mapping[str, str] | Callable[[], Mapping[str, str]]


class OIDCSettings(BaseModel):
    """Authorization request coordinates for delegated mode."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    authorization_endpoint: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "authorizationEndpoint", "authorization_endpoint"
        ),
    )
    client_id: str | None = Field(
        default=None, validation_alias=AliasChoices("clientId", "client_id")
    )
    redirect_uri: str | None = Field(
        default=None, validation_alias=AliasChoices("redirectUri", "redirect_uri")
    )
    scope: str = DEFAULT_SCOPE
    prompt: str | None = None


class TokenExchangeSettings(BaseModel):
    """Backend endpoint that swaps the authorization code for a session."""

    model_config = ConfigDict(
        frozen=True, populate_by_name=True, arbitrary_types_allowed=True
    )

    endpoint: str | None = None
    provider: str = DEFAULT_PROVIDER
    # Static map or a zero-argument callable (e.g. reading a fresh CSRF token)
    headers: HeadersSource | None = None

    def resolve_headers(self) -> dict[str, str]:
        """Materialize custom headers for one request."""
        if self.headers is None:
            return {}
        if callable(self.headers):
            return dict(self.headers() or {})
        return dict(self.headers)


class IAMConfig(BaseModel):
    """Complete, immutable session manager configuration.

    Accepts the adapter JSON downloaded from the realm's client settings.
    Unknown keys (``ssl-required``, ``client-origin-auth-<origin>`` ...) are
    kept and reachable through ``model_extra``.
    """

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        extra="allow",
        arbitrary_types_allowed=True,
    )

    mode: AuthModeName = Field(
        default="direct", validation_alias=AliasChoices("mode", "authMode")
    )

    # Issuer / client coordinates
    auth_server_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "auth-server-url", "authServerUrl", "auth_server_url"
        ),
    )
    realm: str | None = None
    resource: str | None = Field(
        default=None, validation_alias=AliasChoices("resource", "clientId")
    )
    redirect_uri: str | None = Field(
        default=None, validation_alias=AliasChoices("redirectUri", "redirect_uri")
    )

    # Enclave coordinates
    vendor_id: str | None = Field(
        default=None, validation_alias=AliasChoices("vendorId", "vendor_id")
    )
    home_ork_url: str | None = Field(
        default=None, validation_alias=AliasChoices("homeOrkUrl", "home_ork_url")
    )

    # Local JWKS for server-side verification
    jwk: dict[str, Any] | None = None

    # Delegated mode
    oidc: OIDCSettings | None = None
    token_exchange: TokenExchangeSettings | None = Field(
        default=None,
        validation_alias=AliasChoices("tokenExchange", "token_exchange"),
    )

    # External mode
    adapter: Any = None
    session_mode: SessionMode = Field(
        default="online", validation_alias=AliasChoices("sessionMode", "session_mode")
    )
    dpop: bool = False
    encryption_bridge: bool = Field(
        default=True,
        validation_alias=AliasChoices("encryptionBridge", "encryption_bridge"),
    )

    @field_validator("mode", mode="before")
    @classmethod
    def normalize_mode(cls, v: Any) -> str:
        if v is None:
            return "direct"
        name = str(v).strip().lower()
        if name not in MODE_ALIASES:
            raise ValueError(f"Unknown auth mode: {v}")
        return MODE_ALIASES[name]

    @field_validator("session_mode", mode="before")
    @classmethod
    def normalize_session_mode(cls, v: Any) -> str:
        return "online" if v is None else str(v).strip().lower()

    @classmethod
    def from_file(cls, path: str | Path) -> IAMConfig:
        """Load an adapter JSON file."""
        return cls.model_validate(json.loads(Path(path).read_text(encoding="utf-8")))

    @property
    def base_url(self) -> str:
        """Auth server URL without a trailing slash."""
        return (self.auth_server_url or "").rstrip("/")

    @property
    def issuer(self) -> str:
        return f"{self.base_url}/realms/{self.realm}"

    def client_origin_auth(self, origin: str) -> Any:
        """Per-origin client authentication blob, if the adapter JSON has one."""
        return (self.model_extra or {}).get(f"client-origin-auth-{origin}")
