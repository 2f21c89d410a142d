"""Interfaces of the collaborators the session manager drives.

None of these are implemented here. Hosts (or their framework bindings)
provide them:

- ``BrowserContext``: the page the manager runs in. No context means a
  server-side render, where bootstrap is a documented no-op.
- ``OIDCAdapter``: the Keycloak-style client used in direct mode.
- ``PlatformAdapter``: native-app capabilities used in external mode.
- ``EnclaveClient``: the encrypt/decrypt protocol, treated as opaque.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    MutableMapping,
    Protocol,
    Sequence,
    TypedDict,
)

from tidecloak.auth.models.callback import (
    EncryptionCallbackResult,
    NativeAuthCallbackResult,
)
from tidecloak.auth.models.tokens import NativeTokenData


class EncryptRequest(TypedDict):
    data: str
    tags: list[str]


class DecryptRequest(TypedDict):
    encrypted: str
    tags: list[str]


Unsubscribe = Callable[[], None]


class BrowserContext(Protocol):
    """The page/tab the session manager is running in."""

    @property
    def url(self) -> str:
        """Current location (full href)."""
        ...

    @property
    def origin(self) -> str: ...

    @property
    def title(self) -> str: ...

    @property
    def session_storage(self) -> MutableMapping[str, str]:
        """Per-tab transient storage (survives redirects, not the tab)."""
        ...

    def assign(self, url: str) -> None:
        """Navigate away to ``url``."""
        ...

    def replace_state(self, url: str, title: str = "") -> None:
        """Rewrite the visible URL without navigating."""
        ...

    def set_cookie(
        self, name: str, value: str, path: str = "/", expires: str | None = None
    ) -> None: ...


@dataclass(frozen=True)
class AdapterOptions:
    """Constructor arguments for the direct-mode OIDC adapter."""

    url: str | None
    realm: str | None
    client_id: str | None
    vendor_id: str | None = None
    home_ork_url: str | None = None
    client_origin_auth: Any = None


class OIDCAdapter(Protocol):
    """Keycloak-style client owning tokens in the browser.

    Performs the authorization code + silent SSO iframe flow itself and
    exposes the parsed token state.
    """

    token: str | None
    id_token: str | None
    refresh_token: str | None
    token_parsed: dict[str, Any] | None
    id_token_parsed: dict[str, Any] | None
    time_skew: float
    did_initialize: bool

    # Lifecycle hooks the session manager wires to its event bus
    on_ready: Callable[[bool], None] | None
    on_auth_success: Callable[[], None] | None
    on_auth_error: Callable[[Any], None] | None
    on_auth_refresh_success: Callable[[], None] | None
    on_auth_refresh_error: Callable[[Any], None] | None
    on_auth_logout: Callable[[], None] | None
    on_token_expired: Callable[[], None] | None

    async def init(
        self, on_load: str, silent_check_sso_redirect_uri: str, pkce_method: str
    ) -> bool: ...

    async def update_token(self, min_validity: float = 5) -> bool: ...

    def login(self, redirect_uri: str) -> None: ...

    def logout(self, redirect_uri: str) -> None: ...

    def has_realm_role(self, role: str) -> bool: ...

    def has_resource_role(self, role: str, resource: str | None = None) -> bool: ...

    async def encrypt(self, items: Sequence[EncryptRequest]) -> list[str]: ...

    async def decrypt(self, items: Sequence[DecryptRequest]) -> list[Any]: ...


AdapterFactory = Callable[[AdapterOptions], OIDCAdapter]


class PlatformAdapter(Protocol):
    """Native app capabilities for external-browser login.

    Implemented per platform (desktop shell, mobile bridge ...). Encryption
    callbacks are optional: adapters that can't deliver them leave
    ``on_encryption_callback`` as None.
    """

    auth_server_url: str
    realm: str
    client_id: str
    scope: str | None
    encryption_page_url: str | None
    on_encryption_callback: (
        Callable[[Callable[[EncryptionCallbackResult], None]], Unsubscribe] | None
    )

    def get_redirect_uri(self) -> str | Awaitable[str]: ...

    async def open_external_url(self, url: str) -> None: ...

    def on_auth_callback(
        self, callback: Callable[[NativeAuthCallbackResult], None]
    ) -> Unsubscribe: ...

    async def save_tokens(self, tokens: NativeTokenData) -> bool: ...

    async def get_tokens(self) -> NativeTokenData | None: ...

    async def delete_tokens(self) -> bool: ...


class EnclaveClient(Protocol):
    """Opaque encrypt/decrypt capability authorized by a doken."""

    async def encrypt(
        self, items: Sequence[EncryptRequest], doken: str | None
    ) -> list[str]: ...

    async def decrypt(
        self, items: Sequence[DecryptRequest], doken: str | None
    ) -> list[Any]: ...
