"""Direct mode: the browser holds tokens through the OIDC adapter."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from tidecloak.auth.adapters import BrowserContext, OIDCAdapter
from tidecloak.auth.models.config import IAMConfig
from tidecloak.auth.models.errors import IAMError
from tidecloak.auth.models.events import (
    AuthError,
    AuthRefreshError,
    AuthRefreshSuccess,
    AuthSuccess,
    InitError,
    Logout,
    Ready,
    TokenExpired,
)
from tidecloak.auth.models.session import SessionState
from tidecloak.auth.primitives import claims
from tidecloak.auth.services.base import (
    SELF_DECRYPT,
    SELF_ENCRYPT,
    AuthMode,
    require_tag_roles,
)
from tidecloak.shared.browser import EXPIRED
from tidecloak.shared.events import EventBus

logger = logging.getLogger(__name__)

TOKEN_COOKIE = "kcToken"
SILENT_CHECK_SSO_PATH = "/silent-check-sso.html"
DEFAULT_REDIRECT_PATH = "/auth/redirect"

# get_token() refreshes once fewer than this many seconds remain
MIN_TOKEN_VALIDITY = 3


class DirectMode(AuthMode):
    """Wraps an ``OIDCAdapter`` and mirrors its lifecycle onto the event bus.

    The access token is also written to the ``kcToken`` cookie so server
    middleware can verify requests.
    """

    name = "direct"

    def __init__(
        self,
        config: IAMConfig,
        state: SessionState,
        events: EventBus,
        browser: BrowserContext | None,
        adapter: OIDCAdapter,
    ):
        super().__init__(config, state, events)
        self.browser = browser
        self.adapter = adapter
        self._bootstrapping = False
        self._wire_adapter()

    def _wire_adapter(self) -> None:
        adapter = self.adapter
        adapter.on_ready = self._on_adapter_ready
        adapter.on_auth_success = lambda: self.emit(AuthSuccess())
        adapter.on_auth_error = lambda err=None: self.emit(AuthError(_as_error(err)))
        adapter.on_auth_refresh_success = lambda: self.emit(AuthRefreshSuccess())
        adapter.on_auth_refresh_error = lambda err=None: self.emit(
            AuthRefreshError(_as_error(err) if err is not None else None)
        )
        adapter.on_auth_logout = lambda: self.emit(Logout())
        adapter.on_token_expired = lambda: self.emit(TokenExpired())

    def _on_adapter_ready(self, authenticated: bool) -> None:
        # init() emits its own ready once bootstrap settles
        if not self._bootstrapping:
            self.emit(Ready(bool(authenticated)))

    async def init(self) -> bool:
        if self.adapter.did_initialize:
            logger.debug("OIDC adapter already initialized")
            return bool(self.adapter.token_parsed)

        authenticated = False
        self._bootstrapping = True
        try:
            authenticated = bool(
                await self.adapter.init(
                    on_load="check-sso",
                    silent_check_sso_redirect_uri=(
                        f"{self._origin()}{SILENT_CHECK_SSO_PATH}"
                    ),
                    pkce_method="S256",
                )
            )
            if authenticated and self.adapter.token:
                self._store_cookie()
        except Exception as e:
            logger.error(f"OIDC adapter init failed: {e}")
            self.emit(InitError(e))
        finally:
            self._bootstrapping = False

        self.state.authenticated = authenticated
        self.emit(Ready(authenticated))
        return authenticated

    def is_logged_in(self) -> bool:
        return bool(self.adapter.token)

    async def get_token(self) -> str | None:
        if not self.adapter.token:
            return None
        if self.get_token_expiry_seconds() < MIN_TOKEN_VALIDITY:
            await self.refresh_token()
        return self.adapter.token

    def get_token_expiry_seconds(self) -> int:
        return claims.expires_in(
            self.adapter.token_parsed, time_skew=self.adapter.time_skew or 0
        )

    def get_id_token(self) -> str | None:
        return self.adapter.id_token

    def has_realm_role(self, role: str) -> bool:
        return self.adapter.has_realm_role(role)

    def has_client_role(self, role: str, client_id: str | None = None) -> bool:
        return self.adapter.has_resource_role(role, client_id)

    def get_claim(self, key: str) -> Any:
        return claims.get_claim(self.adapter.token_parsed, key)

    def get_id_claim(self, key: str) -> Any:
        return claims.get_claim(self.adapter.id_token_parsed, key)

    def get_name(self) -> str | None:
        return self.get_claim("preferred_username")

    async def refresh_token(self) -> bool:
        refreshed = await self.adapter.update_token()
        logger.debug(
            f"Token {'refreshed' if refreshed else 'still valid'}: "
            f"{self.get_token_expiry_seconds()}s"
        )
        self._store_cookie()
        return refreshed

    async def force_refresh_token(self) -> bool:
        self._clear_cookie()
        refreshed = await self.adapter.update_token(-1)
        logger.debug(
            f"Token {'immediately refreshed' if refreshed else 'not refreshed'}: "
            f"{self.get_token_expiry_seconds()}s"
        )
        self._store_cookie()
        return refreshed

    async def login(self, return_url: str = "") -> None:
        self.adapter.login(redirect_uri=self._redirect_uri())

    async def logout(self) -> None:
        self._clear_cookie()
        self.state.clear()
        self.adapter.logout(redirect_uri=self._redirect_uri())

    async def encrypt(self, items: list[Mapping[str, Any]]) -> list[Any]:
        require_tag_roles(items, self._roles(), SELF_ENCRYPT)
        return await self.adapter.encrypt(items)

    async def decrypt(self, items: list[Mapping[str, Any]]) -> list[Any]:
        require_tag_roles(items, self._roles(), SELF_DECRYPT)
        return await self.adapter.decrypt(items)

    def _roles(self) -> set[str]:
        return claims.token_roles(self.adapter.token_parsed, self.config.resource)

    def _origin(self) -> str:
        return self.browser.origin if self.browser is not None else ""

    def _redirect_uri(self) -> str:
        return self.config.redirect_uri or f"{self._origin()}{DEFAULT_REDIRECT_PATH}"

    def _store_cookie(self) -> None:
        if self.browser is not None and self.adapter.token:
            self.browser.set_cookie(TOKEN_COOKIE, self.adapter.token, path="/")

    def _clear_cookie(self) -> None:
        if self.browser is not None:
            self.browser.set_cookie(TOKEN_COOKIE, "", path="/", expires=EXPIRED)


def _as_error(err: Any) -> Exception:
    if isinstance(err, Exception):
        return err
    return IAMError(str(err) if err is not None else "Authentication error")
