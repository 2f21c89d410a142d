"""IAM session manager.

One ``IAMService`` per application root. It loads configuration once, picks
the authentication mode (direct, delegated or external), runs bootstrap and
publishes lifecycle events. All session state is owned here and changed only
through its methods; UI bindings read getters or subscribe to events.

Example:
    iam = IAMService(browser=page, adapter_factory=TideCloakAdapter)
    iam.on("authSuccess", lambda event: print("logged in"))
    authenticated = await iam.init_iam(adapter_json)
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx
from pydantic import ValidationError

from tidecloak.auth.adapters import (
    AdapterFactory,
    AdapterOptions,
    BrowserContext,
    EnclaveClient,
)
from tidecloak.auth.models.callback import HybridCallbackData
from tidecloak.auth.models.config import IAMConfig
from tidecloak.auth.models.errors import (
    ConfigurationError,
    IAMError,
    NotInitializedError,
)
from tidecloak.auth.models.events import EventName, InitError
from tidecloak.auth.models.session import SessionState
from tidecloak.auth.primitives.dpop import DPoPSigner
from tidecloak.auth.primitives.http import JsonHttpClient
from tidecloak.auth.services.base import AuthMode
from tidecloak.auth.services.delegated import DelegatedMode, read_hybrid_callback
from tidecloak.auth.services.direct import DirectMode
from tidecloak.auth.services.external import ExternalMode
from tidecloak.auth.services.tokens import TokenEndpointClient
from tidecloak.shared.events import EventBus, EventHandler
from tidecloak.shared.pending import DEFAULT_TIMEOUT, PendingOperations

logger = logging.getLogger(__name__)


class IAMService:
    """Multi-mode authentication session manager.

    Collaborators are injected so hosts (and tests) decide what a "browser",
    an OIDC adapter or an enclave is in their runtime.
    """

    def __init__(
        self,
        browser: BrowserContext | None = None,
        http_client: httpx.AsyncClient | None = None,
        adapter_factory: AdapterFactory | None = None,
        enclave: EnclaveClient | None = None,
        pending_timeout: float = DEFAULT_TIMEOUT,
    ):
        """Initialize the session manager.

        Args:
            browser: Page context; None means a server-side render, where
                ``init_iam`` is a no-op
            http_client: Client for the delegated exchange and token endpoint
            adapter_factory: Builds the direct-mode OIDC adapter
            enclave: Encrypt/decrypt capability for external mode
            pending_timeout: Seconds an external-browser operation may take
        """
        self.browser = browser
        self.events = EventBus()
        self.state = SessionState()
        self._http_client = http_client
        self._adapter_factory = adapter_factory
        self._enclave = enclave
        self._pending_timeout = pending_timeout
        self._config: IAMConfig | None = None
        self._mode: AuthMode | None = None

    # Events

    def on(self, event: EventName, handler: EventHandler) -> IAMService:
        self.events.on(event, handler)
        return self

    def off(self, event: EventName, handler: EventHandler) -> IAMService:
        self.events.off(event, handler)
        return self

    # Configuration and bootstrap

    def load_config(
        self, config: IAMConfig | Mapping[str, Any] | None
    ) -> IAMConfig | None:
        """Load configuration and build the mode, once per instance.

        Later calls return the first config and ignore their argument.

        Returns:
            The loaded config, or None if it is empty or invalid
        """
        if self._config is not None:
            return self._config

        if not config:
            logger.warning("Empty config")
            return None

        try:
            loaded = (
                config
                if isinstance(config, IAMConfig)
                else IAMConfig.model_validate(dict(config))
            )
            mode = self._build_mode(loaded)
        except (ValidationError, ConfigurationError) as e:
            logger.error(f"Failed to load config: {e}")
            return None

        self._config = loaded
        self._mode = mode
        logger.debug(f"Loaded config in {loaded.mode} mode")
        return loaded

    def _build_mode(self, config: IAMConfig) -> AuthMode:
        if config.mode == "delegated":
            return DelegatedMode(
                config,
                self.state,
                self.events,
                self.browser,
                JsonHttpClient(self._http_client),
            )

        if config.mode == "external":
            if config.adapter is None:
                raise ConfigurationError("External mode requires config.adapter")
            return ExternalMode(
                config,
                self.state,
                self.events,
                platform=config.adapter,
                token_client=TokenEndpointClient(
                    self._http_client, dpop=DPoPSigner() if config.dpop else None
                ),
                pending=PendingOperations(self._pending_timeout),
                storage=(
                    self.browser.session_storage if self.browser is not None else {}
                ),
                enclave=self._enclave,
            )

        if self._adapter_factory is None:
            raise ConfigurationError("Direct mode requires an OIDC adapter factory")
        origin = self.browser.origin if self.browser is not None else None
        try:
            adapter = self._adapter_factory(
                AdapterOptions(
                    url=config.auth_server_url,
                    realm=config.realm,
                    client_id=config.resource,
                    vendor_id=config.vendor_id,
                    home_ork_url=config.home_ork_url,
                    client_origin_auth=(
                        config.client_origin_auth(origin) if origin else None
                    ),
                )
            )
        except Exception as e:
            raise ConfigurationError(f"Failed to initialize OIDC adapter: {e}") from e
        return DirectMode(config, self.state, self.events, self.browser, adapter)

    async def init_iam(
        self,
        config: IAMConfig | Mapping[str, Any] | None,
        on_ready: EventHandler | None = None,
    ) -> bool:
        """Load config and run the mode's bootstrap.

        Args:
            config: Adapter JSON or a prebuilt ``IAMConfig``
            on_ready: Optional handler registered for ``ready``

        Returns:
            True if the session is authenticated after bootstrap
        """
        if on_ready is not None:
            self.events.on("ready", on_ready)

        if self.browser is None:
            self.events.emit(
                InitError(IAMError("No browser context: cannot init IAM on server"))
            )
            return False

        if self.load_config(config) is None:
            self.events.emit(InitError(ConfigurationError("Failed to load config")))
            return False

        return await self.mode.init()

    @property
    def mode(self) -> AuthMode:
        if self._mode is None:
            raise NotInitializedError("Config not loaded - call init_iam() first")
        return self._mode

    def get_config(self) -> IAMConfig:
        if self._config is None:
            raise NotInitializedError("Config not loaded - call init_iam() first")
        return self._config

    def get_base_url(self) -> str:
        """Auth server URL without trailing slash; empty in delegated mode."""
        return self._mode.base_url() if self._mode is not None else ""

    # Session

    def is_logged_in(self) -> bool:
        return self._mode is not None and self._mode.is_logged_in()

    async def get_token(self) -> str | None:
        """Current access token, refreshed first if it is about to expire."""
        return await self.mode.get_token()

    def get_token_expiry_seconds(self) -> int:
        return self.mode.get_token_expiry_seconds()

    def get_id_token(self) -> str | None:
        return self.mode.get_id_token()

    def get_name(self) -> str | None:
        return self.mode.get_name()

    def get_return_url(self) -> str | None:
        return self.state.return_url

    def has_realm_role(self, role: str) -> bool:
        return self.mode.has_realm_role(role)

    def has_client_role(self, role: str, client_id: str | None = None) -> bool:
        return self.mode.has_client_role(role, client_id)

    def get_claim(self, key: str) -> Any:
        return self.mode.get_claim(key)

    def get_id_claim(self, key: str) -> Any:
        return self.mode.get_id_claim(key)

    async def refresh_token(self) -> bool:
        return await self.mode.refresh_token()

    async def force_refresh_token(self) -> bool:
        return await self.mode.force_refresh_token()

    async def login(self, return_url: str = "") -> Any:
        """Start login for the active mode.

        Direct and delegated mode navigate away. External mode waits for the
        system browser to call back and returns the authenticated flag.
        """
        return await self.mode.login(return_url)

    async def logout(self) -> None:
        await self.mode.logout()

    # Encryption

    async def encrypt(self, items: list[Mapping[str, Any]]) -> list[Any]:
        """Encrypt ``{"data", "tags"}`` items.

        Raises:
            TagAuthorizationError: If any tag lacks its ``selfencrypt`` role
        """
        return await self.mode.encrypt(items)

    async def decrypt(self, items: list[Mapping[str, Any]]) -> list[Any]:
        """Decrypt ``{"encrypted", "tags"}`` items.

        Raises:
            TagAuthorizationError: If any tag lacks its ``selfdecrypt`` role
        """
        return await self.mode.decrypt(items)

    # Delegated mode helpers

    def get_hybrid_callback_data(
        self,
        clear_storage: bool = True,
        redirect_uri: str | None = None,
        provider: str | None = None,
    ) -> HybridCallbackData:
        """Callback data for hosts that run their own delegated code exchange.

        Usable before config is loaded when ``redirect_uri`` is given.
        """
        return read_hybrid_callback(
            self.browser,
            self._config,
            self.state,
            clear_storage=clear_storage,
            redirect_uri=redirect_uri,
            provider=provider,
        )

    async def close(self) -> None:
        """Release the active mode's resources (HTTP clients, subscriptions).

        Coroutine event handlers still running are awaited first.
        """
        await self.events.drain()
        if self._mode is not None:
            await self._mode.close()
