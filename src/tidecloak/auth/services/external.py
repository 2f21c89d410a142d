"""External mode: a native app logs in through the system browser.

The app opens the authorization URL externally, receives the redirect through
its platform adapter (deep link, loopback server ...) and exchanges the code
at the realm token endpoint itself. Tokens live in platform storage.

Encryption can be bridged the same way: the operation is handed to an
enclave page in the external browser and the result comes back through the
adapter's encryption callback channel.
"""

from __future__ import annotations

import asyncio
import base64
import inspect
import json
import logging
from typing import Any, Mapping, MutableMapping
from urllib.parse import urlencode

from tidecloak.auth.adapters import EnclaveClient, PlatformAdapter, Unsubscribe
from tidecloak.auth.models.callback import (
    EncryptionCallbackResult,
    NativeAuthCallbackResult,
)
from tidecloak.auth.models.config import DEFAULT_SCOPE, IAMConfig
from tidecloak.auth.models.errors import (
    AuthorizationDeniedError,
    ConfigurationError,
    EncryptionError,
    IAMError,
    MissingVerifierError,
    TokenError,
    TokenExchangeError,
    TokenRefreshError,
)
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
from tidecloak.auth.models.flow import AuthorizationRequest
from tidecloak.auth.models.session import (
    REDIRECT_URI_KEY,
    RETURN_URL_KEY,
    VERIFIER_KEY,
    SessionState,
)
from tidecloak.auth.models.tokens import (
    NativeTokenData,
    RefreshTokenRequest,
    TokenRequest,
)
from tidecloak.auth.primitives import claims
from tidecloak.auth.primitives.pkce import make_pkce
from tidecloak.auth.services.base import (
    SELF_DECRYPT,
    SELF_ENCRYPT,
    AuthMode,
    require_tag_roles,
)
from tidecloak.auth.services.tokens import TokenEndpointClient
from tidecloak.shared.events import EventBus
from tidecloak.shared.pending import PendingOperations
from tidecloak.shared.single_flight import SingleFlight

logger = logging.getLogger(__name__)

# get_token() refreshes proactively inside this window
REFRESH_BUFFER_SECONDS = 30

_BOOTSTRAP_KEY = "external-bootstrap"
_REFRESH_KEY = "external-refresh"


class ExternalMode(AuthMode):
    """Native-app session driven by a ``PlatformAdapter``."""

    name = "external"

    def __init__(
        self,
        config: IAMConfig,
        state: SessionState,
        events: EventBus,
        platform: PlatformAdapter,
        token_client: TokenEndpointClient,
        pending: PendingOperations,
        storage: MutableMapping[str, str],
        enclave: EnclaveClient | None = None,
    ):
        super().__init__(config, state, events)
        self.platform = platform
        self.token_client = token_client
        self.pending = pending
        self.storage = storage
        self.enclave = enclave
        self._flight = SingleFlight()
        self._initialized = False
        self._handled_codes: set[str] = set()
        self._login_request: str | None = None
        self._subscriptions: list[Unsubscribe] = []
        self._tasks: set[asyncio.Task[Any]] = set()

    # Endpoints

    @property
    def realm_url(self) -> str:
        base = (self.platform.auth_server_url or self.config.base_url).rstrip("/")
        return f"{base}/realms/{self.platform.realm or self.config.realm}"

    @property
    def authorization_endpoint(self) -> str:
        return f"{self.realm_url}/protocol/openid-connect/auth"

    @property
    def token_endpoint(self) -> str:
        return f"{self.realm_url}/protocol/openid-connect/token"

    @property
    def encryption_page_url(self) -> str:
        override = getattr(self.platform, "encryption_page_url", None)
        return override or f"{self.realm_url}/tide/enclave"

    @property
    def client_id(self) -> str:
        return self.platform.client_id or self.config.resource or ""

    def base_url(self) -> str:
        return (self.platform.auth_server_url or self.config.base_url).rstrip("/")

    # Bootstrap

    async def init(self) -> bool:
        if self._initialized and not self._flight.in_flight(_BOOTSTRAP_KEY):
            self.emit(Ready(self.state.authenticated))
            return self.state.authenticated
        self._initialized = True
        return await self._flight.run(_BOOTSTRAP_KEY, self._bootstrap)

    async def _bootstrap(self) -> bool:
        authenticated = False
        try:
            self._subscribe()
            tokens = await self.platform.get_tokens()
            if tokens is None:
                logger.debug("No stored tokens")
            elif self.config.session_mode == "offline":
                # Offline sessions trust device storage: no expiry or signature check
                self.state.tokens = tokens
                self.state.authenticated = authenticated = True
            else:
                authenticated = await self._validate_stored(tokens)
        except Exception as e:
            logger.error(f"External mode bootstrap failed: {e}")
            # Next init_iam() retries instead of replaying the failed result
            self._initialized = False
            self.state.clear()
            self.emit(InitError(e))

        self.emit(Ready(authenticated))
        return authenticated

    async def _validate_stored(self, tokens: NativeTokenData) -> bool:
        payload = claims.decode_payload(tokens.access_token)
        if payload is not None and claims.expires_in(payload) > 0:
            self.state.tokens = tokens
            self.state.authenticated = True
            return True

        if payload is not None and tokens.refresh_token:
            logger.info("Stored access token expired, refreshing")
            self.state.tokens = tokens
            return await self.refresh_token()

        logger.warning("Discarding stored tokens, login required")
        await self.platform.delete_tokens()
        return False

    def _subscribe(self) -> None:
        if self._subscriptions:
            return
        self._subscriptions.append(
            self.platform.on_auth_callback(self._on_auth_callback)
        )
        on_encryption = getattr(self.platform, "on_encryption_callback", None)
        if callable(on_encryption):
            self._subscriptions.append(on_encryption(self._on_encryption_callback))

    # Login

    async def login(self, return_url: str = "") -> bool:
        """Open the system browser for login and wait for the callback.

        Returns:
            True once the code has been exchanged; False if the callback
            carried an error or the exchange failed

        Raises:
            PendingOperationTimeout: If no callback arrives in time
        """
        pkce = make_pkce()
        redirect_uri = await self._redirect_uri()

        request_id, future = self.pending.start()
        self._login_request = request_id
        self.storage[VERIFIER_KEY] = pkce.verifier
        self.storage[RETURN_URL_KEY] = return_url or ""
        self.storage[REDIRECT_URI_KEY] = redirect_uri

        url = AuthorizationRequest(
            authorization_endpoint=self.authorization_endpoint,
            client_id=self.client_id,
            redirect_uri=redirect_uri,
            code_challenge=pkce.challenge,
            code_challenge_method=pkce.method,
            state=request_id,
            scope=getattr(self.platform, "scope", None) or DEFAULT_SCOPE,
        ).build_authorization_url()

        logger.debug(f"Opening external browser for login request {request_id}")
        try:
            await self.platform.open_external_url(url)
        except Exception:
            self.pending.discard(request_id)
            raise
        return await future

    async def _redirect_uri(self) -> str:
        redirect_uri = self.platform.get_redirect_uri()
        if inspect.isawaitable(redirect_uri):
            redirect_uri = await redirect_uri
        return redirect_uri

    def _on_auth_callback(self, result: NativeAuthCallbackResult) -> None:
        self._spawn(self.handle_auth_callback(result))

    async def handle_auth_callback(self, result: NativeAuthCallbackResult) -> bool:
        """Exchange the code from an auth redirect, at most once per code."""
        request_id = self._login_request_for(result.state)

        if result.error:
            error = AuthorizationDeniedError(result.error, result.error_description)
            logger.warning(f"Identity provider returned an error: {error}")
            self.emit(AuthError(error))
            self._finish_login(request_id, False)
            return False

        code = result.code
        if not code:
            logger.debug("Auth callback without code or error, ignoring")
            return False

        if code in self._handled_codes and not self._flight.in_flight(code):
            logger.debug("Auth callback for an already handled code, ignoring")
            return self.state.authenticated
        self._handled_codes.add(code)

        return await self._flight.run(
            code, lambda: self._exchange_code(code, request_id)
        )

    async def _exchange_code(self, code: str, request_id: str | None) -> bool:
        verifier = self.storage.pop(VERIFIER_KEY, "")
        return_url = self.storage.pop(RETURN_URL_KEY, "")
        redirect_uri = self.storage.pop(REDIRECT_URI_KEY, "")

        try:
            if not verifier:
                raise MissingVerifierError()
            redirect_uri = redirect_uri or await self._redirect_uri()
            response = await self.token_client.exchange_code_for_token(
                TokenRequest(
                    token_endpoint=self.token_endpoint,
                    code=code,
                    redirect_uri=redirect_uri,
                    client_id=self.client_id,
                    code_verifier=verifier,
                )
            )
            if not response.is_success():
                raise TokenExchangeError(
                    f"{response.error}: "
                    f"{response.error_description or 'Token exchange failed'}"
                )
            tokens = response.to_token_data()
            await self._store_tokens(tokens, TokenExchangeError)
        except IAMError as e:
            logger.error(f"Code exchange failed: {e}")
            self.state.authenticated = False
            self.emit(AuthError(e))
            self._finish_login(request_id, False)
            return False

        self.state.tokens = tokens
        self.state.authenticated = True
        self.state.return_url = return_url or None
        logger.info("Code exchanged for tokens")
        self.emit(AuthSuccess())
        self._finish_login(request_id, True)
        return True

    def _login_request_for(self, state: str | None) -> str | None:
        # Some platforms drop state; fall back to the latest login
        if state and state in self.pending:
            return state
        return self._login_request

    def _finish_login(self, request_id: str | None, authenticated: bool) -> None:
        if request_id is not None:
            self.pending.resolve(request_id, authenticated)
        if request_id == self._login_request:
            self._login_request = None

    # Token access

    async def get_token(self) -> str | None:
        tokens = self.state.tokens
        if tokens is None:
            return None
        if (
            tokens.refresh_token
            and self.get_token_expiry_seconds() < REFRESH_BUFFER_SECONDS
        ):
            await self.refresh_token()
        return self.state.tokens.access_token if self.state.tokens else None

    def get_token_expiry_seconds(self) -> int:
        tokens = self.state.tokens
        if tokens is None:
            return 0
        payload = claims.decode_payload(tokens.access_token)
        if payload is not None and "exp" in payload:
            return claims.expires_in(payload)
        if tokens.expires_at is not None:
            return claims.expires_in({"exp": tokens.expires_at})
        return 0

    def get_id_token(self) -> str | None:
        return self.state.tokens.id_token if self.state.tokens else None

    def _access_payload(self) -> dict[str, Any] | None:
        if self.state.tokens is None:
            return None
        return claims.decode_payload(self.state.tokens.access_token)

    def _id_payload(self) -> dict[str, Any] | None:
        if self.state.tokens is None or not self.state.tokens.id_token:
            return None
        return claims.decode_payload(self.state.tokens.id_token)

    def has_realm_role(self, role: str) -> bool:
        return claims.has_realm_role(self._access_payload(), role)

    def has_client_role(self, role: str, client_id: str | None = None) -> bool:
        return claims.has_client_role(
            self._access_payload(), role, client_id or self.client_id
        )

    def get_claim(self, key: str) -> Any:
        return claims.get_claim(self._access_payload(), key)

    def get_id_claim(self, key: str) -> Any:
        return claims.get_claim(self._id_payload(), key)

    def get_name(self) -> str | None:
        return self.get_claim("preferred_username")

    # Refresh

    async def refresh_token(self) -> bool:
        return await self._flight.run(_REFRESH_KEY, self._refresh)

    async def force_refresh_token(self) -> bool:
        return await self.refresh_token()

    async def _refresh(self) -> bool:
        previous = self.state.tokens
        try:
            if previous is None or not previous.refresh_token:
                raise TokenRefreshError("No refresh token available")
            response = await self.token_client.refresh_access_token(
                RefreshTokenRequest(
                    token_endpoint=self.token_endpoint,
                    refresh_token=previous.refresh_token,
                    client_id=self.client_id,
                )
            )
            if not response.is_success():
                raise TokenRefreshError(
                    f"{response.error}: "
                    f"{response.error_description or 'Token refresh failed'}"
                )
            tokens = response.to_token_data(previous=previous)
            await self._store_tokens(tokens, TokenRefreshError)
        except IAMError as e:
            logger.warning(f"Token refresh failed, session ended: {e}")
            self.state.clear()
            await self.platform.delete_tokens()
            self.emit(AuthRefreshError(e))
            self.emit(TokenExpired())
            return False

        self.state.tokens = tokens
        self.state.authenticated = True
        logger.info("Access token refreshed")
        self.emit(AuthRefreshSuccess())
        return True

    async def _store_tokens(
        self, tokens: NativeTokenData, error_type: type[TokenError]
    ) -> None:
        try:
            await self.platform.save_tokens(tokens)
        except Exception as e:
            raise error_type(f"Failed to store tokens: {e}") from e

    async def logout(self) -> None:
        self.state.clear()
        await self.platform.delete_tokens()
        self.emit(Logout())

    # Encryption

    async def encrypt(self, items: list[Mapping[str, Any]]) -> list[Any]:
        require_tag_roles(items, self._roles(), SELF_ENCRYPT)
        if self.enclave is not None:
            return await self.enclave.encrypt(items, self._doken())
        return await self._bridge("encrypt", items)

    async def decrypt(self, items: list[Mapping[str, Any]]) -> list[Any]:
        require_tag_roles(items, self._roles(), SELF_DECRYPT)
        if self.enclave is not None:
            return await self.enclave.decrypt(items, self._doken())
        return await self._bridge("decrypt", items)

    def _roles(self) -> set[str]:
        return claims.token_roles(self._access_payload(), self.client_id)

    def _doken(self) -> str | None:
        return self.state.tokens.doken if self.state.tokens else None

    async def _bridge(
        self, operation: str, items: list[Mapping[str, Any]]
    ) -> list[Any]:
        """Run an enclave operation in the external browser.

        Raises:
            ConfigurationError: If bridging is disabled or unsupported
            EncryptionError: If the enclave page reports an error
            PendingOperationTimeout: If no encryption callback arrives in time
        """
        if not self.config.encryption_bridge or not callable(
            getattr(self.platform, "on_encryption_callback", None)
        ):
            raise ConfigurationError(
                f"No enclave client or encryption bridge available for {operation}"
            )

        request_id, future = self.pending.start()
        encoded = base64.urlsafe_b64encode(
            json.dumps(list(items), separators=(",", ":")).encode("utf-8")
        )
        params = {
            "request_id": request_id,
            "operation": operation,
            "items": encoded.decode("ascii").rstrip("="),
            "client_id": self.client_id,
            "redirect_uri": await self._redirect_uri(),
        }
        url = f"{self.encryption_page_url}?{urlencode(params)}"

        logger.debug(f"Bridging {operation} request {request_id} to external browser")
        try:
            await self.platform.open_external_url(url)
        except Exception:
            self.pending.discard(request_id)
            raise

        result: EncryptionCallbackResult = await future
        if result.error:
            raise EncryptionError(f"{operation} failed: {result.error}")
        return list(result.results or [])

    def _on_encryption_callback(self, result: EncryptionCallbackResult) -> None:
        if not self.pending.resolve(result.request_id, result):
            logger.warning(
                "Encryption callback for unknown or expired request "
                f"{result.request_id}"
            )

    # Lifecycle

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Auth callback handling failed: {error}", exc_info=error)

    async def close(self) -> None:
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions.clear()
        self.pending.clear()
        await self.token_client.close()
