import time
from typing import Any, Callable
from unittest.mock import AsyncMock, MagicMock

import httpx
import jwt
import pytest

from tidecloak.auth.adapters import AdapterOptions
from tidecloak.auth.models.callback import (
    EncryptionCallbackResult,
    NativeAuthCallbackResult,
)
from tidecloak.auth.models.tokens import NativeTokenData
from tidecloak.shared.browser import MemoryBrowser

TEST_SECRET = "test-signing-secret-that-is-long-enough-for-hs256"


def make_token(
    claims: dict[str, Any] | None = None, expires_in: float | None = 300
) -> str:
    """HS256-signed JWT; clients only ever decode it unverified."""
    payload: dict[str, Any] = {"sub": "user-1", "preferred_username": "alice"}
    if expires_in is not None:
        payload["exp"] = int(time.time() + expires_in)
    payload.update(claims or {})
    return jwt.encode(payload, TEST_SECRET, algorithm="HS256")


class FakeOIDCAdapter:
    """Direct-mode OIDC adapter double driven by ``next_token``."""

    def __init__(self, options: AdapterOptions):
        self.options = options
        self.token: str | None = None
        self.id_token: str | None = None
        self.refresh_token: str | None = None
        self.token_parsed: dict[str, Any] | None = None
        self.id_token_parsed: dict[str, Any] | None = None
        self.time_skew = 0
        self.did_initialize = False

        self.on_ready = None
        self.on_auth_success = None
        self.on_auth_error = None
        self.on_auth_refresh_success = None
        self.on_auth_refresh_error = None
        self.on_auth_logout = None
        self.on_token_expired = None

        self.next_token: str | None = None
        self.refreshed_token: str | None = None
        self.init_error: Exception | None = None
        self.init_calls: list[dict[str, Any]] = []

        self.update_token = AsyncMock(side_effect=self._update_token)
        self.login = MagicMock()
        self.logout = MagicMock()
        self.encrypt = AsyncMock(return_value=["ciphertext"])
        self.decrypt = AsyncMock(return_value=["plaintext"])

    def set_token(self, token: str) -> None:
        self.token = token
        self.token_parsed = jwt.decode(token, options={"verify_signature": False})

    async def init(
        self, on_load: str, silent_check_sso_redirect_uri: str, pkce_method: str
    ) -> bool:
        self.init_calls.append(
            {
                "on_load": on_load,
                "silent_check_sso_redirect_uri": silent_check_sso_redirect_uri,
                "pkce_method": pkce_method,
            }
        )
        self.did_initialize = True
        if self.init_error is not None:
            raise self.init_error
        if self.next_token:
            self.set_token(self.next_token)
        if self.on_ready:
            self.on_ready(self.token is not None)
        return self.token is not None

    async def _update_token(self, min_validity: float = 5) -> bool:
        if self.refreshed_token:
            self.set_token(self.refreshed_token)
            self.refreshed_token = None
            return True
        return False

    def has_realm_role(self, role: str) -> bool:
        return role in ((self.token_parsed or {}).get("realm_access") or {}).get(
            "roles", []
        )

    def has_resource_role(self, role: str, resource: str | None = None) -> bool:
        access = (self.token_parsed or {}).get("resource_access") or {}
        client = resource or self.options.client_id
        return role in (access.get(client) or {}).get("roles", [])


class FakePlatform:
    """External-mode platform adapter recording what the app asked of it."""

    auth_server_url = "https://idp.example.com"
    realm = "myrealm"
    client_id = "native-app"
    scope = None
    encryption_page_url = None

    def __init__(
        self,
        stored: NativeTokenData | None = None,
        redirect_uri: str = "myapp://auth/callback",
        supports_encryption: bool = True,
    ):
        self.stored = stored
        self.redirect_uri = redirect_uri
        self.saved: list[NativeTokenData] = []
        self.delete_count = 0
        self.opened_urls: list[str] = []
        self.auth_callbacks: list[Callable[[NativeAuthCallbackResult], None]] = []
        self.encryption_callbacks: list[
            Callable[[EncryptionCallbackResult], None]
        ] = []
        if not supports_encryption:
            self.on_encryption_callback = None

    def get_redirect_uri(self) -> str:
        return self.redirect_uri

    async def open_external_url(self, url: str) -> None:
        self.opened_urls.append(url)

    def on_auth_callback(self, callback):
        self.auth_callbacks.append(callback)
        return lambda: self.auth_callbacks.remove(callback)

    def on_encryption_callback(self, callback):
        self.encryption_callbacks.append(callback)
        return lambda: self.encryption_callbacks.remove(callback)

    async def save_tokens(self, tokens: NativeTokenData) -> bool:
        self.saved.append(tokens)
        self.stored = tokens
        return True

    async def get_tokens(self) -> NativeTokenData | None:
        return self.stored

    async def delete_tokens(self) -> bool:
        self.delete_count += 1
        self.stored = None
        return True

    def deliver_auth(self, result: NativeAuthCallbackResult) -> None:
        for callback in list(self.auth_callbacks):
            callback(result)

    def deliver_encryption(self, result: EncryptionCallbackResult) -> None:
        for callback in list(self.encryption_callbacks):
            callback(result)


class RecordingTransport:
    """httpx handler returning queued responses and recording requests."""

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            return httpx.Response(500, json={"message": "unexpected request"})
        if len(self.responses) == 1:
            return self.responses[0]
        return self.responses.pop(0)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def token_factory():
    return make_token


@pytest.fixture
def browser():
    return MemoryBrowser("https://app.example.com/")


@pytest.fixture
def adapter_factory():
    created: list[FakeOIDCAdapter] = []

    def factory(options: AdapterOptions) -> FakeOIDCAdapter:
        adapter = FakeOIDCAdapter(options)
        created.append(adapter)
        return adapter

    factory.created = created
    return factory


@pytest.fixture
def platform_factory():
    return FakePlatform


@pytest.fixture
def recording_transport():
    return RecordingTransport
