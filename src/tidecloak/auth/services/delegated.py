"""Delegated mode: the browser runs PKCE, a backend exchanges the code.

Tokens never reach the browser. The backend answers the exchange by setting
its own session (usually a cookie), so the only client-side state is the
``authenticated`` flag and the return URL.
"""

from __future__ import annotations

import json
import logging
from typing import MutableMapping
from urllib.parse import parse_qs, urlencode, urlsplit, urlunsplit

import httpx

from tidecloak.auth.adapters import BrowserContext
from tidecloak.auth.models.callback import (
    OIDC_CALLBACK_PARAMS,
    STATE_URL_PREFIX,
    CallbackResult,
    HybridCallbackData,
    return_url_from_state,
)
from tidecloak.auth.models.config import DEFAULT_PROVIDER, DEFAULT_SCOPE, IAMConfig
from tidecloak.auth.models.errors import (
    AuthorizationDeniedError,
    ConfigurationError,
    IAMError,
    MissingVerifierError,
)
from tidecloak.auth.models.events import AuthError, AuthSuccess, Logout, Ready
from tidecloak.auth.models.flow import AuthorizationRequest
from tidecloak.auth.models.session import RETURN_URL_KEY, VERIFIER_KEY, SessionState
from tidecloak.auth.primitives.http import JsonHttpClient
from tidecloak.auth.primitives.pkce import make_pkce
from tidecloak.auth.services.base import AuthMode
from tidecloak.shared.events import EventBus
from tidecloak.shared.single_flight import SingleFlight

logger = logging.getLogger(__name__)

MISSING_VERIFIER_REDIRECT = "/login"

_CALLBACK_KEY = "delegated-callback"


def query_params(url: str) -> dict[str, str]:
    """First value of every query parameter in ``url``."""
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items() if v}


def strip_callback_params(url: str) -> str:
    """Remove the OIDC callback parameters from ``url``, keeping the rest."""
    parts = urlsplit(url)
    kept = [
        (k, v)
        for k, values in parse_qs(parts.query, keep_blank_values=True).items()
        if k not in OIDC_CALLBACK_PARAMS
        for v in values
    ]
    return urlunsplit(parts._replace(query=urlencode(kept)))


def read_hybrid_callback(
    browser: BrowserContext | None,
    config: IAMConfig | None,
    state: SessionState,
    clear_storage: bool = True,
    redirect_uri: str | None = None,
    provider: str | None = None,
) -> HybridCallbackData:
    """Collect what a host needs to run its own code exchange.

    Works before any config is loaded when ``redirect_uri`` is passed. Once a
    code + verifier pair has been read it is cached on ``state``, so later
    calls (or a bootstrap that already consumed the verifier) don't lose it.
    """
    if browser is None:
        return HybridCallbackData()

    if state.callback_data is not None:
        logger.debug("Returning cached callback data")
        cached = state.callback_data
        return HybridCallbackData(
            is_callback=cached.is_callback,
            code=cached.code,
            verifier=cached.verifier,
            redirect_uri=redirect_uri or cached.redirect_uri,
            return_url=cached.return_url,
            provider=provider or cached.provider,
            error=cached.error,
            error_description=cached.error_description,
        )

    params = query_params(browser.url)
    storage = browser.session_storage
    code = params.get("code", "")
    error = params.get("error")
    verifier = storage.get(VERIFIER_KEY, "")

    data = HybridCallbackData(
        is_callback=bool(code or error),
        code=code,
        verifier=verifier,
        redirect_uri=redirect_uri or _configured_redirect_uri(config),
        return_url=_return_url(params, storage),
        provider=provider or _configured_provider(config),
        error=error,
        error_description=params.get("error_description"),
    )

    if data.is_callback and verifier:
        state.callback_data = data
    if clear_storage and data.is_callback:
        storage.pop(VERIFIER_KEY, None)
        storage.pop(RETURN_URL_KEY, None)
    return data


class DelegatedMode(AuthMode):
    """Backend-for-frontend flow with duplicate-callback protection.

    A callback page may be bootstrapped twice (double-mounted effects). The
    first call marks the callback handled before doing any async work; a
    concurrent second call joins the same exchange instead of resending a
    single-use code.
    """

    name = "delegated"

    def __init__(
        self,
        config: IAMConfig,
        state: SessionState,
        events: EventBus,
        browser: BrowserContext | None,
        http: JsonHttpClient,
    ):
        super().__init__(config, state, events)
        self.browser = browser
        self.http = http
        self._flight = SingleFlight()
        self._callback_handled = False

    async def init(self) -> bool:
        if self._callback_handled and not self._flight.in_flight(_CALLBACK_KEY):
            logger.debug("Delegated callback already handled")
            self.emit(Ready(self.state.authenticated))
            return self.state.authenticated

        if self.browser is not None and query_params(self.browser.url).get("code"):
            self._callback_handled = True

        return await self._flight.run(_CALLBACK_KEY, self._bootstrap)

    async def _bootstrap(self) -> bool:
        result = await self.handle_redirect_callback(
            on_missing_verifier_redirect_to=MISSING_VERIFIER_REDIRECT
        )
        self.state.return_url = result.return_url or None
        if not result.handled:
            self.emit(Ready(self.state.authenticated))
        return result.authenticated or self.state.authenticated

    async def handle_redirect_callback(
        self, on_missing_verifier_redirect_to: str | None = None
    ) -> CallbackResult:
        """Complete a delegated-mode authorization callback, if this is one.

        Args:
            on_missing_verifier_redirect_to: Where to send the user when the
                code arrived but its verifier is gone

        Returns:
            CallbackResult: ``handled`` is False when the page isn't a callback
        """
        if self.browser is None:
            return CallbackResult(handled=False)

        params = query_params(self.browser.url)
        storage = self.browser.session_storage
        return_url = _return_url(params, storage)

        if params.get("error"):
            error = AuthorizationDeniedError(
                params["error"], params.get("error_description")
            )
            logger.warning(f"Identity provider returned an error: {error}")
            self.emit(AuthError(error))
            self.emit(Ready(False))
            return CallbackResult(handled=True, return_url=return_url)

        code = params.get("code", "")
        if not code:
            logger.debug("No code in URL, not a callback page")
            return CallbackResult(handled=False)

        verifier = storage.get(VERIFIER_KEY, "")
        redirect_uri = _configured_redirect_uri(self.config)
        provider = _configured_provider(self.config)

        if not verifier:
            logger.warning("Code present but no PKCE verifier in storage")
            if on_missing_verifier_redirect_to:
                self.browser.assign(on_missing_verifier_redirect_to)
            self.emit(AuthError(MissingVerifierError()))
            self.emit(Ready(False))
            return CallbackResult(handled=True, return_url=return_url)

        self.state.callback_data = HybridCallbackData(
            is_callback=True,
            code=code,
            verifier=verifier,
            redirect_uri=redirect_uri,
            return_url=return_url,
            provider=provider,
        )

        # Consumed exactly once, before the request can fail or be retried
        storage.pop(VERIFIER_KEY, None)
        storage.pop(RETURN_URL_KEY, None)

        try:
            await self._exchange(code, verifier, redirect_uri, provider)
        except (IAMError, httpx.HTTPError) as e:
            logger.error(f"Delegated token exchange failed: {e}")
            self.state.authenticated = False
            self.emit(AuthError(e))
            self.emit(Ready(False))
            return CallbackResult(handled=True, return_url=return_url)

        self.state.authenticated = True
        self.state.return_url = return_url or None
        logger.info("Delegated token exchange succeeded")
        self.emit(AuthSuccess())

        self.browser.replace_state(
            strip_callback_params(self.browser.url), self.browser.title
        )
        self.emit(Ready(True))
        return CallbackResult(handled=True, authenticated=True, return_url=return_url)

    async def _exchange(
        self, code: str, verifier: str, redirect_uri: str, provider: str
    ) -> None:
        exchange = self.config.token_exchange
        if exchange is None or not exchange.endpoint:
            raise ConfigurationError("Delegated mode requires token_exchange.endpoint")

        logger.debug(f"Exchanging code at {exchange.endpoint}")
        await self.http.fetch_json(
            exchange.endpoint,
            method="POST",
            json_body={
                "accessToken": json.dumps(
                    {
                        "code": code,
                        "code_verifier": verifier,
                        "redirect_uri": redirect_uri,
                    },
                    separators=(",", ":"),
                ),
                "provider": provider,
            },
            headers=exchange.resolve_headers(),
        )

    async def login(self, return_url: str = "") -> None:
        """Start the PKCE flow and navigate to the authorization endpoint.

        Raises:
            ConfigurationError: If ``oidc`` or ``token_exchange`` is incomplete
            IAMError: If there is no browser to navigate
        """
        if self.browser is None:
            raise IAMError("Cannot login without a browser context")

        oidc = self.config.oidc
        if oidc is None or not (
            oidc.authorization_endpoint and oidc.client_id and oidc.redirect_uri
        ):
            raise ConfigurationError(
                "Delegated mode requires oidc.authorization_endpoint, client_id, "
                "and redirect_uri"
            )
        exchange = self.config.token_exchange
        if exchange is None or not exchange.endpoint:
            raise ConfigurationError("Delegated mode requires token_exchange.endpoint")

        pkce = make_pkce()
        storage = self.browser.session_storage
        storage[VERIFIER_KEY] = pkce.verifier
        storage[RETURN_URL_KEY] = return_url or ""
        logger.debug(f"Stored PKCE verifier ({len(pkce.verifier)} chars)")

        request = AuthorizationRequest(
            authorization_endpoint=oidc.authorization_endpoint,
            client_id=oidc.client_id,
            redirect_uri=oidc.redirect_uri,
            code_challenge=pkce.challenge,
            code_challenge_method=pkce.method,
            state=f"{STATE_URL_PREFIX}{return_url}" if return_url else "",
            scope=oidc.scope or DEFAULT_SCOPE,
            prompt=oidc.prompt,
        )
        self.browser.assign(request.build_authorization_url())

    async def logout(self) -> None:
        self.state.clear()
        self.emit(Logout())

    def base_url(self) -> str:
        return ""

    async def close(self) -> None:
        await self.http.close()


def _return_url(params: dict[str, str], storage: MutableMapping[str, str]) -> str:
    # Brokers may rewrite state, so storage is an independent fallback
    return return_url_from_state(params.get("state")) or storage.get(RETURN_URL_KEY, "")


def _configured_redirect_uri(config: IAMConfig | None) -> str:
    if config is not None and config.oidc is not None:
        return config.oidc.redirect_uri or ""
    return ""


def _configured_provider(config: IAMConfig | None) -> str:
    if config is not None and config.token_exchange is not None:
        return config.token_exchange.provider or DEFAULT_PROVIDER
    return DEFAULT_PROVIDER
