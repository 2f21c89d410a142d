"""Backend half of delegated mode: swap the browser's code for tokens.

The browser posts ``{"accessToken": "<json {code, code_verifier,
redirect_uri}>", "provider": ...}`` to an endpoint of the host application.
That endpoint calls ``parse_auth_code_data`` and ``exchange_code_for_tokens``
and keeps the tokens server-side.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Mapping

import httpx
from dotenv import load_dotenv
from pydantic import ValidationError

from tidecloak.auth.models.errors import ConfigurationError
from tidecloak.auth.models.tokens import TokenResponse

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenExchangeConfig:
    """Confidential or public client used by the backend exchange."""

    auth_server_url: str
    realm: str
    client_id: str
    client_secret: str | None = None

    @property
    def token_endpoint(self) -> str:
        return (
            f"{self.auth_server_url.rstrip('/')}/realms/{self.realm}"
            "/protocol/openid-connect/token"
        )

    @classmethod
    def from_env(cls, env_file: str | None = None) -> TokenExchangeConfig:
        """Load settings from environment variables.

        Reads ``TIDECLOAK_URL``, ``TIDECLOAK_REALM``, ``TIDECLOAK_CLIENT_ID`` and
        the optional ``TIDECLOAK_CLIENT_SECRET``. A ``.env`` file is loaded
        first without overriding variables that are already set.

        Raises:
            ConfigurationError: If a required variable is missing
        """
        load_dotenv(env_file)
        values = {
            "auth_server_url": os.getenv("TIDECLOAK_URL"),
            "realm": os.getenv("TIDECLOAK_REALM"),
            "client_id": os.getenv("TIDECLOAK_CLIENT_ID"),
        }
        missing = [name for name, value in values.items() if not value]
        if missing:
            raise ConfigurationError(
                f"Missing token exchange settings: {', '.join(missing)}"
            )
        return cls(client_secret=os.getenv("TIDECLOAK_CLIENT_SECRET"), **values)


@dataclass(frozen=True)
class AuthCodeData:
    code: str
    code_verifier: str
    redirect_uri: str


@dataclass(frozen=True)
class ExchangeResult:
    success: bool
    tokens: TokenResponse | None = None
    error: str | None = None


def parse_auth_code_data(body: Mapping[str, Any] | None) -> AuthCodeData | None:
    """Unwrap the code data the browser sent as a JSON string.

    Returns:
        The code data, or None if the field is missing, not JSON, or lacks
        any of ``code``, ``code_verifier`` and ``redirect_uri``
    """
    if not body or not body.get("accessToken"):
        return None
    try:
        data = json.loads(body["accessToken"])
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    if not all(data.get(k) for k in ("code", "code_verifier", "redirect_uri")):
        return None
    return AuthCodeData(
        code=data["code"],
        code_verifier=data["code_verifier"],
        redirect_uri=data["redirect_uri"],
    )


async def _post_token_request(
    config: TokenExchangeConfig,
    form_data: dict[str, str],
    action: str,
    http_client: httpx.AsyncClient | None,
) -> ExchangeResult:
    if config.client_secret:
        form_data["client_secret"] = config.client_secret

    client = http_client or httpx.AsyncClient()
    try:
        response = await client.post(
            config.token_endpoint,
            data=form_data,
            headers={"Accept": "application/json"},
        )
    except httpx.HTTPError as e:
        logger.error(f"Token {action} error: {e}")
        return ExchangeResult(success=False, error=f"Token {action} error: {e}")
    finally:
        if http_client is None:
            await client.aclose()

    if not response.is_success:
        logger.warning(f"Token {action} failed with {response.status_code}")
        return ExchangeResult(
            success=False, error=f"Token {action} failed: {response.text}"
        )

    try:
        tokens = TokenResponse.model_validate(response.json())
    except (ValueError, ValidationError) as e:
        return ExchangeResult(success=False, error=f"Token {action} error: {e}")

    logger.info(f"Token {action} successful")
    return ExchangeResult(success=True, tokens=tokens)


async def exchange_code_for_tokens(
    config: TokenExchangeConfig,
    data: AuthCodeData,
    http_client: httpx.AsyncClient | None = None,
) -> ExchangeResult:
    """Redeem an authorization code at the realm token endpoint."""
    form_data = {
        "grant_type": "authorization_code",
        "client_id": config.client_id,
        "code": data.code,
        "code_verifier": data.code_verifier,
        "redirect_uri": data.redirect_uri,
    }
    return await _post_token_request(config, form_data, "exchange", http_client)


async def refresh_access_token(
    config: TokenExchangeConfig,
    refresh_token: str,
    http_client: httpx.AsyncClient | None = None,
) -> ExchangeResult:
    """Redeem a refresh token for a new token set."""
    form_data = {
        "grant_type": "refresh_token",
        "client_id": config.client_id,
        "refresh_token": refresh_token,
    }
    return await _post_token_request(config, form_data, "refresh", http_client)
