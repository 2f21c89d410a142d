"""Token endpoint client for external mode.

Implements the RFC 6749 code exchange and refresh grants against the realm's
token endpoint, form-encoded, with optional DPoP (RFC 9449) proofs.
"""

from __future__ import annotations

import logging

import httpx
from pydantic import ValidationError

from tidecloak.auth.models.errors import DPoPError, TokenError
from tidecloak.auth.models.tokens import (
    RefreshTokenRequest,
    TokenRequest,
    TokenResponse,
)
from tidecloak.auth.primitives.dpop import DPoPSigner

logger = logging.getLogger(__name__)

DPOP_NONCE_HEADER = "DPoP-Nonce"
USE_DPOP_NONCE = "use_dpop_nonce"


class TokenEndpointClient:
    """Exchanges codes and refresh tokens at a realm token endpoint.

    When a ``DPoPSigner`` is supplied every request carries a ``DPoP`` proof.
    A server answering ``use_dpop_nonce`` gets exactly one retry with the
    nonce from its ``DPoP-Nonce`` header.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        dpop: DPoPSigner | None = None,
        timeout: float = 30.0,
    ):
        """Initialize the token endpoint client.

        Args:
            http_client: Optional preconfigured client
            dpop: Proof signer; None disables DPoP
            timeout: HTTP request timeout in seconds when creating a client
        """
        self.timeout = timeout
        self.dpop = dpop
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def exchange_code_for_token(
        self, token_request: TokenRequest
    ) -> TokenResponse:
        """Exchange an authorization code for tokens.

        Returns:
            TokenResponse: Token response (success or error)

        Raises:
            TokenError: If the request fails on the network or can't be parsed
        """
        logger.debug(f"Exchanging authorization code at {token_request.token_endpoint}")
        try:
            response = await self._post(
                token_request.token_endpoint, token_request.to_form_data()
            )
            return self._parse_token_response(response)
        except httpx.HTTPError as e:
            raise TokenError(f"HTTP error during token exchange: {e}") from e

    async def refresh_access_token(
        self, refresh_request: RefreshTokenRequest
    ) -> TokenResponse:
        """Redeem a refresh token for a new token set.

        Returns:
            TokenResponse: Token response (success or error)

        Raises:
            TokenError: If the request fails on the network or can't be parsed
        """
        logger.debug(f"Refreshing access token at {refresh_request.token_endpoint}")
        try:
            response = await self._post(
                refresh_request.token_endpoint, refresh_request.to_form_data()
            )
            return self._parse_token_response(response)
        except httpx.HTTPError as e:
            raise TokenError(f"HTTP error during token refresh: {e}") from e

    async def _post(self, url: str, form_data: dict[str, str]) -> httpx.Response:
        response = await self._http_client.post(
            url, data=form_data, headers=self._headers(url)
        )

        if self.dpop is not None and self._needs_nonce(response):
            logger.debug("Token endpoint requested a DPoP nonce, retrying once")
            self.dpop.update_nonce(response.headers[DPOP_NONCE_HEADER])
            response = await self._http_client.post(
                url, data=form_data, headers=self._headers(url)
            )

        if self.dpop is not None and DPOP_NONCE_HEADER in response.headers:
            try:
                self.dpop.update_nonce(response.headers[DPOP_NONCE_HEADER])
            except DPoPError as e:
                logger.warning(f"Ignoring invalid DPoP nonce from server: {e}")

        return response

    def _headers(self, url: str) -> dict[str, str]:
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }
        if self.dpop is not None:
            headers["DPoP"] = self.dpop.proof(url, "POST")
        return headers

    @staticmethod
    def _needs_nonce(response: httpx.Response) -> bool:
        if response.status_code not in (400, 401):
            return False
        if DPOP_NONCE_HEADER not in response.headers:
            return False
        if USE_DPOP_NONCE in response.headers.get("WWW-Authenticate", ""):
            return True
        try:
            return response.json().get("error") == USE_DPOP_NONCE
        except (ValueError, AttributeError):
            return False

    def _parse_token_response(self, response: httpx.Response) -> TokenResponse:
        try:
            response_data = response.json()
        except ValueError as e:
            raise TokenError(f"Invalid token response format: {e}") from e
        if not isinstance(response_data, dict):
            raise TokenError("Invalid token response format: expected an object")

        if response.status_code == 200:
            if "access_token" not in response_data:
                raise TokenError("Token response missing required access_token")
            logger.info("Token request successful")
        else:
            logger.warning(
                f"Token request failed with {response.status_code}: "
                f"{response_data.get('error', 'unknown_error')} - "
                f"{response_data.get('error_description', 'No description provided')}"
            )
            response_data.setdefault("error", "unknown_error")

        try:
            return TokenResponse(**response_data)
        except ValidationError as e:
            raise TokenError(f"Invalid token response format: {e}") from e

    async def close(self) -> None:
        """Close the HTTP client and clean up resources."""
        await self._http_client.aclose()
