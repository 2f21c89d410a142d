"""Tests for the external-mode token endpoint client.

Covers:
- Authorization code exchange and refresh grants
- Error responses returned as TokenResponse, network errors as TokenError
- DPoP proofs and the single use_dpop_nonce retry
"""

from unittest.mock import AsyncMock

import httpx
import jwt
import pytest

from tidecloak.auth.models.errors import TokenError
from tidecloak.auth.models.tokens import RefreshTokenRequest, TokenRequest
from tidecloak.auth.primitives.dpop import DPoPSigner
from tidecloak.auth.services.tokens import TokenEndpointClient

TOKEN_ENDPOINT = "https://idp.example.com/realms/r/protocol/openid-connect/token"


def _code_request() -> TokenRequest:
    return TokenRequest(
        token_endpoint=TOKEN_ENDPOINT,
        code="code-1",
        redirect_uri="myapp://cb",
        client_id="native-app",
        code_verifier="verifier-1",
    )


class TestTokenEndpointClient:
    def setup_method(self) -> None:
        self.client = TokenEndpointClient()
        self.client._http_client = AsyncMock()

    async def test_exchange_posts_form(self) -> None:
        # Arrange
        self.client._http_client.post.return_value = httpx.Response(
            200,
            json={"access_token": "at", "refresh_token": "rt", "expires_in": 300},
        )

        # Act
        response = await self.client.exchange_code_for_token(_code_request())

        # Assert
        assert response.is_success()
        assert response.access_token == "at"
        call = self.client._http_client.post.call_args
        assert call.args[0] == TOKEN_ENDPOINT
        assert call.kwargs["data"]["grant_type"] == "authorization_code"
        assert call.kwargs["data"]["code_verifier"] == "verifier-1"
        assert (
            call.kwargs["headers"]["Content-Type"]
            == "application/x-www-form-urlencoded"
        )
        assert "DPoP" not in call.kwargs["headers"]

    async def test_refresh_posts_form(self) -> None:
        # Arrange
        self.client._http_client.post.return_value = httpx.Response(
            200, json={"access_token": "at2"}
        )

        # Act
        response = await self.client.refresh_access_token(
            RefreshTokenRequest(TOKEN_ENDPOINT, refresh_token="rt", client_id="app")
        )

        # Assert
        assert response.access_token == "at2"
        data = self.client._http_client.post.call_args.kwargs["data"]
        assert data == {
            "grant_type": "refresh_token",
            "refresh_token": "rt",
            "client_id": "app",
        }

    async def test_error_response_is_returned(self) -> None:
        # Arrange
        self.client._http_client.post.return_value = httpx.Response(
            400,
            json={"error": "invalid_grant", "error_description": "Code not valid"},
        )

        # Act
        response = await self.client.exchange_code_for_token(_code_request())

        # Assert
        assert not response.is_success()
        assert response.error == "invalid_grant"
        assert response.error_description == "Code not valid"

    async def test_error_without_error_field_gets_default(self) -> None:
        self.client._http_client.post.return_value = httpx.Response(500, json={})

        response = await self.client.exchange_code_for_token(_code_request())

        assert response.error == "unknown_error"

    async def test_success_without_access_token_raises(self) -> None:
        self.client._http_client.post.return_value = httpx.Response(
            200, json={"token_type": "Bearer"}
        )

        with pytest.raises(TokenError, match="missing required access_token"):
            await self.client.exchange_code_for_token(_code_request())

    async def test_non_json_response_raises(self) -> None:
        self.client._http_client.post.return_value = httpx.Response(
            502, text="<html>Bad Gateway</html>"
        )

        with pytest.raises(TokenError, match="Invalid token response format"):
            await self.client.exchange_code_for_token(_code_request())

    async def test_network_error_raises_token_error(self) -> None:
        self.client._http_client.post.side_effect = httpx.ConnectError("refused")

        with pytest.raises(TokenError, match="HTTP error during token exchange"):
            await self.client.exchange_code_for_token(_code_request())

    async def test_close(self) -> None:
        await self.client.close()
        self.client._http_client.aclose.assert_awaited_once()


class TestTokenEndpointDPoP:
    def setup_method(self) -> None:
        self.signer = DPoPSigner()
        self.client = TokenEndpointClient(dpop=self.signer)
        self.client._http_client = AsyncMock()

    async def test_every_request_carries_a_proof(self) -> None:
        # Arrange
        self.client._http_client.post.return_value = httpx.Response(
            200, json={"access_token": "at"}
        )

        # Act
        await self.client.exchange_code_for_token(_code_request())

        # Assert
        proof = self.client._http_client.post.call_args.kwargs["headers"]["DPoP"]
        payload = jwt.decode(proof, options={"verify_signature": False})
        assert payload["htm"] == "POST"
        assert payload["htu"] == TOKEN_ENDPOINT

    async def test_retries_once_with_server_nonce(self) -> None:
        # Arrange
        self.client._http_client.post.side_effect = [
            httpx.Response(
                400,
                json={"error": "use_dpop_nonce"},
                headers={"DPoP-Nonce": "nonce-1"},
            ),
            httpx.Response(200, json={"access_token": "at"}),
        ]

        # Act
        response = await self.client.exchange_code_for_token(_code_request())

        # Assert
        assert response.is_success()
        calls = self.client._http_client.post.call_args_list
        assert len(calls) == 2
        first = jwt.decode(
            calls[0].kwargs["headers"]["DPoP"], options={"verify_signature": False}
        )
        retry = jwt.decode(
            calls[1].kwargs["headers"]["DPoP"], options={"verify_signature": False}
        )
        assert "nonce" not in first
        assert retry["nonce"] == "nonce-1"
        assert first["jti"] != retry["jti"]

    async def test_nonce_challenge_in_www_authenticate(self) -> None:
        # Arrange
        self.client._http_client.post.side_effect = [
            httpx.Response(
                401,
                json={"error": "invalid_dpop_proof"},
                headers={
                    "DPoP-Nonce": "nonce-2",
                    "WWW-Authenticate": 'DPoP error="use_dpop_nonce"',
                },
            ),
            httpx.Response(200, json={"access_token": "at"}),
        ]

        # Act
        await self.client.exchange_code_for_token(_code_request())

        # Assert
        assert self.signer.nonce == "nonce-2"
        assert self.client._http_client.post.call_count == 2

    async def test_only_one_retry(self) -> None:
        # Arrange
        nonce_error = httpx.Response(
            400, json={"error": "use_dpop_nonce"}, headers={"DPoP-Nonce": "n"}
        )
        self.client._http_client.post.side_effect = [nonce_error, nonce_error]

        # Act
        response = await self.client.exchange_code_for_token(_code_request())

        # Assert
        assert response.error == "use_dpop_nonce"
        assert self.client._http_client.post.call_count == 2

    async def test_other_errors_are_not_retried(self) -> None:
        self.client._http_client.post.return_value = httpx.Response(
            400, json={"error": "invalid_grant"}, headers={"DPoP-Nonce": "n"}
        )

        await self.client.exchange_code_for_token(_code_request())

        assert self.client._http_client.post.call_count == 1

    async def test_success_nonce_is_remembered(self) -> None:
        self.client._http_client.post.return_value = httpx.Response(
            200, json={"access_token": "at"}, headers={"DPoP-Nonce": "next"}
        )

        await self.client.exchange_code_for_token(_code_request())

        assert self.signer.nonce == "next"
