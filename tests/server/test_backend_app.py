import json

import httpx
from starlette.requests import Request
from starlette.responses import PlainTextResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from tidecloak.server.app import AUTHENTICATE_PATH, LOGOUT_PATH, create_app
from tidecloak.server.middleware import TOKEN_COOKIE
from tidecloak.server.token_exchange import TokenExchangeConfig

CONFIG = {"realm": "myrealm", "auth-server-url": "https://idp", "resource": "web"}


async def _dashboard(request: Request) -> PlainTextResponse:
    return PlainTextResponse("dashboard")


def _body(code: str = "abc123") -> dict[str, str]:
    return {
        "accessToken": json.dumps(
            {
                "code": code,
                "code_verifier": "v1",
                "redirect_uri": "https://app.example.com/auth/callback",
            },
            separators=(",", ":"),
        ),
        "provider": "tidecloak-auth",
    }


class TestBackendApp:
    def setup_method(self) -> None:
        self.token_requests = []

        def token_endpoint(request: httpx.Request) -> httpx.Response:
            self.token_requests.append(request)
            if b"code=bad" in request.content:
                return httpx.Response(400, json={"error": "invalid_grant"})
            return httpx.Response(
                200, json={"access_token": "session-token", "expires_in": 300}
            )

        app = create_app(
            CONFIG,
            TokenExchangeConfig("https://idp", "myrealm", "web"),
            protected_routes={"/dashboard": ["user"]},
            http_client=httpx.AsyncClient(
                transport=httpx.MockTransport(token_endpoint)
            ),
            secure_cookie=False,
            routes=[Route("/dashboard", _dashboard)],
        )
        self.client = TestClient(app)

    def test_authenticate_sets_session_cookie(self) -> None:
        # Act
        response = self.client.post(AUTHENTICATE_PATH, json=_body())

        # Assert
        assert response.status_code == 200
        assert response.json() == {"success": True}
        set_cookie = response.headers["set-cookie"]
        assert set_cookie.startswith(f"{TOKEN_COOKIE}=session-token")
        assert "HttpOnly" in set_cookie
        assert "Max-Age=300" in set_cookie
        assert len(self.token_requests) == 1

    def test_authenticate_rejects_bad_code(self) -> None:
        response = self.client.post(AUTHENTICATE_PATH, json=_body("bad"))

        assert response.status_code == 401
        assert response.json()["error"].startswith("Token exchange failed")
        assert "set-cookie" not in response.headers

    def test_authenticate_rejects_malformed_body(self) -> None:
        # Act
        not_json = self.client.post(
            AUTHENTICATE_PATH,
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )
        incomplete = self.client.post(AUTHENTICATE_PATH, json={"provider": "x"})

        # Assert
        assert not_json.status_code == 400
        assert incomplete.status_code == 400
        assert self.token_requests == []

    def test_logout_clears_cookie(self) -> None:
        response = self.client.post(LOGOUT_PATH)

        assert response.status_code == 200
        assert response.headers["set-cookie"].startswith(f'{TOKEN_COOKIE}=""')

    def test_host_routes_are_protected(self) -> None:
        response = self.client.get("/dashboard")
        assert response.status_code == 403
