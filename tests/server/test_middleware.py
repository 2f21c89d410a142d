"""Tests for TideCloakMiddleware.

Covers:
- Public routes, unprotected routes and protected routes
- Role requirements passed to the verifier
- Hook short-circuits and the default 403 response
"""

import pytest
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from tidecloak.server.middleware import (
    FORBIDDEN_MESSAGE,
    TOKEN_COOKIE,
    TideCloakMiddleware,
)

CONFIG = {"realm": "myrealm", "auth-server-url": "https://idp", "resource": "app"}


async def _ok(request: Request) -> PlainTextResponse:
    return PlainTextResponse(f"ok {request.url.path}")


def _app(**options) -> Starlette:
    app = Starlette(
        routes=[
            Route("/", _ok),
            Route("/about", _ok),
            Route("/admin/users", _ok),
            Route("/api/private/data", _ok, methods=["GET", "OPTIONS"]),
        ]
    )
    app.add_middleware(TideCloakMiddleware, config=CONFIG, **options)
    return app


class RecordingVerifier:
    def __init__(self, payload=None):
        self.payload = payload
        self.calls = []

    def __call__(self, config, token, roles):
        self.calls.append((token, tuple(roles)))
        return self.payload if token == "good-token" else None


class TestTideCloakMiddleware:
    def setup_method(self) -> None:
        self.verifier = RecordingVerifier({"sub": "user-1"})
        self.protected = {"/admin/*": ["admin"], "/api/private": ["user"]}

    def _client(self, token: str | None = None, **options) -> TestClient:
        options.setdefault("protected_routes", self.protected)
        options.setdefault("public_routes", ["/about"])
        client = TestClient(_app(verifier=self.verifier, **options))
        if token is not None:
            client.cookies.set(TOKEN_COOKIE, token)
        return client

    def test_public_route_skips_verification(self) -> None:
        response = self._client().get("/about")

        assert response.status_code == 200
        assert self.verifier.calls == []

    def test_unprotected_route_passes_through(self) -> None:
        response = self._client().get("/")

        assert response.status_code == 200
        assert self.verifier.calls == []

    def test_protected_route_with_valid_token(self) -> None:
        # Act
        response = self._client("good-token").get("/admin/users")

        # Assert
        assert response.status_code == 200
        assert response.text == "ok /admin/users"
        assert self.verifier.calls == [("good-token", ("admin",))]

    def test_protected_route_without_token(self) -> None:
        # Act
        response = self._client().get("/api/private/data")

        # Assert
        assert response.status_code == 403
        assert response.json() == {"error": FORBIDDEN_MESSAGE}
        assert self.verifier.calls == [(None, ("user",))]

    def test_protected_route_with_invalid_token(self) -> None:
        response = self._client("bad-token").get("/admin/users")
        assert response.status_code == 403

    def test_options_can_be_public(self) -> None:
        client = self._client(public_routes=["OPTIONS"])

        response = client.options("/api/private/data")

        assert response.status_code == 200
        assert self.verifier.calls == []

    def test_on_failure_response(self) -> None:
        # Arrange
        def on_failure(token, request):
            return JSONResponse({"login": "/auth/login"}, status_code=401)

        # Act
        response = self._client("bad-token", on_failure=on_failure).get(
            "/admin/users"
        )

        # Assert
        assert response.status_code == 401
        assert response.json() == {"login": "/auth/login"}

    def test_async_on_success_may_short_circuit(self) -> None:
        # Arrange
        seen = []

        async def on_success(payload, request):
            seen.append(payload)
            return PlainTextResponse("intercepted", status_code=202)

        # Act
        response = self._client("good-token", on_success=on_success).get(
            "/admin/users"
        )

        # Assert
        assert response.status_code == 202
        assert seen == [{"sub": "user-1"}]

    def test_on_request_runs_first(self) -> None:
        # Arrange
        def on_request(token, request):
            if request.url.path == "/":
                return PlainTextResponse("maintenance", status_code=503)
            return None

        client = self._client(on_request=on_request)

        # Act & Assert
        assert client.get("/").status_code == 503
        assert client.get("/about").status_code == 200

    def test_on_error_handles_verifier_crash(self) -> None:
        # Arrange
        def crash(config, token, roles):
            raise RuntimeError("jwks unreachable")

        def on_error(exc, request):
            return PlainTextResponse(str(exc), status_code=500)

        self.verifier = crash

        # Act
        response = self._client("good-token", on_error=on_error).get("/admin/users")

        # Assert
        assert response.status_code == 500
        assert response.text == "jwks unreachable"

    def test_verifier_crash_without_on_error_propagates(self) -> None:
        def crash(config, token, roles):
            raise RuntimeError("jwks unreachable")

        self.verifier = crash

        with pytest.raises(RuntimeError, match="jwks unreachable"):
            self._client("good-token").get("/admin/users")

    def test_first_matching_protected_route_wins(self) -> None:
        # Arrange
        protected = {"/admin/*": ["admin"], "/admin/users": ["superuser"]}

        # Act
        self._client("good-token", protected_routes=protected).get("/admin/users")

        # Assert
        assert self.verifier.calls == [("good-token", ("admin",))]
