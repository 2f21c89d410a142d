"""Ready-made backend for delegated mode.

Serves the token exchange endpoint the browser posts its code to, sets the
``kcToken`` session cookie on success and guards the remaining routes with
``TideCloakMiddleware``.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Sequence

import httpx
import uvicorn
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from tidecloak.auth.models.config import IAMConfig
from tidecloak.server.middleware import TOKEN_COOKIE, TideCloakMiddleware
from tidecloak.server.routes import ProtectedRoutesMap, RoutePattern
from tidecloak.server.token_exchange import (
    TokenExchangeConfig,
    exchange_code_for_tokens,
    parse_auth_code_data,
)

logger = logging.getLogger(__name__)

AUTHENTICATE_PATH = "/api/authenticate"
LOGOUT_PATH = "/api/logout"


class ExchangeEndpoint:
    """Handles ``POST /api/authenticate`` and ``POST /api/logout``."""

    def __init__(
        self,
        exchange_config: TokenExchangeConfig,
        http_client: httpx.AsyncClient | None = None,
        secure_cookie: bool = True,
    ):
        self.exchange_config = exchange_config
        self.secure_cookie = secure_cookie
        self._http_client = http_client

    async def authenticate(self, request: Request) -> Response:
        try:
            body = await request.json()
        except json.JSONDecodeError:
            return JSONResponse({"error": "Invalid JSON"}, status_code=400)

        data = parse_auth_code_data(body if isinstance(body, dict) else None)
        if data is None:
            return JSONResponse({"error": "Invalid auth code data"}, status_code=400)

        result = await exchange_code_for_tokens(
            self.exchange_config, data, http_client=self._http_client
        )
        if not result.success:
            return JSONResponse({"error": result.error}, status_code=401)

        response = JSONResponse({"success": True})
        response.set_cookie(
            TOKEN_COOKIE,
            result.tokens.access_token,
            max_age=result.tokens.expires_in,
            path="/",
            secure=self.secure_cookie,
            httponly=True,
            samesite="lax",
        )
        return response

    async def logout(self, request: Request) -> Response:
        response = JSONResponse({"success": True})
        response.delete_cookie(TOKEN_COOKIE, path="/")
        return response


def create_app(
    config: IAMConfig | Mapping[str, Any],
    exchange_config: TokenExchangeConfig,
    public_routes: Sequence[RoutePattern] = (),
    protected_routes: ProtectedRoutesMap | None = None,
    http_client: httpx.AsyncClient | None = None,
    secure_cookie: bool = True,
    routes: Sequence[Route] = (),
) -> Starlette:
    """Build the backend application.

    The exchange and logout endpoints are always public.

    Args:
        config: Adapter JSON used to verify tokens
        exchange_config: Client used for the code exchange
        public_routes: Extra routes that bypass authentication
        protected_routes: Route pattern -> allowed roles
        http_client: Client for the token endpoint (tests pass a mock)
        secure_cookie: Mark the session cookie ``Secure``
        routes: Host routes mounted next to the auth endpoints
    """
    endpoint = ExchangeEndpoint(exchange_config, http_client, secure_cookie)
    return Starlette(
        routes=[
            Route(AUTHENTICATE_PATH, endpoint.authenticate, methods=["POST"]),
            Route(LOGOUT_PATH, endpoint.logout, methods=["POST"]),
            *routes,
        ],
        middleware=[
            Middleware(
                TideCloakMiddleware,
                config=config,
                public_routes=[AUTHENTICATE_PATH, LOGOUT_PATH, *public_routes],
                protected_routes=protected_routes,
            )
        ],
    )


async def serve(app: Starlette, host: str = "127.0.0.1", port: int = 8000) -> None:
    """Run the application until the server is stopped."""
    server = uvicorn.Server(
        uvicorn.Config(app=app, host=host, port=port, log_level="info")
    )
    logger.info(f"Serving on {host}:{port}")
    await server.serve()
