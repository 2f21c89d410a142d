"""Starlette middleware enforcing realm authentication on protected routes.

Example:
    app.add_middleware(
        TideCloakMiddleware,
        config=IAMConfig.from_file("tidecloak.json"),
        public_routes=["/", "/about"],
        protected_routes={"/admin/*": ["admin"], "/api/private/*": ["user"]},
    )
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Mapping, Sequence

from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

from tidecloak.auth.models.config import IAMConfig
from tidecloak.server.routes import (
    ProtectedRoutesMap,
    RoutePattern,
    normalize_pattern,
    normalize_protected_routes,
)
from tidecloak.server.verify import verify_token

logger = logging.getLogger(__name__)

TOKEN_COOKIE = "kcToken"
FORBIDDEN_MESSAGE = "[TideCloak Middleware] Access forbidden: invalid token"

Hook = Callable[..., "Response | None | Awaitable[Response | None]"]
Verifier = Callable[[Any, "str | None", Sequence[str]], "dict[str, Any] | None"]


async def _call_hook(hook: Hook | None, *args: Any) -> Response | None:
    if hook is None:
        return None
    result = hook(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class TideCloakMiddleware(BaseHTTPMiddleware):
    """Verifies the ``kcToken`` cookie on the first protected route matching.

    Public routes bypass everything. Requests matching no protected route
    pass through untouched.

    Hooks may be sync or async; returning a response short-circuits:
        on_request(token, request): before any checks
        on_success(payload, request): after verification passed
        on_failure(token, request): verification failed (default 403 JSON)
        on_error(exc, request): unexpected error in the auth logic
    """

    def __init__(
        self,
        app: ASGIApp,
        config: IAMConfig | Mapping[str, Any],
        public_routes: Sequence[RoutePattern] = (),
        protected_routes: ProtectedRoutesMap | None = None,
        on_request: Hook | None = None,
        on_success: Hook | None = None,
        on_failure: Hook | None = None,
        on_error: Hook | None = None,
        verifier: Verifier = verify_token,
    ):
        super().__init__(app)
        self.config = config
        self.public_tests = [normalize_pattern(p) for p in public_routes]
        self.protected = normalize_protected_routes(protected_routes)
        self.on_request = on_request
        self.on_success = on_success
        self.on_failure = on_failure
        self.on_error = on_error
        self.verifier = verifier

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        try:
            response = await self._authorize(request)
        except Exception as e:
            if self.on_error is not None:
                return await _call_hook(self.on_error, e, request)
            logger.error(f"Authorization middleware error: {e}")
            raise

        if response is not None:
            return response
        return await call_next(request)

    async def _authorize(self, request: Request) -> Response | None:
        """None lets the request through; a response ends it here."""
        path = request.url.path

        if any(test(path, request) for test in self.public_tests):
            return None

        token = request.cookies.get(TOKEN_COOKIE) or None

        response = await _call_hook(self.on_request, token, request)
        if response is not None:
            return response

        for route in self.protected:
            if not route.test(path, request):
                continue

            payload = await run_in_threadpool(
                self.verifier, self.config, token, route.roles
            )
            if not payload:
                logger.info(f"Rejected request to {path}: token failed verification")
                response = await _call_hook(self.on_failure, token, request)
                if response is not None:
                    return response
                return JSONResponse({"error": FORBIDDEN_MESSAGE}, status_code=403)

            return await _call_hook(self.on_success, payload, request)

        return None
