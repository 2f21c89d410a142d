"""JSON-over-HTTP primitive with uniform error surfacing.

Every non-2xx response becomes an ``HTTPRequestError`` carrying the status
and body, so callers can tell "server answered, request was refused" apart
from transport failures by catching it and inspecting ``status``.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping

import httpx

from tidecloak.auth.models.errors import HTTPRequestError

logger = logging.getLogger(__name__)


class JsonHttpClient:
    """Credentialed JSON fetches over a shared ``httpx.AsyncClient``.

    The underlying client keeps a cookie jar, so cookies set by one response
    are sent with later requests to the same site.
    """

    def __init__(
        self, client: httpx.AsyncClient | None = None, timeout: float = 30.0
    ):
        """Initialize the JSON client.

        Args:
            client: Optional preconfigured client (tests pass one backed by
                ``httpx.MockTransport``)
            timeout: HTTP request timeout in seconds when creating a client
        """
        self.timeout = timeout
        self._http_client = client or httpx.AsyncClient(timeout=timeout)

    async def request(
        self,
        url: str,
        method: str = "GET",
        json_body: Any = None,
        data: Mapping[str, str] | None = None,
        files: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> httpx.Response:
        """Send a request and return the successful response.

        Args:
            url: Target URL
            method: HTTP method
            json_body: Body to send as JSON
            data: Body to send form-encoded
            files: Multipart fields, in httpx ``files`` form
            params: Query parameters
            headers: Extra headers, merged over the defaults

        Raises:
            HTTPRequestError: If the response status is not 2xx
        """
        request_headers = {"Accept": "application/json"}
        if json_body is not None:
            request_headers["Content-Type"] = "application/json"
        request_headers.update(headers or {})

        logger.debug(f"{method} {url}")
        response = await self._http_client.request(
            method,
            url,
            json=json_body,
            data=data,
            files=files,
            params=params,
            headers=request_headers,
        )

        if not response.is_success:
            body = _parse_json(response.text)
            message = (
                body.get("message")
                if isinstance(body, dict) and body.get("message")
                else f"Request failed ({response.status_code})"
            )
            logger.debug(f"{method} {url} failed with {response.status_code}")
            raise HTTPRequestError(
                message,
                status=response.status_code,
                body=body if body is not None else response.text,
                headers=response.headers,
            )

        return response

    async def fetch_json(
        self,
        url: str,
        method: str = "GET",
        json_body: Any = None,
        data: Mapping[str, str] | None = None,
        files: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        """Send a request and return the parsed JSON body.

        Returns:
            Parsed JSON, or None for an empty or non-JSON 2xx body

        Raises:
            HTTPRequestError: If the response status is not 2xx
        """
        response = await self.request(
            url,
            method=method,
            json_body=json_body,
            data=data,
            files=files,
            params=params,
            headers=headers,
        )
        return _parse_json(response.text)

    async def close(self) -> None:
        """Close the HTTP client and clean up resources."""
        await self._http_client.aclose()


def _parse_json(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None
