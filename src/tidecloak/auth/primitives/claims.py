"""Client-side JWT claim inspection.

Decodes token payloads WITHOUT verifying signatures. This is a best-effort
read used for expiry and role checks in the client; it is never a trust
boundary. Server-side verification lives in ``tidecloak.server.verify``.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

from jwt.utils import base64url_decode

logger = logging.getLogger(__name__)


def decode_payload(token: str | None) -> dict[str, Any] | None:
    """Decode a JWT payload without signature verification.

    Only the middle segment is read; the header and signature segments
    are never parsed.

    Args:
        token: Compact-serialized JWT

    Returns:
        The payload claims, or None if the token is malformed (wrong segment
        count, invalid base64, invalid JSON, non-object payload). Never raises.
    """
    try:
        segments = token.split(".")
        if len(segments) != 3:
            raise ValueError(f"expected 3 segments, got {len(segments)}")
        payload = json.loads(base64url_decode(segments[1]))
    except (ValueError, TypeError, AttributeError) as e:
        logger.warning(f"Failed to decode token payload: {e}")
        return None
    if not isinstance(payload, dict):
        logger.warning("Failed to decode token payload: not a JSON object")
        return None
    return payload


def expires_in(
    payload: dict[str, Any] | None,
    now: float | None = None,
    time_skew: float = 0,
) -> int:
    """Seconds until the ``exp`` claim, negative once expired.

    Missing payload or ``exp`` counts as already expired (0).
    """
    if not payload or "exp" not in payload:
        return 0
    current = time.time() if now is None else now
    return round(float(payload["exp"]) + time_skew - current)


def realm_roles(payload: dict[str, Any] | None) -> list[str]:
    if not payload:
        return []
    return list((payload.get("realm_access") or {}).get("roles") or [])


def client_roles(payload: dict[str, Any] | None, client_id: str | None) -> list[str]:
    if not payload or not client_id:
        return []
    resource_access = payload.get("resource_access") or {}
    return list((resource_access.get(client_id) or {}).get("roles") or [])


def has_realm_role(payload: dict[str, Any] | None, role: str) -> bool:
    """Check ``realm_access.roles`` for a role."""
    return role in realm_roles(payload)


def has_client_role(
    payload: dict[str, Any] | None, role: str, client_id: str | None
) -> bool:
    """Check ``resource_access[client_id].roles`` for a role."""
    return role in client_roles(payload, client_id)


def token_roles(payload: dict[str, Any] | None, client_id: str | None) -> set[str]:
    """All realm roles plus the client's roles."""
    return set(realm_roles(payload)) | set(client_roles(payload, client_id))


def get_claim(payload: dict[str, Any] | None, key: str) -> Any:
    """Look up an arbitrary claim, None when absent."""
    if not payload:
        return None
    return payload.get(key)
