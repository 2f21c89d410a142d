"""Server-side verification of realm-issued access tokens.

Checks the signature (against the adapter JSON's local ``jwk`` set, or the
realm's published JWKS), the issuer, the authorized party and, optionally,
that the caller holds at least one allowed role.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Mapping, Sequence

import jwt
from jwt import PyJWK, PyJWKClient, PyJWKSet

from tidecloak.auth.models.config import IAMConfig
from tidecloak.auth.models.errors import TokenVerificationError

logger = logging.getLogger(__name__)


@lru_cache(maxsize=16)
def _remote_jwks(url: str) -> PyJWKClient:
    return PyJWKClient(url)


def all_roles(payload: Mapping[str, Any]) -> set[str]:
    """Realm roles plus the roles of every client in ``resource_access``."""
    roles = set((payload.get("realm_access") or {}).get("roles") or [])
    for access in (payload.get("resource_access") or {}).values():
        roles.update((access or {}).get("roles") or [])
    return roles


def has_role(payload: Mapping[str, Any], role: str) -> bool:
    return role in all_roles(payload)


def _signing_key(config: IAMConfig, token: str) -> PyJWK:
    if config.jwk:
        key_set = PyJWKSet.from_dict(config.jwk)
        kid = jwt.get_unverified_header(token).get("kid")
        for key in key_set.keys:
            if kid is None or key.key_id == kid:
                return key
        raise TokenVerificationError(f"No local JWK matches kid '{kid}'")

    return _remote_jwks(
        f"{config.issuer}/protocol/openid-connect/certs"
    ).get_signing_key_from_jwt(token)


def verify_token(
    config: IAMConfig | Mapping[str, Any] | None,
    token: str | None,
    allowed_roles: Sequence[str] = (),
) -> dict[str, Any] | None:
    """Verify a token and return its claims.

    Args:
        config: Adapter JSON (or a loaded ``IAMConfig``)
        token: Compact-serialized access token
        allowed_roles: If non-empty, the token needs at least one of them

    Returns:
        The verified payload, or None on any failure (logged)
    """
    try:
        if not token:
            raise TokenVerificationError("No token provided")
        if not config:
            raise TokenVerificationError("Could not load TideCloak configuration")
        if not isinstance(config, IAMConfig):
            config = IAMConfig.model_validate(dict(config))

        signing_key = _signing_key(config, token)
        payload = jwt.decode(
            token,
            signing_key.key,
            algorithms=[signing_key.algorithm_name],
            issuer=config.issuer,
            # Realm tokens carry audiences of their own; azp names the client
            options={"verify_aud": False},
        )

        if payload.get("azp") != config.resource:
            raise TokenVerificationError(
                f"AZP mismatch: expected '{config.resource}', "
                f"got '{payload.get('azp')}'"
            )

        if allowed_roles:
            roles = all_roles(payload)
            if not any(role in roles for role in allowed_roles):
                raise TokenVerificationError(
                    f"Role match failed: user roles [{', '.join(sorted(roles))}] "
                    f"do not include any of [{', '.join(allowed_roles)}]"
                )

        return payload
    except (jwt.PyJWTError, TokenVerificationError, ValueError) as e:
        logger.warning(f"Token verification failed: {e}")
        return None
