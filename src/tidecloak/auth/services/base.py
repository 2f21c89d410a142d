"""Common surface of the three authentication modes.

Each mode is one ``AuthMode`` subclass. Operations a mode can't support are
inherited from the base class, which raises ``NotAvailableInMode``.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from tidecloak.auth.models.config import AuthModeName, IAMConfig
from tidecloak.auth.models.errors import NotAvailableInMode, TagAuthorizationError
from tidecloak.auth.models.events import IAMEvent
from tidecloak.auth.models.session import SessionState
from tidecloak.shared.events import EventBus

logger = logging.getLogger(__name__)

SELF_ENCRYPT = "selfencrypt"
SELF_DECRYPT = "selfdecrypt"


def tag_role(tag: str, action: str) -> str:
    return f"_tide_{tag}.{action}"


def require_tag_roles(
    items: Iterable[Mapping[str, Any]], roles: set[str], action: str
) -> None:
    """Check the session may run ``action`` on every tag of every item.

    The batch is all-or-nothing: the first unauthorized tag rejects it.

    Raises:
        TagAuthorizationError: Naming the first tag without its role
    """
    for item in items:
        for tag in item.get("tags") or []:
            if tag_role(tag, action) not in roles:
                logger.warning(f"Rejected {action} for tag '{tag}': role missing")
                raise TagAuthorizationError(tag, action)


class AuthMode:
    """Base for mode strategies; every operation defaults to unavailable."""

    name: AuthModeName

    def __init__(self, config: IAMConfig, state: SessionState, events: EventBus):
        self.config = config
        self.state = state
        self.events = events

    def emit(self, event: IAMEvent) -> None:
        self.events.emit(event)

    def _unavailable(self, operation: str) -> NotAvailableInMode:
        return NotAvailableInMode(operation, self.name)

    async def init(self) -> bool:
        raise self._unavailable("init_iam")

    def is_logged_in(self) -> bool:
        return self.state.authenticated

    async def get_token(self) -> str | None:
        raise self._unavailable("get_token")

    def get_token_expiry_seconds(self) -> int:
        raise self._unavailable("get_token_expiry_seconds")

    def get_id_token(self) -> str | None:
        raise self._unavailable("get_id_token")

    def has_realm_role(self, role: str) -> bool:
        raise self._unavailable("has_realm_role")

    def has_client_role(self, role: str, client_id: str | None = None) -> bool:
        raise self._unavailable("has_client_role")

    def get_claim(self, key: str) -> Any:
        raise self._unavailable("get_claim")

    def get_id_claim(self, key: str) -> Any:
        raise self._unavailable("get_id_claim")

    def get_name(self) -> str | None:
        raise self._unavailable("get_name")

    async def refresh_token(self) -> bool:
        raise self._unavailable("refresh_token")

    async def force_refresh_token(self) -> bool:
        raise self._unavailable("force_refresh_token")

    async def login(self, return_url: str = "") -> Any:
        raise self._unavailable("login")

    async def logout(self) -> None:
        raise self._unavailable("logout")

    async def encrypt(self, items: list[Mapping[str, Any]]) -> list[Any]:
        raise self._unavailable("encrypt")

    async def decrypt(self, items: list[Mapping[str, Any]]) -> list[Any]:
        raise self._unavailable("decrypt")

    def base_url(self) -> str:
        return self.config.base_url

    async def close(self) -> None:
        pass
