"""Typed lifecycle events emitted by the IAM session manager.

Each event is a small immutable record; its ``name`` is the wire name UI
bindings subscribe to (``ready``, ``authSuccess`` ...).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Literal

EventName = Literal[
    "ready",
    "initError",
    "authSuccess",
    "authError",
    "authRefreshSuccess",
    "authRefreshError",
    "logout",
    "tokenExpired",
]


@dataclass(frozen=True)
class IAMEvent:
    name: ClassVar[EventName]


@dataclass(frozen=True)
class Ready(IAMEvent):
    """Bootstrap finished; ``authenticated`` is the resulting session state."""

    name: ClassVar[EventName] = "ready"
    authenticated: bool


@dataclass(frozen=True)
class InitError(IAMEvent):
    name: ClassVar[EventName] = "initError"
    error: Exception


@dataclass(frozen=True)
class AuthSuccess(IAMEvent):
    name: ClassVar[EventName] = "authSuccess"


@dataclass(frozen=True)
class AuthError(IAMEvent):
    name: ClassVar[EventName] = "authError"
    error: Exception


@dataclass(frozen=True)
class AuthRefreshSuccess(IAMEvent):
    name: ClassVar[EventName] = "authRefreshSuccess"


@dataclass(frozen=True)
class AuthRefreshError(IAMEvent):
    name: ClassVar[EventName] = "authRefreshError"
    error: Exception | None = None


@dataclass(frozen=True)
class Logout(IAMEvent):
    name: ClassVar[EventName] = "logout"


@dataclass(frozen=True)
class TokenExpired(IAMEvent):
    name: ClassVar[EventName] = "tokenExpired"


EVENT_TYPES: dict[str, type[IAMEvent]] = {
    cls.name: cls
    for cls in (
        Ready,
        InitError,
        AuthSuccess,
        AuthError,
        AuthRefreshSuccess,
        AuthRefreshError,
        Logout,
        TokenExpired,
    )
}
