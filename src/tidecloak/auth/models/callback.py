"""Authorization callback models.

Contains the results of callback handling and the payloads platform
adapters deliver for external-browser operations.
"""

from __future__ import annotations

from dataclasses import dataclass

# Prefix marking a return URL embedded in the OAuth ``state`` parameter
STATE_URL_PREFIX = "__url_"

# Query parameters stripped from the URL after a successful exchange
OIDC_CALLBACK_PARAMS = (
    "code",
    "state",
    "session_state",
    "iss",
    "error",
    "error_description",
)


@dataclass(frozen=True)
class CallbackResult:
    """Outcome of handling the current page as an authorization callback.

    ``handled`` is False when the page simply isn't a callback; callers must
    not treat that as a failure.
    """

    handled: bool
    authenticated: bool = False
    return_url: str = ""


@dataclass(frozen=True)
class HybridCallbackData:
    """Everything a host needs to run its own delegated-mode code exchange."""

    is_callback: bool = False
    code: str = ""
    verifier: str = ""
    redirect_uri: str = ""
    return_url: str = ""
    provider: str = ""
    error: str | None = None
    error_description: str | None = None


@dataclass(frozen=True)
class NativeAuthCallbackResult:
    """Auth redirect delivered to a native app (deep link, loopback ...)."""

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None


@dataclass(frozen=True)
class EncryptionCallbackResult:
    """Result of an encrypt/decrypt request run in the external browser."""

    request_id: str
    results: list[str] | None = None
    error: str | None = None


def return_url_from_state(state: str | None) -> str:
    """Decode a return URL embedded in ``state``, empty if there is none."""
    if state and state.startswith(STATE_URL_PREFIX):
        return state[len(STATE_URL_PREFIX) :]
    return ""
