"""Mutable session state owned by one ``IAMService``."""

from __future__ import annotations

from dataclasses import dataclass

from tidecloak.auth.models.callback import HybridCallbackData
from tidecloak.auth.models.tokens import NativeTokenData

# Transient (per-tab) storage keys for one authorization attempt
VERIFIER_KEY = "kc_pkce_verifier"
RETURN_URL_KEY = "kc_return_url"
REDIRECT_URI_KEY = "kc_redirect_uri"


@dataclass
class SessionState:
    """Session state shared between the service and its active mode.

    Direct mode keeps tokens inside the OIDC adapter, so only ``authenticated``
    and ``return_url`` are used there. ``tokens`` is the external-mode token
    set; delegated mode never holds tokens at all.
    """

    authenticated: bool = False
    return_url: str | None = None
    tokens: NativeTokenData | None = None
    callback_data: HybridCallbackData | None = None

    def clear(self) -> None:
        """Forget the session (the callback cache outlives it)."""
        self.authenticated = False
        self.return_url = None
        self.tokens = None
