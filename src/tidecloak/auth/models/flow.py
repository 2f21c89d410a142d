"""Authorization request models shared by delegated and external login."""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import quote, urlencode


@dataclass(frozen=True)
class AuthorizationRequest:
    """Authorization code request with an S256 PKCE challenge."""

    authorization_endpoint: str
    client_id: str
    redirect_uri: str
    code_challenge: str
    code_challenge_method: str
    state: str
    scope: str | None = None
    prompt: str | None = None

    def build_authorization_url(self) -> str:
        """Build the complete authorization URL.

        ``state`` is always sent, even when empty, so the callback can tell
        "no return URL" apart from a broker that dropped the parameter.
        """
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
        }
        if self.scope:
            params["scope"] = self.scope
        params["state"] = self.state
        params["code_challenge"] = self.code_challenge
        params["code_challenge_method"] = self.code_challenge_method
        if self.prompt:
            params["prompt"] = self.prompt

        return f"{self.authorization_endpoint}?{urlencode(params, quote_via=quote)}"
