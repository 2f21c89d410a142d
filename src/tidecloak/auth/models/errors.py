"""Exception hierarchy for IAM session errors.

Provides specific exception types for different failure modes so hosts can
tell configuration mistakes, transport failures and protocol-state problems
apart and pick the right recovery.
"""

from __future__ import annotations

from typing import Any, Mapping


class IAMError(Exception):
    """Base exception for all IAM session related errors."""

    pass


class ConfigurationError(IAMError):
    """Raised when configuration is missing or invalid."""

    pass


class NotInitializedError(IAMError):
    """Raised when an operation needs config or a client that isn't loaded."""

    pass


class NotAvailableInMode(IAMError):
    """Raised when an operation is called in a mode that doesn't support it.

    This is a programmer error: delegated mode keeps tokens server-side, so
    token accessors, role checks and encryption have nothing to work with.
    """

    def __init__(self, operation: str, mode: str):
        self.operation = operation
        self.mode = mode
        super().__init__(
            f"{operation}() not available in {mode} mode - tokens are server-side"
            if mode == "delegated"
            else f"{operation}() not available in {mode} mode"
        )


class HTTPRequestError(IAMError):
    """Raised when a request completes with a non-2xx status.

    Carries the numeric status and the server's parsed JSON body (or raw
    text when the body isn't JSON).
    """

    def __init__(
        self,
        message: str,
        status: int,
        body: Any = None,
        headers: Mapping[str, str] | None = None,
    ):
        super().__init__(message)
        self.status = status
        self.body = body
        self.headers = headers or {}


class TokenError(IAMError):
    """Raised when token operations fail."""

    pass


class TokenExchangeError(TokenError):
    """Raised when authorization code to token exchange fails."""

    pass


class TokenRefreshError(TokenError):
    """Raised when token refresh fails."""

    pass


class CallbackError(IAMError):
    """Raised when an authorization callback can't be completed."""

    pass


class AuthorizationDeniedError(CallbackError):
    """Raised when the identity provider returned an error to the callback."""

    def __init__(self, error: str, description: str | None = None):
        self.error = error
        self.description = description or "An error occurred"
        super().__init__(f"{error}: {self.description}")


class MissingVerifierError(CallbackError):
    """Raised when a callback carries a code but no PKCE verifier is stored.

    Usually means the page was refreshed after the verifier was consumed, or
    the callback was replayed. Not retryable: the user has to log in again.
    """

    def __init__(self) -> None:
        super().__init__(
            "Missing PKCE verifier (likely page refresh after it was consumed)"
        )


class TagAuthorizationError(IAMError):
    """Raised when the session lacks the role required for a data tag."""

    def __init__(self, tag: str, action: str):
        self.tag = tag
        self.action = action
        self.role = f"_tide_{tag}.{action}"
        super().__init__(
            f"Not authorized to {action.removeprefix('self')} data tagged '{tag}' "
            f"(missing role {self.role})"
        )


class PendingOperationTimeout(IAMError):
    """Raised when an external browser operation never calls back."""

    def __init__(self, request_id: str, timeout: float):
        self.request_id = request_id
        self.timeout = timeout
        super().__init__(f"Operation {request_id} timed out after {timeout}s")


class DPoPError(IAMError):
    """Raised when DPoP proof generation or nonce handling fails."""

    pass


class EncryptionError(IAMError):
    """Raised when the enclave or encryption bridge reports a failure."""

    pass


class TokenVerificationError(TokenError):
    """Raised when a token fails server-side signature, issuer or role checks."""

    pass


class ClientNotFoundError(IAMError):
    """Raised when a realm has no client with the requested ``clientId``."""

    def __init__(self, client_id: str):
        self.client_id = client_id
        super().__init__(f"Client not found: {client_id}")
