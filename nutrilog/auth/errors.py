"""
Auth error taxonomy.

Startup errors (`AuthConfigError`, `DiscoveryError`) abort the process. Flow errors
are rendered by the app's error handler. Token validation errors never leave
`nutrilog.auth.deps`: expiry triggers a refresh, anything else logs the user out.
"""

from __future__ import annotations

from typing import Optional


class AuthConfigError(RuntimeError):
    """Configuration that must not be served."""


class DiscoveryError(RuntimeError):
    """OIDC discovery or JWKS fetch failed at startup."""


class AuthFlowError(Exception):
    status_code = 500
    title = "Sign-in failed"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class FlowIntegrityError(AuthFlowError):
    """Missing or mismatched state, missing PKCE verifier, missing code."""

    status_code = 400


class ProviderRejectedError(AuthFlowError):
    """The provider answered, but with an error or an unusable body."""

    status_code = 400

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.error = error
        self.error_description = error_description


class ProviderNetworkError(AuthFlowError):
    """The provider could not be reached."""

    status_code = 502


class UnknownAuthError(AuthFlowError):
    status_code = 500


class TokenValidationError(Exception):
    pass


class TokenExpiredError(TokenValidationError):
    """Signature and claims are fine but `exp` has passed; the only refreshable failure."""


class InvalidTokenError(TokenValidationError):
    pass
