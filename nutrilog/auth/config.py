from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from nutrilog.auth.errors import AuthConfigError

DEFAULT_APP_BASE_URL = "http://localhost:3001"


@dataclass(frozen=True)
class AuthConfig:
    # OIDC provider (Cognito user pool)
    issuer: Optional[str]  # User pool issuer URL, e.g. https://cognito-idp.<region>.amazonaws.com/<pool>
    client_id: Optional[str]
    client_secret: Optional[str]
    cognito_domain: Optional[str]  # Hosted UI domain, used as logout fallback

    # Application
    app_base_url: str
    cookie_secret: Optional[str]
    http_timeout_seconds: float

    # Dev bypass
    skip_auth: bool
    production: bool

    @property
    def is_https(self) -> bool:
        return self.app_base_url.startswith("https://")

    @property
    def redirect_uri(self) -> str:
        return f"{self.app_base_url}/callback"

    @property
    def logout_redirect_uri(self) -> str:
        return f"{self.app_base_url}/logged-out"

    @property
    def discovery_url(self) -> str:
        return f"{(self.issuer or '').rstrip('/')}/.well-known/openid-configuration"

    def validate(self) -> None:
        """
        Refuse configurations that must never start.

        Raises:
            AuthConfigError: bypass requested in production, or required OIDC settings missing.
        """
        if self.skip_auth:
            if self.production:
                raise AuthConfigError("Refusing to start with auth bypass in production")
            return
        missing = [
            name
            for name, value in (
                ("COGNITO_ISSUER", self.issuer),
                ("COGNITO_CLIENT_ID", self.client_id),
                ("COOKIE_SECRET", self.cookie_secret),
            )
            if not value
        ]
        if missing:
            raise AuthConfigError(f"{', '.join(missing)} is not set")


def _env_str(name: str) -> Optional[str]:
    return (os.getenv(name, "") or "").strip() or None


def _env_bool(name: str) -> bool:
    return (os.getenv(name, "") or "").strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


@lru_cache(maxsize=1)
def load_auth_config() -> AuthConfig:
    """
    Load authentication configuration from environment variables.

    Validation is separate (`AuthConfig.validate`) so the server can decide when a bad
    configuration is fatal.
    """
    app_env = (_env_str("APP_ENV") or _env_str("NODE_ENV") or "").lower()
    return AuthConfig(
        issuer=_env_str("COGNITO_ISSUER"),
        client_id=_env_str("COGNITO_CLIENT_ID"),
        client_secret=_env_str("COGNITO_CLIENT_SECRET"),
        cognito_domain=_env_str("COGNITO_DOMAIN"),
        app_base_url=(_env_str("APP_BASE_URL") or DEFAULT_APP_BASE_URL).rstrip("/"),
        cookie_secret=_env_str("COOKIE_SECRET"),
        http_timeout_seconds=_env_float("OIDC_HTTP_TIMEOUT_SECONDS", 10.0),
        skip_auth=_env_bool("SKIP_AUTH"),
        production=app_env == "production",
    )
