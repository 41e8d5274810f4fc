from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from fastapi import HTTPException, Request
from starlette.responses import Response

from nutrilog.auth.config import AuthConfig
from nutrilog.auth.cookies import (
    ID_TOKEN,
    REFRESH_TOKEN,
    REFRESH_TTL_SECONDS,
    clear_session_cookies,
    read_signed_cookie,
    set_session_cookies,
)
from nutrilog.auth.errors import (
    AuthFlowError,
    InvalidTokenError,
    ProviderRejectedError,
    TokenExpiredError,
    TokenValidationError,
)
from nutrilog.auth.models import AuthUser, TokenSet
from nutrilog.auth.oidc import ProviderConfig, refresh_tokens, verify_id_token
from nutrilog.auth.util import short

logger = logging.getLogger(__name__)

LOGIN_PATH = "/login"


@dataclass(frozen=True)
class AuthDecision:
    """
    Outcome of checking one request.

    Either `user` is set (let the request through, writing `tokens` if a refresh happened),
    or `redirect_to` is set (optionally clearing the session cookies first).
    """

    user: Optional[AuthUser] = None
    tokens: Optional[TokenSet] = None
    redirect_to: Optional[str] = None
    clear_cookies: bool = False

    @property
    def allowed(self) -> bool:
        return self.user is not None

    @classmethod
    def logged_out(cls) -> "AuthDecision":
        return cls(redirect_to=LOGIN_PATH, clear_cookies=True)

    def apply(self, resp: Response, cfg: AuthConfig) -> None:
        if self.clear_cookies:
            clear_session_cookies(resp, cfg)
        elif self.tokens is not None:
            set_session_cookies(resp, cfg, self.tokens)


def _refresh(cfg: AuthConfig, provider: ProviderConfig, refresh_token: str) -> AuthDecision:
    logger.info("require_auth: refreshing (%s)", short(refresh_token, 8))
    try:
        tokens = refresh_tokens(provider, cfg, refresh_token)
        claims = verify_id_token(provider, cfg, tokens.id_token)
    except ProviderRejectedError as e:
        logger.warning(
            "require_auth: refresh rejected: %s error=%s description=%s", e.message, e.error, e.error_description
        )
        return AuthDecision.logged_out()
    except (AuthFlowError, TokenValidationError) as e:
        logger.warning("require_auth: refresh failed: %s", str(e))
        return AuthDecision.logged_out()
    return AuthDecision(user=AuthUser.from_claims(claims), tokens=tokens)


def _authenticate(cfg: AuthConfig, provider: ProviderConfig, cookies: Mapping[str, str]) -> AuthDecision:
    id_token = read_signed_cookie(cfg, cookies, ID_TOKEN)
    if id_token:
        try:
            claims = verify_id_token(provider, cfg, id_token)
            return AuthDecision(user=AuthUser.from_claims(claims))
        except TokenExpiredError:
            logger.debug("require_auth: id_token expired, trying refresh")
        except InvalidTokenError as e:
            # Only expiry is refreshable.
            logger.warning("require_auth: id_token rejected (not expired): %s", str(e))
            return AuthDecision.logged_out()

    refresh_token = read_signed_cookie(cfg, cookies, REFRESH_TOKEN, max_age=REFRESH_TTL_SECONDS)
    if not refresh_token:
        logger.info("require_auth: no refresh -> %s", LOGIN_PATH)
        return AuthDecision(redirect_to=LOGIN_PATH)
    return _refresh(cfg, provider, refresh_token)


def authenticate_request(cfg: AuthConfig, provider: ProviderConfig, cookies: Mapping[str, str]) -> AuthDecision:
    """
    Decide whether a request may reach a protected handler.

    Blocking (a refresh is an HTTP call); run it in a threadpool from async code.
    Never raises: unexpected failures are logged and treated as a logged-out session.
    """
    try:
        return _authenticate(cfg, provider, cookies)
    except Exception:
        logger.exception("require_auth: unexpected failure")
        return AuthDecision.logged_out()


def get_current_user(request: Request) -> AuthUser:
    """FastAPI dependency for handlers that need the verified identity."""
    user = getattr(request.state, "user", None)
    if user is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user
