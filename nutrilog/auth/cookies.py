from __future__ import annotations

from typing import Mapping, Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer
from starlette.responses import Response

from nutrilog.auth.config import AuthConfig
from nutrilog.auth.models import Channel, TokenSet

COOKIE_SALT = "nutrilog-cookie-v1"

TRANSIENT_TTL_SECONDS = 10 * 60
REFRESH_TTL_SECONDS = 30 * 24 * 60 * 60

ID_TOKEN = "id_token"
ACCESS_TOKEN = "access_token"
REFRESH_TOKEN = "refresh_token"
SESSION_COOKIES = (ID_TOKEN, ACCESS_TOKEN, REFRESH_TOKEN)

# id/refresh cookies are sent on cross-site requests from the browser extension.
_SESSION_SAMESITE = {
    ID_TOKEN: "none",
    ACCESS_TOKEN: "lax",
    REFRESH_TOKEN: "none",
}


def state_cookie_name(channel: Channel) -> str:
    return f"state_{channel.value}"


def pkce_cookie_name(channel: Channel) -> str:
    return f"pkce_{channel.value}"


def _serializer(cfg: AuthConfig, name: str) -> URLSafeTimedSerializer:
    # Salting with the cookie name stops a signed value from being replayed under another name.
    return URLSafeTimedSerializer(secret_key=cfg.cookie_secret or "", salt=f"{COOKIE_SALT}:{name}")


def sign_value(cfg: AuthConfig, name: str, value: str) -> str:
    return _serializer(cfg, name).dumps(value)


def read_signed_cookie(
    cfg: AuthConfig,
    cookies: Mapping[str, str],
    name: str,
    *,
    max_age: Optional[int] = None,
) -> Optional[str]:
    """
    Return the verified value of a signed cookie, or None if absent, tampered or too old.
    """
    raw = cookies.get(name)
    if not raw or not cfg.cookie_secret:
        return None
    try:
        value = _serializer(cfg, name).loads(raw, max_age=max_age)
    except BadSignature:
        return None
    if not isinstance(value, str) or not value:
        return None
    return value


def transient_cookie_kwargs(cfg: AuthConfig, *, key: str, value: str, max_age: int = TRANSIENT_TTL_SECONDS) -> dict:
    return {
        "key": key,
        "value": sign_value(cfg, key, value) if value else "",
        "max_age": max_age,
        "httponly": True,
        "secure": cfg.is_https,
        "samesite": "lax",
        "path": "/",
    }


def clear_transient_cookie_kwargs(cfg: AuthConfig, *, key: str) -> dict:
    return transient_cookie_kwargs(cfg, key=key, value="", max_age=0)


def session_cookie_kwargs(cfg: AuthConfig, *, key: str, value: str, max_age: int) -> dict:
    return {
        "key": key,
        "value": sign_value(cfg, key, value) if value else "",
        "max_age": max_age,
        "httponly": True,
        "secure": True,
        "samesite": _SESSION_SAMESITE[key],
        "path": "/",
    }


def clear_session_cookie_kwargs(cfg: AuthConfig, *, key: str) -> dict:
    return session_cookie_kwargs(cfg, key=key, value="", max_age=0)


def set_session_cookies(resp: Response, cfg: AuthConfig, tokens: TokenSet) -> None:
    """
    Write id/access cookies with the token lifetime; rotate the refresh cookie when one was issued.
    """
    resp.set_cookie(**session_cookie_kwargs(cfg, key=ID_TOKEN, value=tokens.id_token, max_age=tokens.expires_in))
    resp.set_cookie(
        **session_cookie_kwargs(cfg, key=ACCESS_TOKEN, value=tokens.access_token, max_age=tokens.expires_in)
    )
    if tokens.refresh_token:
        resp.set_cookie(
            **session_cookie_kwargs(cfg, key=REFRESH_TOKEN, value=tokens.refresh_token, max_age=REFRESH_TTL_SECONDS)
        )


def clear_session_cookies(resp: Response, cfg: AuthConfig) -> None:
    for name in SESSION_COOKIES:
        resp.set_cookie(**clear_session_cookie_kwargs(cfg, key=name))
