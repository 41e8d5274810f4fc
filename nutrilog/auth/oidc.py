from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import urlencode

import jwt  # PyJWT
import requests

from nutrilog.auth.config import AuthConfig
from nutrilog.auth.errors import (
    DiscoveryError,
    InvalidTokenError,
    ProviderNetworkError,
    ProviderRejectedError,
    TokenExpiredError,
)
from nutrilog.auth.models import DEFAULT_EXPIRES_IN, TokenSet

logger = logging.getLogger(__name__)

LOGIN_SCOPE = "openid email"


@dataclass(frozen=True)
class ProviderConfig:
    """
    Provider metadata and verification keys, discovered once at startup.

    Never mutated afterwards; every request reads the same instance.
    """

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: str
    end_session_endpoint: Optional[str] = None
    scopes_supported: Tuple[str, ...] = ()
    keys: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def from_metadata(cls, meta: Mapping[str, Any], jwks: Mapping[str, Any]) -> "ProviderConfig":
        issuer = str(meta.get("issuer") or "")
        authorization_endpoint = str(meta.get("authorization_endpoint") or "")
        token_endpoint = str(meta.get("token_endpoint") or "")
        jwks_uri = str(meta.get("jwks_uri") or "")
        if not jwks_uri:
            raise DiscoveryError("OIDC metadata lacks jwks_uri")
        if not issuer or not authorization_endpoint or not token_endpoint:
            raise DiscoveryError("OIDC metadata missing issuer/authorization_endpoint/token_endpoint")
        scopes = meta.get("scopes_supported")
        return cls(
            issuer=issuer,
            authorization_endpoint=authorization_endpoint,
            token_endpoint=token_endpoint,
            jwks_uri=jwks_uri,
            end_session_endpoint=str(meta.get("end_session_endpoint") or "") or None,
            scopes_supported=tuple(str(s) for s in scopes) if isinstance(scopes, list) else (),
            keys=MappingProxyType(_load_keys(jwks)),
        )


def _load_keys(jwks: Mapping[str, Any]) -> Dict[str, Any]:
    keys = jwks.get("keys")
    if not isinstance(keys, list):
        raise DiscoveryError("Invalid JWKS keys")
    out: Dict[str, Any] = {}
    for k in keys:
        if not isinstance(k, dict):
            continue
        kid = str(k.get("kid") or "")
        if not kid or k.get("kty") != "RSA":
            continue
        # Construct RSA public key from JWK.
        out[kid] = jwt.algorithms.RSAAlgorithm.from_jwk(json.dumps(k))
    if not out:
        raise DiscoveryError("JWKS contains no usable RSA signing keys")
    return out


def _get_json(url: str, timeout: float) -> Dict[str, Any]:
    r = requests.get(url, timeout=timeout)
    r.raise_for_status()
    data = r.json()
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object from {url}")
    return data


def discover_provider(cfg: AuthConfig) -> ProviderConfig:
    """
    Fetch discovery metadata and the JWKS for the configured issuer.

    There is no retry: a failure here is fatal and the process must be restarted.

    Raises:
        DiscoveryError: the issuer or its JWKS could not be fetched or parsed.
    """
    url = cfg.discovery_url
    try:
        meta = _get_json(url, cfg.http_timeout_seconds)
    except (requests.RequestException, ValueError) as e:
        raise DiscoveryError(f"OIDC discovery failed for {url}: {e}") from e

    jwks_uri = str(meta.get("jwks_uri") or "")
    if not jwks_uri:
        raise DiscoveryError("OIDC metadata lacks jwks_uri")
    try:
        jwks = _get_json(jwks_uri, cfg.http_timeout_seconds)
    except (requests.RequestException, ValueError) as e:
        raise DiscoveryError(f"JWKS fetch failed for {jwks_uri}: {e}") from e

    provider = ProviderConfig.from_metadata(meta, jwks)
    if cfg.issuer and provider.issuer.rstrip("/") != cfg.issuer.rstrip("/"):
        logger.warning("OIDC issuer mismatch: configured=%s discovered=%s", cfg.issuer, provider.issuer)
    logger.info("scopes_supported: %s", ", ".join(provider.scopes_supported) or "-")
    logger.info("OIDC ready: %s (%d signing keys)", provider.issuer, len(provider.keys))
    return provider


def build_authorize_url(
    provider: ProviderConfig,
    cfg: AuthConfig,
    *,
    state: str,
    code_challenge: str,
) -> str:
    params = {
        "client_id": cfg.client_id or "",
        "response_type": "code",
        "redirect_uri": cfg.redirect_uri,
        "scope": LOGIN_SCOPE,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
        "state": state,
    }
    return f"{provider.authorization_endpoint}?{urlencode(params)}"


def end_session_url(provider: ProviderConfig, cfg: AuthConfig) -> str:
    """
    Provider logout URL: discovered end_session_endpoint, else the Cognito hosted-UI `/logout`.
    """
    base = provider.end_session_endpoint
    if not base and cfg.cognito_domain:
        base = f"https://{cfg.cognito_domain}/logout"
    if not base:
        logger.warning("No end_session_endpoint and COGNITO_DOMAIN unset; logging out locally only")
        return cfg.logout_redirect_uri
    query = urlencode({"client_id": cfg.client_id or "", "logout_uri": cfg.logout_redirect_uri})
    sep = "&" if "?" in base else "?"
    return f"{base}{sep}{query}"


def _error_fields(r: requests.Response) -> Tuple[Optional[str], Optional[str]]:
    try:
        body = r.json()
    except ValueError:
        return None, None
    if not isinstance(body, dict):
        return None, None
    error = body.get("error")
    desc = body.get("error_description")
    return (str(error) if error else None), (str(desc) if desc else None)


def _post_token(provider: ProviderConfig, cfg: AuthConfig, data: Dict[str, str]) -> Dict[str, Any]:
    payload = dict(data)
    auth = None
    if cfg.client_secret:
        auth = (cfg.client_id or "", cfg.client_secret)
    else:
        payload["client_id"] = cfg.client_id or ""
    try:
        r = requests.post(
            provider.token_endpoint,
            data=payload,
            auth=auth,
            headers={"Accept": "application/json"},
            timeout=cfg.http_timeout_seconds,
        )
    except requests.RequestException as e:
        raise ProviderNetworkError(f"Token endpoint unreachable ({e.__class__.__name__})") from e

    if not 200 <= r.status_code < 300:
        error, desc = _error_fields(r)
        # Avoid leaking sensitive info; include minimal context.
        raise ProviderRejectedError(
            f"Token request failed (status={r.status_code})",
            status=r.status_code,
            error=error,
            error_description=desc,
        )
    try:
        body = r.json()
    except ValueError as e:
        raise ProviderRejectedError("Invalid token response (not JSON)", status=r.status_code) from e
    if not isinstance(body, dict):
        raise ProviderRejectedError("Invalid token response", status=r.status_code)
    return body


def _token_set(body: Mapping[str, Any]) -> TokenSet:
    id_token = str(body.get("id_token") or "").strip()
    access_token = str(body.get("access_token") or "").strip()
    if not id_token or not access_token:
        raise ProviderRejectedError("Token response missing id_token/access_token")
    try:
        expires_in = int(body.get("expires_in") or DEFAULT_EXPIRES_IN)
    except (TypeError, ValueError):
        expires_in = DEFAULT_EXPIRES_IN
    refresh_token = str(body.get("refresh_token") or "").strip() or None
    return TokenSet(
        id_token=id_token,
        access_token=access_token,
        expires_in=max(expires_in, 0),
        refresh_token=refresh_token,
    )


def exchange_code_for_tokens(
    provider: ProviderConfig,
    cfg: AuthConfig,
    *,
    code: str,
    redirect_uri: str,
    code_verifier: str,
) -> TokenSet:
    """
    Exchange an authorization code for tokens and verify the returned id_token.

    The caller has already matched the callback state against its cookie; the provider
    checks `code_verifier` against the challenge it saw at `/authorize`.
    """
    body = _post_token(
        provider,
        cfg,
        {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
        },
    )
    tokens = _token_set(body)
    try:
        verify_id_token(provider, cfg, tokens.id_token)
    except (TokenExpiredError, InvalidTokenError) as e:
        raise ProviderRejectedError(f"ID token from code exchange failed validation: {e}") from e
    return tokens


def refresh_tokens(provider: ProviderConfig, cfg: AuthConfig, refresh_token: str) -> TokenSet:
    """
    Trade a refresh token for a new id/access token pair.

    Cognito does not return a new refresh token here; other providers may.
    """
    body = _post_token(provider, cfg, {"grant_type": "refresh_token", "refresh_token": refresh_token})
    return _token_set(body)


def _decode(
    provider: ProviderConfig, cfg: AuthConfig, id_token: str, key: Any, *, verify_exp: bool = True
) -> Dict[str, Any]:
    return jwt.decode(
        id_token,
        key=key,
        algorithms=["RS256"],
        audience=cfg.client_id,
        issuer=provider.issuer,
        options={"require": ["exp", "iat", "iss", "aud"], "verify_exp": verify_exp},
    )


def verify_id_token(provider: ProviderConfig, cfg: AuthConfig, id_token: str) -> Dict[str, Any]:
    """
    Verify signature, issuer and audience of an id token.

    Raises:
        TokenExpiredError: the token is otherwise valid (signature, issuer, audience) but past `exp`.
        InvalidTokenError: any other failure.
    """
    try:
        hdr = jwt.get_unverified_header(id_token)
    except jwt.InvalidTokenError as e:
        raise InvalidTokenError(f"Malformed ID token: {e}") from e
    kid = str(hdr.get("kid") or "")
    if not kid:
        raise InvalidTokenError("ID token missing kid")
    key = provider.keys.get(kid)
    if key is None:
        raise InvalidTokenError("Unknown signing key (kid)")

    try:
        claims = _decode(provider, cfg, id_token, key)
    except jwt.ExpiredSignatureError as e:
        # PyJWT checks exp before aud/iss; only a token that is otherwise valid counts as expired.
        try:
            _decode(provider, cfg, id_token, key, verify_exp=False)
        except jwt.InvalidTokenError as inner:
            raise InvalidTokenError(str(inner)) from inner
        raise TokenExpiredError("ID token expired") from e
    except jwt.InvalidTokenError as e:
        raise InvalidTokenError(str(e)) from e
    if not isinstance(claims, dict):
        raise InvalidTokenError("Invalid ID token claims")
    return claims
