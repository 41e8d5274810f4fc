"""
Pytest config.

Local imports like `import nutrilog` rely on the repo root being on sys.path; when invoking
a global `pytest` entrypoint that doesn't happen reliably during collection, so we pin it here.

Auth tests never talk to a real provider: `provider` is built in-memory from a generated RSA
key, and outbound token calls are patched at `nutrilog.auth.oidc.requests.post`.
"""

from __future__ import annotations

import json
import sys
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional
from unittest.mock import MagicMock


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

import jwt  # noqa: E402
import pytest  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import rsa  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from nutrilog.app_config import AppConfig, load_app_config  # noqa: E402
from nutrilog.auth.config import AuthConfig, load_auth_config  # noqa: E402
from nutrilog.auth.cookies import sign_value  # noqa: E402
from nutrilog.auth.oidc import ProviderConfig  # noqa: E402

ISSUER = "https://cognito-idp.ap-southeast-2.amazonaws.com/ap-southeast-2_TEST"
CLIENT_ID = "test-client-id"
KID = "test-kid-1"
BASE_URL = "https://testserver"

DISCOVERY = {
    "issuer": ISSUER,
    "authorization_endpoint": "https://auth.example.com/oauth2/authorize",
    "token_endpoint": "https://auth.example.com/oauth2/token",
    "jwks_uri": f"{ISSUER}/.well-known/jwks.json",
    "end_session_endpoint": "https://auth.example.com/logout",
    "scopes_supported": ["openid", "email", "phone"],
}


@pytest.fixture(autouse=True)
def _clear_config_caches():
    load_auth_config.cache_clear()
    load_app_config.cache_clear()
    yield
    load_auth_config.cache_clear()
    load_app_config.cache_clear()


@pytest.fixture(scope="session")
def rsa_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def jwks(rsa_private_key) -> Dict[str, Any]:
    jwk = json.loads(jwt.algorithms.RSAAlgorithm.to_jwk(rsa_private_key.public_key()))
    jwk.update({"kid": KID, "alg": "RS256", "use": "sig"})
    return {"keys": [jwk]}


@pytest.fixture
def provider(jwks) -> ProviderConfig:
    return ProviderConfig.from_metadata(DISCOVERY, jwks)


@pytest.fixture
def auth_cfg() -> AuthConfig:
    return AuthConfig(
        issuer=ISSUER,
        client_id=CLIENT_ID,
        client_secret="test-client-secret",
        cognito_domain="auth.example.com",
        app_base_url=BASE_URL,
        cookie_secret="test-cookie-secret-for-testing-purposes-only",
        http_timeout_seconds=5.0,
        skip_auth=False,
        production=False,
    )


@pytest.fixture
def make_id_token(rsa_private_key) -> Callable[..., str]:
    def _make(
        *,
        email: str = "alice@example.com",
        expires_in: int = 3600,
        audience: str = CLIENT_ID,
        issuer: str = ISSUER,
        kid: str = KID,
        key: Optional[Any] = None,
    ) -> str:
        now = int(time.time())
        claims = {
            "sub": "user-123",
            "email": email,
            "token_use": "id",
            "iss": issuer,
            "aud": audience,
            "iat": now - 10,
            "exp": now + expires_in,
        }
        return jwt.encode(claims, key or rsa_private_key, algorithm="RS256", headers={"kid": kid})

    return _make


def fake_response(status_code: int = 200, body: Any = None) -> MagicMock:
    r = MagicMock()
    r.status_code = status_code
    if isinstance(body, Exception):
        r.json.side_effect = body
    else:
        r.json.return_value = body if body is not None else {}
    return r


@pytest.fixture
def token_response(make_id_token) -> Callable[..., MagicMock]:
    def _make(*, refresh_token: Optional[str] = "refresh-1", expires_in: int = 3600, **token_kwargs) -> MagicMock:
        body: Dict[str, Any] = {
            "id_token": make_id_token(**token_kwargs),
            "access_token": "access-1",
            "expires_in": expires_in,
            "token_type": "Bearer",
        }
        if refresh_token:
            body["refresh_token"] = refresh_token
        return fake_response(200, body)

    return _make


@pytest.fixture
def app_cfg(tmp_path) -> AppConfig:
    return AppConfig(static_dir=str(tmp_path / "no-static"), db_name="nutrilog_test")


@pytest.fixture
def client(auth_cfg, provider, app_cfg) -> TestClient:
    from nutrilog.api.server import create_app

    app = create_app(auth_cfg, provider, app_cfg)
    return TestClient(app, base_url=BASE_URL, follow_redirects=False)


@pytest.fixture
def set_signed_cookie(auth_cfg) -> Callable[[TestClient, str, str], None]:
    def _set(c: TestClient, name: str, value: str) -> None:
        c.cookies.set(name, sign_value(auth_cfg, name, value))

    return _set


def set_cookie_headers(r) -> Dict[str, str]:
    """Set-Cookie headers of a response keyed by cookie name."""
    out: Dict[str, str] = {}
    for h in r.headers.get_list("set-cookie"):
        out[h.split("=", 1)[0]] = h
    return out


def is_cleared(header: str) -> bool:
    return "max-age=0" in header.lower()
