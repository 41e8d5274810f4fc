from __future__ import annotations

from unittest.mock import patch

import pytest
import requests
from conftest import BASE_URL, fake_response, is_cleared, set_cookie_headers
from fastapi.testclient import TestClient

from nutrilog.api.server import create_app
from nutrilog.auth.errors import AuthConfigError, DiscoveryError

SESSION_COOKIES = ("id_token", "access_token", "refresh_token")


def _assert_logged_out(r) -> None:
    assert r.status_code == 302
    assert r.headers["location"] == "/login"
    cookies = set_cookie_headers(r)
    for name in SESSION_COOKIES:
        assert is_cleared(cookies[name])


def test_no_cookies_redirects_to_login(client) -> None:
    with patch("nutrilog.auth.oidc.requests.post") as mock_post:
        r = client.get("/ping")
    assert r.status_code == 302
    assert r.headers["location"] == "/login"
    assert mock_post.call_count == 0


def test_valid_token_passes_without_refresh(client, set_signed_cookie, make_id_token) -> None:
    set_signed_cookie(client, "id_token", make_id_token())
    set_signed_cookie(client, "refresh_token", "refresh-1")
    with patch("nutrilog.auth.oidc.requests.post") as mock_post:
        r = client.get("/ping")
    assert r.status_code == 200
    assert r.json() == {"value": "ok"}
    assert mock_post.call_count == 0
    assert set_cookie_headers(r) == {}


def test_me_returns_verified_claims(client, set_signed_cookie, make_id_token) -> None:
    set_signed_cookie(client, "id_token", make_id_token(email="Bob@Example.com"))
    r = client.get("/me")
    assert r.status_code == 200
    body = r.json()
    assert body["email"] == "Bob@Example.com"
    assert body["sub"] == "user-123"
    assert body["token_use"] == "id"


def test_expired_token_refreshes_once(client, set_signed_cookie, make_id_token, token_response) -> None:
    set_signed_cookie(client, "id_token", make_id_token(expires_in=-60))
    set_signed_cookie(client, "refresh_token", "refresh-1")
    with patch("nutrilog.auth.oidc.requests.post") as mock_post:
        mock_post.return_value = token_response(refresh_token=None, expires_in=900)
        r = client.get("/ping")

    assert r.status_code == 200
    mock_post.assert_called_once()
    assert mock_post.call_args.kwargs["data"]["refresh_token"] == "refresh-1"
    cookies = set_cookie_headers(r)
    assert "max-age=900" in cookies["id_token"].lower()
    assert "max-age=900" in cookies["access_token"].lower()
    # Not rotated when the provider does not return one.
    assert "refresh_token" not in cookies


def test_refresh_rotates_refresh_token(client, set_signed_cookie, make_id_token, token_response) -> None:
    set_signed_cookie(client, "id_token", make_id_token(expires_in=-60))
    set_signed_cookie(client, "refresh_token", "refresh-1")
    with patch("nutrilog.auth.oidc.requests.post") as mock_post:
        mock_post.return_value = token_response(refresh_token="refresh-2")
        r = client.get("/ping")
    assert r.status_code == 200
    cookies = set_cookie_headers(r)
    assert "max-age=2592000" in cookies["refresh_token"].lower()


def test_missing_id_token_with_refresh_token_refreshes(client, set_signed_cookie, token_response) -> None:
    set_signed_cookie(client, "refresh_token", "refresh-1")
    with patch("nutrilog.auth.oidc.requests.post") as mock_post:
        mock_post.return_value = token_response()
        r = client.get("/me")
    assert r.status_code == 200
    assert r.json()["email"] == "alice@example.com"
    mock_post.assert_called_once()


def test_expired_without_refresh_token_redirects(client, set_signed_cookie, make_id_token) -> None:
    set_signed_cookie(client, "id_token", make_id_token(expires_in=-60))
    with patch("nutrilog.auth.oidc.requests.post") as mock_post:
        r = client.get("/ping")
    assert r.status_code == 302
    assert r.headers["location"] == "/login"
    assert mock_post.call_count == 0


@pytest.mark.parametrize(
    "response",
    [
        fake_response(400, {"error": "invalid_grant"}),
        fake_response(500, ValueError("not json")),
        fake_response(200, {"unexpected": True}),
    ],
)
def test_refresh_failure_clears_session(client, set_signed_cookie, make_id_token, response) -> None:
    set_signed_cookie(client, "id_token", make_id_token(expires_in=-60))
    set_signed_cookie(client, "refresh_token", "refresh-1")
    with patch("nutrilog.auth.oidc.requests.post") as mock_post:
        mock_post.return_value = response
        r = client.get("/ping")
    _assert_logged_out(r)


def test_refresh_network_error_clears_session(client, set_signed_cookie, make_id_token) -> None:
    set_signed_cookie(client, "id_token", make_id_token(expires_in=-60))
    set_signed_cookie(client, "refresh_token", "refresh-1")
    with patch("nutrilog.auth.oidc.requests.post") as mock_post:
        mock_post.side_effect = requests.ConnectionError("down")
        r = client.get("/ping")
    _assert_logged_out(r)


def test_refreshed_token_must_verify(client, set_signed_cookie, make_id_token, token_response) -> None:
    set_signed_cookie(client, "id_token", make_id_token(expires_in=-60))
    set_signed_cookie(client, "refresh_token", "refresh-1")
    with patch("nutrilog.auth.oidc.requests.post") as mock_post:
        mock_post.return_value = token_response(audience="someone-else")
        r = client.get("/ping")
    _assert_logged_out(r)


def test_invalid_token_is_not_refreshed(client, set_signed_cookie, make_id_token) -> None:
    set_signed_cookie(client, "id_token", make_id_token(audience="someone-else"))
    set_signed_cookie(client, "refresh_token", "refresh-1")
    with patch("nutrilog.auth.oidc.requests.post") as mock_post:
        r = client.get("/ping")
    _assert_logged_out(r)
    assert mock_post.call_count == 0


def test_unsigned_cookie_is_ignored(client, make_id_token) -> None:
    client.cookies.set("id_token", make_id_token())
    r = client.get("/ping")
    assert r.status_code == 302
    assert r.headers["location"] == "/login"


def test_unexpected_error_clears_session(client, set_signed_cookie, make_id_token) -> None:
    set_signed_cookie(client, "id_token", make_id_token())
    with patch("nutrilog.auth.deps.verify_id_token", side_effect=RuntimeError("kaboom")):
        r = client.get("/ping")
    _assert_logged_out(r)


def test_protected_app_routes(client, set_signed_cookie, make_id_token) -> None:
    set_signed_cookie(client, "id_token", make_id_token())
    r = client.get("/")
    assert r.status_code == 302
    assert r.headers["location"] == "/day.html"

    r = client.get("/api/config")
    assert r.status_code == 200
    body = r.json()
    assert body["dbName"] == "nutrilog_test"
    assert body["isTestDb"] is True
    assert body["goals"] == {"daily_kcal": 2000, "tdee": 2400}


def test_static_files_are_protected(auth_cfg, provider, app_cfg, tmp_path, set_signed_cookie, make_id_token) -> None:
    static = tmp_path / "public"
    static.mkdir()
    (static / "day.html").write_text("<h1>Today</h1>")
    app = create_app(auth_cfg, provider, app_cfg.model_copy(update={"static_dir": str(static)}))
    c = TestClient(app, base_url=BASE_URL, follow_redirects=False)

    r = c.get("/day.html")
    assert r.status_code == 302

    set_signed_cookie(c, "id_token", make_id_token())
    r = c.get("/day.html")
    assert r.status_code == 200
    assert "Today" in r.text


def test_dev_bypass_attaches_fixed_user(auth_cfg, app_cfg) -> None:
    from dataclasses import replace

    cfg = replace(auth_cfg, skip_auth=True)
    with patch("nutrilog.api.server.discover_provider") as mock_discover:
        app = create_app(cfg, None, app_cfg)
    assert mock_discover.call_count == 0
    c = TestClient(app, base_url=BASE_URL, follow_redirects=False)
    r = c.get("/me")
    assert r.status_code == 200
    assert r.json()["email"] == "dev@example.com"
    assert r.json()["token_use"] == "id"


def test_dev_bypass_refused_in_production(auth_cfg, app_cfg) -> None:
    from dataclasses import replace

    cfg = replace(auth_cfg, skip_auth=True, production=True)
    with pytest.raises(AuthConfigError):
        create_app(cfg, None, app_cfg)


def test_discovery_failure_aborts_startup(auth_cfg, app_cfg) -> None:
    with patch("nutrilog.auth.oidc.requests.get") as mock_get:
        mock_get.side_effect = requests.ConnectionError("no route")
        with pytest.raises(DiscoveryError):
            create_app(auth_cfg, None, app_cfg)


def test_cors_for_extension_origin(auth_cfg, provider, app_cfg) -> None:
    origin = "chrome-extension://abcdefghijklmnop"
    app = create_app(auth_cfg, provider, app_cfg.model_copy(update={"extension_origin": origin}))
    c = TestClient(app, base_url=BASE_URL, follow_redirects=False)
    r = c.options("/api/config", headers={"Origin": origin, "Access-Control-Request-Method": "GET"})
    assert r.status_code == 200
    assert r.headers["access-control-allow-origin"] == origin
    assert r.headers["access-control-allow-credentials"] == "true"


@pytest.mark.parametrize("kwargs", [{"audience": "other-client"}, {"issuer": "https://evil.example.com"}])
def test_expired_foreign_token_is_not_refreshed(client, set_signed_cookie, make_id_token, kwargs) -> None:
    set_signed_cookie(client, "id_token", make_id_token(expires_in=-60, **kwargs))
    set_signed_cookie(client, "refresh_token", "refresh-1")
    with patch("nutrilog.auth.oidc.requests.post") as mock_post:
        r = client.get("/ping")
    _assert_logged_out(r)
    assert mock_post.call_count == 0


def test_plain_options_request_requires_auth(client) -> None:
    r = client.options("/api/config")
    assert r.status_code == 302
    assert r.headers["location"] == "/login"


def test_options_with_origin_only_requires_auth(auth_cfg, provider, app_cfg) -> None:
    origin = "chrome-extension://abcdefghijklmnop"
    app = create_app(auth_cfg, provider, app_cfg.model_copy(update={"extension_origin": origin}))
    c = TestClient(app, base_url=BASE_URL, follow_redirects=False)
    r = c.options("/api/config", headers={"Origin": origin})
    # Not a preflight: no Access-Control-Request-Method.
    assert r.status_code == 302
    assert r.headers["location"] == "/login"
