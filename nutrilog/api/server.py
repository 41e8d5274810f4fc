"""
HTTP server: OIDC login routes, the auth middleware, and the protected app surface.

The provider configuration is discovered once in `create_app` and shared read-only via
`app.state.provider`; a discovery failure aborts startup.
"""

from __future__ import annotations

import hmac
import logging
import os
import time
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from starlette.concurrency import run_in_threadpool

from nutrilog.app_config import AppConfig, load_app_config
from nutrilog.auth.config import AuthConfig, load_auth_config
from nutrilog.auth.cookies import (
    TRANSIENT_TTL_SECONDS,
    clear_session_cookies,
    clear_transient_cookie_kwargs,
    pkce_cookie_name,
    read_signed_cookie,
    set_session_cookies,
    state_cookie_name,
    transient_cookie_kwargs,
)
from nutrilog.auth.deps import LOGIN_PATH, authenticate_request, get_current_user
from nutrilog.auth.errors import (
    AuthFlowError,
    FlowIntegrityError,
    ProviderRejectedError,
    UnknownAuthError,
)
from nutrilog.auth.models import DEV_USER, AuthUser, Channel
from nutrilog.auth.oidc import (
    ProviderConfig,
    build_authorize_url,
    discover_provider,
    end_session_url,
    exchange_code_for_tokens,
)
from nutrilog.auth.state import LoginState
from nutrilog.auth.util import new_pkce_pair, short

logger = logging.getLogger(__name__)

_PUBLIC_PATHS = frozenset({"/healthz", "/login", "/callback", "/logout", "/logged-out", "/login-done-ext"})

_FAILURE_PAGE = """<!doctype html>
<html><head><title>{title}</title></head>
<body><h1>{title}</h1><p>{message}</p><p><a href="/login">Try again</a></p></body></html>
"""

_LOGGED_OUT_PAGE = '<p>Signed out. <a href="/login">Sign in</a></p>'


def _is_public_path(path: str) -> bool:
    return path in _PUBLIC_PATHS


def _is_cors_preflight(request: Request) -> bool:
    return (
        request.method == "OPTIONS"
        and "origin" in request.headers
        and "access-control-request-method" in request.headers
    )


def _provider(request: Request) -> ProviderConfig:
    provider = request.app.state.provider
    if provider is None:
        raise UnknownAuthError("OIDC provider is not configured (auth bypass is on)")
    return provider


def _no_store(resp):
    resp.headers["Cache-Control"] = "no-store"
    return resp


def create_app(
    auth_config: Optional[AuthConfig] = None,
    provider: Optional[ProviderConfig] = None,
    app_config: Optional[AppConfig] = None,
) -> FastAPI:
    """
    Build the application.

    Raises:
        AuthConfigError: invalid auth configuration (including bypass in production).
        DiscoveryError: the OIDC provider could not be discovered.
    """
    cfg = auth_config or load_auth_config()
    cfg.validate()
    app_cfg = app_config or load_app_config()

    if cfg.skip_auth:
        logger.warning("SKIP_AUTH: requests are served as %s without authentication", DEV_USER.email)
        provider = None
    elif provider is None:
        provider = discover_provider(cfg)

    app = FastAPI(title="nutrilog")
    app.state.auth_config = cfg
    app.state.provider = provider
    app.state.app_config = app_cfg

    if app_cfg.extension_origin:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[app_cfg.extension_origin],
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            allow_headers=["Content-Type", "Authorization"],
        )

    @app.exception_handler(AuthFlowError)
    async def _auth_flow_error(request: Request, exc: AuthFlowError) -> HTMLResponse:
        if isinstance(exc, ProviderRejectedError):
            logger.warning(
                "%s %s - auth flow failed: %s status=%s error=%s description=%s",
                request.method,
                request.url.path,
                exc.message,
                exc.status,
                exc.error,
                exc.error_description,
            )
        else:
            logger.warning("%s %s - auth flow failed: %s", request.method, request.url.path, exc.message)
        page = _FAILURE_PAGE.format(title=exc.title, message="We could not sign you in. Please try again.")
        return _no_store(HTMLResponse(page, status_code=exc.status_code))

    @app.middleware("http")
    async def require_auth(request: Request, call_next):
        """Fail closed: anything not explicitly public requires a verified id token."""
        start_time = time.time()
        path = request.url.path or ""
        if _is_cors_preflight(request) or _is_public_path(path):
            return await call_next(request)

        if cfg.skip_auth:
            request.state.user = DEV_USER
            return await call_next(request)

        decision = await run_in_threadpool(authenticate_request, cfg, provider, dict(request.cookies))
        if not decision.allowed:
            resp = RedirectResponse(url=decision.redirect_to or LOGIN_PATH, status_code=302)
            decision.apply(resp, cfg)
            logger.debug("%s %s - redirect to %s", request.method, path, resp.headers.get("location"))
            return _no_store(resp)

        request.state.user = decision.user
        response = await call_next(request)
        decision.apply(response, cfg)
        logger.debug(
            "%s %s - %d (%.3fs)", request.method, path, response.status_code, time.time() - start_time
        )
        return response

    @app.get("/healthz")
    def healthz() -> Dict[str, Any]:
        return {"ok": True}

    @app.get("/login")
    def login(request: Request):
        """Start the authorization code flow. `?from=ext` selects the extension channel."""
        provider = _provider(request)
        channel = Channel.from_query(request.query_params.get("from"))

        verifier, challenge = new_pkce_pair()
        state = LoginState.new(channel).encode()
        url = build_authorize_url(provider, cfg, state=state, code_challenge=challenge)
        logger.info("[login] channel=%s redirect_uri=%s", channel.value, cfg.redirect_uri)

        resp = RedirectResponse(url=url, status_code=302)
        resp.set_cookie(**transient_cookie_kwargs(cfg, key=pkce_cookie_name(channel), value=verifier))
        resp.set_cookie(**transient_cookie_kwargs(cfg, key=state_cookie_name(channel), value=state))
        return _no_store(resp)

    @app.get("/callback")
    def callback(request: Request):
        """Complete the flow: verify state/PKCE cookies, exchange the code, set session cookies."""
        rid = uuid.uuid4().hex[:12]
        provider = _provider(request)

        current_redirect = f"{request.url.scheme}://{request.url.netloc}{request.url.path}"
        if current_redirect != cfg.redirect_uri:
            logger.warning("[cb %s] redirect_uri mismatch: expected=%s got=%s", rid, cfg.redirect_uri, current_redirect)

        params = request.query_params
        state_param = (params.get("state") or "").strip()
        login_state = LoginState.decode(state_param)
        channel = login_state.channel

        expected_state = read_signed_cookie(
            cfg, request.cookies, state_cookie_name(channel), max_age=TRANSIENT_TTL_SECONDS
        )
        verifier = read_signed_cookie(cfg, request.cookies, pkce_cookie_name(channel), max_age=TRANSIENT_TTL_SECONDS)
        logger.info(
            "[cb %s] channel=%s state=%s have_state_cookie=%s have_pkce=%s",
            rid,
            channel.value,
            short(state_param),
            bool(expected_state),
            bool(verifier),
        )
        if not expected_state or not verifier:
            raise FlowIntegrityError("missing verifier/state cookie")
        if not hmac.compare_digest(expected_state.encode("utf-8"), state_param.encode("utf-8")):
            raise FlowIntegrityError("state mismatch")

        if params.get("error"):
            raise ProviderRejectedError(
                "provider returned an error",
                error=params.get("error"),
                error_description=params.get("error_description"),
            )
        code = (params.get("code") or "").strip()
        if not code:
            raise FlowIntegrityError("missing authorization code")

        try:
            tokens = exchange_code_for_tokens(
                provider, cfg, code=code, redirect_uri=current_redirect, code_verifier=verifier
            )
        except AuthFlowError:
            raise
        except Exception as e:
            logger.exception("[cb %s] unexpected error during code exchange", rid)
            raise UnknownAuthError("code exchange failed") from e
        logger.info(
            "[cb %s] tokens id=%s access=%s refresh=%s expires_in=%d",
            rid,
            short(tokens.id_token, 8),
            short(tokens.access_token, 8),
            short(tokens.refresh_token, 8),
            tokens.expires_in,
        )

        dest = "/login-done-ext" if channel is Channel.EXT else "/"
        resp = RedirectResponse(url=dest, status_code=302)
        resp.set_cookie(**clear_transient_cookie_kwargs(cfg, key=state_cookie_name(channel)))
        resp.set_cookie(**clear_transient_cookie_kwargs(cfg, key=pkce_cookie_name(channel)))
        set_session_cookies(resp, cfg, tokens)
        logger.info("[cb %s] redirecting -> %s", rid, dest)
        return _no_store(resp)

    @app.get("/logout")
    def logout(request: Request):
        """Clear the session locally, then log out at the provider."""
        provider = request.app.state.provider
        url = end_session_url(provider, cfg) if provider is not None else "/logged-out"
        resp = RedirectResponse(url=url, status_code=302)
        clear_session_cookies(resp, cfg)
        return _no_store(resp)

    @app.get("/logged-out")
    def logged_out() -> HTMLResponse:
        return HTMLResponse(_LOGGED_OUT_PAGE)

    @app.get("/login-done-ext")
    def login_done_ext() -> RedirectResponse:
        return RedirectResponse(url="/open_extension.html", status_code=302)

    @app.get("/me")
    def me(user: AuthUser = Depends(get_current_user)) -> Dict[str, Any]:
        return user.to_dict()

    @app.get("/ping")
    def ping() -> Dict[str, Any]:
        return {"value": "ok"}

    @app.get("/api/config")
    def api_config() -> JSONResponse:
        return JSONResponse(
            {
                "isTestDb": app_cfg.is_test_db,
                "dbName": app_cfg.db_name,
                "goals": app_cfg.goals.model_dump(),
            }
        )

    @app.get("/")
    def root() -> RedirectResponse:
        return RedirectResponse(url="/day.html", status_code=302)

    static_dir = Path(app_cfg.static_dir)
    if static_dir.is_dir():
        app.mount("/", StaticFiles(directory=str(static_dir)), name="static")

    return app


def run(host: str = "0.0.0.0", port: int = 3001) -> None:
    import uvicorn

    # Configure logging for the application
    log_level = os.getenv("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Map Python logging levels to uvicorn log levels
    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    app = create_app()
    logger.info("Starting nutrilog on %s:%d (log_level=%s)", host, port, log_level)
    # Behind a TLS-terminating proxy the callback must see the public scheme/host.
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level=uvicorn_log_level,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
