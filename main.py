#!/usr/bin/env python3
"""
nutrilog - personal nutrition tracker backend.
Serves the OIDC-protected web app.
"""

import argparse
import json
import logging
import os
import sys

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", stream=sys.stderr
)

logger = logging.getLogger("nutrilog")


def _default_port() -> int:
    try:
        return int(os.getenv("PORT", "") or 3001)
    except ValueError:
        return 3001


def check_provider() -> int:
    """Run OIDC discovery once and print what the server would use."""
    from nutrilog.auth.config import load_auth_config
    from nutrilog.auth.oidc import discover_provider, end_session_url

    cfg = load_auth_config()
    cfg.validate()
    if cfg.skip_auth:
        print(json.dumps({"ok": True, "skipAuth": True}, indent=2))
        return 0
    provider = discover_provider(cfg)
    print(
        json.dumps(
            {
                "ok": True,
                "issuer": provider.issuer,
                "authorizationEndpoint": provider.authorization_endpoint,
                "tokenEndpoint": provider.token_endpoint,
                "endSessionUrl": end_session_url(provider, cfg),
                "scopesSupported": list(provider.scopes_supported),
                "signingKeys": sorted(provider.keys.keys()),
                "redirectUri": cfg.redirect_uri,
            },
            indent=2,
        )
    )
    return 0


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Run the nutrilog web server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Serve with Cognito login (COGNITO_ISSUER, COGNITO_CLIENT_ID, COOKIE_SECRET, APP_BASE_URL)
  python main.py

  # Local development without a provider (refused when APP_ENV=production)
  python main.py --no-auth

  # Verify OIDC discovery and print the resolved endpoints
  python main.py --check-provider
        """,
    )
    parser.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"), help="Bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=_default_port(), help="Listen port (default: $PORT or 3001)")
    parser.add_argument(
        "--no-auth",
        action="store_true",
        help="Serve every request as a fixed dev user (same as SKIP_AUTH=1; refused in production)",
    )
    parser.add_argument(
        "--check-provider", action="store_true", help="Run OIDC discovery, print the provider metadata, and exit"
    )

    args = parser.parse_args()

    if args.no_auth:
        os.environ["SKIP_AUTH"] = "1"

    from nutrilog.auth.errors import AuthConfigError, DiscoveryError

    try:
        if args.check_provider:
            sys.exit(check_provider())

        from nutrilog.api.server import run

        run(host=args.host, port=args.port)
    except (AuthConfigError, DiscoveryError) as e:
        logger.error("Startup failed: %s", str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
