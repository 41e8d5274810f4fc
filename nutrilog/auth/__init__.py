"""
Authentication for the nutrilog web app.

Design goals:
- OIDC (Cognito) authorization code flow with PKCE; no local passwords.
- Identity carried in signed HttpOnly cookies, refreshed transparently on expiry.
- Separate login channels for the web UI and the browser extension.
"""
