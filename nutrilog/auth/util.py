from __future__ import annotations

import base64
import hashlib
import os
from typing import Optional, Tuple


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def random_token(nbytes: int = 32) -> str:
    return b64url(os.urandom(nbytes))


def pkce_challenge(verifier: str) -> str:
    """
    S256 PKCE challenge for a verifier.
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return b64url(digest)


def new_pkce_pair() -> Tuple[str, str]:
    # 32 random bytes -> 43 base64url chars, the minimum verifier length.
    verifier = random_token(32)
    return verifier, pkce_challenge(verifier)


def short(value: Optional[str], n: int = 16) -> str:
    """Loggable form of a secret: prefix plus length."""
    if not value:
        return "-"
    return f"{value[:n]}...({len(value)})"
