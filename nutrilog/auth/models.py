from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

DEFAULT_EXPIRES_IN = 3600


class Channel(str, Enum):
    """Surface that started a login: the web UI or the browser extension."""

    WEB = "web"
    EXT = "ext"

    @classmethod
    def from_query(cls, value: Optional[str]) -> "Channel":
        return cls.EXT if (value or "").strip() == cls.EXT.value else cls.WEB


@dataclass(frozen=True)
class AuthUser:
    """Verified identity attached to `request.state.user`."""

    sub: Optional[str]
    email: Optional[str] = None
    token_use: Optional[str] = None
    claims: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> "AuthUser":
        email = claims.get("email")
        return cls(
            sub=str(claims.get("sub") or "") or None,
            email=str(email).strip().lower() if email else None,
            token_use=str(claims.get("token_use") or "") or None,
            claims=dict(claims),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = dict(self.claims)
        out.setdefault("sub", self.sub)
        out.setdefault("email", self.email)
        out.setdefault("token_use", self.token_use)
        return out


# Fixed identity used when SKIP_AUTH is on (local development only).
DEV_USER = AuthUser(
    sub="dev",
    email="dev@example.com",
    token_use="id",
    claims={"sub": "dev", "email": "dev@example.com", "token_use": "id"},
)


@dataclass(frozen=True)
class TokenSet:
    id_token: str
    access_token: str
    expires_in: int = DEFAULT_EXPIRES_IN
    refresh_token: Optional[str] = None
