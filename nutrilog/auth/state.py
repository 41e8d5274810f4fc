from __future__ import annotations

from dataclasses import dataclass

from nutrilog.auth.errors import FlowIntegrityError
from nutrilog.auth.models import Channel
from nutrilog.auth.util import random_token

_SEP = ":"


@dataclass(frozen=True)
class LoginState:
    """
    The OAuth `state` parameter: a random nonce tagged with the login channel.

    The channel travels inside the state so `/callback` can pick the right cookie
    namespace before it has read any cookie.
    """

    channel: Channel
    nonce: str

    @classmethod
    def new(cls, channel: Channel) -> "LoginState":
        return cls(channel=channel, nonce=random_token(24))

    def encode(self) -> str:
        return f"{self.channel.value}{_SEP}{self.nonce}"

    @classmethod
    def decode(cls, raw: str | None) -> "LoginState":
        value = (raw or "").strip()
        if not value:
            raise FlowIntegrityError("missing state")
        tag, sep, rest = value.partition(_SEP)
        if sep and rest:
            if tag == Channel.EXT.value:
                return cls(channel=Channel.EXT, nonce=rest)
            if tag == Channel.WEB.value:
                return cls(channel=Channel.WEB, nonce=rest)
        # Untagged states belong to the web channel; the cookie comparison decides validity.
        return cls(channel=Channel.WEB, nonce=value)
