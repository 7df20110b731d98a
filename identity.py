"""Caller identity resolution and the context object passed to every operation."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Mapping, Optional

from errors import Unauthorized


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CallerContext:
    """Authenticated caller plus the clock used for the current request."""

    user_id: str
    now: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        if not self.user_id or not str(self.user_id).strip():
            raise Unauthorized("missing caller identity")
        if self.now.tzinfo is None:
            object.__setattr__(self, "now", self.now.replace(tzinfo=timezone.utc))


def require_context(ctx: Optional[CallerContext]) -> CallerContext:
    if ctx is None:
        raise Unauthorized("missing caller identity")
    return ctx


def _parse_token_pairs(raw: Optional[str]) -> Dict[str, str]:
    tokens: Dict[str, str] = {}
    if not raw:
        return tokens
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk or ":" not in chunk:
            continue
        token, user_id = chunk.split(":", 1)
        token, user_id = token.strip(), user_id.strip()
        if token and user_id:
            tokens[token] = user_id
    return tokens


def _extract_token(header_value: Optional[str]) -> Optional[str]:
    if not header_value:
        return None
    candidate = header_value.strip()
    if not candidate:
        return None
    if " " in candidate:
        prefix, token = candidate.split(" ", 1)
        if prefix.lower() in {"bearer", "token"}:
            candidate = token.strip()
        else:
            candidate = token.strip() or prefix.strip()
    return candidate or None


class IdentityResolver:
    """Maps bearer tokens to user ids.

    Tokens come from ``API_TOKENS`` (``token:user_id`` pairs, comma separated)
    or are registered programmatically. Cookie handling is left to the
    deployment in front of the API.
    """

    def __init__(self, tokens: Optional[Mapping[str, str]] = None) -> None:
        self._tokens: Dict[str, str] = dict(tokens or {})

    @classmethod
    def from_env(cls) -> "IdentityResolver":
        return cls(_parse_token_pairs(os.getenv("API_TOKENS")))

    def register(self, token: str, user_id: str) -> None:
        self._tokens[token] = user_id

    def resolve(
        self,
        authorization: Optional[str] = None,
        x_token: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> CallerContext:
        for candidate in (_extract_token(authorization), _extract_token(x_token)):
            if candidate and candidate in self._tokens:
                if now is None:
                    return CallerContext(user_id=self._tokens[candidate])
                return CallerContext(user_id=self._tokens[candidate], now=now)
        raise Unauthorized("missing or invalid token")
