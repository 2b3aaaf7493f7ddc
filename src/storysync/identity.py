"""Resolve request credentials to the owner id that partitions storage."""

from __future__ import annotations

from typing import Mapping, Protocol

from .errors import UnauthorizedError

BEARER_PREFIX = "bearer "


class IdentityResolver(Protocol):
    """Maps a bearer credential to a stable owner id."""

    def resolve(self, credential: str | None) -> str:
        """Return the owner id or raise :class:`UnauthorizedError`."""


def parse_bearer_token(authorization: str | None) -> str | None:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""

    if not authorization:
        return None
    value = authorization.strip()
    if value.lower().startswith(BEARER_PREFIX):
        value = value[len(BEARER_PREFIX):].strip()
    return value or None


class StaticTokenIdentityResolver:
    """Resolve credentials from a fixed ``token -> owner id`` mapping."""

    def __init__(self, tokens: Mapping[str, str]) -> None:
        self._tokens = {
            token.strip(): owner.strip()
            for token, owner in tokens.items()
            if token.strip() and owner.strip()
        }

    def resolve(self, credential: str | None) -> str:
        if not credential:
            raise UnauthorizedError("Missing bearer token.")
        owner_id = self._tokens.get(credential)
        if owner_id is None:
            raise UnauthorizedError("Unknown bearer token.", reason="invalid_token")
        return owner_id


__all__ = [
    "IdentityResolver",
    "StaticTokenIdentityResolver",
    "parse_bearer_token",
]
