"""Issuing and verifying scoped realtime credentials."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import jwt

from app.config import Settings
from app.schemas import ScopedCredential

DEFAULT_KEY_NAME = "default"

# channels a scoped connection may use; the roster and presence channels are shared
DEFAULT_CAPABILITY: Dict[str, list[str]] = {
    "chat:*": ["subscribe"],
    "direct:{client_id}": ["subscribe"],
    "presence": ["presence", "subscribe"],
    "users": ["publish", "subscribe"],
}


class ScopedTokenError(Exception):
    """Raised when a scoped credential cannot be issued or verified."""


@dataclass(slots=True)
class MessagingKey:
    """Messaging service key split into its public name and signing secret."""

    name: str
    secret: str

    @classmethod
    def parse(cls, raw: str | None) -> "MessagingKey":
        if not raw:
            raise ScopedTokenError("Messaging API key is not configured")
        name, separator, secret = raw.partition(":")
        if not separator:
            name, secret = DEFAULT_KEY_NAME, raw
        if not name or not secret:
            raise ScopedTokenError("Messaging API key is malformed")
        return cls(name=name, secret=secret)


def _capability_for(client_id: str) -> Dict[str, list[str]]:
    return {
        channel.format(client_id=client_id): list(operations)
        for channel, operations in DEFAULT_CAPABILITY.items()
    }


def create_scoped_token(
    client_id: str,
    settings: Settings,
    *,
    now: datetime | None = None,
) -> ScopedCredential:
    """Create a signed credential binding a realtime connection to *client_id*."""

    if not client_id:
        raise ScopedTokenError("Client id is required")
    key = MessagingKey.parse(settings.messaging_api_key)
    issued_at = now or datetime.now(timezone.utc)
    expires_at = issued_at + timedelta(minutes=max(settings.token_ttl_minutes, 1))
    capability = _capability_for(client_id)
    claims = {
        "sub": client_id,
        "iat": issued_at,
        "exp": expires_at,
        "capability": capability,
    }
    try:
        token = jwt.encode(
            claims,
            key.secret,
            algorithm=settings.jwt_algorithm,
            headers={"kid": key.name},
        )
    except (jwt.PyJWTError, NotImplementedError, TypeError) as exc:
        raise ScopedTokenError("Failed to sign scoped token") from exc
    return ScopedCredential(
        token=token,
        key_name=key.name,
        client_id=client_id,
        issued=int(issued_at.timestamp() * 1000),
        expires=int(expires_at.timestamp() * 1000),
        capability=capability,
    )


def verify_scoped_token(token: str, settings: Settings) -> Dict[str, Any]:
    """Decode a scoped token, returning its claims or raising ScopedTokenError."""

    key = MessagingKey.parse(settings.messaging_api_key)
    try:
        header = jwt.get_unverified_header(token)
    except jwt.InvalidTokenError as exc:
        raise ScopedTokenError("Malformed scoped token") from exc
    if header.get("kid") != key.name:
        raise ScopedTokenError("Scoped token was signed by an unknown key")
    try:
        claims = jwt.decode(token, key.secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError as exc:
        raise ScopedTokenError("Scoped token has expired") from exc
    except jwt.InvalidTokenError as exc:
        raise ScopedTokenError("Could not validate scoped token") from exc
    if not claims.get("sub"):
        raise ScopedTokenError("Scoped token has no client id")
    return claims
