"""Channel names and event envelopes exchanged over the messaging service."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

PRESENCE_CHANNEL = "presence"
USERS_CHANNEL = "users"

MESSAGE_EVENT = "message"
ROSTER_UPDATE_EVENT = "update"
ROSTER_REQUEST_EVENT = "request_users"


def room_channel(room_id: str) -> str:
    return f"chat:{room_id}"


def direct_channel(user_id: str) -> str:
    return f"direct:{user_id}"


def build_envelope(name: str, data: dict[str, Any], *, client_id: str | None = None) -> dict[str, Any]:
    """Wrap an event payload the way every subscriber expects to receive it."""

    return {"name": name, "data": data, "clientId": client_id}


def unwrap_envelope(payload: dict[str, Any], name: str) -> dict[str, Any] | None:
    """Return the event data when *payload* is a well formed *name* event."""

    if payload.get("name") != name:
        return None
    data = payload.get("data")
    return data if isinstance(data, dict) else None


class PresenceAction(str, Enum):
    """Presence transitions announced on the shared presence channel."""

    ENTER = "enter"
    LEAVE = "leave"


@dataclass(slots=True, frozen=True)
class PresenceEvent:
    """A member entering or leaving the presence set.

    ``client_id`` is the identity the connection was opened with and
    ``token`` the scoped credential backing it; ``user_id`` is the member
    data announced by the client. The server only trusts events where the
    two identities agree.
    """

    action: PresenceAction
    user_id: str
    client_id: str | None = None
    token: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "clientId": self.client_id,
            "data": {"userId": self.user_id},
            "token": self.token,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "PresenceEvent | None":
        try:
            action = PresenceAction(payload.get("action"))
        except ValueError:
            return None
        data = payload.get("data")
        if not isinstance(data, dict):
            return None
        user_id = data.get("userId")
        if not isinstance(user_id, str) or not user_id:
            return None
        client_id = payload.get("clientId")
        token = payload.get("token")
        return cls(
            action=action,
            user_id=user_id,
            client_id=client_id if isinstance(client_id, str) else None,
            token=token if isinstance(token, str) else None,
        )
