"""Realtime helpers for talking to the messaging service."""

from .events import (  # noqa: F401
    PRESENCE_CHANNEL,
    USERS_CHANNEL,
    PresenceAction,
    PresenceEvent,
    build_envelope,
    direct_channel,
    room_channel,
)
from .transport import (  # noqa: F401
    BrokerConfig,
    Feed,
    RedisTransport,
    Subscription,
    TransportUnavailableError,
)

__all__ = [
    "PRESENCE_CHANNEL",
    "USERS_CHANNEL",
    "PresenceAction",
    "PresenceEvent",
    "build_envelope",
    "direct_channel",
    "room_channel",
    "BrokerConfig",
    "Feed",
    "RedisTransport",
    "Subscription",
    "TransportUnavailableError",
]
