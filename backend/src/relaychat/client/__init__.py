"""Client library for the chat server: HTTP API, identity session and realtime view."""

from .api import ChatApiClient, ChatClientError
from .auth import AuthError, AuthSession, IdentityClient, IdentitySession, IdentityUser
from .config import ClientSettings, get_client_settings
from .realtime import ConnectionState, RealtimeSession, is_visible_to, merge_messages

__all__ = [
    "AuthError",
    "AuthSession",
    "ChatApiClient",
    "ChatClientError",
    "ClientSettings",
    "ConnectionState",
    "IdentityClient",
    "IdentitySession",
    "IdentityUser",
    "RealtimeSession",
    "get_client_settings",
    "is_visible_to",
    "merge_messages",
]
