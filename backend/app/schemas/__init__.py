"""Pydantic schemas for API payloads."""

from .messages import MessageCreate, MessageRead, MessageSender
from .realtime import ScopedCredential
from .rooms import ChatRoomRead
from .users import (
    RegisterRequest,
    RosterEntry,
    StatusRead,
    StatusUpdate,
    StatusUpdated,
    UserRead,
)

__all__ = [
    "ChatRoomRead",
    "MessageCreate",
    "MessageRead",
    "MessageSender",
    "RegisterRequest",
    "RosterEntry",
    "ScopedCredential",
    "StatusRead",
    "StatusUpdate",
    "StatusUpdated",
    "UserRead",
]
