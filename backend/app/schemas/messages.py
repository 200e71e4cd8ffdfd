"""Schemas related to chat messages."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class MessageSender(BaseModel):
    """Lightweight sender information attached to message records."""

    id: str
    username: str


class MessageCreate(BaseModel):
    """Body of a send request; presence of a recipient marks a direct message."""

    model_config = ConfigDict(populate_by_name=True)

    content: str | None = None
    sender_id: str | None = Field(default=None, alias="senderId")
    recipient_id: str | None = Field(default=None, alias="recipientId")


class MessageRead(BaseModel):
    """Serialized representation of a persisted chat message."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    content: str
    sender_id: str
    recipient_id: str | None = None
    chat_id: str | None = None
    created_at: datetime
    updated_at: datetime
    sender: MessageSender | None = None
