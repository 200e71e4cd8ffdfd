from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, UTCDateTime, utcnow


class User(Base):
    """Chat profile mirrored from the identity service."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    username: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    # storage keeps the lowercase column names; attributes are normalized here
    is_online: Mapped[bool] = mapped_column("isonline", Boolean, default=False, nullable=False)
    last_seen: Mapped[datetime | None] = mapped_column("lastseen", UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False
    )

    sent_messages: Mapped[list["Message"]] = relationship(
        back_populates="sender", foreign_keys="Message.sender_id"
    )

    __table_args__ = (Index("idx_users_online", "isonline"),)


class Message(Base):
    """Persisted chat message; immutable once written."""

    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    sender_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    recipient_id: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    chat_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    sender: Mapped[User] = relationship(back_populates="sent_messages", foreign_keys=[sender_id])

    __table_args__ = (
        Index("idx_messages_sender_id", "sender_id"),
        Index("idx_messages_recipient_id", "recipient_id"),
        Index("idx_messages_chat_id", "chat_id"),
    )
