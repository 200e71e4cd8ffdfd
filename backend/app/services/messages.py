"""Persistence and history queries for chat messages."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from app.models import Message
from app.models.base import utcnow
from app.schemas import MessageRead, MessageSender

logger = logging.getLogger(__name__)

_TIMESTAMP_STEP = timedelta(microseconds=1)


def _next_created_at(db: Session, chat_id: str, now: datetime) -> datetime:
    """Return a creation time strictly after the room's newest message."""

    latest = db.execute(
        select(func.max(Message.created_at)).where(Message.chat_id == chat_id)
    ).scalar_one_or_none()
    if latest is not None and now <= latest:
        return latest + _TIMESTAMP_STEP
    return now


def save_message(
    db: Session,
    *,
    sender_id: str,
    content: str,
    chat_id: str,
    recipient_id: str | None = None,
) -> Message:
    created_at = _next_created_at(db, chat_id, utcnow())
    message = Message(
        sender_id=sender_id,
        content=content,
        chat_id=chat_id,
        recipient_id=recipient_id or None,
        created_at=created_at,
        updated_at=created_at,
    )
    db.add(message)
    db.commit()
    return message


def list_messages(
    db: Session,
    chat_id: str,
    *,
    limit: int,
    before: datetime | None = None,
) -> list[Message]:
    """Return the newest messages of a room, most recent first."""

    stmt = (
        select(Message)
        .where(Message.chat_id == chat_id)
        .options(selectinload(Message.sender))
        .order_by(Message.created_at.desc())
        .limit(limit)
    )
    if before is not None:
        stmt = stmt.where(Message.created_at < before)
    return list(db.execute(stmt).scalars().all())


def serialize_message(message: Message, sender_username: str | None = None) -> MessageRead:
    record = MessageRead.model_validate(message, from_attributes=True)
    username = sender_username
    if username is None and message.sender is not None:
        username = message.sender.username
    if username is not None:
        record.sender = MessageSender(id=message.sender_id, username=username)
    return record
