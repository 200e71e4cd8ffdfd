"""HTTP endpoints for the fixed chat rooms and their message history."""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.api.constants import CHAT_ROOMS
from app.api.deps import get_app_settings, get_realtime_hub, require_chat_room
from app.config import Settings
from app.database import get_db
from app.monitoring.metrics import messages_persisted_total
from app.schemas import ChatRoomRead, MessageCreate, MessageRead
from app.services import RealtimeHub
from app.services.messages import list_messages, save_message, serialize_message
from app.services.users import get_user

router = APIRouter(prefix="/chat-rooms", tags=["chat-rooms"])

logger = logging.getLogger(__name__)


@router.get("", response_model=list[ChatRoomRead])
def list_chat_rooms() -> list[ChatRoomRead]:
    return list(CHAT_ROOMS)


@router.get("/{chat_id}/messages", response_model=list[MessageRead])
def read_messages(
    chat_id: str,
    before: datetime | None = Query(default=None, description="Only messages created before this instant"),
    limit: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> list[MessageRead]:
    """Return the newest messages of a room, most recent first."""

    require_chat_room(chat_id)
    page_size = min(limit or settings.chat_history_default_limit, settings.chat_history_max_limit)
    try:
        messages = list_messages(db, chat_id, limit=page_size, before=before)
    except SQLAlchemyError:
        logger.exception("Error fetching messages", extra={"chat_id": chat_id})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch messages",
        ) from None
    return [serialize_message(message) for message in messages]


@router.post("/{chat_id}/messages", response_model=MessageRead, status_code=status.HTTP_201_CREATED)
async def send_message(
    chat_id: str,
    payload: MessageCreate,
    db: Session = Depends(get_db),
    hub: RealtimeHub = Depends(get_realtime_hub),
    settings: Settings = Depends(get_app_settings),
) -> MessageRead:
    """Persist a message, then fan it out to the room and the recipient."""

    require_chat_room(chat_id)
    content = payload.content or ""
    if not content.strip() or not payload.sender_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Message content and sender ID are required",
        )
    if len(content) > settings.chat_message_max_length:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Message content exceeds {settings.chat_message_max_length} characters",
        )

    sender = get_user(db, payload.sender_id)
    if sender is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sender not found")
    if payload.recipient_id and get_user(db, payload.recipient_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Recipient not found")

    try:
        message = save_message(
            db,
            sender_id=sender.id,
            content=content,
            chat_id=chat_id,
            recipient_id=payload.recipient_id,
        )
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Error saving message", extra={"chat_id": chat_id})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save message",
        ) from None

    messages_persisted_total.labels("direct" if message.recipient_id else "room").inc()
    record = serialize_message(message, sender.username)
    await hub.publish_message(record)
    return record
