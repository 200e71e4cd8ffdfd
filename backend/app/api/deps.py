"""FastAPI dependencies for the API layer."""

from fastapi import HTTPException, Request, status

from app.api.constants import CHAT_ROOMS
from app.config import Settings
from app.schemas import ChatRoomRead
from app.services import RealtimeHub


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_realtime_hub(request: Request) -> RealtimeHub:
    return request.app.state.realtime


def require_chat_room(chat_id: str) -> ChatRoomRead:
    """Resolve one of the fixed chat rooms or raise HTTP 404."""

    for room in CHAT_ROOMS:
        if room.id == chat_id:
            return room
    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail="Chat room not found",
    )
