"""Constants for API modules."""

from __future__ import annotations

from app.schemas import ChatRoomRead

CHAT_ROOMS: tuple[ChatRoomRead, ...] = (
    ChatRoomRead(
        id="general",
        name="General Chat",
        description="Public chat room for general discussions",
    ),
    ChatRoomRead(
        id="tech",
        name="Tech Chat",
        description="Discuss programming, technology, and development",
    ),
    ChatRoomRead(
        id="resources",
        name="Resources",
        description="Share useful links and learning resources",
    ),
)
