"""Schemas for the fixed chat rooms."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class ChatRoomRead(BaseModel):
    """Room representation returned to clients."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str
