"""Schemas related to user profiles, online status and the roster."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, StrictBool


class RegisterRequest(BaseModel):
    """Payload mirroring a freshly created identity into storage."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str | None = Field(default=None, alias="userId", description="Identity service user id")
    email: str | None = Field(default=None, description="Email address used at sign-up")
    username: str | None = Field(default=None, description="Display name chosen at sign-up")


class UserRead(BaseModel):
    """Representation of a stored user returned from the API."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    username: str
    email: str | None = None
    is_online: bool = Field(serialization_alias="isOnline")
    last_seen: datetime | None = Field(default=None, serialization_alias="lastSeen")
    created_at: datetime
    updated_at: datetime


class RosterEntry(BaseModel):
    """One user in a roster snapshot, with normalized field names."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    username: str
    is_online: bool = Field(serialization_alias="isOnline")
    last_seen: datetime | None = Field(default=None, serialization_alias="lastSeen")


class StatusUpdate(BaseModel):
    """Payload for explicitly setting a user's online flag."""

    model_config = ConfigDict(populate_by_name=True)

    is_online: StrictBool | None = Field(default=None, alias="isOnline")


class StatusRead(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_online: bool = Field(serialization_alias="isOnline")


class StatusUpdated(BaseModel):
    success: bool
