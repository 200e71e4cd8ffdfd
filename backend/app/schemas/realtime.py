"""Schemas for realtime credentials."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ScopedCredential(BaseModel):
    """Short-lived credential binding a realtime connection to one user id."""

    model_config = ConfigDict(populate_by_name=True)

    token: str = Field(..., description="Signed token presented with presence events")
    key_name: str = Field(..., alias="keyName", description="Name of the messaging key that signed the token")
    client_id: str = Field(..., alias="clientId", description="User id the token is bound to")
    issued: int = Field(..., description="Issue time in epoch milliseconds")
    expires: int = Field(..., description="Expiry time in epoch milliseconds")
    capability: dict[str, list[str]] = Field(default_factory=dict)
