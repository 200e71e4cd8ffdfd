"""Issuing scoped credentials for realtime connections."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.deps import get_app_settings
from app.config import Settings
from app.core.security import ScopedTokenError, create_scoped_token
from app.schemas import ScopedCredential

router = APIRouter(prefix="/ably", tags=["realtime"])

logger = logging.getLogger(__name__)


@router.get("/token", response_model=ScopedCredential)
def issue_token(
    user_id: str | None = Query(default=None, alias="userId"),
    settings: Settings = Depends(get_app_settings),
) -> ScopedCredential:
    """Return a short-lived credential whose presence identity is ``userId``."""

    if not user_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User ID is required")
    try:
        return create_scoped_token(user_id, settings)
    except ScopedTokenError:
        logger.exception("Error generating realtime token", extra={"user_id": user_id})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Error generating token",
        ) from None
