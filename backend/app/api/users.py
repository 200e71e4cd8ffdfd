"""HTTP endpoints for user registration and online status."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.api.deps import get_realtime_hub
from app.database import get_db
from app.schemas import RegisterRequest, StatusRead, StatusUpdate, StatusUpdated, UserRead
from app.services import RealtimeHub
from app.services.users import (
    UserAlreadyExistsError,
    create_user,
    is_user_online,
    set_online_status,
)

router = APIRouter(prefix="/users", tags=["users"])

logger = logging.getLogger(__name__)


@router.post("/register", response_model=UserRead, status_code=status.HTTP_201_CREATED)
async def register_user(
    payload: RegisterRequest,
    db: Session = Depends(get_db),
    hub: RealtimeHub = Depends(get_realtime_hub),
) -> UserRead:
    """Create the storage profile for an identity created by the auth service."""

    if not payload.user_id or not payload.email or not payload.username:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="User ID, email, and username are required",
        )
    try:
        user = create_user(
            db,
            user_id=payload.user_id,
            email=payload.email,
            username=payload.username,
        )
    except UserAlreadyExistsError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="User is already registered",
        ) from None
    except SQLAlchemyError:
        logger.exception("Error registering user", extra={"user_id": payload.user_id})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to register user",
        ) from None

    hub.request_roster("register")
    return UserRead.model_validate(user)


@router.post("/{user_id}/status", response_model=StatusUpdated)
async def update_status(
    user_id: str,
    payload: StatusUpdate,
    db: Session = Depends(get_db),
    hub: RealtimeHub = Depends(get_realtime_hub),
) -> StatusUpdated:
    if payload.is_online is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="isOnline flag is required",
        )
    try:
        user = set_online_status(db, user_id, payload.is_online)
    except SQLAlchemyError:
        logger.exception("Error updating user status", extra={"user_id": user_id})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update status",
        ) from None
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    hub.request_roster("status")
    return StatusUpdated(success=True)


@router.get("/{user_id}/status", response_model=StatusRead)
def read_status(user_id: str, db: Session = Depends(get_db)) -> StatusRead:
    """Report whether a user is online; unknown users are reported offline."""

    return StatusRead(is_online=is_user_online(db, user_id))
