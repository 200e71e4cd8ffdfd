"""Storage operations on chat users and the roster view."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import User
from app.models.base import utcnow
from app.schemas import RosterEntry

logger = logging.getLogger(__name__)


class UserAlreadyExistsError(Exception):
    """Raised when registering an identity that already has a profile row."""


def get_user(db: Session, user_id: str) -> User | None:
    return db.get(User, user_id)


def create_user(db: Session, *, user_id: str, email: str, username: str) -> User:
    """Mirror a new identity into storage, marking it online."""

    if db.get(User, user_id) is not None:
        raise UserAlreadyExistsError(user_id)
    now = utcnow()
    user = User(
        id=user_id,
        email=email,
        username=username,
        is_online=True,
        last_seen=None,
        created_at=now,
        updated_at=now,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise UserAlreadyExistsError(user_id) from exc
    logger.info("User profile created", extra={"user_id": user_id})
    return user


def set_online_status(
    db: Session,
    user_id: str,
    is_online: bool,
    *,
    now: datetime | None = None,
) -> User | None:
    """Update the online flag; going offline stamps ``last_seen``.

    Returns None when the user does not exist.
    """

    user = db.get(User, user_id)
    if user is None:
        return None
    stamp = now or utcnow()
    user.is_online = is_online
    user.last_seen = None if is_online else stamp
    user.updated_at = stamp
    db.commit()
    return user


def is_user_online(db: Session, user_id: str) -> bool:
    user = db.get(User, user_id)
    return bool(user and user.is_online)


def load_roster(db: Session) -> list[RosterEntry]:
    users = db.execute(select(User).order_by(User.username, User.id)).scalars().all()
    return [RosterEntry.model_validate(user) for user in users]


def serialize_roster(entries: list[RosterEntry]) -> list[dict[str, Any]]:
    return [entry.model_dump(mode="json", by_alias=True) for entry in entries]
