"""Mirrors presence transitions from the messaging service into storage."""

from __future__ import annotations

import logging
import time
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from relaychat.realtime.events import PresenceAction, PresenceEvent
from relaychat.realtime.managers import RosterBroadcaster

from app.config import Settings
from app.core.security import ScopedTokenError, verify_scoped_token
from app.database import session_scope
from app.monitoring.metrics import presence_events_total
from app.services.users import set_online_status

logger = logging.getLogger(__name__)


class PresenceMirror:
    """Applies enter/leave events to the users table and requests a roster.

    Only events backed by a valid scoped credential for the announced user
    are applied. Members announced online are expired by :meth:`expire_stale`
    once their periodic re-announcements stop.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        roster: RosterBroadcaster,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._clock = clock
        self._session_factory = session_factory
        self._roster = roster
        self._online: dict[str, bool] = {}
        self._last_seen: dict[str, float] = {}

    @property
    def online(self) -> dict[str, bool]:
        """Presence as last observed by this process."""

        return dict(self._online)

    def _authorized(self, event: PresenceEvent) -> bool:
        if not event.token:
            logger.warning("Presence event without credential", extra={"user_id": event.user_id})
            return False
        try:
            claims = verify_scoped_token(event.token, self._settings)
        except ScopedTokenError as exc:
            logger.warning(
                "Presence event with invalid credential: %s", exc, extra={"user_id": event.user_id}
            )
            return False
        if claims.get("sub") != event.user_id:
            logger.warning(
                "Presence event identity does not match its credential",
                extra={"user_id": event.user_id, "client_id": claims.get("sub")},
            )
            return False
        if event.client_id is not None and event.client_id != event.user_id:
            logger.warning(
                "Presence event client id does not match its member data",
                extra={"user_id": event.user_id, "client_id": event.client_id},
            )
            return False
        return True

    async def handle(self, event: PresenceEvent) -> None:
        action = event.action.value
        if not self._authorized(event):
            presence_events_total.labels(action, "rejected").inc()
            return

        is_online = event.action is PresenceAction.ENTER
        if is_online and self._online.get(event.user_id):
            # Heartbeat from a member already mirrored online.
            self._last_seen = {**self._last_seen, event.user_id: self._clock()}
            presence_events_total.labels(action, "refreshed").inc()
            return

        if not await self._mirror(event.user_id, is_online, action):
            return
        if is_online:
            self._last_seen = {**self._last_seen, event.user_id: self._clock()}
        else:
            self._last_seen = {k: v for k, v in self._last_seen.items() if k != event.user_id}
        presence_events_total.labels(action, "applied").inc()
        logger.info("User %s is now %s", event.user_id, "online" if is_online else "offline")
        self._roster.request(f"presence_{action}")

    async def _mirror(self, user_id: str, is_online: bool, action: str) -> bool:
        try:
            with session_scope(self._session_factory) as db:
                user = set_online_status(db, user_id, is_online)
        except SQLAlchemyError:
            presence_events_total.labels(action, "error").inc()
            logger.exception("Failed to mirror presence", extra={"user_id": user_id})
            return False

        if user is None:
            presence_events_total.labels(action, "unknown_user").inc()
            logger.warning("Presence event for unknown user", extra={"user_id": user_id})
            return False

        self._online = {**self._online, user_id: is_online}
        return True

    async def expire_stale(self) -> list[str]:
        """Mark users offline whose last presence event is older than the timeout.

        Connected clients re-announce themselves periodically, so a member that
        goes silent has lost its connection without leaving. Returns the ids
        that were expired.
        """

        cutoff = self._clock() - self._settings.presence_timeout_seconds
        stale = [user_id for user_id, seen in self._last_seen.items() if seen < cutoff]
        expired: list[str] = []
        for user_id in stale:
            self._last_seen = {k: v for k, v in self._last_seen.items() if k != user_id}
            if not await self._mirror(user_id, False, "timeout"):
                continue
            presence_events_total.labels("timeout", "applied").inc()
            logger.info("User %s timed out", user_id)
            expired.append(user_id)
        if expired:
            self._roster.request("presence_timeout")
        return expired
