"""Explicitly constructed handle over the server's messaging connection."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from relaychat.realtime.events import MESSAGE_EVENT, direct_channel, room_channel
from relaychat.realtime.managers import PresenceListener, RosterBroadcaster, publish_event
from relaychat.realtime.transport import BrokerConfig, RedisTransport, TransportUnavailableError

from app.config import Settings
from app.database import session_scope
from app.schemas import MessageRead
from app.services.presence import PresenceMirror
from app.services.users import load_roster, serialize_roster

logger = logging.getLogger(__name__)

SERVER_CLIENT_ID = "relaychat-server"


def build_transport(settings: Settings) -> RedisTransport:
    return RedisTransport(
        BrokerConfig(
            redis_url=settings.realtime_redis_url,
            namespace=settings.realtime_namespace,
            client_id=SERVER_CLIENT_ID,
        )
    )


class RealtimeHub:
    """Owns the transport, the presence mirror and the roster broadcaster."""

    def __init__(
        self,
        settings: Settings,
        transport: RedisTransport,
        session_factory: sessionmaker[Session],
    ) -> None:
        self.transport = transport
        self._sweep_seconds = settings.presence_sweep_seconds
        self._sweeper: asyncio.Task[None] | None = None
        self._session_factory = session_factory
        self.roster = RosterBroadcaster(
            transport,
            self._load_roster,
            debounce_seconds=settings.roster_debounce_seconds,
        )
        self.presence = PresenceMirror(settings, session_factory, self.roster)
        self._listener = PresenceListener(
            transport,
            on_presence=self.presence.handle,
            on_roster_request=self._on_roster_request,
        )
        self._started = False
        transport.add_recovery_listener(self._on_transport_recovered)

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        try:
            await self.transport.start()
        except (TransportUnavailableError, OSError):
            logger.warning(
                "Realtime broker unavailable during startup; continuing without presence mirroring",
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            return
        try:
            await self._listener.start()
        except TransportUnavailableError:
            logger.warning(
                "Realtime subscription setup failed; continuing without presence mirroring",
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            return
        self._sweeper = asyncio.create_task(self._expire_presence(), name="presence-expiry")
        self._started = True

    async def stop(self) -> None:
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is not None:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
        await self.roster.stop()
        await self._listener.stop()
        await self.transport.stop()
        self._started = False

    async def _expire_presence(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_seconds)
            try:
                await self.presence.expire_stale()
            except Exception:
                logger.exception("Presence expiry sweep failed")

    async def _load_roster(self) -> list[dict[str, Any]]:
        with session_scope(self._session_factory) as db:
            return serialize_roster(load_roster(db))

    async def _on_roster_request(self, requester: str | None) -> None:
        self.roster.request("client_request")

    def _on_transport_recovered(self, reason: str) -> None:
        self.roster.request("transport_recovered")

    def request_roster(self, reason: str) -> None:
        self.roster.request(reason)

    async def publish_message(self, record: MessageRead) -> list[str]:
        """Fan a persisted message out to its room and, for direct messages,
        to the recipient's private channel.

        Returns the channels that accepted the event. Failures are logged by
        :func:`publish_event` and never raised.
        """

        payload = record.model_dump(mode="json")
        targets = [(room_channel(record.chat_id or ""), "chat")]
        if record.recipient_id:
            targets.append((direct_channel(record.recipient_id), "direct"))
        results = await asyncio.gather(
            *(
                publish_event(self.transport, channel, MESSAGE_EVENT, payload, topic_label=label)
                for channel, label in targets
            )
        )
        return [channel for (channel, _), ok in zip(targets, results) if ok]
