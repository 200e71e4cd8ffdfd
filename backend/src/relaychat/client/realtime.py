"""Client side realtime session: presence, roster and room histories."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

from relaychat.realtime.events import (
    MESSAGE_EVENT,
    PRESENCE_CHANNEL,
    ROSTER_REQUEST_EVENT,
    ROSTER_UPDATE_EVENT,
    USERS_CHANNEL,
    PresenceAction,
    PresenceEvent,
    build_envelope,
    direct_channel,
    room_channel,
    unwrap_envelope,
)
from relaychat.realtime.transport import BrokerConfig, Feed, RedisTransport, TransportUnavailableError

from .api import ChatApiClient, ChatClientError
from .auth import AuthSession, IdentitySession
from .config import ClientSettings

logger = logging.getLogger(__name__)

Message = dict[str, Any]
TransportFactory = Callable[[str], RedisTransport]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def is_visible_to(message: Message, viewer_id: str | None) -> bool:
    """Direct messages are only shown to their sender and recipient."""

    recipient = message.get("recipient_id")
    if not recipient:
        return True
    return viewer_id is not None and viewer_id in (message.get("sender_id"), recipient)


def _created_at(message: Message) -> datetime:
    try:
        return datetime.fromisoformat(message["created_at"])
    except (KeyError, TypeError, ValueError):
        return datetime.min.replace(tzinfo=timezone.utc)


def merge_messages(existing: list[Message], incoming: list[Message], *, prepend: bool = False) -> list[Message]:
    """Return a new history holding *incoming* messages whose id is not yet known."""

    known = {message.get("id") for message in existing}
    fresh: list[Message] = []
    for message in incoming:
        message_id = message.get("id")
        if message_id in known:
            continue
        known.add(message_id)
        fresh.append(message)
    if not fresh:
        return existing
    return fresh + existing if prepend else existing + fresh


class RealtimeSession:
    """Keeps a signed-in user's view of presence, the roster and chat history.

    All state is replaced, never mutated in place, so snapshots handed out by
    the properties stay stable. Every broker subscription is a
    :class:`~relaychat.realtime.transport.Feed` drained by its own task.
    """

    def __init__(
        self,
        api: ChatApiClient,
        settings: ClientSettings,
        *,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        self._api = api
        self._settings = settings
        self._transport_factory = transport_factory or self._default_transport
        self._state = ConnectionState.DISCONNECTED
        self._transport: RedisTransport | None = None
        self._token: str | None = None
        self._token_expires: float = 0.0
        self._user_id: str | None = None
        self._username: str | None = None
        self._active_room: str | None = None
        self._presence: dict[str, bool] = {}
        self._roster: list[dict[str, Any]] = []
        self._history: dict[str, list[Message]] = {}
        self._feeds: dict[str, Feed] = {}
        self._pumps: dict[str, asyncio.Task[Any]] = {}
        self._room_feed: str | None = None
        self._entered = False
        self._heartbeat: asyncio.Task[Any] | None = None

    def _default_transport(self, user_id: str) -> RedisTransport:
        return RedisTransport(
            BrokerConfig(
                redis_url=self._settings.realtime_redis_url,
                namespace=self._settings.realtime_namespace,
                client_id=user_id,
            )
        )

    # ------------------------------------------------------------------
    # State snapshots
    # ------------------------------------------------------------------
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def active_room(self) -> str | None:
        return self._active_room

    @property
    def presence(self) -> dict[str, bool]:
        return self._presence

    @property
    def roster(self) -> list[dict[str, Any]]:
        return self._roster

    @property
    def history(self) -> dict[str, list[Message]]:
        return self._history

    @property
    def messages(self) -> list[Message]:
        """History of the active room, oldest first."""

        if self._active_room is None:
            return []
        return self._history.get(self._active_room, [])

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def bind(self, auth: AuthSession) -> Callable[[], None]:
        """Connect on sign-in and tear down on sign-out of *auth*."""

        async def on_session(session: IdentitySession | None) -> None:
            if session is None:
                await self.close()
                return
            await self.connect(session.user.id, session.user.username)

        return auth.subscribe(on_session)

    async def connect(self, user_id: str, username: str | None = None) -> None:
        if self._state is not ConnectionState.DISCONNECTED:
            await self.close()
        self._state = ConnectionState.CONNECTING
        self._user_id = user_id
        self._username = username or "Anonymous"
        try:
            await self._refresh_token()
            self._transport = self._transport_factory(user_id)
            await self._transport.start()
            await self._open_feed(PRESENCE_CHANNEL, self._on_presence)
            await self._open_feed(USERS_CHANNEL, self._on_users)
            await self._open_feed(direct_channel(user_id), self._on_message)
            await self._announce(PresenceAction.ENTER)
            self._entered = True
            await self._transport.publish(
                USERS_CHANNEL,
                build_envelope(ROSTER_REQUEST_EVENT, {"userId": user_id}, client_id=user_id),
            )
        except (ChatClientError, TransportUnavailableError):
            logger.exception("Error initializing realtime connection", extra={"user_id": user_id})
            await self._teardown()
            return
        self._state = ConnectionState.CONNECTED
        self._heartbeat = asyncio.create_task(self._heartbeat_loop(), name=f"client-heartbeat-{user_id}")
        if self._active_room is not None:
            await self._join_room(self._active_room)
        logger.info("Realtime session connected", extra={"user_id": user_id})

    async def close(self) -> None:
        """Leave presence, drop every subscription and clear all state."""

        if self._state is ConnectionState.DISCONNECTED and self._transport is None:
            return
        await self._teardown()

    async def _refresh_token(self) -> None:
        if self._user_id is None:
            raise ChatClientError("No user to issue a credential for")
        credential = await self._api.fetch_token(self._user_id)
        self._token = credential.get("token")
        # expires is epoch milliseconds
        self._token_expires = float(credential.get("expires") or 0) / 1000

    async def _announce(self, action: PresenceAction) -> None:
        if self._transport is None or self._user_id is None:
            raise TransportUnavailableError("Realtime session is not connected")
        await self._transport.publish(
            PRESENCE_CHANNEL,
            PresenceEvent(action, self._user_id, client_id=self._user_id, token=self._token).to_payload(),
        )

    async def _heartbeat_loop(self) -> None:
        # Presence that goes quiet is expired by the server.
        interval = self._settings.presence_heartbeat_seconds
        while True:
            await asyncio.sleep(interval)
            if self._token_expires - time.time() < 2 * interval:
                try:
                    await self._refresh_token()
                except ChatClientError:
                    logger.exception("Error renewing realtime credential", extra={"user_id": self._user_id})
            try:
                await self._announce(PresenceAction.ENTER)
            except TransportUnavailableError:
                logger.warning("Presence heartbeat failed", extra={"user_id": self._user_id})

    async def _teardown(self) -> None:
        heartbeat, self._heartbeat = self._heartbeat, None
        if heartbeat is not None:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat
        if self._entered:
            self._entered = False
            try:
                await self._announce(PresenceAction.LEAVE)
            except TransportUnavailableError:
                logger.warning("Could not announce presence leave", extra={"user_id": self._user_id})
        transport, self._transport = self._transport, None
        for topic in list(self._feeds):
            await self._close_feed(topic)
        if transport is not None:
            await transport.stop()
        self._room_feed = None
        self._token = None
        self._token_expires = 0.0
        self._presence = {}
        self._roster = []
        self._history = {}
        self._state = ConnectionState.DISCONNECTED

    # ------------------------------------------------------------------
    # Feeds
    # ------------------------------------------------------------------
    async def _open_feed(self, topic: str, handler: Callable[[dict[str, Any]], Awaitable[None]]) -> None:
        if self._transport is None:
            raise TransportUnavailableError("Realtime session is not connected")
        feed = await self._transport.listen(topic)

        async def pump() -> None:
            async for payload in feed:
                try:
                    await handler(payload)
                except Exception:
                    logger.exception("Failed to apply realtime event", extra={"topic": topic})

        self._feeds[topic] = feed
        self._pumps[topic] = asyncio.create_task(pump(), name=f"client-{topic}")

    async def _close_feed(self, topic: str) -> None:
        feed = self._feeds.pop(topic, None)
        task = self._pumps.pop(topic, None)
        if feed is not None:
            await feed.close()
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _on_presence(self, payload: dict[str, Any]) -> None:
        event = PresenceEvent.from_payload(payload)
        if event is None:
            return
        self._presence = {**self._presence, event.user_id: event.action is PresenceAction.ENTER}

    async def _on_users(self, payload: dict[str, Any]) -> None:
        data = unwrap_envelope(payload, ROSTER_UPDATE_EVENT)
        if data is None:
            return
        users = data.get("users")
        if isinstance(users, list):
            self._roster = users

    async def _on_message(self, payload: dict[str, Any]) -> None:
        message = unwrap_envelope(payload, MESSAGE_EVENT)
        if message is not None:
            self._append(message)

    def _append(self, message: Message) -> None:
        room = message.get("chat_id")
        if not room or not is_visible_to(message, self._user_id):
            return
        current = self._history.get(room, [])
        merged = merge_messages(current, [message])
        if merged is not current:
            self._history = {**self._history, room: merged}

    # ------------------------------------------------------------------
    # Rooms and messages
    # ------------------------------------------------------------------
    async def set_active_room(self, room_id: str) -> None:
        """Switch rooms: load the latest page, follow the new room, drop the old one."""

        self._active_room = room_id
        if self._state is ConnectionState.CONNECTED:
            await self._join_room(room_id)

    async def _join_room(self, room_id: str) -> None:
        try:
            page = await self._api.fetch_messages(room_id, limit=self._settings.chat_history_page_size)
        except ChatClientError:
            logger.exception("Error loading room history", extra={"room_id": room_id})
            page = []
        latest = [message for message in reversed(page) if is_visible_to(message, self._user_id)]
        held = self._history.get(room_id, [])
        combined = sorted(merge_messages(held, latest), key=_created_at)
        self._history = {**self._history, room_id: combined}

        topic = room_channel(room_id)
        previous = self._room_feed
        if previous == topic:
            return
        try:
            await self._open_feed(topic, self._on_message)
        except TransportUnavailableError:
            logger.exception("Error subscribing to room", extra={"room_id": room_id})
            return
        self._room_feed = topic
        if previous is not None:
            await self._close_feed(previous)

    async def load_more(self) -> int:
        """Prepend the page of messages older than the oldest one held.

        Returns how many messages were added; a failed fetch adds none.
        """

        room = self._active_room
        if room is None:
            return 0
        held = self._history.get(room, [])
        if not held:
            return 0
        try:
            page = await self._api.fetch_messages(
                room,
                before=held[0].get("created_at"),
                limit=self._settings.chat_history_page_size,
            )
        except ChatClientError:
            logger.exception("Error loading older messages", extra={"room_id": room})
            return 0
        older = [message for message in reversed(page) if is_visible_to(message, self._user_id)]
        merged = merge_messages(held, older, prepend=True)
        if merged is held:
            return 0
        self._history = {**self._history, room: merged}
        return len(merged) - len(held)

    async def send_message(self, content: str, recipient_id: str | None = None) -> Message:
        """Send through the server and append the confirmed record."""

        room = self._active_room
        if self._state is not ConnectionState.CONNECTED or self._user_id is None or room is None:
            raise ChatClientError("Not connected to a chat room")
        record = await self._api.send_message(room, self._user_id, content, recipient_id)
        record = {**record, "sender": {"id": self._user_id, "username": self._username}}
        self._append(record)
        return record


__all__ = [
    "ConnectionState",
    "RealtimeSession",
    "is_visible_to",
    "merge_messages",
]
