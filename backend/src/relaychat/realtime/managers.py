"""Server side realtime managers: presence listening and roster broadcasts."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from app.monitoring.metrics import (
    presence_events_total,
    realtime_events_total,
    realtime_publish_errors_total,
    realtime_subscriptions,
    roster_broadcasts_total,
    roster_requests_coalesced_total,
)

from .events import (
    PRESENCE_CHANNEL,
    ROSTER_REQUEST_EVENT,
    ROSTER_UPDATE_EVENT,
    USERS_CHANNEL,
    PresenceEvent,
    build_envelope,
    unwrap_envelope,
)
from .transport import RedisTransport, Subscription, TransportUnavailableError


logger = logging.getLogger(__name__)

RosterLoader = Callable[[], Awaitable[list[dict[str, Any]]]]
PresenceHandler = Callable[[PresenceEvent], Awaitable[None]]
RosterRequestHandler = Callable[[str | None], Awaitable[None]]


async def publish_event(
    transport: RedisTransport,
    channel: str,
    name: str,
    data: dict[str, Any],
    *,
    topic_label: str,
) -> bool:
    """Publish one event, logging instead of raising on failure.

    Returns True when the broker accepted the payload.
    """

    try:
        await transport.publish(channel, build_envelope(name, data))
    except TransportUnavailableError:
        realtime_publish_errors_total.labels(topic_label, "unavailable").inc()
        logger.warning(
            "Realtime broker unavailable while publishing %s event",
            name,
            extra={"channel": channel},
            exc_info=logger.isEnabledFor(logging.DEBUG),
        )
        return False
    except Exception:
        realtime_publish_errors_total.labels(topic_label, "error").inc()
        logger.exception("Unexpected error while publishing %s event", name, extra={"channel": channel})
        return False
    realtime_events_total.labels(topic_label, "out", name).inc()
    return True


class RosterBroadcaster:
    """Publishes the full user roster, coalescing bursts of triggers.

    The first :meth:`request` schedules a broadcast ``debounce_seconds`` later;
    requests arriving before it runs join it. The roster is read when the
    broadcast runs, never when it is requested.
    """

    def __init__(
        self,
        transport: RedisTransport,
        load_roster: RosterLoader,
        *,
        debounce_seconds: float,
    ) -> None:
        self._transport = transport
        self._load_roster = load_roster
        self._debounce = max(float(debounce_seconds), 0.0)
        self._reasons: Counter[str] = Counter()
        self._scheduled: asyncio.Task[Any] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def pending(self) -> bool:
        return self._scheduled is not None and not self._scheduled.done()

    def request(self, reason: str) -> None:
        self._reasons[reason] += 1
        if self.pending:
            roster_requests_coalesced_total.inc()
            return
        task = asyncio.create_task(self._run_scheduled(), name="roster-broadcast")
        self._scheduled = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_scheduled(self) -> None:
        await asyncio.sleep(self._debounce)
        reasons, self._reasons = self._reasons, Counter()
        # triggers from here on schedule a fresh broadcast
        self._scheduled = None
        logger.debug("Running coalesced roster broadcast", extra={"reasons": dict(reasons)})
        await self.broadcast_now()

    async def broadcast_now(self) -> dict[str, Any] | None:
        """Read and publish the roster immediately, returning the payload sent."""

        try:
            users = await self._load_roster()
        except Exception:
            roster_broadcasts_total.labels("load_failed").inc()
            logger.exception("Failed to load users for the roster broadcast")
            return None
        if not users:
            roster_broadcasts_total.labels("empty").inc()
            logger.warning("No users found to publish in the roster")
            return None
        payload = {
            "users": users,
            "generatedAt": datetime.now(timezone.utc).isoformat(),
        }
        published = await publish_event(
            self._transport, USERS_CHANNEL, ROSTER_UPDATE_EVENT, payload, topic_label="users"
        )
        if not published:
            roster_broadcasts_total.labels("publish_failed").inc()
            return None
        roster_broadcasts_total.labels("published").inc()
        logger.info("Roster published", extra={"count": len(users)})
        return payload

    async def flush(self) -> None:
        """Wait until every scheduled broadcast has completed."""

        while True:
            running = [task for task in self._tasks if not task.done()]
            if not running:
                return
            await asyncio.gather(*running, return_exceptions=True)

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        self._scheduled = None
        self._reasons.clear()


class PresenceListener:
    """Listens for presence transitions and roster requests from clients."""

    def __init__(
        self,
        transport: RedisTransport,
        *,
        on_presence: PresenceHandler,
        on_roster_request: RosterRequestHandler,
    ) -> None:
        self._transport = transport
        self._on_presence = on_presence
        self._on_roster_request = on_roster_request
        self._subscriptions: list[Subscription] = []

    async def start(self) -> None:
        async def handle_presence(payload: dict[str, Any]) -> None:
            event = PresenceEvent.from_payload(payload)
            if event is None:
                presence_events_total.labels(str(payload.get("action")), "malformed").inc()
                logger.warning("Discarded malformed presence event")
                return
            realtime_events_total.labels("presence", "in", event.action.value).inc()
            await self._on_presence(event)

        async def handle_users(payload: dict[str, Any]) -> None:
            data = unwrap_envelope(payload, ROSTER_REQUEST_EVENT)
            if data is None:
                return
            realtime_events_total.labels("users", "in", ROSTER_REQUEST_EVENT).inc()
            requester = data.get("userId")
            logger.info("Received roster request", extra={"user_id": requester})
            await self._on_roster_request(requester if isinstance(requester, str) else None)

        for topic, handler in ((PRESENCE_CHANNEL, handle_presence), (USERS_CHANNEL, handle_users)):
            self._subscriptions.append(await self._transport.subscribe(topic, handler))
            realtime_subscriptions.labels(topic).inc()

    async def stop(self) -> None:
        for subscription in self._subscriptions:
            await subscription.close()
        for topic in (PRESENCE_CHANNEL, USERS_CHANNEL)[: len(self._subscriptions)]:
            realtime_subscriptions.labels(topic).dec()
        self._subscriptions.clear()


__all__ = [
    "PresenceListener",
    "RosterBroadcaster",
    "publish_event",
]
