"""Redis pub/sub transport used to reach the messaging service."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Coroutine, TYPE_CHECKING

import redis.asyncio as redis_asyncio
from redis.exceptions import RedisError

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from redis.asyncio import Redis as RedisClient
else:
    RedisClient = Any  # type: ignore[assignment,misc]


logger = logging.getLogger(__name__)

_REDIS_ERRORS: tuple[type[BaseException], ...] = (
    RedisError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)

MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]
RecoveryListener = Callable[[str], None]


@dataclass(slots=True)
class BrokerConfig:
    """Configuration used for wiring the realtime transport layer."""

    redis_url: str | None
    namespace: str = "relaychat"
    client_id: str | None = None


class Subscription:
    """Handle returned when subscribing to a broker topic."""

    def __init__(
        self,
        name: str,
        cleanup: Callable[[], Awaitable[None]],
        task: asyncio.Task[Any] | None = None,
    ) -> None:
        self._name = name
        self._cleanup = cleanup
        self._task = task
        self._closed = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        await self._cleanup()


class Feed:
    """Queue-backed view over a subscription.

    Every payload delivered to the topic is queued until a consumer reads it
    with :meth:`get` or by iterating the feed. Closing the feed unsubscribes
    from the broker and ends any pending iteration.
    """

    _CLOSED = object()

    def __init__(self, topic: str) -> None:
        self.topic = topic
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._subscription: Subscription | None = None

    def _attach(self, subscription: Subscription) -> None:
        self._subscription = subscription

    async def _deliver(self, payload: dict[str, Any]) -> None:
        self._queue.put_nowait(payload)

    @property
    def closed(self) -> bool:
        return self._subscription is None or self._subscription.closed

    async def _next(self) -> Any:
        item = await self._queue.get()
        if item is self._CLOSED:
            # keep the marker queued so every later reader also stops
            self._queue.put_nowait(self._CLOSED)
        return item

    async def get(self) -> dict[str, Any]:
        item = await self._next()
        if item is self._CLOSED:
            raise TransportUnavailableError(f"Feed for '{self.topic}' is closed")
        return item

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        return self

    async def __anext__(self) -> dict[str, Any]:
        item = await self._next()
        if item is self._CLOSED:
            raise StopAsyncIteration
        return item

    async def close(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.close()
        self._queue.put_nowait(self._CLOSED)


class TransportUnavailableError(RuntimeError):
    """Raised when the broker cannot be reached or is not configured."""


@dataclass(slots=True)
class _SubscriptionState:
    """Internal bookkeeping for Redis subscriptions."""

    topic: str
    channel: str
    handler: MessageHandler
    subscription: Subscription | None = None
    task: asyncio.Task[Any] | None = None
    pubsub: Any | None = None
    active: bool = True
    suspending: bool = False


_REDIS_RECOVERY_BASE_DELAY = 0.5
_REDIS_RECOVERY_MAX_DELAY = 30.0


class RedisTransport:
    """Pub/sub connection to the messaging service built on Redis."""

    def __init__(self, config: BrokerConfig) -> None:
        self._config = config
        self._redis: RedisClient | None = None
        self._states: list[_SubscriptionState] = []
        self._recovery_lock = asyncio.Lock()
        self._recovery_task: asyncio.Task[Any] | None = None
        self._recovery_listeners: list[RecoveryListener] = []
        self._callbacks: set[asyncio.Task[Any]] = set()

    @property
    def connected(self) -> bool:
        return self._redis is not None

    def add_recovery_listener(self, listener: RecoveryListener) -> None:
        self._recovery_listeners.append(listener)

    async def start(self) -> None:
        if not self._config.redis_url:
            raise TransportUnavailableError("Realtime broker URL is not configured")
        if self._redis is None:
            await self._connect()

    async def stop(self) -> None:
        for state in list(self._states):
            if state.subscription is not None:
                await state.subscription.close()
        self._states.clear()
        if self._callbacks:
            await asyncio.gather(*list(self._callbacks), return_exceptions=True)
        if self._recovery_task is not None:
            self._recovery_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._recovery_task
            self._recovery_task = None
        if self._redis is not None:
            await self._redis.close()
            self._redis = None

    async def __aenter__(self) -> "RedisTransport":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _connect(self) -> None:
        client = redis_asyncio.from_url(
            self._config.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        try:
            await client.ping()
        except _REDIS_ERRORS + (OSError,) as exc:
            logger.exception(
                "Failed to connect to the realtime broker", extra={"client_id": self._config.client_id}
            )
            await client.close()
            raise TransportUnavailableError("Realtime broker is unavailable") from exc
        self._redis = client
        logger.debug("Connected to the realtime broker", extra={"client_id": self._config.client_id})

    async def _pause_state(self, state: _SubscriptionState) -> None:
        state.suspending = True
        task = state.task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        state.task = None
        pubsub = state.pubsub
        if pubsub is not None:
            with contextlib.suppress(Exception):
                await pubsub.unsubscribe(state.channel)
            with contextlib.suppress(Exception):
                await pubsub.close()
        state.pubsub = None
        state.suspending = False

    async def _close_state(self, state: _SubscriptionState) -> None:
        state.active = False
        await self._pause_state(state)
        if state in self._states:
            self._states.remove(state)

    async def _restart(self, reason: str) -> None:
        async with self._recovery_lock:
            for state in list(self._states):
                await self._pause_state(state)
            if self._redis is not None:
                with contextlib.suppress(Exception):
                    await self._redis.close()
                self._redis = None
            await self.start()
            for state in [state for state in self._states if state.active]:
                try:
                    await self._attach_reader(state)
                except Exception:
                    logger.exception(
                        "Failed to restore realtime subscription", extra={"channel": state.channel}
                    )
                    raise

        logger.info(
            "Realtime broker connection recovered",
            extra={"reason": reason, "subscriptions": len(self._states)},
        )
        for listener in list(self._recovery_listeners):
            listener(reason)

    async def _attach_reader(self, state: _SubscriptionState) -> None:
        if self._redis is None:
            raise TransportUnavailableError("Realtime broker is not connected")
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(state.channel)
        except _REDIS_ERRORS as exc:
            await pubsub.close()
            raise TransportUnavailableError("Realtime broker is unavailable") from exc
        state.pubsub = pubsub

        async def reader() -> None:
            try:
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    raw = message.get("data")
                    if not isinstance(raw, str):
                        continue
                    try:
                        payload = json.loads(raw)
                    except json.JSONDecodeError:
                        logger.warning(
                            "Discarded malformed realtime payload", extra={"channel": state.channel}
                        )
                        continue
                    if not isinstance(payload, dict):
                        continue
                    try:
                        await state.handler(payload)
                    except Exception:
                        logger.exception(
                            "Realtime handler failed", extra={"channel": state.channel}
                        )
            finally:
                with contextlib.suppress(Exception):
                    await pubsub.unsubscribe(state.channel)
                with contextlib.suppress(Exception):
                    await pubsub.close()

        task = asyncio.create_task(reader(), name=f"realtime-{state.channel}")
        state.task = task
        if state.subscription is not None:
            state.subscription._task = task
        task.add_done_callback(lambda finished: self._spawn(self._on_reader_done(state, finished)))

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._callbacks.add(task)
        task.add_done_callback(self._callbacks.discard)

    async def _on_reader_done(self, state: _SubscriptionState, task: asyncio.Task[Any]) -> None:
        state.task = None
        state.pubsub = None
        if not state.active or state.suspending:
            return
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "Realtime subscription reader stopped due to error; scheduling recovery",
                exc_info=exc,
                extra={"channel": state.channel},
            )
        else:
            logger.warning(
                "Realtime subscription reader exited unexpectedly; scheduling recovery",
                extra={"channel": state.channel},
            )
        self._trigger_recovery("reader_stopped")

    def _trigger_recovery(self, reason: str) -> None:
        if not self._config.redis_url:
            return
        if self._recovery_task is not None and not self._recovery_task.done():
            return
        logger.info("Scheduling realtime broker recovery", extra={"reason": reason})
        self._recovery_task = asyncio.create_task(
            self._recovery_runner(reason), name="realtime-recovery"
        )

    async def _recovery_runner(self, reason: str) -> None:
        attempt = 0
        while True:
            delay = min(_REDIS_RECOVERY_BASE_DELAY * (2**attempt), _REDIS_RECOVERY_MAX_DELAY)
            if delay:
                await asyncio.sleep(delay)
            try:
                await self._restart(reason)
            except Exception:
                attempt += 1
                logger.exception(
                    "Realtime broker recovery attempt failed",
                    extra={"attempt": attempt, "reason": reason},
                )
                continue
            break
        self._recovery_task = None

    def _channel(self, topic: str) -> str:
        prefix = self._config.namespace.rstrip(".")
        return f"{prefix}.{topic}" if prefix else topic

    # ------------------------------------------------------------------
    # Publishing helpers
    # ------------------------------------------------------------------
    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        if self._redis is None:
            await self.start()
        if self._redis is None:
            raise TransportUnavailableError("Realtime broker is not connected")
        channel = self._channel(topic)
        encoded = json.dumps(payload, default=str)
        try:
            await self._redis.publish(channel, encoded)
        except _REDIS_ERRORS as exc:
            self._trigger_recovery("publish_failed")
            raise TransportUnavailableError("Realtime broker is unavailable") from exc
        logger.debug("Published realtime payload", extra={"channel": channel})

    # ------------------------------------------------------------------
    # Subscription helpers
    # ------------------------------------------------------------------
    async def subscribe(self, topic: str, handler: MessageHandler) -> Subscription:
        if self._redis is None:
            await self.start()
        channel = self._channel(topic)
        state = _SubscriptionState(topic=topic, channel=channel, handler=handler)

        async def cleanup() -> None:
            await self._close_state(state)

        subscription = Subscription(channel, cleanup, None)
        state.subscription = subscription
        self._states.append(state)
        try:
            await self._attach_reader(state)
        except Exception as exc:
            await self._close_state(state)
            self._trigger_recovery("subscribe_failed")
            if isinstance(exc, TransportUnavailableError):
                raise
            raise TransportUnavailableError("Realtime broker is unavailable") from exc
        return subscription

    async def listen(self, topic: str) -> Feed:
        """Subscribe to *topic* and return a queue-backed :class:`Feed`."""

        feed = Feed(topic)
        subscription = await self.subscribe(topic, feed._deliver)
        feed._attach(subscription)
        return feed
