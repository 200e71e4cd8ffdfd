"""Presence mirroring and coalesced roster broadcasts."""

from __future__ import annotations

from typing import Any

import pytest

from app.core.security import create_scoped_token
from app.models import User
from app.services.presence import PresenceMirror
from app.services.realtime import RealtimeHub, build_transport
from app.monitoring.metrics import (
    presence_events_total,
    roster_broadcasts_total,
    roster_requests_coalesced_total,
)
from relaychat.realtime.events import (
    ROSTER_UPDATE_EVENT,
    PresenceAction,
    PresenceEvent,
    build_envelope,
)
from relaychat.realtime.managers import RosterBroadcaster
from relaychat.realtime.transport import BrokerConfig, RedisTransport

pytestmark = pytest.mark.anyio


def presence(action: PresenceAction, user_id: str, settings, *, client_id: str | None = None) -> PresenceEvent:
    token = create_scoped_token(client_id or user_id, settings).token
    return PresenceEvent(action, user_id, client_id=client_id or user_id, token=token)


async def test_roster_requests_are_coalesced(broker):
    loads = 0

    async def load_roster() -> list[dict[str, Any]]:
        nonlocal loads
        loads += 1
        return [{"id": "u-1", "username": "alice", "isOnline": True, "lastSeen": None}]

    async with RedisTransport(BrokerConfig(redis_url="redis://fake")) as transport:
        roster = RosterBroadcaster(transport, load_roster, debounce_seconds=0.05)
        roster.request("presence_enter")
        roster.request("presence_enter")
        roster.request("status")
        assert roster.pending
        await roster.flush()

        assert loads == 1
        updates = broker.events("users", ROSTER_UPDATE_EVENT)
        assert len(updates) == 1
        assert updates[0]["data"]["users"][0]["username"] == "alice"
        assert "generatedAt" in updates[0]["data"]
        assert roster_requests_coalesced_total.value() == 2

        # a trigger after the broadcast ran schedules a new one
        roster.request("register")
        await roster.flush()
        assert loads == 2
        await roster.stop()


async def test_zero_debounce_still_folds_same_turn_triggers(broker):
    async def load_roster() -> list[dict[str, Any]]:
        return [{"id": "u-1", "username": "alice", "isOnline": False, "lastSeen": None}]

    async with RedisTransport(BrokerConfig(redis_url="redis://fake")) as transport:
        roster = RosterBroadcaster(transport, load_roster, debounce_seconds=0)
        for _ in range(5):
            roster.request("presence_leave")
        await roster.flush()
        assert len(broker.events("users", ROSTER_UPDATE_EVENT)) == 1


async def test_empty_roster_is_not_published(broker):
    async def load_roster() -> list[dict[str, Any]]:
        return []

    async with RedisTransport(BrokerConfig(redis_url="redis://fake")) as transport:
        roster = RosterBroadcaster(transport, load_roster, debounce_seconds=0)
        assert await roster.broadcast_now() is None
    assert broker.events("users") == []
    assert roster_broadcasts_total.value("empty") == 1


async def test_roster_load_failure_is_logged_not_raised(broker):
    async def load_roster() -> list[dict[str, Any]]:
        raise RuntimeError("storage down")

    async with RedisTransport(BrokerConfig(redis_url="redis://fake")) as transport:
        roster = RosterBroadcaster(transport, load_roster, debounce_seconds=0)
        roster.request("status")
        await roster.flush()
    assert roster_broadcasts_total.value("load_failed") == 1


async def test_presence_enter_and_leave_are_mirrored(
    live_app, make_user, session_factory, settings, broker
):
    make_user("u-1", "alice")
    hub = live_app.state.realtime

    await hub.presence.handle(presence(PresenceAction.ENTER, "u-1", settings))
    session = session_factory()
    try:
        user = session.get(User, "u-1")
        assert user.is_online is True
        assert user.last_seen is None
    finally:
        session.close()
    assert hub.presence.online == {"u-1": True}

    await hub.roster.flush()
    updates = broker.events("users", ROSTER_UPDATE_EVENT)
    assert updates[-1]["data"]["users"] == [
        {"id": "u-1", "username": "alice", "isOnline": True, "lastSeen": None}
    ]

    await hub.presence.handle(presence(PresenceAction.LEAVE, "u-1", settings))
    session = session_factory()
    try:
        user = session.get(User, "u-1")
        assert user.is_online is False
        assert user.last_seen is not None
    finally:
        session.close()
    assert presence_events_total.value("leave", "applied") == 1


async def test_presence_events_need_a_matching_credential(live_app, make_user, session_factory, settings):
    make_user("u-1", "alice")
    hub = live_app.state.realtime

    unsigned = PresenceEvent(PresenceAction.ENTER, "u-1", client_id="u-1", token=None)
    impostor = presence(PresenceAction.ENTER, "u-1", settings, client_id="u-2")
    await hub.presence.handle(unsigned)
    await hub.presence.handle(impostor)

    session = session_factory()
    try:
        assert session.get(User, "u-1").is_online is False
    finally:
        session.close()
    assert presence_events_total.value("enter", "rejected") == 2
    assert not hub.roster.pending


async def test_presence_for_unknown_user_is_ignored(live_app, settings):
    hub = live_app.state.realtime
    await hub.presence.handle(presence(PresenceAction.ENTER, "ghost", settings))
    assert presence_events_total.value("enter", "unknown_user") == 1
    assert hub.presence.online == {}


async def test_hub_mirrors_presence_published_on_the_broker(
    live_app, make_user, settings, broker, wait_until
):
    make_user("u-1", "alice")
    hub = live_app.state.realtime
    assert hub.started

    async with RedisTransport(BrokerConfig(redis_url="redis://fake", client_id="u-1")) as client:
        await client.publish("presence", presence(PresenceAction.ENTER, "u-1", settings).to_payload())
        await wait_until(lambda: hub.presence.online.get("u-1") is True)
        await client.publish("presence", {"action": "dance", "data": {"userId": "u-1"}})
        await wait_until(lambda: presence_events_total.value("dance", "malformed") == 1)
        await client.publish("users", build_envelope("request_users", {"userId": "u-1"}, client_id="u-1"))
        await wait_until(lambda: len(broker.events("users", ROSTER_UPDATE_EVENT)) >= 1)

    await hub.roster.flush()


async def test_hub_start_tolerates_missing_broker(app, broker):
    broker.online = False
    hub = app.state.realtime
    await hub.start()
    assert not hub.started
    await hub.stop()


async def test_roster_snapshot_is_idempotent(live_app, make_user):
    make_user("u-2", "bob", is_online=True)
    make_user("u-1", "alice")
    hub = live_app.state.realtime

    first = await hub.roster.broadcast_now()
    second = await hub.roster.broadcast_now()
    assert first is not None and second is not None
    assert first["users"] == second["users"]
    assert [user["username"] for user in first["users"]] == ["alice", "bob"]
    assert first["users"][1]["isOnline"] is True
    assert first["users"][1]["lastSeen"] is None


async def test_silent_members_are_expired(live_app, make_user, session_factory, settings, broker):
    make_user("u-1", "alice")
    make_user("u-2", "bob")
    hub = live_app.state.realtime
    now = 1000.0
    mirror = PresenceMirror(settings, session_factory, hub.roster, clock=lambda: now)

    await mirror.handle(presence(PresenceAction.ENTER, "u-1", settings))
    await mirror.handle(presence(PresenceAction.ENTER, "u-2", settings))

    # bob keeps re-announcing while alice goes quiet
    now += settings.presence_timeout_seconds - 1
    await mirror.handle(presence(PresenceAction.ENTER, "u-2", settings))
    assert presence_events_total.value("enter", "refreshed") == 1
    assert await mirror.expire_stale() == []

    now += 2
    assert await mirror.expire_stale() == ["u-1"]
    assert mirror.online == {"u-1": False, "u-2": True}
    assert presence_events_total.value("timeout", "applied") == 1
    session = session_factory()
    try:
        alice = session.get(User, "u-1")
        assert alice.is_online is False
        assert alice.last_seen is not None
        assert session.get(User, "u-2").is_online is True
    finally:
        session.close()

    await hub.roster.flush()
    roster = broker.events("users", ROSTER_UPDATE_EVENT)[-1]["data"]["users"]
    assert [(user["id"], user["isOnline"]) for user in roster] == [("u-1", False), ("u-2", True)]

    # expired once; a later sweep has nothing left to do for alice
    assert await mirror.expire_stale() == []

    await mirror.handle(presence(PresenceAction.ENTER, "u-1", settings))
    assert mirror.online["u-1"] is True


async def test_hub_expires_a_client_that_stops_announcing(
    make_user, session_factory, settings, broker, wait_until
):
    make_user("u-1", "alice")
    fast = settings.model_copy(update={"presence_timeout_seconds": 0.1, "presence_sweep_seconds": 0.02})
    hub = RealtimeHub(fast, build_transport(fast), session_factory)
    await hub.start()
    try:
        async with RedisTransport(BrokerConfig(redis_url="redis://fake", client_id="u-1")) as client:
            await client.publish("presence", presence(PresenceAction.ENTER, "u-1", settings).to_payload())
            await wait_until(lambda: hub.presence.online.get("u-1") is True)
        # the client vanished without a leave event
        await wait_until(lambda: hub.presence.online.get("u-1") is False)
    finally:
        await hub.stop()

    session = session_factory()
    try:
        assert session.get(User, "u-1").is_online is False
    finally:
        session.close()
