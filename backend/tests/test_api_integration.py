"""Integration tests exercising API endpoints via FastAPI's TestClient."""

from __future__ import annotations

from datetime import timedelta

import jwt
from fastapi.testclient import TestClient

from app.models import Message, User
from app.models.base import utcnow


def register(client: TestClient, user_id: str, username: str) -> dict:
    response = client.post(
        "/api/users/register",
        json={"userId": user_id, "email": f"{username}@example.com", "username": username},
    )
    assert response.status_code == 201, response.text
    return response.json()


def seed_messages(session_factory, sender_id: str, count: int, *, chat_id: str = "general") -> None:
    start = utcnow() - timedelta(minutes=count)
    session = session_factory()
    try:
        for index in range(count):
            created = start + timedelta(seconds=index)
            session.add(
                Message(
                    content=f"message {index}",
                    sender_id=sender_id,
                    chat_id=chat_id,
                    created_at=created,
                    updated_at=created,
                )
            )
        session.commit()
    finally:
        session.close()


def test_root_and_health(client: TestClient):
    assert client.get("/").json() == {"message": "Chat Server is running"}
    health = client.get("/health").json()
    assert health["status"] == "ok"
    assert health["realtime"] == "connected"


def test_list_chat_rooms(client: TestClient):
    response = client.get("/api/chat-rooms")
    assert response.status_code == 200
    rooms = response.json()
    assert [room["id"] for room in rooms] == ["general", "tech", "resources"]
    assert rooms[0] == {
        "id": "general",
        "name": "General Chat",
        "description": "Public chat room for general discussions",
    }


def test_token_requires_user_id(client: TestClient):
    response = client.get("/api/ably/token")
    assert response.status_code == 400
    assert response.json()["detail"] == "User ID is required"


def test_token_is_scoped_to_the_requesting_user(client: TestClient):
    response = client.get("/api/ably/token", params={"userId": "alice"})
    assert response.status_code == 200
    body = response.json()
    assert body["clientId"] == "alice"
    assert body["keyName"] == "test-key"
    assert body["expires"] > body["issued"]
    assert "direct:alice" in body["capability"]

    header = jwt.get_unverified_header(body["token"])
    assert header["kid"] == "test-key"
    claims = jwt.decode(body["token"], "secret", algorithms=["HS256"])
    assert claims["sub"] == "alice"


def test_token_without_messaging_key_fails(client: TestClient):
    client.app.state.settings.messaging_api_key = None
    response = client.get("/api/ably/token", params={"userId": "alice"})
    assert response.status_code == 500
    assert response.json()["detail"] == "Error generating token"


def test_register_user_flow(client: TestClient, session_factory):
    body = register(client, "u-1", "alice")
    assert body["id"] == "u-1"
    assert body["isOnline"] is True
    assert body["lastSeen"] is None

    duplicate = client.post(
        "/api/users/register",
        json={"userId": "u-1", "email": "alice@example.com", "username": "alice"},
    )
    assert duplicate.status_code == 409

    missing = client.post("/api/users/register", json={"userId": "u-2", "email": "b@example.com"})
    assert missing.status_code == 400
    assert missing.json()["detail"] == "User ID, email, and username are required"

    session = session_factory()
    try:
        assert session.get(User, "u-1").username == "alice"
    finally:
        session.close()


def test_status_update_and_read(client: TestClient, make_user, session_factory):
    make_user("u-1", "alice", is_online=True)

    response = client.post("/api/users/u-1/status", json={"isOnline": False})
    assert response.status_code == 200
    assert response.json() == {"success": True}

    session = session_factory()
    try:
        user = session.get(User, "u-1")
        assert user.is_online is False
        assert user.last_seen is not None
    finally:
        session.close()

    assert client.get("/api/users/u-1/status").json() == {"isOnline": False}
    client.post("/api/users/u-1/status", json={"isOnline": True})
    assert client.get("/api/users/u-1/status").json() == {"isOnline": True}


def test_status_validation_and_unknown_users(client: TestClient):
    assert client.post("/api/users/u-1/status", json={}).status_code == 400
    assert client.post("/api/users/u-1/status", json={"isOnline": "yes"}).status_code == 400
    assert client.post("/api/users/ghost/status", json={"isOnline": True}).status_code == 404
    assert client.get("/api/users/ghost/status").json() == {"isOnline": False}


def test_send_message_persists_and_fans_out(client: TestClient, make_user, broker):
    make_user("u-1", "alice")
    make_user("u-2", "bob")

    response = client.post(
        "/api/chat-rooms/general/messages",
        json={"content": "hi bob", "senderId": "u-1", "recipientId": "u-2"},
    )
    assert response.status_code == 201, response.text
    record = response.json()
    assert record["content"] == "hi bob"
    assert record["chat_id"] == "general"
    assert record["recipient_id"] == "u-2"
    assert record["sender"] == {"id": "u-1", "username": "alice"}

    room_events = broker.events("chat:general", "message")
    direct_events = broker.events("direct:u-2", "message")
    assert [event["data"]["id"] for event in room_events] == [record["id"]]
    assert [event["data"]["id"] for event in direct_events] == [record["id"]]
    assert room_events[0]["data"]["sender"]["username"] == "alice"

    metrics = client.get("/metrics").text
    assert 'messages_persisted_total{kind="direct"} 1' in metrics


def test_room_message_is_not_sent_to_direct_channels(client: TestClient, make_user, broker):
    make_user("u-1", "alice")
    response = client.post(
        "/api/chat-rooms/tech/messages",
        json={"content": "hello", "senderId": "u-1"},
    )
    assert response.status_code == 201
    assert len(broker.events("chat:tech", "message")) == 1
    assert not [channel for channel, _ in broker.published if channel.startswith("relaychat.direct:")]


def test_send_message_validation(client: TestClient, make_user):
    make_user("u-1", "alice")

    unknown_room = client.post(
        "/api/chat-rooms/random/messages", json={"content": "hi", "senderId": "u-1"}
    )
    assert unknown_room.status_code == 404
    assert unknown_room.json()["detail"] == "Chat room not found"

    missing = client.post("/api/chat-rooms/general/messages", json={"senderId": "u-1"})
    assert missing.status_code == 400
    assert missing.json()["detail"] == "Message content and sender ID are required"

    blank = client.post("/api/chat-rooms/general/messages", json={"content": "   ", "senderId": "u-1"})
    assert blank.status_code == 400

    too_long = client.post(
        "/api/chat-rooms/general/messages", json={"content": "x" * 2001, "senderId": "u-1"}
    )
    assert too_long.status_code == 400

    unknown_sender = client.post(
        "/api/chat-rooms/general/messages", json={"content": "hi", "senderId": "ghost"}
    )
    assert unknown_sender.status_code == 404
    assert unknown_sender.json()["detail"] == "Sender not found"

    unknown_recipient = client.post(
        "/api/chat-rooms/general/messages",
        json={"content": "hi", "senderId": "u-1", "recipientId": "ghost"},
    )
    assert unknown_recipient.status_code == 404


def test_send_message_succeeds_when_broker_is_down(client: TestClient, make_user, broker):
    make_user("u-1", "alice")
    broker.online = False

    response = client.post(
        "/api/chat-rooms/general/messages", json={"content": "still saved", "senderId": "u-1"}
    )
    assert response.status_code == 201

    history = client.get("/api/chat-rooms/general/messages").json()
    assert [message["content"] for message in history] == ["still saved"]
    metrics = client.get("/metrics").text
    assert 'realtime_publish_errors_total{topic="chat",reason="unavailable"} 1' in metrics


def test_message_history_pagination(client: TestClient, make_user, session_factory):
    make_user("u-1", "alice")
    seed_messages(session_factory, "u-1", 5)

    latest = client.get("/api/chat-rooms/general/messages", params={"limit": 2}).json()
    assert [message["content"] for message in latest] == ["message 4", "message 3"]
    assert latest[0]["sender"] == {"id": "u-1", "username": "alice"}

    older = client.get(
        "/api/chat-rooms/general/messages",
        params={"limit": 2, "before": latest[-1]["created_at"]},
    ).json()
    assert [message["content"] for message in older] == ["message 2", "message 1"]

    assert client.get("/api/chat-rooms/tech/messages").json() == []
    assert client.get("/api/chat-rooms/nowhere/messages").status_code == 404
    assert client.get("/api/chat-rooms/general/messages", params={"limit": 0}).status_code == 400


def test_message_history_limit_is_capped(client: TestClient, make_user, session_factory):
    make_user("u-1", "alice")
    seed_messages(session_factory, "u-1", 120)

    default_page = client.get("/api/chat-rooms/general/messages").json()
    assert len(default_page) == 50
    capped = client.get("/api/chat-rooms/general/messages", params={"limit": 500}).json()
    assert len(capped) == 100


def test_messages_in_a_room_have_increasing_timestamps(client: TestClient, make_user):
    make_user("u-1", "alice")
    for index in range(5):
        client.post(
            "/api/chat-rooms/general/messages",
            json={"content": f"burst {index}", "senderId": "u-1"},
        )
    history = client.get("/api/chat-rooms/general/messages").json()
    assert [message["content"] for message in history] == [f"burst {i}" for i in range(4, -1, -1)]
    stamps = [message["created_at"] for message in reversed(history)]
    assert len(set(stamps)) == 5
