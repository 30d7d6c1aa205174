"""API tests running the application against the in-memory backend."""

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from relaychat.backends.memory import InMemoryBackend
from relaychat.main import create_app

API = "/api/v1"
WS_URL = f"{API}/realtime/ws"


def _receive_types(websocket, count: int) -> dict[str, dict]:
    """Receive ``count`` messages and index them by type."""
    messages = [websocket.receive_json() for _ in range(count)]
    return {message["type"]: message for message in messages}


class TestHealth:
    def test_health(self, client):
        response = client.get(f"{API}/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "environment": "testing",
            "version": "0.1.0",
        }

    def test_ready_with_session(self, client):
        response = client.get(f"{API}/ready")

        body = response.json()
        assert body["status"] == "ready"
        assert body["backend"] == "memory"
        assert body["session"] == "signed_in"
        # The session user's own presence row is watched from startup
        assert body["subscriptions"] == 1

    def test_ready_without_lifespan(self, test_settings, backend):
        client = TestClient(create_app(test_settings, backend=backend))

        assert client.get(f"{API}/ready").json()["status"] == "unavailable"

    def test_root(self, client):
        assert client.get("/").json()["name"] == "RelayChat"


class TestPresence:
    def test_startup_marks_user_online(self, client):
        response = client.get(f"{API}/presence/user-1")

        assert response.status_code == 200
        assert response.json()["status"] == "online"

    def test_update_status(self, client):
        response = client.put(f"{API}/presence/status", json={"status": "idle"})

        assert response.status_code == 200
        body = response.json()
        assert body["user_id"] == "user-1"
        assert body["status"] == "idle"
        assert body["last_seen"] is not None
        assert client.get(f"{API}/presence/user-1").json()["status"] == "idle"

    def test_unknown_user_is_offline(self, client):
        response = client.get(f"{API}/presence/nobody")

        assert response.json() == {"user_id": "nobody", "status": "offline", "last_seen": None}

    def test_invalid_status(self, client):
        response = client.put(f"{API}/presence/status", json={"status": "away"})

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_update_requires_session(self, client, backend):
        backend.auth.sign_out()

        response = client.put(f"{API}/presence/status", json={"status": "dnd"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AUTHENTICATION_REQUIRED"

    def test_shutdown_marks_user_offline(self, test_settings, backend):
        with TestClient(create_app(test_settings, backend=backend)) as client:
            client.get(f"{API}/health")

        rows = backend.store.rows("presence")
        assert [(row["user_id"], row["status"]) for row in rows] == [("user-1", "offline")]


    def test_late_sign_in_starts_presence_on_status_update(self, test_settings):
        backend = InMemoryBackend()
        with TestClient(create_app(test_settings, backend=backend)) as client:
            backend.auth.sign_in("late")

            response = client.put(f"{API}/presence/status", json={"status": "idle"})
            assert response.status_code == 200
            assert client.get(f"{API}/ready").json()["subscriptions"] == 1

        rows = backend.store.rows("presence")
        assert [(row["user_id"], row["status"]) for row in rows] == [("late", "offline")]


class TestChannelStats:
    def test_lists_active_channels(self, client):
        response = client.get(f"{API}/realtime/channels")

        assert response.status_code == 200
        body = response.json()
        assert body["total_subscriptions"] == 1
        assert body["total_connections"] == 0
        assert body["channels"][0]["key"] == "realtime:public:presence:*:user_id=eq.user-1"
        assert body["channels"][0]["attempts"] == 0

    def test_requires_session(self, client, backend):
        backend.auth.sign_out()

        assert client.get(f"{API}/realtime/channels").status_code == 401


class TestWebSocket:
    def test_connect_and_ping(self, client):
        with client.websocket_connect(WS_URL) as websocket:
            connect = websocket.receive_json()
            assert connect["type"] == "connect"
            assert connect["payload"]["user_id"] == "user-1"

            websocket.send_json({"type": "ping", "request_id": "r1"})
            pong = websocket.receive_json()

        assert pong["type"] == "pong"
        assert pong["request_id"] == "r1"

    def test_subscribe_and_receive_change(self, client):
        with client.websocket_connect(WS_URL) as websocket:
            websocket.receive_json()

            websocket.send_json(
                {
                    "type": "subscribe",
                    "payload": {
                        "table": "presence",
                        "event": "UPDATE",
                        "filter": "user_id=eq.user-1",
                    },
                    "request_id": "s1",
                }
            )
            subscribed = websocket.receive_json()
            assert subscribed["type"] == "subscribed"
            assert subscribed["request_id"] == "s1"
            key = subscribed["payload"]["key"]
            assert key == "realtime:public:presence:UPDATE:user_id=eq.user-1"

            websocket.send_json({"type": "presence.update", "payload": {"status": "dnd"}})
            messages = _receive_types(websocket, 2)

            assert messages["presence.update"]["payload"]["status"] == "dnd"
            change = messages["change"]["payload"]
            assert change["key"] == key
            assert change["change"]["event_type"] == "UPDATE"
            assert change["change"]["new"]["status"] == "dnd"

            websocket.send_json({"type": "unsubscribe", "payload": {"key": key}})
            assert websocket.receive_json()["type"] == "unsubscribed"

    def test_typing_is_acknowledged(self, client, backend):
        with client.websocket_connect(WS_URL) as websocket:
            websocket.receive_json()

            websocket.send_json(
                {"type": "typing", "payload": {"channel_id": "c1", "is_typing": True}}
            )
            ack = websocket.receive_json()

        assert ack["type"] == "typing"
        assert ack["payload"]["channel_id"] == "c1"
        assert ack["payload"]["is_typing"] is True
        rows = backend.store.rows("typing_indicators")
        assert rows[0]["user_id"] == "user-1"

    @pytest.mark.parametrize(
        "message, code",
        [
            ({"type": "shout"}, "unknown_message_type"),
            ({"type": "subscribe", "payload": {"event": "INSERT"}}, "invalid_payload"),
            ({"type": "unsubscribe", "payload": {}}, "missing_key"),
            ({"type": "unsubscribe", "payload": {"key": "nope"}}, "not_subscribed"),
            ({"type": "presence.update", "payload": {"status": "away"}}, "invalid_status"),
            ({"type": "typing", "payload": {}}, "missing_fields"),
            (
                {"type": "subscribe", "payload": {"table": "messages", "filter": "channel_id"}},
                "CONFIGURATION_ERROR",
            ),
        ],
    )
    def test_bad_messages_are_reported(self, client, message, code):
        with client.websocket_connect(WS_URL) as websocket:
            websocket.receive_json()

            websocket.send_json(message)
            error = websocket.receive_json()

        assert error["type"] == "error"
        assert error["payload"]["code"] == code

    def test_presence_channel_cannot_be_taken_over(self, client):
        with client.websocket_connect(WS_URL) as websocket:
            websocket.receive_json()

            websocket.send_json(
                {
                    "type": "subscribe",
                    "payload": {"table": "presence", "filter": "user_id=eq.user-1"},
                }
            )
            error = websocket.receive_json()

        assert error["payload"]["code"] == "CHANNEL_IN_USE"

    def test_rejected_without_session(self, client, backend):
        backend.auth.sign_out()

        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(WS_URL) as websocket:
                websocket.receive_json()

        assert exc_info.value.code == 4001
