"""End-to-end tests for the /ws endpoint: handshake, intents and fan-out."""
import time

import pytest
from starlette.websockets import WebSocketDisconnect

from realtime.auth import TokenVerifier
from realtime.models import Role, ThreadStatus, ThreadType
from realtime.sessions.router import CLOSE_AUTH_FAILED


def receive_until(ws, event_type: str, limit: int = 20) -> dict:
    """Read frames until one of the given type arrives."""
    for _ in range(limit):
        message = ws.receive_json()
        if message["type"] == event_type:
            return message
    raise AssertionError(f"no {event_type} frame received")


def connect(api_client, token: str):
    return api_client.websocket_connect(f"/ws?token={token}")


class TestHandshake:
    def test_token_in_query(self, api_client, make_token):
        with connect(api_client, make_token("alice")) as ws:
            connected = ws.receive_json()

        assert connected["type"] == "connected"
        assert connected["userId"] == "alice"
        assert connected["sessionId"]

    def test_token_in_header(self, api_client, make_token):
        headers = {"Authorization": f"Bearer {make_token('alice')}"}
        with api_client.websocket_connect("/ws", headers=headers) as ws:
            assert ws.receive_json()["userId"] == "alice"

    def test_token_in_first_frame(self, api_client, make_token):
        with api_client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "authenticate", "token": make_token("alice")})
            assert ws.receive_json()["type"] == "connected"

    def test_bad_token_is_rejected_with_4401(self, api_client):
        with api_client.websocket_connect("/ws?token=not-a-jwt") as ws:
            error = ws.receive_json()
            assert error["type"] == "handshake-error"
            assert error["code"] == "auth_failure"
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()

        assert exc_info.value.code == CLOSE_AUTH_FAILED

    def test_token_signed_with_other_secret(self, api_client):
        forged = TokenVerifier("someone-elses-secret").create_token("alice")
        with connect(api_client, forged) as ws:
            assert ws.receive_json()["type"] == "handshake-error"

    def test_wrong_first_frame(self, api_client):
        with api_client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "handshake-error"

    def test_handshake_timeout(self, api_client):
        """No credentials within handshake_timeout_seconds closes the socket."""
        with api_client.websocket_connect("/ws") as ws:
            error = ws.receive_json()
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()

        assert error["type"] == "handshake-error"
        assert exc_info.value.code == CLOSE_AUTH_FAILED


class TestIntents:
    def test_ping_pong(self, api_client, make_token):
        with connect(api_client, make_token("alice")) as ws:
            ws.receive_json()
            ws.send_json({"type": "ping", "requestId": "p1"})
            assert ws.receive_json() == {"type": "pong", "requestId": "p1"}

    def test_subscribe_aggregate_returns_summary(self, api_client, make_token, make_thread, store):
        thread = make_thread("alice", "bob")
        store.append_message(thread.id, "bob", "hi")
        store.increment_unread(thread.id, ["alice"])

        with connect(api_client, make_token("alice")) as ws:
            ws.receive_json()
            ws.send_json({"type": "subscribe-aggregate", "requestId": "r1"})
            ack = ws.receive_json()

        assert ack["type"] == "ack"
        assert ack["intent"] == "subscribe-aggregate"
        assert ack["requestId"] == "r1"
        assert ack["summary"]["threads"] == {thread.id: 1}
        assert ack["summary"]["totalUnread"] == 1

    def test_send_message_round_trip(self, api_client, make_token, make_thread):
        thread = make_thread("alice", "bob")

        with connect(api_client, make_token("alice")) as ws:
            ws.receive_json()
            ws.send_json({"type": "subscribe-thread", "threadId": thread.id, "requestId": "r1"})
            assert ws.receive_json()["intent"] == "subscribe-thread"

            ws.send_json({
                "type": "send-message", "threadId": thread.id, "body": "hello",
                "clientNonce": "x1", "requestId": "x1",
            })
            created = receive_until(ws, "message-created")
            ack = receive_until(ws, "ack")

        assert created["message"]["body"] == "hello"
        assert created["message"]["clientNonce"] == "x1"
        assert ack["requestId"] == "x1"
        assert ack["message"]["id"] == created["message"]["id"]

    def test_subscribe_to_foreign_thread(self, api_client, make_token, make_thread):
        thread = make_thread("bob", "carol")

        with connect(api_client, make_token("alice")) as ws:
            ws.receive_json()
            ws.send_json({"type": "subscribe-thread", "threadId": thread.id, "requestId": "r1"})
            error = ws.receive_json()
            # The session survives a rejected intent
            ws.send_json({"type": "ping"})
            pong = ws.receive_json()

        assert error["type"] == "error"
        assert error["code"] == "not_participant"
        assert error["requestId"] == "r1"
        assert pong["type"] == "pong"

    def test_admin_may_monitor_support_thread(self, api_client, make_token, make_thread):
        thread = make_thread("customer", type=ThreadType.SUPPORT)

        with connect(api_client, make_token("agent", Role.ADMIN)) as ws:
            ws.receive_json()
            ws.send_json({"type": "subscribe-thread", "threadId": thread.id})
            assert ws.receive_json()["type"] == "ack"

    def test_invalid_json_and_unknown_intent(self, api_client, make_token):
        with connect(api_client, make_token("alice")) as ws:
            ws.receive_json()
            ws.send_text("{not json")
            invalid = ws.receive_json()
            ws.send_json({"type": "launch-rockets"})
            unknown = ws.receive_json()
            ws.send_json(["not", "an", "object"])
            not_object = ws.receive_json()

        assert invalid["code"] == "invalid_payload"
        assert unknown["code"] == "invalid_payload"
        assert unknown["intent"] == "launch-rockets"
        assert not_object["code"] == "invalid_payload"

    def test_missing_thread_id(self, api_client, make_token):
        with connect(api_client, make_token("alice")) as ws:
            ws.receive_json()
            ws.send_json({"type": "send-message", "body": "hi"})
            error = ws.receive_json()

        assert error["code"] == "invalid_payload"

    def test_send_to_closed_thread(self, api_client, make_token, make_thread, store):
        thread = make_thread("alice", "bob")
        store.set_thread_status(thread.id, ThreadStatus.CLOSED)

        with connect(api_client, make_token("alice")) as ws:
            ws.receive_json()
            ws.send_json({"type": "send-message", "threadId": thread.id, "body": "hi", "requestId": "n1"})
            error = ws.receive_json()

        assert error["code"] == "thread_closed"
        assert error["intent"] == "send-message"


class TestFanOut:
    def test_two_users_chat_and_read(self, api_client, make_token, make_thread, store):
        thread = make_thread("alice", "bob")

        with connect(api_client, make_token("alice")) as alice, \
             connect(api_client, make_token("bob")) as bob:
            alice.receive_json()
            bob.receive_json()
            for ws in (alice, bob):
                ws.send_json({"type": "subscribe-aggregate"})
                receive_until(ws, "ack")
                ws.send_json({"type": "subscribe-thread", "threadId": thread.id})
                receive_until(ws, "ack")

            alice.send_json({"type": "send-message", "threadId": thread.id, "body": "hello bob"})
            received = receive_until(bob, "message-created")
            badge = receive_until(bob, "thread-updated")
            assert received["message"]["body"] == "hello bob"
            assert badge["unreadCount"] == 1

            bob.send_json({"type": "mark-read", "threadId": thread.id, "requestId": "read-1"})
            receipt = receive_until(alice, "read-receipt")
            ack = receive_until(bob, "ack")

        assert receipt["userId"] == "bob"
        assert receipt["unreadCount"] == 0
        assert ack["requestId"] == "read-1"
        assert store.get_thread(thread.id).unreadCount["bob"] == 0

    def test_typing_reaches_other_participant_only(self, api_client, make_token, make_thread):
        thread = make_thread("alice", "bob")

        with connect(api_client, make_token("alice")) as alice, \
             connect(api_client, make_token("bob")) as bob:
            alice.receive_json()
            bob.receive_json()
            for ws in (alice, bob):
                ws.send_json({"type": "subscribe-thread", "threadId": thread.id})
                receive_until(ws, "ack")

            alice.send_json({"type": "typing", "threadId": thread.id, "isTyping": True})
            typing = bob.receive_json()
            # typing has no ack; the next frame alice sees is the pong
            alice.send_json({"type": "ping"})
            assert alice.receive_json()["type"] == "pong"

        assert typing == {"type": "typing", "threadId": thread.id, "userId": "alice", "isTyping": True}

    def test_offline_recipient_gets_persisted_notification(self, api_client, make_token, make_thread, auth_headers):
        thread = make_thread("alice", "bob")

        with connect(api_client, make_token("alice")) as ws:
            ws.receive_json()
            ws.send_json({"type": "send-message", "threadId": thread.id, "body": "are you there?"})
            receive_until(ws, "ack")

        response = api_client.get("/notifications", headers=auth_headers("bob"))
        notifications = response.json()["notifications"]
        assert len(notifications) == 1
        assert notifications[0]["payload"]["preview"] == "are you there?"

    def test_disconnect_drops_session(self, api_client, make_token):
        with connect(api_client, make_token("alice")) as ws:
            ws.receive_json()
            ws.send_json({"type": "subscribe-aggregate"})
            ws.receive_json()
            assert api_client.get("/realtime/stats").json()["sessions"] == 1

        deadline = time.monotonic() + 2
        stats = api_client.get("/realtime/stats").json()
        while stats["sessions"] and time.monotonic() < deadline:
            time.sleep(0.05)
            stats = api_client.get("/realtime/stats").json()
        assert stats == {"rooms": 0, "sessions": 0, "memberships": 0}
