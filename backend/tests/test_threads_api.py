"""Tests for the HTTP fallback endpoints and the async RestClient."""
import httpx
import pytest
import pytest_asyncio

from realtime.client.transport import RestClient
from realtime.errors import AuthFailure, NotParticipant, ThreadClosed
from realtime.models import Role, ThreadStatus, ThreadType


class TestAuth:
    def test_missing_token_is_401(self, api_client):
        response = api_client.get("/threads")
        assert response.status_code == 401
        assert response.json()["code"] == "auth_failure"

    def test_garbage_token_is_401(self, api_client):
        response = api_client.get("/threads", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_health_needs_no_token(self, api_client):
        assert api_client.get("/health").json() == {"status": "ok"}


class TestThreads:
    def test_open_peer_thread_once(self, api_client, auth_headers):
        body = {"type": "peer", "participants": ["bob"], "listingId": "car-1"}
        first = api_client.post("/threads", json=body, headers=auth_headers("alice"))
        again = api_client.post(
            "/threads", json={**body, "participants": ["alice"]}, headers=auth_headers("bob")
        )

        assert first.status_code == 201
        assert first.json()["created"] is True
        assert first.json()["thread"]["participants"] == ["alice", "bob"]
        assert again.json()["created"] is False
        assert again.json()["thread"]["id"] == first.json()["thread"]["id"]

    def test_peer_thread_needs_two_participants(self, api_client, auth_headers):
        response = api_client.post(
            "/threads", json={"type": "peer", "participants": ["bob", "carol"]},
            headers=auth_headers("alice"),
        )
        assert response.status_code == 422
        assert response.json()["code"] == "invalid_payload"

    def test_open_support_thread(self, api_client, auth_headers):
        response = api_client.post(
            "/threads", json={"type": "support", "subject": "Refund"}, headers=auth_headers("alice"),
        )
        thread = response.json()["thread"]
        assert thread["type"] == "support"
        assert thread["participants"] == ["alice"]
        assert thread["subject"] == "Refund"

    def test_list_threads(self, api_client, auth_headers, make_thread):
        make_thread("alice", "bob", listing_id="a")
        make_thread("alice", "carol", listing_id="b")
        make_thread("bob", "carol", listing_id="c")

        response = api_client.get("/threads", headers=auth_headers("alice"))

        assert response.json()["count"] == 2

    def test_get_thread_access(self, api_client, auth_headers, make_thread):
        peer = make_thread("alice", "bob")
        support = make_thread("customer", type=ThreadType.SUPPORT)

        assert api_client.get(f"/threads/{peer.id}", headers=auth_headers("bob")).status_code == 200
        outsider = api_client.get(f"/threads/{peer.id}", headers=auth_headers("mallory"))
        assert outsider.status_code == 403
        assert outsider.json()["code"] == "not_participant"
        admin = api_client.get(f"/threads/{support.id}", headers=auth_headers("agent", Role.ADMIN))
        assert admin.status_code == 200
        assert api_client.get("/threads/missing", headers=auth_headers("alice")).status_code == 404

    def test_close_thread_blocks_new_messages(self, api_client, auth_headers, make_thread):
        thread = make_thread("alice", "bob")

        closed = api_client.post(
            f"/threads/{thread.id}/status", json={"status": "closed"}, headers=auth_headers("alice"),
        )
        send = api_client.post(
            f"/threads/{thread.id}/messages", json={"body": "hi"}, headers=auth_headers("bob"),
        )

        assert closed.json()["status"] == "closed"
        assert send.status_code == 409
        assert send.json()["code"] == "thread_closed"


class TestMessages:
    def test_send_and_page(self, api_client, auth_headers, make_thread):
        thread = make_thread("alice", "bob")
        for i in range(3):
            response = api_client.post(
                f"/threads/{thread.id}/messages", json={"body": f"m{i}"}, headers=auth_headers("alice"),
            )
            assert response.status_code == 201

        page1 = api_client.get(
            f"/threads/{thread.id}/messages", params={"page": 1, "limit": 2}, headers=auth_headers("bob"),
        ).json()
        page2 = api_client.get(
            f"/threads/{thread.id}/messages", params={"page": 2, "limit": 2}, headers=auth_headers("bob"),
        ).json()

        assert [m["body"] for m in page1["messages"]] == ["m1", "m2"]
        assert page1["hasMore"] is True
        assert [m["body"] for m in page2["messages"]] == ["m0"]
        assert page2["hasMore"] is False

    def test_page_limit_is_validated(self, api_client, auth_headers, make_thread):
        thread = make_thread("alice", "bob")
        response = api_client.get(
            f"/threads/{thread.id}/messages", params={"limit": 0}, headers=auth_headers("alice"),
        )
        assert response.status_code == 422

    def test_nonce_resend_returns_same_message(self, api_client, auth_headers, make_thread, store):
        thread = make_thread("alice", "bob")
        body = {"body": "hello", "clientNonce": "x1"}

        first = api_client.post(f"/threads/{thread.id}/messages", json=body, headers=auth_headers("alice"))
        second = api_client.post(f"/threads/{thread.id}/messages", json=body, headers=auth_headers("alice"))

        assert first.json()["id"] == second.json()["id"]
        assert store.get_thread(thread.id).unreadCount["bob"] == 1

    def test_get_single_message(self, api_client, auth_headers, make_thread, store):
        thread = make_thread("alice", "bob", listing_id="a")
        other = make_thread("alice", "bob", listing_id="b")
        message, _ = store.append_message(thread.id, "alice", "hi")

        ok = api_client.get(f"/threads/{thread.id}/messages/{message.id}", headers=auth_headers("bob"))
        wrong = api_client.get(f"/threads/{other.id}/messages/{message.id}", headers=auth_headers("bob"))

        assert ok.json()["body"] == "hi"
        assert wrong.status_code == 404
        assert wrong.json()["code"] == "message_not_found"

    def test_edit_and_delete(self, api_client, auth_headers, make_thread, store):
        thread = make_thread("alice", "bob")
        message, _ = store.append_message(thread.id, "alice", "helo")
        url = f"/threads/{thread.id}/messages/{message.id}"

        forbidden = api_client.patch(url, json={"body": "hacked"}, headers=auth_headers("bob"))
        empty = api_client.patch(url, json={"body": ""}, headers=auth_headers("alice"))
        edited = api_client.patch(url, json={"body": "hello"}, headers=auth_headers("alice"))
        deleted = api_client.delete(url, headers=auth_headers("alice"))

        assert forbidden.status_code == 403
        assert forbidden.json()["code"] == "not_authorized"
        assert empty.status_code == 422
        assert edited.json()["body"] == "hello"
        assert edited.json()["editedAt"] is not None
        assert deleted.json()["deletedAt"] is not None
        assert deleted.json()["body"] == ""

    def test_mark_read(self, api_client, auth_headers, make_thread, store):
        thread = make_thread("alice", "bob")
        store.append_message(thread.id, "alice", "hi")
        store.increment_unread(thread.id, ["bob"])

        response = api_client.post(f"/threads/{thread.id}/read", headers=auth_headers("bob"))

        assert response.json()["userId"] == "bob"
        assert store.get_thread(thread.id).unreadCount["bob"] == 0

    def test_rest_write_reaches_live_session(self, api_client, auth_headers, make_token, make_thread):
        thread = make_thread("alice", "bob")

        with api_client.websocket_connect(f"/ws?token={make_token('alice')}") as ws:
            ws.receive_json()
            ws.send_json({"type": "subscribe-thread", "threadId": thread.id})
            ws.receive_json()

            api_client.post(
                f"/threads/{thread.id}/messages", json={"body": "via http"}, headers=auth_headers("bob"),
            )
            created = ws.receive_json()

        assert created["type"] == "message-created"
        assert created["message"]["body"] == "via http"


class TestNotifications:
    def test_list_read_and_summary(self, api_client, auth_headers, make_thread):
        thread = make_thread("alice", "bob")
        for body in ("one", "two"):
            api_client.post(f"/threads/{thread.id}/messages", json={"body": body}, headers=auth_headers("alice"))

        listed = api_client.get("/notifications", headers=auth_headers("bob")).json()
        assert listed["count"] == 2

        first_id = listed["notifications"][0]["id"]
        read = api_client.post(f"/notifications/{first_id}/read", headers=auth_headers("bob"))
        assert read.json()["isRead"] is True
        stolen = api_client.post(f"/notifications/{first_id}/read", headers=auth_headers("alice"))
        assert stolen.status_code == 404

        summary = api_client.get("/notifications/summary", headers=auth_headers("bob")).json()
        assert summary == {"threads": {thread.id: 2}, "totalUnread": 2, "unreadNotifications": 1}

        unread = api_client.get(
            "/notifications", params={"unreadOnly": True}, headers=auth_headers("bob"),
        ).json()
        assert unread["count"] == 1

        assert api_client.post("/notifications/read-all", headers=auth_headers("bob")).json() == {"updated": 1}


@pytest_asyncio.fixture
async def rest_for(app, make_token):
    """Factory for RestClients talking to the app in-process."""
    clients = []

    def _make(user_id: str, token: str = None) -> RestClient:
        http = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")
        client = RestClient("http://test", token or make_token(user_id), client=http)
        clients.append(client)
        return client

    yield _make
    for client in clients:
        await client.aclose()


class TestRestClient:
    @pytest.mark.asyncio
    async def test_send_and_fetch(self, rest_for, make_thread):
        thread = make_thread("alice", "bob")
        alice = rest_for("alice")

        sent = await alice.send_message(thread.id, "hello", client_nonce="x1")
        resent = await alice.send_message(thread.id, "hello", client_nonce="x1")
        messages, has_more = await alice.fetch_page(thread.id)

        assert sent.id == resent.id
        assert [m.id for m in messages] == [sent.id]
        assert has_more is False
        assert (await alice.fetch_message(thread.id, sent.id)).body == "hello"
        assert await alice.fetch_message(thread.id, "missing") is None

    @pytest.mark.asyncio
    async def test_errors_map_to_domain_exceptions(self, rest_for, make_thread, store):
        thread = make_thread("alice", "bob")

        with pytest.raises(NotParticipant):
            await rest_for("mallory").fetch_page(thread.id)
        with pytest.raises(AuthFailure):
            await rest_for("alice", token="expired").fetch_page(thread.id)

        store.set_thread_status(thread.id, ThreadStatus.CLOSED)
        with pytest.raises(ThreadClosed) as exc_info:
            await rest_for("alice").send_message(thread.id, "late")
        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_mark_read_and_notifications(self, rest_for, make_thread):
        thread = make_thread("alice", "bob")
        await rest_for("alice").send_message(thread.id, "ping")
        bob = rest_for("bob")

        notifications = await bob.list_notifications(unread_only=True)
        receipt = await bob.mark_read(thread.id)

        assert [n.kind for n in notifications] == ["new-message"]
        assert receipt["threadId"] == thread.id

    @pytest.mark.asyncio
    async def test_update_token(self, rest_for, make_token, make_thread):
        thread = make_thread("alice", "bob")
        client = rest_for("alice", token="stale")
        client.update_token(make_token("alice"))

        messages, _ = await client.fetch_page(thread.id)
        assert messages == []
