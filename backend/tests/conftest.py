"""Shared test fixtures and configuration for backend tests."""
import asyncio
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from realtime.auth import TokenVerifier
from realtime.config import AppSettings
from realtime.ingestion.pipeline import IngestionPipeline
from realtime.ledger.service import UnreadLedger
from realtime.main import create_app
from realtime.models import Identity, Message, Role, Thread, ThreadType
from realtime.rooms.registry import RoomRegistry
from realtime.sessions.session import ConnectionSession
from realtime.store.duckdb_store import DuckDBMessageStore

SECRET = "test-secret"
THREAD = "t1"


class FakeTransport:
    """Stand-in for a WebSocket: records frames, can be slow or broken."""

    def __init__(self, delay: float = 0.0, fail: bool = False) -> None:
        self.sent: List[dict] = []
        self.delay = delay
        self.fail = fail
        self.closed_with: Optional[int] = None

    async def send_json(self, data: dict) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("socket is broken")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed_with = code

    def of_type(self, event_type: str) -> List[dict]:
        return [frame for frame in self.sent if frame.get("type") == event_type]


def msg(message_id: str, created_at: float, body: str = "", sender: str = "bob", **fields) -> Message:
    """A confirmed message in thread t1 (body defaults to the id)."""
    return Message(
        id=message_id,
        threadId=fields.pop("thread_id", THREAD),
        senderId=sender,
        body=body or message_id,
        createdAt=created_at,
        **fields,
    )


def frame(event_type: str, message: Message) -> dict:
    return {"type": event_type, "message": message.model_dump(mode="json")}


class FakeRest:
    """Server history held in memory, paginated newest page first."""

    def __init__(self, user_id: str = "alice") -> None:
        self.user_id = user_id
        self.messages: Dict[str, List[Message]] = {}
        self.fetched: List[str] = []
        self.sent: List[dict] = []
        self.gate: Optional[asyncio.Event] = None
        self.page_error: Optional[Exception] = None
        self.send_error: Optional[Exception] = None

    def add(self, *messages: Message) -> None:
        for message in messages:
            self.messages.setdefault(message.threadId, []).append(message)

    async def fetch_page(self, thread_id: str, page: int = 1, limit: int = 50):
        if self.gate is not None:
            await self.gate.wait()
        if self.page_error is not None:
            raise self.page_error
        ordered = sorted(self.messages.get(thread_id, []), key=Message.sort_key)
        end = len(ordered) - (page - 1) * limit
        start = max(0, end - limit)
        return ordered[start:max(end, 0)], start > 0

    async def fetch_message(self, thread_id: str, message_id: str) -> Optional[Message]:
        self.fetched.append(message_id)
        for message in self.messages.get(thread_id, []):
            if message.id == message_id:
                return message
        return None

    async def send_message(self, thread_id, body, attachments=(), client_nonce=None, kind=None):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append({"threadId": thread_id, "body": body, "clientNonce": client_nonce})
        message = msg(
            f"srv-{len(self.sent)}", 1000.0 + len(self.sent), body,
            sender=self.user_id, thread_id=thread_id, clientNonce=client_nonce,
        )
        self.add(message)
        return message


@pytest.fixture
def settings():
    """Settings with an in-memory store and short timeouts."""
    return AppSettings(
        store={"db_path": ":memory:"},
        realtime={
            "handshake_timeout_seconds": 0.5,
            "delivery_timeout_seconds": 0.2,
            "heartbeat_timeout_seconds": 30,
            "heartbeat_sweep_seconds": 30,
        },
        client={
            "optimistic_timeout_seconds": 0.3,
            "orphan_timeout_seconds": 0.1,
            "orphan_buffer_size": 3,
            "page_size": 50,
            "backoff_base_seconds": 0.01,
            "backoff_ceiling_seconds": 0.08,
            "backoff_jitter": 0,
            "max_retries": 3,
        },
        secrets={"jwt": {"secret_key": SECRET}},
    )


@pytest.fixture
def store():
    """Fresh in-memory DuckDB store per test."""
    store = DuckDBMessageStore(db_path=":memory:")
    yield store
    store.close()


@pytest.fixture
def registry(settings):
    return RoomRegistry(delivery_timeout=settings.realtime.delivery_timeout_seconds)


@pytest.fixture
def ledger(store, registry):
    return UnreadLedger(store, registry)


@pytest.fixture
def pipeline(store, registry, ledger):
    return IngestionPipeline(store, registry, ledger)


@pytest.fixture
def verifier():
    return TokenVerifier(SECRET)


@pytest.fixture
def make_token(verifier):
    """Factory: make_token("alice") or make_token("agent", Role.ADMIN)."""
    def _make(user_id: str, role: Role = Role.USER) -> str:
        return verifier.create_token(user_id, role=role)
    return _make


@pytest.fixture
def auth_headers(make_token):
    def _headers(user_id: str, role: Role = Role.USER) -> dict:
        return {"Authorization": f"Bearer {make_token(user_id, role)}"}
    return _headers


@pytest.fixture
def make_session(registry):
    """Factory for active sessions attached to the registry."""
    def _make(user_id: str, role: Role = Role.USER, **transport_options) -> ConnectionSession:
        session = ConnectionSession(FakeTransport(**transport_options))
        session.authenticate(Identity(userId=user_id, role=role))
        session.activate()
        registry.attach(session)
        return session
    return _make


@pytest.fixture
def make_thread(store):
    """Factory for persisted threads."""
    def _make(*participants: str, type: ThreadType = ThreadType.PEER, listing_id: str = "listing-1") -> Thread:
        return store.create_thread(
            Thread(type=type, participants=list(participants), listingId=listing_id)
        )
    return _make


@pytest.fixture
def app(settings, store):
    return create_app(settings, store=store)


@pytest.fixture
def api_client(app):
    """Provide a TestClient for the application (lifespan runs on enter)."""
    with TestClient(app) as client:
        yield client
