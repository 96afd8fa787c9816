"""Server-side connection session.

One ``ConnectionSession`` wraps one authenticated client transport (a
FastAPI ``WebSocket`` in production, any object with ``send_json`` and
``close`` coroutines in tests). It is a pure routing endpoint: it owns its
room memberships, its heartbeat timestamp and the serialization of writes
to the transport, and nothing durable.

State machine::

    Handshaking -> Authenticated -> Active -> Closing -> Closed
         \\________________________________/
              (handshake failure / timeout)
"""
import asyncio
import logging
import time
import uuid
from enum import Enum
from typing import Optional, Set

from ..models import Identity

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    HANDSHAKING = "handshaking"
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


_ALLOWED_TRANSITIONS = {
    SessionState.HANDSHAKING: {SessionState.AUTHENTICATED, SessionState.CLOSING},
    SessionState.AUTHENTICATED: {SessionState.ACTIVE, SessionState.CLOSING},
    SessionState.ACTIVE: {SessionState.CLOSING},
    SessionState.CLOSING: {SessionState.CLOSED},
    SessionState.CLOSED: set(),
}


class SessionStateError(RuntimeError):
    """Raised on an illegal state transition."""


class ConnectionSession:
    """A single client connection and its routing state.

    Attributes:
        id: Unique session id (one user may hold several sessions).
        transport: The underlying connection.
        identity: Verified identity, set when the handshake succeeds.
        rooms: Room ids this session is subscribed to. Maintained by the
            RoomRegistry.
        last_heartbeat: Monotonic timestamp of the last inbound frame.
    """

    def __init__(self, transport, session_id: Optional[str] = None) -> None:
        self.id = session_id or uuid.uuid4().hex
        self.transport = transport
        self.state = SessionState.HANDSHAKING
        self.identity: Optional[Identity] = None
        self.rooms: Set[str] = set()
        self.last_heartbeat = time.monotonic()
        self._send_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"ConnectionSession(id={self.id!r}, user={self.user_id!r}, state={self.state.value})"

    @property
    def user_id(self) -> Optional[str]:
        return self.identity.userId if self.identity else None

    @property
    def is_open(self) -> bool:
        return self.state in (SessionState.AUTHENTICATED, SessionState.ACTIVE)

    def _transition(self, target: SessionState) -> None:
        if target not in _ALLOWED_TRANSITIONS[self.state]:
            raise SessionStateError(
                f"Session {self.id}: illegal transition {self.state.value} -> {target.value}"
            )
        logger.debug("[Session] %s %s -> %s", self.id, self.state.value, target.value)
        self.state = target

    def authenticate(self, identity: Identity) -> None:
        self._transition(SessionState.AUTHENTICATED)
        self.identity = identity
        self.touch()

    def activate(self) -> None:
        self._transition(SessionState.ACTIVE)

    def touch(self) -> None:
        """Record inbound activity (any frame counts as a heartbeat)."""
        self.last_heartbeat = time.monotonic()

    def is_stale(self, timeout_seconds: float, now: Optional[float] = None) -> bool:
        now = time.monotonic() if now is None else now
        return now - self.last_heartbeat > timeout_seconds

    async def deliver(self, event: dict) -> None:
        """Push one event to the client.

        Writes are serialized because a transport must not be written by two
        coroutines at once. Callers bound this with their own timeout.
        """
        if not self.is_open:
            raise ConnectionError(f"Session {self.id} is {self.state.value}")
        async with self._send_lock:
            await self.transport.send_json(event)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Close the transport. Safe to call more than once."""
        if self.state == SessionState.CLOSED:
            return
        if self.state != SessionState.CLOSING:
            self._transition(SessionState.CLOSING)
        try:
            await self.transport.close(code=code, reason=reason)
        except Exception as e:
            # Transport already gone (client hung up first)
            logger.debug("[Session] %s close failed: %s", self.id, e)
        self._transition(SessionState.CLOSED)

    def mark_closed(self) -> None:
        """Record that the peer closed the transport."""
        if self.state == SessionState.CLOSED:
            return
        if self.state != SessionState.CLOSING:
            self._transition(SessionState.CLOSING)
        self._transition(SessionState.CLOSED)
