"""Room registry: which live sessions receive which broadcasts.

This module is pure bookkeeping. A room is a named broadcast group; a
session joins rooms and every event broadcast to a room is pushed to each
member session.

Room kinds:
    - ``thread:{id}``      one per conversation, joined while a thread is open
    - ``user-chats:{id}``  per user, drives chat-list previews and badges
    - ``user-notify:{id}`` per user, carries notifications

Concurrency:
    Memberships are guarded by striped locks (one lock per partition of room
    ids) so joins and broadcasts on unrelated rooms never contend. Broadcast
    takes a snapshot of the members under the lock and delivers outside it,
    concurrently, each delivery bounded by ``delivery_timeout``. A session
    that fails or times out is dropped from every room; it never stalls the
    rest of the room and never fails the caller.
"""
import asyncio
import logging
from typing import Dict, List, Optional, Set, Union

from ..errors import DeliveryTimeout
from ..sessions.session import ConnectionSession

logger = logging.getLogger(__name__)

# Number of lock stripes for room membership
LOCK_PARTITIONS = 64

# Default per-session delivery bound (seconds)
DEFAULT_DELIVERY_TIMEOUT = 5.0


def thread_room(thread_id: str) -> str:
    return f"thread:{thread_id}"


def user_chats_room(user_id: str) -> str:
    return f"user-chats:{user_id}"


def user_notify_room(user_id: str) -> str:
    return f"user-notify:{user_id}"


class RoomRegistry:
    """In-memory room id -> live sessions mapping.

    An instance is created by the application factory and injected into the
    WebSocket endpoint, the ingestion pipeline and the ledger.
    """

    def __init__(self, delivery_timeout: float = DEFAULT_DELIVERY_TIMEOUT) -> None:
        self.delivery_timeout = delivery_timeout

        # room_id -> {session_id -> session}
        self._rooms: Dict[str, Dict[str, ConnectionSession]] = {}

        # session_id -> session, for every live (attached) session
        self._sessions: Dict[str, ConnectionSession] = {}

        self._locks = [asyncio.Lock() for _ in range(LOCK_PARTITIONS)]

        # Close tasks for dropped sessions; kept so they are not garbage collected
        self._closing: Set[asyncio.Task] = set()

    def _lock_for(self, room: str) -> asyncio.Lock:
        return self._locks[hash(room) % LOCK_PARTITIONS]

    # =========================================================================
    # Membership
    # =========================================================================

    def attach(self, session: ConnectionSession) -> None:
        """Track a newly authenticated session before it joins any room."""
        self._sessions[session.id] = session

    async def join(self, room: str, session: ConnectionSession) -> None:
        async with self._lock_for(room):
            self._rooms.setdefault(room, {})[session.id] = session
            session.rooms.add(room)
            self._sessions[session.id] = session
        logger.debug("[Registry] Session %s joined %s", session.id, room)

    async def leave(self, room: str, session: ConnectionSession) -> bool:
        """Remove a session from a room. Returns False if it was not a member."""
        async with self._lock_for(room):
            removed = self._remove(room, session)
        if removed:
            logger.debug("[Registry] Session %s left %s", session.id, room)
        return removed

    def _remove(self, room: str, session: ConnectionSession) -> bool:
        members = self._rooms.get(room)
        if not members or session.id not in members:
            session.rooms.discard(room)
            return False
        del members[session.id]
        session.rooms.discard(room)
        if not members:
            # Last member left: tear the room down
            del self._rooms[room]
        return True

    async def drop_session(self, session: ConnectionSession) -> List[str]:
        """Remove a session from every room it belongs to (disconnect)."""
        dropped = []
        for room in list(session.rooms):
            async with self._lock_for(room):
                if self._remove(room, session):
                    dropped.append(room)
        self._sessions.pop(session.id, None)
        if dropped:
            logger.info(
                "[Registry] Dropped session %s (user=%s) from %d rooms",
                session.id, session.user_id, len(dropped),
            )
        return dropped

    # =========================================================================
    # Broadcast
    # =========================================================================

    async def broadcast(
        self,
        room: str,
        event: dict,
        exclude_session: Union[ConnectionSession, str, None] = None,
    ) -> int:
        """Deliver an event to every session in a room concurrently.

        Args:
            room: Room to broadcast to.
            event: JSON-serializable frame.
            exclude_session: Session (or session id) that should not receive
                the event, e.g. the sender of a typing indicator.

        Returns:
            Number of sessions the event was delivered to. A room with no
            members is a no-op and returns 0.
        """
        exclude_id = exclude_session.id if isinstance(exclude_session, ConnectionSession) else exclude_session

        async with self._lock_for(room):
            members = [
                s for sid, s in self._rooms.get(room, {}).items()
                if sid != exclude_id
            ]
        if not members:
            return 0

        results = await asyncio.gather(
            *[self._safe_deliver(session, room, event) for session in members]
        )

        failed = [s for s, ok in zip(members, results) if not ok]
        for session in failed:
            await self._evict(session)
        return sum(1 for ok in results if ok)

    async def _safe_deliver(self, session: ConnectionSession, room: str, event: dict) -> bool:
        try:
            await asyncio.wait_for(session.deliver(event), timeout=self.delivery_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning("[Registry] %s", DeliveryTimeout(session.id, room))
            return False
        except Exception as e:
            logger.debug("[Registry] Failed to deliver to session %s: %s", session.id, e)
            return False

    async def _evict(self, session: ConnectionSession) -> None:
        """Drop a faulted session everywhere and close its transport in the background."""
        await self.drop_session(session)
        if session.is_open:
            task = asyncio.create_task(self._close_quietly(session))
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)

    async def _close_quietly(self, session: ConnectionSession) -> None:
        try:
            await asyncio.wait_for(session.close(code=1011, reason="delivery failed"), self.delivery_timeout)
        except Exception as e:
            logger.debug("[Registry] Closing faulted session %s failed: %s", session.id, e)

    # =========================================================================
    # Queries
    # =========================================================================

    def members(self, room: str) -> List[ConnectionSession]:
        return list(self._rooms.get(room, {}).values())

    def room_size(self, room: str) -> int:
        return len(self._rooms.get(room, {}))

    def rooms_for(self, session: ConnectionSession) -> List[str]:
        return sorted(session.rooms)

    def is_subscribed(self, room: str, user_id: str) -> bool:
        """True if any live session of ``user_id`` is subscribed to ``room``."""
        return any(s.user_id == user_id for s in self._rooms.get(room, {}).values())

    def sessions_for_user(self, user_id: str) -> List[ConnectionSession]:
        return [s for s in self._sessions.values() if s.user_id == user_id]

    def all_sessions(self) -> List[ConnectionSession]:
        return list(self._sessions.values())

    def stats(self) -> dict:
        return {
            "rooms": len(self._rooms),
            "sessions": len(self._sessions),
            "memberships": sum(len(m) for m in self._rooms.values()),
        }
