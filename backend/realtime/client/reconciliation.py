"""Client reconciliation store.

The single authoritative client-side view of every open conversation. It
merges two sources that arrive in any order:

    - snapshot pages fetched over HTTP (``apply_snapshot``)
    - live events pushed over the socket (``apply_live``)

and guarantees, whatever the interleaving:

    - one entry per message id (deduplicated)
    - entries ordered by (createdAt, id); unconfirmed local sends last
    - an entry is never regressed to an older state: tombstones are final,
      otherwise the later edit wins
    - an optimistic send is confirmed exactly once, by nonce, whether the
      confirmation comes from the live echo, the ack, the REST response or
      a later snapshot

Unread counts are never computed here. ``thread-updated`` and
``read-receipt`` carry the server's numbers and the store only displays
them.
"""
import asyncio
import itertools
import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple, Union

from ..config import ClientSettings
from ..errors import OrphanEventTimeout, RealtimeError, TransientTransportError
from ..models import EventType, Message, event

logger = logging.getLogger(__name__)

LOCAL_ID_PREFIX = "local:"

# Newest notifications kept in memory; older ones stay available over REST
MAX_NOTIFICATIONS = 100


# =============================================================================
# Delivery state
# =============================================================================


@dataclass(frozen=True)
class Confirmed:
    """Persisted by the server; the entry carries the real id."""


@dataclass(frozen=True)
class Pending:
    """Shown locally, waiting for the server to confirm the nonce."""
    nonce: str


@dataclass(frozen=True)
class Failed:
    """Not confirmed; stays visible until retried."""
    nonce: str
    reason: str


DeliveryState = Union[Confirmed, Pending, Failed]

CONFIRMED = Confirmed()


@dataclass
class Entry:
    """One message as the UI sees it."""
    message: Message
    state: DeliveryState = CONFIRMED
    local_seq: int = 0

    @property
    def id(self) -> str:
        return self.message.id

    @property
    def deleted(self) -> bool:
        return self.message.is_deleted

    @property
    def is_confirmed(self) -> bool:
        return isinstance(self.state, Confirmed)

    def sort_key(self):
        if self.is_confirmed:
            return (0, self.message.createdAt, self.message.id)
        return (1, self.local_seq, self.message.id)


def merge_message(current: Message, incoming: Message) -> Message:
    """Combine two versions of one message without going backwards.

    A tombstone always wins over a live version; between two versions of
    the same kind the later ``editedAt`` wins. ``seenBy`` is the union.
    """
    if current.is_deleted != incoming.is_deleted:
        newer, older = (current, incoming) if current.is_deleted else (incoming, current)
    elif (incoming.editedAt or 0) >= (current.editedAt or 0):
        newer, older = incoming, current
    else:
        newer, older = current, incoming
    return newer.model_copy(update={
        "seenBy": sorted(set(current.seenBy) | set(incoming.seenBy)),
        "clientNonce": newer.clientNonce or older.clientNonce,
    })


def _mark_synced(view: "ThreadView", messages: Sequence[Message]) -> None:
    if messages:
        view.synced_through = max(view.synced_through, max(m.createdAt for m in messages))


# =============================================================================
# Per-thread view
# =============================================================================


class ThreadView:
    """State of one open thread."""

    def __init__(self, thread_id: str) -> None:
        self.thread_id = thread_id
        self.entries: Dict[str, Entry] = {}
        # nonce -> id of the entry holding it (local id until confirmed)
        self.nonces: Dict[str, str] = {}
        # message id -> newest buffered update for a message not seen yet
        self.orphans: "OrderedDict[str, Message]" = OrderedDict()
        self.orphan_timers: Dict[str, asyncio.Task] = {}
        self.pending_timers: Dict[str, asyncio.Task] = {}
        # Immediate re-fetches for orphans pushed out of a full buffer
        self.refetches: Set[asyncio.Task] = set()
        self.has_more = False
        self.pages_loaded = 0
        # createdAt up to which every message is known (snapshots and live stream)
        self.synced_through = 0.0
        self.typing: Set[str] = set()
        self.read_receipts: Dict[str, float] = {}

    def messages(self) -> List[Entry]:
        return sorted(self.entries.values(), key=Entry.sort_key)

    def get(self, message_id: str) -> Optional[Entry]:
        return self.entries.get(message_id)

    def entry_for_nonce(self, nonce: str) -> Optional[Entry]:
        entry_id = self.nonces.get(nonce)
        return self.entries.get(entry_id) if entry_id else None

    def cancel_timers(self) -> None:
        tasks = list(self.orphan_timers.values()) + list(self.pending_timers.values()) + list(self.refetches)
        for task in tasks:
            task.cancel()
        self.orphan_timers.clear()
        self.pending_timers.clear()
        self.refetches.clear()


Listener = Callable[[Optional[str]], None]


class ReconciliationStore:
    """Merges history pages and live events into one view per thread.

    Args:
        user_id: The signed-in user (author of local sends).
        rest: REST fallback client (``RestClient``) used for snapshots,
            targeted re-fetches and offline sends.
        settings: Client timeouts and buffer sizes.
    """

    def __init__(self, user_id: str, rest=None, settings: Optional[ClientSettings] = None) -> None:
        self.user_id = user_id
        self.rest = rest
        self.settings = settings or ClientSettings()
        # Set by SessionSupervisor.attach_store
        self.supervisor = None

        self._views: Dict[str, ThreadView] = {}
        self._listeners: List[Listener] = []
        self._seq = itertools.count(1)

        # thread id -> {"thread": preview, "unreadCount": n}, server-authoritative
        self.chat_list: Dict[str, dict] = {}
        self.notifications: List[dict] = []

    # =========================================================================
    # Listeners
    # =========================================================================

    def subscribe(self, callback: Listener) -> Callable[[], None]:
        """Register a UI callback, called with the changed thread id (or None).

        Returns:
            A function that removes the callback.
        """
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self, thread_id: Optional[str]) -> None:
        for callback in list(self._listeners):
            try:
                callback(thread_id)
            except Exception:
                logger.exception("[Reconcile] Listener failed")

    # =========================================================================
    # Open / close / resync
    # =========================================================================

    def open_thread_ids(self) -> List[str]:
        return list(self._views)

    def view(self, thread_id: str) -> Optional[ThreadView]:
        return self._views.get(thread_id)

    def messages(self, thread_id: str) -> List[Entry]:
        """Ordered, deduplicated entries; tombstones included (``deleted``)."""
        view = self._views.get(thread_id)
        return view.messages() if view else []

    def unread_count(self, thread_id: str) -> int:
        return self.chat_list.get(thread_id, {}).get("unreadCount", 0)

    async def open_thread(self, thread_id: str) -> ThreadView:
        """Subscribe to a thread and load its newest page, concurrently.

        Opening an already open thread returns the existing view.
        """
        view = self._views.get(thread_id)
        if view is not None:
            return view
        view = self._views[thread_id] = ThreadView(thread_id)

        subscribed, fetched = await asyncio.gather(
            self._send_if_connected(event(EventType.SUBSCRIBE_THREAD, threadId=thread_id)),
            self._fetch_page(view, 1, sync=True),
            return_exceptions=True,
        )
        if isinstance(subscribed, Exception):
            logger.warning("[Reconcile] Subscribe to %s failed: %s", thread_id, subscribed)
        if isinstance(fetched, TransientTransportError):
            # Picked up by resync after the next reconnect
            logger.warning("[Reconcile] Snapshot for %s unavailable: %s", thread_id, fetched)
        elif isinstance(fetched, Exception):
            await self.close_thread(thread_id)
            raise fetched
        return view

    async def close_thread(self, thread_id: str) -> None:
        view = self._views.pop(thread_id, None)
        if view is None:
            return
        view.cancel_timers()
        try:
            await self._send_if_connected(event(EventType.UNSUBSCRIBE_THREAD, threadId=thread_id))
        except TransientTransportError as e:
            logger.debug("[Reconcile] Unsubscribe from %s failed: %s", thread_id, e)
        self._notify(thread_id)

    async def resync(self, thread_id: str) -> None:
        """Catch up on everything created since the view was last in sync.

        Pages are fetched newest first until one reaches back to
        ``synced_through`` or the history runs out. Messages confirmed by a
        REST send while offline do not count as synced, so they never cut
        the catch-up short. A view that was never synced only reloads the
        pages it had loaded before.
        """
        view = self._views.get(thread_id)
        if view is None or self.rest is None:
            return
        pages_before = view.pages_loaded
        synced_through = view.synced_through
        newest: Sequence[Message] = ()
        page = 1
        while True:
            messages, has_more, _ = await self._load_page(view, page)
            if self._views.get(thread_id) is not view:
                return
            if page == 1:
                newest = messages
            if not has_more or not messages:
                break
            if synced_through and messages[0].createdAt <= synced_through:
                break
            if not synced_through and page >= max(1, pages_before):
                break
            page += 1
        _mark_synced(view, newest)
        if page > 1:
            logger.info("[Reconcile] Resync of %s needed %d pages", thread_id, page)

    async def resync_all(self) -> None:
        thread_ids = self.open_thread_ids()
        results = await asyncio.gather(
            *[self.resync(thread_id) for thread_id in thread_ids],
            return_exceptions=True,
        )
        for thread_id, result in zip(thread_ids, results):
            if isinstance(result, Exception):
                logger.warning("[Reconcile] Resync of %s failed: %s", thread_id, result)

    async def load_older(self, thread_id: str) -> int:
        """Fetch the next older page; returns the number of new entries."""
        view = self._views[thread_id]
        if not view.has_more:
            return 0
        return await self._fetch_page(view, view.pages_loaded + 1)

    async def _fetch_page(self, view: ThreadView, page: int, sync: bool = False) -> int:
        if self.rest is None:
            return 0
        messages, _, added = await self._load_page(view, page)
        if sync:
            _mark_synced(view, messages)
        return added

    async def _load_page(self, view: ThreadView, page: int) -> Tuple[Sequence[Message], bool, int]:
        """Fetch one history page and merge it into ``view`` if still open.

        Returns:
            The page, the server's has-more flag and the number of entries
            added or confirmed.
        """
        messages, has_more = await self.rest.fetch_page(
            view.thread_id, page=page, limit=self.settings.page_size
        )
        if self._views.get(view.thread_id) is not view:
            return messages, has_more, 0
        if page >= view.pages_loaded:
            view.has_more = has_more
            view.pages_loaded = page
        added = self.apply_snapshot(view.thread_id, messages)
        return messages, has_more, added

    def clear(self) -> None:
        """Drop every view and timer (logout)."""
        for view in self._views.values():
            view.cancel_timers()
        self._views.clear()
        self.chat_list.clear()
        self.notifications.clear()
        self._notify(None)

    async def _send_if_connected(self, frame: dict) -> None:
        supervisor = self.supervisor
        if supervisor is not None and supervisor.is_connected:
            await supervisor.send(frame)

    # =========================================================================
    # Merging
    # =========================================================================

    def apply_snapshot(self, thread_id: str, messages: Sequence[Message]) -> int:
        """Merge a page of history. Returns the number of entries added or confirmed."""
        view = self._views.get(thread_id)
        if view is None:
            return 0
        added = sum(1 for message in messages if self._merge_confirmed(view, message))
        self._notify(thread_id)
        return added

    def _merge_confirmed(self, view: ThreadView, message: Message) -> bool:
        """Merge a server-confirmed message. True if an entry was added or confirmed."""
        existing = view.entries.get(message.id)
        if existing is not None:
            existing.message = merge_message(existing.message, message)
            return False

        nonce = message.clientNonce
        own = nonce is not None and message.senderId == self.user_id
        if own and nonce in view.nonces:
            local_id = view.nonces[nonce]
            view.entries.pop(local_id, None)
            timer = view.pending_timers.pop(nonce, None)
            if timer is not None:
                timer.cancel()
            logger.debug("[Reconcile] Nonce %s confirmed as %s", nonce, message.id)

        entry = view.entries[message.id] = Entry(message, CONFIRMED)
        if own:
            view.nonces[nonce] = message.id

        orphan = view.orphans.pop(message.id, None)
        if orphan is not None:
            timer = view.orphan_timers.pop(message.id, None)
            if timer is not None:
                timer.cancel()
            entry.message = merge_message(entry.message, orphan)
            logger.debug("[Reconcile] Replayed buffered update for %s", message.id)
        return True

    def _buffer_orphan(self, view: ThreadView, message: Message) -> None:
        previous = view.orphans.pop(message.id, None)
        view.orphans[message.id] = merge_message(previous, message) if previous else message

        while len(view.orphans) > self.settings.orphan_buffer_size:
            evicted_id, _ = view.orphans.popitem(last=False)
            timer = view.orphan_timers.pop(evicted_id, None)
            if timer is not None:
                timer.cancel()
            logger.warning("[Reconcile] Orphan buffer full in %s, re-fetching %s", view.thread_id, evicted_id)
            task = asyncio.create_task(self._refetch_orphan(view, evicted_id))
            view.refetches.add(task)
            task.add_done_callback(view.refetches.discard)

        if message.id not in view.orphan_timers:
            view.orphan_timers[message.id] = asyncio.create_task(
                self._orphan_timeout(view, message.id)
            )

    async def _orphan_timeout(self, view: ThreadView, message_id: str) -> None:
        await asyncio.sleep(self.settings.orphan_timeout_seconds)
        view.orphan_timers.pop(message_id, None)
        if message_id not in view.orphans:
            return
        logger.warning("[Reconcile] %s", OrphanEventTimeout(view.thread_id, message_id))
        await self._refetch_orphan(view, message_id)

    async def _refetch_orphan(self, view: ThreadView, message_id: str) -> None:
        """Fetch the current server state of an orphaned message and merge it."""
        if self.rest is None:
            return
        try:
            fetched = await self.rest.fetch_message(view.thread_id, message_id)
        except RealtimeError as e:
            logger.warning("[Reconcile] Re-fetch of %s failed: %s", message_id, e)
            return
        if self._views.get(view.thread_id) is not view:
            return
        if fetched is None:
            view.orphans.pop(message_id, None)
            logger.info("[Reconcile] Dropped update for unknown message %s", message_id)
            return
        self._merge_confirmed(view, fetched)
        self._notify(view.thread_id)

    # =========================================================================
    # Live events
    # =========================================================================

    def apply_live(self, frame: dict) -> bool:
        """Merge one pushed frame. Returns True if any visible state changed."""
        kind = frame.get("type")

        if kind == EventType.MESSAGE_CREATED.value:
            return self._apply_message(frame["message"], created=True)
        if kind in (EventType.MESSAGE_UPDATED.value, EventType.MESSAGE_DELETED.value):
            return self._apply_message(frame["message"], created=False)
        if kind == EventType.ACK.value:
            return self._apply_ack(frame)
        if kind == EventType.ERROR.value:
            if frame.get("intent") == EventType.SEND_MESSAGE.value and frame.get("requestId"):
                return self._fail_nonce(frame["requestId"], frame.get("error", "Rejected"))
            return False
        if kind == EventType.MESSAGE_SEEN.value:
            return self._apply_seen(frame)
        if kind == EventType.READ_RECEIPT.value:
            return self._apply_read_receipt(frame)
        if kind == EventType.THREAD_UPDATED.value:
            thread = frame["thread"]
            self.chat_list[thread["id"]] = {"thread": thread, "unreadCount": frame.get("unreadCount", 0)}
            self._notify(thread["id"])
            return True
        if kind == EventType.NOTIFICATION_CREATED.value:
            self.notifications.insert(0, frame["notification"])
            del self.notifications[MAX_NOTIFICATIONS:]
            self._notify(None)
            return True
        if kind == EventType.TYPING.value:
            view = self._views.get(frame.get("threadId"))
            if view is None:
                return False
            if frame.get("isTyping"):
                view.typing.add(frame["userId"])
            else:
                view.typing.discard(frame["userId"])
            self._notify(view.thread_id)
            return True
        return False

    def _apply_message(self, data: dict, created: bool) -> bool:
        message = Message(**data)
        view = self._views.get(message.threadId)
        if view is None:
            return False
        if created:
            _mark_synced(view, [message])
        if created or message.id in view.entries:
            self._merge_confirmed(view, message)
        else:
            self._buffer_orphan(view, message)
        self._notify(view.thread_id)
        return True

    def _apply_ack(self, frame: dict) -> bool:
        intent = frame.get("intent")
        if intent == EventType.SEND_MESSAGE.value and frame.get("message"):
            return self._apply_message(frame["message"], created=True)
        if intent == EventType.SUBSCRIBE_AGGREGATE.value and frame.get("summary"):
            for thread_id, count in frame["summary"].get("threads", {}).items():
                self.chat_list.setdefault(thread_id, {})["unreadCount"] = count
            self._notify(None)
            return True
        return False

    def _apply_seen(self, frame: dict) -> bool:
        view = self._views.get(frame.get("threadId"))
        entry = view.get(frame.get("messageId")) if view else None
        if entry is None:
            return False
        seen = set(entry.message.seenBy) | set(frame.get("seenBy", [])) | {frame["userId"]}
        entry.message = entry.message.model_copy(update={"seenBy": sorted(seen)})
        self._notify(view.thread_id)
        return True

    def _apply_read_receipt(self, frame: dict) -> bool:
        thread_id = frame["threadId"]
        reader = frame["userId"]
        if reader == self.user_id:
            self.chat_list.setdefault(thread_id, {})["unreadCount"] = frame.get("unreadCount", 0)

        view = self._views.get(thread_id)
        if view is not None:
            view.read_receipts[reader] = frame.get("readAt", time.time())
            for entry in view.entries.values():
                message = entry.message
                if entry.is_confirmed and message.senderId != reader and reader not in message.seenBy:
                    entry.message = message.model_copy(update={"seenBy": sorted(message.seenBy + [reader])})
        self._notify(thread_id)
        return True

    # =========================================================================
    # Optimistic send
    # =========================================================================

    def _require_view(self, thread_id: str) -> ThreadView:
        view = self._views.get(thread_id)
        if view is None:
            raise ValueError(f"Thread {thread_id} is not open")
        return view

    async def send(self, thread_id: str, body: str, attachments: Sequence[str] = ()) -> Entry:
        """Show a message immediately, then deliver it.

        The entry starts as ``Pending`` with id ``local:{nonce}``. It goes
        over the socket when the supervisor is connected, otherwise through
        the REST fallback.
        """
        view = self._require_view(thread_id)
        nonce = uuid.uuid4().hex
        local = Message(
            id=f"{LOCAL_ID_PREFIX}{nonce}",
            threadId=thread_id,
            senderId=self.user_id,
            body=body,
            attachments=list(attachments),
            createdAt=time.time(),
            clientNonce=nonce,
        )
        view.entries[local.id] = Entry(local, Pending(nonce), local_seq=next(self._seq))
        view.nonces[nonce] = local.id
        self._notify(thread_id)

        await self._dispatch_send(view, nonce, body, list(attachments))
        return view.entry_for_nonce(nonce)

    async def retry(self, nonce: str) -> Entry:
        """Re-send a failed entry with its original nonce."""
        for view in self._views.values():
            entry = view.entry_for_nonce(nonce)
            if entry is not None:
                break
        else:
            raise KeyError(nonce)
        if not isinstance(entry.state, Failed):
            raise ValueError(f"Message {nonce} is not in a failed state")

        entry.state = Pending(nonce)
        self._notify(view.thread_id)
        await self._dispatch_send(view, nonce, entry.message.body, list(entry.message.attachments))
        return view.entry_for_nonce(nonce)

    async def _dispatch_send(self, view: ThreadView, nonce: str, body: str, attachments: List[str]) -> None:
        timer = view.pending_timers.pop(nonce, None)
        if timer is not None:
            timer.cancel()
        view.pending_timers[nonce] = asyncio.create_task(self._pending_timeout(view, nonce))

        supervisor = self.supervisor
        if supervisor is not None and supervisor.is_connected:
            try:
                await supervisor.send(event(
                    EventType.SEND_MESSAGE,
                    threadId=view.thread_id,
                    body=body,
                    attachments=attachments,
                    clientNonce=nonce,
                    requestId=nonce,
                ))
                return
            except TransientTransportError as e:
                logger.info("[Reconcile] Socket send failed (%s), using REST", e)

        if self.rest is None:
            self._fail_nonce(nonce, "Offline")
            return
        try:
            message = await self.rest.send_message(
                view.thread_id, body, attachments, client_nonce=nonce
            )
        except RealtimeError as e:
            self._fail_nonce(nonce, e.message)
            return
        if self._views.get(view.thread_id) is view:
            self._merge_confirmed(view, message)
            self._notify(view.thread_id)

    async def _pending_timeout(self, view: ThreadView, nonce: str) -> None:
        await asyncio.sleep(self.settings.optimistic_timeout_seconds)
        view.pending_timers.pop(nonce, None)
        entry = view.entry_for_nonce(nonce)
        if entry is not None and isinstance(entry.state, Pending):
            logger.warning("[Reconcile] Send %s not confirmed in time", nonce)
            entry.state = Failed(nonce, "Not confirmed in time")
            self._notify(view.thread_id)

    def _fail_nonce(self, nonce: str, reason: str) -> bool:
        for view in self._views.values():
            entry = view.entry_for_nonce(nonce)
            if entry is None or not isinstance(entry.state, Pending):
                continue
            timer = view.pending_timers.pop(nonce, None)
            if timer is not None:
                timer.cancel()
            entry.state = Failed(nonce, reason)
            logger.info("[Reconcile] Send %s failed: %s", nonce, reason)
            self._notify(view.thread_id)
            return True
        return False
