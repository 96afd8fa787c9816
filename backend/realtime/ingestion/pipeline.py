"""Message ingestion: validate, persist, then fan out.

Every chat write, whether it arrives as a socket intent or through the HTTP
fallback, goes through ``IngestionPipeline``. Per thread the order is always:

    1. validate (participant, payload, thread status)
    2. persist, updating the thread preview in the same transaction
    3. increment unread counters for the other participants
    4. broadcast ``message-created`` to the thread room
    5. broadcast ``thread-updated`` to each participant's chat-list room
    6. raise ``new-message`` notifications for participants who are not
       watching the thread

Steps 2 and 3 run under the thread's lock so concurrent writes to one
thread are serialized; writes to different threads run in parallel.
Persistence errors propagate to the caller and nothing is broadcast. Fan-out
failures are per recipient and never roll anything back.
"""
import asyncio
import logging
import time
import weakref
from typing import Optional, Sequence

from ..errors import InvalidPayload, MessageNotFound, NotAuthorized, NotParticipant, ThreadClosed
from ..ledger.service import NEW_MESSAGE_NOTIFICATION, UnreadLedger
from ..models import EventType, Identity, Message, MessageKind, Thread, ThreadStatus, ThreadType, event
from ..rooms.registry import RoomRegistry, thread_room, user_chats_room
from ..sessions.session import ConnectionSession
from ..store.base import MessageStore

logger = logging.getLogger(__name__)

# Longest accepted message body
MAX_BODY_LENGTH = 10_000


class IngestionPipeline:
    """Single entry point for chat writes.

    Args:
        store: Durable message store.
        registry: Room registry used for fan-out.
        ledger: Unread counters and notifications.
    """

    def __init__(self, store: MessageStore, registry: RoomRegistry, ledger: UnreadLedger) -> None:
        self.store = store
        self.registry = registry
        self.ledger = ledger
        # Entries disappear once no task holds or waits on the lock
        self._thread_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, thread_id: str) -> asyncio.Lock:
        lock = self._thread_locks.get(thread_id)
        if lock is None:
            lock = self._thread_locks[thread_id] = asyncio.Lock()
        return lock

    def _participant_thread(self, thread_id: str, user_id: str) -> Thread:
        thread = self.store.get_thread(thread_id)
        if not thread.is_participant(user_id):
            raise NotParticipant(thread_id, user_id)
        return thread

    def ensure_agent(self, thread_id: str, identity: Identity) -> Thread:
        """Let an administrator take part in a support thread.

        An admin writing to a support thread they are not yet part of is
        added as a participant (agent rotation). Anyone else is returned the
        thread unchanged and is checked by the write itself.
        """
        thread = self.store.get_thread(thread_id)
        if (
            identity.is_admin
            and thread.type == ThreadType.SUPPORT
            and not thread.is_participant(identity.userId)
        ):
            logger.info("[Ingest] Agent %s joined support thread %s", identity.userId, thread_id)
            thread = self.store.add_participant(thread_id, identity.userId)
        return thread

    # =========================================================================
    # Submit
    # =========================================================================

    async def submit(
        self,
        thread_id: str,
        sender_id: str,
        body: str,
        attachments: Sequence[str] = (),
        client_nonce: Optional[str] = None,
        kind: MessageKind = MessageKind.TEXT,
    ) -> Message:
        """Persist a new message and fan it out.

        A resubmission carrying a ``client_nonce`` the sender already used
        in this thread returns the stored message without writing or
        broadcasting again.

        Raises:
            ThreadNotFound: Unknown thread.
            NotParticipant: Sender is not in the thread.
            ThreadClosed: Thread status is ``closed``.
            InvalidPayload: Empty body with no attachments, or body too long.
        """
        body = (body or "").strip()
        attachments = [a for a in attachments if a]
        if not body and not attachments:
            raise InvalidPayload("Message must have a body or at least one attachment")
        if len(body) > MAX_BODY_LENGTH:
            raise InvalidPayload(f"Message body exceeds {MAX_BODY_LENGTH} characters")

        async with self._lock_for(thread_id):
            thread = self._participant_thread(thread_id, sender_id)
            if thread.status == ThreadStatus.CLOSED:
                raise ThreadClosed(thread_id)

            if client_nonce:
                existing = self.store.find_by_nonce(thread_id, sender_id, client_nonce)
                if existing is not None:
                    logger.info(
                        "[Ingest] Duplicate nonce %s in %s, returning message %s",
                        client_nonce, thread_id, existing.id,
                    )
                    return existing

            if kind == MessageKind.TEXT and attachments and not body:
                kind = MessageKind.ATTACHMENT
            message, thread = self.store.append_message(
                thread_id, sender_id, body, attachments, kind=kind, client_nonce=client_nonce
            )
            recipients = [p for p in thread.participants if p != sender_id]
            counts = await self.ledger.mark_delivered(thread_id, recipients)
            thread.unreadCount.update(counts)

        logger.info("[Ingest] Message %s stored in %s by %s", message.id, thread_id, sender_id)
        await self._fan_out_created(thread, message, recipients)
        return message

    async def _fan_out_created(self, thread: Thread, message: Message, recipients: Sequence[str]) -> None:
        room = thread_room(thread.id)
        await self.registry.broadcast(
            room, event(EventType.MESSAGE_CREATED, message=message.model_dump(mode="json"))
        )
        await self._broadcast_thread_updated(thread)

        for user_id in recipients:
            if self.registry.is_subscribed(room, user_id):
                continue
            await self.ledger.raise_notification(
                user_id,
                NEW_MESSAGE_NOTIFICATION,
                {
                    "threadId": thread.id,
                    "messageId": message.id,
                    "senderId": message.senderId,
                    "preview": message.preview(),
                },
            )

    async def _broadcast_thread_updated(self, thread: Thread) -> None:
        """Send each participant the chat-list preview with their own badge."""
        preview = thread.model_dump(mode="json", exclude={"unreadCount"})
        await asyncio.gather(*[
            self.registry.broadcast(
                user_chats_room(user_id),
                event(
                    EventType.THREAD_UPDATED,
                    thread=preview,
                    unreadCount=thread.unreadCount.get(user_id, 0),
                ),
            )
            for user_id in thread.participants
        ])

    # =========================================================================
    # Edit / delete
    # =========================================================================

    def _authorize_change(self, message_id: str, actor: Identity) -> Message:
        message = self.store.get_message(message_id)
        if message.is_deleted:
            raise MessageNotFound(message_id)
        if message.senderId != actor.userId and not actor.is_admin:
            raise NotAuthorized()
        return message

    async def edit(self, message_id: str, actor: Identity, new_body: str) -> Message:
        """Replace a message body. Only the sender or an administrator may edit.

        Raises:
            MessageNotFound: Unknown or deleted message.
            NotAuthorized: Actor is neither the sender nor an admin.
            InvalidPayload: Empty or oversized body.
        """
        new_body = (new_body or "").strip()
        if not new_body:
            raise InvalidPayload("Edited message body cannot be empty")
        if len(new_body) > MAX_BODY_LENGTH:
            raise InvalidPayload(f"Message body exceeds {MAX_BODY_LENGTH} characters")

        original = self._authorize_change(message_id, actor)
        async with self._lock_for(original.threadId):
            message = self.store.update_message_body(message_id, new_body, time.time())
            thread = self._refresh_preview_if_last(message)

        logger.info("[Ingest] Message %s edited by %s", message_id, actor.userId)
        await self.registry.broadcast(
            thread_room(message.threadId),
            event(EventType.MESSAGE_UPDATED, message=message.model_dump(mode="json")),
        )
        if thread is not None:
            await self._broadcast_thread_updated(thread)
        return message

    async def delete(self, message_id: str, actor: Identity) -> Message:
        """Tombstone a message: the row stays, body and attachments are cleared."""
        original = self._authorize_change(message_id, actor)
        async with self._lock_for(original.threadId):
            message = self.store.tombstone_message(message_id, time.time())
            thread = self._refresh_preview_if_last(message)

        logger.info("[Ingest] Message %s deleted by %s", message_id, actor.userId)
        await self.registry.broadcast(
            thread_room(message.threadId),
            event(EventType.MESSAGE_DELETED, message=message.model_dump(mode="json")),
        )
        if thread is not None:
            await self._broadcast_thread_updated(thread)
        return message

    def _refresh_preview_if_last(self, message: Message) -> Optional[Thread]:
        thread = self.store.get_thread(message.threadId)
        if thread.lastMessageAt != message.createdAt:
            return None
        return self.store.refresh_thread_preview(message.threadId)

    async def set_status(self, thread_id: str, actor: Identity, status: ThreadStatus) -> Thread:
        """Open, resolve or close a thread and push the new preview.

        Participants may change the status of their own threads; admins may
        change any support thread.
        """
        thread = self.store.get_thread(thread_id)
        monitoring = actor.is_admin and thread.type == ThreadType.SUPPORT
        if not thread.is_participant(actor.userId) and not monitoring:
            raise NotParticipant(thread_id, actor.userId)
        if thread.status == status:
            return thread
        async with self._lock_for(thread_id):
            thread = self.store.set_thread_status(thread_id, status)
        logger.info("[Ingest] Thread %s is now %s (by %s)", thread_id, status.value, actor.userId)
        await self._broadcast_thread_updated(thread)
        return thread

    # =========================================================================
    # Seen / typing
    # =========================================================================

    async def mark_seen(self, thread_id: str, message_id: str, user_id: str) -> Message:
        """Record that a user saw one message and tell the thread room."""
        self._participant_thread(thread_id, user_id)
        message = self.store.get_message(message_id)
        if message.threadId != thread_id:
            raise MessageNotFound(message_id)
        message = self.store.mark_message_seen(message_id, user_id)
        await self.registry.broadcast(
            thread_room(thread_id),
            event(
                EventType.MESSAGE_SEEN,
                threadId=thread_id,
                messageId=message_id,
                userId=user_id,
                seenBy=message.seenBy,
            ),
        )
        return message

    async def typing(self, thread_id: str, session: ConnectionSession, is_typing: bool) -> int:
        """Relay a typing indicator to everyone in the thread except the typist."""
        self._participant_thread(thread_id, session.user_id)
        return await self.registry.broadcast(
            thread_room(thread_id),
            event(EventType.TYPING, threadId=thread_id, userId=session.user_id, isTyping=bool(is_typing)),
            exclude_session=session,
        )
