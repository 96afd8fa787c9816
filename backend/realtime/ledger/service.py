"""Unread counters, read receipts and notifications.

The ledger is the only writer of per-participant unread counts and of
notification rows. Counts are server-authoritative: clients never compute
them, they only display what ``thread-updated`` and ``read-receipt`` say.

Reads are idempotent resets (``unreadCount[user] = 0``), never decrements,
so two devices reading the same thread concurrently converge on zero.
"""
import logging
import time
from typing import Dict, Iterable, List

from ..errors import NotParticipant
from ..models import EventType, Notification, event
from ..rooms.registry import RoomRegistry, thread_room, user_chats_room, user_notify_room
from ..store.base import MessageStore

logger = logging.getLogger(__name__)

NEW_MESSAGE_NOTIFICATION = "new-message"


class UnreadLedger:
    """Per-user badge state and notification delivery.

    Args:
        store: Durable store holding counters and notification rows.
        registry: Room registry used to push receipts and notifications.
    """

    def __init__(self, store: MessageStore, registry: RoomRegistry) -> None:
        self.store = store
        self.registry = registry

    # =========================================================================
    # Unread counters
    # =========================================================================

    async def mark_delivered(self, thread_id: str, recipients: Iterable[str]) -> Dict[str, int]:
        """Increment unread counters for every recipient; returns new values."""
        counts = self.store.increment_unread(thread_id, recipients)
        logger.debug("[Ledger] Delivered in %s: %s", thread_id, counts)
        return counts

    async def mark_read(self, thread_id: str, user_id: str) -> dict:
        """Reset a user's unread count for a thread and emit a read receipt.

        Also marks every message the user did not send as seen by them.
        The receipt goes to the thread room (sender seen-state) and to the
        reader's own chat-list room so their other devices clear the badge.

        Returns:
            The read-receipt frame that was broadcast.

        Raises:
            ThreadNotFound: Unknown thread.
            NotParticipant: The user is not in the thread.
        """
        thread = self.store.get_thread(thread_id)
        if not thread.is_participant(user_id):
            raise NotParticipant(thread_id, user_id)

        previous = self.store.reset_unread(thread_id, user_id)
        seen = self.store.mark_thread_seen(thread_id, user_id)
        read_at = time.time()

        receipt = event(
            EventType.READ_RECEIPT,
            threadId=thread_id,
            userId=user_id,
            readAt=read_at,
            unreadCount=0,
        )
        await self.registry.broadcast(thread_room(thread_id), receipt)
        await self.registry.broadcast(user_chats_room(user_id), receipt)

        logger.info(
            "[Ledger] %s read thread %s (was %d unread, %d messages seen)",
            user_id, thread_id, previous, seen,
        )
        return receipt

    def unread_summary(self, user_id: str) -> dict:
        """Badge data for one user: per-thread counts and unread notifications."""
        threads = self.store.unread_counts_for_user(user_id)
        return {
            "threads": threads,
            "totalUnread": sum(threads.values()),
            "unreadNotifications": self.store.count_unread_notifications(user_id),
        }

    # =========================================================================
    # Notifications
    # =========================================================================

    async def raise_notification(self, user_id: str, kind: str, payload: dict) -> Notification:
        """Persist a notification and push it to the user's notify room."""
        notification = self.store.insert_notification(
            Notification(recipientId=user_id, kind=kind, payload=payload)
        )
        await self.registry.broadcast(
            user_notify_room(user_id),
            event(EventType.NOTIFICATION_CREATED, notification=notification.model_dump(mode="json")),
        )
        logger.debug("[Ledger] Notification %s (%s) for %s", notification.id, kind, user_id)
        return notification

    def list_notifications(
        self, user_id: str, unread_only: bool = False, limit: int = 50
    ) -> List[Notification]:
        return self.store.list_notifications(user_id, unread_only=unread_only, limit=limit)

    def mark_notification_read(self, notification_id: str, user_id: str) -> Notification:
        return self.store.mark_notification_read(notification_id, user_id, time.time())

    def mark_all_notifications_read(self, user_id: str) -> int:
        changed = self.store.mark_all_notifications_read(user_id, time.time())
        logger.info("[Ledger] Marked %d notifications read for %s", changed, user_id)
        return changed
