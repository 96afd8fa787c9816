"""MessageStore abstract interface.

The durable, append-only store that owns threads, messages, notifications
and per-participant unread counters. The real-time core only talks to this
interface; ``DuckDBMessageStore`` is the shipped implementation.

Guarantees every implementation must give:
    - message ids are globally unique and assigned at persistence time
    - ``createdAt`` is strictly increasing within a thread
    - appending a message updates the thread's lastMessage/lastMessageAt in
      the same transaction
    - unread counters never go below zero
"""
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..models import MessageKind, Message, Notification, Thread, ThreadStatus


class MessageStore(ABC):
    """Abstract base class for the persistence collaborator."""

    # ----------------------------------------------------------------- threads

    @abstractmethod
    def create_thread(self, thread: Thread) -> Thread:
        """Persist a new thread with zeroed unread counters."""

    @abstractmethod
    def get_thread(self, thread_id: str) -> Thread:
        """Return a thread or raise ThreadNotFound."""

    @abstractmethod
    def find_peer_thread(
        self, listing_id: Optional[str], participants: Sequence[str]
    ) -> Optional[Thread]:
        """Find the peer thread for a listing between the same two users."""

    @abstractmethod
    def list_threads_for_user(self, user_id: str, limit: int = 50) -> List[Thread]:
        """Threads the user participates in, newest activity first."""

    @abstractmethod
    def set_thread_status(self, thread_id: str, status: ThreadStatus) -> Thread:
        """Change a thread's status."""

    @abstractmethod
    def add_participant(self, thread_id: str, user_id: str) -> Thread:
        """Append a participant (support agent rotation). No-op if present."""

    @abstractmethod
    def refresh_thread_preview(self, thread_id: str) -> Thread:
        """Recompute lastMessage from the newest message (after edit/delete)."""

    # ---------------------------------------------------------------- messages

    @abstractmethod
    def append_message(
        self,
        thread_id: str,
        sender_id: str,
        body: str,
        attachments: Sequence[str] = (),
        kind: MessageKind = MessageKind.TEXT,
        client_nonce: Optional[str] = None,
    ) -> Tuple[Message, Thread]:
        """Persist a message and update the thread preview atomically."""

    @abstractmethod
    def find_by_nonce(
        self, thread_id: str, sender_id: str, client_nonce: str
    ) -> Optional[Message]:
        """Return the message a sender already stored under this nonce."""

    @abstractmethod
    def get_message(self, message_id: str) -> Message:
        """Return a message or raise MessageNotFound."""

    @abstractmethod
    def update_message_body(self, message_id: str, body: str, edited_at: float) -> Message:
        """Replace a message body and stamp editedAt."""

    @abstractmethod
    def tombstone_message(self, message_id: str, deleted_at: float) -> Message:
        """Mark a message deleted and clear its body and attachments."""

    @abstractmethod
    def list_messages(
        self, thread_id: str, page: int = 1, limit: int = 50
    ) -> Tuple[List[Message], bool]:
        """Return (messages, has_more). Page 1 is the newest page; each page
        is in ascending (createdAt, id) order."""

    @abstractmethod
    def mark_message_seen(self, message_id: str, user_id: str) -> Message:
        """Add a user to a single message's seenBy set."""

    @abstractmethod
    def mark_thread_seen(self, thread_id: str, user_id: str) -> int:
        """Add a user to seenBy of every message they did not send.

        Returns the number of messages changed.
        """

    # ------------------------------------------------------------------ unread

    @abstractmethod
    def increment_unread(self, thread_id: str, user_ids: Iterable[str]) -> Dict[str, int]:
        """Add one to each user's unread counter; returns the new values."""

    @abstractmethod
    def reset_unread(self, thread_id: str, user_id: str) -> int:
        """Set a user's unread counter to zero; returns the previous value."""

    @abstractmethod
    def unread_counts_for_user(self, user_id: str) -> Dict[str, int]:
        """thread id -> unread counter for every thread the user is in."""

    # ----------------------------------------------------------- notifications

    @abstractmethod
    def insert_notification(self, notification: Notification) -> Notification:
        """Persist a notification row."""

    @abstractmethod
    def list_notifications(
        self, user_id: str, unread_only: bool = False, limit: int = 50
    ) -> List[Notification]:
        """Newest first."""

    @abstractmethod
    def mark_notification_read(
        self, notification_id: str, user_id: str, read_at: float
    ) -> Notification:
        """Mark one of the user's notifications read (idempotent)."""

    @abstractmethod
    def mark_all_notifications_read(self, user_id: str, read_at: float) -> int:
        """Mark all of the user's notifications read; returns rows changed."""

    @abstractmethod
    def count_unread_notifications(self, user_id: str) -> int:
        """Number of unread notifications for a user."""

    def close(self) -> None:
        """Release resources held by the store."""
