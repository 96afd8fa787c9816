"""DuckDB-backed message store.

Persists threads, participants (with their unread counters), messages,
per-message seen markers and notifications in a single embedded DuckDB
database. Pass ``":memory:"`` for an in-process store (tests, local dev).

Database Schema:
    threads:              id, type, status, subject, listing_id,
                          last_message, last_message_at, created_at
    thread_participants:  thread_id, user_id, position, unread_count
    messages:             id, thread_id, sender_id, body, attachments (JSON),
                          kind, created_at, edited_at, deleted_at, client_nonce
    message_seen:         message_id, thread_id, user_id
    notifications:        id, recipient_id, kind, payload (JSON), is_read,
                          created_at, read_at

Thread Safety:
    A DuckDB connection must not be used from several threads at once, so
    every public method holds ``self._lock`` for its whole duration. Calls are
    short and the lock is never held across an ``await``.
"""
import json
import logging
import threading
import time
import uuid
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import duckdb

from ..errors import MessageNotFound, NotificationNotFound, ThreadNotFound
from ..models import (
    Message,
    MessageKind,
    Notification,
    Thread,
    ThreadStatus,
    ThreadType,
)
from .base import MessageStore

logger = logging.getLogger(__name__)

# Smallest step between two createdAt values in the same thread
CREATED_AT_EPSILON = 1e-6

_MESSAGE_COLUMNS = """
    m.id, m.thread_id, m.sender_id, m.body, m.attachments, m.kind,
    m.created_at, m.edited_at, m.deleted_at, m.client_nonce,
    (SELECT list(s.user_id ORDER BY s.user_id)
       FROM message_seen s WHERE s.message_id = m.id) AS seen_by
"""

_NOTIFICATION_COLUMNS = "id, recipient_id, kind, payload, is_read, created_at, read_at"


class DuckDBMessageStore(MessageStore):
    """MessageStore implementation on top of DuckDB.

    Attributes:
        _db_path: Path to the DuckDB database file (or ``:memory:``).
    """

    _db_path: str = "realtime.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Open the database and create the schema if needed.

        Args:
            db_path: Path to DuckDB file. Defaults to "realtime.duckdb".
        """
        if db_path:
            self._db_path = db_path
        self._lock = threading.RLock()
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create tables if they don't exist. Safe to call repeatedly."""
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS threads (
                id VARCHAR PRIMARY KEY,
                type VARCHAR NOT NULL,
                status VARCHAR NOT NULL,
                subject VARCHAR NOT NULL,
                listing_id VARCHAR,
                last_message VARCHAR NOT NULL,
                last_message_at DOUBLE,
                created_at DOUBLE NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS thread_participants (
                thread_id VARCHAR NOT NULL,
                user_id VARCHAR NOT NULL,
                position INTEGER NOT NULL,
                unread_count INTEGER NOT NULL DEFAULT 0
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id VARCHAR PRIMARY KEY,
                thread_id VARCHAR NOT NULL,
                sender_id VARCHAR NOT NULL,
                body VARCHAR NOT NULL,
                attachments VARCHAR NOT NULL,
                kind VARCHAR NOT NULL,
                created_at DOUBLE NOT NULL,
                edited_at DOUBLE,
                deleted_at DOUBLE,
                client_nonce VARCHAR
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS message_seen (
                message_id VARCHAR NOT NULL,
                thread_id VARCHAR NOT NULL,
                user_id VARCHAR NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS notifications (
                id VARCHAR PRIMARY KEY,
                recipient_id VARCHAR NOT NULL,
                kind VARCHAR NOT NULL,
                payload VARCHAR NOT NULL,
                is_read BOOLEAN NOT NULL,
                created_at DOUBLE NOT NULL,
                read_at DOUBLE
            )
        """)

    # =========================================================================
    # Row mapping
    # =========================================================================

    def _load_thread(self, conn, thread_id: str) -> Thread:
        row = conn.execute(
            """
            SELECT id, type, status, subject, listing_id, last_message,
                   last_message_at, created_at
            FROM threads WHERE id = ?
            """,
            [thread_id],
        ).fetchone()
        if row is None:
            raise ThreadNotFound(thread_id)
        members = conn.execute(
            """
            SELECT user_id, unread_count FROM thread_participants
            WHERE thread_id = ? ORDER BY position
            """,
            [thread_id],
        ).fetchall()
        return Thread(
            id=row[0],
            type=ThreadType(row[1]),
            status=ThreadStatus(row[2]),
            subject=row[3],
            listingId=row[4],
            lastMessage=row[5],
            lastMessageAt=row[6],
            createdAt=row[7],
            participants=[m[0] for m in members],
            unreadCount={m[0]: m[1] for m in members},
        )

    @staticmethod
    def _row_to_message(row) -> Message:
        return Message(
            id=row[0],
            threadId=row[1],
            senderId=row[2],
            body=row[3],
            attachments=json.loads(row[4]),
            kind=MessageKind(row[5]),
            createdAt=row[6],
            editedAt=row[7],
            deletedAt=row[8],
            clientNonce=row[9],
            seenBy=list(row[10] or []),
        )

    @staticmethod
    def _row_to_notification(row) -> Notification:
        return Notification(
            id=row[0],
            recipientId=row[1],
            kind=row[2],
            payload=json.loads(row[3]),
            isRead=bool(row[4]),
            createdAt=row[5],
            readAt=row[6],
        )

    def _load_message(self, conn, message_id: str) -> Message:
        row = conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages m WHERE m.id = ?",
            [message_id],
        ).fetchone()
        if row is None:
            raise MessageNotFound(message_id)
        return self._row_to_message(row)

    def _transaction(self, conn, work):
        conn.begin()
        try:
            result = work()
        except Exception:
            conn.rollback()
            raise
        conn.commit()
        return result

    # =========================================================================
    # Threads
    # =========================================================================

    def create_thread(self, thread: Thread) -> Thread:
        with self._lock:
            conn = self._get_connection()

            def work():
                conn.execute(
                    """
                    INSERT INTO threads (id, type, status, subject, listing_id,
                                         last_message, last_message_at, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        thread.id,
                        thread.type.value,
                        thread.status.value,
                        thread.subject,
                        thread.listingId,
                        thread.lastMessage,
                        thread.lastMessageAt,
                        thread.createdAt,
                    ],
                )
                for position, user_id in enumerate(thread.participants):
                    conn.execute(
                        """
                        INSERT INTO thread_participants (thread_id, user_id, position, unread_count)
                        VALUES (?, ?, ?, 0)
                        """,
                        [thread.id, user_id, position],
                    )

            self._transaction(conn, work)
            logger.info(
                "[Store] Created %s thread %s with %d participants",
                thread.type.value, thread.id, len(thread.participants),
            )
            return self._load_thread(conn, thread.id)

    def get_thread(self, thread_id: str) -> Thread:
        with self._lock:
            return self._load_thread(self._get_connection(), thread_id)

    def find_peer_thread(
        self, listing_id: Optional[str], participants: Sequence[str]
    ) -> Optional[Thread]:
        wanted = sorted(set(participants))
        with self._lock:
            conn = self._get_connection()
            rows = conn.execute(
                """
                SELECT t.id FROM threads t
                WHERE t.type = 'peer' AND t.listing_id IS NOT DISTINCT FROM ?
                """,
                [listing_id],
            ).fetchall()
            for (thread_id,) in rows:
                thread = self._load_thread(conn, thread_id)
                if sorted(thread.participants) == wanted:
                    return thread
            return None

    def list_threads_for_user(self, user_id: str, limit: int = 50) -> List[Thread]:
        with self._lock:
            conn = self._get_connection()
            rows = conn.execute(
                """
                SELECT t.id FROM threads t
                JOIN thread_participants p ON p.thread_id = t.id
                WHERE p.user_id = ?
                ORDER BY coalesce(t.last_message_at, t.created_at) DESC, t.id DESC
                LIMIT ?
                """,
                [user_id, limit],
            ).fetchall()
            return [self._load_thread(conn, row[0]) for row in rows]

    def set_thread_status(self, thread_id: str, status: ThreadStatus) -> Thread:
        with self._lock:
            conn = self._get_connection()
            self._load_thread(conn, thread_id)
            conn.execute(
                "UPDATE threads SET status = ? WHERE id = ?",
                [status.value, thread_id],
            )
            return self._load_thread(conn, thread_id)

    def add_participant(self, thread_id: str, user_id: str) -> Thread:
        """Append a participant (support agent rotation). No-op if present."""
        with self._lock:
            conn = self._get_connection()
            thread = self._load_thread(conn, thread_id)
            if thread.is_participant(user_id):
                return thread
            conn.execute(
                """
                INSERT INTO thread_participants (thread_id, user_id, position, unread_count)
                VALUES (?, ?, ?, 0)
                """,
                [thread_id, user_id, len(thread.participants)],
            )
            return self._load_thread(conn, thread_id)

    def refresh_thread_preview(self, thread_id: str) -> Thread:
        with self._lock:
            conn = self._get_connection()
            row = conn.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM messages m
                WHERE m.thread_id = ?
                ORDER BY m.created_at DESC, m.id DESC
                LIMIT 1
                """,
                [thread_id],
            ).fetchone()
            if row is not None:
                newest = self._row_to_message(row)
                conn.execute(
                    "UPDATE threads SET last_message = ?, last_message_at = ? WHERE id = ?",
                    [newest.preview(), newest.createdAt, thread_id],
                )
            return self._load_thread(conn, thread_id)

    # =========================================================================
    # Messages
    # =========================================================================

    def append_message(
        self,
        thread_id: str,
        sender_id: str,
        body: str,
        attachments: Sequence[str] = (),
        kind: MessageKind = MessageKind.TEXT,
        client_nonce: Optional[str] = None,
    ) -> Tuple[Message, Thread]:
        with self._lock:
            conn = self._get_connection()

            def work():
                row = conn.execute(
                    "SELECT last_message_at FROM threads WHERE id = ?",
                    [thread_id],
                ).fetchone()
                if row is None:
                    raise ThreadNotFound(thread_id)
                last_at = row[0]
                created_at = time.time()
                if last_at is not None and created_at <= last_at:
                    created_at = last_at + CREATED_AT_EPSILON

                message = Message(
                    id=uuid.uuid4().hex,
                    threadId=thread_id,
                    senderId=sender_id,
                    body=body,
                    attachments=list(attachments),
                    kind=kind,
                    createdAt=created_at,
                    clientNonce=client_nonce,
                )
                conn.execute(
                    """
                    INSERT INTO messages (id, thread_id, sender_id, body, attachments,
                                          kind, created_at, client_nonce)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        message.id,
                        thread_id,
                        sender_id,
                        body,
                        json.dumps(message.attachments),
                        kind.value,
                        created_at,
                        client_nonce,
                    ],
                )
                conn.execute(
                    "UPDATE threads SET last_message = ?, last_message_at = ? WHERE id = ?",
                    [message.preview(), created_at, thread_id],
                )
                return message

            message = self._transaction(conn, work)
            return message, self._load_thread(conn, thread_id)

    def find_by_nonce(
        self, thread_id: str, sender_id: str, client_nonce: str
    ) -> Optional[Message]:
        with self._lock:
            row = self._get_connection().execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM messages m
                WHERE m.thread_id = ? AND m.sender_id = ? AND m.client_nonce = ?
                """,
                [thread_id, sender_id, client_nonce],
            ).fetchone()
            return self._row_to_message(row) if row is not None else None

    def get_message(self, message_id: str) -> Message:
        with self._lock:
            return self._load_message(self._get_connection(), message_id)

    def update_message_body(self, message_id: str, body: str, edited_at: float) -> Message:
        with self._lock:
            conn = self._get_connection()
            self._load_message(conn, message_id)
            conn.execute(
                "UPDATE messages SET body = ?, edited_at = ? WHERE id = ?",
                [body, edited_at, message_id],
            )
            return self._load_message(conn, message_id)

    def tombstone_message(self, message_id: str, deleted_at: float) -> Message:
        with self._lock:
            conn = self._get_connection()
            self._load_message(conn, message_id)
            conn.execute(
                "UPDATE messages SET body = '', attachments = '[]', deleted_at = ? WHERE id = ?",
                [deleted_at, message_id],
            )
            return self._load_message(conn, message_id)

    def list_messages(
        self, thread_id: str, page: int = 1, limit: int = 50
    ) -> Tuple[List[Message], bool]:
        page = max(page, 1)
        with self._lock:
            conn = self._get_connection()
            self._load_thread(conn, thread_id)
            rows = conn.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM messages m
                WHERE m.thread_id = ?
                ORDER BY m.created_at DESC, m.id DESC
                LIMIT ? OFFSET ?
                """,
                [thread_id, limit + 1, (page - 1) * limit],
            ).fetchall()
        has_more = len(rows) > limit
        messages = [self._row_to_message(row) for row in rows[:limit]]
        messages.reverse()
        return messages, has_more

    def mark_message_seen(self, message_id: str, user_id: str) -> Message:
        with self._lock:
            conn = self._get_connection()
            message = self._load_message(conn, message_id)
            if user_id not in message.seenBy:
                conn.execute(
                    "INSERT INTO message_seen (message_id, thread_id, user_id) VALUES (?, ?, ?)",
                    [message_id, message.threadId, user_id],
                )
            return self._load_message(conn, message_id)

    def mark_thread_seen(self, thread_id: str, user_id: str) -> int:
        with self._lock:
            result = self._get_connection().execute(
                """
                INSERT INTO message_seen (message_id, thread_id, user_id)
                SELECT m.id, m.thread_id, ?
                FROM messages m
                WHERE m.thread_id = ? AND m.sender_id <> ?
                  AND NOT EXISTS (
                      SELECT 1 FROM message_seen s
                      WHERE s.message_id = m.id AND s.user_id = ?
                  )
                """,
                [user_id, thread_id, user_id, user_id],
            ).fetchone()
            return int(result[0]) if result else 0

    # =========================================================================
    # Unread counters
    # =========================================================================

    def increment_unread(self, thread_id: str, user_ids: Iterable[str]) -> Dict[str, int]:
        user_ids = list(user_ids)
        if not user_ids:
            return {}
        with self._lock:
            conn = self._get_connection()
            counts: Dict[str, int] = {}
            for user_id in user_ids:
                conn.execute(
                    """
                    UPDATE thread_participants SET unread_count = unread_count + 1
                    WHERE thread_id = ? AND user_id = ?
                    """,
                    [thread_id, user_id],
                )
                row = conn.execute(
                    """
                    SELECT unread_count FROM thread_participants
                    WHERE thread_id = ? AND user_id = ?
                    """,
                    [thread_id, user_id],
                ).fetchone()
                if row is not None:
                    counts[user_id] = row[0]
            return counts

    def reset_unread(self, thread_id: str, user_id: str) -> int:
        with self._lock:
            conn = self._get_connection()
            row = conn.execute(
                """
                SELECT unread_count FROM thread_participants
                WHERE thread_id = ? AND user_id = ?
                """,
                [thread_id, user_id],
            ).fetchone()
            if row is None:
                return 0
            conn.execute(
                """
                UPDATE thread_participants SET unread_count = 0
                WHERE thread_id = ? AND user_id = ?
                """,
                [thread_id, user_id],
            )
            return row[0]

    def unread_counts_for_user(self, user_id: str) -> Dict[str, int]:
        with self._lock:
            rows = self._get_connection().execute(
                "SELECT thread_id, unread_count FROM thread_participants WHERE user_id = ?",
                [user_id],
            ).fetchall()
            return {row[0]: row[1] for row in rows}

    # =========================================================================
    # Notifications
    # =========================================================================

    def insert_notification(self, notification: Notification) -> Notification:
        with self._lock:
            self._get_connection().execute(
                f"""
                INSERT INTO notifications ({_NOTIFICATION_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    notification.id,
                    notification.recipientId,
                    notification.kind,
                    json.dumps(notification.payload),
                    notification.isRead,
                    notification.createdAt,
                    notification.readAt,
                ],
            )
            return notification

    def list_notifications(
        self, user_id: str, unread_only: bool = False, limit: int = 50
    ) -> List[Notification]:
        query = f"SELECT {_NOTIFICATION_COLUMNS} FROM notifications WHERE recipient_id = ?"
        if unread_only:
            query += " AND NOT is_read"
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        with self._lock:
            rows = self._get_connection().execute(query, [user_id, limit]).fetchall()
        return [self._row_to_notification(row) for row in rows]

    def mark_notification_read(
        self, notification_id: str, user_id: str, read_at: float
    ) -> Notification:
        with self._lock:
            conn = self._get_connection()
            row = conn.execute(
                f"SELECT {_NOTIFICATION_COLUMNS} FROM notifications WHERE id = ? AND recipient_id = ?",
                [notification_id, user_id],
            ).fetchone()
            if row is None:
                raise NotificationNotFound(notification_id)
            notification = self._row_to_notification(row)
            if notification.isRead:
                return notification
            conn.execute(
                "UPDATE notifications SET is_read = TRUE, read_at = ? WHERE id = ?",
                [read_at, notification_id],
            )
            return notification.model_copy(update={"isRead": True, "readAt": read_at})

    def mark_all_notifications_read(self, user_id: str, read_at: float) -> int:
        with self._lock:
            result = self._get_connection().execute(
                """
                UPDATE notifications SET is_read = TRUE, read_at = ?
                WHERE recipient_id = ? AND NOT is_read
                """,
                [read_at, user_id],
            ).fetchone()
            return int(result[0]) if result else 0

    def count_unread_notifications(self, user_id: str) -> int:
        with self._lock:
            row = self._get_connection().execute(
                "SELECT count(*) FROM notifications WHERE recipient_id = ? AND NOT is_read",
                [user_id],
            ).fetchone()
            return int(row[0])

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
