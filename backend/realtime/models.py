"""Pydantic models shared by the server and the client library.

These are the durable records (threads, messages, notifications), the
verified identity attached to a connection, and the event envelope pushed
over the wire.

Field names are camelCase because the models are serialized as-is to web
and mobile clients.
"""
import time
import uuid
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

# Longest body kept in a thread's lastMessage preview
PREVIEW_LENGTH = 200


class ThreadType(str, Enum):
    """Kind of conversation.

    Attributes:
        PEER: Buyer/seller chat about a listing (exactly two participants).
        SUPPORT: Support chat; N participants with agent rotation.
    """
    PEER = "peer"
    SUPPORT = "support"


class ThreadStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"
    CLOSED = "closed"


class MessageKind(str, Enum):
    TEXT = "text"
    SYSTEM = "system"
    ATTACHMENT = "attachment"


class Role(str, Enum):
    """Role carried in the verified identity.

    Attributes:
        USER: Buyer, seller or dealer.
        ADMIN: Administrator / support agent. May edit or delete any
            message and monitor any support thread.
    """
    USER = "user"
    ADMIN = "admin"


class Identity(BaseModel):
    """Verified identity attached to a connection or request."""
    userId: str = Field(..., min_length=1)
    role: Role = Role.USER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


class Thread(BaseModel):
    """A conversation with its denormalized chat-list preview.

    Attributes:
        id: Opaque thread identifier.
        type: peer or support.
        participants: Ordered participant ids.
        status: open, resolved or closed.
        subject: Free-text subject (support threads).
        listingId: Listing the peer chat is about.
        lastMessage: Preview of the newest visible message.
        lastMessageAt: createdAt of the newest message.
        unreadCount: participant id -> unread messages.
        createdAt: When the thread was opened.
    """
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: ThreadType = ThreadType.PEER
    participants: List[str] = Field(default_factory=list)
    status: ThreadStatus = ThreadStatus.OPEN
    subject: str = ""
    listingId: Optional[str] = None
    lastMessage: str = ""
    lastMessageAt: Optional[float] = None
    unreadCount: Dict[str, int] = Field(default_factory=dict)
    createdAt: float = Field(default_factory=time.time)

    def is_participant(self, user_id: str) -> bool:
        return user_id in self.participants


class Message(BaseModel):
    """A single persisted chat message.

    ``id`` and ``createdAt`` are assigned by the store; ``deletedAt`` marks
    a tombstone (the row is kept, the body is cleared).
    """
    id: str
    threadId: str
    senderId: str
    body: str = ""
    attachments: List[str] = Field(default_factory=list)
    kind: MessageKind = MessageKind.TEXT
    createdAt: float
    editedAt: Optional[float] = None
    deletedAt: Optional[float] = None
    seenBy: List[str] = Field(default_factory=list)
    clientNonce: Optional[str] = None

    @property
    def is_deleted(self) -> bool:
        return self.deletedAt is not None

    def sort_key(self):
        return (self.createdAt, self.id)

    def preview(self) -> str:
        if self.is_deleted:
            return "Message deleted"
        if self.body:
            return self.body[:PREVIEW_LENGTH]
        if self.attachments:
            return "Attachment"
        return ""


class Notification(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    recipientId: str
    kind: str
    payload: dict = Field(default_factory=dict)
    isRead: bool = False
    createdAt: float = Field(default_factory=time.time)
    readAt: Optional[float] = None


class EventType(str, Enum):
    """Names of frames exchanged over the persistent connection."""
    # server -> client
    CONNECTED = "connected"
    HANDSHAKE_ERROR = "handshake-error"
    MESSAGE_CREATED = "message-created"
    MESSAGE_UPDATED = "message-updated"
    MESSAGE_DELETED = "message-deleted"
    MESSAGE_SEEN = "message-seen"  # both directions
    THREAD_UPDATED = "thread-updated"
    READ_RECEIPT = "read-receipt"
    NOTIFICATION_CREATED = "notification-created"
    TYPING = "typing"  # both directions
    ACK = "ack"
    ERROR = "error"
    PONG = "pong"
    # client-side only
    DISCONNECTED = "disconnected"
    # client -> server
    AUTHENTICATE = "authenticate"
    SUBSCRIBE_AGGREGATE = "subscribe-aggregate"
    SUBSCRIBE_THREAD = "subscribe-thread"
    UNSUBSCRIBE_THREAD = "unsubscribe-thread"
    SEND_MESSAGE = "send-message"
    EDIT_MESSAGE = "edit-message"
    DELETE_MESSAGE = "delete-message"
    MARK_READ = "mark-read"
    PING = "ping"


def event(event_type: EventType, **payload) -> dict:
    """Build a wire frame: ``{"type": <name>, **payload}``."""
    return {"type": event_type.value, **payload}
