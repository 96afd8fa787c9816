"""Thread and message HTTP endpoints.

The request/response fallback for clients without a live connection, and
the history source for the client reconciliation store.

Endpoints:
    GET    /threads                                 caller's threads, newest activity first
    POST   /threads                                 open a peer or support thread
    GET    /threads/{thread_id}                     one thread
    POST   /threads/{thread_id}/status              open / resolve / close
    GET    /threads/{thread_id}/messages            paginated history (page 1 = newest)
    POST   /threads/{thread_id}/messages            send a message
    GET    /threads/{thread_id}/messages/{id}       targeted re-fetch
    PATCH  /threads/{thread_id}/messages/{id}       edit
    DELETE /threads/{thread_id}/messages/{id}       delete (tombstone)
    POST   /threads/{thread_id}/read                mark the thread read

Every endpoint requires ``Authorization: Bearer <jwt>``. Writes go through
the same IngestionPipeline and UnreadLedger as socket intents, so live
sessions see REST writes exactly like socket writes.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from ..deps import current_identity, get_ledger, get_pipeline, get_store
from ..errors import InvalidPayload, MessageNotFound, NotParticipant
from ..ingestion.pipeline import IngestionPipeline
from ..ledger.service import UnreadLedger
from ..models import Identity, Message, MessageKind, Thread, ThreadStatus, ThreadType
from ..store.base import MessageStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/threads", tags=["threads"])

MAX_PAGE_LIMIT = 100


# =============================================================================
# Request/Response Models
# =============================================================================


class CreateThreadRequest(BaseModel):
    """Request body for opening a thread.

    Attributes:
        type: peer or support.
        participants: Other participants; the caller is always added.
        listingId: Listing a peer chat is about.
        subject: Support thread subject.
    """
    type: ThreadType = ThreadType.PEER
    participants: List[str] = Field(default_factory=list)
    listingId: Optional[str] = None
    subject: str = ""


class CreateThreadResponse(BaseModel):
    thread: Thread
    created: bool = Field(..., description="False when an existing peer thread was returned")


class ThreadListResponse(BaseModel):
    threads: List[Thread]
    count: int


class StatusRequest(BaseModel):
    status: ThreadStatus


class SendMessageRequest(BaseModel):
    body: str = ""
    attachments: List[str] = Field(default_factory=list)
    kind: MessageKind = MessageKind.TEXT
    clientNonce: Optional[str] = None


class EditMessageRequest(BaseModel):
    body: str = Field(..., min_length=1)


class MessagePage(BaseModel):
    """One page of history, ascending by (createdAt, id)."""
    messages: List[Message]
    page: int
    limit: int
    hasMore: bool


class ReadReceiptResponse(BaseModel):
    threadId: str
    userId: str
    readAt: float


# =============================================================================
# Helpers
# =============================================================================


def _readable_thread(store: MessageStore, thread_id: str, identity: Identity) -> Thread:
    """Participants may read a thread; admins may read any support thread."""
    thread = store.get_thread(thread_id)
    if thread.is_participant(identity.userId):
        return thread
    if identity.is_admin and thread.type == ThreadType.SUPPORT:
        return thread
    raise NotParticipant(thread_id, identity.userId)


def _message_in_thread(store: MessageStore, thread_id: str, message_id: str) -> Message:
    message = store.get_message(message_id)
    if message.threadId != thread_id:
        raise MessageNotFound(message_id)
    return message


# =============================================================================
# Threads
# =============================================================================


@router.get("", response_model=ThreadListResponse)
async def list_threads(
    limit: int = Query(50, ge=1, le=MAX_PAGE_LIMIT),
    identity: Identity = Depends(current_identity),
    store: MessageStore = Depends(get_store),
) -> ThreadListResponse:
    """List the caller's threads, newest activity first."""
    threads = store.list_threads_for_user(identity.userId, limit=limit)
    return ThreadListResponse(threads=threads, count=len(threads))


@router.post("", response_model=CreateThreadResponse, status_code=status.HTTP_201_CREATED)
async def create_thread(
    request: CreateThreadRequest,
    identity: Identity = Depends(current_identity),
    store: MessageStore = Depends(get_store),
) -> CreateThreadResponse:
    """Open a thread.

    Peer threads are unique per (listingId, participants): asking again
    returns the existing thread with ``created=False``.
    """
    participants = [identity.userId]
    for user_id in request.participants:
        if user_id and user_id not in participants:
            participants.append(user_id)

    if request.type == ThreadType.PEER:
        if len(participants) != 2:
            raise InvalidPayload("A peer thread needs exactly one other participant")
        existing = store.find_peer_thread(request.listingId, participants)
        if existing is not None:
            return CreateThreadResponse(thread=existing, created=False)

    thread = store.create_thread(
        Thread(
            type=request.type,
            participants=participants,
            listingId=request.listingId,
            subject=request.subject,
        )
    )
    logger.info("[Threads] %s opened %s thread %s", identity.userId, thread.type.value, thread.id)
    return CreateThreadResponse(thread=thread, created=True)


@router.get("/{thread_id}", response_model=Thread)
async def get_thread(
    thread_id: str,
    identity: Identity = Depends(current_identity),
    store: MessageStore = Depends(get_store),
) -> Thread:
    return _readable_thread(store, thread_id, identity)


@router.post("/{thread_id}/status", response_model=Thread)
async def set_thread_status(
    thread_id: str,
    request: StatusRequest,
    identity: Identity = Depends(current_identity),
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> Thread:
    return await pipeline.set_status(thread_id, identity, request.status)


# =============================================================================
# Messages
# =============================================================================


@router.get("/{thread_id}/messages", response_model=MessagePage)
async def list_messages(
    thread_id: str,
    page: int = Query(1, ge=1, description="1 is the newest page"),
    limit: int = Query(50, ge=1, le=MAX_PAGE_LIMIT),
    identity: Identity = Depends(current_identity),
    store: MessageStore = Depends(get_store),
) -> MessagePage:
    """Paginated history. Each page is in ascending (createdAt, id) order."""
    _readable_thread(store, thread_id, identity)
    messages, has_more = store.list_messages(thread_id, page=page, limit=limit)
    return MessagePage(messages=messages, page=page, limit=limit, hasMore=has_more)


@router.get("/{thread_id}/messages/{message_id}", response_model=Message)
async def get_message(
    thread_id: str,
    message_id: str,
    identity: Identity = Depends(current_identity),
    store: MessageStore = Depends(get_store),
) -> Message:
    """Fetch one message, used to resolve live events that arrived early."""
    _readable_thread(store, thread_id, identity)
    return _message_in_thread(store, thread_id, message_id)


@router.post("/{thread_id}/messages", response_model=Message, status_code=status.HTTP_201_CREATED)
async def send_message(
    thread_id: str,
    request: SendMessageRequest,
    identity: Identity = Depends(current_identity),
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> Message:
    pipeline.ensure_agent(thread_id, identity)
    return await pipeline.submit(
        thread_id,
        identity.userId,
        request.body,
        attachments=request.attachments,
        client_nonce=request.clientNonce,
        kind=request.kind,
    )


@router.patch("/{thread_id}/messages/{message_id}", response_model=Message)
async def edit_message(
    thread_id: str,
    message_id: str,
    request: EditMessageRequest,
    identity: Identity = Depends(current_identity),
    store: MessageStore = Depends(get_store),
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> Message:
    _message_in_thread(store, thread_id, message_id)
    return await pipeline.edit(message_id, identity, request.body)


@router.delete("/{thread_id}/messages/{message_id}", response_model=Message)
async def delete_message(
    thread_id: str,
    message_id: str,
    identity: Identity = Depends(current_identity),
    store: MessageStore = Depends(get_store),
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> Message:
    _message_in_thread(store, thread_id, message_id)
    return await pipeline.delete(message_id, identity)


@router.post("/{thread_id}/read", response_model=ReadReceiptResponse)
async def mark_read(
    thread_id: str,
    identity: Identity = Depends(current_identity),
    ledger: UnreadLedger = Depends(get_ledger),
) -> ReadReceiptResponse:
    receipt = await ledger.mark_read(thread_id, identity.userId)
    return ReadReceiptResponse(threadId=thread_id, userId=identity.userId, readAt=receipt["readAt"])
