"""Handling of inbound intents on an active session.

Each intent frame is ``{"type": <intent>, "requestId": <optional>, ...}``.
Handlers return a dict that is merged into the ``ack`` reply. A
``RealtimeError`` becomes an ``error`` frame with its machine ``code``; the
session stays open either way.

Intents:
    subscribe-aggregate   join the caller's user-chats and user-notify rooms
    subscribe-thread      join thread:{threadId} (participants, or admins on
                          support threads)
    unsubscribe-thread    leave thread:{threadId}
    send-message          IngestionPipeline.submit
    edit-message          IngestionPipeline.edit
    delete-message        IngestionPipeline.delete
    mark-read             UnreadLedger.mark_read
    message-seen          IngestionPipeline.mark_seen
    typing                relay to the thread room (no ack)
    ping                  answered with pong
"""
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from ..errors import InvalidPayload, NotParticipant, RealtimeError
from ..ingestion.pipeline import IngestionPipeline
from ..ledger.service import UnreadLedger
from ..models import EventType, MessageKind, ThreadType, event
from ..rooms.registry import RoomRegistry, thread_room, user_chats_room, user_notify_room
from ..store.base import MessageStore
from .session import ConnectionSession

logger = logging.getLogger(__name__)

Handler = Callable[[dict], Awaitable[Optional[Dict[str, Any]]]]

# Intents that never get an ack
_SILENT_INTENTS = {EventType.TYPING.value, EventType.PING.value}


def _require_str(data: dict, field: str) -> str:
    value = data.get(field)
    if not isinstance(value, str) or not value:
        raise InvalidPayload(f"'{field}' is required")
    return value


class IntentHandler:
    """Dispatches intents from one session to the core services."""

    def __init__(
        self,
        session: ConnectionSession,
        registry: RoomRegistry,
        store: MessageStore,
        pipeline: IngestionPipeline,
        ledger: UnreadLedger,
        max_rooms: int = 500,
    ) -> None:
        self.session = session
        self.registry = registry
        self.store = store
        self.pipeline = pipeline
        self.ledger = ledger
        self.max_rooms = max_rooms
        self._handlers: Dict[str, Handler] = {
            EventType.SUBSCRIBE_AGGREGATE.value: self.subscribe_aggregate,
            EventType.SUBSCRIBE_THREAD.value: self.subscribe_thread,
            EventType.UNSUBSCRIBE_THREAD.value: self.unsubscribe_thread,
            EventType.SEND_MESSAGE.value: self.send_message,
            EventType.EDIT_MESSAGE.value: self.edit_message,
            EventType.DELETE_MESSAGE.value: self.delete_message,
            EventType.MARK_READ.value: self.mark_read,
            EventType.MESSAGE_SEEN.value: self.message_seen,
            EventType.TYPING.value: self.typing,
        }

    @property
    def identity(self):
        return self.session.identity

    async def handle(self, data: Any) -> None:
        """Process one inbound frame and reply on the session."""
        if not isinstance(data, dict):
            await self.reply_error(None, None, InvalidPayload("Frame must be a JSON object"))
            return

        intent = data.get("type")
        request_id = data.get("requestId")

        if intent == EventType.PING.value:
            await self.session.deliver(event(EventType.PONG, requestId=request_id))
            return

        handler = self._handlers.get(intent)
        if handler is None:
            await self.reply_error(intent, request_id, InvalidPayload(f"Unknown intent: {intent}"))
            return

        try:
            result = await handler(data)
        except RealtimeError as e:
            logger.info("[WS] %s from %s rejected: %s", intent, self.session.user_id, e.message)
            await self.reply_error(intent, request_id, e)
            return
        except Exception as e:
            logger.exception("[WS] %s from %s failed", intent, self.session.user_id)
            await self.reply_error(intent, request_id, RealtimeError(f"Internal error: {e}"))
            return

        if intent not in _SILENT_INTENTS:
            await self.session.deliver(
                event(EventType.ACK, intent=intent, requestId=request_id, **(result or {}))
            )

    async def reply_error(self, intent: Optional[str], request_id: Any, error: RealtimeError) -> None:
        await self.session.deliver(
            event(EventType.ERROR, intent=intent, requestId=request_id, **error.to_dict())
        )

    async def _join(self, room: str) -> None:
        if room not in self.session.rooms and len(self.session.rooms) >= self.max_rooms:
            raise InvalidPayload(f"Subscription limit of {self.max_rooms} rooms reached")
        await self.registry.join(room, self.session)

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def subscribe_aggregate(self, data: dict) -> dict:
        user_id = self.identity.userId
        await self._join(user_chats_room(user_id))
        await self._join(user_notify_room(user_id))
        return {"summary": self.ledger.unread_summary(user_id)}

    async def subscribe_thread(self, data: dict) -> dict:
        thread_id = _require_str(data, "threadId")
        thread = self.store.get_thread(thread_id)
        monitoring = self.identity.is_admin and thread.type == ThreadType.SUPPORT
        if not thread.is_participant(self.identity.userId) and not monitoring:
            raise NotParticipant(thread_id, self.identity.userId)
        await self._join(thread_room(thread_id))
        return {"threadId": thread_id}

    async def unsubscribe_thread(self, data: dict) -> dict:
        thread_id = _require_str(data, "threadId")
        await self.registry.leave(thread_room(thread_id), self.session)
        return {"threadId": thread_id}

    # =========================================================================
    # Writes
    # =========================================================================

    async def send_message(self, data: dict) -> dict:
        thread_id = _require_str(data, "threadId")
        attachments = data.get("attachments") or []
        if not isinstance(attachments, list) or not all(isinstance(a, str) for a in attachments):
            raise InvalidPayload("'attachments' must be a list of strings")
        try:
            kind = MessageKind(data.get("kind") or MessageKind.TEXT.value)
        except ValueError:
            raise InvalidPayload(f"Unknown message kind: {data.get('kind')}") from None
        body = data.get("body") or ""
        if not isinstance(body, str):
            raise InvalidPayload("'body' must be a string")

        self.pipeline.ensure_agent(thread_id, self.identity)
        message = await self.pipeline.submit(
            thread_id,
            self.identity.userId,
            body,
            attachments=attachments,
            client_nonce=data.get("clientNonce"),
            kind=kind,
        )
        return {"message": message.model_dump(mode="json")}

    async def edit_message(self, data: dict) -> dict:
        message = await self.pipeline.edit(
            _require_str(data, "messageId"), self.identity, _require_str(data, "body")
        )
        return {"message": message.model_dump(mode="json")}

    async def delete_message(self, data: dict) -> dict:
        message = await self.pipeline.delete(_require_str(data, "messageId"), self.identity)
        return {"message": message.model_dump(mode="json")}

    async def mark_read(self, data: dict) -> dict:
        receipt = await self.ledger.mark_read(_require_str(data, "threadId"), self.identity.userId)
        return {"threadId": receipt["threadId"], "readAt": receipt["readAt"]}

    async def message_seen(self, data: dict) -> dict:
        message = await self.pipeline.mark_seen(
            _require_str(data, "threadId"), _require_str(data, "messageId"), self.identity.userId
        )
        return {"messageId": message.id, "seenBy": message.seenBy}

    async def typing(self, data: dict) -> None:
        await self.pipeline.typing(
            _require_str(data, "threadId"), self.session, bool(data.get("isTyping", True))
        )
