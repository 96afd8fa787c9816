"""Client transports: the live WebSocket connection and the REST fallback.

Both translate failures into the shared error taxonomy so the supervisor
and the reconciliation store only deal with ``RealtimeError`` subclasses:

    - network trouble, closed sockets, 5xx        -> TransientTransportError
    - rejected credentials (handshake-error, 401) -> AuthFailure
    - other 4xx with a machine code               -> the matching domain error
"""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence, Tuple, Type

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..errors import (
    AuthFailure,
    InvalidPayload,
    MessageNotFound,
    NotAuthorized,
    NotificationNotFound,
    NotParticipant,
    RealtimeError,
    ThreadClosed,
    ThreadNotFound,
    TransientTransportError,
)
from ..models import EventType, Message, MessageKind, Notification, event

logger = logging.getLogger(__name__)

DEFAULT_OPEN_TIMEOUT = 10.0
DEFAULT_HTTP_TIMEOUT = 10.0


def _decode(raw) -> dict:
    """Parse a server frame; anything but a JSON object is a broken connection."""
    try:
        frame = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise TransientTransportError(f"Malformed frame from server: {e}") from e
    if not isinstance(frame, dict):
        raise TransientTransportError("Malformed frame from server: not an object")
    return frame


class Transport(ABC):
    """Interface the SessionSupervisor drives.

    ``connect`` performs the whole handshake and returns the ``connected``
    frame. ``recv`` raises TransientTransportError once the connection is
    gone.
    """

    @abstractmethod
    async def connect(self, token: str) -> dict:
        """Open the connection, authenticate and return the ``connected`` frame."""

    @abstractmethod
    async def send(self, frame: dict) -> None:
        """Send one intent frame."""

    @abstractmethod
    async def recv(self) -> dict:
        """Wait for the next pushed frame."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection; safe to call when already closed."""


class WebSocketTransport(Transport):
    """Transport over the ``websockets`` client.

    The token travels in an ``authenticate`` first frame, not in a header.
    """

    def __init__(self, url: str, open_timeout: float = DEFAULT_OPEN_TIMEOUT) -> None:
        self.url = url
        self.open_timeout = open_timeout
        self._ws = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None

    async def connect(self, token: str) -> dict:
        try:
            self._ws = await websockets.connect(self.url, open_timeout=self.open_timeout)
            await self._ws.send(json.dumps(event(EventType.AUTHENTICATE, token=token)))
            raw = await asyncio.wait_for(self._ws.recv(), timeout=self.open_timeout)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            await self.close()
            raise TransientTransportError(f"Could not connect to {self.url}: {e}") from e

        try:
            frame = _decode(raw)
        except TransientTransportError:
            await self.close()
            raise
        if frame.get("type") == EventType.HANDSHAKE_ERROR.value:
            await self.close()
            raise AuthFailure(frame.get("error", "Authentication failed"))
        if frame.get("type") != EventType.CONNECTED.value:
            await self.close()
            raise TransientTransportError(f"Unexpected handshake reply: {frame.get('type')}")
        logger.info("[Transport] Connected to %s as %s", self.url, frame.get("userId"))
        return frame

    async def send(self, frame: dict) -> None:
        if self._ws is None:
            raise TransientTransportError("Not connected")
        try:
            await self._ws.send(json.dumps(frame))
        except ConnectionClosed as e:
            raise TransientTransportError(f"Connection closed: {e}") from e

    async def recv(self) -> dict:
        if self._ws is None:
            raise TransientTransportError("Not connected")
        try:
            raw = await self._ws.recv()
        except ConnectionClosed as e:
            raise TransientTransportError(f"Connection closed: {e}") from e
        return _decode(raw)

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except (OSError, WebSocketException) as e:
                logger.debug("[Transport] Close failed: %s", e)


# =============================================================================
# REST fallback
# =============================================================================

_ERRORS_BY_CODE: Dict[str, Type[RealtimeError]] = {
    NotParticipant.code: NotParticipant,
    NotAuthorized.code: NotAuthorized,
    ThreadNotFound.code: ThreadNotFound,
    MessageNotFound.code: MessageNotFound,
    NotificationNotFound.code: NotificationNotFound,
    ThreadClosed.code: ThreadClosed,
    InvalidPayload.code: InvalidPayload,
}


def _error_from_response(response: httpx.Response) -> RealtimeError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    message = body.get("error") or body.get("detail") or response.text or response.reason_phrase
    if not isinstance(message, str):
        message = json.dumps(message)

    if response.status_code == 401:
        return AuthFailure(message)
    if response.status_code >= 500:
        return TransientTransportError(f"Server error {response.status_code}: {message}")

    error_class = _ERRORS_BY_CODE.get(body.get("code"), RealtimeError)
    return error_class.from_wire(message, response.status_code)


class RestClient:
    """Async client for the HTTP fallback endpoints.

    Args:
        base_url: Service root, e.g. ``https://chat.example.com``.
        token: Bearer token.
        client: Optional pre-built ``httpx.AsyncClient`` (tests pass one
            bound to the ASGI app).
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ) -> None:
        self.token = token
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    def update_token(self, token: str) -> None:
        self.token = token

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.token}"}
        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.TransportError as e:
            raise TransientTransportError(f"{method} {path} failed: {e}") from e
        if response.is_error:
            raise _error_from_response(response)
        return response

    async def fetch_page(
        self, thread_id: str, page: int = 1, limit: int = 50
    ) -> Tuple[List[Message], bool]:
        """One page of history (page 1 = newest), ascending order."""
        response = await self._request(
            "GET", f"/threads/{thread_id}/messages", params={"page": page, "limit": limit}
        )
        data = response.json()
        return [Message(**m) for m in data["messages"]], bool(data["hasMore"])

    async def fetch_message(self, thread_id: str, message_id: str) -> Optional[Message]:
        """Targeted re-fetch; None if the message does not exist."""
        try:
            response = await self._request("GET", f"/threads/{thread_id}/messages/{message_id}")
        except MessageNotFound:
            return None
        return Message(**response.json())

    async def send_message(
        self,
        thread_id: str,
        body: str,
        attachments: Sequence[str] = (),
        client_nonce: Optional[str] = None,
        kind: MessageKind = MessageKind.TEXT,
    ) -> Message:
        response = await self._request(
            "POST",
            f"/threads/{thread_id}/messages",
            json={
                "body": body,
                "attachments": list(attachments),
                "kind": kind.value,
                "clientNonce": client_nonce,
            },
        )
        return Message(**response.json())

    async def mark_read(self, thread_id: str) -> dict:
        response = await self._request("POST", f"/threads/{thread_id}/read")
        return response.json()

    async def list_notifications(self, unread_only: bool = False, limit: int = 50) -> List[Notification]:
        response = await self._request(
            "GET", "/notifications", params={"unreadOnly": unread_only, "limit": limit}
        )
        return [Notification(**n) for n in response.json()["notifications"]]

    async def aclose(self) -> None:
        await self._client.aclose()
