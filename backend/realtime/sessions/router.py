"""WebSocket endpoint for the real-time core.

Protocol Flow:
    1. Client connects to ``/ws`` and presents a bearer token, either as an
       ``Authorization: Bearer`` header, a ``token`` query parameter, or a
       first frame ``{"type": "authenticate", "token": "..."}``.
       → bad / missing token: ``{type: "handshake-error"}`` then close 4401
       → ok: ``{type: "connected", sessionId, userId}``
    2. Client sends ``subscribe-aggregate`` and ``subscribe-thread`` intents.
    3. Server pushes events for every room the session belongs to, and
       answers each intent with ``ack`` or ``error``.
    4. On disconnect the session is dropped from every room.

Any inbound frame refreshes the session's heartbeat. The heartbeat sweeper
started by the application closes sessions that stay silent longer than
``heartbeat_timeout_seconds``.
"""
import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from ..auth import TokenVerifier, extract_bearer
from ..errors import AuthFailure, InvalidPayload
from ..models import EventType, Identity, event
from ..rooms.registry import RoomRegistry
from .intents import IntentHandler
from .session import ConnectionSession

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

# Close codes
CLOSE_AUTH_FAILED = 4401
CLOSE_HEARTBEAT_TIMEOUT = 4408


async def _handshake(
    websocket: WebSocket,
    verifier: TokenVerifier,
    token: Optional[str],
    timeout: float,
) -> Identity:
    """Verify the client's credential.

    A token supplied with the upgrade request is checked immediately;
    otherwise the first frame must be an ``authenticate`` frame and must
    arrive within ``timeout`` seconds.

    Raises:
        AuthFailure: On a bad token, a wrong first frame or a timeout.
    """
    token = extract_bearer(websocket.headers.get("authorization")) or token
    if token:
        return verifier.verify(token)

    try:
        raw = await asyncio.wait_for(websocket.receive_text(), timeout=timeout)
    except asyncio.TimeoutError:
        raise AuthFailure(f"No credentials within {timeout}s")

    try:
        frame = json.loads(raw)
    except json.JSONDecodeError:
        raise AuthFailure("Expected an authenticate frame")
    if not isinstance(frame, dict) or frame.get("type") != EventType.AUTHENTICATE.value:
        raise AuthFailure("Expected an authenticate frame")
    return verifier.verify(frame.get("token"))


@router.websocket("/ws")
async def realtime_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Bearer token (when headers cannot be set)"),
) -> None:
    """Persistent connection carrying chat, receipts and notifications."""
    state = websocket.app.state
    registry: RoomRegistry = state.registry
    settings = state.settings.realtime

    await websocket.accept()
    session = ConnectionSession(websocket)

    try:
        identity = await _handshake(
            websocket, state.verifier, token, settings.handshake_timeout_seconds
        )
    except AuthFailure as e:
        logger.info("[WS] Handshake failed for session %s: %s", session.id, e.message)
        try:
            await websocket.send_json(event(EventType.HANDSHAKE_ERROR, **e.to_dict()))
        except Exception as send_error:
            logger.debug("[WS] Could not send handshake-error: %s", send_error)
        await session.close(code=CLOSE_AUTH_FAILED, reason="authentication failed")
        return
    except WebSocketDisconnect:
        session.mark_closed()
        return

    session.authenticate(identity)
    session.activate()
    registry.attach(session)
    logger.info("[WS] Session %s active for user %s (%s)", session.id, identity.userId, identity.role.value)

    handler = IntentHandler(
        session,
        registry,
        state.store,
        state.pipeline,
        state.ledger,
        max_rooms=settings.max_rooms_per_session,
    )

    try:
        await session.deliver(event(EventType.CONNECTED, sessionId=session.id, userId=identity.userId))

        while True:
            raw = await websocket.receive_text()
            session.touch()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await handler.reply_error(None, None, InvalidPayload("Frame is not valid JSON"))
                continue
            logger.debug("[WS] Session %s received: type=%s", session.id, data.get("type", "?") if isinstance(data, dict) else "?")
            await handler.handle(data)

    except WebSocketDisconnect as e:
        logger.info("[WS] Session %s disconnected (code=%s)", session.id, e.code)
    except ConnectionError as e:
        # Session was closed under us (heartbeat sweep or eviction)
        logger.info("[WS] Session %s closed: %s", session.id, e)
    finally:
        await registry.drop_session(session)
        session.mark_closed()
        logger.info("[WS] Session %s closed. Registry: %s", session.id, registry.stats())


# =============================================================================
# Heartbeat sweeper
# =============================================================================


async def sweep_stale_sessions(registry: RoomRegistry, timeout_seconds: float) -> int:
    """Close every session whose last inbound frame is older than the timeout.

    Returns:
        Number of sessions closed.
    """
    stale = [s for s in registry.all_sessions() if s.is_open and s.is_stale(timeout_seconds)]
    for session in stale:
        logger.info("[WS] Session %s missed heartbeats, closing", session.id)
        await registry.drop_session(session)
        await session.close(code=CLOSE_HEARTBEAT_TIMEOUT, reason="heartbeat timeout")
    return len(stale)


async def heartbeat_loop(registry: RoomRegistry, timeout_seconds: float, interval_seconds: float) -> None:
    """Run the sweeper forever; cancelled on application shutdown."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await sweep_stale_sessions(registry, timeout_seconds)
        except Exception:
            logger.exception("[WS] Heartbeat sweep failed")
