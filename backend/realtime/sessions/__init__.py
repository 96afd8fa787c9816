"""Server-side connection sessions and the WebSocket endpoint."""

from .session import ConnectionSession, SessionState, SessionStateError

__all__ = [
    "ConnectionSession",
    "SessionState",
    "SessionStateError",
]
