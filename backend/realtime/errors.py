"""Error taxonomy for the real-time core.

Every domain failure is a ``RealtimeError`` carrying a machine-readable
``code`` (sent to WebSocket clients in ``error`` frames) and an HTTP
``status_code`` (used by the REST fallback's exception handler).
"""
from typing import Optional


class RealtimeError(Exception):
    """Base exception for real-time core errors."""
    code = "internal_error"

    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code, "error": self.message}

    @classmethod
    def from_wire(cls, message: str, status_code: int) -> "RealtimeError":
        """Rebuild an error reported by the server (client side).

        Subclass constructors take domain ids; on the client only the
        server's message and status are known.
        """
        error = cls.__new__(cls)
        RealtimeError.__init__(error, message, status_code)
        return error


class AuthFailure(RealtimeError):
    """Raised when a bearer credential is missing, malformed or expired.

    Fatal to the session: a client must obtain a fresh credential before any
    reconnect attempt can succeed.
    """
    code = "auth_failure"

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message, status_code=401)


class NotParticipant(RealtimeError):
    """Raised when a user acts on a thread they are not part of."""
    code = "not_participant"

    def __init__(self, thread_id: str, user_id: str):
        self.thread_id = thread_id
        self.user_id = user_id
        super().__init__(
            f"User {user_id} is not a participant of thread {thread_id}",
            status_code=403,
        )


class NotAuthorized(RealtimeError):
    """Raised when an edit/delete comes from neither the sender nor an admin."""
    code = "not_authorized"

    def __init__(self, message: str = "Only the sender or an administrator may do this"):
        super().__init__(message, status_code=403)


class ThreadNotFound(RealtimeError):
    code = "thread_not_found"

    def __init__(self, thread_id: str):
        self.thread_id = thread_id
        super().__init__(f"Thread {thread_id} not found", status_code=404)


class MessageNotFound(RealtimeError):
    code = "message_not_found"

    def __init__(self, message_id: str):
        self.message_id = message_id
        super().__init__(f"Message {message_id} not found", status_code=404)


class NotificationNotFound(RealtimeError):
    code = "notification_not_found"

    def __init__(self, notification_id: str):
        self.notification_id = notification_id
        super().__init__(f"Notification {notification_id} not found", status_code=404)


class ThreadClosed(RealtimeError):
    """Raised when sending into a thread whose status is ``closed``."""
    code = "thread_closed"

    def __init__(self, thread_id: str):
        self.thread_id = thread_id
        super().__init__(f"Thread {thread_id} is closed", status_code=409)


class InvalidPayload(RealtimeError):
    code = "invalid_payload"

    def __init__(self, message: str):
        super().__init__(message, status_code=422)


class TransientTransportError(RealtimeError):
    """Recoverable transport failure; triggers supervisor backoff."""
    code = "transport_unavailable"

    def __init__(self, message: str = "Real-time transport unavailable"):
        super().__init__(message, status_code=503)


class DeliveryTimeout(RealtimeError):
    """A single recipient did not accept an event in time."""
    code = "delivery_timeout"

    def __init__(self, session_id: str, room: Optional[str] = None):
        self.session_id = session_id
        self.room = room
        super().__init__(
            f"Delivery to session {session_id} timed out"
            + (f" in room {room}" if room else ""),
            status_code=504,
        )


class OrphanEventTimeout(RealtimeError):
    """A buffered edit/delete never found its message; a re-fetch follows."""
    code = "orphan_timeout"

    def __init__(self, thread_id: str, message_id: str):
        self.thread_id = thread_id
        self.message_id = message_id
        super().__init__(
            f"Message {message_id} in thread {thread_id} did not arrive in time",
            status_code=504,
        )
