"""Room registry: named broadcast groups of live sessions."""

from .registry import RoomRegistry, thread_room, user_chats_room, user_notify_room

__all__ = [
    "RoomRegistry",
    "thread_room",
    "user_chats_room",
    "user_notify_room",
]
