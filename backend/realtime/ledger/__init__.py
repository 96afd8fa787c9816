"""Unread counters, read receipts and notifications."""

from .service import UnreadLedger

__all__ = ["UnreadLedger"]
