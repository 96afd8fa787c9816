"""Durable store for threads, messages and notifications."""

from .base import MessageStore
from .duckdb_store import DuckDBMessageStore

__all__ = [
    "MessageStore",
    "DuckDBMessageStore",
]
