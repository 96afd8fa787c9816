"""FastAPI dependency providers.

Service instances are created once by ``create_app`` and stored on
``app.state``; endpoints obtain them through these functions. Tests can
override any of them via ``app.dependency_overrides``.
"""
from typing import Optional

from fastapi import Depends, Header
from fastapi.requests import HTTPConnection

from .auth import TokenVerifier, extract_bearer
from .ingestion.pipeline import IngestionPipeline
from .ledger.service import UnreadLedger
from .models import Identity
from .rooms.registry import RoomRegistry
from .store.base import MessageStore


def get_registry(conn: HTTPConnection) -> RoomRegistry:
    return conn.app.state.registry


def get_store(conn: HTTPConnection) -> MessageStore:
    return conn.app.state.store


def get_ledger(conn: HTTPConnection) -> UnreadLedger:
    return conn.app.state.ledger


def get_pipeline(conn: HTTPConnection) -> IngestionPipeline:
    return conn.app.state.pipeline


def get_verifier(conn: HTTPConnection) -> TokenVerifier:
    return conn.app.state.verifier


def current_identity(
    authorization: Optional[str] = Header(default=None),
    verifier: TokenVerifier = Depends(get_verifier),
) -> Identity:
    """Identity of the caller of an HTTP fallback endpoint.

    Raises AuthFailure (translated to 401 by the app's exception handler).
    """
    return verifier.verify(extract_bearer(authorization))
