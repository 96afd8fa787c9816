"""Notification HTTP endpoints.

Endpoints:
    GET  /notifications                 newest first, optionally unread only
    GET  /notifications/summary         badge counts (threads + notifications)
    POST /notifications/read-all        mark every notification read
    POST /notifications/{id}/read       mark one notification read
"""
from typing import Dict, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from ..deps import current_identity, get_ledger
from ..ledger.service import UnreadLedger
from ..models import Identity, Notification

router = APIRouter(prefix="/notifications", tags=["notifications"])


class NotificationListResponse(BaseModel):
    notifications: List[Notification]
    count: int


class UnreadSummary(BaseModel):
    threads: Dict[str, int]
    totalUnread: int
    unreadNotifications: int


class ReadAllResponse(BaseModel):
    updated: int


@router.get("", response_model=NotificationListResponse)
async def list_notifications(
    unreadOnly: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    identity: Identity = Depends(current_identity),
    ledger: UnreadLedger = Depends(get_ledger),
) -> NotificationListResponse:
    notifications = ledger.list_notifications(identity.userId, unread_only=unreadOnly, limit=limit)
    return NotificationListResponse(notifications=notifications, count=len(notifications))


@router.get("/summary", response_model=UnreadSummary)
async def unread_summary(
    identity: Identity = Depends(current_identity),
    ledger: UnreadLedger = Depends(get_ledger),
) -> UnreadSummary:
    return UnreadSummary(**ledger.unread_summary(identity.userId))


@router.post("/read-all", response_model=ReadAllResponse)
async def mark_all_read(
    identity: Identity = Depends(current_identity),
    ledger: UnreadLedger = Depends(get_ledger),
) -> ReadAllResponse:
    return ReadAllResponse(updated=ledger.mark_all_notifications_read(identity.userId))


@router.post("/{notification_id}/read", response_model=Notification)
async def mark_read(
    notification_id: str,
    identity: Identity = Depends(current_identity),
    ledger: UnreadLedger = Depends(get_ledger),
) -> Notification:
    """Mark one of the caller's notifications read. Idempotent."""
    return ledger.mark_notification_read(notification_id, identity.userId)
