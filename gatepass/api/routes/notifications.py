# =======================================================================================
# gatepass/api/routes/notifications.py - Notification Inbox Endpoints
# =======================================================================================
from fastapi import APIRouter, Depends, Query
from sqlalchemy.engine import Connection

from ...models.schemas import (
    MessageResponse,
    NotificationListResponse,
    NotificationOut,
    UnreadCountResponse,
)
from ...services.notification_service import NotificationService
from ..dependencies import get_current_user, get_db_connection

router = APIRouter()
notification_service = NotificationService()


@router.get("/notifications", response_model=NotificationListResponse)
def list_notifications(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    unread_only: bool = Query(False),
    user: dict = Depends(get_current_user),
    conn: Connection = Depends(get_db_connection),
):
    rows, total, pages = notification_service.get_notifications(
        conn, user["id"], page=page, limit=limit, unread_only=unread_only
    )
    return NotificationListResponse(
        notifications=[NotificationOut(**r) for r in rows],
        total=total,
        page=page,
        pages=pages,
    )


@router.get("/notifications/unread-count", response_model=UnreadCountResponse)
def unread_count(
    user: dict = Depends(get_current_user),
    conn: Connection = Depends(get_db_connection),
):
    return UnreadCountResponse(count=notification_service.get_unread_count(conn, user["id"]))


@router.patch("/notifications/mark-all-read", response_model=MessageResponse)
def mark_all_read(
    user: dict = Depends(get_current_user),
    conn: Connection = Depends(get_db_connection),
):
    count = notification_service.mark_all_as_read(conn, user["id"])
    return MessageResponse(message="All notifications marked as read", count=count)


@router.patch("/notifications/{notification_id}/read", response_model=NotificationOut)
def mark_read(
    notification_id: int,
    user: dict = Depends(get_current_user),
    conn: Connection = Depends(get_db_connection),
):
    return NotificationOut(**notification_service.mark_as_read(conn, notification_id, user["id"]))


@router.delete("/notifications/{notification_id}", response_model=MessageResponse)
def delete_notification(
    notification_id: int,
    user: dict = Depends(get_current_user),
    conn: Connection = Depends(get_db_connection),
):
    notification_service.delete_notification(conn, notification_id, user["id"])
    return MessageResponse(message="Notification deleted")
