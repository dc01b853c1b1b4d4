from fastapi import APIRouter, Depends, status, Response
from typing import List

from ..realtime import notifications
from ..realtime.protocol import ConnectionIdentity
from ..schemas.notification import (
    MarkAllReadResponse,
    NotificationResponse,
    UnreadCountResponse,
)
from .dependencies import get_current_identity

router = APIRouter(tags=["notifications"])


@router.get("/notifications", response_model=List[NotificationResponse])
async def read_my_notifications(
    skip: int = 0,
    limit: int = 20,
    identity: ConnectionIdentity = Depends(get_current_identity),
):
    """Unexpired notifications for the caller, newest first."""
    return await notifications.list_for_user(identity, skip=skip, limit=limit)


@router.get("/notifications/unread-count", response_model=UnreadCountResponse)
async def read_unread_count(identity: ConnectionIdentity = Depends(get_current_identity)):
    return {"count": await notifications.unread_count(identity)}


@router.put("/notifications/read-all", response_model=MarkAllReadResponse)
async def mark_all_notifications_read(identity: ConnectionIdentity = Depends(get_current_identity)):
    return {"marked_count": await notifications.mark_all_read(identity)}


@router.put("/notifications/{notification_id}/read")
async def mark_notification_read(
    notification_id: int,
    identity: ConnectionIdentity = Depends(get_current_identity),
):
    """Mark one of the caller's notifications as read."""
    result = await notifications.mark_read(identity, notification_id)
    return {"notification_id": result["notificationId"], "unread_count": result["unreadCount"]}


@router.delete("/notifications/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_notification(
    notification_id: int,
    identity: ConnectionIdentity = Depends(get_current_identity),
):
    await notifications.delete(identity, notification_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
