"""Notification fan-out.

A notification is always written before any push is attempted, so a user
with no live connection still finds it on the next ``join-notifications``.
State only moves forward: created -> delivered -> read.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from .. import models
from ..crud import crud_notification, crud_user
from ..schemas.notification import NotificationResponse
from .errors import AuthorizationError, NotFoundError
from .protocol import Connection, ConnectionIdentity, Envelope
from . import rooms
from .rooms import NotifyRoom
from .store import db_call

logger = logging.getLogger(__name__)


def _to_response(obj: models.Notification) -> NotificationResponse:
    return NotificationResponse.model_validate(obj)


def _create(db: Session, user_id: int, **fields: Any) -> NotificationResponse:
    return _to_response(crud_notification.create_notification(db, user_id, **fields))


def _create_for_agents(
    db: Session, exclude: Iterable[int], **fields: Any
) -> List[NotificationResponse]:
    skip = {int(u) for u in exclude}
    agent_ids = [uid for uid in crud_user.get_active_agent_ids(db) if uid not in skip]
    return [_to_response(n) for n in crud_notification.create_notifications(db, agent_ids, **fields)]


async def _push(record: NotificationResponse) -> NotificationResponse:
    """Emit ``new-notification`` and stamp delivery if the owner is listening."""
    room = NotifyRoom(record.user_id)
    payload = record.model_dump(mode="json")
    try:
        await rooms.registry.broadcast(room, Envelope(type="new-notification", payload=payload))
        if rooms.registry.user_in_room(record.user_id, room):
            await db_call(crud_notification.mark_delivered, record.user_id, [record.id])
            record = record.model_copy(update={"delivered": True})
    except Exception:
        # The record is durable; the next join-notifications sweep delivers it
        logger.exception(
            "notification.push_fail",
            extra={"user_id": record.user_id, "notification_id": record.id},
        )
    return record


async def notify(
    user_id: int,
    type: str,
    message: str,
    title: str = "",
    data: Optional[Dict[str, Any]] = None,
    priority: models.NotificationPriority = models.NotificationPriority.MEDIUM,
) -> NotificationResponse:
    """Persist a notification for ``user_id``, then try to push it live."""
    record = await db_call(
        _create,
        user_id,
        type=str(getattr(type, "value", type)),
        message=message,
        title=title,
        data=data,
        priority=priority,
    )
    return await _push(record)


async def notify_admins(
    type: str,
    message: str,
    title: str = "",
    data: Optional[Dict[str, Any]] = None,
    priority: models.NotificationPriority = models.NotificationPriority.MEDIUM,
    exclude: Iterable[int] = (),
) -> List[NotificationResponse]:
    """One independent record per active admin/agent."""
    records = await db_call(
        _create_for_agents,
        list(exclude),
        type=str(getattr(type, "value", type)),
        message=message,
        title=title,
        data=data,
        priority=priority,
    )
    return [await _push(r) for r in records]


def _join_sweep(db: Session, user_id: int) -> Dict[str, int]:
    swept = crud_notification.mark_delivered(db, user_id)
    return {"delivered": swept, "unreadCount": crud_notification.count_unread(db, user_id)}


async def join_notifications(conn: Connection, user_id: Optional[int] = None) -> Dict[str, int]:
    """Join ``notify:<caller>`` and deliver everything still pending."""
    if user_id is not None and int(user_id) != conn.user_id:
        raise AuthorizationError("Cannot join another user's notification channel")
    rooms.registry.join(conn, NotifyRoom(conn.user_id))
    result = await db_call(_join_sweep, conn.user_id)
    logger.debug("notifications.joined", extra={"user_id": conn.user_id, **result})
    return result


def _owned(db: Session, user_id: int, notification_id: int) -> models.Notification:
    notif = crud_notification.get_notification(db, notification_id)
    if notif is None:
        raise NotFoundError("Notification not found")
    if notif.user_id != user_id:
        raise AuthorizationError("Not authorized to modify this notification")
    return notif


def _mark_read(db: Session, user_id: int, notification_id: int) -> Dict[str, int]:
    crud_notification.mark_as_read(db, _owned(db, user_id, notification_id))
    return {
        "notificationId": notification_id,
        "unreadCount": crud_notification.count_unread(db, user_id),
    }


async def mark_read(identity: ConnectionIdentity, notification_id: int) -> Dict[str, int]:
    return await db_call(_mark_read, identity.user_id, int(notification_id))


async def mark_all_read(identity: ConnectionIdentity) -> int:
    return await db_call(crud_notification.mark_all_read, identity.user_id)


async def unread_count(identity: ConnectionIdentity) -> int:
    return await db_call(crud_notification.count_unread, identity.user_id)


def _delete(db: Session, user_id: int, notification_id: int) -> None:
    crud_notification.delete_notification(db, _owned(db, user_id, notification_id))


async def delete(identity: ConnectionIdentity, notification_id: int) -> None:
    await db_call(_delete, identity.user_id, int(notification_id))


def _list(db: Session, user_id: int, skip: int, limit: Optional[int]) -> List[NotificationResponse]:
    return [
        _to_response(n)
        for n in crud_notification.get_notifications_for_user(db, user_id, skip=skip, limit=limit)
    ]


async def list_for_user(
    identity: ConnectionIdentity, skip: int = 0, limit: Optional[int] = 50
) -> List[NotificationResponse]:
    return await db_call(_list, identity.user_id, skip, limit)
