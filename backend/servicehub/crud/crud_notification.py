from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from .. import models
from ..core.config import settings


def _expiry(now: datetime) -> datetime:
    return now + timedelta(days=settings.NOTIFICATION_TTL_DAYS)


def create_notification(
    db: Session,
    user_id: int,
    type: str,
    message: str,
    title: str = "",
    data: Optional[Dict[str, Any]] = None,
    priority: models.NotificationPriority = models.NotificationPriority.MEDIUM,
) -> models.Notification:
    now = datetime.utcnow()
    db_obj = models.Notification(
        user_id=user_id,
        type=str(type),
        title=title or "",
        message=message,
        data=dict(data or {}),
        priority=priority,
        delivered=False,
        is_read=False,
        created_at=now,
        expires_at=_expiry(now),
    )
    db.add(db_obj)
    db.commit()
    db.refresh(db_obj)
    return db_obj


def create_notifications(
    db: Session,
    user_ids: Iterable[int],
    type: str,
    message: str,
    title: str = "",
    data: Optional[Dict[str, Any]] = None,
    priority: models.NotificationPriority = models.NotificationPriority.MEDIUM,
) -> List[models.Notification]:
    """One independent record per recipient, committed together."""
    now = datetime.utcnow()
    objs = [
        models.Notification(
            user_id=int(uid),
            type=str(type),
            title=title or "",
            message=message,
            data=dict(data or {}),
            priority=priority,
            delivered=False,
            is_read=False,
            created_at=now,
            expires_at=_expiry(now),
        )
        for uid in user_ids
    ]
    if not objs:
        return []
    db.add_all(objs)
    db.commit()
    for obj in objs:
        db.refresh(obj)
    return objs


def get_notification(db: Session, notification_id: int) -> models.Notification | None:
    return (
        db.query(models.Notification)
        .filter(models.Notification.id == notification_id)
        .first()
    )


def _not_expired(now: datetime):
    return or_(
        models.Notification.expires_at.is_(None),
        models.Notification.expires_at > now,
    )


def get_notifications_for_user(
    db: Session, user_id: int, skip: int = 0, limit: int | None = None
) -> List[models.Notification]:
    """Return live (unexpired) notifications, newest first."""
    query = (
        db.query(models.Notification)
        .filter(
            models.Notification.user_id == user_id,
            _not_expired(datetime.utcnow()),
        )
        .order_by(models.Notification.created_at.desc(), models.Notification.id.desc())
    )
    if skip:
        query = query.offset(skip)
    if limit is not None:
        query = query.limit(limit)
    return query.all()


def mark_delivered(
    db: Session, user_id: int, notification_ids: Optional[List[int]] = None
) -> int:
    """Stamp undelivered notifications for ``user_id``; idempotent."""
    query = db.query(models.Notification).filter(
        models.Notification.user_id == user_id,
        models.Notification.delivered.is_(False),
    )
    if notification_ids is not None:
        if not notification_ids:
            return 0
        query = query.filter(models.Notification.id.in_(notification_ids))
    updated = query.update(
        {"delivered": True, "delivered_at": datetime.utcnow()},
        synchronize_session="fetch",
    )
    db.commit()
    return int(updated or 0)


def mark_as_read(
    db: Session, db_notification: models.Notification
) -> models.Notification:
    if not db_notification.is_read:
        now = datetime.utcnow()
        db_notification.is_read = True
        db_notification.read_at = now
        if not db_notification.delivered:
            db_notification.delivered = True
            db_notification.delivered_at = now
        db.commit()
        db.refresh(db_notification)
    return db_notification


def mark_all_read(db: Session, user_id: int) -> int:
    """Mark all unread notifications for ``user_id`` as read.

    Returns the number of rows updated.
    """
    now = datetime.utcnow()
    db.query(models.Notification).filter(
        models.Notification.user_id == user_id,
        models.Notification.is_read.is_(False),
        models.Notification.delivered.is_(False),
    ).update({"delivered": True, "delivered_at": now}, synchronize_session="fetch")
    updated = (
        db.query(models.Notification)
        .filter(
            models.Notification.user_id == user_id,
            models.Notification.is_read.is_(False),
        )
        .update({"is_read": True, "read_at": now}, synchronize_session="fetch")
    )
    db.commit()
    return int(updated or 0)


def count_unread(db: Session, user_id: int) -> int:
    return (
        db.query(models.Notification.id)
        .filter(
            models.Notification.user_id == user_id,
            models.Notification.is_read.is_(False),
            _not_expired(datetime.utcnow()),
        )
        .count()
    )


def delete_notification(db: Session, db_notification: models.Notification) -> None:
    db.delete(db_notification)
    db.commit()
