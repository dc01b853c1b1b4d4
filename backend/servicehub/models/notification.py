from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from .base import BaseModel
from .types import CaseInsensitiveEnum


class NotificationType(str, enum.Enum):
    """Notification kinds raised by the realtime layer.

    The column is a plain string so other services may record their own kinds
    (``quote_accepted``, ``payment_received``...) without a schema change.
    """

    NEW_MESSAGE = "new_message"
    SUPPORT_MESSAGE = "support_message"
    NEW_SUPPORT_TICKET = "new_support_ticket"
    SUPPORT_ASSIGNED = "support_assigned"
    TICKET_RESOLVED = "ticket_resolved"
    TICKET_CLOSED = "ticket_closed"


class NotificationPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Notification(BaseModel):
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_user_read", "user_id", "is_read"),
        Index("ix_notifications_user_delivered", "user_id", "delivered"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    type = Column(String, nullable=False)
    title = Column(String, nullable=False, default="")
    message = Column(String, nullable=False)
    data = Column(JSON, nullable=False, default=dict)
    priority = Column(
        CaseInsensitiveEnum(NotificationPriority, name="notificationpriority"),
        nullable=False,
        default=NotificationPriority.MEDIUM,
    )
    delivered = Column(Boolean, default=False, nullable=False)
    delivered_at = Column(DateTime, nullable=True)
    is_read = Column(Boolean, default=False, nullable=False)
    read_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    user = relationship("User", backref="notifications")
