from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from .base import BaseModel
from .message import MessageKind
from .types import CaseInsensitiveEnum
from .user import UserRole


class TicketStatus(str, enum.Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


class TicketCategory(str, enum.Enum):
    TECHNICAL = "technical"
    BILLING = "billing"
    ACCOUNT = "account"
    SERVICE = "service"
    GENERAL = "general"
    REPORT = "report"


class TicketPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class SupportSenderRole(str, enum.Enum):
    """Role recorded on a support message: the requester side or staff."""

    USER = "user"
    ADMIN = "admin"


class SupportSystemEvent(str, enum.Enum):
    TICKET_CREATED = "ticket_created"
    ASSIGNED = "assigned"
    STATUS_CHANGED = "status_changed"
    RESOLVED = "resolved"


# Allowed ticket lifecycle moves
TICKET_TRANSITIONS = {
    TicketStatus.OPEN: {TicketStatus.IN_PROGRESS, TicketStatus.RESOLVED, TicketStatus.CLOSED},
    TicketStatus.IN_PROGRESS: {TicketStatus.RESOLVED, TicketStatus.CLOSED},
    TicketStatus.RESOLVED: {TicketStatus.CLOSED},
    TicketStatus.CLOSED: set(),
}


class SupportTicket(BaseModel):
    __tablename__ = "support_tickets"
    __table_args__ = (
        Index("ix_support_tickets_status_activity", "status", "last_activity_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    requester_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    requester_role = Column(CaseInsensitiveEnum(UserRole, name="requesterrole"), nullable=False)
    assigned_agent_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    status = Column(
        CaseInsensitiveEnum(TicketStatus, name="ticketstatus"),
        nullable=False,
        default=TicketStatus.OPEN,
    )
    category = Column(
        CaseInsensitiveEnum(TicketCategory, name="ticketcategory"),
        nullable=False,
        default=TicketCategory.GENERAL,
    )
    priority = Column(
        CaseInsensitiveEnum(TicketPriority, name="ticketpriority"),
        nullable=False,
        default=TicketPriority.MEDIUM,
    )
    resolution_notes = Column(Text, nullable=True)
    resolved_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    last_activity_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    requester = relationship("User", foreign_keys=[requester_id])
    assigned_agent = relationship("User", foreign_keys=[assigned_agent_id])
    messages = relationship(
        "SupportMessage",
        back_populates="ticket",
        cascade="all, delete-orphan",
        order_by="SupportMessage.id",
    )


class SupportMessage(BaseModel):
    __tablename__ = "support_messages"
    __table_args__ = (
        Index("ix_support_messages_ticket_time", "ticket_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    ticket_id = Column(Integer, ForeignKey("support_tickets.id", ondelete="CASCADE"), nullable=False)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    sender_role = Column(
        CaseInsensitiveEnum(SupportSenderRole, name="supportsenderrole"), nullable=False
    )
    text = Column(Text, nullable=False, default="")
    attachments = Column(JSON, nullable=False, default=list)
    kind = Column(
        CaseInsensitiveEnum(MessageKind, name="supportmessagekind"),
        nullable=False,
        default=MessageKind.TEXT,
    )
    system_event = Column(
        CaseInsensitiveEnum(SupportSystemEvent, name="supportsystemevent"), nullable=True
    )
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    ticket = relationship("SupportTicket", back_populates="messages")
    reads = relationship(
        "SupportMessageRead",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class SupportMessageRead(BaseModel):
    """Per-reader receipt for a support message."""

    __tablename__ = "support_message_reads"
    __table_args__ = (
        UniqueConstraint("message_id", "user_id", name="uq_support_message_read"),
    )

    id = Column(Integer, primary_key=True, index=True)
    message_id = Column(Integer, ForeignKey("support_messages.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    read_at = Column(DateTime, default=datetime.utcnow, nullable=False)
