from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from .base import BaseModel
from .types import CaseInsensitiveEnum


class MessageKind(str, enum.Enum):
    """Kind of content carried by a chat or support message."""

    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    DOCUMENT = "document"
    FILE = "file"
    MEDIA = "media"
    SYSTEM = "system"


class Message(BaseModel):
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_conversation_time", "conversation_id", "created_at"),
        Index("ix_messages_recipient_pending", "recipient_id", "delivered"),
    )

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    recipient_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    text = Column(Text, nullable=False, default="")
    # List of {type, id, url, filename, size, mime_type}
    attachments = Column(JSON, nullable=False, default=list)
    kind = Column(
        CaseInsensitiveEnum(MessageKind, name="messagekind"),
        nullable=False,
        default=MessageKind.TEXT,
    )
    system_event = Column(String, nullable=True)
    delivered = Column(Boolean, default=False, nullable=False)
    delivered_at = Column(DateTime, nullable=True)
    is_read = Column(Boolean, default=False, nullable=False)
    read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    conversation = relationship("Conversation", back_populates="messages")
    sender = relationship("User", foreign_keys=[sender_id])
    recipient = relationship("User", foreign_keys=[recipient_id])
