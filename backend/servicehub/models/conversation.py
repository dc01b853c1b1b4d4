from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from datetime import datetime

from .base import BaseModel
from .types import CaseInsensitiveEnum
from .user import UserRole


class Conversation(BaseModel):
    """A direct chat between exactly two participants, optionally tied to a job."""

    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(Integer, nullable=True, index=True)
    quote_id = Column(Integer, ForeignKey("quotes.id"), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    last_activity_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    participants = relationship(
        "ConversationParticipant",
        back_populates="conversation",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.id",
    )

    def participant(self, user_id: int):
        for p in self.participants:
            if p.user_id == user_id:
                return p
        return None

    def other_participant(self, user_id: int):
        for p in self.participants:
            if p.user_id != user_id:
                return p
        return None


class ConversationParticipant(BaseModel):
    __tablename__ = "conversation_participants"
    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_conversation_participant"),
    )

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    role = Column(CaseInsensitiveEnum(UserRole, name="participantrole"), nullable=False)
    last_read_at = Column(DateTime, nullable=True)

    conversation = relationship("Conversation", back_populates="participants")
    user = relationship("User")
