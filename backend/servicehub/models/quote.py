from sqlalchemy import Column, Integer, ForeignKey, Index
from sqlalchemy.orm import relationship
import enum

from .base import BaseModel
from .types import CaseInsensitiveEnum


class QuoteStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    CANCELLED = "cancelled"


class Quote(BaseModel):
    """A provider's offer on a client's job.

    Only the status matters to the realtime layer: an ``accepted`` quote is the
    engagement that lets a provider open a conversation with the client.
    """

    __tablename__ = "quotes"
    __table_args__ = (
        Index("ix_quotes_pair_status", "provider_id", "client_id", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(Integer, nullable=False, index=True)
    provider_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    client_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    status = Column(
        CaseInsensitiveEnum(QuoteStatus, name="quotestatus"),
        nullable=False,
        default=QuoteStatus.PENDING,
    )

    provider = relationship("User", foreign_keys=[provider_id])
    client = relationship("User", foreign_keys=[client_id])
