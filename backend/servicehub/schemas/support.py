from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from datetime import datetime
from typing import List, Optional

from ..models.message import MessageKind
from ..models.support import (
    SupportSenderRole,
    SupportSystemEvent,
    TicketCategory,
    TicketPriority,
    TicketStatus,
)
from .message import Attachment, MessageContent, normalize_kind


class TicketCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str = ""
    category: TicketCategory = TicketCategory.GENERAL
    priority: TicketPriority = TicketPriority.MEDIUM

    @field_validator("category", "priority", mode="before")
    @classmethod
    def lower(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


class TicketResolve(BaseModel):
    resolution_notes: Optional[str] = None


class TicketAssign(BaseModel):
    agent_id: Optional[int] = None


class TicketResponse(BaseModel):
    id: int
    title: str
    description: str
    requester_id: int
    assigned_agent_id: Optional[int] = None
    status: TicketStatus
    category: TicketCategory
    priority: TicketPriority
    resolution_notes: Optional[str] = None
    resolved_by_id: Optional[int] = None
    resolved_at: Optional[datetime] = None
    last_activity_at: datetime
    created_at: datetime

    model_config = {"from_attributes": True}


class SupportMessageResponse(BaseModel):
    id: int
    ticket_id: int
    sender_id: int
    sender_role: SupportSenderRole
    text: str
    attachments: List[Attachment] = Field(default_factory=list)
    kind: MessageKind
    system_event: Optional[SupportSystemEvent] = None
    created_at: datetime
    read_by: List[int] = Field(
        default_factory=list, validation_alias=AliasChoices("reads", "read_by")
    )

    model_config = {"from_attributes": True}

    @field_validator("read_by", mode="before")
    @classmethod
    def reader_ids(cls, v):
        return [getattr(r, "user_id", r) for r in (v or [])]


class TicketRef(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ticket_id: int = Field(alias="ticketId")


class SupportMessageIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ticket_id: int = Field(alias="ticketId")
    content: MessageContent = Field(default_factory=MessageContent)
    message_type: MessageKind = Field(default=MessageKind.TEXT, alias="messageType")

    @field_validator("content", mode="before")
    @classmethod
    def allow_plain_text(cls, v):
        if isinstance(v, str):
            return {"text": v}
        return v

    @field_validator("message_type", mode="before")
    @classmethod
    def normalize_message_type(cls, v):
        return normalize_kind(v)


class SupportMessageReadIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ticket_id: Optional[int] = Field(default=None, alias="ticketId")
    message_id: int = Field(alias="messageId")
