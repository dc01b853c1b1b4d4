from typing import Optional, Any, List
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..models.message import MessageKind


class MediaItem(BaseModel):
    """One entry of ``content.media``.

    Either a stored reference (``id`` + ``url``) or inline base64 ``data`` that
    must be uploaded before the message is persisted.
    """

    model_config = ConfigDict(populate_by_name=True)

    type: Optional[str] = None
    id: Optional[str] = None
    url: Optional[str] = None
    data: Optional[str] = None
    filename: Optional[str] = None
    size: Optional[int] = None
    mime_type: Optional[str] = Field(default=None, alias="mimeType")

    @model_validator(mode="after")
    def ensure_reference_or_data(self) -> "MediaItem":
        if not (self.url and self.url.strip()) and not (self.data and self.data.strip()):
            raise ValueError("Attachment must include a url or inline data")
        return self

    @property
    def is_inline(self) -> bool:
        return bool(self.data) and not self.url


class MessageContent(BaseModel):
    text: str = ""
    media: List[MediaItem] = Field(default_factory=list)

    @field_validator("text", mode="before")
    @classmethod
    def none_to_empty(cls, v):
        return "" if v is None else v


def normalize_kind(v: Any) -> Any:
    """Accept any casing; an empty value means plain text."""
    if v is None or (isinstance(v, str) and not v.strip()):
        return MessageKind.TEXT
    if isinstance(v, str):
        return v.strip().lower()
    return v


class SendMessageIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: int = Field(alias="conversationId")
    content: MessageContent = Field(default_factory=MessageContent)
    message_type: MessageKind = Field(default=MessageKind.TEXT, alias="messageType")

    @field_validator("content", mode="before")
    @classmethod
    def allow_plain_text(cls, v):
        # Older clients send ``content`` as a bare string
        if isinstance(v, str):
            return {"text": v}
        return v

    @field_validator("message_type", mode="before")
    @classmethod
    def normalize_message_type(cls, v):
        return normalize_kind(v)


class ConversationRef(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: int = Field(alias="conversationId")


class Attachment(BaseModel):
    type: str = "file"
    id: str
    url: str
    filename: Optional[str] = None
    size: Optional[int] = None
    mime_type: Optional[str] = None


class MessageResponse(BaseModel):
    id: int
    conversation_id: int
    sender_id: int
    recipient_id: int
    text: str
    attachments: List[Attachment] = Field(default_factory=list)
    kind: MessageKind
    system_event: Optional[str] = None
    delivered: bool = False
    delivered_at: Optional[datetime] = None
    is_read: bool = False
    read_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class OnlineStatusIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_ids: List[int] = Field(default_factory=list, alias="userIds")
