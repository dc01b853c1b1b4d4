"""Direct conversation pipeline: join, send, read receipts, typing.

A send is authorized, validated, uploaded and committed before anything is
emitted, so a recipient never sees a message that was not stored.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Any, Dict, List, Optional, Tuple

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from .. import models
from ..core.config import settings
from ..crud import crud_message, crud_user
from ..schemas.message import MediaItem, MessageResponse, SendMessageIn
from ..services.attachment_store import get_attachment_store
from ..utils.metrics import incr as metrics_incr
from . import notifications, rooms
from .authorization import can_send_in_conversation, require_participant
from .errors import AuthorizationError, ServiceError, ValidationError
from .presence import presence
from .protocol import Connection, ConnectionIdentity, Envelope
from .roles import is_agent
from .rooms import ConversationRoom, NotifyRoom
from .store import db_call
from .tasks import spawn

logger = logging.getLogger(__name__)

_MEDIA_TYPES = {
    "image": models.MessageKind.IMAGE,
    "video": models.MessageKind.VIDEO,
}


def attachment_type(mime_type: Optional[str]) -> str:
    major = (mime_type or "").split("/", 1)[0].lower()
    if major in _MEDIA_TYPES:
        return major
    if mime_type == "application/pdf":
        return "document"
    return "file"


def _decode_inline(item: MediaItem) -> bytes:
    raw = item.data or ""
    # data: URLs carry a "data:<mime>;base64," prefix
    if raw.startswith("data:") and "," in raw:
        raw = raw.split(",", 1)[1]
    try:
        blob = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("Attachment data is not valid base64")
    if not blob:
        raise ValidationError("Attachment data is empty")
    if len(blob) > settings.ATTACHMENT_MAX_BYTES:
        raise ValidationError("Attachment exceeds the maximum size")
    return blob


def _reference(item: MediaItem, **fields: Any) -> Dict[str, Any]:
    ref = {
        "type": item.type or attachment_type(item.mime_type),
        "id": str(item.id or item.url),
        "url": item.url,
        "filename": item.filename,
        "size": item.size,
        "mime_type": item.mime_type,
    }
    ref.update(fields)
    return ref


def discard_media(keys: List[str]) -> None:
    """Remove uploaded objects whose message was never stored."""
    if not keys:
        return
    store = get_attachment_store()
    for key in keys:
        spawn(run_in_threadpool(store.remove, key), name=f"attachment-remove:{key}")


async def store_media(items: List[MediaItem], folder: str) -> Tuple[List[Dict[str, Any]], List[str]]:
    """Upload inline items and return ``(references, uploaded keys)``.

    Every inline item is decoded before the first upload. If an upload fails
    the objects already stored are discarded before the error propagates.
    """
    blobs = {i: _decode_inline(item) for i, item in enumerate(items) if item.is_inline}
    refs: List[Dict[str, Any]] = []
    uploaded: List[str] = []
    store = get_attachment_store() if blobs else None
    try:
        for i, item in enumerate(items):
            if i not in blobs:
                refs.append(_reference(item))
                continue
            blob = blobs[i]
            stored = await run_in_threadpool(store.store, blob, folder, item.filename, item.mime_type)
            uploaded.append(str(stored["id"]))
            refs.append(_reference(item, id=str(stored["id"]), url=stored["url"], size=len(blob)))
    except BaseException:
        discard_media(uploaded)
        raise
    return refs, uploaded


def validate_body(identity: ConnectionIdentity, text: str, media: List[Any], kind: models.MessageKind) -> str:
    """Return the trimmed text or raise :class:`ValidationError`."""
    text = (text or "").strip()
    if not text and not media:
        raise ValidationError("Message must contain text or at least one attachment")
    if kind == models.MessageKind.SYSTEM and not is_agent(identity.role):
        raise ValidationError("System messages cannot be sent by clients")
    return text


# ─── join / leave ──────────────────────────────────────────────────────────

def _join_state(db: Session, user_id: int, conversation_id: int) -> Dict[str, int]:
    require_participant(db, user_id, conversation_id)
    delivered = crud_message.mark_delivered(db, user_id, conversation_id=conversation_id)
    return {
        "delivered": delivered,
        "unreadCount": crud_message.count_unread(db, user_id, conversation_id),
    }


async def join_conversation(conn: Connection, conversation_id: int) -> Dict[str, int]:
    """Participant check, join the room, deliver what was waiting."""
    state = await db_call(_join_state, conn.user_id, conversation_id)
    room = ConversationRoom(conversation_id)
    first = rooms.registry.join(conn, room)
    if first:
        await rooms.registry.broadcast(
            room,
            Envelope(
                type="user-joined-chat",
                payload={"userId": conn.user_id, "conversationId": conversation_id},
            ),
            exclude=conn,
        )
    return {"conversationId": conversation_id, **state}


async def leave_conversation(conn: Connection, conversation_id: int) -> bool:
    return rooms.registry.leave(conn, ConversationRoom(conversation_id))


# ─── send ──────────────────────────────────────────────────────────────────

def _authorize(db: Session, identity: ConnectionIdentity, conversation_id: int) -> int:
    conv = require_participant(db, identity.user_id, conversation_id)
    other = conv.other_participant(identity.user_id)
    if other is None:
        raise AuthorizationError("not a participant")
    can_send_in_conversation(
        db, identity.user_id, identity.role, other.user_id, conversation_id
    ).raise_if_denied()
    return int(other.user_id)


def _persist(
    db: Session,
    identity: ConnectionIdentity,
    conversation_id: int,
    recipient_id: int,
    text: str,
    kind: models.MessageKind,
    attachments: List[Dict[str, Any]],
) -> Tuple[MessageResponse, int]:
    msg = crud_message.create_message(
        db,
        conversation_id=conversation_id,
        sender_id=identity.user_id,
        recipient_id=recipient_id,
        text=text,
        kind=kind,
        attachments=attachments,
    )
    return MessageResponse.model_validate(msg), crud_message.count_unread(db, recipient_id)


async def _mark_delivered(message_id: int, recipient_id: int) -> None:
    await db_call(crud_message.mark_delivered, recipient_id, message_ids=[message_id])


async def send_message(conn: Connection, data: SendMessageIn) -> MessageResponse:
    identity = conn.identity
    conversation_id = data.conversation_id

    # Authorization first: a denial must not upload or persist anything
    recipient_id = await db_call(_authorize, identity, conversation_id)
    text = validate_body(identity, data.content.text, data.content.media, data.message_type)
    attachments, uploaded = await store_media(data.content.media, f"chat/{conversation_id}")

    try:
        message, unread = await db_call(
            _persist, identity, conversation_id, recipient_id, text, data.message_type, attachments
        )
    except Exception:
        discard_media(uploaded)
        raise
    metrics_incr("chat.message.sent", tags={"kind": message.kind.value})

    room = ConversationRoom(conversation_id)
    payload = message.model_dump(mode="json")
    await rooms.registry.broadcast(room, Envelope(type="new-message", payload=payload))
    # Delivery is decided by who held the room when the message went out
    recipient_present = rooms.registry.user_in_room(recipient_id, room)
    if not rooms.registry.in_room(conn, room):
        # The sender's current socket still gets its own copy
        await conn.send("new-message", payload, topic=room.key)

    await rooms.registry.broadcast(
        NotifyRoom(recipient_id),
        Envelope(
            type="message-notification",
            payload={"message": payload, "conversationId": conversation_id, "unreadCount": unread},
        ),
    )

    preview = text or "Sent an attachment"
    try:
        await notifications.notify(
            recipient_id,
            models.NotificationType.NEW_MESSAGE,
            preview[:200],
            title="New message",
            data={"conversationId": conversation_id, "messageId": message.id, "senderId": identity.user_id},
        )
    except ServiceError:
        # The message itself is stored and broadcast; only the durable nudge failed
        logger.exception(
            "chat.notify_fail",
            extra={"conversation_id": conversation_id, "message_id": message.id},
        )

    if recipient_present:
        spawn(
            _mark_delivered(message.id, recipient_id),
            name=f"mark-delivered:{message.id}",
        )
    return message


# ─── read receipts / typing / presence ─────────────────────────────────────

def _mark_read(db: Session, user_id: int, conversation_id: int, message_ids: Optional[List[int]]) -> int:
    require_participant(db, user_id, conversation_id)
    return crud_message.mark_read(db, user_id, conversation_id, message_ids)


async def mark_read(
    conn: Connection, conversation_id: int, message_ids: Optional[List[int]] = None
) -> Dict[str, int]:
    """Mark messages addressed to the caller as read and tell the room."""
    marked = await db_call(_mark_read, conn.user_id, conversation_id, message_ids)
    await rooms.registry.broadcast(
        ConversationRoom(conversation_id),
        Envelope(
            type="messages-read",
            payload={"userId": conn.user_id, "conversationId": conversation_id, "count": marked},
        ),
        exclude=conn,
    )
    return {"conversationId": conversation_id, "markedCount": marked}


async def typing(conn: Connection, conversation_id: int, is_typing: bool) -> None:
    room = ConversationRoom(conversation_id)
    if not rooms.registry.in_room(conn, room):
        raise AuthorizationError("Join the conversation before sending typing signals")
    await rooms.registry.broadcast(
        room,
        Envelope(
            type="user-typing",
            payload={"userId": conn.user_id, "conversationId": conversation_id, "isTyping": is_typing},
        ),
        exclude=conn,
    )


def _last_seen(db: Session, user_ids: List[int]) -> Dict[int, models.User]:
    return {u.id: u for u in crud_user.get_users(db, user_ids)}


async def online_status(user_ids: List[int]) -> List[Dict[str, Any]]:
    users = await db_call(_last_seen, user_ids)
    statuses = []
    for uid in user_ids:
        user = users.get(uid)
        last = user.last_active_at.isoformat() if user and user.last_active_at else None
        statuses.append({"userId": uid, "isOnline": presence.is_online(uid), "lastActive": last})
    return statuses
