from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from .. import models
from . import crud_conversation


def create_message(
    db: Session,
    conversation_id: int,
    sender_id: int,
    recipient_id: int,
    text: str,
    kind: models.MessageKind = models.MessageKind.TEXT,
    attachments: Optional[List[Dict[str, Any]]] = None,
    system_event: Optional[str] = None,
) -> models.Message:
    """Persist a message undelivered/unread and bump the conversation.

    The sender has seen their own message, so their ``last_read_at`` moves
    with it. Everything commits together.
    """
    now = datetime.utcnow()
    msg = models.Message(
        conversation_id=conversation_id,
        sender_id=sender_id,
        recipient_id=recipient_id,
        text=text or "",
        kind=kind,
        attachments=list(attachments or []),
        system_event=system_event,
        delivered=False,
        is_read=False,
        created_at=now,
    )
    db.add(msg)
    crud_conversation.touch(db, conversation_id, now)
    crud_conversation.update_last_read(db, conversation_id, sender_id, now)
    db.commit()
    db.refresh(msg)
    return msg


def get_message(db: Session, message_id: int) -> Optional[models.Message]:
    return db.query(models.Message).filter(models.Message.id == message_id).first()


def get_messages(
    db: Session, conversation_id: int, skip: int = 0, limit: Optional[int] = 100
) -> List[models.Message]:
    query = (
        db.query(models.Message)
        .filter(models.Message.conversation_id == conversation_id)
        .order_by(models.Message.created_at.asc(), models.Message.id.asc())
    )
    if skip:
        query = query.offset(skip)
    if limit is not None:
        query = query.limit(limit)
    return query.all()


def has_sent_message(db: Session, conversation_id: int, sender_id: int) -> bool:
    return (
        db.query(models.Message.id)
        .filter(
            models.Message.conversation_id == conversation_id,
            models.Message.sender_id == sender_id,
            models.Message.kind != models.MessageKind.SYSTEM,
        )
        .first()
        is not None
    )


def mark_delivered(
    db: Session,
    recipient_id: int,
    conversation_id: Optional[int] = None,
    message_ids: Optional[List[int]] = None,
) -> int:
    """Flag pending messages for ``recipient_id`` as delivered.

    Only rows still undelivered are touched so ``delivered_at`` is written at
    most once.
    """
    query = db.query(models.Message).filter(
        models.Message.recipient_id == recipient_id,
        models.Message.delivered.is_(False),
    )
    if conversation_id is not None:
        query = query.filter(models.Message.conversation_id == conversation_id)
    if message_ids is not None:
        if not message_ids:
            return 0
        query = query.filter(models.Message.id.in_(message_ids))
    updated = query.update(
        {"delivered": True, "delivered_at": datetime.utcnow()},
        synchronize_session="fetch",
    )
    db.commit()
    return int(updated or 0)


def mark_read(
    db: Session,
    recipient_id: int,
    conversation_id: int,
    message_ids: Optional[List[int]] = None,
) -> int:
    """Mark unread messages addressed to ``recipient_id`` as read.

    Reading implies delivery, so undelivered rows are stamped delivered too.
    Also advances the reader's ``last_read_at``.
    """
    now = datetime.utcnow()
    query = db.query(models.Message).filter(
        models.Message.recipient_id == recipient_id,
        models.Message.conversation_id == conversation_id,
        models.Message.is_read.is_(False),
    )
    if message_ids is not None:
        query = query.filter(models.Message.id.in_(message_ids))
    db.query(models.Message).filter(
        models.Message.recipient_id == recipient_id,
        models.Message.conversation_id == conversation_id,
        models.Message.delivered.is_(False),
        models.Message.is_read.is_(False),
        *([models.Message.id.in_(message_ids)] if message_ids is not None else []),
    ).update({"delivered": True, "delivered_at": now}, synchronize_session="fetch")
    updated = query.update({"is_read": True, "read_at": now}, synchronize_session="fetch")
    crud_conversation.update_last_read(db, conversation_id, recipient_id, now)
    db.commit()
    return int(updated or 0)


def count_unread(db: Session, recipient_id: int, conversation_id: Optional[int] = None) -> int:
    query = db.query(models.Message.id).filter(
        models.Message.recipient_id == recipient_id,
        models.Message.is_read.is_(False),
    )
    if conversation_id is not None:
        query = query.filter(models.Message.conversation_id == conversation_id)
    return query.count()
