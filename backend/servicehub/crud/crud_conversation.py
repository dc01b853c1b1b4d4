from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from .. import models


def get_conversation(db: Session, conversation_id: int) -> Optional[models.Conversation]:
    return (
        db.query(models.Conversation)
        .filter(models.Conversation.id == conversation_id)
        .first()
    )


def find_conversation(
    db: Session, user_a: int, user_b: int, job_id: Optional[int] = None
) -> Optional[models.Conversation]:
    """Return the direct conversation between two users for ``job_id``."""
    candidates = (
        db.query(models.Conversation)
        .join(
            models.ConversationParticipant,
            models.ConversationParticipant.conversation_id == models.Conversation.id,
        )
        .filter(
            models.ConversationParticipant.user_id == user_a,
            models.Conversation.job_id.is_(None) if job_id is None else models.Conversation.job_id == job_id,
        )
        .all()
    )
    for conv in candidates:
        if {p.user_id for p in conv.participants} == {user_a, user_b}:
            return conv
    return None


def create_conversation(
    db: Session,
    first: models.User,
    second: models.User,
    job_id: Optional[int] = None,
    quote_id: Optional[int] = None,
) -> models.Conversation:
    """Find or create the two-party conversation for a job."""
    existing = find_conversation(db, first.id, second.id, job_id)
    if existing:
        return existing
    conv = models.Conversation(job_id=job_id, quote_id=quote_id, last_activity_at=datetime.utcnow())
    conv.participants = [
        models.ConversationParticipant(user_id=first.id, role=first.role),
        models.ConversationParticipant(user_id=second.id, role=second.role),
    ]
    db.add(conv)
    db.commit()
    db.refresh(conv)
    return conv


def list_for_user(db: Session, user_id: int) -> List[models.Conversation]:
    return (
        db.query(models.Conversation)
        .join(
            models.ConversationParticipant,
            models.ConversationParticipant.conversation_id == models.Conversation.id,
        )
        .filter(models.ConversationParticipant.user_id == user_id)
        .order_by(models.Conversation.last_activity_at.desc())
        .all()
    )


def touch(db: Session, conversation_id: int, when: Optional[datetime] = None) -> None:
    """Bump ``last_activity_at`` (last write wins). Caller commits."""
    db.query(models.Conversation).filter(models.Conversation.id == conversation_id).update(
        {"last_activity_at": when or datetime.utcnow()},
        synchronize_session=False,
    )


def update_last_read(db: Session, conversation_id: int, user_id: int, when: Optional[datetime] = None) -> None:
    """Set the participant's ``last_read_at``. Caller commits."""
    db.query(models.ConversationParticipant).filter(
        models.ConversationParticipant.conversation_id == conversation_id,
        models.ConversationParticipant.user_id == user_id,
    ).update(
        {"last_read_at": when or datetime.utcnow()},
        synchronize_session=False,
    )
