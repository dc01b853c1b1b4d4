from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import models


def create_ticket(
    db: Session,
    requester: models.User,
    title: str,
    description: str = "",
    category: models.TicketCategory = models.TicketCategory.GENERAL,
    priority: models.TicketPriority = models.TicketPriority.MEDIUM,
    system_text: Optional[str] = None,
    system_role: models.SupportSenderRole = models.SupportSenderRole.USER,
) -> models.SupportTicket:
    """Create an open ticket plus its ``ticket_created`` system message."""
    now = datetime.utcnow()
    ticket = models.SupportTicket(
        title=title,
        description=description or "",
        requester_id=requester.id,
        requester_role=requester.role,
        status=models.TicketStatus.OPEN,
        category=category,
        priority=priority,
        last_activity_at=now,
    )
    db.add(ticket)
    db.flush()
    db.add(
        models.SupportMessage(
            ticket_id=ticket.id,
            sender_id=requester.id,
            sender_role=system_role,
            text=system_text or f"Ticket created: {title}",
            kind=models.MessageKind.SYSTEM,
            system_event=models.SupportSystemEvent.TICKET_CREATED,
            attachments=[],
            created_at=now,
        )
    )
    db.commit()
    db.refresh(ticket)
    return ticket


def get_ticket(db: Session, ticket_id: int) -> Optional[models.SupportTicket]:
    return db.query(models.SupportTicket).filter(models.SupportTicket.id == ticket_id).first()


def list_tickets(
    db: Session,
    status: Optional[models.TicketStatus] = None,
    requester_id: Optional[int] = None,
    skip: int = 0,
    limit: Optional[int] = 50,
) -> List[models.SupportTicket]:
    query = db.query(models.SupportTicket)
    if status is not None:
        query = query.filter(models.SupportTicket.status == status)
    if requester_id is not None:
        query = query.filter(models.SupportTicket.requester_id == requester_id)
    query = query.order_by(models.SupportTicket.last_activity_at.desc(), models.SupportTicket.id.desc())
    if skip:
        query = query.offset(skip)
    if limit is not None:
        query = query.limit(limit)
    return query.all()


def add_message(
    db: Session,
    ticket: models.SupportTicket,
    sender_id: int,
    sender_role: models.SupportSenderRole,
    text: str,
    kind: models.MessageKind = models.MessageKind.TEXT,
    attachments: Optional[List[Dict[str, Any]]] = None,
    system_event: Optional[models.SupportSystemEvent] = None,
    commit: bool = True,
) -> models.SupportMessage:
    now = datetime.utcnow()
    msg = models.SupportMessage(
        ticket_id=ticket.id,
        sender_id=sender_id,
        sender_role=sender_role,
        text=text or "",
        kind=kind,
        attachments=list(attachments or []),
        system_event=system_event,
        created_at=now,
    )
    db.add(msg)
    ticket.last_activity_at = now
    if commit:
        db.commit()
        db.refresh(msg)
    else:
        db.flush()
    return msg


def claim_if_unassigned(db: Session, ticket: models.SupportTicket, agent_id: int) -> bool:
    """Atomically assign an open, unassigned ticket to ``agent_id``.

    The conditional UPDATE makes a concurrent claim by a second agent a no-op,
    so the first replier keeps the ticket. Caller commits.
    """
    updated = (
        db.query(models.SupportTicket)
        .filter(
            models.SupportTicket.id == ticket.id,
            models.SupportTicket.status == models.TicketStatus.OPEN,
            models.SupportTicket.assigned_agent_id.is_(None),
        )
        .update(
            {
                "assigned_agent_id": agent_id,
                "status": models.TicketStatus.IN_PROGRESS,
                "last_activity_at": datetime.utcnow(),
            },
            synchronize_session="fetch",
        )
    )
    return bool(updated)


def get_support_message(db: Session, message_id: int) -> Optional[models.SupportMessage]:
    return db.query(models.SupportMessage).filter(models.SupportMessage.id == message_id).first()


def mark_message_read(db: Session, message: models.SupportMessage, user_id: int) -> bool:
    """Record a per-reader receipt. Returns False when one already existed."""
    exists = (
        db.query(models.SupportMessageRead.id)
        .filter(
            models.SupportMessageRead.message_id == message.id,
            models.SupportMessageRead.user_id == user_id,
        )
        .first()
    )
    if exists:
        return False
    db.add(models.SupportMessageRead(message_id=message.id, user_id=user_id, read_at=datetime.utcnow()))
    try:
        db.commit()
    except IntegrityError:
        # a concurrent receipt for the same reader won the insert
        db.rollback()
        return False
    return True


def get_messages(db: Session, ticket_id: int) -> List[models.SupportMessage]:
    return (
        db.query(models.SupportMessage)
        .filter(models.SupportMessage.ticket_id == ticket_id)
        .order_by(models.SupportMessage.created_at.asc(), models.SupportMessage.id.asc())
        .all()
    )
