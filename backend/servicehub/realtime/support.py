"""Support ticket pipeline.

Tickets are conversations between a requester and the support staff. The
first agent to reply to an open, unassigned ticket takes it; later replies
from other agents are allowed but never reassign it. Every change is pushed
to the ticket room and to the agents' dashboard.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from .. import models
from ..crud import crud_support, crud_user
from ..models.support import TICKET_TRANSITIONS
from ..schemas.support import (
    SupportMessageIn,
    SupportMessageResponse,
    TicketCreate,
    TicketResponse,
)
from ..utils.metrics import incr as metrics_incr
from . import notifications, rooms
from .authorization import can_send_on_ticket, can_view_ticket
from .delivery import discard_media, store_media, validate_body
from .errors import AuthorizationError, NotFoundError, ServiceError, ValidationError
from .protocol import Connection, ConnectionIdentity, Envelope
from .roles import is_agent, support_sender_role
from .rooms import DashboardRoom, TicketRoom
from .store import db_call
from .tasks import spawn

logger = logging.getLogger(__name__)

NotificationType = models.NotificationType


def _ticket(obj: models.SupportTicket) -> TicketResponse:
    return TicketResponse.model_validate(obj)


def _message(obj: models.SupportMessage) -> SupportMessageResponse:
    return SupportMessageResponse.model_validate(obj)


def _require_agent(identity: ConnectionIdentity) -> None:
    if not is_agent(identity.role):
        raise AuthorizationError("Only support agents can perform this action")


def _check_transition(ticket: models.SupportTicket, target: models.TicketStatus) -> None:
    if target not in TICKET_TRANSITIONS[ticket.status]:
        raise ValidationError(
            f"Cannot move ticket from {ticket.status.value} to {target.value}",
            details={"status": ticket.status.value},
        )


async def _publish_update(ticket: TicketResponse, action: str, messages: List[SupportMessageResponse] = ()) -> None:
    """Push new messages to the ticket room and the ticket to the dashboard."""
    room = TicketRoom(ticket.id)
    for msg in messages:
        await rooms.registry.broadcast(
            room, Envelope(type="new-support-message", payload=msg.model_dump(mode="json"))
        )
    update = Envelope(
        type="ticket-updated",
        payload={"action": action, "ticket": ticket.model_dump(mode="json")},
    )
    await rooms.registry.broadcast(DashboardRoom(), update)
    if action != "message":
        await rooms.registry.broadcast(
            room,
            Envelope(type="ticket-updated", payload=dict(update.payload)),
        )


async def _notify_safely(user_id: int, type: NotificationType, message: str, title: str, data: Dict[str, Any]) -> None:
    try:
        await notifications.notify(user_id, type, message, title=title, data=data)
    except ServiceError:
        logger.exception("support.notify_fail", extra={"user_id": user_id, "type": type.value})


# ─── joining ───────────────────────────────────────────────────────────────

async def join_ticket(conn: Connection, ticket_id: int) -> TicketResponse:
    def _load(db: Session) -> TicketResponse:
        return _ticket(can_view_ticket(db, conn.user_id, conn.identity.role, ticket_id))

    ticket = await db_call(_load)
    rooms.registry.join(conn, TicketRoom(ticket_id))
    return ticket


async def join_live_chat(conn: Connection, ticket_id: int) -> TicketResponse:
    """Join the ticket room and announce the caller to the other side."""
    ticket = await join_ticket(conn, ticket_id)
    await rooms.registry.broadcast(
        TicketRoom(ticket_id),
        Envelope(
            type="user-joined-chat",
            payload={
                "userId": conn.user_id,
                "ticketId": ticket_id,
                "role": support_sender_role(conn.identity.role).value,
            },
        ),
        exclude=conn,
    )
    return ticket


def _open_ticket_count(db: Session) -> int:
    return (
        db.query(models.SupportTicket.id)
        .filter(models.SupportTicket.status.in_([models.TicketStatus.OPEN, models.TicketStatus.IN_PROGRESS]))
        .count()
    )


async def join_dashboard(conn: Connection) -> Dict[str, int]:
    rooms.registry.join(conn, DashboardRoom())
    return {"activeTickets": await db_call(_open_ticket_count)}


# ─── messages ──────────────────────────────────────────────────────────────

def _authorize(db: Session, identity: ConnectionIdentity, ticket_id: int) -> None:
    can_send_on_ticket(db, identity.user_id, identity.role, ticket_id).raise_if_denied()


def _post(
    db: Session,
    identity: ConnectionIdentity,
    ticket_id: int,
    text: str,
    kind: models.MessageKind,
    attachments: List[Dict[str, Any]],
) -> Tuple[List[SupportMessageResponse], TicketResponse, bool]:
    # Re-checked in the writing session: the ticket may have closed meanwhile
    can_send_on_ticket(db, identity.user_id, identity.role, ticket_id).raise_if_denied()
    ticket = crud_support.get_ticket(db, ticket_id)
    sender_role = support_sender_role(identity.role)
    msg = crud_support.add_message(
        db, ticket, identity.user_id, sender_role, text, kind=kind, attachments=attachments, commit=False
    )
    created = [msg]
    assigned = False
    if is_agent(identity.role) and crud_support.claim_if_unassigned(db, ticket, identity.user_id):
        assigned = True
        agent = crud_user.get_user(db, identity.user_id)
        name = agent.full_name if agent and agent.full_name else "A support agent"
        created.append(
            crud_support.add_message(
                db,
                ticket,
                identity.user_id,
                sender_role,
                f"{name} has been assigned to this ticket",
                kind=models.MessageKind.SYSTEM,
                system_event=models.SupportSystemEvent.ASSIGNED,
                commit=False,
            )
        )
    db.commit()
    for m in created:
        db.refresh(m)
    db.refresh(ticket)
    return [_message(m) for m in created], _ticket(ticket), assigned


async def send_support_message(conn: Connection, data: SupportMessageIn) -> SupportMessageResponse:
    identity = conn.identity
    await db_call(_authorize, identity, data.ticket_id)
    text = validate_body(identity, data.content.text, data.content.media, data.message_type)
    attachments, uploaded = await store_media(data.content.media, f"support/{data.ticket_id}")

    try:
        created, ticket, assigned = await db_call(
            _post, identity, data.ticket_id, text, data.message_type, attachments
        )
    except Exception:
        discard_media(uploaded)
        raise
    metrics_incr("support.message.sent", tags={"assigned": assigned})
    await _publish_update(ticket, "assigned" if assigned else "message", created)

    message = created[0]
    info = {"ticketId": ticket.id, "messageId": message.id}
    preview = (text or "Sent an attachment")[:200]
    if is_agent(identity.role):
        if ticket.requester_id != identity.user_id:
            await _notify_safely(
                ticket.requester_id,
                NotificationType.SUPPORT_MESSAGE,
                preview,
                f"New reply on ticket: {ticket.title}",
                info,
            )
    elif ticket.assigned_agent_id is not None:
        await _notify_safely(
            ticket.assigned_agent_id,
            NotificationType.SUPPORT_MESSAGE,
            preview,
            f"New message on ticket: {ticket.title}",
            info,
        )
    else:
        spawn(
            notifications.notify_admins(
                NotificationType.SUPPORT_MESSAGE,
                preview,
                title=f"New message on ticket: {ticket.title}",
                data=info,
            ),
            name=f"notify-admins:ticket:{ticket.id}",
        )
    return message


async def typing(conn: Connection, ticket_id: int, is_typing: bool) -> None:
    room = TicketRoom(ticket_id)
    if not rooms.registry.in_room(conn, room):
        raise AuthorizationError("Join the ticket before sending typing signals")
    await rooms.registry.broadcast(
        room,
        Envelope(
            type="support-user-typing",
            payload={"userId": conn.user_id, "ticketId": ticket_id, "isTyping": is_typing},
        ),
        exclude=conn,
    )


def _mark_read(db: Session, identity: ConnectionIdentity, message_id: int) -> Tuple[int, bool]:
    msg = crud_support.get_support_message(db, message_id)
    if msg is None:
        raise NotFoundError("Support message not found")
    can_view_ticket(db, identity.user_id, identity.role, msg.ticket_id)
    created = crud_support.mark_message_read(db, msg, identity.user_id)
    return int(msg.ticket_id), created


async def mark_message_read(conn: Connection, message_id: int) -> Dict[str, Any]:
    """Record the caller's receipt; other readers' receipts are untouched."""
    ticket_id, created = await db_call(_mark_read, conn.identity, message_id)
    payload = {"messageId": message_id, "ticketId": ticket_id, "userId": conn.user_id}
    if created:
        await rooms.registry.broadcast(
            TicketRoom(ticket_id), Envelope(type="support-message-read", payload=payload)
        )
    return payload


# ─── explicit lifecycle ────────────────────────────────────────────────────

def _create(db: Session, identity: ConnectionIdentity, data: TicketCreate) -> Tuple[TicketResponse, SupportMessageResponse]:
    requester = crud_user.get_user(db, identity.user_id)
    if requester is None:
        raise NotFoundError("User not found")
    ticket = crud_support.create_ticket(
        db,
        requester,
        title=data.title,
        description=data.description,
        category=data.category,
        priority=data.priority,
        system_role=support_sender_role(identity.role),
    )
    return _ticket(ticket), _message(crud_support.get_messages(db, ticket.id)[0])


async def create_ticket(identity: ConnectionIdentity, data: TicketCreate) -> TicketResponse:
    ticket, created_msg = await db_call(_create, identity, data)
    metrics_incr("support.ticket.created", tags={"category": ticket.category.value})
    await _publish_update(ticket, "created", [created_msg])
    spawn(
        notifications.notify_admins(
            NotificationType.NEW_SUPPORT_TICKET,
            f"New support ticket: {ticket.title}",
            title="New support ticket",
            data={"ticketId": ticket.id, "category": ticket.category.value},
            priority=(
                models.NotificationPriority.HIGH
                if ticket.priority in (models.TicketPriority.HIGH, models.TicketPriority.URGENT)
                else models.NotificationPriority.MEDIUM
            ),
            exclude=[identity.user_id],
        ),
        name=f"notify-admins:new-ticket:{ticket.id}",
    )
    return ticket


def _assign(
    db: Session, identity: ConnectionIdentity, ticket_id: int, agent_id: int
) -> Tuple[TicketResponse, SupportMessageResponse]:
    ticket = crud_support.get_ticket(db, ticket_id)
    if ticket is None:
        raise NotFoundError("ticket not found")
    agent = crud_user.get_user(db, agent_id)
    if agent is None or not agent.is_active or not is_agent(agent.role):
        raise ValidationError("Tickets can only be assigned to support agents")
    if ticket.assigned_agent_id is not None and ticket.assigned_agent_id != agent_id:
        raise ValidationError("Ticket is already assigned to another agent")
    if ticket.status in (models.TicketStatus.RESOLVED, models.TicketStatus.CLOSED):
        raise ValidationError(f"Cannot assign a {ticket.status.value} ticket")
    if ticket.status == models.TicketStatus.OPEN:
        _check_transition(ticket, models.TicketStatus.IN_PROGRESS)
        ticket.status = models.TicketStatus.IN_PROGRESS
    ticket.assigned_agent_id = agent_id
    name = agent.full_name or "A support agent"
    msg = crud_support.add_message(
        db,
        ticket,
        identity.user_id,
        support_sender_role(identity.role),
        f"{name} has been assigned to this ticket",
        kind=models.MessageKind.SYSTEM,
        system_event=models.SupportSystemEvent.ASSIGNED,
    )
    db.refresh(ticket)
    return _ticket(ticket), _message(msg)


async def assign_ticket(identity: ConnectionIdentity, ticket_id: int, agent_id: Optional[int] = None) -> TicketResponse:
    _require_agent(identity)
    target = int(agent_id or identity.user_id)
    ticket, msg = await db_call(_assign, identity, ticket_id, target)
    await _publish_update(ticket, "assigned", [msg])
    info = {"ticketId": ticket.id}
    await _notify_safely(
        ticket.requester_id,
        NotificationType.SUPPORT_ASSIGNED,
        f"An agent is now handling your ticket: {ticket.title}",
        "Support ticket assigned",
        info,
    )
    if target != identity.user_id:
        await _notify_safely(
            target,
            NotificationType.SUPPORT_ASSIGNED,
            f"You have been assigned ticket: {ticket.title}",
            "Support ticket assigned",
            info,
        )
    return ticket


def _resolve(
    db: Session, identity: ConnectionIdentity, ticket_id: int, notes: Optional[str]
) -> Tuple[TicketResponse, SupportMessageResponse]:
    ticket = crud_support.get_ticket(db, ticket_id)
    if ticket is None:
        raise NotFoundError("ticket not found")
    if ticket.status == models.TicketStatus.RESOLVED:
        raise ValidationError("Ticket is already resolved")
    _check_transition(ticket, models.TicketStatus.RESOLVED)
    ticket.status = models.TicketStatus.RESOLVED
    ticket.resolution_notes = notes
    ticket.resolved_by_id = identity.user_id
    ticket.resolved_at = datetime.utcnow()
    if ticket.assigned_agent_id is None:
        ticket.assigned_agent_id = identity.user_id
    msg = crud_support.add_message(
        db,
        ticket,
        identity.user_id,
        support_sender_role(identity.role),
        f"Ticket resolved{': ' + notes if notes else ''}",
        kind=models.MessageKind.SYSTEM,
        system_event=models.SupportSystemEvent.RESOLVED,
    )
    db.refresh(ticket)
    return _ticket(ticket), _message(msg)


async def resolve_ticket(identity: ConnectionIdentity, ticket_id: int, notes: Optional[str] = None) -> TicketResponse:
    _require_agent(identity)
    ticket, msg = await db_call(_resolve, identity, ticket_id, notes)
    await _publish_update(ticket, "resolved", [msg])
    await _notify_safely(
        ticket.requester_id,
        NotificationType.TICKET_RESOLVED,
        f"Your support ticket has been resolved: {ticket.title}",
        "Support ticket resolved",
        {"ticketId": ticket.id},
    )
    return ticket


def _close(db: Session, identity: ConnectionIdentity, ticket_id: int) -> Tuple[TicketResponse, SupportMessageResponse]:
    ticket = crud_support.get_ticket(db, ticket_id)
    if ticket is None:
        raise NotFoundError("ticket not found")
    _check_transition(ticket, models.TicketStatus.CLOSED)
    ticket.status = models.TicketStatus.CLOSED
    msg = crud_support.add_message(
        db,
        ticket,
        identity.user_id,
        support_sender_role(identity.role),
        "Ticket closed",
        kind=models.MessageKind.SYSTEM,
        system_event=models.SupportSystemEvent.STATUS_CHANGED,
    )
    db.refresh(ticket)
    return _ticket(ticket), _message(msg)


async def close_ticket(identity: ConnectionIdentity, ticket_id: int) -> TicketResponse:
    """Close a ticket. Only agents may close."""
    _require_agent(identity)
    ticket, msg = await db_call(_close, identity, ticket_id)
    await _publish_update(ticket, "closed", [msg])
    if identity.user_id != ticket.requester_id:
        await _notify_safely(
            ticket.requester_id,
            NotificationType.TICKET_CLOSED,
            f"Your support ticket was closed: {ticket.title}",
            "Support ticket closed",
            {"ticketId": ticket.id},
        )
    return ticket


def _get(db: Session, identity: ConnectionIdentity, ticket_id: int) -> Tuple[TicketResponse, List[SupportMessageResponse]]:
    ticket = can_view_ticket(db, identity.user_id, identity.role, ticket_id)
    return _ticket(ticket), [_message(m) for m in crud_support.get_messages(db, ticket_id)]


async def get_ticket(identity: ConnectionIdentity, ticket_id: int) -> Tuple[TicketResponse, List[SupportMessageResponse]]:
    return await db_call(_get, identity, ticket_id)


def _list(db: Session, identity: ConnectionIdentity, status: Optional[models.TicketStatus]) -> List[TicketResponse]:
    requester = None if is_agent(identity.role) else identity.user_id
    return [_ticket(t) for t in crud_support.list_tickets(db, status=status, requester_id=requester)]


async def list_tickets(identity: ConnectionIdentity, status: Optional[models.TicketStatus] = None) -> List[TicketResponse]:
    """Agents see every ticket; everyone else only their own."""
    return await db_call(_list, identity, status)
