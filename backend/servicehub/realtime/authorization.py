"""Who may send a message where.

``can_send`` runs before every send attempt and never writes anything; a
denial is reported back to the sender as an ``error`` event.

Rules, in order:

1. Sender and recipient must both be participants of the conversation.
2. In a direct conversation a provider may only message a client once an
   accepted quote links them on the conversation's job, or after the client
   has written in this conversation.
3. On a support ticket the requester and any agent may send; closed
   tickets take no new messages.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from .. import models
from ..crud import crud_conversation, crud_message, crud_quote, crud_support
from .errors import AuthorizationError, NotFoundError
from .roles import is_agent, is_provider, is_requester, normalize_role

NOT_A_PARTICIPANT = "not a participant"
CONVERSATION_NOT_FOUND = "conversation not found"
TICKET_NOT_FOUND = "ticket not found"
TICKET_CLOSED = "ticket is closed"
CONVERSATION_INACTIVE = "conversation is no longer active"
PROVIDER_NOT_ENGAGED = "You can only message clients after they have accepted your quote"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None
    not_found: bool = False

    def raise_if_denied(self) -> None:
        if self.allowed:
            return
        if self.not_found:
            raise NotFoundError(self.reason or "not found")
        raise AuthorizationError(self.reason or "forbidden")


ALLOW = Decision(True)


def deny(reason: str, not_found: bool = False) -> Decision:
    return Decision(False, reason, not_found)


def _provider_engaged(
    db: Session, conv: models.Conversation, provider_id: int, client_id: int
) -> bool:
    if conv.job_id is not None:
        return crud_quote.has_accepted_quote(db, provider_id, client_id, job_id=conv.job_id)
    if conv.quote_id is not None:
        quote = crud_quote.get_quote(db, conv.quote_id)
        return bool(
            quote
            and quote.provider_id == provider_id
            and quote.client_id == client_id
            and quote.status == models.QuoteStatus.ACCEPTED
        )
    return crud_quote.has_accepted_quote(db, provider_id, client_id)


def can_send_in_conversation(
    db: Session,
    sender_id: int,
    sender_role,
    recipient_id: Optional[int],
    conversation_id: int,
) -> Decision:
    conv = crud_conversation.get_conversation(db, conversation_id)
    if conv is None:
        return deny(CONVERSATION_NOT_FOUND, not_found=True)
    sender = conv.participant(sender_id)
    if recipient_id is None:
        other = conv.other_participant(sender_id)
        recipient_id = other.user_id if other else None
    recipient = conv.participant(recipient_id) if recipient_id is not None else None
    if sender is None or recipient is None or recipient_id == sender_id:
        return deny(NOT_A_PARTICIPANT)
    if not conv.is_active:
        return deny(CONVERSATION_INACTIVE)

    if is_provider(sender_role) and is_requester(recipient.role):
        if _provider_engaged(db, conv, sender_id, recipient_id):
            return ALLOW
        if crud_message.has_sent_message(db, conversation_id, recipient_id):
            return ALLOW
        return deny(PROVIDER_NOT_ENGAGED)
    return ALLOW


def can_send_on_ticket(db: Session, sender_id: int, sender_role, ticket_id: int) -> Decision:
    ticket = crud_support.get_ticket(db, ticket_id)
    if ticket is None:
        return deny(TICKET_NOT_FOUND, not_found=True)
    if ticket.requester_id != sender_id and not is_agent(sender_role):
        return deny(NOT_A_PARTICIPANT)
    if ticket.status == models.TicketStatus.CLOSED:
        return deny(TICKET_CLOSED)
    return ALLOW


def can_send(
    db: Session,
    sender_id: int,
    sender_role,
    recipient_id: Optional[int] = None,
    conversation_id: Optional[int] = None,
    ticket_id: Optional[int] = None,
) -> Decision:
    """Decide whether ``sender_id`` may post to the conversation or ticket."""
    if normalize_role(sender_role) is None:
        return deny(NOT_A_PARTICIPANT)
    if ticket_id is not None:
        return can_send_on_ticket(db, sender_id, sender_role, ticket_id)
    if conversation_id is not None:
        return can_send_in_conversation(db, sender_id, sender_role, recipient_id, conversation_id)
    return deny(NOT_A_PARTICIPANT)


def can_view_ticket(db: Session, user_id: int, role, ticket_id: int) -> models.SupportTicket:
    """Return the ticket when ``user_id`` may read it, else raise."""
    ticket = crud_support.get_ticket(db, ticket_id)
    if ticket is None:
        raise NotFoundError(TICKET_NOT_FOUND)
    if ticket.requester_id != user_id and not is_agent(role):
        raise AuthorizationError(NOT_A_PARTICIPANT)
    return ticket


def require_participant(db: Session, user_id: int, conversation_id: int) -> models.Conversation:
    conv = crud_conversation.get_conversation(db, conversation_id)
    if conv is None:
        raise NotFoundError(CONVERSATION_NOT_FOUND)
    if conv.participant(user_id) is None:
        raise AuthorizationError(NOT_A_PARTICIPANT)
    return conv
