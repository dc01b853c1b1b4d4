from fastapi import APIRouter, Depends, status
from typing import List, Optional

from .. import models
from ..realtime import support
from ..realtime.protocol import ConnectionIdentity
from ..schemas.support import (
    SupportMessageResponse,
    TicketAssign,
    TicketCreate,
    TicketResolve,
    TicketResponse,
)
from .dependencies import get_current_agent, get_current_identity

router = APIRouter(tags=["support"])


@router.post("/support/tickets", response_model=TicketResponse, status_code=status.HTTP_201_CREATED)
async def create_ticket(
    ticket_in: TicketCreate,
    identity: ConnectionIdentity = Depends(get_current_identity),
):
    """Open a ticket and alert every support agent."""
    return await support.create_ticket(identity, ticket_in)


@router.get("/support/tickets", response_model=List[TicketResponse])
async def list_tickets(
    status_filter: Optional[models.TicketStatus] = None,
    identity: ConnectionIdentity = Depends(get_current_identity),
):
    return await support.list_tickets(identity, status_filter)


@router.get("/support/tickets/{ticket_id}/messages", response_model=List[SupportMessageResponse])
async def read_ticket_messages(
    ticket_id: int,
    identity: ConnectionIdentity = Depends(get_current_identity),
):
    _, messages = await support.get_ticket(identity, ticket_id)
    return messages


@router.post("/support/tickets/{ticket_id}/assign", response_model=TicketResponse)
async def assign_ticket(
    ticket_id: int,
    body: Optional[TicketAssign] = None,
    identity: ConnectionIdentity = Depends(get_current_agent),
):
    """Assign to ``agent_id`` (defaults to the caller)."""
    agent_id = body.agent_id if body else None
    return await support.assign_ticket(identity, ticket_id, agent_id)


@router.post("/support/tickets/{ticket_id}/resolve", response_model=TicketResponse)
async def resolve_ticket(
    ticket_id: int,
    body: Optional[TicketResolve] = None,
    identity: ConnectionIdentity = Depends(get_current_agent),
):
    return await support.resolve_ticket(identity, ticket_id, body.resolution_notes if body else None)


@router.post("/support/tickets/{ticket_id}/close", response_model=TicketResponse)
async def close_ticket(
    ticket_id: int,
    identity: ConnectionIdentity = Depends(get_current_agent),
):
    return await support.close_ticket(identity, ticket_id)
