import asyncio
import base64

import pytest

from servicehub import models
from servicehub.realtime import support
from servicehub.realtime.errors import AuthorizationError, ValidationError
from servicehub.realtime.rooms import DashboardRoom, TicketRoom, registry
from servicehub.realtime.tasks import drain
from servicehub.schemas.support import SupportMessageIn, TicketCreate
from servicehub.services.attachment_store import set_attachment_store

from conftest import make_conn, receive_until, send_event, token_for, ws_path


def _ticket(Session, ticket_id):
    db = Session()
    ticket = db.get(models.SupportTicket, ticket_id)
    db.close()
    return ticket


def _messages(Session, ticket_id):
    db = Session()
    rows = (
        db.query(models.SupportMessage)
        .filter(models.SupportMessage.ticket_id == ticket_id)
        .order_by(models.SupportMessage.id)
        .all()
    )
    db.close()
    return rows


def _send(conn, ticket_id, text):
    async def run():
        msg = await support.send_support_message(
            conn, SupportMessageIn.model_validate({"ticketId": ticket_id, "content": {"text": text}})
        )
        await drain()
        return msg

    return asyncio.run(run())


def test_first_agent_reply_claims_ticket_and_second_does_not_reassign(Session, make_user, make_ticket):
    requester = make_user(models.UserRole.CLIENT)
    agent_x = make_user(models.UserRole.AGENT, full_name="Xena")
    agent_y = make_user(models.UserRole.ADMIN, full_name="Yuri")
    ticket_id = make_ticket(requester)

    x = make_conn(agent_x)
    y = make_conn(agent_y)
    watcher = make_conn(requester)
    registry.join(watcher, TicketRoom(ticket_id))

    _send(x, ticket_id, "Looking into it")
    ticket = _ticket(Session, ticket_id)
    assert ticket.status == models.TicketStatus.IN_PROGRESS
    assert ticket.assigned_agent_id == agent_x.id

    _send(y, ticket_id, "Adding a note")
    ticket = _ticket(Session, ticket_id)
    assert ticket.assigned_agent_id == agent_x.id
    assert ticket.status == models.TicketStatus.IN_PROGRESS

    rows = _messages(Session, ticket_id)
    assert [r.system_event for r in rows] == [
        models.SupportSystemEvent.TICKET_CREATED,
        None,
        models.SupportSystemEvent.ASSIGNED,
        None,
    ]
    assert rows[2].text == "Xena has been assigned to this ticket"
    assert rows[1].sender_role == models.SupportSenderRole.ADMIN

    pushed = watcher.ws.events("new-support-message")
    assert [f["payload"]["text"] for f in pushed] == [
        "Looking into it",
        "Xena has been assigned to this ticket",
        "Adding a note",
    ]
    updates = watcher.ws.events("ticket-updated")
    assert [u["payload"]["action"] for u in updates] == ["assigned"]


def test_requester_message_notifies_assigned_agent(Session, make_user, make_ticket):
    requester = make_user(models.UserRole.PROVIDER)
    agent = make_user(models.UserRole.AGENT)
    ticket_id = make_ticket(requester)
    _send(make_conn(agent), ticket_id, "Hello")

    _send(make_conn(requester), ticket_id, "Still broken")

    db = Session()
    to_agent = db.query(models.Notification).filter(models.Notification.user_id == agent.id).all()
    to_requester = db.query(models.Notification).filter(models.Notification.user_id == requester.id).all()
    db.close()
    assert [n.type for n in to_agent] == ["support_message"]
    assert to_agent[0].data == {"ticketId": ticket_id, "messageId": to_agent[0].data["messageId"]}
    assert [n.type for n in to_requester] == ["support_message"]


def test_message_on_unassigned_ticket_alerts_all_agents(Session, make_user, make_ticket):
    requester = make_user()
    agents = [make_user(models.UserRole.AGENT), make_user(models.UserRole.ADMIN)]
    ticket_id = make_ticket(requester)

    _send(make_conn(requester), ticket_id, "Anyone there?")

    db = Session()
    owners = {n.user_id for n in db.query(models.Notification).all()}
    db.close()
    assert owners == {a.id for a in agents}


def test_closed_ticket_rejects_messages(Session, make_user, make_ticket):
    requester = make_user()
    agent = make_user(models.UserRole.AGENT)
    ticket_id = make_ticket(requester)
    asyncio.run(support.close_ticket(make_conn(agent).identity, ticket_id))

    with pytest.raises(AuthorizationError):
        _send(make_conn(agent), ticket_id, "too late")
    assert _ticket(Session, ticket_id).status == models.TicketStatus.CLOSED


def test_failed_support_write_discards_uploaded_attachments(Session, make_user, make_ticket, monkeypatch):
    requester = make_user()
    ticket_id = make_ticket(requester)
    stored, removed = {}, []

    class Store:
        def store(self, data, folder, filename=None, content_type=None):
            key = f"{folder}/{len(stored) + 1}"
            stored[key] = data
            return {"id": key, "url": f"https://media.test/{key}"}

        def remove(self, key):
            removed.append(key)
            stored.pop(key, None)

    set_attachment_store(Store())

    def closed_meanwhile(*args, **kwargs):
        raise AuthorizationError("ticket is closed")

    monkeypatch.setattr(support, "_post", closed_meanwhile)
    payload = {
        "ticketId": ticket_id,
        "content": {"media": [{"data": base64.b64encode(b"screenshot").decode(), "mimeType": "image/png"}]},
    }

    async def run():
        try:
            await support.send_support_message(make_conn(requester), SupportMessageIn.model_validate(payload))
        finally:
            await drain()

    with pytest.raises(AuthorizationError):
        asyncio.run(run())

    assert removed == [f"support/{ticket_id}/1"]
    assert stored == {}
    assert len(_messages(Session, ticket_id)) == 1


def test_outsider_cannot_post_or_join(make_user, make_ticket):
    requester = make_user()
    outsider = make_user()
    ticket_id = make_ticket(requester)
    conn = make_conn(outsider)

    with pytest.raises(AuthorizationError):
        _send(conn, ticket_id, "hi")
    with pytest.raises(AuthorizationError):
        asyncio.run(support.join_ticket(conn, ticket_id))
    with pytest.raises(AuthorizationError):
        asyncio.run(support.join_dashboard(conn))


def test_ticket_lifecycle(Session, make_user):
    requester = make_user()
    agent = make_user(models.UserRole.AGENT, full_name="Ada")
    dash = make_conn(agent)
    asyncio.run(support.join_dashboard(dash))

    async def create():
        ticket = await support.create_ticket(
            make_conn(requester).identity, TicketCreate(title="Refund", category="Billing", priority="urgent")
        )
        await drain()
        return ticket

    ticket = asyncio.run(create())
    assert ticket.status == models.TicketStatus.OPEN
    assert ticket.category == models.TicketCategory.BILLING
    assert [u["payload"]["action"] for u in dash.ws.events("ticket-updated")] == ["created"]

    db = Session()
    alert = db.query(models.Notification).filter(models.Notification.user_id == agent.id).one()
    db.close()
    assert alert.type == "new_support_ticket"
    assert alert.priority == models.NotificationPriority.HIGH

    with pytest.raises(AuthorizationError):
        asyncio.run(support.resolve_ticket(make_conn(requester).identity, ticket.id))

    assigned = asyncio.run(support.assign_ticket(dash.identity, ticket.id))
    assert assigned.assigned_agent_id == agent.id
    assert assigned.status == models.TicketStatus.IN_PROGRESS

    resolved = asyncio.run(support.resolve_ticket(dash.identity, ticket.id, "Refund issued"))
    assert resolved.status == models.TicketStatus.RESOLVED
    assert resolved.resolved_by_id == agent.id
    assert resolved.resolution_notes == "Refund issued"

    with pytest.raises(ValidationError) as exc:
        asyncio.run(support.resolve_ticket(dash.identity, ticket.id))
    assert exc.value.message == "Ticket is already resolved"

    with pytest.raises(AuthorizationError):
        asyncio.run(support.close_ticket(make_conn(requester).identity, ticket.id))

    closed = asyncio.run(support.close_ticket(dash.identity, ticket.id))
    assert closed.status == models.TicketStatus.CLOSED
    with pytest.raises(ValidationError):
        asyncio.run(support.close_ticket(dash.identity, ticket.id))

    actions = [u["payload"]["action"] for u in dash.ws.events("ticket-updated")]
    assert actions == ["created", "assigned", "resolved", "closed"]


def test_requester_cannot_close_untouched_ticket(Session, make_user, make_ticket):
    requester = make_user(models.UserRole.CLIENT)
    ticket_id = make_ticket(requester)
    watcher = make_conn(requester)
    registry.join(watcher, TicketRoom(ticket_id))

    with pytest.raises(AuthorizationError):
        asyncio.run(support.close_ticket(make_conn(requester).identity, ticket_id))

    ticket = _ticket(Session, ticket_id)
    assert ticket.status == models.TicketStatus.OPEN
    assert [r.system_event for r in _messages(Session, ticket_id)] == [
        models.SupportSystemEvent.TICKET_CREATED
    ]
    assert watcher.ws.events() == []


def test_assign_rejects_non_agents_and_taken_tickets(make_user, make_ticket):
    requester = make_user()
    agent = make_user(models.UserRole.AGENT)
    other_agent = make_user(models.UserRole.AGENT)
    ticket_id = make_ticket(requester)
    agent_identity = make_conn(agent).identity

    with pytest.raises(ValidationError):
        asyncio.run(support.assign_ticket(agent_identity, ticket_id, requester.id))

    asyncio.run(support.assign_ticket(agent_identity, ticket_id, agent.id))
    with pytest.raises(ValidationError):
        asyncio.run(support.assign_ticket(agent_identity, ticket_id, other_agent.id))


def test_support_read_receipts_are_per_reader(Session, make_user, make_ticket):
    requester = make_user()
    agent = make_user(models.UserRole.AGENT)
    ticket_id = make_ticket(requester)
    msg = _send(make_conn(requester), ticket_id, "Help please")

    agent_conn = make_conn(agent)
    registry.join(agent_conn, TicketRoom(ticket_id))
    first = asyncio.run(support.mark_message_read(agent_conn, msg.id))
    again = asyncio.run(support.mark_message_read(agent_conn, msg.id))

    assert first == {"messageId": msg.id, "ticketId": ticket_id, "userId": agent.id}
    assert again == first
    assert len(agent_conn.ws.events("support-message-read")) == 1

    db = Session()
    readers = [r.user_id for r in db.query(models.SupportMessageRead).all()]
    db.close()
    assert readers == [agent.id]


def test_support_chat_over_socket(client, make_user, make_ticket):
    requester = make_user()
    agent = make_user(models.UserRole.AGENT, full_name="Ada")
    ticket_id = make_ticket(requester)

    with client.websocket_connect(ws_path(token_for(requester))) as r, client.websocket_connect(
        ws_path(token_for(agent))
    ) as a:
        receive_until(r, "connected")
        receive_until(a, "connected")

        send_event(a, "join-support-dashboard")
        assert receive_until(a, "support-dashboard-joined")["payload"] == {"activeTickets": 1}

        send_event(r, "join-support-dashboard")
        assert receive_until(r, "error")["payload"]["code"] == "authorization_error"

        send_event(r, "join-support-ticket", {"ticketId": ticket_id})
        joined = receive_until(r, "support-ticket-joined")
        assert joined["payload"]["ticket"]["status"] == "open"

        send_event(a, "join-live-chat", {"ticketId": ticket_id})
        receive_until(a, "support-ticket-joined")
        assert receive_until(r, "user-joined-chat")["payload"]["role"] == "admin"

        send_event(a, "support-typing-start", {"ticketId": ticket_id})
        assert receive_until(r, "support-user-typing")["payload"]["isTyping"] is True

        send_event(a, "support-message", {"ticketId": ticket_id, "content": {"text": "On it"}})
        reply = receive_until(r, "new-support-message")
        assert reply["payload"]["text"] == "On it"
        assert reply["payload"]["sender_role"] == "admin"
        update = receive_until(r, "ticket-updated")
        assert update["payload"]["action"] == "assigned"
        assert update["payload"]["ticket"]["assigned_agent_id"] == agent.id

        send_event(r, "mark-support-message-read", {"messageId": reply["payload"]["id"]})
        receipt = receive_until(a, "support-message-read")
        assert receipt["payload"]["userId"] == requester.id
