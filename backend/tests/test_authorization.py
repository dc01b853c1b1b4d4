import pytest

from servicehub import models
from servicehub.crud import crud_message
from servicehub.realtime.authorization import (
    NOT_A_PARTICIPANT,
    PROVIDER_NOT_ENGAGED,
    TICKET_CLOSED,
    can_send,
    can_view_ticket,
)
from servicehub.realtime.errors import AuthorizationError, NotFoundError
from servicehub.realtime import roles
from servicehub.realtime.roles import is_agent, normalize_role, support_sender_role


def test_role_table_maps_legacy_spellings():
    assert normalize_role("Customer") == models.UserRole.CLIENT
    assert normalize_role("service_provider") == models.UserRole.PROVIDER
    assert normalize_role("support_agent") == models.UserRole.AGENT
    assert normalize_role("wizard") is None
    assert is_agent("admin") and is_agent(models.UserRole.AGENT)
    assert not is_agent("client")
    assert support_sender_role("provider") == models.SupportSenderRole.USER
    assert support_sender_role("agent") == models.SupportSenderRole.ADMIN


def test_model_enum_and_role_helpers_share_one_spelling_table(monkeypatch):
    assert models.UserRole("service_provider") is models.UserRole.PROVIDER
    assert models.UserRole(" ADMIN ") is models.UserRole.ADMIN
    with pytest.raises(ValueError):
        models.UserRole("wizard")

    monkeypatch.setitem(roles.ROLE_SPELLINGS, "handyman", models.UserRole.PROVIDER)

    assert models.UserRole("Handyman") is models.UserRole.PROVIDER
    assert normalize_role("handyman") is models.UserRole.PROVIDER


def test_provider_blocked_without_accepted_quote(Session, make_user, make_conversation):
    client_user = make_user(models.UserRole.CLIENT)
    provider = make_user(models.UserRole.PROVIDER)
    conv_id = make_conversation(client_user, provider, job_id=5)

    db = Session()
    decision = can_send(db, provider.id, provider.role, client_user.id, conversation_id=conv_id)
    db.close()

    assert not decision.allowed
    assert decision.reason == PROVIDER_NOT_ENGAGED
    with pytest.raises(AuthorizationError):
        decision.raise_if_denied()


def test_provider_allowed_after_quote_accepted(Session, make_user, make_conversation, make_quote):
    client_user = make_user(models.UserRole.CLIENT)
    provider = make_user(models.UserRole.PROVIDER)
    conv_id = make_conversation(client_user, provider, job_id=5)
    make_quote(provider, client_user, job_id=5, status=models.QuoteStatus.PENDING)

    db = Session()
    assert not can_send(db, provider.id, provider.role, client_user.id, conversation_id=conv_id).allowed
    db.close()

    make_quote(provider, client_user, job_id=5, status=models.QuoteStatus.ACCEPTED)
    db = Session()
    assert can_send(db, provider.id, provider.role, client_user.id, conversation_id=conv_id).allowed
    db.close()


def test_accepted_quote_on_another_job_does_not_count(Session, make_user, make_conversation, make_quote):
    client_user = make_user(models.UserRole.CLIENT)
    provider = make_user(models.UserRole.PROVIDER)
    conv_id = make_conversation(client_user, provider, job_id=5)
    make_quote(provider, client_user, job_id=6)

    db = Session()
    assert not can_send(db, provider.id, provider.role, client_user.id, conversation_id=conv_id).allowed
    db.close()


def test_provider_may_reply_once_client_has_written(Session, make_user, make_conversation):
    client_user = make_user(models.UserRole.CLIENT)
    provider = make_user(models.UserRole.PROVIDER)
    conv_id = make_conversation(client_user, provider)

    db = Session()
    crud_message.create_message(db, conv_id, client_user.id, provider.id, "Are you free on Friday?")
    decision = can_send(db, provider.id, provider.role, client_user.id, conversation_id=conv_id)
    db.close()

    assert decision.allowed


def test_client_may_always_message_provider(Session, make_user, make_conversation):
    client_user = make_user(models.UserRole.CLIENT)
    provider = make_user(models.UserRole.PROVIDER)
    conv_id = make_conversation(client_user, provider, job_id=3)

    db = Session()
    assert can_send(db, client_user.id, client_user.role, provider.id, conversation_id=conv_id).allowed
    db.close()


def test_outsider_is_not_a_participant(Session, make_user, make_conversation):
    alice = make_user()
    bob = make_user()
    mallory = make_user()
    conv_id = make_conversation(alice, bob)

    db = Session()
    as_sender = can_send(db, mallory.id, mallory.role, bob.id, conversation_id=conv_id)
    as_recipient = can_send(db, alice.id, alice.role, mallory.id, conversation_id=conv_id)
    db.close()

    assert as_sender.reason == NOT_A_PARTICIPANT
    assert as_recipient.reason == NOT_A_PARTICIPANT


def test_missing_conversation_is_not_found(Session, make_user):
    alice = make_user()
    db = Session()
    decision = can_send(db, alice.id, alice.role, conversation_id=999)
    db.close()
    assert decision.not_found
    with pytest.raises(NotFoundError):
        decision.raise_if_denied()


def test_ticket_rules(Session, make_user, make_ticket):
    requester = make_user(models.UserRole.CLIENT)
    stranger = make_user(models.UserRole.PROVIDER)
    agent = make_user(models.UserRole.AGENT)
    ticket_id = make_ticket(requester)

    db = Session()
    assert can_send(db, requester.id, requester.role, ticket_id=ticket_id).allowed
    assert can_send(db, agent.id, agent.role, ticket_id=ticket_id).allowed
    assert can_send(db, stranger.id, stranger.role, ticket_id=ticket_id).reason == NOT_A_PARTICIPANT

    ticket = db.get(models.SupportTicket, ticket_id)
    ticket.status = models.TicketStatus.CLOSED
    db.commit()
    assert can_send(db, agent.id, agent.role, ticket_id=ticket_id).reason == TICKET_CLOSED

    with pytest.raises(AuthorizationError):
        can_view_ticket(db, stranger.id, stranger.role, ticket_id)
    assert can_view_ticket(db, agent.id, agent.role, ticket_id).id == ticket_id
    db.close()


def test_unknown_role_is_denied(Session, make_user, make_conversation):
    alice = make_user()
    bob = make_user()
    conv_id = make_conversation(alice, bob)
    db = Session()
    assert not can_send(db, alice.id, "wizard", bob.id, conversation_id=conv_id).allowed
    db.close()
