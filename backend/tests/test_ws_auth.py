from datetime import timedelta

import pytest
from fastapi import WebSocketDisconnect

from servicehub import models
from servicehub.core.config import settings
from servicehub.realtime.presence import presence
from servicehub.realtime.rooms import registry

from conftest import create_access_token, receive_until, send_event, token_for, ws_path


def _expect_close(client, path, code=4401, **kwargs):
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(path, **kwargs) as ws:
            ws.receive_json()
    assert exc.value.code == code


def test_missing_token_is_rejected(client):
    _expect_close(client, ws_path())
    assert registry.connections == {}


def test_invalid_token_is_rejected(client):
    _expect_close(client, ws_path("not-a-jwt"))
    assert registry.connections == {}


def test_expired_token_is_rejected(client, make_user):
    user = make_user()
    token = token_for(user, expires_delta=timedelta(minutes=-5))
    _expect_close(client, ws_path(token))
    assert registry.connections == {}
    assert not presence.is_online(user.id)


def test_refresh_token_is_rejected(client, make_user):
    user = make_user()
    _expect_close(client, ws_path(token_for(user, token_type="refresh")))


def test_token_for_unknown_user_is_rejected(client):
    _expect_close(client, ws_path(create_access_token(4242)))


def test_inactive_user_is_rejected(client, make_user):
    user = make_user(is_active=False)
    _expect_close(client, ws_path(token_for(user)))


def test_query_token_connects_and_reports_identity(client, make_user):
    user = make_user(models.UserRole.PROVIDER)
    with client.websocket_connect(ws_path(token_for(user))) as ws:
        hello = receive_until(ws, "connected")
        assert hello["payload"]["userId"] == user.id
        assert hello["payload"]["role"] == "provider"
        assert presence.is_online(user.id)
    assert not presence.is_online(user.id)
    assert registry.connections == {}


def test_subprotocol_token_is_accepted(client, make_user):
    user = make_user()
    with client.websocket_connect(ws_path(), subprotocols=["bearer", token_for(user)]) as ws:
        assert ws.accepted_subprotocol == "bearer"
        assert receive_until(ws, "connected")["payload"]["userId"] == user.id


def test_authorization_header_is_accepted(client, make_user):
    user = make_user()
    headers = {"Authorization": f"Bearer {token_for(user)}"}
    with client.websocket_connect(ws_path(), headers=headers) as ws:
        assert receive_until(ws, "connected")["payload"]["userId"] == user.id


def test_role_comes_from_the_account_not_the_token(client, make_user):
    user = make_user(models.UserRole.CLIENT)
    token = token_for(user, role="admin")
    with client.websocket_connect(ws_path(token)) as ws:
        assert receive_until(ws, "connected")["payload"]["role"] == "client"


def test_connection_limit_closes_with_4403(client, make_user, monkeypatch):
    monkeypatch.setattr(settings, "WS_PER_USER_LIMIT", 1)
    user = make_user()
    token = token_for(user)
    with client.websocket_connect(ws_path(token)) as first:
        receive_until(first, "connected")
        _expect_close(client, ws_path(token), code=4403)
        # the first socket is unaffected
        send_event(first, "ping")
        assert receive_until(first, "pong")["type"] == "pong"


def test_ping_pong_and_unknown_events_keep_socket_open(client, make_user):
    user = make_user()
    with client.websocket_connect(ws_path(token_for(user))) as ws:
        receive_until(ws, "connected")
        send_event(ws, "ping")
        assert receive_until(ws, "pong")["type"] == "pong"

        send_event(ws, "no-such-event")
        err = receive_until(ws, "error")
        assert err["payload"]["code"] == "validation_error"
        assert err["payload"]["event"] == "no-such-event"

        ws.send_text("{not json")
        assert receive_until(ws, "error")["payload"]["code"] == "validation_error"

        ws.send_json({"v": 2, "type": "ping"})
        assert receive_until(ws, "error")["payload"]["message"] == "Unsupported protocol version"

        send_event(ws, "ping")
        assert receive_until(ws, "pong")["type"] == "pong"


def test_status_change_is_announced_to_other_users(client, make_user):
    alice = make_user()
    bob = make_user()
    with client.websocket_connect(ws_path(token_for(alice))) as a:
        receive_until(a, "connected")
        with client.websocket_connect(ws_path(token_for(bob))) as b:
            receive_until(b, "connected")
            online = receive_until(a, "user-status-changed")
            assert online["payload"]["userId"] == bob.id
            assert online["payload"]["isOnline"] is True
    assert not presence.is_online(bob.id)
