from servicehub import models

from conftest import receive_until, send_event, token_for, ws_path


def _join(ws, conv_id):
    send_event(ws, "join-conversation", {"conversationId": conv_id})
    return receive_until(ws, "conversation-joined")


def test_requester_provider_conversation_flow(client, make_user, make_conversation):
    requester = make_user(models.UserRole.CLIENT)
    provider = make_user(models.UserRole.PROVIDER)
    conv_id = make_conversation(requester, provider, job_id=11)

    with client.websocket_connect(ws_path(token_for(requester))) as a, client.websocket_connect(
        ws_path(token_for(provider))
    ) as b:
        receive_until(a, "connected")
        receive_until(b, "connected")
        _join(a, conv_id)
        joined = _join(b, conv_id)
        assert joined["payload"] == {"conversationId": conv_id, "delivered": 0, "unreadCount": 0}
        assert receive_until(a, "user-joined-chat")["payload"]["userId"] == provider.id

        # provider may not open the conversation
        send_event(b, "send-message", {"conversationId": conv_id, "content": {"text": "Hi, I can help"}})
        err = receive_until(b, "error")
        assert err["payload"]["code"] == "authorization_error"
        assert err["payload"]["message"] == "You can only message clients after they have accepted your quote"
        assert err["payload"]["event"] == "send-message"

        # requester writes first
        send_event(a, "send-message", {"conversationId": conv_id, "content": {"text": "Need a plumber"}})
        at_b = receive_until(b, "new-message")
        at_a = receive_until(a, "new-message")
        assert at_b["payload"]["text"] == "Need a plumber"
        assert at_b["payload"]["sender_id"] == requester.id
        assert at_b["payload"]["recipient_id"] == provider.id
        assert at_b["topic"] == f"conversation:{conv_id}"
        assert at_a["payload"]["id"] == at_b["payload"]["id"]

        # now the provider reply goes through
        send_event(b, "send-message", {"conversationId": conv_id, "content": "Sure, tomorrow?"})
        reply = receive_until(a, "new-message")
        assert reply["payload"]["sender_id"] == provider.id
        assert reply["payload"]["text"] == "Sure, tomorrow?"


def test_message_notification_reaches_recipient_outside_the_room(client, make_user, make_conversation):
    alice = make_user(models.UserRole.CLIENT)
    bob = make_user(models.UserRole.CLIENT)
    conv_id = make_conversation(alice, bob)

    with client.websocket_connect(ws_path(token_for(alice))) as a, client.websocket_connect(
        ws_path(token_for(bob))
    ) as b:
        receive_until(a, "connected")
        receive_until(b, "connected")
        send_event(b, "join-notifications", {"userId": bob.id})
        assert receive_until(b, "notification-joined")["payload"] == {"unreadCount": 0}

        # alice sends without joining the room and still gets her own copy
        send_event(a, "send-message", {"conversationId": conv_id, "content": {"text": "ping"}})
        own = receive_until(a, "new-message")
        assert own["payload"]["text"] == "ping"

        nudge = receive_until(b, "message-notification")
        assert nudge["payload"]["conversationId"] == conv_id
        assert nudge["payload"]["unreadCount"] == 1
        assert nudge["payload"]["message"]["id"] == own["payload"]["id"]

        pushed = receive_until(b, "new-notification")
        assert pushed["payload"]["type"] == "new_message"
        assert pushed["payload"]["user_id"] == bob.id
        assert pushed["payload"]["data"]["conversationId"] == conv_id


def test_read_receipts_and_typing(client, make_user, make_conversation):
    alice = make_user()
    bob = make_user()
    conv_id = make_conversation(alice, bob)

    with client.websocket_connect(ws_path(token_for(alice))) as a, client.websocket_connect(
        ws_path(token_for(bob))
    ) as b:
        receive_until(a, "connected")
        receive_until(b, "connected")

        # typing outside the room is refused
        send_event(b, "typing-start", {"conversationId": conv_id})
        assert receive_until(b, "error")["payload"]["code"] == "authorization_error"

        _join(a, conv_id)
        _join(b, conv_id)

        send_event(b, "typing-start", {"conversationId": conv_id})
        typing = receive_until(a, "user-typing")
        assert typing["payload"] == {"userId": bob.id, "conversationId": conv_id, "isTyping": True}

        send_event(a, "send-message", {"conversationId": conv_id, "content": {"text": "one"}})
        send_event(a, "send-message", {"conversationId": conv_id, "content": {"text": "two"}})
        receive_until(b, "new-message")
        receive_until(b, "new-message")

        send_event(b, "mark-messages-read", {"conversationId": conv_id})
        receipt = receive_until(a, "messages-read")
        assert receipt["payload"] == {"userId": bob.id, "conversationId": conv_id, "count": 2}

        send_event(b, "get-online-status", {"userIds": [alice.id, 999]})
        statuses = receive_until(b, "online-status")["payload"]["statuses"]
        assert statuses[0]["userId"] == alice.id and statuses[0]["isOnline"] is True
        assert statuses[1] == {"userId": 999, "isOnline": False, "lastActive": None}


def test_outsider_cannot_join_or_send(client, make_user, make_conversation):
    alice = make_user()
    bob = make_user()
    mallory = make_user()
    conv_id = make_conversation(alice, bob)

    with client.websocket_connect(ws_path(token_for(mallory))) as m:
        receive_until(m, "connected")
        send_event(m, "join-conversation", {"conversationId": conv_id})
        assert receive_until(m, "error")["payload"]["code"] == "authorization_error"

        send_event(m, "send-message", {"conversationId": conv_id, "content": {"text": "hello"}})
        assert receive_until(m, "error")["payload"]["message"] == "not a participant"

        send_event(m, "join-conversation", {"conversationId": 12345})
        assert receive_until(m, "error")["payload"]["code"] == "not_found"

        send_event(m, "join-conversation", {})
        assert receive_until(m, "error")["payload"]["code"] == "validation_error"


def test_empty_message_is_rejected(client, make_user, make_conversation):
    alice = make_user()
    bob = make_user()
    conv_id = make_conversation(alice, bob)

    with client.websocket_connect(ws_path(token_for(alice))) as a:
        receive_until(a, "connected")
        send_event(a, "send-message", {"conversationId": conv_id, "content": {"text": "   "}})
        err = receive_until(a, "error")
        assert err["payload"]["code"] == "validation_error"
        assert err["payload"]["message"] == "Message must contain text or at least one attachment"

        send_event(
            a,
            "send-message",
            {"conversationId": conv_id, "content": {"text": "hi"}, "messageType": "SYSTEM"},
        )
        assert receive_until(a, "error")["payload"]["message"] == "System messages cannot be sent by clients"
