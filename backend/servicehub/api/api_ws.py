# server/api_ws.py
# Realtime socket (/ws): authenticated handshake, presence, ping/pong and a
# table of event handlers for chat, notifications and support.

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PydanticValidationError
from starlette.exceptions import WebSocketException

from ..core.config import settings
from ..realtime import delivery, notifications, support
from ..realtime.auth import WS_4401_UNAUTHORIZED, WS_4403_FORBIDDEN, authenticate
from ..realtime.errors import (
    AuthenticationError,
    DependencyError,
    ServiceError,
    ValidationError,
)
from ..realtime.presence import ConnectionLimitExceeded, announce_status, presence
from ..realtime.protocol import Connection, Envelope
from ..realtime import rooms
from ..schemas.message import ConversationRef, OnlineStatusIn, SendMessageIn
from ..schemas.notification import JoinNotificationsIn, NotificationRef
from ..schemas.support import SupportMessageIn, SupportMessageReadIn, TicketRef
from ..utils.metrics import incr as metrics_incr

logger = logging.getLogger(__name__)
router = APIRouter()

Handler = Callable[[Connection, Dict[str, Any]], Awaitable[None]]
HANDLERS: Dict[str, Handler] = {}


def on(event: str) -> Callable[[Handler], Handler]:
    def register(fn: Handler) -> Handler:
        HANDLERS[event] = fn
        return fn

    return register


# -------- chat --------

@on("join-conversation")
async def _join_conversation(conn: Connection, payload: Dict[str, Any]) -> None:
    ref = ConversationRef.model_validate(payload)
    state = await delivery.join_conversation(conn, ref.conversation_id)
    await conn.send("conversation-joined", state)


@on("leave-conversation")
async def _leave_conversation(conn: Connection, payload: Dict[str, Any]) -> None:
    ref = ConversationRef.model_validate(payload)
    await delivery.leave_conversation(conn, ref.conversation_id)


@on("send-message")
async def _send_message(conn: Connection, payload: Dict[str, Any]) -> None:
    await delivery.send_message(conn, SendMessageIn.model_validate(payload))


@on("typing-start")
async def _typing_start(conn: Connection, payload: Dict[str, Any]) -> None:
    ref = ConversationRef.model_validate(payload)
    await delivery.typing(conn, ref.conversation_id, True)


@on("typing-stop")
async def _typing_stop(conn: Connection, payload: Dict[str, Any]) -> None:
    ref = ConversationRef.model_validate(payload)
    await delivery.typing(conn, ref.conversation_id, False)


@on("mark-messages-read")
async def _mark_messages_read(conn: Connection, payload: Dict[str, Any]) -> None:
    ref = ConversationRef.model_validate(payload)
    ids = payload.get("messageIds")
    if ids is not None and not (isinstance(ids, list) and all(isinstance(i, int) for i in ids)):
        raise ValidationError("messageIds must be a list of integers")
    await delivery.mark_read(conn, ref.conversation_id, ids)


@on("get-online-status")
async def _get_online_status(conn: Connection, payload: Dict[str, Any]) -> None:
    single = payload.get("userId")
    if single is not None:
        if not isinstance(single, int):
            raise ValidationError("userId must be an integer")
        statuses = await delivery.online_status([single])
        await conn.send("online-status", statuses[0])
        return
    req = OnlineStatusIn.model_validate(payload)
    await conn.send("online-status", {"statuses": await delivery.online_status(req.user_ids)})


# -------- notifications --------

@on("join-notifications")
async def _join_notifications(conn: Connection, payload: Dict[str, Any]) -> None:
    req = JoinNotificationsIn.model_validate(payload)
    result = await notifications.join_notifications(conn, req.user_id)
    await conn.send("notification-joined", {"unreadCount": result["unreadCount"]})


@on("mark-notification-read")
async def _mark_notification_read(conn: Connection, payload: Dict[str, Any]) -> None:
    # Flat {notificationId} only; the nested {data: {...}} shape is rejected
    ref = NotificationRef.model_validate(payload)
    result = await notifications.mark_read(conn.identity, ref.notification_id)
    await conn.send("notification-read", result)


@on("mark-all-notifications-read")
async def _mark_all_notifications_read(conn: Connection, payload: Dict[str, Any]) -> None:
    marked = await notifications.mark_all_read(conn.identity)
    await conn.send("all-notifications-read", {"markedCount": marked})


@on("get-unread-count")
async def _get_unread_count(conn: Connection, payload: Dict[str, Any]) -> None:
    count = await notifications.unread_count(conn.identity)
    await conn.send("unread-count", {"count": count})


# -------- support --------

@on("join-support-ticket")
async def _join_support_ticket(conn: Connection, payload: Dict[str, Any]) -> None:
    ref = TicketRef.model_validate(payload)
    ticket = await support.join_ticket(conn, ref.ticket_id)
    await conn.send("support-ticket-joined", {"ticketId": ticket.id, "ticket": ticket.model_dump(mode="json")})


@on("join-live-chat")
async def _join_live_chat(conn: Connection, payload: Dict[str, Any]) -> None:
    ref = TicketRef.model_validate(payload)
    ticket = await support.join_live_chat(conn, ref.ticket_id)
    await conn.send("support-ticket-joined", {"ticketId": ticket.id, "ticket": ticket.model_dump(mode="json")})


@on("support-message")
async def _support_message(conn: Connection, payload: Dict[str, Any]) -> None:
    await support.send_support_message(conn, SupportMessageIn.model_validate(payload))


@on("support-typing-start")
async def _support_typing_start(conn: Connection, payload: Dict[str, Any]) -> None:
    ref = TicketRef.model_validate(payload)
    await support.typing(conn, ref.ticket_id, True)


@on("support-typing-stop")
async def _support_typing_stop(conn: Connection, payload: Dict[str, Any]) -> None:
    ref = TicketRef.model_validate(payload)
    await support.typing(conn, ref.ticket_id, False)


@on("mark-support-message-read")
async def _mark_support_message_read(conn: Connection, payload: Dict[str, Any]) -> None:
    req = SupportMessageReadIn.model_validate(payload)
    await support.mark_message_read(conn, req.message_id)


@on("join-support-dashboard")
async def _join_support_dashboard(conn: Connection, payload: Dict[str, Any]) -> None:
    summary = await support.join_dashboard(conn)
    await conn.send("support-dashboard-joined", summary)


# -------- dispatch --------

def _validation_message(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "__root__")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "Invalid payload"


async def dispatch(conn: Connection, env: Envelope) -> None:
    """Run the handler for ``env`` and turn any failure into an ``error`` event.

    Handler errors never close the connection.
    """
    event = env.type
    try:
        handler = HANDLERS.get(event)
        if handler is None:
            raise ValidationError(f"Unknown event: {event or '<missing>'}")
        try:
            await handler(conn, env.payload or {})
        except PydanticValidationError as exc:
            raise ValidationError(_validation_message(exc))
    except ServiceError as exc:
        metrics_incr("ws.event.error", tags={"event": event, "code": exc.code})
        if isinstance(exc, DependencyError):
            logger.error("ws.event.dependency_error", extra={"event": event, "user_id": conn.user_id}, exc_info=True)
        else:
            logger.info(
                "ws.event.rejected",
                extra={"event": event, "user_id": conn.user_id, "code": exc.code, "reason": exc.message},
            )
        await conn.send("error", {**exc.to_payload(), "event": event})
    except WebSocketDisconnect:
        raise
    except Exception:
        metrics_incr("ws.event.error", tags={"event": event, "code": "internal_error"})
        logger.exception("ws.event.failed", extra={"event": event, "user_id": conn.user_id})
        await conn.send("error", {"message": "Internal error", "code": "internal_error", "event": event})


def _chosen_subprotocol(websocket: WebSocket) -> Optional[str]:
    proto_hdr = websocket.headers.get("sec-websocket-protocol", "") or ""
    for p in (p.strip() for p in proto_hdr.split(",")):
        if p.lower() == "bearer":
            return p
    return None


# -------- /ws --------

@router.websocket("/ws")
async def realtime_ws(
    websocket: WebSocket,
    heartbeat: float = Query(0.0),
):
    session_start = time.time()
    auth_start = time.perf_counter()
    try:
        identity = await authenticate(websocket)
    except AuthenticationError as exc:
        raise WebSocketException(code=WS_4401_UNAUTHORIZED, reason=exc.message)
    except DependencyError:
        raise WebSocketException(code=1011, reason="Service unavailable")
    auth_ms = (time.perf_counter() - auth_start) * 1000.0

    client_ip = websocket.client.host if websocket.client else None
    conn = Connection(websocket, identity, client_ip)
    try:
        first = presence.admit(conn)
    except ConnectionLimitExceeded:
        metrics_incr("ws.limit.reject")
        logger.warning("ws.limit.reject", extra={"user_id": identity.user_id, "client_ip": client_ip})
        raise WebSocketException(code=WS_4403_FORBIDDEN, reason="Too many websocket connections")

    try:
        await websocket.accept(subprotocol=_chosen_subprotocol(websocket))
        rooms.registry.register(conn)
        logger.info(
            "ws.connect",
            extra={
                "user_id": identity.user_id,
                "role": identity.role.value,
                "connection_id": conn.id,
                "auth_ms": round(auth_ms, 1),
            },
        )
        await conn.send(
            "connected",
            {"userId": identity.user_id, "role": identity.role.value, "connectionId": conn.id},
        )
        if first:
            try:
                await announce_status(identity.user_id, True)
            except ServiceError:
                logger.exception("presence.online_fail", extra={"user_id": identity.user_id})

        interval = max(heartbeat, settings.WS_PING_INTERVAL)
        state = {"last_pong": time.time()}

        async def ping_loop() -> None:
            while True:
                await asyncio.sleep(interval)
                try:
                    await conn.send("ping")
                except WebSocketDisconnect:
                    break
                if (time.time() - state["last_pong"]) > settings.WS_PONG_TIMEOUT:
                    await websocket.close(code=1001)
                    break

        pinger = asyncio.create_task(ping_loop())
        try:
            while True:
                env = await conn.recv_envelope()
                state["last_pong"] = time.time()
                if env.v != 1:
                    await conn.send("error", {"message": "Unsupported protocol version", "code": "validation_error", "event": env.type})
                    continue
                if env.type == "ping":
                    await conn.send("pong")
                    continue
                if env.type == "pong":
                    continue
                await dispatch(conn, env)
        except WebSocketDisconnect as exc:
            logger.info(
                "ws.disconnect",
                extra={
                    "user_id": identity.user_id,
                    "connection_id": conn.id,
                    "code": exc.code,
                    "duration_ms": int((time.time() - session_start) * 1000),
                },
            )
        finally:
            pinger.cancel()
    finally:
        rooms.registry.disconnect(conn)
        if presence.release(conn):
            try:
                await announce_status(identity.user_id, False)
            except ServiceError:
                logger.exception("presence.offline_fail", extra={"user_id": identity.user_id})
        logger.info(
            "ws.closed",
            extra={
                "user_id": identity.user_id,
                "connection_id": conn.id,
                "duration_ms": int((time.time() - session_start) * 1000),
            },
        )
