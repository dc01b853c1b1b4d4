# Room registry: which live connections receive which broadcasts.
# Membership is transport-local and only reflects currently-open sockets;
# durable participant lists live in the database.

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Union

from ..core.config import settings
from ..utils.metrics import incr as metrics_incr
from ..utils.metrics import timing_ms as metrics_timing
from . import bus
from .errors import AuthorizationError, ValidationError
from .protocol import Connection, Envelope
from .roles import is_agent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConversationRoom:
    conversation_id: int

    @property
    def key(self) -> str:
        return f"conversation:{self.conversation_id}"


@dataclass(frozen=True)
class TicketRoom:
    ticket_id: int

    @property
    def key(self) -> str:
        return f"support:{self.ticket_id}"


@dataclass(frozen=True)
class NotifyRoom:
    user_id: int

    @property
    def key(self) -> str:
        return f"notify:{self.user_id}"


@dataclass(frozen=True)
class DashboardRoom:
    @property
    def key(self) -> str:
        return "support:dashboard"


RoomKey = Union[ConversationRoom, TicketRoom, NotifyRoom, DashboardRoom]


def parse_room_key(key: str) -> RoomKey:
    """Turn a wire-form key back into its typed room; reject anything else."""
    if key == "support:dashboard":
        return DashboardRoom()
    prefix, sep, ident = (key or "").partition(":")
    if not sep or not ident.isdigit():
        raise ValidationError(f"Invalid room key: {key!r}")
    if prefix == "conversation":
        return ConversationRoom(int(ident))
    if prefix == "support":
        return TicketRoom(int(ident))
    if prefix == "notify":
        return NotifyRoom(int(ident))
    raise ValidationError(f"Invalid room key: {key!r}")


class RoomRegistry:
    """Connection <-> room membership for this process.

    All mutations are synchronous so join/leave/disconnect never interleave
    with another coroutine halfway through an update.
    """

    def __init__(self) -> None:
        self.connections: Dict[str, Connection] = {}
        self.room_members: Dict[str, Set[str]] = {}
        self.connection_rooms: Dict[str, Set[str]] = {}

    # ─── lifecycle ────────────────────────────────────────────────────────
    def register(self, conn: Connection) -> None:
        self.connections[conn.id] = conn
        self.connection_rooms.setdefault(conn.id, set())

    def disconnect(self, conn: Connection) -> List[str]:
        """Drop ``conn`` from every room it occupied; return those room keys."""
        keys = list(self.connection_rooms.pop(conn.id, set()))
        for key in keys:
            self._discard(key, conn.id)
        self.connections.pop(conn.id, None)
        return keys

    def is_registered(self, conn_or_id: Union[Connection, str]) -> bool:
        cid = conn_or_id.id if isinstance(conn_or_id, Connection) else conn_or_id
        return cid in self.connections

    # ─── membership ───────────────────────────────────────────────────────
    def check_access(self, conn: Connection, room: RoomKey) -> None:
        """Raise :class:`AuthorizationError` for rooms this identity may not join.

        Only room-kind rules live here; participant checks for conversations
        and tickets happen in the pipelines before they call :meth:`join`.
        """
        if isinstance(room, DashboardRoom) and not is_agent(conn.identity.role):
            raise AuthorizationError("Support dashboard is restricted to agents")
        if isinstance(room, NotifyRoom) and room.user_id != conn.user_id:
            raise AuthorizationError("Cannot join another user's notification channel")

    def join(self, conn: Connection, room: RoomKey) -> bool:
        """Add ``conn`` to ``room``. Idempotent; returns True on first join."""
        self.check_access(conn, room)
        if conn.id not in self.connections:
            self.register(conn)
        members = self.room_members.setdefault(room.key, set())
        if conn.id in members:
            return False
        members.add(conn.id)
        self.connection_rooms.setdefault(conn.id, set()).add(room.key)
        return True

    def leave(self, conn: Connection, room: RoomKey) -> bool:
        rooms = self.connection_rooms.get(conn.id)
        if rooms is not None:
            rooms.discard(room.key)
        return self._discard(room.key, conn.id)

    def _discard(self, key: str, conn_id: str) -> bool:
        members = self.room_members.get(key)
        if not members or conn_id not in members:
            return False
        members.discard(conn_id)
        if not members:
            del self.room_members[key]
        return True

    def members(self, room: RoomKey) -> List[Connection]:
        return [
            self.connections[cid]
            for cid in list(self.room_members.get(room.key, ()))
            if cid in self.connections
        ]

    def in_room(self, conn: Connection, room: RoomKey) -> bool:
        return conn.id in self.room_members.get(room.key, ())

    def user_in_room(self, user_id: int, room: RoomKey) -> bool:
        return any(c.user_id == user_id for c in self.members(room))

    def rooms_of(self, conn: Connection) -> Set[str]:
        return set(self.connection_rooms.get(conn.id, ()))

    def user_connections(self, user_id: int) -> List[Connection]:
        return [c for c in self.connections.values() if c.user_id == user_id]

    # ─── fan-out ──────────────────────────────────────────────────────────
    async def _send(self, conns: Iterable[Connection], env: Envelope) -> int:
        sent = 0
        for conn in conns:
            try:
                await asyncio.wait_for(conn.send_envelope(env), timeout=settings.WS_SEND_TIMEOUT)
                sent += 1
            except Exception as exc:
                # A socket that cannot take a frame is dead; evict it
                metrics_incr("ws.broadcast.evict", tags={"event": env.type})
                logger.info(
                    "ws.broadcast.evict",
                    extra={"connection_id": conn.id, "user_id": conn.user_id, "error": repr(exc)},
                )
                self.disconnect(conn)
        return sent

    async def broadcast(
        self,
        room: RoomKey,
        env: Envelope,
        exclude: Optional[Connection] = None,
        publish: bool = True,
    ) -> int:
        """Send ``env`` to every live member of ``room`` except ``exclude``.

        Returns the number of local connections reached. With ``publish``
        the envelope is mirrored to other processes over the bus.
        """
        if env.topic is None:
            env.topic = room.key
        targets = [c for c in self.members(room) if exclude is None or c.id != exclude.id]
        started = time.perf_counter()
        sent = await self._send(targets, env)
        metrics_timing(
            "ws.broadcast.ms",
            (time.perf_counter() - started) * 1000.0,
            tags={"room": room.key.split(":", 1)[0], "event": env.type},
        )
        if publish and bus.bus_enabled():
            data = env.to_dict()
            if exclude is not None:
                data["exclude_user"] = exclude.user_id
            await bus.publish_topic(room.key, data)
        return sent

    async def broadcast_all(self, env: Envelope, exclude_user: Optional[int] = None) -> int:
        """Send ``env`` to every live connection in this process."""
        targets = [c for c in list(self.connections.values()) if c.user_id != exclude_user]
        return await self._send(targets, env)

    async def deliver_from_bus(self, topic: str, data: dict) -> None:
        """Re-broadcast an envelope published by another process."""
        room = parse_room_key(topic)
        env = Envelope.from_raw(data)
        exclude_user = data.get("exclude_user")
        targets = [c for c in self.members(room) if exclude_user is None or c.user_id != exclude_user]
        await self._send(targets, env)

    def reset(self) -> None:
        self.connections.clear()
        self.room_members.clear()
        self.connection_rooms.clear()


registry = RoomRegistry()
