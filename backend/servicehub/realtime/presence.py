from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, Optional, Set

from ..core.config import settings
from ..crud import crud_user
from .errors import AuthorizationError
from .protocol import Connection, Envelope
from .rooms import RoomRegistry, registry as default_registry
from .store import db_call

logger = logging.getLogger(__name__)


class ConnectionLimitExceeded(AuthorizationError):
    code = "connection_limit"


class Presence:
    """Live connection counts per user and per client IP."""

    def __init__(self) -> None:
        self._user_conns: Dict[int, Set[str]] = {}
        self._ip_conns: Dict[str, Set[str]] = {}

    def admit(self, conn: Connection) -> bool:
        """Count ``conn``; return True when it is the user's first live socket.

        Raises :class:`ConnectionLimitExceeded` over the per-user or per-IP cap.
        """
        user_limit = max(1, settings.WS_PER_USER_LIMIT)
        ip_limit = max(1, settings.WS_PER_IP_LIMIT)
        conns = self._user_conns.get(conn.user_id, set())
        if len(conns) >= user_limit:
            raise ConnectionLimitExceeded("Too many websocket connections")
        if conn.client_ip:
            ip_conns = self._ip_conns.get(conn.client_ip, set())
            if len(ip_conns) >= ip_limit:
                raise ConnectionLimitExceeded("Too many websocket connections")
            ip_conns.add(conn.id)
            self._ip_conns[conn.client_ip] = ip_conns
        first = not conns
        conns.add(conn.id)
        self._user_conns[conn.user_id] = conns
        return first

    def release(self, conn: Connection) -> bool:
        """Forget ``conn``; return True when the user has no sockets left."""
        conns = self._user_conns.get(conn.user_id)
        if not conns or conn.id not in conns:
            return False
        conns.discard(conn.id)
        if conn.client_ip and conn.client_ip in self._ip_conns:
            self._ip_conns[conn.client_ip].discard(conn.id)
            if not self._ip_conns[conn.client_ip]:
                del self._ip_conns[conn.client_ip]
        if conns:
            return False
        del self._user_conns[conn.user_id]
        return True

    def is_online(self, user_id: int) -> bool:
        return bool(self._user_conns.get(int(user_id)))

    def connection_count(self, user_id: int) -> int:
        return len(self._user_conns.get(int(user_id), ()))

    def statuses(self, user_ids: List[int]) -> Dict[str, bool]:
        return {str(int(uid)): self.is_online(uid) for uid in user_ids}

    def reset(self) -> None:
        self._user_conns.clear()
        self._ip_conns.clear()


presence = Presence()


async def announce_status(
    user_id: int,
    online: bool,
    rooms: Optional[RoomRegistry] = None,
) -> None:
    """Persist the online flag and tell every other live connection."""
    rooms = rooms or default_registry
    now = datetime.utcnow()
    await db_call(crud_user.set_online, user_id, online)
    await rooms.broadcast_all(
        Envelope(
            type="user-status-changed",
            payload={"userId": user_id, "isOnline": online, "lastActiveAt": now.isoformat()},
        ),
        exclude_user=user_id,
    )
    logger.debug("presence.changed", extra={"user_id": user_id, "online": online})
