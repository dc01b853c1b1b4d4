# Wire envelope and per-connection state for the realtime socket.
# Frames are JSON objects {v, type, topic?, payload?}; ``type`` carries the
# event name (``send-message``, ``new-message``, ...).

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from fastapi import WebSocketDisconnect

from ..models.user import UserRole


@dataclass
class Envelope:
    v: int = 1
    type: str = ""
    topic: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None

    @staticmethod
    def from_raw(raw: Any) -> "Envelope":
        if isinstance(raw, dict):
            try:
                version = int(raw.get("v", 1))
            except (TypeError, ValueError):
                version = 0
            return Envelope(
                v=version,
                type=str(raw.get("type") or ""),
                topic=(str(raw["topic"]) if raw.get("topic") is not None else None),
                payload=(raw.get("payload") if isinstance(raw.get("payload"), dict) else None),
            )
        return Envelope()

    @staticmethod
    def from_text(text: str) -> "Envelope":
        try:
            return Envelope.from_raw(json.loads(text))
        except ValueError:
            return Envelope()

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"v": self.v, "type": self.type or "message"}
        if self.topic is not None:
            data["topic"] = self.topic
        if self.payload is not None:
            data["payload"] = self.payload
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), default=str)


@dataclass(frozen=True)
class ConnectionIdentity:
    """Who is on the other end of a connection.

    Bound once after the credential is verified and never mutated; every
    handler receives it explicitly instead of re-reading ids from payloads.
    """

    user_id: int
    role: UserRole
    connection_id: str = field(default_factory=lambda: uuid.uuid4().hex)


class Connection:
    """A live authenticated socket plus its identity."""

    def __init__(self, websocket, identity: ConnectionIdentity, client_ip: Optional[str] = None) -> None:
        self.ws = websocket
        self.identity = identity
        self.client_ip = client_ip

    @property
    def id(self) -> str:
        return self.identity.connection_id

    @property
    def user_id(self) -> int:
        return self.identity.user_id

    async def send_envelope(self, env: Envelope) -> None:
        try:
            await self.ws.send_text(env.to_json())
        except WebSocketDisconnect:
            raise
        except RuntimeError:
            # Starlette raises RuntimeError when sending on a closed socket
            raise WebSocketDisconnect(code=1006)

    async def send(self, event: str, payload: Optional[Dict[str, Any]] = None, topic: Optional[str] = None) -> None:
        await self.send_envelope(Envelope(type=event, topic=topic, payload=payload))

    async def recv_envelope(self) -> Envelope:
        msg = await self.ws.receive()
        if msg["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(code=msg.get("code", 1000))
        text = msg.get("text")
        if text is None:
            data = msg.get("bytes") or b""
            text = data.decode("utf-8", errors="replace")
        return Envelope.from_text(text)

    def __repr__(self) -> str:
        return f"<Connection {self.id} user={self.user_id}>"
