# Session authenticator for the realtime socket.
# Runs before the socket is accepted: a connection either leaves here with an
# immutable ConnectionIdentity or is refused with close code 4401.

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Tuple

from fastapi import WebSocket
from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..crud import crud_user
from ..utils.metrics import incr as metrics_incr
from .errors import AuthenticationError
from .protocol import ConnectionIdentity
from .roles import normalize_role
from .store import db_call

logger = logging.getLogger(__name__)

WS_4401_UNAUTHORIZED = 4401
WS_4403_FORBIDDEN = 4403


def extract_bearer_token(ws: WebSocket) -> Tuple[Optional[str], str]:
    """Return (token, source), checking the auth field, header, then query.

    The auth field is the ``Sec-WebSocket-Protocol`` header carrying
    ``bearer, <token>`` (browsers cannot set arbitrary headers on sockets).
    """
    max_len = settings.WS_MAX_BEARER_LEN
    proto = ws.headers.get("sec-websocket-protocol", "") or ""
    if proto and len(proto) > settings.WS_MAX_PROTOCOL_HEADER_LEN:
        return None, "protocol_oversize"
    if proto:
        parts = [p.strip() for p in proto.split(",")]
        if len(parts) == 2 and parts[0].lower() == "bearer" and parts[1]:
            token = parts[1]
            if len(token) > max_len:
                return None, "protocol_oversize"
            return token, "protocol"
        for p in parts:
            if p.lower().startswith("bearer ") and len(p.split(" ", 1)) == 2:
                token = p.split(" ", 1)[1].strip()
                if len(token) > max_len:
                    return None, "protocol_oversize"
                return token, "protocol"

    auth = ws.headers.get("authorization") or ""
    if auth.lower().startswith("bearer "):
        token = auth.split(" ", 1)[1].strip()
        if len(token) > max_len:
            return None, "authorization_oversize"
        if token:
            return token, "authorization"

    qtok = ws.query_params.get("token")
    if qtok:
        if len(qtok) > max_len:
            return None, "query_oversize"
        return qtok, "query"
    return None, "none"


def sanitize_bearer(val: Optional[str]) -> Optional[str]:
    if val is None:
        return None
    s = str(val).strip()
    if (s.startswith('"') and s.endswith('"')) or (s.startswith("'") and s.endswith("'")):
        s = s[1:-1].strip()
    while s and s[-1] in {";", ",", "."}:
        s = s[:-1]
    return s


def log_auth_failure(reason: str, websocket: WebSocket, source: str, detail: Optional[str] = None) -> None:
    metrics_incr("ws.auth.fail", tags={"reason": reason, "source": source})
    logger.warning(
        "WS auth failed: %s",
        reason,
        extra={"path": str(websocket.url.path), "source": source, "detail": detail},
    )


def _load_principal(db: Session, user_id: int) -> Optional[Tuple[int, str]]:
    user = crud_user.get_user(db, user_id)
    if user is None:
        return None
    if not user.is_active:
        return (int(user.id), "")
    return int(user.id), user.role.value


class CredentialVerifier:
    """Verify signed access tokens: ``verify(token) -> (user_id, role)``.

    The role comes from the account record, not the token, so a demoted
    agent loses dashboard access on the next connect.
    """

    def __init__(self, secret_key: Optional[str] = None, algorithm: Optional[str] = None) -> None:
        self.secret_key = secret_key or settings.SECRET_KEY
        self.algorithm = algorithm or settings.ALGORITHM

    def decode(self, token: Optional[str]) -> int:
        """Check signature, expiry and token type; return the subject id."""
        token = sanitize_bearer(token)
        if not token:
            raise AuthenticationError("Missing token", details={"reason": "missing"})
        if len(token) > settings.WS_MAX_BEARER_LEN:
            raise AuthenticationError("Invalid token", details={"reason": "token_too_long"})
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except ExpiredSignatureError:
            raise AuthenticationError("Expired token", details={"reason": "expired"})
        except JWTError:
            raise AuthenticationError("Invalid token", details={"reason": "invalid"})
        # Prevent refresh tokens from being used on the socket
        if str(payload.get("typ") or "").lower() == "refresh":
            raise AuthenticationError("Invalid token", details={"reason": "invalid_type"})
        subject = payload.get("sub") or payload.get("userId")
        try:
            return int(subject)
        except (TypeError, ValueError):
            raise AuthenticationError("Invalid token", details={"reason": "missing_sub"})

    async def verify(self, token: Optional[str]) -> Tuple[int, str]:
        user_id = self.decode(token)
        principal = await db_call(_load_principal, user_id)
        if principal is None:
            raise AuthenticationError("Invalid token", details={"reason": "user_not_found"})
        uid, role = principal
        if not role:
            raise AuthenticationError("Inactive user", details={"reason": "inactive"})
        return uid, role


verifier = CredentialVerifier()


async def authenticate(websocket: WebSocket, credential_verifier: Optional[CredentialVerifier] = None) -> ConnectionIdentity:
    """Resolve the caller of ``websocket`` or raise :class:`AuthenticationError`.

    Must finish within ``WS_AUTH_TIMEOUT`` seconds.
    """
    token, source = extract_bearer_token(websocket)
    if not token:
        reason = source if source.endswith("oversize") else "missing_token"
        log_auth_failure(reason, websocket, source)
        raise AuthenticationError("Missing token", details={"reason": reason})
    check = credential_verifier or verifier
    try:
        user_id, role = await asyncio.wait_for(check.verify(token), timeout=settings.WS_AUTH_TIMEOUT)
    except asyncio.TimeoutError:
        log_auth_failure("timeout", websocket, source)
        raise AuthenticationError("Authentication timed out", details={"reason": "timeout"})
    except AuthenticationError as exc:
        log_auth_failure(str(exc.details.get("reason") or "invalid_token"), websocket, source)
        raise
    normalized = normalize_role(role)
    if normalized is None:
        log_auth_failure("unknown_role", websocket, source, detail=role)
        raise AuthenticationError("Invalid token", details={"reason": "unknown_role"})
    return ConnectionIdentity(user_id=user_id, role=normalized)
