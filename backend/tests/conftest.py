import json
import os
from datetime import datetime, timedelta

os.environ.setdefault("PYTEST_RUN", "1")

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from servicehub import database, models
from servicehub.core.config import settings
from servicehub.crud import crud_conversation, crud_support
from servicehub.database import Base, get_db
from servicehub.main import app
from servicehub.realtime import store
from servicehub.realtime.presence import presence
from servicehub.realtime.protocol import Connection, ConnectionIdentity
from servicehub.realtime.rooms import registry
from servicehub.realtime.tasks import dead_letter_queue
from servicehub.services.attachment_store import set_attachment_store
from servicehub.services.redis_client import set_redis


def _reset_realtime_state():
    registry.reset()
    presence.reset()
    dead_letter_queue.clear()
    set_attachment_store(None)
    set_redis(None)


@pytest.fixture(autouse=True)
def Session(monkeypatch):
    """Fresh in-memory database wired into both HTTP and socket code paths."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    # One store call at a time: every session shares the single StaticPool connection
    monkeypatch.setattr(settings, "WS_DB_CONCURRENCY", 1)
    monkeypatch.setattr(settings, "WS_BUS_ENABLED", False)
    monkeypatch.setattr(store, "_DB_SEM", None)
    monkeypatch.setattr(database, "SessionLocal", factory)

    def override_db():
        db = factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_db
    _reset_realtime_state()
    yield factory
    app.dependency_overrides.clear()
    _reset_realtime_state()
    engine.dispose()


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def make_user(Session):
    counter = {"n": 0}

    def _make(role=models.UserRole.CLIENT, full_name=None, is_active=True):
        counter["n"] += 1
        db = Session()
        user = models.User(
            email=f"user{counter['n']}@test.com",
            full_name=full_name or f"User {counter['n']}",
            role=role,
            is_active=is_active,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        db.close()
        return user

    return _make


@pytest.fixture
def make_conversation(Session):
    def _make(first, second, job_id=None, quote_id=None):
        db = Session()
        conv = crud_conversation.create_conversation(db, first, second, job_id=job_id, quote_id=quote_id)
        conv_id = conv.id
        db.close()
        return conv_id

    return _make


@pytest.fixture
def make_quote(Session):
    def _make(provider, client_user, job_id=1, status=models.QuoteStatus.ACCEPTED):
        db = Session()
        quote = models.Quote(
            job_id=job_id,
            provider_id=provider.id,
            client_id=client_user.id,
            status=status,
        )
        db.add(quote)
        db.commit()
        db.refresh(quote)
        db.close()
        return quote

    return _make


@pytest.fixture
def make_ticket(Session):
    def _make(requester, title="Cannot log in"):
        db = Session()
        user = db.get(models.User, requester.id)
        ticket = crud_support.create_ticket(db, user, title=title, description="Help")
        ticket_id = ticket.id
        db.close()
        return ticket_id

    return _make


def create_access_token(user_id, role=None, expires_delta=None, token_type="access"):
    """Sign a token the way the accounts service does."""
    claims = {"sub": str(user_id), "typ": token_type}
    if role:
        claims["role"] = str(getattr(role, "value", role))
    now = datetime.utcnow()
    expire = now + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    claims.update({"exp": expire, "iat": now})
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def token_for(user, **kwargs):
    return create_access_token(user.id, **kwargs)


def ws_path(token=None):
    base = f"{settings.API_V1_STR}/ws"
    return f"{base}?token={token}" if token else base


def auth_headers(user):
    return {"Authorization": f"Bearer {token_for(user)}"}


def send_event(ws, event, payload=None):
    ws.send_json({"v": 1, "type": event, "payload": payload or {}})


def receive_until(ws, event, limit=25):
    """Read frames until ``event`` arrives; presence and other chatter is skipped."""
    for _ in range(limit):
        frame = ws.receive_json()
        if frame.get("type") == event:
            return frame
    raise AssertionError(f"{event} not received within {limit} frames")


class FakeWebSocket:
    """Stand-in socket that records outgoing frames."""

    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def send_text(self, data):
        if self.fail:
            raise RuntimeError("Cannot call send once a close message has been sent.")
        self.sent.append(json.loads(data))

    def events(self, event=None):
        return [f for f in self.sent if event is None or f.get("type") == event]


def make_conn(user, client_ip=None, fail=False):
    identity = ConnectionIdentity(user_id=user.id, role=models.UserRole(user.role))
    conn = Connection(FakeWebSocket(fail=fail), identity, client_ip)
    registry.register(conn)
    return conn
