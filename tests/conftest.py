import os
import tempfile

_DB_PATH = os.path.join(tempfile.gettempdir(), "cutter_orders_test.db")
if os.path.exists(_DB_PATH):
    os.remove(_DB_PATH)

# Settings are read at import time, so the environment is fixed first
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_PATH}"
os.environ["JWT_SECRET_KEY"] = "test-secret-key"
os.environ["ORDERS_TIMEZONE"] = "Australia/Sydney"
os.environ["OTEL_TRACING_ENABLED"] = "false"
os.environ["ORDER_CREATE_RATE_LIMIT"] = "1000/minute"

import asyncio
from datetime import datetime, timezone

import pytest

from services.order_service.schemas import Measurement, OrderItem, OrderSnapshot, Stage
from services.realtime_service.schemas import Handshake
from services.realtime_service.service import RealtimeHub
from shared.config.database import AsyncSessionLocal, Base, engine
from shared.errors import AuthError
from shared.security import create_access_token
from shared.security.identity import Actor, Role


class RecordingTransport:
    """In-memory transport that keeps every frame it was asked to send."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.opened = False
        self.closed_with = None
        self.frames = []

    async def open(self):
        self.opened = True

    async def send_json(self, payload):
        if self.fail:
            raise ConnectionError("peer went away")
        self.frames.append(payload)

    async def close(self, code=1000):
        self.closed_with = code

    def events(self):
        return [frame for frame in self.frames if frame.get("type") == "order_event"]


class StaticValidator:
    """Accepts the tokens it was built with; optionally slow."""

    def __init__(self, actors, delay: float = 0.0):
        self.actors = actors
        self.delay = delay

    async def authenticate(self, handshake):
        if self.delay:
            await asyncio.sleep(self.delay)
        actor = self.actors.get(handshake.bearer_token())
        if actor is None:
            raise AuthError("Authentication error: invalid token")
        return actor


async def settle(rounds: int = 10):
    """Lets connection writers drain what has been queued."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def alice():
    return Actor(id="alice", role=Role.REQUESTER, owner_id="alice")


@pytest.fixture
def bob():
    return Actor(id="bob", role=Role.REQUESTER, owner_id="bob")


@pytest.fixture
def ann():
    return Actor(id="ann", role=Role.APPROVER)


@pytest.fixture
def ada():
    return Actor(id="ada", role=Role.APPROVER)


@pytest.fixture
def validator(alice, bob, ann, ada):
    return StaticValidator({"alice": alice, "bob": bob, "ann": ann, "ada": ada})


@pytest.fixture
async def hub(validator):
    hub = RealtimeHub(validator, auth_timeout=0.5)
    yield hub
    await hub.close_all()


@pytest.fixture
def make_order():
    def _make(stage=Stage.DRAFT, owner_id="alice", **overrides):
        now = datetime(2025, 8, 1, tzinfo=timezone.utc)
        fields = {
            "id": f"order-{owner_id}",
            "order_number": f"{owner_id}-001",
            "owner_id": owner_id,
            "stage": stage,
            "items": [OrderItem(type="Cutter", measurement=Measurement(value=8))],
            "created_at": now,
            "updated_at": now,
        }
        fields.update(overrides)
        return OrderSnapshot(**fields)

    return _make


@pytest.fixture
async def db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    async with AsyncSessionLocal() as session:
        yield session


def token_for(sub: str, role: str, owner_id: str = None) -> str:
    claims = {"sub": sub, "role": role}
    if owner_id:
        claims["owner_id"] = owner_id
    return create_access_token(claims)


@pytest.fixture
def auth_headers():
    def _headers(sub: str, role: str = "requester"):
        owner_id = sub if role == "requester" else None
        return {"Authorization": f"Bearer {token_for(sub, role, owner_id)}"}

    return _headers


@pytest.fixture
def transport():
    return RecordingTransport


@pytest.fixture
def drain():
    return settle


@pytest.fixture
def connect(hub, transport):
    async def _connect(token: str, fail: bool = False):
        link = transport(fail=fail)
        handle = await hub.connect(Handshake(token=token), link)
        return handle, link

    return _connect
