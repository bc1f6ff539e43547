from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

from shared.security.identity import Actor, Role

from .schemas import OrderSnapshot, Stage


class EventKind(str, Enum):
    CREATED = "created"
    STAGE_CHANGED = "stage_changed"
    UPDATED = "updated"
    DELETED = "deleted"


class OrderProjection(BaseModel):
    """The minimal view of an order that travels in real-time envelopes."""

    id: str
    order_number: str
    stage: Stage
    owner_id: str

    class Config:
        frozen = True


class EventEnvelope(BaseModel):
    """One committed order change, as delivered to live connections. Immutable."""

    kind: EventKind
    order: OrderProjection
    actor_id: str
    actor_role: Role
    version: int
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    class Config:
        frozen = True

    @classmethod
    def for_order(cls, kind: EventKind, order: OrderSnapshot, actor: Actor) -> "EventEnvelope":
        projection = OrderProjection(
            id=order.id,
            order_number=order.order_number,
            stage=order.stage,
            owner_id=order.owner_id,
        )
        return cls(kind=kind, order=projection, actor_id=actor.id, actor_role=actor.role, version=order.version)
