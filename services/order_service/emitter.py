"""
Event emitter: the single path through which orders are created, changed and
deleted.

Each operation commits to the durable store first and then publishes one
envelope to the order's channels. A failed or conflicting write publishes
nothing; a committed write always publishes.
"""
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, List, Optional, Protocol

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.realtime_service.channels import order_event_channels
from shared.errors import ConflictError, OrderNotFoundError, OrderWorkflowError, ValidationError
from shared.observability.metrics import (
    orders_mutations_total,
    orders_transitions_rejected_total,
    orders_version_conflicts_total,
)
from shared.security.identity import Actor

from .events import EventEnvelope, EventKind
from .repository import OrderRepository
from .schemas import OrderItem, OrderSnapshot, Stage

logger = structlog.get_logger(__name__)

OrderMutation = Callable[[OrderSnapshot], OrderSnapshot]
DomainListener = Callable[[EventEnvelope, OrderSnapshot], Awaitable[None]]

IMMUTABLE_FIELDS = ("id", "order_number", "owner_id", "created_at")

MAX_NUMBERING_ATTEMPTS = 5


class EventPublisher(Protocol):
    def publish(self, channels: Iterable[str], envelope: EventEnvelope) -> int: ...


def next_order_number(owner_id: str, existing: Iterable[str]) -> str:
    """Next `<owner>-NNN` number after the highest one the owner already has."""
    highest = 0
    prefix = f"{owner_id}-"
    for number in existing:
        if not number.startswith(prefix):
            continue
        suffix = number[len(prefix):]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return f"{owner_id}-{highest + 1:03d}"


class OrderEventEmitter:
    def __init__(self, publisher: EventPublisher):
        self._publisher = publisher
        self._listeners: List[DomainListener] = []

    def add_listener(self, listener: DomainListener) -> None:
        """Registers a coroutine called with every published envelope (e.g. an email notifier)."""
        self._listeners.append(listener)

    async def create_order(
        self,
        db: AsyncSession,
        actor: Actor,
        owner_id: str,
        items: List[OrderItem],
        date_required=None,
    ) -> OrderSnapshot:
        now = datetime.now(timezone.utc)
        order_id = str(uuid.uuid4())
        for attempt in range(MAX_NUMBERING_ATTEMPTS):
            existing = await OrderRepository.order_numbers_for(db, owner_id)
            order = OrderSnapshot(
                id=order_id,
                order_number=next_order_number(owner_id, existing),
                owner_id=owner_id,
                stage=Stage.DRAFT,
                items=items,
                date_required=date_required,
                created_at=now,
                updated_at=now,
                version=1,
            )
            try:
                await OrderRepository.insert(db, order)
                break
            except IntegrityError:
                # Another create for the same owner took this number first
                await db.rollback()
                logger.warning("order_number_collision", owner_id=owner_id, attempt=attempt + 1)
        else:
            orders_mutations_total.labels(kind=EventKind.CREATED.value, outcome="conflict").inc()
            raise ConflictError(f"Could not allocate an order number for {owner_id}")

        await self._emit(EventKind.CREATED, order, actor)
        return order

    async def mutate(
        self,
        db: AsyncSession,
        order_id: str,
        mutation: OrderMutation,
        actor: Actor,
        expected_version: Optional[int] = None,
    ) -> OrderSnapshot:
        """Applies `mutation` to the current order and commits it under a version check.

        `mutation` receives a private copy and returns the changed order; it may
        raise any OrderWorkflowError to refuse the change. `expected_version` lets a
        client insist on the version it last saw. Raises ConflictError when the
        stored version moved on; the caller must re-read and retry.
        """
        current = await OrderRepository.get(db, order_id)
        if current is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        if expected_version is not None and expected_version != current.version:
            self._conflict(current, EventKind.UPDATED)

        try:
            changed = mutation(current.model_copy(deep=True))
        except OrderWorkflowError as exc:
            orders_mutations_total.labels(kind=EventKind.UPDATED.value, outcome="rejected").inc()
            orders_transitions_rejected_total.labels(reason=exc.code).inc()
            logger.info("order_mutation_rejected", order_id=order_id, actor_id=actor.id, code=exc.code, reason=exc.message)
            raise

        for field in IMMUTABLE_FIELDS:
            if getattr(changed, field) != getattr(current, field):
                raise ValidationError(f"Order field '{field}' cannot be changed")

        kind = EventKind.STAGE_CHANGED if changed.stage is not current.stage else EventKind.UPDATED
        updated = changed.model_copy(
            update={"version": current.version + 1, "updated_at": datetime.now(timezone.utc)}
        )
        if not await OrderRepository.put(db, updated, expected_version=current.version):
            self._conflict(current, kind)

        await self._emit(kind, updated, actor)
        return updated

    async def delete(
        self,
        db: AsyncSession,
        order_id: str,
        authorize: Callable[[OrderSnapshot], None],
        actor: Actor,
        expected_version: Optional[int] = None,
    ) -> OrderSnapshot:
        """Deletes an order once `authorize` accepts it, then publishes `deleted`."""
        current = await OrderRepository.get(db, order_id)
        if current is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        if expected_version is not None and expected_version != current.version:
            self._conflict(current, EventKind.DELETED)
        authorize(current)
        if not await OrderRepository.delete(db, order_id, expected_version=current.version):
            self._conflict(current, EventKind.DELETED)
        await self._emit(EventKind.DELETED, current, actor)
        return current

    def _conflict(self, current: OrderSnapshot, kind: EventKind):
        orders_version_conflicts_total.inc()
        orders_mutations_total.labels(kind=kind.value, outcome="conflict").inc()
        logger.info("order_version_conflict", order_id=current.id, stored_version=current.version)
        raise ConflictError(
            f"Order {current.order_number} was changed by someone else; reload and try again"
        )

    async def _emit(self, kind: EventKind, order: OrderSnapshot, actor: Actor) -> None:
        envelope = EventEnvelope.for_order(kind, order, actor)
        channels = order_event_channels(envelope.order)
        recipients = self._publisher.publish(channels, envelope)
        orders_mutations_total.labels(kind=kind.value, outcome="committed").inc()
        logger.info(
            "order_event_published",
            kind=kind.value,
            order_id=order.id,
            order_number=order.order_number,
            stage=order.stage.value,
            actor_id=actor.id,
            channels=list(channels),
            recipients=recipients,
        )
        for listener in self._listeners:
            try:
                await listener(envelope, order)
            except Exception:
                logger.exception("order_listener_failed", kind=kind.value, order_id=order.id)
