from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from shared.config.settings import server_timezone
from shared.errors import (
    IllegalTransitionError,
    IncompleteFulfillmentError,
    NotOwnerError,
    OrderNotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from shared.security.identity import Actor, Role

from .emitter import OrderEventEmitter
from .pickup import PickupStatus, parse_pickup_date, resolve_pickup_status, to_server_time
from .repository import OrderRepository
from .schemas import (
    ConfirmDetails,
    FulfillmentMethod,
    FulfillmentUpdate,
    FulfillmentUpdateRequest,
    ItemsUpdate,
    OrderCreate,
    OrderFilter,
    OrderItem,
    OrderResponse,
    OrderSnapshot,
    PriceUpdate,
    Stage,
    TransitionRequest,
    UpdateRequestCreate,
    UpdateRequestDecision,
    UpdateRequestStatus,
)
from .transitions import attempt_transition, validate_fulfillment

REQUESTER_EDITABLE_STAGES = frozenset([Stage.DRAFT, Stage.REQUESTED_CHANGES])
PRICEABLE_STAGES = frozenset([
    Stage.DRAFT,
    Stage.SUBMITTED,
    Stage.UNDER_REVIEW,
    Stage.REQUIRES_APPROVAL,
    Stage.REQUESTED_CHANGES,
])
THIS_WEEK = "this_week"


def _require_owner(order: OrderSnapshot, actor: Actor) -> None:
    if actor.role is Role.REQUESTER and order.owner_id != actor.owner_id:
        raise NotOwnerError(f"Order {order.order_number} belongs to another requester")


def _require_approver(actor: Actor, action: str) -> None:
    if not actor.is_approver:
        raise PermissionDeniedError(f"Only approvers can {action}")


def with_pickup_status(order: OrderSnapshot, now: datetime) -> OrderResponse:
    status = None
    if order.fulfillment is not None and order.fulfillment.method is FulfillmentMethod.PICKUP:
        status = resolve_pickup_status(order.fulfillment.schedule, now).value
    return OrderResponse(**order.model_dump(), pickup_status=status)


def _matches_pickup(order: OrderSnapshot, filters: OrderFilter, now: datetime) -> bool:
    fulfillment = order.fulfillment
    if fulfillment is None or fulfillment.method is not FulfillmentMethod.PICKUP:
        return False
    schedule = fulfillment.schedule
    pickup_date = parse_pickup_date(schedule.date) if schedule else None

    if filters.pickup_date_from and (pickup_date is None or pickup_date < filters.pickup_date_from):
        return False
    if filters.pickup_date_to and (pickup_date is None or pickup_date > filters.pickup_date_to):
        return False

    if filters.pickup_status == THIS_WEEK:
        if pickup_date is None:
            return False
        today = to_server_time(now).date()
        # Weeks run Sunday to Saturday
        week_start = today - timedelta(days=(today.weekday() + 1) % 7)
        return week_start <= pickup_date <= week_start + timedelta(days=6)
    if filters.pickup_status:
        return resolve_pickup_status(schedule, now).value == filters.pickup_status
    return True


class OrderService:

    @staticmethod
    async def create_order(db: AsyncSession, emitter: OrderEventEmitter, actor: Actor, data: OrderCreate) -> OrderSnapshot:
        if actor.role is Role.REQUESTER:
            if data.owner_id is not None and data.owner_id != actor.owner_id:
                raise NotOwnerError("Requesters can only create their own orders")
            owner_id = actor.owner_id
        else:
            if not data.owner_id:
                raise ValidationError("owner_id is required when an approver creates an order")
            owner_id = data.owner_id
        items = [OrderItem(**item.model_dump()) for item in data.items]
        return await emitter.create_order(db, actor, owner_id, items, date_required=data.date_required)

    @staticmethod
    async def get_order(db: AsyncSession, actor: Actor, order_id: str) -> OrderSnapshot:
        order = await OrderRepository.get(db, order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        _require_owner(order, actor)
        return order

    @staticmethod
    async def list_orders(db: AsyncSession, actor: Actor, filters: OrderFilter, now: Optional[datetime] = None) -> List[OrderSnapshot]:
        now = now or datetime.now(timezone.utc)
        if filters.pickup_status and filters.pickup_status != THIS_WEEK:
            valid = {status.value for status in PickupStatus}
            if filters.pickup_status not in valid:
                raise ValidationError(f"Unknown pickup status '{filters.pickup_status}'")

        # Requesters only ever see their own orders
        if actor.role is Role.REQUESTER:
            filters = filters.model_copy(update={"owner_id": actor.owner_id})

        orders = await OrderRepository.query(db, filters)
        results = []
        for order in orders:
            fulfillment = order.fulfillment
            if filters.fulfillment_method and (fulfillment is None or fulfillment.method is not filters.fulfillment_method):
                continue
            if filters.payment_method and (fulfillment is None or fulfillment.payment_method is not filters.payment_method):
                continue
            wants_pickup = filters.pickup_status or filters.pickup_date_from or filters.pickup_date_to
            if wants_pickup and not _matches_pickup(order, filters, now):
                continue
            results.append(order)
        return results

    @staticmethod
    async def transition(db: AsyncSession, emitter: OrderEventEmitter, actor: Actor, order_id: str, data: TransitionRequest) -> OrderSnapshot:
        def mutation(order: OrderSnapshot) -> OrderSnapshot:
            now = datetime.now(timezone.utc)
            effects = attempt_transition(
                order,
                actor.role,
                actor.owner_id,
                data.target,
                price=data.price,
                fulfillment=data.fulfillment,
                now=now,
                tz=server_timezone(),
            )
            return effects.apply(order, actor_id=actor.id, at=now, comments=data.comments)

        return await emitter.mutate(db, order_id, mutation, actor, expected_version=data.version)

    @staticmethod
    async def set_price(db: AsyncSession, emitter: OrderEventEmitter, actor: Actor, order_id: str, data: PriceUpdate) -> OrderSnapshot:
        _require_approver(actor, "set prices")

        def mutation(order: OrderSnapshot) -> OrderSnapshot:
            if order.stage not in PRICEABLE_STAGES:
                raise IllegalTransitionError(f"Price cannot be changed while the order is '{order.stage.value}'")
            order.price = data.price
            return order

        return await emitter.mutate(db, order_id, mutation, actor, expected_version=data.version)

    @staticmethod
    async def update_items(db: AsyncSession, emitter: OrderEventEmitter, actor: Actor, order_id: str, data: ItemsUpdate) -> OrderSnapshot:
        def mutation(order: OrderSnapshot) -> OrderSnapshot:
            _require_owner(order, actor)
            if actor.role is Role.REQUESTER and order.stage not in REQUESTER_EDITABLE_STAGES:
                raise IllegalTransitionError(f"Items cannot be edited while the order is '{order.stage.value}'")
            if order.stage is Stage.COMPLETED:
                raise IllegalTransitionError("Items of a completed order cannot be edited")
            if order.stage is not Stage.DRAFT and not data.items:
                raise ValidationError("A submitted order must keep at least one item")
            order.items = [OrderItem(**item.model_dump()) for item in data.items]
            return order

        return await emitter.mutate(db, order_id, mutation, actor, expected_version=data.version)

    @staticmethod
    async def set_fulfillment(db: AsyncSession, emitter: OrderEventEmitter, actor: Actor, order_id: str, data: FulfillmentUpdate) -> OrderSnapshot:
        _require_approver(actor, "edit fulfillment details")

        def mutation(order: OrderSnapshot) -> OrderSnapshot:
            if order.stage is not Stage.COMPLETED:
                raise IllegalTransitionError("Fulfillment details belong to completed orders")
            errors = validate_fulfillment(data.fulfillment, datetime.now(timezone.utc), server_timezone())
            if errors:
                raise IncompleteFulfillmentError("Fulfillment details are incomplete", details=errors)
            order.fulfillment = data.fulfillment.model_copy(update={"confirmed_at": None, "confirmed_by": None})
            return order

        return await emitter.mutate(db, order_id, mutation, actor, expected_version=data.version)

    @staticmethod
    async def confirm_details(db: AsyncSession, emitter: OrderEventEmitter, actor: Actor, order_id: str, data: ConfirmDetails) -> OrderSnapshot:
        def mutation(order: OrderSnapshot) -> OrderSnapshot:
            _require_owner(order, actor)
            if actor.role is not Role.REQUESTER:
                raise PermissionDeniedError("Only the requester can confirm collection details")
            if order.stage is not Stage.COMPLETED or order.fulfillment is None:
                raise IllegalTransitionError("Only completed orders have details to confirm")
            order.fulfillment = order.fulfillment.model_copy(
                update={"confirmed_at": datetime.now(timezone.utc), "confirmed_by": actor.id}
            )
            return order

        return await emitter.mutate(db, order_id, mutation, actor, expected_version=data.version)

    @staticmethod
    async def request_fulfillment_update(db: AsyncSession, emitter: OrderEventEmitter, actor: Actor, order_id: str, data: UpdateRequestCreate) -> OrderSnapshot:
        def mutation(order: OrderSnapshot) -> OrderSnapshot:
            _require_owner(order, actor)
            if actor.role is not Role.REQUESTER:
                raise PermissionDeniedError("Approvers edit fulfillment details directly")
            if order.stage is not Stage.COMPLETED:
                raise IllegalTransitionError("Update requests can only be made on completed orders")
            if order.update_request is not None and order.update_request.status is UpdateRequestStatus.PENDING:
                raise ValidationError("An update request is already pending for this order")
            order.update_request = FulfillmentUpdateRequest(
                requested_by=actor.id,
                requested_at=datetime.now(timezone.utc),
                changes=data.changes,
                reason=data.reason,
            )
            return order

        return await emitter.mutate(db, order_id, mutation, actor, expected_version=data.version)

    @staticmethod
    async def respond_fulfillment_update(db: AsyncSession, emitter: OrderEventEmitter, actor: Actor, order_id: str, data: UpdateRequestDecision) -> OrderSnapshot:
        _require_approver(actor, "respond to update requests")

        def mutation(order: OrderSnapshot) -> OrderSnapshot:
            request = order.update_request
            if request is None or request.status is not UpdateRequestStatus.PENDING:
                raise ValidationError("There is no pending update request for this order")
            now = datetime.now(timezone.utc)
            if data.approve:
                errors = validate_fulfillment(request.changes, now, server_timezone())
                if errors:
                    raise IncompleteFulfillmentError("Requested fulfillment details are incomplete", details=errors)
                order.fulfillment = request.changes.model_copy(update={"confirmed_at": None, "confirmed_by": None})
            order.update_request = request.model_copy(update={
                "status": UpdateRequestStatus.APPROVED if data.approve else UpdateRequestStatus.REJECTED,
                "response": data.response,
                "responded_by": actor.id,
                "responded_at": now,
            })
            return order

        return await emitter.mutate(db, order_id, mutation, actor, expected_version=data.version)

    @staticmethod
    async def delete_order(db: AsyncSession, emitter: OrderEventEmitter, actor: Actor, order_id: str, version: Optional[int] = None) -> OrderSnapshot:
        def authorize(order: OrderSnapshot) -> None:
            _require_owner(order, actor)
            if actor.role is Role.REQUESTER and order.stage is not Stage.DRAFT:
                raise IllegalTransitionError("Requesters can only delete draft orders")

        return await emitter.delete(db, order_id, authorize, actor, expected_version=version)
