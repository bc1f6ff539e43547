from datetime import date, datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config.database import get_db
from shared.config.pickup import PICKUP_CONFIG
from shared.config.settings import ORDER_CREATE_RATE_LIMIT, server_timezone
from shared.errors import ValidationError
from shared.security import get_current_actor, limiter
from shared.security.identity import Actor

from .emitter import OrderEventEmitter
from .pickup import availability, check_slot, format_schedule, resolve_pickup_status
from .schemas import (
    ConfirmDetails,
    FulfillmentMethod,
    FulfillmentUpdate,
    ItemsUpdate,
    OrderCreate,
    OrderFilter,
    OrderResponse,
    PaymentMethod,
    PickupSchedule,
    PickupSlotCheck,
    PriceUpdate,
    Stage,
    TransitionRequest,
    UpdateRequestCreate,
    UpdateRequestDecision,
)
from .service import OrderService, with_pickup_status
from .transitions import allowed_targets

router = APIRouter(dependencies=[Depends(get_current_actor)])
public_router = APIRouter()  # For any public endpoints (e.g. health check)


def get_emitter(request: Request) -> OrderEventEmitter:
    return request.app.state.emitter


def _now() -> datetime:
    return datetime.now(timezone.utc)


@public_router.get("/health", include_in_schema=False)
async def health_check():
    return {"service": "order", "status": "running"}


# --- Pickup scheduling ---

@public_router.get("/pickup/location", summary="Pickup address, hours and instructions")
async def pickup_location():
    return PICKUP_CONFIG


@public_router.get("/pickup/availability/{day}", summary="Opening hours and slots for one day")
async def pickup_availability(day: date):
    return availability(day)


@router.post("/pickup/validate-slot", summary="Check a pickup slot against the clock and opening hours")
async def validate_pickup_slot(payload: PickupSlotCheck):
    errors = check_slot(payload.date, payload.time, _now(), server_timezone())
    return {"valid": not errors, "errors": errors}


@public_router.get("/pickup/status", summary="Resolve the pickup status of a schedule")
async def pickup_status(
    pickup_date: Optional[str] = Query(default=None, alias="date"),
    pickup_time: Optional[str] = Query(default=None, alias="time"),
):
    schedule = PickupSchedule(date=pickup_date, time=pickup_time)
    return {
        "status": resolve_pickup_status(schedule, _now()).value,
        "schedule": format_schedule(schedule),
    }


# --- Orders ---

@router.post("/", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(ORDER_CREATE_RATE_LIMIT)
async def create_order(
    request: Request,  # slowapi reads the caller from the request
    payload: OrderCreate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    emitter: OrderEventEmitter = Depends(get_emitter),
):
    order = await OrderService.create_order(db, emitter, actor, payload)
    return with_pickup_status(order, _now())


@router.get("/", response_model=List[OrderResponse])
async def list_orders(
    stage: Optional[Stage] = None,
    owner_id: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    fulfillment_method: Optional[FulfillmentMethod] = None,
    payment_method: Optional[PaymentMethod] = None,
    pickup_status: Optional[str] = Query(default=None, description="A pickup status or 'this_week'"),
    pickup_date_from: Optional[date] = None,
    pickup_date_to: Optional[date] = None,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    filters = OrderFilter(
        stage=stage,
        owner_id=owner_id,
        date_from=date_from,
        date_to=date_to,
        fulfillment_method=fulfillment_method,
        payment_method=payment_method,
        pickup_status=pickup_status,
        pickup_date_from=pickup_date_from,
        pickup_date_to=pickup_date_to,
    )
    now = _now()
    orders = await OrderService.list_orders(db, actor, filters, now=now)
    return [with_pickup_status(order, now) for order in orders]


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(order_id: str, actor: Actor = Depends(get_current_actor), db: AsyncSession = Depends(get_db)):
    order = await OrderService.get_order(db, actor, order_id)
    return with_pickup_status(order, _now())


@router.get("/{order_id}/transitions", summary="Stages the caller may move this order to")
async def list_transitions(order_id: str, actor: Actor = Depends(get_current_actor), db: AsyncSession = Depends(get_db)):
    order = await OrderService.get_order(db, actor, order_id)
    return {
        "stage": order.stage.value,
        "targets": [stage.value for stage in allowed_targets(order.stage, actor.role)],
    }


@router.post("/{order_id}/transition", response_model=OrderResponse)
async def transition_order(
    order_id: str,
    payload: TransitionRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    emitter: OrderEventEmitter = Depends(get_emitter),
):
    order = await OrderService.transition(db, emitter, actor, order_id, payload)
    return with_pickup_status(order, _now())


@router.patch("/{order_id}/price", response_model=OrderResponse)
async def set_price(
    order_id: str,
    payload: PriceUpdate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    emitter: OrderEventEmitter = Depends(get_emitter),
):
    order = await OrderService.set_price(db, emitter, actor, order_id, payload)
    return with_pickup_status(order, _now())


@router.put("/{order_id}/items", response_model=OrderResponse)
async def update_items(
    order_id: str,
    payload: ItemsUpdate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    emitter: OrderEventEmitter = Depends(get_emitter),
):
    order = await OrderService.update_items(db, emitter, actor, order_id, payload)
    return with_pickup_status(order, _now())


@router.put("/{order_id}/fulfillment", response_model=OrderResponse)
async def set_fulfillment(
    order_id: str,
    payload: FulfillmentUpdate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    emitter: OrderEventEmitter = Depends(get_emitter),
):
    order = await OrderService.set_fulfillment(db, emitter, actor, order_id, payload)
    return with_pickup_status(order, _now())


@router.post("/{order_id}/confirm-details", response_model=OrderResponse)
async def confirm_details(
    order_id: str,
    payload: ConfirmDetails,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    emitter: OrderEventEmitter = Depends(get_emitter),
):
    order = await OrderService.confirm_details(db, emitter, actor, order_id, payload)
    return with_pickup_status(order, _now())


@router.post("/{order_id}/update-request", response_model=OrderResponse)
async def request_fulfillment_update(
    order_id: str,
    payload: UpdateRequestCreate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    emitter: OrderEventEmitter = Depends(get_emitter),
):
    order = await OrderService.request_fulfillment_update(db, emitter, actor, order_id, payload)
    return with_pickup_status(order, _now())


@router.post("/{order_id}/update-request/respond", response_model=OrderResponse)
async def respond_fulfillment_update(
    order_id: str,
    payload: UpdateRequestDecision,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    emitter: OrderEventEmitter = Depends(get_emitter),
):
    order = await OrderService.respond_fulfillment_update(db, emitter, actor, order_id, payload)
    return with_pickup_status(order, _now())


@router.delete("/{order_id}")
async def delete_order(
    order_id: str,
    version: Optional[int] = None,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    emitter: OrderEventEmitter = Depends(get_emitter),
):
    if version is not None and version < 1:
        raise ValidationError("version must be a positive integer")
    order = await OrderService.delete_order(db, emitter, actor, order_id, version=version)
    return {"message": "Order deleted", "id": order.id, "order_number": order.order_number}
