"""
Stage transition engine.

Pure decision function over (order snapshot, actor role, actor owner id,
target stage): it either raises a workflow error or returns the effects the
caller must apply. Nothing here reads the clock unless `now` is omitted, and
nothing touches storage.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import FrozenSet, Optional, Tuple

from shared.config.settings import server_timezone
from shared.errors import (
    IllegalTransitionError,
    IncompleteFulfillmentError,
    NotOwnerError,
    ValidationError,
)
from shared.security.identity import Role

from .pickup import validate_schedule
from .schemas import (
    Fulfillment,
    FulfillmentMethod,
    OrderSnapshot,
    Stage,
    StageHistoryEntry,
)

Edge = Tuple[Stage, Stage]

REQUESTER_TRANSITIONS: FrozenSet[Edge] = frozenset([
    (Stage.DRAFT, Stage.SUBMITTED),
    (Stage.REQUIRES_APPROVAL, Stage.READY_TO_PRODUCE),
    (Stage.REQUIRES_APPROVAL, Stage.REQUESTED_CHANGES),
])

APPROVER_TRANSITIONS: FrozenSet[Edge] = frozenset([
    (Stage.SUBMITTED, Stage.UNDER_REVIEW),
    (Stage.UNDER_REVIEW, Stage.REQUIRES_APPROVAL),
    (Stage.UNDER_REVIEW, Stage.REQUESTED_CHANGES),
    (Stage.REQUESTED_CHANGES, Stage.UNDER_REVIEW),
    (Stage.READY_TO_PRODUCE, Stage.IN_PRODUCTION),
    (Stage.IN_PRODUCTION, Stage.COMPLETED),
])

# Backward moves so an approver can correct a mistake
APPROVER_OVERRIDES: FrozenSet[Edge] = frozenset([
    (Stage.UNDER_REVIEW, Stage.SUBMITTED),
    (Stage.READY_TO_PRODUCE, Stage.REQUIRES_APPROVAL),
    (Stage.IN_PRODUCTION, Stage.READY_TO_PRODUCE),
    (Stage.COMPLETED, Stage.IN_PRODUCTION),
])

ALLOWED_TRANSITIONS = {
    Role.REQUESTER: REQUESTER_TRANSITIONS,
    Role.APPROVER: APPROVER_TRANSITIONS | APPROVER_OVERRIDES,
}

TERMINAL_STAGE = Stage.COMPLETED


def is_allowed(current: Stage, role: Role, target: Stage) -> bool:
    return (current, target) in ALLOWED_TRANSITIONS[role]


def allowed_targets(current: Stage, role: Role) -> FrozenSet[Stage]:
    """Stages `role` may move an order to from `current`."""
    return frozenset(target for source, target in ALLOWED_TRANSITIONS[role] if source is current)


@dataclass(frozen=True)
class TransitionEffects:
    """Everything a granted transition changes on the order."""

    source: Stage
    target: Stage
    price: Optional[float] = None
    stamp_approval: bool = False
    clear_approval: bool = False
    fulfillment: Optional[Fulfillment] = None
    clear_fulfillment: bool = False
    is_override: bool = False

    def apply(
        self,
        order: OrderSnapshot,
        actor_id: str,
        at: datetime,
        comments: Optional[str] = None,
    ) -> OrderSnapshot:
        """Returns a copy of `order` with these effects and a stage-history entry."""
        changes = {"stage": self.target}
        if self.price is not None:
            changes["price"] = self.price
        if self.stamp_approval:
            changes["approved_by"] = actor_id
            changes["approved_at"] = at
        if self.clear_approval:
            changes["approved_by"] = None
            changes["approved_at"] = None
        if self.fulfillment is not None:
            changes["fulfillment"] = self.fulfillment
        if self.clear_fulfillment:
            changes["fulfillment"] = None
            changes["update_request"] = None
        entry = StageHistoryEntry(stage=self.target, changed_by=actor_id, changed_at=at, comments=comments or "")
        changes["stage_history"] = [*order.stage_history, entry]
        return order.model_copy(deep=True, update=changes)


def validate_fulfillment(fulfillment: Optional[Fulfillment], now: datetime, tz=None) -> list[str]:
    """Problems that keep a fulfillment record from completing an order."""
    if fulfillment is None:
        return ["Fulfillment details are required"]

    errors = []
    if fulfillment.payment_method is None:
        errors.append("Payment method is required")

    errors.extend(validate_schedule(fulfillment.schedule, fulfillment.method, now, tz))

    if fulfillment.method is FulfillmentMethod.DELIVERY:
        address = fulfillment.address
        if address is None:
            errors.append("Delivery address is required")
        else:
            for field in ("street", "suburb", "state", "postcode"):
                if not (getattr(address, field) or "").strip():
                    errors.append(f"Delivery address {field} is required")
    return errors


def attempt_transition(
    order: OrderSnapshot,
    actor_role: Role,
    actor_owner_id: Optional[str],
    target: Stage,
    *,
    price: Optional[float] = None,
    fulfillment: Optional[Fulfillment] = None,
    now: Optional[datetime] = None,
    tz=None,
) -> TransitionEffects:
    """Decides whether `actor_role` may move `order` to `target`.

    Raises NotOwnerError, IllegalTransitionError, ValidationError or
    IncompleteFulfillmentError; otherwise returns the effects to apply.
    """
    if actor_role is Role.REQUESTER and actor_owner_id != order.owner_id:
        raise NotOwnerError(f"Order {order.order_number} belongs to another requester")

    source = order.stage
    if not is_allowed(source, actor_role, target):
        raise IllegalTransitionError(
            f"A {actor_role.value} cannot move an order from '{source.value}' to '{target.value}'"
        )

    effects = {"source": source, "target": target, "is_override": (source, target) in APPROVER_OVERRIDES}

    if target is Stage.SUBMITTED and not order.items:
        raise ValidationError("An order needs at least one item before it can be submitted")

    if target is Stage.REQUIRES_APPROVAL:
        if price is None and order.price is None:
            raise ValidationError("A price is required before an order can be sent for approval")
        if price is not None:
            effects["price"] = price

    if source is Stage.REQUIRES_APPROVAL and target is Stage.READY_TO_PRODUCE:
        if order.price is None:
            raise ValidationError("An order without a price cannot be approved")
        effects["stamp_approval"] = True

    if target is TERMINAL_STAGE:
        tz = tz or server_timezone()
        now = now or datetime.now(timezone.utc)
        errors = validate_fulfillment(fulfillment, now, tz)
        if errors:
            raise IncompleteFulfillmentError("Fulfillment details are incomplete", details=errors)
        effects["fulfillment"] = fulfillment

    if source is Stage.READY_TO_PRODUCE and target is Stage.REQUIRES_APPROVAL:
        effects["clear_approval"] = True

    if source is TERMINAL_STAGE:
        effects["clear_fulfillment"] = True

    return TransitionEffects(**effects)
