from datetime import datetime, timedelta, timezone
from itertools import product

import pytest

from services.order_service.schemas import (
    DeliveryAddress,
    Fulfillment,
    FulfillmentMethod,
    PaymentMethod,
    PickupSchedule,
    Stage,
)
from services.order_service.transitions import (
    allowed_targets,
    attempt_transition,
    is_allowed,
    validate_fulfillment,
)
from shared.config.settings import server_timezone
from shared.errors import (
    IllegalTransitionError,
    IncompleteFulfillmentError,
    NotOwnerError,
    ValidationError,
)
from shared.security.identity import Role

NOW = datetime(2025, 8, 7, 0, 0, tzinfo=timezone.utc)  # 10:00 in Sydney

EXPECTED = {
    Role.REQUESTER: {
        (Stage.DRAFT, Stage.SUBMITTED),
        (Stage.REQUIRES_APPROVAL, Stage.READY_TO_PRODUCE),
        (Stage.REQUIRES_APPROVAL, Stage.REQUESTED_CHANGES),
    },
    Role.APPROVER: {
        (Stage.SUBMITTED, Stage.UNDER_REVIEW),
        (Stage.UNDER_REVIEW, Stage.REQUIRES_APPROVAL),
        (Stage.UNDER_REVIEW, Stage.REQUESTED_CHANGES),
        (Stage.REQUESTED_CHANGES, Stage.UNDER_REVIEW),
        (Stage.READY_TO_PRODUCE, Stage.IN_PRODUCTION),
        (Stage.IN_PRODUCTION, Stage.COMPLETED),
        (Stage.UNDER_REVIEW, Stage.SUBMITTED),
        (Stage.READY_TO_PRODUCE, Stage.REQUIRES_APPROVAL),
        (Stage.IN_PRODUCTION, Stage.READY_TO_PRODUCE),
        (Stage.COMPLETED, Stage.IN_PRODUCTION),
    },
}

ALL_CASES = list(product(Role, Stage, Stage))
ILLEGAL_CASES = [(role, source, target) for role, source, target in ALL_CASES if (source, target) not in EXPECTED[role]]


def pickup_fulfillment(day="2025-08-09", at="11:00"):
    return Fulfillment(
        method=FulfillmentMethod.PICKUP,
        payment_method=PaymentMethod.CARD,
        schedule=PickupSchedule(date=day, time=at),
    )


def owner_for(role):
    return "alice" if role is Role.REQUESTER else None


@pytest.mark.parametrize("role,source,target", ALL_CASES)
def test_table_matches_role_policy(role, source, target):
    assert is_allowed(source, role, target) == ((source, target) in EXPECTED[role])


@pytest.mark.parametrize("role,source,target", ILLEGAL_CASES)
def test_every_edge_outside_the_table_is_illegal(role, source, target, make_order):
    order = make_order(stage=source, price=40.0)
    with pytest.raises(IllegalTransitionError):
        attempt_transition(order, role, owner_for(role), target, now=NOW)


@pytest.mark.parametrize(
    "role,source,target",
    [(role, source, target) for role, edges in EXPECTED.items() for source, target in sorted(edges)],
)
def test_every_allowed_edge_is_granted_when_preconditions_hold(role, source, target, make_order):
    order = make_order(stage=source, price=40.0)
    fulfillment = pickup_fulfillment() if target is Stage.COMPLETED else None
    effects = attempt_transition(
        order, role, owner_for(role), target, fulfillment=fulfillment, now=NOW, tz=server_timezone()
    )
    assert effects.source is source
    assert effects.target is target


def test_decisions_are_deterministic(make_order):
    order = make_order(stage=Stage.UNDER_REVIEW)
    first = attempt_transition(order, Role.APPROVER, None, Stage.REQUIRES_APPROVAL, price=12.5, now=NOW)
    second = attempt_transition(order, Role.APPROVER, None, Stage.REQUIRES_APPROVAL, price=12.5, now=NOW)
    assert first == second


def test_completed_has_no_way_out_for_requesters():
    assert allowed_targets(Stage.COMPLETED, Role.REQUESTER) == frozenset()
    assert allowed_targets(Stage.COMPLETED, Role.APPROVER) == frozenset([Stage.IN_PRODUCTION])


def test_requester_cannot_act_on_another_owners_order(make_order):
    order = make_order(stage=Stage.DRAFT, owner_id="bob")
    with pytest.raises(NotOwnerError):
        attempt_transition(order, Role.REQUESTER, "alice", Stage.SUBMITTED, now=NOW)


def test_ownership_is_checked_before_legality(make_order):
    order = make_order(stage=Stage.COMPLETED, owner_id="bob")
    with pytest.raises(NotOwnerError):
        attempt_transition(order, Role.REQUESTER, "alice", Stage.DRAFT, now=NOW)


def test_submitting_an_empty_order_fails(make_order):
    order = make_order(stage=Stage.DRAFT, items=[])
    with pytest.raises(ValidationError):
        attempt_transition(order, Role.REQUESTER, "alice", Stage.SUBMITTED, now=NOW)


def test_requires_approval_needs_a_price(make_order):
    order = make_order(stage=Stage.UNDER_REVIEW)
    with pytest.raises(ValidationError):
        attempt_transition(order, Role.APPROVER, None, Stage.REQUIRES_APPROVAL, now=NOW)

    effects = attempt_transition(order, Role.APPROVER, None, Stage.REQUIRES_APPROVAL, price=55.0, now=NOW)
    assert effects.price == 55.0


def test_requester_approval_depends_on_price(make_order):
    unpriced = make_order(stage=Stage.REQUIRES_APPROVAL)
    with pytest.raises(ValidationError):
        attempt_transition(unpriced, Role.REQUESTER, "alice", Stage.READY_TO_PRODUCE, now=NOW)

    priced = make_order(stage=Stage.REQUIRES_APPROVAL, price=30.0)
    effects = attempt_transition(priced, Role.REQUESTER, "alice", Stage.READY_TO_PRODUCE, now=NOW)
    assert effects.stamp_approval

    approved = effects.apply(priced, actor_id="alice", at=NOW)
    assert approved.approved_by == "alice"
    assert approved.approved_at == NOW
    assert approved.stage is Stage.READY_TO_PRODUCE
    assert approved.stage_history[-1].stage is Stage.READY_TO_PRODUCE


def test_completion_requires_fulfillment(make_order):
    order = make_order(stage=Stage.IN_PRODUCTION, price=30.0)
    with pytest.raises(IncompleteFulfillmentError):
        attempt_transition(order, Role.APPROVER, None, Stage.COMPLETED, now=NOW)

    missing_time = Fulfillment(
        method=FulfillmentMethod.PICKUP,
        payment_method=PaymentMethod.CASH,
        schedule=PickupSchedule(date="2025-08-09"),
    )
    with pytest.raises(IncompleteFulfillmentError) as excinfo:
        attempt_transition(order, Role.APPROVER, None, Stage.COMPLETED, fulfillment=missing_time, now=NOW)
    assert "Pickup time is required" in excinfo.value.details


def test_completion_rejects_a_pickup_in_the_past(make_order):
    order = make_order(stage=Stage.IN_PRODUCTION)
    stale = pickup_fulfillment(day="2025-08-06")
    with pytest.raises(IncompleteFulfillmentError):
        attempt_transition(order, Role.APPROVER, None, Stage.COMPLETED, fulfillment=stale, now=NOW)


def test_completion_stores_fulfillment(make_order):
    order = make_order(stage=Stage.IN_PRODUCTION)
    fulfillment = pickup_fulfillment()
    effects = attempt_transition(order, Role.APPROVER, None, Stage.COMPLETED, fulfillment=fulfillment, now=NOW)
    completed = effects.apply(order, actor_id="ann", at=NOW, comments="ready for collection")
    assert completed.fulfillment == fulfillment
    assert completed.stage_history[-1].comments == "ready for collection"
    # The input snapshot is untouched
    assert order.stage is Stage.IN_PRODUCTION
    assert order.fulfillment is None


def test_override_out_of_completed_clears_fulfillment(make_order):
    order = make_order(stage=Stage.COMPLETED, fulfillment=pickup_fulfillment())
    effects = attempt_transition(order, Role.APPROVER, None, Stage.IN_PRODUCTION, now=NOW)
    assert effects.is_override
    assert effects.clear_fulfillment
    reopened = effects.apply(order, actor_id="ann", at=NOW)
    assert reopened.fulfillment is None
    assert reopened.update_request is None


def test_sending_back_for_approval_clears_the_approval_stamp(make_order):
    order = make_order(stage=Stage.READY_TO_PRODUCE, price=30.0, approved_by="alice", approved_at=NOW)
    effects = attempt_transition(order, Role.APPROVER, None, Stage.REQUIRES_APPROVAL, now=NOW)
    assert effects.is_override
    assert effects.clear_approval
    reopened = effects.apply(order, actor_id="ann", at=NOW)
    assert reopened.approved_by is None
    assert reopened.approved_at is None
    assert reopened.price == 30.0


def test_delivery_needs_an_address():
    delivery = Fulfillment(method=FulfillmentMethod.DELIVERY, payment_method=PaymentMethod.CARD)
    assert "Delivery address is required" in validate_fulfillment(delivery, NOW, server_timezone())

    partial = delivery.model_copy(update={"address": DeliveryAddress(street="1 Main St", suburb="Bankstown")})
    errors = validate_fulfillment(partial, NOW, server_timezone())
    assert errors == ["Delivery address state is required", "Delivery address postcode is required"]


def test_payment_method_is_required():
    fulfillment = pickup_fulfillment().model_copy(update={"payment_method": None})
    assert validate_fulfillment(fulfillment, NOW + timedelta(hours=1), server_timezone()) == [
        "Payment method is required"
    ]
