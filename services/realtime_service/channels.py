"""Channel names and the deterministic channel sets used by the real-time layer."""
from typing import FrozenSet, Tuple

from shared.security.identity import Actor, Role

MONITOR_CHANNEL = "monitor"


def role_channel(role: Role) -> str:
    return f"role:{role.value}"


def owner_channel(owner_id: str) -> str:
    return f"owner:{owner_id}"


def order_channel(order_id: str) -> str:
    return f"order:{order_id}"


def seed_channels(actor: Actor) -> FrozenSet[str]:
    """Channels a connection joins the moment it is admitted.

    Requesters get their role channel and their owner scope. Approvers get every
    role channel plus the monitoring channel, so they observe all activity.
    """
    if actor.role is Role.APPROVER:
        return frozenset([*(role_channel(role) for role in Role), MONITOR_CHANNEL])
    return frozenset([role_channel(Role.REQUESTER), owner_channel(actor.owner_id)])


def order_event_channels(order) -> Tuple[str, ...]:
    """Where an order's envelopes go.

    The requester role channel is left out on purpose: every requester sits in
    it, and one requester's orders must not reach another.
    """
    return (
        owner_channel(order.owner_id),
        role_channel(Role.APPROVER),
        MONITOR_CHANNEL,
        order_channel(order.id),
    )
