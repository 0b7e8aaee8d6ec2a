"""
Order State Machine
===================
Closed transition table for the order lifecycle.

    created ──settlement──► processing ──admin──► shipped ──admin──► delivered
       │                        │  └────────────admin───────────────────▲
       └──admin──► cancelled ◄──┘ (admin | stock_conflict)

`delivered` and `cancelled` are terminal. Self-transitions are rejected so
that one-shot side effects (delivered stamp, restock, refund) cannot repeat.
"""

from enum import Enum
from typing import FrozenSet, Mapping, Tuple

from pipeline.errors import InvalidTransitionError, ValidationFailure
from schemas.order_definitions import OrderStatus


class Trigger(str, Enum):
    """Who or what is asking for the transition."""
    SETTLEMENT = "settlement"
    ADMIN = "admin"
    STOCK_CONFLICT = "stock_conflict"


TRANSITIONS: Mapping[Tuple[OrderStatus, OrderStatus], FrozenSet[Trigger]] = {
    (OrderStatus.CREATED, OrderStatus.PROCESSING): frozenset({Trigger.SETTLEMENT}),
    (OrderStatus.CREATED, OrderStatus.CANCELLED): frozenset({Trigger.ADMIN}),
    (OrderStatus.PROCESSING, OrderStatus.SHIPPED): frozenset({Trigger.ADMIN}),
    (OrderStatus.PROCESSING, OrderStatus.DELIVERED): frozenset({Trigger.ADMIN}),
    (OrderStatus.PROCESSING, OrderStatus.CANCELLED): frozenset({Trigger.ADMIN, Trigger.STOCK_CONFLICT}),
    (OrderStatus.SHIPPED, OrderStatus.DELIVERED): frozenset({Trigger.ADMIN}),
}

TERMINAL_STATES: FrozenSet[OrderStatus] = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})

# Targets an administrator may request through the status endpoint.
ADMIN_TARGETS: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
})

# States in which payment has been settled (or never needed settling).
SETTLED_STATES: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
})


def can_transition(current: OrderStatus, target: OrderStatus, trigger: Trigger) -> bool:
    return trigger in TRANSITIONS.get((current, target), frozenset())


def ensure_transition(current: OrderStatus, target: OrderStatus, trigger: Trigger) -> None:
    if not can_transition(current, target, trigger):
        raise InvalidTransitionError(current.value, target.value, trigger.value)


def allowed_targets(current: OrderStatus, trigger: Trigger) -> FrozenSet[OrderStatus]:
    return frozenset(
        target for (source, target), triggers in TRANSITIONS.items()
        if source == current and trigger in triggers
    )


def parse_admin_target(value: str) -> OrderStatus:
    """Parse a requested status, rejecting anything outside the admin set."""
    try:
        status = OrderStatus(value)
    except ValueError:
        status = None

    if status not in ADMIN_TARGETS:
        raise ValidationFailure(
            "Invalid order status",
            {"status": value, "allowed": sorted(s.value for s in ADMIN_TARGETS)},
        )
    return status
