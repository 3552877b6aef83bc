"""
Order status state machine.

Pure logic: the closed set of order states, the transition table split by
actor role, and the predicates the rest of the service derives from status.
No I/O happens here; the order store is the only caller that enforces it.
"""

import logging
from enum import Enum
from typing import Dict, FrozenSet, Mapping, Optional, Tuple

from errors import IllegalTransition

logger = logging.getLogger(__name__)


class OrderStatus(str, Enum):
    PRE_ORDER_PENDING = "pre-order-pending"
    PENDING = "pending"
    ACCEPTED = "accepted"
    READY = "ready"
    IN_TRANSIT = "in-transit"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    DENIED = "denied"
    CANCELLED = "cancelled"


class Role(str, Enum):
    CUSTOMER = "customer"
    OWNER = "owner"


PRE_ORDER = "pre-order"

FINAL_STATUSES: FrozenSet[OrderStatus] = frozenset([
    OrderStatus.COMPLETED,
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
])

# New orders are refused while the customer holds one of these
BLOCKING_STATUSES: FrozenSet[OrderStatus] = frozenset([
    OrderStatus.PENDING,
    OrderStatus.PRE_ORDER_PENDING,
])

IMMEDIATE_ACTIVE_STATUSES: FrozenSet[OrderStatus] = frozenset([
    OrderStatus.PENDING,
    OrderStatus.ACCEPTED,
    OrderStatus.READY,
    OrderStatus.IN_TRANSIT,
])

PRE_ORDER_ACTIVE_STATUSES: FrozenSet[OrderStatus] = frozenset([
    OrderStatus.ACCEPTED,
    OrderStatus.READY,
    OrderStatus.IN_TRANSIT,
])

CUSTOMER_CANCELLABLE_STATUSES: FrozenSet[OrderStatus] = frozenset([
    OrderStatus.PENDING,
    OrderStatus.PRE_ORDER_PENDING,
])

OWNER_TRANSITIONS: FrozenSet[Tuple[OrderStatus, OrderStatus]] = frozenset([
    (OrderStatus.PRE_ORDER_PENDING, OrderStatus.PENDING),
    (OrderStatus.PRE_ORDER_PENDING, OrderStatus.ACCEPTED),
    (OrderStatus.PRE_ORDER_PENDING, OrderStatus.DENIED),
    (OrderStatus.PENDING, OrderStatus.ACCEPTED),
    (OrderStatus.PENDING, OrderStatus.DENIED),
    (OrderStatus.ACCEPTED, OrderStatus.READY),
    (OrderStatus.READY, OrderStatus.IN_TRANSIT),
    (OrderStatus.READY, OrderStatus.COMPLETED),
    (OrderStatus.IN_TRANSIT, OrderStatus.DELIVERED),
])

CUSTOMER_TRANSITIONS: FrozenSet[Tuple[OrderStatus, OrderStatus]] = frozenset([
    (OrderStatus.PENDING, OrderStatus.CANCELLED),
    (OrderStatus.PRE_ORDER_PENDING, OrderStatus.CANCELLED),
    (OrderStatus.DENIED, OrderStatus.CANCELLED),
])

_TRANSITIONS_BY_ROLE: Dict[Role, FrozenSet[Tuple[OrderStatus, OrderStatus]]] = {
    Role.OWNER: OWNER_TRANSITIONS,
    Role.CUSTOMER: CUSTOMER_TRANSITIONS,
}

STATUS_LABELS: Dict[OrderStatus, str] = {
    OrderStatus.PRE_ORDER_PENDING: "Awaiting Restaurant Confirmation",
    OrderStatus.PENDING: "Pending",
    OrderStatus.ACCEPTED: "Preparing",
    OrderStatus.READY: "Ready",
    OrderStatus.IN_TRANSIT: "In Transit",
    OrderStatus.DELIVERED: "Delivered",
    OrderStatus.COMPLETED: "Completed",
    OrderStatus.DENIED: "Denied",
    OrderStatus.CANCELLED: "Cancelled",
}


def initial_status(order_type: str) -> OrderStatus:
    if order_type == PRE_ORDER:
        return OrderStatus.PRE_ORDER_PENDING
    return OrderStatus.PENDING


def is_pre_order(order: Mapping) -> bool:
    return order.get("order_type") == PRE_ORDER


def is_delivery(order: Mapping) -> bool:
    """True for delivery orders and pre-orders fulfilled by delivery."""
    if order.get("order_type") == "delivery":
        return True
    return is_pre_order(order) and order.get("pre_order_fulfillment") == "delivery"


def is_final(status) -> bool:
    return OrderStatus(status) in FINAL_STATUSES


def is_blocking(status) -> bool:
    return OrderStatus(status) in BLOCKING_STATUSES


def is_active(order: Mapping) -> bool:
    """
    Whether the order is in flight for the sticky tracking view.

    Immediate orders are active from pending through in-transit. Pre-orders
    only count once the restaurant has accepted them.
    """
    status = OrderStatus(order["status"])
    if is_pre_order(order):
        return status in PRE_ORDER_ACTIVE_STATUSES
    return status in IMMEDIATE_ACTIVE_STATUSES


def is_cancellable_by_customer(status) -> bool:
    return OrderStatus(status) in CUSTOMER_CANCELLABLE_STATUSES


def is_valid_transition(current, target, role=Role.OWNER, delivery: Optional[bool] = None) -> bool:
    """
    Check (current, target) against the table for ``role``.

    ``delivery`` narrows the ready-state fork: delivery orders go
    ready -> in-transit, everything else goes ready -> completed. When it is
    None both edges are accepted.
    """
    current = OrderStatus(current)
    target = OrderStatus(target)
    if (current, target) not in _TRANSITIONS_BY_ROLE[Role(role)]:
        return False
    if current == OrderStatus.READY and delivery is not None:
        if target == OrderStatus.IN_TRANSIT:
            return delivery
        if target == OrderStatus.COMPLETED:
            return not delivery
    return True


def validate_transition(current, target, role, delivery: Optional[bool] = None) -> OrderStatus:
    """Return the target status or raise IllegalTransition."""
    try:
        current = OrderStatus(current)
        target = OrderStatus(target)
    except ValueError:
        raise IllegalTransition(f"Unknown order status: {target!r}")

    if is_valid_transition(current, target, role, delivery):
        return target

    logger.info(f"Rejected transition {current.value} -> {target.value} for {Role(role).value}")
    if current in FINAL_STATUSES:
        raise IllegalTransition(
            f"Cannot change status of an order that is already {current.value}. Final states cannot be modified."
        )
    if Role(role) == Role.CUSTOMER:
        raise IllegalTransition(
            f"Customers can only cancel pending, pre-order-pending or denied orders (order is {current.value})"
        )
    raise IllegalTransition(f"Cannot move an order from {current.value} to {target.value}")


def allowed_targets(current, role, delivery: Optional[bool] = None) -> FrozenSet[OrderStatus]:
    current = OrderStatus(current)
    return frozenset(
        target for (source, target) in _TRANSITIONS_BY_ROLE[Role(role)]
        if source == current and is_valid_transition(current, target, role, delivery)
    )


def status_label(status) -> str:
    return STATUS_LABELS.get(OrderStatus(status), str(status))
