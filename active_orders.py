"""
Active/pending order selectors.

Pure derivations over a customer's order documents, recomputed on every
read. ``has_blocking_order`` gates creation; the others feed the sticky
tracking view and the Active Orders / Pre-Orders lists.
"""

from typing import Iterable, List, Mapping, Optional

from order_status import BLOCKING_STATUSES, OrderStatus, is_active, is_pre_order

PRE_ORDER_VIEW_STATUSES = frozenset([
    OrderStatus.PRE_ORDER_PENDING,
    OrderStatus.PENDING,
    OrderStatus.ACCEPTED,
])


def _owned(orders: Iterable[Mapping], customer_id: str) -> List[Mapping]:
    return [o for o in orders if o.get("customer_id") == customer_id]


def _most_recent_first(orders: Iterable[Mapping]) -> List[Mapping]:
    return sorted(orders, key=lambda o: (o["created_at"], str(o.get("id") or o.get("_id"))), reverse=True)


def has_blocking_order(orders: Iterable[Mapping], customer_id: str) -> bool:
    """True when the customer may not place a new order."""
    return any(OrderStatus(o["status"]) in BLOCKING_STATUSES for o in _owned(orders, customer_id))


def get_customer_active_order(orders: Iterable[Mapping], customer_id: str) -> Optional[Mapping]:
    """
    The single order driving the sticky tracking widget.

    More than one candidate should not exist while the create gate holds;
    if it does the newest one wins.
    """
    candidates = _most_recent_first(o for o in _owned(orders, customer_id) if is_active(o))
    return candidates[0] if candidates else None


def get_customer_active_orders(orders: Iterable[Mapping], customer_id: str) -> List[Mapping]:
    # Denied orders stay listed until the customer acknowledges them.
    return _most_recent_first(
        o for o in _owned(orders, customer_id)
        if is_active(o) or o["status"] == OrderStatus.DENIED.value
    )


def get_customer_pre_orders(orders: Iterable[Mapping], customer_id: str) -> List[Mapping]:
    return _most_recent_first(
        o for o in _owned(orders, customer_id)
        if is_pre_order(o) and OrderStatus(o["status"]) in PRE_ORDER_VIEW_STATUSES
    )
