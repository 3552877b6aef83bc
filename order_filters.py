"""
Filter/sort pipeline shared by every order list view.

``filter_and_sort_orders`` is a pure function: it never mutates the list or
the documents it is given, so the same inputs always give the same output.
"""

from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from order_status import STATUS_LABELS, OrderStatus, is_active

StatusMatcher = Callable[[Mapping, str], bool]
SortKey = Callable[[Mapping], Any]

# (id, label) pairs for the inbox/chat status picker: every status plus the
# synthetic "recent" and "active" buckets.
STATUS_FILTER_OPTIONS = [
    ("all", "All"),
    ("recent", "Recent"),
    ("active", "Active"),
] + [(status.value, STATUS_LABELS[status]) for status in OrderStatus]


@dataclass(frozen=True)
class OrderFilterConfig:
    customer_id: str = ""
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    status_filter: str = "all"
    order_type: str = "all"  # "all", "pre-order" or "regular"
    custom_filter: Optional[Callable[[Mapping], bool]] = None
    custom_status_matcher: Optional[StatusMatcher] = None
    sort_key: Optional[SortKey] = None
    descending: bool = True


def order_id(order: Mapping) -> str:
    return str(order.get("id") or order.get("_id") or "")


def created_sort_key(order: Mapping):
    return (order["created_at"], order_id(order))


def is_within_date_range(order: Mapping, from_date: Optional[date], to_date: Optional[date]) -> bool:
    created = order["created_at"]
    if from_date is not None and created < datetime.combine(from_date, time.min):
        return False
    # time.max is 23:59:59.999999, one microsecond past the stored millisecond range
    if to_date is not None and created > datetime.combine(to_date, time.max):
        return False
    return True


def matches_status(order: Mapping, status_filter: str, matcher: Optional[StatusMatcher] = None) -> bool:
    if matcher is not None:
        return matcher(order, status_filter)
    if status_filter == "all":
        return True
    return order["status"] == status_filter


def matches_order_type(order: Mapping, order_type: str) -> bool:
    if order_type == "pre-order":
        return order.get("order_type") == "pre-order"
    if order_type == "regular":
        return order.get("order_type") != "pre-order"
    return True


def filter_and_sort_orders(orders: Iterable[Mapping], config: OrderFilterConfig) -> List[Mapping]:
    selected = []
    for order in orders:
        # An empty customer id is the owner view: no ownership filter
        if config.customer_id and order.get("customer_id") != config.customer_id:
            continue
        if not matches_order_type(order, config.order_type):
            continue
        if not is_within_date_range(order, config.from_date, config.to_date):
            continue
        if config.custom_filter is not None and not config.custom_filter(order):
            continue
        if not matches_status(order, config.status_filter, config.custom_status_matcher):
            continue
        selected.append(order)
    return sorted(selected, key=config.sort_key or created_sort_key, reverse=config.descending)


def active_status_matcher(order: Mapping, status_filter: str) -> bool:
    """Status matcher that understands the synthetic "active" bucket."""
    if status_filter == "active":
        return is_active(order)
    return matches_status(order, status_filter)


def recent_chat_matcher(last_by_order: Dict[str, Mapping], today: date) -> StatusMatcher:
    """
    Status matcher for the inbox: "recent" keeps orders whose latest chat
    message was sent on ``today``; "active" and plain statuses fall through.
    """
    def matcher(order: Mapping, status_filter: str) -> bool:
        if status_filter == "recent":
            last = last_by_order.get(order_id(order))
            return last is not None and last["timestamp"].date() == today
        return active_status_matcher(order, status_filter)

    return matcher


def last_message_sort_key(last_by_order: Dict[str, Mapping]) -> SortKey:
    """Sort by latest chat message, falling back to creation time."""
    def key(order: Mapping):
        last = last_by_order.get(order_id(order))
        stamp = last["timestamp"] if last else order["created_at"]
        return (stamp, order_id(order))

    return key
