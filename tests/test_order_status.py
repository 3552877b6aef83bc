import itertools

import pytest

from errors import IllegalTransition
from order_status import (
    CUSTOMER_TRANSITIONS,
    OWNER_TRANSITIONS,
    OrderStatus,
    Role,
    allowed_targets,
    initial_status,
    is_active,
    is_blocking,
    is_cancellable_by_customer,
    is_delivery,
    is_final,
    is_valid_transition,
    status_label,
    validate_transition,
)

ALL_PAIRS = list(itertools.product(OrderStatus, OrderStatus))


@pytest.mark.parametrize("current,target", ALL_PAIRS)
def test_owner_transitions_match_table(current, target):
    expected = (current, target) in OWNER_TRANSITIONS
    assert is_valid_transition(current, target, Role.OWNER) is expected
    if expected:
        assert validate_transition(current, target, Role.OWNER) == target
    else:
        with pytest.raises(IllegalTransition):
            validate_transition(current, target, Role.OWNER)


@pytest.mark.parametrize("current,target", ALL_PAIRS)
def test_customer_transitions_match_table(current, target):
    expected = (current, target) in CUSTOMER_TRANSITIONS
    assert is_valid_transition(current, target, Role.CUSTOMER) is expected
    if not expected:
        with pytest.raises(IllegalTransition):
            validate_transition(current, target, Role.CUSTOMER)


@pytest.mark.parametrize("status", [OrderStatus.COMPLETED, OrderStatus.DELIVERED, OrderStatus.CANCELLED])
def test_final_states_have_no_exits(status):
    assert is_final(status)
    assert allowed_targets(status, Role.OWNER) == frozenset()
    assert allowed_targets(status, Role.CUSTOMER) == frozenset()


def test_cancelled_to_cancelled_is_rejected_with_final_state_message():
    with pytest.raises(IllegalTransition, match="Final states cannot be modified"):
        validate_transition("cancelled", "cancelled", Role.CUSTOMER)


def test_ready_fork_depends_on_delivery():
    assert is_valid_transition("ready", "in-transit", Role.OWNER, delivery=True)
    assert not is_valid_transition("ready", "completed", Role.OWNER, delivery=True)
    assert is_valid_transition("ready", "completed", Role.OWNER, delivery=False)
    assert not is_valid_transition("ready", "in-transit", Role.OWNER, delivery=False)
    assert allowed_targets("ready", Role.OWNER, delivery=True) == {OrderStatus.IN_TRANSIT}


def test_unknown_status_is_rejected():
    with pytest.raises(IllegalTransition, match="Unknown order status"):
        validate_transition("pending", "shipped", Role.OWNER)


def test_initial_status():
    assert initial_status("pre-order") == OrderStatus.PRE_ORDER_PENDING
    for order_type in ("dine-in", "takeaway", "delivery"):
        assert initial_status(order_type) == OrderStatus.PENDING


def test_is_active_excludes_pending_pre_orders():
    assert is_active({"order_type": "takeaway", "status": "pending"})
    assert is_active({"order_type": "delivery", "status": "in-transit"})
    assert not is_active({"order_type": "takeaway", "status": "denied"})
    assert not is_active({"order_type": "pre-order", "status": "pre-order-pending"})
    assert not is_active({"order_type": "pre-order", "status": "pending"})
    assert is_active({"order_type": "pre-order", "status": "accepted"})


def test_blocking_and_cancellable():
    assert is_blocking("pending") and is_blocking("pre-order-pending")
    assert not is_blocking("accepted")
    assert is_cancellable_by_customer("pending")
    assert not is_cancellable_by_customer("accepted")
    assert not is_cancellable_by_customer("denied")


def test_is_delivery():
    assert is_delivery({"order_type": "delivery"})
    assert is_delivery({"order_type": "pre-order", "pre_order_fulfillment": "delivery"})
    assert not is_delivery({"order_type": "pre-order", "pre_order_fulfillment": "pickup"})
    assert not is_delivery({"order_type": "dine-in"})


def test_status_label():
    assert status_label("accepted") == "Preparing"
    assert status_label(OrderStatus.IN_TRANSIT) == "In Transit"
