import pytest

from errors import RateLimited
from rate_limit import check_rate_limit


def test_limit_applies_within_a_window(database, clock):
    for expected in range(1, 6):
        assert check_rate_limit(database, "u1", "orders.create", clock) == expected
    with pytest.raises(RateLimited, match="Maximum 5 requests per 1 minute"):
        check_rate_limit(database, "u1", "orders.create", clock)


def test_new_window_resets_count(database, clock):
    for _ in range(5):
        check_rate_limit(database, "u1", "orders.create", clock)
    clock.advance(minutes=1)
    assert check_rate_limit(database, "u1", "orders.create", clock) == 1


def test_limits_are_per_user_and_endpoint(database, clock):
    for _ in range(5):
        check_rate_limit(database, "u1", "orders.create", clock)
    assert check_rate_limit(database, "u2", "orders.create", clock) == 1
    assert check_rate_limit(database, "u1", "chat.send", clock) == 1


def test_unknown_endpoint_uses_default(database, clock):
    for _ in range(30):
        check_rate_limit(database, "u1", "something.else", clock)
    with pytest.raises(RateLimited):
        check_rate_limit(database, "u1", "something.else", clock)
