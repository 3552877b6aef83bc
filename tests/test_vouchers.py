from datetime import datetime, timedelta

import pytest

from errors import ValidationFailed
from vouchers import check_voucher, redeem_voucher, validate_code_format, validate_voucher

NOW = datetime(2025, 3, 10, 12, 0)


def voucher(**overrides):
    data = {
        "code": "SAVE10",
        "type": "percentage",
        "value": 10,
        "min_order_amount": 200,
        "max_discount": 50,
        "expires_at": NOW + timedelta(days=1),
        "usage_limit": 2,
        "usage_count": 0,
        "active": True,
    }
    data.update(overrides)
    return data


def test_minimum_order_amount_is_inclusive():
    assert validate_voucher(voucher(), 200, NOW).valid
    result = validate_voucher(voucher(), 199.99, NOW)
    assert not result.valid
    assert result.message == "Minimum order amount is ₱200"


def test_percentage_discount_is_capped():
    assert validate_voucher(voucher(), 300, NOW).discount == 30
    assert validate_voucher(voucher(), 1000, NOW).discount == 50


def test_fixed_discount():
    assert validate_voucher(voucher(type="fixed", value=75), 250, NOW).discount == 75


@pytest.mark.parametrize("overrides,message", [
    ({"active": False}, "Invalid voucher code"),
    ({"expires_at": NOW - timedelta(seconds=1)}, "Voucher has expired"),
    ({"usage_count": 2}, "Voucher usage limit reached"),
])
def test_invalid_vouchers(overrides, message):
    result = validate_voucher(voucher(**overrides), 500, NOW)
    assert not result.valid
    assert result.discount == 0
    assert result.message == message


def test_unknown_code(database):
    assert check_voucher(database, "NOPE", 500, NOW).message == "Invalid voucher code"


def test_redeem_stops_at_usage_limit(database):
    database["voucher"].insert_one(voucher())
    assert redeem_voucher(database, "SAVE10", 300, NOW) == 30
    assert redeem_voucher(database, "SAVE10", 300, NOW) == 30
    with pytest.raises(ValidationFailed, match="usage limit"):
        redeem_voucher(database, "SAVE10", 300, NOW)
    assert database["voucher"].find_one({"code": "SAVE10"})["usage_count"] == 2


@pytest.mark.parametrize("code", ["AB", "x" * 51, "BAD CODE", "naïve"])
def test_code_format_rejected(code):
    with pytest.raises(ValidationFailed):
        validate_code_format(code)


def test_code_format_accepted():
    assert validate_code_format("SUMMER_25-OFF") == "SUMMER_25-OFF"
