"""
Voucher validation and redemption.

``validate_voucher`` is the pure discount contract: (voucher, order amount,
now) -> VoucherValidation. The Mongo-backed helpers look a code up and bump
its usage count when an order actually redeems it.
"""

import logging
import re
from datetime import datetime
from typing import Mapping, Optional

from pymongo.database import Database

from database import current_time, serialize
from errors import ValidationFailed
from schemas import VoucherValidation

logger = logging.getLogger(__name__)

CODE_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def validate_code_format(code: str) -> str:
    if len(code) > 50:
        raise ValidationFailed("Voucher code must be 50 characters or less")
    if len(code) < 3:
        raise ValidationFailed("Voucher code must be at least 3 characters")
    if not CODE_PATTERN.match(code):
        raise ValidationFailed("Voucher code can only contain letters, numbers, hyphens, and underscores")
    return code


def validate_voucher(voucher: Optional[Mapping], order_amount: float, now: datetime) -> VoucherValidation:
    if not voucher or not voucher.get("active"):
        return VoucherValidation(valid=False, discount=0, message="Invalid voucher code")
    if voucher["expires_at"] < now:
        return VoucherValidation(valid=False, discount=0, message="Voucher has expired")
    if voucher.get("usage_count", 0) >= voucher["usage_limit"]:
        return VoucherValidation(valid=False, discount=0, message="Voucher usage limit reached")
    if order_amount < voucher["min_order_amount"]:
        return VoucherValidation(
            valid=False, discount=0, message=f"Minimum order amount is ₱{voucher['min_order_amount']}"
        )

    if voucher["type"] == "fixed":
        discount = float(voucher["value"])
    else:
        discount = order_amount * float(voucher["value"]) / 100
        max_discount = voucher.get("max_discount")
        if max_discount and discount > max_discount:
            discount = float(max_discount)
    return VoucherValidation(valid=True, discount=round(discount, 2))


def find_voucher(database: Database, code: str) -> Optional[dict]:
    return database["voucher"].find_one({"code": code})


def check_voucher(database: Database, code: str, order_amount: float, now: Optional[datetime] = None) -> VoucherValidation:
    return validate_voucher(find_voucher(database, code), order_amount, now or current_time())


def redeem_voucher(database: Database, code: str, order_amount: float, now: datetime) -> float:
    """
    Validate and consume one use of ``code``.

    The usage bump is conditional on the count still being below the limit,
    so two orders racing for the last use cannot both redeem it.
    """
    voucher = find_voucher(database, code)
    result = validate_voucher(voucher, order_amount, now)
    if not result.valid:
        raise ValidationFailed(result.message or "Invalid voucher code")

    updated = database["voucher"].update_one(
        {"_id": voucher["_id"], "usage_count": {"$lt": voucher["usage_limit"]}},
        {"$inc": {"usage_count": 1}, "$set": {"updated_at": now}},
    )
    if updated.modified_count == 0:
        raise ValidationFailed("Voucher usage limit reached")
    logger.info(f"Voucher {code} redeemed for order amount {order_amount}")
    return result.discount


def list_vouchers(database: Database) -> list:
    return [serialize(v) for v in database["voucher"].find().sort("code", 1)]


def release_voucher(database: Database, code: str, now: datetime) -> None:
    """Give back one use taken by ``redeem_voucher`` for an order that was never written."""
    voucher = find_voucher(database, code)
    if not voucher:
        return
    database["voucher"].update_one(
        {"_id": voucher["_id"], "usage_count": {"$gt": 0}},
        {"$inc": {"usage_count": -1}, "$set": {"updated_at": now}},
    )
    logger.info(f"Voucher {code} use released")
