"""
Order aggregate store.

All order writes go through ``OrderStore``. Creation re-prices the cart and
recomputes every money field server-side; status changes are checked against
the transition table and written with a compare-and-swap on the status that
was just read, so a stale client or a racing owner action cannot both win.
"""

import json
import logging
import os
from datetime import datetime, timedelta
from typing import Callable, List, Mapping, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from catalog import delivery_fee_for_address, price_line_item
from chat import ChatChannel, can_access_order
from database import current_time, get_setting, serialize, to_object_id
from errors import (
    ActiveOrderExists,
    IllegalTransition,
    NotAuthorized,
    NotFound,
    PreconditionFailed,
    ValidationFailed,
)
from order_status import (
    BLOCKING_STATUSES,
    OrderStatus,
    Role,
    initial_status,
    is_blocking,
    is_cancellable_by_customer,
    is_delivery,
    is_pre_order,
    status_label,
    validate_transition,
)
from payments import PaymentStatus, resolve_payment, validate_payment_plan
from schemas import CurrentUser, Order, OrderDraft, OrderItem, OrderModification, OrderPatch
from storage import resolve_reference
from vouchers import check_voucher, redeem_voucher, release_voucher

logger = logging.getLogger(__name__)

PLATFORM_FEE = float(os.getenv("PLATFORM_FEE", "10"))
MONEY_TOLERANCE = 0.01
DELIVERY_FEE_TOLERANCE = 5.0
MAX_SPECIAL_INSTRUCTIONS = 100
PRE_ORDER_CANCEL_NOTICE = timedelta(days=1)
# A create that claimed the gate but never wrote its order (crashed between
# the two writes) stops blocking after this long.
GATE_CLAIM_TIMEOUT = timedelta(seconds=30)

CUSTOMER_PATCH_FIELDS = {"status", "remaining_payment_proof_url"}
OWNER_PATCH_FIELDS = {"status", "denial_reason", "estimated_prep_time", "allow_chat", "allow_customer_images"}

# Owner may edit items only before preparation starts (or on a denied order
# being resolved with the customer).
ITEM_EDIT_BLOCKED = frozenset([
    OrderStatus.ACCEPTED,
    OrderStatus.COMPLETED,
    OrderStatus.IN_TRANSIT,
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
])

STATUS_MESSAGES = {
    OrderStatus.ACCEPTED: "Order now being prepared.",
    OrderStatus.READY: "Your order is ready for pickup!",
    OrderStatus.IN_TRANSIT: "Your order is on the way!",
    OrderStatus.DELIVERED: "Your order has been delivered! Thank you for your order.",
    OrderStatus.COMPLETED: "Your order has been completed! Thank you for your order.",
}


def order_number(order_id) -> str:
    return str(order_id)[-6:].upper()


def _local_naive(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone().replace(tzinfo=None)
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


def _money(value: float) -> float:
    return round(float(value), 2)


def compute_totals(subtotal: float, platform_fee: float, delivery_fee: float, discount: float) -> dict:
    """Discount is capped at subtotal + fees so the total never goes negative."""
    gross = subtotal + platform_fee + delivery_fee
    discount = min(max(discount, 0.0), gross)
    return {
        "subtotal": _money(subtotal),
        "platform_fee": _money(platform_fee),
        "delivery_fee": _money(delivery_fee),
        "discount": _money(discount),
        "total": _money(gross - discount),
    }


class OrderStore:
    def __init__(self, database: Database, clock: Callable[[], datetime] = current_time, chat: Optional[ChatChannel] = None):
        self.db = database
        self.clock = clock
        self.chat = chat or ChatChannel(database, clock)
        self.orders = database["order"]

    # -----------------
    # Reads
    # -----------------
    def _load(self, order_id) -> dict:
        order = self.orders.find_one({"_id": to_object_id(order_id, "Order")})
        if not order:
            raise NotFound("Order not found")
        return order

    def _load_for(self, actor: CurrentUser, order_id) -> dict:
        order = self._load(order_id)
        if not can_access_order(actor, order):
            raise NotAuthorized("Unauthorized to view this order")
        return order

    def get_order_by_id(self, actor: CurrentUser, order_id: str) -> dict:
        return serialize(self._load_for(actor, order_id))

    def list_orders_by_customer(self, actor: CurrentUser, customer_id: str) -> List[dict]:
        if actor.role != Role.OWNER and customer_id != actor.id:
            raise NotAuthorized("Customers can only list their own orders")
        cursor = self.orders.find({"customer_id": customer_id}).sort([("created_at", DESCENDING), ("_id", DESCENDING)])
        return [serialize(o) for o in cursor]

    def list_all_orders(self, actor: CurrentUser) -> List[dict]:
        if actor.role != Role.OWNER:
            raise NotAuthorized("Only owners can list all orders")
        cursor = self.orders.find().sort([("created_at", DESCENDING), ("_id", DESCENDING)])
        return [serialize(o) for o in cursor]

    def payment_status(self, actor: CurrentUser, order_id: str) -> PaymentStatus:
        return resolve_payment(self._load_for(actor, order_id))

    def list_modifications(self, actor: CurrentUser, order_id: str) -> List[dict]:
        if actor.role != Role.OWNER:
            raise NotAuthorized("Only owners can view order modification history")
        self._load(order_id)
        cursor = self.db["ordermodification"].find({"order_id": str(order_id)}).sort([("timestamp", DESCENDING), ("_id", DESCENDING)])
        return [serialize(m) for m in cursor]

    # -----------------
    # Create
    # -----------------
    def create_order(self, actor: CurrentUser, draft: OrderDraft) -> str:
        if actor.role != Role.CUSTOMER:
            raise NotAuthorized("Only customers can create orders")
        now = self.clock()

        if draft.special_instructions and len(draft.special_instructions) > MAX_SPECIAL_INSTRUCTIONS:
            raise ValidationFailed("Landmark/Special instructions must be 100 characters or less")
        if not draft.items:
            raise ValidationFailed("Your cart is empty")

        scheduled_at = None
        if draft.order_type == "pre-order":
            if not draft.pre_order_fulfillment:
                raise ValidationFailed("Choose pickup or delivery for your pre-order")
            if not draft.pre_order_scheduled_at:
                raise ValidationFailed("Choose a date and time for your pre-order")
            scheduled_at = _local_naive(draft.pre_order_scheduled_at)
            if scheduled_at <= now:
                raise ValidationFailed("Pre-order date must be in the future")
        elif draft.pre_order_fulfillment or draft.pre_order_scheduled_at:
            raise ValidationFailed("Only pre-orders can be scheduled")

        fields = {"order_type": draft.order_type, "pre_order_fulfillment": draft.pre_order_fulfillment}
        delivery = is_delivery(fields)
        if delivery and not (draft.customer_address and draft.customer_address.strip()):
            raise ValidationFailed("Delivery address is required for delivery orders")

        items = [price_line_item(self.db, item) for item in draft.items]
        subtotal = sum(i.line_total for i in items)
        platform_fee = float(get_setting(self.db, "platform_fee", PLATFORM_FEE) or 0)
        delivery_fee = delivery_fee_for_address(self.db, draft.customer_address) if delivery else 0.0

        discount = 0.0
        if draft.voucher_code:
            result = check_voucher(self.db, draft.voucher_code, subtotal, now)
            if not result.valid:
                raise ValidationFailed(result.message or "Invalid voucher code")
            discount = result.discount

        totals = compute_totals(subtotal, platform_fee, delivery_fee, discount)
        self._check_client_totals(draft, totals)
        validate_payment_plan(draft.payment_plan, totals["total"], draft.downpayment_amount, draft.remaining_payment_method)

        order = Order(
            customer_id=actor.id,
            customer_name=draft.customer_name,
            customer_phone=draft.customer_phone,
            customer_address=draft.customer_address,
            customer_coordinates=draft.customer_coordinates,
            gcash_number=draft.gcash_number,
            items=items,
            order_type=draft.order_type,
            pre_order_fulfillment=draft.pre_order_fulfillment,
            pre_order_scheduled_at=scheduled_at,
            payment_plan=draft.payment_plan,
            downpayment_amount=draft.downpayment_amount,
            downpayment_proof_url=resolve_reference(self.db, draft.downpayment_proof_url),
            remaining_payment_method=draft.remaining_payment_method,
            payment_screenshot=resolve_reference(self.db, draft.payment_screenshot),
            voucher_code=draft.voucher_code,
            special_instructions=draft.special_instructions,
            status=initial_status(draft.order_type),
            **totals,
        )

        if self.orders.find_one({"customer_id": actor.id, "status": {"$in": [s.value for s in BLOCKING_STATUSES]}}):
            raise ActiveOrderExists("You already have a pending order. Please wait for it to be confirmed or cancel it first.")

        order_oid = ObjectId()
        self._claim_gate(actor.id, order_oid)
        redeemed = False
        try:
            if draft.voucher_code:
                redeem_voucher(self.db, draft.voucher_code, subtotal, now)
                redeemed = True
            doc = order.model_dump(mode="python")
            doc["status"] = order.status.value
            doc.update({"_id": order_oid, "created_at": now, "updated_at": now})
            self.orders.insert_one(doc)
        except Exception:
            if redeemed:
                release_voucher(self.db, draft.voucher_code, now)
            self._release_gate(actor.id, order_oid)
            raise

        prefix = "Pre-order placed" if order.status == OrderStatus.PRE_ORDER_PENDING else "Order placed"
        self.chat.post_system_message(
            order_oid,
            self._owner_sender_id(),
            f"{prefix}. We'll review and confirm your order soon. Order #{order_number(order_oid)}",
        )
        logger.info(f"Order {order_oid} created for customer {actor.id} ({order.status.value}, total {order.total})")
        return str(order_oid)

    def _check_client_totals(self, draft: OrderDraft, totals: dict) -> None:
        checks = [
            ("Subtotal", draft.subtotal, totals["subtotal"], MONEY_TOLERANCE),
            ("Platform fee", draft.platform_fee, totals["platform_fee"], MONEY_TOLERANCE),
            ("Delivery fee", draft.delivery_fee, totals["delivery_fee"], DELIVERY_FEE_TOLERANCE),
            ("Discount", draft.discount, totals["discount"], MONEY_TOLERANCE),
            ("Total", draft.total, totals["total"], MONEY_TOLERANCE),
        ]
        for label, submitted, computed, tolerance in checks:
            if submitted is not None and abs(submitted - computed) > tolerance:
                raise ValidationFailed(f"{label} mismatch. Please refresh and try again.")

    # The gate document holds the id of the customer's one blocking order.
    # Claiming it is a conditional update, so two concurrent creates cannot
    # both take it. A holder whose order is not blocking any more (or never
    # got written and the claim has expired) may be replaced.
    def _claim_gate(self, customer_id: str, order_oid: ObjectId) -> None:
        gates = self.db["ordergate"]
        claim = {"$set": {"holder": order_oid, "claimed_at": self.clock()}}
        gates.update_one({"_id": customer_id}, {"$setOnInsert": {"holder": None}}, upsert=True)
        if gates.update_one({"_id": customer_id, "holder": None}, claim).modified_count:
            return

        gate = gates.find_one({"_id": customer_id}) or {}
        holder = gate.get("holder")
        if holder is not None:
            held = self.orders.find_one({"_id": holder}, {"status": 1})
            if held is None:
                stale = gate.get("claimed_at") is None or self.clock() - gate["claimed_at"] > GATE_CLAIM_TIMEOUT
            else:
                stale = not is_blocking(held["status"])
            if stale and gates.update_one({"_id": customer_id, "holder": holder}, claim).modified_count:
                return
        logger.info(f"Order creation blocked for customer {customer_id}: gate held by {holder}")
        raise ActiveOrderExists("You already have a pending order. Please wait for it to be confirmed or cancel it first.")

    def _release_gate(self, customer_id: str, order_oid: ObjectId) -> None:
        self.db["ordergate"].update_one({"_id": customer_id, "holder": order_oid}, {"$set": {"holder": None}})

    def _owner_sender_id(self) -> str:
        owner = self.db["user"].find_one({"role": Role.OWNER.value}, {"_id": 1})
        return str(owner["_id"]) if owner else "restaurant"

    # -----------------
    # Update
    # -----------------
    def update_order(self, actor: CurrentUser, order_id: str, patch: Union[OrderPatch, Mapping]) -> dict:
        if isinstance(patch, BaseModel):
            data = patch.model_dump(exclude_unset=True)
        else:
            data = dict(patch)
        if not data:
            raise ValidationFailed("Nothing to update")

        existing = self._load(order_id)
        if not can_access_order(actor, existing):
            raise NotAuthorized("Unauthorized to update this order")

        if actor.role == Role.CUSTOMER:
            return self._customer_update(actor, existing, data)
        return self._owner_update(actor, existing, data)

    def cancel_order(self, actor: CurrentUser, order_id: str) -> dict:
        existing = self._load_for(actor, order_id)
        if not is_cancellable_by_customer(existing["status"]):
            raise IllegalTransition(f"Only pending orders can be cancelled (order is {existing['status']})")
        return self.update_order(actor, order_id, {"status": OrderStatus.CANCELLED})

    def confirm_denial(self, actor: CurrentUser, order_id: str) -> dict:
        """Customer acknowledges a denied order, which clears it to cancelled."""
        existing = self._load_for(actor, order_id)
        if existing["status"] != OrderStatus.DENIED.value:
            raise IllegalTransition(f"Only denied orders can be confirmed (order is {existing['status']})")
        return self.update_order(actor, order_id, {"status": OrderStatus.CANCELLED})

    def _customer_update(self, actor: CurrentUser, existing: dict, data: dict) -> dict:
        extra = set(data) - CUSTOMER_PATCH_FIELDS
        if extra:
            raise NotAuthorized("Customers can only cancel pending/denied/pre-order-pending orders or update remaining payment proof")
        if "status" in data and "remaining_payment_proof_url" in data:
            raise ValidationFailed("Update the payment proof and the order status separately")

        if "remaining_payment_proof_url" in data:
            return self._set_remaining_proof(existing, data["remaining_payment_proof_url"])

        target = validate_transition(existing["status"], data["status"], Role.CUSTOMER)
        current = OrderStatus(existing["status"])
        if is_pre_order(existing) and current in BLOCKING_STATUSES and existing.get("pre_order_scheduled_at"):
            if existing["pre_order_scheduled_at"] - self.clock() < PRE_ORDER_CANCEL_NOTICE:
                raise PreconditionFailed("Pre-orders can only be cancelled at least 1 day before the scheduled order date")

        updated = self._apply_status(actor, existing, target, {})
        order_id = existing["_id"]
        self.chat.post_system_message(order_id, actor.id, "I have cancelled this order", Role.CUSTOMER, existing["customer_name"])
        gcash = existing.get("gcash_number")
        destination = f"the GCash number you provided (+63) {gcash}" if gcash else "your original payment method"
        self.chat.post_system_message(
            order_id,
            self._owner_sender_id(),
            f"Your refund is on the way! It will be processed within 1-3 business days. "
            f"We'll send it to {destination} and share a screenshot once completed.",
        )
        return serialize(updated)

    def _set_remaining_proof(self, existing: dict, value: Optional[str]) -> dict:
        if existing.get("payment_plan") != "downpayment" or existing.get("remaining_payment_method") != "online":
            raise ValidationFailed("This order does not take a remaining payment proof")
        if existing["status"] in (OrderStatus.CANCELLED.value, OrderStatus.DENIED.value):
            raise PreconditionFailed(f"Cannot upload a payment proof for a {existing['status']} order")
        url = resolve_reference(self.db, value)
        if not url:
            raise ValidationFailed("Invalid payment proof. Please upload a valid image.")
        updated = self.orders.find_one_and_update(
            {"_id": existing["_id"]},
            {"$set": {"remaining_payment_proof_url": url, "updated_at": self.clock()}},
            return_document=ReturnDocument.AFTER,
        )
        logger.info(f"Remaining payment proof uploaded for order {existing['_id']}")
        return serialize(updated)

    def _owner_update(self, actor: CurrentUser, existing: dict, data: dict) -> dict:
        extra = set(data) - OWNER_PATCH_FIELDS
        if extra:
            raise NotAuthorized(f"Owners cannot update: {', '.join(sorted(extra))}")

        fields = {k: v for k, v in data.items() if k != "status"}
        target = None
        if "status" in data and data["status"] is not None:
            target = validate_transition(existing["status"], data["status"], Role.OWNER, delivery=is_delivery(existing))

        if "denial_reason" in fields:
            denied = target == OrderStatus.DENIED or (target is None and existing["status"] == OrderStatus.DENIED.value)
            if not denied:
                raise ValidationFailed("A denial reason can only be set on a denied order")

        if target is None:
            fields["updated_at"] = self.clock()
            updated = self.orders.find_one_and_update(
                {"_id": existing["_id"]}, {"$set": fields}, return_document=ReturnDocument.AFTER
            )
            return serialize(updated)

        updated = self._apply_status(actor, existing, target, fields)
        self._announce_status(actor, existing, updated)
        return serialize(updated)

    def _apply_status(self, actor: CurrentUser, existing: dict, target: OrderStatus, fields: dict) -> dict:
        """
        Write ``target`` only if the stored status is still the one in
        ``existing``. Raises PreconditionFailed when another writer got there
        first.
        """
        now = self.clock()
        changes = dict(fields)
        changes["status"] = target.value
        changes["updated_at"] = now
        updated = self.orders.find_one_and_update(
            {"_id": existing["_id"], "status": existing["status"]},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            current = self.orders.find_one({"_id": existing["_id"]}, {"status": 1})
            if current is None:
                raise NotFound("Order not found")
            logger.warning(
                f"Status race on order {existing['_id']}: expected {existing['status']}, found {current['status']}"
            )
            raise PreconditionFailed(
                f"Order status changed to {current['status']} before this update was applied. Please refresh and try again."
            )

        if is_blocking(existing["status"]) and not is_blocking(target):
            self._release_gate(existing["customer_id"], existing["_id"])

        self._log_modification(
            actor,
            existing["_id"],
            "status_changed",
            json.dumps({"status": existing["status"]}),
            json.dumps({"status": target.value}),
            f'Status changed from "{status_label(existing["status"])}" to "{status_label(target)}"',
        )
        logger.info(f"Order {existing['_id']}: {existing['status']} -> {target.value} by {actor.role.value} {actor.id}")
        return updated

    def _announce_status(self, actor: CurrentUser, existing: dict, updated: dict) -> None:
        previous = OrderStatus(existing["status"])
        status = OrderStatus(updated["status"])
        if previous == OrderStatus.PRE_ORDER_PENDING and status == OrderStatus.PENDING:
            text = "Pre-order acknowledged. We'll notify you when it's being prepared."
        elif status == OrderStatus.DENIED:
            reason = updated.get("denial_reason") or "No reason provided"
            text = (
                "Your order was not approved. Please wait while a representative reviews it "
                f"and assists with the resolution. Reason: {reason}"
            )
        else:
            text = STATUS_MESSAGES.get(status, f"Order status updated to: {status_label(status)}.")
        self.chat.post_system_message(existing["_id"], actor.id, text)

    def _log_modification(self, actor: CurrentUser, order_id, modification_type: str, previous: str, new: str, details: Optional[str]) -> None:
        entry = OrderModification(
            order_id=str(order_id),
            modified_by=actor.id,
            modified_by_name=actor.display_name,
            modification_type=modification_type,
            previous_value=previous,
            new_value=new,
            item_details=details,
            timestamp=self.clock(),
        )
        self.db["ordermodification"].insert_one(entry.model_dump())

    # -----------------
    # Owner item edits
    # -----------------
    def update_order_items(self, actor: CurrentUser, order_id: str, items: List[OrderItem], modification_type: str = "order_edited", item_details: Optional[str] = None) -> dict:
        if actor.role != Role.OWNER:
            raise NotAuthorized("Only owners can modify order items")
        existing = self._load(order_id)
        if OrderStatus(existing["status"]) in ITEM_EDIT_BLOCKED:
            raise PreconditionFailed("Order items cannot be modified in the current state")
        if not items:
            raise ValidationFailed("Order must have at least one item")

        lines = []
        for item in items:
            line = item.model_dump()
            line["line_total"] = _money(item.unit_price * item.quantity)
            lines.append(line)
        totals = compute_totals(
            sum(line["line_total"] for line in lines),
            existing.get("platform_fee", 0),
            existing.get("delivery_fee", 0),
            existing.get("discount", 0),
        )
        if existing.get("payment_plan") == "downpayment" and not existing.get("downpayment_amount", 0) < totals["total"]:
            raise ValidationFailed("New total must stay above the downpayment already paid")

        changes = dict(totals, items=lines, updated_at=self.clock())
        updated = self.orders.find_one_and_update(
            {"_id": existing["_id"], "status": existing["status"]},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise PreconditionFailed("Order status changed before the items were saved. Please refresh and try again.")

        self._log_modification(
            actor,
            existing["_id"],
            modification_type,
            json.dumps({"items": existing["items"], "subtotal": existing["subtotal"], "total": existing["total"]}, default=str),
            json.dumps({"items": lines, "subtotal": totals["subtotal"], "total": totals["total"]}, default=str),
            item_details,
        )
        summary = summarize_item_changes(existing["items"], lines)
        self.chat.post_system_message(
            existing["_id"], actor.id, f"Order items updated ({summary}). New total: ₱{totals['total']:.2f}"
        )
        return serialize(updated)


def summarize_item_changes(previous: List[Mapping], current: List[Mapping]) -> str:
    def by_key(items):
        return {f"{i['menu_item_id']}{i.get('variant_id') or ''}": i for i in items}

    before, after = by_key(previous), by_key(current)
    added, removed, changed = [], [], []
    for key, item in after.items():
        old = before.get(key)
        if old is None:
            added.append(f"{item['name']} x{item['quantity']}")
        elif old["quantity"] != item["quantity"]:
            changed.append(f"{item['name']} {old['quantity']}->{item['quantity']}")
    for key, item in before.items():
        if key not in after:
            removed.append(item["name"])

    parts = []
    if added:
        parts.append(f"added: {', '.join(added)}")
    if removed:
        parts.append(f"removed: {', '.join(removed)}")
    if changed:
        parts.append(f"qty: {', '.join(changed)}")
    return "; ".join(parts) or "items updated"
