"""
Payment plan resolution and the staged proof upload cache.

A full-payment order needs a single proof. A downpayment order needs
``0 < downpayment_amount < total``; when the balance is settled online a
second proof (``remaining_payment_proof_url``) is required before the order
counts as paid.
"""

import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Optional

from errors import ValidationFailed

logger = logging.getLogger(__name__)

DOWNPAYMENT_RATE = 0.5


@dataclass(frozen=True)
class PaymentStatus:
    plan: str
    total: float
    downpayment_amount: Optional[float]
    remaining_balance: float
    remaining_payment_method: Optional[str]
    initial_proof_present: bool
    requires_remaining_proof: bool
    remaining_proof_present: bool
    payment_complete: bool
    can_upload_remaining_proof: bool


def suggested_downpayment(total: float) -> float:
    return round(total * DOWNPAYMENT_RATE, 2)


def validate_payment_plan(plan: str, total: float, downpayment_amount: Optional[float], remaining_method: Optional[str]) -> None:
    if plan == "full":
        if downpayment_amount is not None or remaining_method is not None:
            raise ValidationFailed("Downpayment details are only allowed on the downpayment plan")
        return
    if plan != "downpayment":
        raise ValidationFailed(f"Unknown payment plan: {plan}")
    if downpayment_amount is None:
        raise ValidationFailed("Downpayment amount is required for the downpayment plan")
    if not 0 < downpayment_amount < total:
        raise ValidationFailed("Downpayment must be more than zero and less than the order total")
    if remaining_method not in ("cash", "online"):
        raise ValidationFailed("Choose how the remaining balance will be paid (cash or online)")


def resolve_payment(order: Mapping) -> PaymentStatus:
    plan = order.get("payment_plan") or "full"
    total = float(order.get("total", 0))
    initial_proof = bool(order.get("payment_screenshot") or order.get("downpayment_proof_url"))

    if plan != "downpayment":
        return PaymentStatus(
            plan="full",
            total=total,
            downpayment_amount=None,
            remaining_balance=0.0,
            remaining_payment_method=None,
            initial_proof_present=initial_proof,
            requires_remaining_proof=False,
            remaining_proof_present=False,
            payment_complete=initial_proof,
            can_upload_remaining_proof=False,
        )

    downpayment = float(order.get("downpayment_amount") or 0)
    method = order.get("remaining_payment_method")
    requires_second = method == "online"
    second_present = bool(order.get("remaining_payment_proof_url"))
    complete = initial_proof and (second_present or not requires_second)
    return PaymentStatus(
        plan="downpayment",
        total=total,
        downpayment_amount=downpayment,
        remaining_balance=round(total - downpayment, 2),
        remaining_payment_method=method,
        initial_proof_present=initial_proof,
        requires_remaining_proof=requires_second,
        remaining_proof_present=second_present,
        payment_complete=complete,
        can_upload_remaining_proof=requires_second and not second_present,
    )


@dataclass(frozen=True)
class StagedProof:
    order_id: str
    filename: str
    content_type: str
    data: bytes


class StagedProofCache:
    """
    Local write-ahead cache for a proof the customer picked but has not
    confirmed yet.

    Each entry is a JSON header plus the raw bytes, keyed by order id, so a
    reload or restart does not lose the pending file. Nothing leaves the
    machine until ``confirm`` runs; ``cancel`` only removes local files.
    """

    def __init__(self, directory):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _paths(self, order_id: str):
        key = re.sub(r"[^A-Za-z0-9_-]", "_", order_id)
        return self.directory / f"{key}.json", self.directory / f"{key}.bin"

    def stage(self, order_id: str, filename: str, content_type: str, data: bytes) -> StagedProof:
        if not data:
            raise ValidationFailed("Choose a file to upload")
        meta_path, data_path = self._paths(order_id)
        tmp = data_path.with_suffix(".tmp")
        tmp.write_bytes(data)
        os.replace(tmp, data_path)
        meta_path.write_text(json.dumps({"order_id": order_id, "filename": filename, "content_type": content_type}))
        return StagedProof(order_id, filename, content_type, data)

    def get(self, order_id: str) -> Optional[StagedProof]:
        meta_path, data_path = self._paths(order_id)
        if not meta_path.exists() or not data_path.exists():
            return None
        meta = json.loads(meta_path.read_text())
        return StagedProof(meta["order_id"], meta["filename"], meta["content_type"], data_path.read_bytes())

    def cancel(self, order_id: str) -> bool:
        removed = False
        for path in self._paths(order_id):
            if path.exists():
                path.unlink()
                removed = True
        return removed

    def confirm(self, order_id: str, push: Callable[[StagedProof], str]) -> str:
        """
        Push the staged file and clear the entry.

        ``push`` uploads the bytes and patches the order, returning the proof
        URL. If it raises, the staged file stays put for a retry.
        """
        staged = self.get(order_id)
        if staged is None:
            raise ValidationFailed("No staged payment proof for this order")
        url = push(staged)
        self.cancel(order_id)
        logger.info(f"Confirmed staged payment proof for order {order_id}")
        return url
