import pytest

from errors import TransientIOError, ValidationFailed
from payments import (
    StagedProofCache,
    resolve_payment,
    suggested_downpayment,
    validate_payment_plan,
)


def test_full_plan_rejects_downpayment_fields():
    validate_payment_plan("full", 260, None, None)
    with pytest.raises(ValidationFailed):
        validate_payment_plan("full", 260, 100, None)


@pytest.mark.parametrize("amount", [0, -5, 260, 300])
def test_downpayment_must_be_strictly_between_zero_and_total(amount):
    with pytest.raises(ValidationFailed):
        validate_payment_plan("downpayment", 260, amount, "cash")


def test_downpayment_needs_amount_and_method():
    validate_payment_plan("downpayment", 260, 130, "online")
    with pytest.raises(ValidationFailed):
        validate_payment_plan("downpayment", 260, None, "online")
    with pytest.raises(ValidationFailed):
        validate_payment_plan("downpayment", 260, 130, None)


def test_suggested_downpayment_is_half():
    assert suggested_downpayment(260) == 130
    assert suggested_downpayment(99) == 49.5


def test_full_payment_complete_with_proof():
    status = resolve_payment({"total": 260, "payment_screenshot": "https://x/p.png"})
    assert status.plan == "full"
    assert status.payment_complete
    assert status.remaining_balance == 0
    assert not status.can_upload_remaining_proof


def test_online_downpayment_requires_second_proof():
    order = {
        "total": 260,
        "payment_plan": "downpayment",
        "downpayment_amount": 100,
        "remaining_payment_method": "online",
        "downpayment_proof_url": "https://x/dp.png",
    }
    status = resolve_payment(order)
    assert status.remaining_balance == 160
    assert status.requires_remaining_proof
    assert not status.payment_complete
    assert status.can_upload_remaining_proof

    order["remaining_payment_proof_url"] = "https://x/rest.png"
    status = resolve_payment(order)
    assert status.payment_complete
    assert not status.can_upload_remaining_proof


def test_cash_balance_needs_only_first_proof():
    status = resolve_payment({
        "total": 260,
        "payment_plan": "downpayment",
        "downpayment_amount": 100,
        "remaining_payment_method": "cash",
        "downpayment_proof_url": "https://x/dp.png",
    })
    assert not status.requires_remaining_proof
    assert status.payment_complete


def test_staged_proof_survives_a_new_cache_instance(tmp_path):
    StagedProofCache(tmp_path).stage("order-1", "proof.png", "image/png", b"\x89PNG")
    staged = StagedProofCache(tmp_path).get("order-1")
    assert staged.filename == "proof.png"
    assert staged.data == b"\x89PNG"


def test_cancel_removes_staged_proof_without_pushing(tmp_path):
    cache = StagedProofCache(tmp_path)
    cache.stage("order-1", "proof.png", "image/png", b"data")
    assert cache.cancel("order-1")
    assert cache.get("order-1") is None
    assert not cache.cancel("order-1")


def test_confirm_clears_entry_after_push(tmp_path):
    cache = StagedProofCache(tmp_path)
    cache.stage("order-1", "proof.png", "image/png", b"data")
    pushed = []

    def push(staged):
        pushed.append(staged.data)
        return "https://x/rest.png"

    assert cache.confirm("order-1", push) == "https://x/rest.png"
    assert pushed == [b"data"]
    assert cache.get("order-1") is None


def test_failed_push_keeps_staged_proof(tmp_path):
    cache = StagedProofCache(tmp_path)
    cache.stage("order-1", "proof.png", "image/png", b"data")

    def push(staged):
        raise TransientIOError("Network error")

    with pytest.raises(TransientIOError):
        cache.confirm("order-1", push)
    assert cache.get("order-1") is not None


def test_confirm_without_staged_file(tmp_path):
    with pytest.raises(ValidationFailed):
        StagedProofCache(tmp_path).confirm("missing", lambda staged: "unused")


def test_stage_rejects_empty_file(tmp_path):
    with pytest.raises(ValidationFailed):
        StagedProofCache(tmp_path).stage("order-1", "proof.png", "image/png", b"")
