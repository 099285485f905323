"""
Payment verification workflow tests.

Verifies:
- Receipt upload moves payment and order to pending_review
- Seller approval confirms the order and credits points exactly once
- Rejection allows a new upload and a new review cycle
- Settled reviews are idempotent; cancelled orders are not reviewable
"""

from datetime import timedelta

import pytest

from mercado.models import Notification, Order, Payment, PointsLedgerEntry
from mercado.services import expiration_service, order_service, payment_service
from mercado.services.errors import (
    InvalidAttachment,
    InvalidRequest,
    OrderNotEligible,
    OrderNotFound,
    PaymentNotFound,
    PermissionDenied,
)

from conftest import BUYER, OTHER_BUYER, SELLER, T0


UPLOAD_AT = T0 + timedelta(minutes=5)
RECEIPT = "https://files.example/receipts/abc123.jpg"


def _payment_for(order_id):
    return order_service.get_order(order_id).payment


def _uploaded(place, **kwargs):
    result = place(**kwargs)
    payment_service.upload_receipt(result["order_id"], RECEIPT, now=UPLOAD_AT)
    return result["order_id"], _payment_for(result["order_id"]).id


# =============================================================================
# RECEIPT UPLOAD
# =============================================================================


class TestUploadReceipt:

    def test_moves_to_pending_review(self, db_session, place):
        result = place()

        response = payment_service.upload_receipt(
            result["order_id"],
            RECEIPT,
            transfer_metadata={"bank": "Banco Estado", "account": "12345678", "declared_amount": "80.00"},
            buyer_id=BUYER,
            now=UPLOAD_AT,
        )

        assert response["status"] == "pending_review"
        payment = db_session.get(Payment, response["payment_id"])
        assert payment.receipt_ref == RECEIPT
        assert payment.transfer_bank == "Banco Estado"
        assert payment.transfer_declared_amount == "80.00"
        assert payment.receipt_uploaded_at == UPLOAD_AT
        assert db_session.get(Order, result["order_id"]).payment_status == "pending_review"

    def test_notifies_seller(self, db_session, place):
        order_id, _ = _uploaded(place)

        note = db_session.query(Notification).filter_by(order_id=order_id, type="payment_receipt_uploaded").one()
        assert note.user_id == SELLER

    @pytest.mark.parametrize("receipt_ref", ["", "   ", None])
    def test_requires_receipt(self, db_session, place, receipt_ref):
        result = place()

        with pytest.raises(InvalidAttachment):
            payment_service.upload_receipt(result["order_id"], receipt_ref, now=UPLOAD_AT)

    def test_unknown_order(self, db_session):
        with pytest.raises(OrderNotFound):
            payment_service.upload_receipt(404, RECEIPT, now=UPLOAD_AT)

    def test_only_buyer_may_upload(self, db_session, place):
        result = place()

        with pytest.raises(PermissionDenied):
            payment_service.upload_receipt(result["order_id"], RECEIPT, buyer_id=OTHER_BUYER, now=UPLOAD_AT)

    def test_unknown_metadata_field(self, db_session, place):
        result = place()

        with pytest.raises(InvalidRequest):
            payment_service.upload_receipt(
                result["order_id"], RECEIPT, transfer_metadata={"iban": "x"}, now=UPLOAD_AT
            )

    def test_expired_but_not_swept_order(self, db_session, place):
        result = place()

        with pytest.raises(OrderNotEligible):
            payment_service.upload_receipt(result["order_id"], RECEIPT, now=T0 + timedelta(minutes=15))

        assert db_session.get(Payment, _payment_for(result["order_id"]).id).status == "pending"

    def test_cancelled_order(self, db_session, place):
        result = place()
        expiration_service.cancel_expired_orders(now=T0 + timedelta(minutes=16))

        with pytest.raises(OrderNotEligible):
            payment_service.upload_receipt(result["order_id"], RECEIPT, now=T0 + timedelta(minutes=17))

    def test_confirmed_payment(self, db_session, place):
        order_id, payment_id = _uploaded(place)
        payment_service.validate_receipt(payment_id, SELLER, True)

        with pytest.raises(OrderNotEligible):
            payment_service.upload_receipt(order_id, RECEIPT, now=UPLOAD_AT)

    def test_second_upload_while_under_review(self, db_session, place):
        order_id, _ = _uploaded(place)

        with pytest.raises(OrderNotEligible):
            payment_service.upload_receipt(order_id, "https://files.example/other.jpg", now=UPLOAD_AT)


# =============================================================================
# REVIEW
# =============================================================================


class TestValidateReceipt:

    def test_approval_confirms_order(self, db_session, place):
        order_id, payment_id = _uploaded(place)

        result = payment_service.validate_receipt(payment_id, SELLER, True)

        assert result == {
            "payment_id": payment_id,
            "order_id": order_id,
            "payment_status": "confirmed",
            "order_status": "seller_confirmed",
            "points_awarded": 0,
        }
        payment = db_session.get(Payment, payment_id)
        assert payment.reviewer_id == SELLER
        assert payment.reviewed_at is not None
        assert payment.review_count == 1
        assert db_session.get(Order, order_id).payment_status == "confirmed"

    def test_approval_notifies_both_parties(self, db_session, place):
        order_id, payment_id = _uploaded(place)

        payment_service.validate_receipt(payment_id, SELLER, True)

        recipients = {
            n.user_id
            for n in db_session.query(Notification).filter_by(order_id=order_id, type="payment_confirmed")
        }
        assert recipients == {BUYER, SELLER}

    def test_approval_twice_is_idempotent(self, db_session, place, rewards_program):
        rewards_program(minimum_purchase_cents=0)
        order_id, payment_id = _uploaded(place, total_cents=100000)

        first = payment_service.validate_receipt(payment_id, SELLER, True)
        second = payment_service.validate_receipt(payment_id, SELLER, True)

        assert first == second
        assert first["points_awarded"] == 2860
        earned = db_session.query(PointsLedgerEntry).filter_by(order_id=order_id, transaction_type="earned").count()
        assert earned == 1
        assert db_session.get(Payment, payment_id).review_count == 1

    def test_rejection_keeps_order_placed(self, db_session, place):
        order_id, payment_id = _uploaded(place)

        result = payment_service.validate_receipt(payment_id, SELLER, False, rejection_reason="Amount mismatch")

        assert result["payment_status"] == "rejected"
        assert result["order_status"] == "placed"
        payment = db_session.get(Payment, payment_id)
        assert payment.rejection_reason == "Amount mismatch"
        assert db_session.get(Order, order_id).payment_status == "rejected"
        note = db_session.query(Notification).filter_by(order_id=order_id, type="payment_rejected").one()
        assert note.user_id == BUYER

    def test_rejection_without_reason_gets_default(self, db_session, place):
        _, payment_id = _uploaded(place)

        payment_service.validate_receipt(payment_id, SELLER, False)

        assert db_session.get(Payment, payment_id).rejection_reason == payment_service.DEFAULT_REJECTION_REASON

    def test_reupload_after_rejection_starts_new_cycle(self, db_session, place):
        order_id, payment_id = _uploaded(place)
        payment_service.validate_receipt(payment_id, SELLER, False, rejection_reason="Blurry")

        response = payment_service.upload_receipt(order_id, "https://files.example/clear.jpg", now=UPLOAD_AT)
        assert response["status"] == "pending_review"
        payment = db_session.get(Payment, payment_id)
        assert payment.rejection_reason is None

        result = payment_service.validate_receipt(payment_id, SELLER, True)
        assert result["payment_status"] == "confirmed"
        assert db_session.get(Payment, payment_id).review_count == 2

    def test_rejected_twice_returns_settled_state(self, db_session, place):
        _, payment_id = _uploaded(place)
        payment_service.validate_receipt(payment_id, SELLER, False, rejection_reason="Blurry")

        # A late approval does not overturn the decided review
        result = payment_service.validate_receipt(payment_id, SELLER, True)

        assert result["payment_status"] == "rejected"

    def test_only_seller_reviews(self, db_session, place):
        _, payment_id = _uploaded(place)

        with pytest.raises(PermissionDenied):
            payment_service.validate_receipt(payment_id, BUYER, True)

    def test_unknown_payment(self, db_session):
        with pytest.raises(PaymentNotFound):
            payment_service.validate_receipt(404, SELLER, True)

    def test_transfer_without_receipt_not_reviewable(self, db_session, place):
        result = place(payment_method="transfer")

        with pytest.raises(OrderNotEligible):
            payment_service.validate_receipt(_payment_for(result["order_id"]).id, SELLER, True)

    def test_cash_confirmed_without_receipt(self, db_session, place):
        result = place(payment_method="cash")

        response = payment_service.validate_receipt(_payment_for(result["order_id"]).id, SELLER, True)

        assert response["payment_status"] == "confirmed"
        assert response["order_status"] == "seller_confirmed"

    def test_cancelled_order_not_reviewable(self, db_session, place):
        result = place(payment_method="cash")
        payment_id = _payment_for(result["order_id"]).id
        expiration_service.cancel_expired_orders(now=T0 + timedelta(minutes=16))

        # The sweep rejected the payment; a late review returns that state
        response = payment_service.validate_receipt(payment_id, SELLER, True)

        assert response["payment_status"] == "rejected"
        assert response["order_status"] == "cancelled"


class TestPendingReviews:

    def test_lists_oldest_first_for_seller(self, db_session, place):
        first = place()
        second = place(buyer_id=OTHER_BUYER)
        payment_service.upload_receipt(second["order_id"], RECEIPT, now=UPLOAD_AT)
        payment_service.upload_receipt(first["order_id"], RECEIPT, now=UPLOAD_AT + timedelta(minutes=1))

        pending = payment_service.list_pending_reviews(SELLER)

        assert [p.order_id for p in pending] == [second["order_id"], first["order_id"]]
        assert payment_service.list_pending_reviews("someone-else") == []
