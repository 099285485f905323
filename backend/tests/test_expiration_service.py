"""
Expiration sweep tests.

Verifies:
- Unpaid placed orders are cancelled once their window has passed
- Orders under review, confirmed or rejected are never expired
- Sweeps are idempotent and release applied redemptions
"""

from datetime import timedelta

from mercado.models import Notification, Order, Payment, PointsLedgerEntry, Redemption
from mercado.services import expiration_service, loyalty_service, order_service, payment_service

from conftest import BUYER, OTHER_BUYER, SELLER, T0


MINUTE_16 = T0 + timedelta(minutes=16)


class TestCancelExpiredOrders:

    def test_cancels_unpaid_order_after_window(self, db_session, place):
        result = place()

        cancelled = expiration_service.cancel_expired_orders(now=MINUTE_16)

        assert cancelled == 1
        order = db_session.get(Order, result["order_id"])
        assert order.status == "cancelled"
        assert order.payment_status == "rejected"
        assert order.cancelled_at == MINUTE_16
        payment = db_session.query(Payment).filter_by(order_id=order.id).one()
        assert payment.status == "rejected"
        assert payment.rejection_reason == expiration_service.EXPIRATION_REASON

    def test_notifies_buyer(self, db_session, place):
        result = place()

        expiration_service.cancel_expired_orders(now=MINUTE_16)

        note = db_session.query(Notification).filter_by(order_id=result["order_id"], type="order_expired").one()
        assert note.user_id == BUYER

    def test_second_run_cancels_nothing(self, db_session, place):
        place()

        assert expiration_service.cancel_expired_orders(now=MINUTE_16) == 1
        assert expiration_service.cancel_expired_orders(now=MINUTE_16 + timedelta(minutes=1)) == 0

    def test_window_not_yet_passed(self, db_session, place):
        result = place()

        assert expiration_service.cancel_expired_orders(now=T0 + timedelta(minutes=14)) == 0
        assert db_session.get(Order, result["order_id"]).status == "placed"

    def test_expires_exactly_at_deadline(self, db_session, place):
        place()

        assert expiration_service.cancel_expired_orders(now=T0 + timedelta(minutes=15)) == 1

    def test_receipt_under_review_is_kept(self, db_session, place):
        result = place()
        payment_service.upload_receipt(result["order_id"], "https://files.example/r.jpg", now=T0 + timedelta(minutes=5))

        assert expiration_service.cancel_expired_orders(now=MINUTE_16) == 0
        assert db_session.get(Order, result["order_id"]).payment_status == "pending_review"

    def test_confirmed_order_is_kept(self, db_session, place):
        result = place(payment_method="cash")
        payment = order_service.get_order(result["order_id"]).payment
        payment_service.validate_receipt(payment.id, SELLER, True)

        assert expiration_service.cancel_expired_orders(now=MINUTE_16) == 0
        assert db_session.get(Order, result["order_id"]).status == "seller_confirmed"

    def test_rejected_receipt_is_kept(self, db_session, place):
        result = place()
        payment_service.upload_receipt(result["order_id"], "https://files.example/r.jpg", now=T0 + timedelta(minutes=5))
        payment = order_service.get_order(result["order_id"]).payment
        payment_service.validate_receipt(payment.id, SELLER, False, rejection_reason="Blurry")

        assert expiration_service.cancel_expired_orders(now=MINUTE_16) == 0
        assert db_session.get(Order, result["order_id"]).status == "placed"

    def test_limit_bounds_a_run(self, db_session, place):
        place()
        place(buyer_id=OTHER_BUYER)

        assert expiration_service.cancel_expired_orders(now=MINUTE_16, limit=1) == 1
        assert expiration_service.cancel_expired_orders(now=MINUTE_16, limit=1) == 1
        assert expiration_service.cancel_expired_orders(now=MINUTE_16, limit=1) == 0

    def test_uses_configured_window(self, db_session, place):
        result = place(expiration_minutes=30)

        assert expiration_service.cancel_expired_orders(now=MINUTE_16) == 0
        assert expiration_service.cancel_expired_orders(now=T0 + timedelta(minutes=31)) == 1
        assert db_session.get(Order, result["order_id"]).status == "cancelled"

    def test_refunds_applied_redemption(self, db_session, place, rewards_program, grant_points):
        rewards_program()
        grant_points(BUYER, SELLER, 500)
        result = place(total_cents=8000)
        loyalty_service.redeem_points(result["order_id"], SELLER, 100)

        expiration_service.cancel_expired_orders(now=MINUTE_16)

        redemption = db_session.query(Redemption).filter_by(order_id=result["order_id"]).one()
        assert redemption.status == "reversed"
        assert redemption.reversed_at == MINUTE_16
        refund = db_session.query(PointsLedgerEntry).filter_by(
            order_id=result["order_id"], transaction_type="refunded"
        ).one()
        assert refund.points_earned == 100
        assert loyalty_service.get_points_balance(BUYER, SELLER)["points"] == 500
        assert loyalty_service.verify_balance(BUYER, SELLER)["matches"] is True
        order = db_session.get(Order, result["order_id"])
        assert order.status == "cancelled"
        assert order.total_cents == order.subtotal_cents == 8000

    def test_failure_on_one_order_does_not_stop_sweep(self, db_session, place, monkeypatch):
        first = place()
        second = place(buyer_id=OTHER_BUYER)
        original = loyalty_service.reverse_redemption

        def flaky_reverse(order_id, reason, **kwargs):
            if order_id == first["order_id"]:
                raise RuntimeError("boom")
            return original(order_id, reason, **kwargs)

        monkeypatch.setattr(expiration_service, "reverse_redemption", flaky_reverse)

        assert expiration_service.cancel_expired_orders(now=MINUTE_16) == 1
        assert db_session.get(Order, first["order_id"]).status == "placed"
        assert db_session.get(Order, second["order_id"]).status == "cancelled"
