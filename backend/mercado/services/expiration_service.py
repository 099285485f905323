# Overview: Expiration sweep; cancels placed orders whose payment window passed without a receipt.

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import Order, Payment
from ..models.orders import (
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_PLACED,
    PAYMENT_STATUS_PENDING,
    PAYMENT_STATUS_REJECTED,
)
from mercado.time_utils import utcnow
from .concurrency import begin_write, compare_and_set, run_with_retry
from .loyalty_service import reverse_redemption
from .notification_service import NOTIFY_ORDER_EXPIRED, emit_notification

"""
Expiration Sweep Invariants

- Candidates: status = placed, payment_status = pending, expires_at <= now.
  Orders with a receipt under review (pending_review) or a rejected
  receipt are never expired.
- Each order is cancelled in its own short transaction. The candidate
  predicate is repeated in the UPDATE's WHERE clause, so an order whose
  payment was confirmed after the candidate scan is left alone.
- A lost race (zero rows updated) is a no-op, not an error.
- A failure on one order is logged and the sweep moves on.
"""

EXPIRATION_REASON = "Payment window expired"


def find_expired_order_ids(now, limit: int) -> list[int]:
    rows = (
        db.session.query(Order.id)
        .filter(Order.status == ORDER_STATUS_PLACED)
        .filter(Order.payment_status == PAYMENT_STATUS_PENDING)
        .filter(Order.expires_at <= now)
        .order_by(Order.expires_at.asc(), Order.id.asc())
        .limit(limit)
        .all()
    )
    return [row.id for row in rows]


def expire_order(order_id: int, now) -> bool:
    """
    Cancel one expired order; returns False when another writer got there first.

    Order -> cancelled / payment rejected, Payment pending -> rejected,
    any applied redemption reversed, buyer notified. One transaction.
    """
    def _op():
        begin_write()
        order = db.session.query(Order).filter_by(id=order_id).first()
        if not order:
            db.session.commit()
            return False

        won = compare_and_set(
            order,
            {"status": ORDER_STATUS_PLACED, "payment_status": PAYMENT_STATUS_PENDING},
            Order.expires_at <= now,
            status=ORDER_STATUS_CANCELLED,
            payment_status=PAYMENT_STATUS_REJECTED,
            cancelled_at=now,
        )
        if not won:
            current_app.logger.info("Order %s no longer expirable, skipping", order_id)
            db.session.commit()
            return False

        payment = db.session.query(Payment).filter_by(order_id=order_id).first()
        if payment and not compare_and_set(
            payment,
            {"status": PAYMENT_STATUS_PENDING},
            status=PAYMENT_STATUS_REJECTED,
            rejection_reason=EXPIRATION_REASON,
            reviewed_at=now,
        ):
            current_app.logger.warning(
                "Payment %s for expired order %s was not pending (status %s)",
                payment.id, order_id, payment.status,
            )

        reverse_redemption(order_id, EXPIRATION_REASON, now=now)

        emit_notification(
            user_id=order.buyer_id,
            notification_type=NOTIFY_ORDER_EXPIRED,
            title="Order expired",
            message=f"Order #{order_id} was cancelled because payment was not received in time.",
            order_id=order_id,
        )

        db.session.commit()
        return True

    return run_with_retry(_op)


def cancel_expired_orders(now=None, limit: int | None = None) -> int:
    """
    Cancel every placed order whose payment window closed with no receipt.

    Safe to run concurrently with payment review and with another sweep.
    Returns the number of orders this call actually cancelled.
    """
    now = now or utcnow()
    if limit is None:
        limit = current_app.config.get("EXPIRATION_SWEEP_BATCH_SIZE", 500)

    candidate_ids = find_expired_order_ids(now, limit)
    db.session.commit()

    cancelled = 0
    for order_id in candidate_ids:
        try:
            if expire_order(order_id, now):
                cancelled += 1
        except Exception:
            current_app.logger.exception("Failed to expire order %s", order_id)

    if candidate_ids:
        current_app.logger.info(
            "Expiration sweep: %d of %d candidate orders cancelled", cancelled, len(candidate_ids)
        )
    return cancelled
