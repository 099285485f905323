# Overview: Payment verification workflow: receipt upload and seller review of cash/transfer payments.

"""
Payment Verification Workflow

STATE MACHINE (Payment.status, mirrored on Order.payment_status):
    pending -> pending_review          buyer uploads a transfer receipt
    rejected -> pending_review         buyer re-uploads after a rejection
    pending_review -> confirmed        seller approves
    pending_review -> rejected         seller rejects (reason recorded)
    pending -> confirmed               cash order, seller collected the money
    pending -> rejected                expiration sweep

RULES:
- Every status write is a conditional UPDATE on the expected prior status.
  Losing that update is never silently ignored: the row is re-read and the
  caller gets the settled result, OrderNotEligible when the order was
  cancelled meanwhile, or ConcurrentModification.
- A decided review (confirmed / rejected) is not decided again; repeating
  the call returns the settled state without side effects.
- Approval credits loyalty points in the same transaction.
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import Order, Payment
from ..models.orders import (
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_PLACED,
    ORDER_STATUS_SELLER_CONFIRMED,
    PAYMENT_METHOD_CASH,
    PAYMENT_STATUS_CONFIRMED,
    PAYMENT_STATUS_PENDING,
    PAYMENT_STATUS_PENDING_REVIEW,
    PAYMENT_STATUS_REJECTED,
)
from mercado.time_utils import utcnow
from .concurrency import begin_write, compare_and_set, lock_for_update, run_with_retry
from .errors import (
    ConcurrentModification,
    InvalidAttachment,
    InvalidRequest,
    OrderNotEligible,
    OrderNotFound,
    PaymentNotFound,
    PermissionDenied,
)
from . import points_ledger
from .loyalty_service import accrue_points
from .notification_service import (
    NOTIFY_PAYMENT_CONFIRMED,
    NOTIFY_PAYMENT_REJECTED,
    NOTIFY_RECEIPT_UPLOADED,
    emit_notification,
)


UPLOADABLE_PAYMENT_STATUSES = {PAYMENT_STATUS_PENDING, PAYMENT_STATUS_REJECTED}
DECIDED_PAYMENT_STATUSES = {PAYMENT_STATUS_CONFIRMED, PAYMENT_STATUS_REJECTED}
DEFAULT_REJECTION_REASON = "Receipt rejected by seller"

TRANSFER_METADATA_FIELDS = {
    "bank": "transfer_bank",
    "account": "transfer_account",
    "declared_amount": "transfer_declared_amount",
}


def _review_result(payment: Payment, order: Order) -> dict:
    return {
        "payment_id": payment.id,
        "order_id": order.id,
        "payment_status": payment.status,
        "order_status": order.status,
        "points_awarded": points_ledger.points_earned_for_order(order.id),
    }


def get_payment(payment_id: int) -> Payment:
    payment = db.session.query(Payment).filter_by(id=payment_id).first()
    if not payment:
        raise PaymentNotFound(f"Payment {payment_id} not found", details={"payment_id": payment_id})
    return payment


def list_pending_reviews(seller_id: str, *, limit: int = 100) -> list[Payment]:
    """Payments with an uploaded receipt waiting for this seller, oldest upload first."""
    return (
        db.session.query(Payment)
        .join(Order, Order.id == Payment.order_id)
        .filter(Order.seller_id == seller_id)
        .filter(Payment.status == PAYMENT_STATUS_PENDING_REVIEW)
        .filter(Order.status != ORDER_STATUS_CANCELLED)
        .order_by(Payment.receipt_uploaded_at.asc(), Payment.id.asc())
        .limit(limit)
        .all()
    )


def upload_receipt(
    order_id: int,
    receipt_ref: str,
    *,
    transfer_metadata: dict | None = None,
    buyer_id: str | None = None,
    now=None,
) -> dict:
    """
    Attach proof of payment to an order and queue it for seller review.

    Args:
        order_id: Order being paid
        receipt_ref: Reference (URL/key) to the externally stored receipt
        transfer_metadata: Optional {"bank", "account", "declared_amount"}
        buyer_id: When given, must be the order's buyer

    Returns:
        {"payment_id", "status"}

    Raises:
        InvalidAttachment, OrderNotFound, PaymentNotFound, PermissionDenied,
        OrderNotEligible, ConcurrentModification
    """
    if not receipt_ref or not str(receipt_ref).strip():
        raise InvalidAttachment("Receipt reference is required", details={"order_id": order_id})
    receipt_ref = str(receipt_ref).strip()

    metadata = transfer_metadata or {}
    if not isinstance(metadata, dict):
        raise InvalidRequest("transfer_metadata must be an object")
    unknown = set(metadata) - set(TRANSFER_METADATA_FIELDS)
    if unknown:
        raise InvalidRequest("Unknown transfer metadata fields", details={"fields": sorted(unknown)})

    def _op():
        begin_write()
        uploaded_at = now or utcnow()

        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if not order:
            raise OrderNotFound(f"Order {order_id} not found", details={"order_id": order_id})
        if buyer_id is not None and order.buyer_id != buyer_id:
            raise PermissionDenied("Only the buyer can upload a receipt for this order", details={"order_id": order_id})

        payment = lock_for_update(db.session.query(Payment).filter_by(order_id=order.id)).first()
        if not payment:
            raise PaymentNotFound(f"Payment for order {order_id} not found", details={"order_id": order_id})

        if order.status == ORDER_STATUS_CANCELLED:
            raise OrderNotEligible("Order is cancelled", details={"order_id": order_id})
        if payment.status == PAYMENT_STATUS_CONFIRMED:
            raise OrderNotEligible("Payment is already confirmed", details={"order_id": order_id})
        if order.status != ORDER_STATUS_PLACED:
            raise OrderNotEligible(
                f"Cannot upload a receipt for a {order.status} order",
                details={"order_id": order_id, "status": order.status},
            )
        if order.expires_at <= uploaded_at:
            raise OrderNotEligible("Order payment window has expired", details={"order_id": order_id})
        if payment.status == PAYMENT_STATUS_PENDING_REVIEW:
            raise OrderNotEligible("A receipt is already waiting for review", details={"order_id": order_id})

        values = {
            "status": PAYMENT_STATUS_PENDING_REVIEW,
            "receipt_ref": receipt_ref,
            "receipt_uploaded_at": uploaded_at,
            "rejection_reason": None,
            "reviewer_id": None,
            "reviewed_at": None,
        }
        for key, column in TRANSFER_METADATA_FIELDS.items():
            if key in metadata:
                value = metadata[key]
                values[column] = None if value is None else str(value)

        if not compare_and_set(payment, {"status": UPLOADABLE_PAYMENT_STATUSES}, **values):
            raise ConcurrentModification("Payment changed during upload", details={"order_id": order_id})
        if not compare_and_set(
            order,
            {"status": ORDER_STATUS_PLACED, "payment_status": UPLOADABLE_PAYMENT_STATUSES},
            Order.expires_at > uploaded_at,
            payment_status=PAYMENT_STATUS_PENDING_REVIEW,
        ):
            raise OrderNotEligible("Order changed during upload", details={"order_id": order_id})

        emit_notification(
            user_id=order.seller_id,
            notification_type=NOTIFY_RECEIPT_UPLOADED,
            title="Payment receipt uploaded",
            message=f"The buyer uploaded a payment receipt for order #{order.id}.",
            order_id=order.id,
        )

        result = {"payment_id": payment.id, "status": payment.status}
        db.session.commit()
        return result

    return run_with_retry(_op)


def _settled_or_raise(payment: Payment, order: Order) -> dict:
    """After a lost conditional update: report the winner's outcome."""
    if order.status == ORDER_STATUS_CANCELLED:
        raise OrderNotEligible("Order was cancelled", details={"order_id": order.id})
    if payment.status in DECIDED_PAYMENT_STATUSES:
        current_app.logger.info("Payment %s already settled as %s", payment.id, payment.status)
        return _review_result(payment, order)
    raise ConcurrentModification("Payment changed during review", details={"payment_id": payment.id})


def validate_receipt(
    payment_id: int,
    reviewer_id: str,
    approved: bool,
    *,
    rejection_reason: str | None = None,
    now=None,
) -> dict:
    """
    Seller decision on a payment.

    Approved: payment confirmed, order moves to seller_confirmed and points
    are credited. Rejected: payment rejected with a reason, order status
    unchanged, buyer may upload again.

    Returns:
        {"payment_id", "order_id", "payment_status", "order_status", "points_awarded"}

    Raises:
        PaymentNotFound, OrderNotFound, PermissionDenied, OrderNotEligible,
        ConcurrentModification
    """
    if not isinstance(approved, bool):
        raise InvalidRequest("approved must be true or false")
    if rejection_reason is not None:
        rejection_reason = str(rejection_reason).strip() or None
    rejection_reason = rejection_reason or DEFAULT_REJECTION_REASON

    def _op():
        begin_write()
        reviewed_at = now or utcnow()

        payment = lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).first()
        if not payment:
            raise PaymentNotFound(f"Payment {payment_id} not found", details={"payment_id": payment_id})
        order = lock_for_update(db.session.query(Order).filter_by(id=payment.order_id)).first()
        if not order:
            raise OrderNotFound(f"Order {payment.order_id} not found", details={"order_id": payment.order_id})
        if order.seller_id != reviewer_id:
            raise PermissionDenied("Only the order's seller can review its payment", details={"payment_id": payment_id})

        if payment.status in DECIDED_PAYMENT_STATUSES:
            result = _review_result(payment, order)
            db.session.commit()
            return result

        if order.status == ORDER_STATUS_CANCELLED:
            raise OrderNotEligible("Order was cancelled", details={"order_id": order.id})

        if payment.status == PAYMENT_STATUS_PENDING_REVIEW:
            reviewable = {PAYMENT_STATUS_PENDING_REVIEW}
        elif payment.status == PAYMENT_STATUS_PENDING and order.payment_method == PAYMENT_METHOD_CASH and approved:
            reviewable = {PAYMENT_STATUS_PENDING}
        else:
            raise OrderNotEligible(
                f"Payment in status {payment.status} cannot be reviewed",
                details={"payment_id": payment_id, "status": payment.status},
            )

        if approved:
            won = compare_and_set(
                payment,
                {"status": reviewable},
                status=PAYMENT_STATUS_CONFIRMED,
                reviewer_id=reviewer_id,
                reviewed_at=reviewed_at,
                rejection_reason=None,
                review_count=Payment.review_count + 1,
            )
            if not won:
                result = _settled_or_raise(payment, order)
                db.session.commit()
                return result
            if not compare_and_set(
                order,
                {"status": ORDER_STATUS_PLACED, "payment_status": reviewable},
                status=ORDER_STATUS_SELLER_CONFIRMED,
                payment_status=PAYMENT_STATUS_CONFIRMED,
            ):
                # Payment update is rolled back with the transaction
                raise OrderNotEligible("Order changed during review", details={"order_id": order.id})

            accrue_points(order)
            message = f"Payment for order #{order.id} was confirmed."
            emit_notification(
                user_id=order.buyer_id,
                notification_type=NOTIFY_PAYMENT_CONFIRMED,
                title="Payment confirmed",
                message=message,
                order_id=order.id,
            )
            emit_notification(
                user_id=order.seller_id,
                notification_type=NOTIFY_PAYMENT_CONFIRMED,
                title="Payment confirmed",
                message=message,
                order_id=order.id,
            )
        else:
            won = compare_and_set(
                payment,
                {"status": reviewable},
                status=PAYMENT_STATUS_REJECTED,
                reviewer_id=reviewer_id,
                reviewed_at=reviewed_at,
                rejection_reason=rejection_reason,
                review_count=Payment.review_count + 1,
            )
            if not won:
                result = _settled_or_raise(payment, order)
                db.session.commit()
                return result
            if not compare_and_set(
                order,
                {"status": ORDER_STATUS_PLACED, "payment_status": reviewable},
                payment_status=PAYMENT_STATUS_REJECTED,
            ):
                raise OrderNotEligible("Order changed during review", details={"order_id": order.id})
            emit_notification(
                user_id=order.buyer_id,
                notification_type=NOTIFY_PAYMENT_REJECTED,
                title="Payment rejected",
                message=f"Payment for order #{order.id} was rejected: {rejection_reason}",
                order_id=order.id,
            )

        result = _review_result(payment, order)
        db.session.commit()
        return result

    return run_with_retry(_op)
