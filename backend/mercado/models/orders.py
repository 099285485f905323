from __future__ import annotations

from ..extensions import db
from mercado.time_utils import to_utc_z


# Order.status
ORDER_STATUS_PLACED = "placed"
ORDER_STATUS_SELLER_CONFIRMED = "seller_confirmed"
ORDER_STATUS_DELIVERED = "delivered"
ORDER_STATUS_COMPLETED = "completed"
ORDER_STATUS_CANCELLED = "cancelled"

# Payment.status and Order.payment_status share one vocabulary
PAYMENT_STATUS_PENDING = "pending"
PAYMENT_STATUS_PENDING_REVIEW = "pending_review"
PAYMENT_STATUS_CONFIRMED = "confirmed"
PAYMENT_STATUS_REJECTED = "rejected"

PAYMENT_METHOD_CASH = "cash"
PAYMENT_METHOD_TRANSFER = "transfer"
VALID_PAYMENT_METHODS = {PAYMENT_METHOD_CASH, PAYMENT_METHOD_TRANSFER}


class Order(db.Model):
    """
    A buyer's purchase of one seller's cart contents at snapshotted prices.

    LIFECYCLE:
        placed -> seller_confirmed -> delivered -> completed
        placed -> cancelled           (expiration sweep only)

    MONEY:
    - subtotal_cents is the sum of the item snapshots and never changes.
    - total_cents starts equal to subtotal_cents and only decreases
      (points redemption). It is always >= 1.

    Orders are never deleted.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.CheckConstraint("total_cents >= 1", name="ck_orders_total_positive"),
        db.CheckConstraint("total_cents <= subtotal_cents", name="ck_orders_total_not_increased"),
        db.Index("ix_orders_expiration_sweep", "status", "payment_status", "expires_at"),
        db.Index("ix_orders_seller_status", "seller_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    buyer_id = db.Column(db.String(64), nullable=False, index=True)
    seller_id = db.Column(db.String(64), nullable=False, index=True)

    subtotal_cents = db.Column(db.Integer, nullable=False)
    total_cents = db.Column(db.Integer, nullable=False)

    payment_method = db.Column(db.String(16), nullable=False)  # cash, transfer
    status = db.Column(db.String(32), nullable=False, default=ORDER_STATUS_PLACED, index=True)
    payment_status = db.Column(db.String(32), nullable=False, default=PAYMENT_STATUS_PENDING, index=True)

    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)

    # Opaque to the core
    delivery_address = db.Column(db.Text, nullable=True)
    delivery_notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
            "subtotal_cents": self.subtotal_cents,
            "total_cents": self.total_cents,
            "payment_method": self.payment_method,
            "status": self.status,
            "payment_status": self.payment_status,
            "expires_at": to_utc_z(self.expires_at),
            "delivery_address": self.delivery_address,
            "delivery_notes": self.delivery_notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "delivered_at": to_utc_z(self.delivered_at),
            "completed_at": to_utc_z(self.completed_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "version_id": self.version_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    """Immutable snapshot of one cart line at placement time."""
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("qty > 0", name="ck_order_items_qty_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, nullable=False)

    title = db.Column(db.String(255), nullable=False)
    price_cents = db.Column(db.Integer, nullable=False)
    qty = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", backref=db.backref("items", lazy=True, order_by="OrderItem.id"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "title": self.title,
            "price_cents": self.price_cents,
            "qty": self.qty,
            "line_total_cents": self.line_total_cents,
        }


class Payment(db.Model):
    """
    Verification record for an order's cash or transfer payment (1:1).

    STATE MACHINE:
        pending -> pending_review -> confirmed | rejected
        rejected -> pending_review   (buyer re-uploads a receipt)
        pending -> rejected          (expiration sweep)
        pending -> confirmed         (cash collected, seller review)

    receipt_ref is a reference to externally stored proof of transfer.
    Transfer metadata fields are opaque strings declared by the buyer.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.UniqueConstraint("order_id", name="uq_payments_order"),
        db.Index("ix_payments_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)

    status = db.Column(db.String(32), nullable=False, default=PAYMENT_STATUS_PENDING, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)

    receipt_ref = db.Column(db.String(1024), nullable=True)
    transfer_bank = db.Column(db.String(128), nullable=True)
    transfer_account = db.Column(db.String(128), nullable=True)
    transfer_declared_amount = db.Column(db.String(64), nullable=True)
    receipt_uploaded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    reviewer_id = db.Column(db.String(64), nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.String(512), nullable=True)
    review_count = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    order = db.relationship("Order", backref=db.backref("payment", uselist=False, lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "status": self.status,
            "amount_cents": self.amount_cents,
            "receipt_ref": self.receipt_ref,
            "transfer_metadata": {
                "bank": self.transfer_bank,
                "account": self.transfer_account,
                "declared_amount": self.transfer_declared_amount,
            },
            "receipt_uploaded_at": to_utc_z(self.receipt_uploaded_at),
            "reviewer_id": self.reviewer_id,
            "reviewed_at": to_utc_z(self.reviewed_at),
            "rejection_reason": self.rejection_reason,
            "review_count": self.review_count,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
