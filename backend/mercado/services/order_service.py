# Overview: Order placement from a seller cart, order queries, and post-payment fulfillment transitions.

"""
Order Placement Service

LIFECYCLE:
    placed -> seller_confirmed -> delivered -> completed
    placed -> cancelled            (expiration sweep only)

- place_order converts one (buyer, seller) cart into an Order, its items
  and a pending Payment in a single transaction, and clears the cart.
- seller_confirmed is entered only through payment approval
  (payment_service.validate_receipt).
- delivered / completed are confirmed by the seller and the buyer.
- Orders are never deleted.
"""

from __future__ import annotations

from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..models import Order, OrderItem, Payment, Product
from ..models.orders import (
    ORDER_STATUS_COMPLETED,
    ORDER_STATUS_DELIVERED,
    ORDER_STATUS_PLACED,
    ORDER_STATUS_SELLER_CONFIRMED,
    PAYMENT_STATUS_PENDING,
    VALID_PAYMENT_METHODS,
)
from mercado.time_utils import utcnow
from .cart_service import clear_cart, get_cart_items
from .concurrency import begin_write, compare_and_set, lock_for_update, run_with_retry
from .errors import (
    ConcurrentModification,
    EmptyCart,
    InvalidRequest,
    OrderNotEligible,
    OrderNotFound,
    PermissionDenied,
    ProductUnavailable,
)
from .notification_service import (
    NOTIFY_NEW_ORDER,
    NOTIFY_ORDER_COMPLETED,
    NOTIFY_ORDER_DELIVERED,
    NOTIFY_ORDER_PLACED,
    emit_notification,
)


def _snapshot_lines(seller_id: str, items) -> list[dict]:
    """Resolve cart lines against the catalog; every product must be sellable."""
    product_ids = [item.product_id for item in items]
    products = {p.id: p for p in db.session.query(Product).filter(Product.id.in_(product_ids)).all()}

    lines = []
    unavailable = []
    for item in items:
        product = products.get(item.product_id)
        if (
            not product
            or product.seller_id != seller_id
            or not product.is_active
            or product.stock < item.qty
        ):
            unavailable.append({
                "product_id": item.product_id,
                "requested_quantity": item.qty,
                "stock": product.stock if product else None,
            })
            continue
        lines.append({
            "product_id": product.id,
            "title": product.title,
            "price_cents": product.price_cents,
            "qty": item.qty,
            "line_total_cents": product.price_cents * item.qty,
        })

    if unavailable:
        raise ProductUnavailable(
            "Some products in the cart are no longer available",
            details={"items": unavailable},
        )
    return lines


def place_order(
    buyer_id: str,
    seller_id: str,
    payment_method: str,
    *,
    expiration_minutes: int | None = None,
    delivery_address: str | None = None,
    delivery_notes: str | None = None,
    now=None,
) -> dict:
    """
    Convert the buyer's cart for one seller into an order.

    All or nothing: Order, OrderItems and Payment are created and the cart
    emptied in one transaction. The cart version guard makes a concurrent
    second checkout of the same cart fail with EmptyCart.

    Returns:
        {"order_id", "total_cents", "expires_at"}

    Raises:
        InvalidRequest, EmptyCart, ProductUnavailable
    """
    if not buyer_id or not seller_id:
        raise InvalidRequest("buyer_id and seller_id are required")
    if payment_method not in VALID_PAYMENT_METHODS:
        raise InvalidRequest(
            f"Invalid payment method: {payment_method}. Must be one of {sorted(VALID_PAYMENT_METHODS)}",
            details={"payment_method": payment_method},
        )
    if expiration_minutes is None:
        expiration_minutes = current_app.config["ORDER_EXPIRATION_MINUTES"]
    if expiration_minutes <= 0:
        raise InvalidRequest("expiration_minutes must be positive")

    def _op():
        begin_write()
        placed_at = now or utcnow()

        cart, items = get_cart_items(buyer_id, seller_id)
        if not items:
            raise EmptyCart("Cart is empty", details={"buyer_id": buyer_id, "seller_id": seller_id})
        seen_version = cart.version_id

        lines = _snapshot_lines(seller_id, items)
        subtotal_cents = sum(line["line_total_cents"] for line in lines)
        if subtotal_cents <= 0:
            raise EmptyCart("Cart total is zero", details={"buyer_id": buyer_id, "seller_id": seller_id})

        if not clear_cart(cart, seen_version):
            raise EmptyCart("Cart was already checked out", details={"buyer_id": buyer_id, "seller_id": seller_id})

        order = Order(
            buyer_id=buyer_id,
            seller_id=seller_id,
            subtotal_cents=subtotal_cents,
            total_cents=subtotal_cents,
            payment_method=payment_method,
            status=ORDER_STATUS_PLACED,
            payment_status=PAYMENT_STATUS_PENDING,
            expires_at=placed_at + timedelta(minutes=expiration_minutes),
            delivery_address=delivery_address,
            delivery_notes=delivery_notes,
            created_at=placed_at,
            updated_at=placed_at,
        )
        db.session.add(order)
        db.session.flush()

        for line in lines:
            db.session.add(OrderItem(order_id=order.id, **line))
        db.session.add(Payment(
            order_id=order.id,
            status=PAYMENT_STATUS_PENDING,
            amount_cents=subtotal_cents,
        ))
        db.session.flush()

        emit_notification(
            user_id=buyer_id,
            notification_type=NOTIFY_ORDER_PLACED,
            title="Order placed",
            message=f"Order #{order.id} was placed. Complete payment within {expiration_minutes} minutes.",
            order_id=order.id,
        )
        emit_notification(
            user_id=seller_id,
            notification_type=NOTIFY_NEW_ORDER,
            title="New order",
            message=f"You received order #{order.id} for {subtotal_cents} cents.",
            order_id=order.id,
        )

        result = {
            "order_id": order.id,
            "total_cents": order.total_cents,
            "expires_at": order.expires_at,
        }
        db.session.commit()
        return result

    return run_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def get_order(order_id: int) -> Order:
    order = db.session.query(Order).filter_by(id=order_id).first()
    if not order:
        raise OrderNotFound(f"Order {order_id} not found", details={"order_id": order_id})
    return order


def list_orders_for_buyer(buyer_id: str, *, status: str | None = None, limit: int = 50) -> list[Order]:
    query = db.session.query(Order).filter_by(buyer_id=buyer_id)
    if status:
        query = query.filter_by(status=status)
    return query.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit).all()


def list_orders_for_seller(seller_id: str, *, status: str | None = None, limit: int = 50) -> list[Order]:
    query = db.session.query(Order).filter_by(seller_id=seller_id)
    if status:
        query = query.filter_by(status=status)
    return query.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit).all()


# =============================================================================
# FULFILLMENT
# =============================================================================

def _transition(order_id: int, *, actor_field: str, actor_id: str, from_status: str, to_status: str, now, stamp: str):
    begin_write()
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
    if not order:
        raise OrderNotFound(f"Order {order_id} not found", details={"order_id": order_id})
    if getattr(order, actor_field) != actor_id:
        raise PermissionDenied("Not allowed to update this order", details={"order_id": order_id})
    if order.status == to_status:
        db.session.commit()
        return order, False
    if order.status != from_status:
        raise OrderNotEligible(
            f"Cannot move order from {order.status} to {to_status}",
            details={"order_id": order_id, "status": order.status},
        )

    if not compare_and_set(order, {"status": from_status}, status=to_status, **{stamp: now or utcnow()}):
        if order.status == to_status:
            db.session.commit()
            return order, False
        raise ConcurrentModification("Order changed during update", details={"order_id": order_id})
    return order, True


def confirm_delivery(order_id: int, seller_id: str, *, now=None) -> Order:
    """Seller hands over the goods: seller_confirmed -> delivered."""
    def _op():
        order, changed = _transition(
            order_id,
            actor_field="seller_id",
            actor_id=seller_id,
            from_status=ORDER_STATUS_SELLER_CONFIRMED,
            to_status=ORDER_STATUS_DELIVERED,
            now=now,
            stamp="delivered_at",
        )
        if changed:
            emit_notification(
                user_id=order.buyer_id,
                notification_type=NOTIFY_ORDER_DELIVERED,
                title="Order delivered",
                message=f"Order #{order.id} was marked as delivered. Please confirm you received it.",
                order_id=order.id,
            )
            db.session.commit()
        return order

    return run_with_retry(_op)


def confirm_receipt(order_id: int, buyer_id: str, *, now=None) -> Order:
    """Buyer confirms the goods arrived: delivered -> completed."""
    def _op():
        order, changed = _transition(
            order_id,
            actor_field="buyer_id",
            actor_id=buyer_id,
            from_status=ORDER_STATUS_DELIVERED,
            to_status=ORDER_STATUS_COMPLETED,
            now=now,
            stamp="completed_at",
        )
        if changed:
            emit_notification(
                user_id=order.seller_id,
                notification_type=NOTIFY_ORDER_COMPLETED,
                title="Order completed",
                message=f"The buyer confirmed receipt of order #{order.id}.",
                order_id=order.id,
            )
            db.session.commit()
        return order

    return run_with_retry(_op)
