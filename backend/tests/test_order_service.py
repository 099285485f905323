"""
Order placement and fulfillment tests.

Verifies:
- Placement snapshots the cart into order, items and a pending payment
- Placement is all-or-nothing (empty cart, unavailable product)
- A dropped notification never fails the placement
- Cart writes bump the version checkout compares against
- Fulfillment transitions are restricted to the right party and state
"""

import logging
from datetime import timedelta

import pytest

from mercado.models import Cart, CartItem, Notification, Order, OrderItem, Payment
from mercado.services import cart_service, notification_service, order_service, payment_service
from mercado.services.errors import (
    EmptyCart,
    InvalidRequest,
    OrderNotEligible,
    OrderNotFound,
    PermissionDenied,
    ProductUnavailable,
)

from conftest import BUYER, OTHER_BUYER, SELLER, OTHER_SELLER, T0


# =============================================================================
# PLACEMENT
# =============================================================================


class TestPlaceOrder:

    def test_creates_order_items_and_pending_payment(self, db_session, make_product, fill_cart):
        empanada = make_product(price_cents=2500, title="Empanada")
        bebida = make_product(price_cents=1200, title="Bebida")
        fill_cart(BUYER, SELLER, (empanada, 2), (bebida, 1))

        result = order_service.place_order(BUYER, SELLER, "transfer", now=T0)

        assert result["total_cents"] == 6200
        assert result["expires_at"] == T0 + timedelta(minutes=15)

        order = db_session.get(Order, result["order_id"])
        assert order.status == "placed"
        assert order.payment_status == "pending"
        assert order.subtotal_cents == order.total_cents == 6200
        assert [(i.title, i.qty, i.line_total_cents) for i in order.items] == [
            ("Empanada", 2, 5000),
            ("Bebida", 1, 1200),
        ]
        assert order.payment.status == "pending"
        assert order.payment.amount_cents == 6200

    def test_clears_cart(self, db_session, make_product, fill_cart):
        fill_cart(BUYER, SELLER, (make_product(), 3))

        order_service.place_order(BUYER, SELLER, "cash", now=T0)

        cart = db_session.query(Cart).filter_by(buyer_id=BUYER, seller_id=SELLER).one()
        assert db_session.query(CartItem).filter_by(cart_id=cart.id).count() == 0

    def test_emits_buyer_and_seller_notifications(self, db_session, place):
        result = place()

        notes = db_session.query(Notification).filter_by(order_id=result["order_id"]).all()
        assert {(n.user_id, n.type) for n in notes} == {
            (BUYER, "order_placed"),
            (SELLER, "new_order"),
        }

    def test_snapshots_catalog_price(self, db_session, make_product, fill_cart):
        product = make_product(price_cents=1000)
        fill_cart(BUYER, SELLER, (product, 1))
        product.price_cents = 1500
        db_session.commit()

        result = order_service.place_order(BUYER, SELLER, "cash", now=T0)

        assert result["total_cents"] == 1500

    def test_custom_expiration(self, db_session, make_product, fill_cart):
        fill_cart(BUYER, SELLER, (make_product(), 1))

        result = order_service.place_order(BUYER, SELLER, "transfer", expiration_minutes=60, now=T0)

        assert result["expires_at"] == T0 + timedelta(minutes=60)

    def test_empty_cart_creates_nothing(self, db_session):
        with pytest.raises(EmptyCart):
            order_service.place_order(BUYER, SELLER, "transfer", now=T0)

        assert db_session.query(Order).count() == 0
        assert db_session.query(Payment).count() == 0

    def test_cart_is_per_seller(self, db_session, make_product, fill_cart):
        fill_cart(BUYER, OTHER_SELLER, (make_product(seller_id=OTHER_SELLER), 1))

        with pytest.raises(EmptyCart):
            order_service.place_order(BUYER, SELLER, "transfer", now=T0)

    def test_second_placement_of_same_cart_is_empty(self, db_session, place):
        place()

        with pytest.raises(EmptyCart):
            order_service.place_order(BUYER, SELLER, "transfer", now=T0)
        assert db_session.query(Order).count() == 1

    def test_inactive_product_rolls_back(self, db_session, make_product, fill_cart):
        product = make_product()
        fill_cart(BUYER, SELLER, (product, 1))
        product.is_active = False
        db_session.commit()

        with pytest.raises(ProductUnavailable) as exc_info:
            order_service.place_order(BUYER, SELLER, "transfer", now=T0)

        assert exc_info.value.details["items"][0]["product_id"] == product.id
        assert db_session.query(Order).count() == 0
        assert db_session.query(OrderItem).count() == 0
        # Cart untouched
        assert db_session.query(CartItem).count() == 1

    def test_insufficient_stock(self, db_session, make_product, fill_cart):
        fill_cart(BUYER, SELLER, (make_product(stock=2), 3))

        with pytest.raises(ProductUnavailable):
            order_service.place_order(BUYER, SELLER, "transfer", now=T0)

    @pytest.mark.parametrize("method", ["card", "", None, "CASH"])
    def test_rejects_unknown_payment_method(self, db_session, method):
        with pytest.raises(InvalidRequest):
            order_service.place_order(BUYER, SELLER, method, now=T0)

    def test_rejects_non_positive_expiration(self, db_session):
        with pytest.raises(InvalidRequest):
            order_service.place_order(BUYER, SELLER, "cash", expiration_minutes=0, now=T0)

    def test_failed_notification_is_logged_and_order_commits(self, db_session, make_product, fill_cart, monkeypatch, caplog):
        fill_cart(BUYER, SELLER, (make_product(), 1))

        def unaddressed(**fields):
            fields["user_id"] = None
            return Notification(**fields)

        monkeypatch.setattr(notification_service, "Notification", unaddressed)

        with caplog.at_level(logging.WARNING):
            result = order_service.place_order(BUYER, SELLER, "transfer", now=T0)

        db_session.expire_all()
        order = db_session.get(Order, result["order_id"])
        assert order.status == "placed"
        assert order.payment.status == "pending"
        assert db_session.query(Notification).count() == 0
        assert "Dropped order_placed notification" in caplog.text
        assert "Dropped new_order notification" in caplog.text


# =============================================================================
# CART
# =============================================================================


class TestCartVersion:

    def test_add_item_bumps_version(self, db_session, make_product, fill_cart):
        product = make_product()
        fill_cart(BUYER, SELLER, (product, 1))
        before = cart_service.get_cart(BUYER, SELLER).version_id

        cart_service.add_item(BUYER, SELLER, product.id, 1)

        db_session.expire_all()
        assert cart_service.get_cart(BUYER, SELLER).version_id == before + 1

    def test_clear_with_stale_version_keeps_late_items(self, db_session, make_product, fill_cart):
        empanada = make_product(title="Empanada")
        bebida = make_product(title="Bebida")
        fill_cart(BUYER, SELLER, (empanada, 1))
        seen_version = cart_service.get_cart(BUYER, SELLER).version_id

        # Added after checkout read the cart
        cart_service.add_item(BUYER, SELLER, bebida.id, 2)

        cart = cart_service.get_cart(BUYER, SELLER)
        assert cart_service.clear_cart(cart, seen_version) is False
        db_session.commit()
        assert db_session.query(CartItem).filter_by(cart_id=cart.id).count() == 2

        assert cart_service.clear_cart(cart, cart.version_id) is True
        db_session.commit()
        assert db_session.query(CartItem).filter_by(cart_id=cart.id).count() == 0


# =============================================================================
# QUERIES
# =============================================================================


class TestOrderQueries:

    def test_get_order_not_found(self, db_session):
        with pytest.raises(OrderNotFound):
            order_service.get_order(999)

    def test_lists_by_party_and_status(self, db_session, place):
        first = place(total_cents=1000)
        place(total_cents=2000, buyer_id=OTHER_BUYER)

        buyer_orders = order_service.list_orders_for_buyer(BUYER)
        seller_orders = order_service.list_orders_for_seller(SELLER)

        assert [o.id for o in buyer_orders] == [first["order_id"]]
        assert len(seller_orders) == 2
        assert order_service.list_orders_for_seller(SELLER, status="cancelled") == []


# =============================================================================
# FULFILLMENT
# =============================================================================


def _confirmed_order(place):
    result = place(payment_method="cash")
    payment = order_service.get_order(result["order_id"]).payment
    payment_service.validate_receipt(payment.id, SELLER, True)
    return result["order_id"]


class TestFulfillment:

    def test_delivery_then_receipt_completes_order(self, db_session, place):
        order_id = _confirmed_order(place)

        order = order_service.confirm_delivery(order_id, SELLER)
        assert order.status == "delivered"
        assert order.delivered_at is not None

        order = order_service.confirm_receipt(order_id, BUYER)
        assert order.status == "completed"
        assert order.completed_at is not None

        types = {n.type for n in db_session.query(Notification).filter_by(order_id=order_id)}
        assert {"order_delivered", "order_completed"} <= types

    def test_delivery_requires_confirmed_payment(self, db_session, place):
        result = place()

        with pytest.raises(OrderNotEligible):
            order_service.confirm_delivery(result["order_id"], SELLER)

    def test_only_seller_confirms_delivery(self, db_session, place):
        order_id = _confirmed_order(place)

        with pytest.raises(PermissionDenied):
            order_service.confirm_delivery(order_id, BUYER)

    def test_only_buyer_confirms_receipt(self, db_session, place):
        order_id = _confirmed_order(place)
        order_service.confirm_delivery(order_id, SELLER)

        with pytest.raises(PermissionDenied):
            order_service.confirm_receipt(order_id, SELLER)

    def test_receipt_before_delivery_is_rejected(self, db_session, place):
        order_id = _confirmed_order(place)

        with pytest.raises(OrderNotEligible):
            order_service.confirm_receipt(order_id, BUYER)

    def test_repeated_delivery_is_noop(self, db_session, place):
        order_id = _confirmed_order(place)
        order_service.confirm_delivery(order_id, SELLER)

        order = order_service.confirm_delivery(order_id, SELLER)

        assert order.status == "delivered"
        delivered_notes = db_session.query(Notification).filter_by(order_id=order_id, type="order_delivered").count()
        assert delivered_notes == 1
