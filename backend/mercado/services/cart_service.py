# Overview: Cart collaborator: per (buyer, seller) cart reads and the guarded clear used at checkout.

from __future__ import annotations

from ..extensions import db
from ..models import Cart, CartItem, Product
from .concurrency import begin_write, compare_and_set, run_with_retry
from .errors import InvalidRequest, ProductUnavailable


def get_cart(buyer_id: str, seller_id: str) -> Cart | None:
    return db.session.query(Cart).filter_by(buyer_id=buyer_id, seller_id=seller_id).first()


def get_cart_items(buyer_id: str, seller_id: str) -> tuple[Cart | None, list[CartItem]]:
    """Return the buyer's cart for one seller and its lines (empty list if none)."""
    cart = get_cart(buyer_id, seller_id)
    if not cart:
        return None, []
    items = (
        db.session.query(CartItem)
        .filter_by(cart_id=cart.id)
        .order_by(CartItem.id.asc())
        .all()
    )
    return cart, items


def clear_cart(cart: Cart, expected_version: int) -> bool:
    """
    Remove every line from the cart if nobody converted it first.

    The cart version is compared and bumped in one UPDATE; only the caller
    that wins that update deletes the lines. Returns False when the cart
    was already consumed by a concurrent checkout.

    Must run inside the caller's transaction.
    """
    if not compare_and_set(cart, {"version_id": expected_version}):
        return False
    db.session.query(CartItem).filter_by(cart_id=cart.id).delete(synchronize_session=False)
    return True


def add_item(buyer_id: str, seller_id: str, product_id: int, qty: int = 1) -> CartItem:
    """
    Add a catalog product to the buyer's cart for that seller.

    Repeated adds of the same product accumulate quantity on one line.
    Every add bumps the cart version.
    """
    if qty <= 0:
        raise InvalidRequest("Quantity must be positive", details={"qty": qty})

    def _op():
        begin_write()

        product = db.session.query(Product).filter_by(id=product_id).first()
        if not product or product.seller_id != seller_id or not product.is_active:
            raise ProductUnavailable(
                "Product is not available from this seller",
                details={"product_id": product_id, "seller_id": seller_id},
            )

        cart = get_cart(buyer_id, seller_id)
        if not cart:
            cart = Cart(buyer_id=buyer_id, seller_id=seller_id)
            db.session.add(cart)
            db.session.flush()

        item = db.session.query(CartItem).filter_by(cart_id=cart.id, product_id=product.id).first()
        if item:
            item.qty += qty
            item.price_cents = product.price_cents
        else:
            item = CartItem(
                cart_id=cart.id,
                product_id=product.id,
                title=product.title,
                price_cents=product.price_cents,
                qty=qty,
            )
            db.session.add(item)

        # Checkout snapshots the version; a concurrent add must invalidate it.
        compare_and_set(cart, {})
        db.session.commit()
        return item

    return run_with_retry(_op)
