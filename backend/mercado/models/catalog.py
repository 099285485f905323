from __future__ import annotations

from ..extensions import db
from mercado.time_utils import to_utc_z


class Product(db.Model):
    """
    Seller catalog entry.

    Owned by the catalog collaborator. The order core only reads it at
    placement time to snapshot price and title and to check availability.
    """
    __tablename__ = "seller_products"
    __table_args__ = (
        db.Index("ix_seller_products_seller_active", "seller_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.String(64), nullable=False, index=True)

    title = db.Column(db.String(255), nullable=False)
    price_cents = db.Column(db.Integer, nullable=False)
    stock = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "seller_id": self.seller_id,
            "title": self.title,
            "price_cents": self.price_cents,
            "stock": self.stock,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Cart(db.Model):
    """
    One cart per (buyer, seller).

    version_id is bumped when the cart is converted into an order so two
    concurrent checkouts cannot both consume the same contents.
    """
    __tablename__ = "carts"
    __table_args__ = (
        db.UniqueConstraint("buyer_id", "seller_id", name="uq_carts_buyer_seller"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    buyer_id = db.Column(db.String(64), nullable=False, index=True)
    seller_id = db.Column(db.String(64), nullable=False, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
            "items": [item.to_dict() for item in self.items],
            "version_id": self.version_id,
        }


class CartItem(db.Model):
    """Line in a cart. Price is informational; placement re-reads the catalog."""
    __tablename__ = "cart_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    cart_id = db.Column(db.Integer, db.ForeignKey("carts.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("seller_products.id"), nullable=False)

    title = db.Column(db.String(255), nullable=False)
    price_cents = db.Column(db.Integer, nullable=False)
    qty = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    cart = db.relationship("Cart", backref=db.backref("items", lazy=True, order_by="CartItem.id"))
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "cart_id": self.cart_id,
            "product_id": self.product_id,
            "title": self.title,
            "price_cents": self.price_cents,
            "qty": self.qty,
        }
