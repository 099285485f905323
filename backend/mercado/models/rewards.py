from __future__ import annotations

from decimal import Decimal

from ..extensions import db
from mercado.time_utils import to_utc_z


LEDGER_EARNED = "earned"
LEDGER_SPENT = "spent"
LEDGER_REFUNDED = "refunded"
VALID_LEDGER_TYPES = {LEDGER_EARNED, LEDGER_SPENT, LEDGER_REFUNDED}

REDEMPTION_APPLIED = "applied"
REDEMPTION_REVERSED = "reversed"


def _decimal_str(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


class RewardsConfig(db.Model):
    """
    Per-seller loyalty program switch and base rates.

    points_per_peso is points earned per minor currency unit (0.0286 means
    one point per ~35 cents). point_value_cents overrides the value of a
    point when redeeming; NULL derives it as round(1 / points_per_peso).
    max_redemption_ratio caps a redemption as a fraction of the order total.
    """
    __tablename__ = "seller_rewards_config"
    __table_args__ = (
        db.UniqueConstraint("seller_id", name="uq_rewards_config_seller"),
        db.CheckConstraint("points_per_peso > 0", name="ck_rewards_config_rate_positive"),
        db.CheckConstraint("max_redemption_ratio > 0 AND max_redemption_ratio <= 1", name="ck_rewards_config_ratio_range"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.String(64), nullable=False)

    is_active = db.Column(db.Boolean, nullable=False, default=False)
    points_per_peso = db.Column(db.Numeric(10, 4), nullable=False, default=Decimal("0.0286"))
    minimum_purchase_cents = db.Column(db.Integer, nullable=False, default=500000)
    point_value_cents = db.Column(db.Integer, nullable=True)
    max_redemption_ratio = db.Column(db.Numeric(5, 4), nullable=False, default=Decimal("0.5"))

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "seller_id": self.seller_id,
            "is_active": self.is_active,
            "points_per_peso": _decimal_str(self.points_per_peso),
            "minimum_purchase_cents": self.minimum_purchase_cents,
            "point_value_cents": self.point_value_cents,
            "max_redemption_ratio": _decimal_str(self.max_redemption_ratio),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class RewardTier(db.Model):
    """Purchase-threshold bracket that multiplies earned points."""
    __tablename__ = "seller_reward_tiers"
    __table_args__ = (
        db.UniqueConstraint("seller_id", "tier_name", name="uq_reward_tiers_seller_name"),
        db.Index("ix_reward_tiers_seller_active_min", "seller_id", "is_active", "minimum_purchase_cents"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.String(64), nullable=False)

    tier_name = db.Column(db.String(100), nullable=False)
    minimum_purchase_cents = db.Column(db.Integer, nullable=False)
    points_multiplier = db.Column(db.Numeric(10, 4), nullable=False, default=Decimal("1.0"))
    description = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "seller_id": self.seller_id,
            "tier_name": self.tier_name,
            "minimum_purchase_cents": self.minimum_purchase_cents,
            "points_multiplier": _decimal_str(self.points_multiplier),
            "description": self.description,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class PointsLedgerEntry(db.Model):
    """
    Append-only ledger of loyalty point events.

    TRANSACTION TYPES:
    - earned:   points credited for a confirmed order
    - spent:    points redeemed as an order discount
    - refunded: points returned when an applied redemption is reversed

    Exactly one of points_earned / points_spent is non-zero.

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "points_history"
    __table_args__ = (
        db.CheckConstraint("points_earned >= 0 AND points_spent >= 0", name="ck_points_history_non_negative"),
        db.CheckConstraint("points_earned = 0 OR points_spent = 0", name="ck_points_history_one_side"),
        db.Index("ix_points_history_user_seller_created", "user_id", "seller_id", "created_at"),
        db.Index("ix_points_history_order_type", "order_id", "transaction_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False)
    seller_id = db.Column(db.String(64), nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True)

    points_earned = db.Column(db.Integer, nullable=False, default=0)
    points_spent = db.Column(db.Integer, nullable=False, default=0)
    transaction_type = db.Column(db.String(16), nullable=False)  # earned, spent, refunded
    description = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    @property
    def signed_points(self) -> int:
        return self.points_earned - self.points_spent

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "seller_id": self.seller_id,
            "order_id": self.order_id,
            "points_earned": self.points_earned,
            "points_spent": self.points_spent,
            "transaction_type": self.transaction_type,
            "description": self.description,
            "created_at": to_utc_z(self.created_at),
        }


class PointsBalance(db.Model):
    """
    Running points total per (user, seller).

    Derived from points_history, persisted for O(1) reads. Only
    points_ledger.credit_points and debit_points mutate it, always alongside a ledger
    entry in the same transaction.
    """
    __tablename__ = "user_points"
    __table_args__ = (
        db.UniqueConstraint("user_id", "seller_id", name="uq_user_points_user_seller"),
        db.CheckConstraint("points >= 0", name="ck_user_points_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    seller_id = db.Column(db.String(64), nullable=False, index=True)

    points = db.Column(db.Integer, nullable=False, default=0)
    lifetime_earned = db.Column(db.Integer, nullable=False, default=0)
    lifetime_spent = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "seller_id": self.seller_id,
            "points": self.points,
            "lifetime_earned": self.lifetime_earned,
            "lifetime_spent": self.lifetime_spent,
            "updated_at": to_utc_z(self.updated_at),
        }


class Redemption(db.Model):
    """
    Points exchanged for an order discount.

    One row per order (unique order_id). Reversal happens only when the
    order is cancelled, so a reversed row is never applied again.
    """
    __tablename__ = "point_redemptions"
    __table_args__ = (
        db.UniqueConstraint("order_id", name="uq_point_redemptions_order"),
        db.CheckConstraint("points_used > 0", name="ck_point_redemptions_points_positive"),
        db.CheckConstraint("discount_cents > 0", name="ck_point_redemptions_discount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    seller_id = db.Column(db.String(64), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)

    points_used = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default=REDEMPTION_APPLIED)

    applied_at = db.Column(db.DateTime(timezone=True), nullable=False)
    reversed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    reversal_reason = db.Column(db.String(255), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "seller_id": self.seller_id,
            "order_id": self.order_id,
            "points_used": self.points_used,
            "discount_cents": self.discount_cents,
            "status": self.status,
            "applied_at": to_utc_z(self.applied_at),
            "reversed_at": to_utc_z(self.reversed_at),
            "reversal_reason": self.reversal_reason,
        }
