# Overview: Seller loyalty programs: point accrual on confirmed orders, redemption as order discount, reversal.

"""
Loyalty Points Engine

Each seller runs its own program (seller_rewards_config + seller_reward_tiers).
Points are kept per (buyer, seller) and are not transferable between sellers.

RULES:
- Accrual happens only inside payment approval, at most once per order.
- points = floor(order_total * points_per_peso * tier_multiplier), computed
  with Decimal; the tier is the active one with the highest threshold the
  total reaches.
- A redemption turns points into a discount of points * point_value on an
  order that is still open. The discount never reaches the order total
  and never exceeds max_redemption_ratio of it.
- One redemption per order. Cancelling the order reverses it and refunds
  the points and adds the discount back to the order total.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Order, PointsBalance, Product, Redemption, RewardsConfig, RewardTier
from ..models.orders import ORDER_STATUS_PLACED, ORDER_STATUS_SELLER_CONFIRMED
from ..models.rewards import LEDGER_EARNED, LEDGER_REFUNDED, REDEMPTION_APPLIED, REDEMPTION_REVERSED
from mercado.time_utils import utcnow
from . import points_ledger
from .cart_service import get_cart_items
from .concurrency import begin_write, compare_and_set, lock_for_update, run_with_retry
from .errors import (
    AlreadyRedeemed,
    ConcurrentModification,
    DiscountExceedsOrder,
    InsufficientPoints,
    InvalidRequest,
    OrderNotEligible,
    OrderNotFound,
    RewardsInactive,
)
from .notification_service import NOTIFY_POINTS_EARNED, NOTIFY_POINTS_REDEEMED, emit_notification


REDEEMABLE_ORDER_STATUSES = {ORDER_STATUS_PLACED, ORDER_STATUS_SELLER_CONFIRMED}

DEFAULT_POINTS_PER_PESO = Decimal("0.0286")
DEFAULT_MINIMUM_PURCHASE_CENTS = 500000
DEFAULT_MAX_REDEMPTION_RATIO = Decimal("0.5")


@dataclass(frozen=True)
class PointsQuote:
    points: int
    tier_name: str | None
    multiplier: Decimal
    reason: str | None = None

    def to_dict(self) -> dict:
        return {
            "points": self.points,
            "tier_name": self.tier_name,
            "multiplier": str(self.multiplier),
            "reason": self.reason,
        }


def _as_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


# =============================================================================
# CALCULATION (pure)
# =============================================================================

def select_tier(tiers: list[RewardTier], total_cents: int) -> RewardTier | None:
    """Active tier with the largest minimum_purchase_cents <= total_cents."""
    best = None
    for tier in tiers:
        if not tier.is_active or tier.minimum_purchase_cents > total_cents:
            continue
        if best is None or tier.minimum_purchase_cents > best.minimum_purchase_cents:
            best = tier
    return best


def calculate_points(config: RewardsConfig | None, tiers: list[RewardTier], total_cents: int) -> PointsQuote:
    one = Decimal("1")
    if config is None or not config.is_active:
        return PointsQuote(0, None, one, reason="rewards_inactive")
    if total_cents < config.minimum_purchase_cents:
        return PointsQuote(0, None, one, reason="below_minimum")

    tier = select_tier(tiers, total_cents)
    multiplier = _as_decimal(tier.points_multiplier) if tier else one
    raw = Decimal(total_cents) * _as_decimal(config.points_per_peso) * multiplier
    points = int(raw.to_integral_value(rounding=ROUND_FLOOR))
    return PointsQuote(points, tier.tier_name if tier else None, multiplier)


def point_value_cents(config: RewardsConfig) -> int:
    """
    Discount granted per point: the configured override, else round(1 / points_per_peso).

    Never below one cent, so rates above 2 points per unit still redeem.
    """
    if config.point_value_cents:
        return config.point_value_cents
    value = (Decimal("1") / _as_decimal(config.points_per_peso)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return max(1, int(value))


def max_discount_cents(config: RewardsConfig, total_cents: int) -> int:
    """Largest discount allowed on an order: floor(total * ratio), and always below the total."""
    ratio = _as_decimal(config.max_redemption_ratio)
    capped = int((Decimal(total_cents) * ratio).to_integral_value(rounding=ROUND_FLOOR))
    return max(0, min(capped, total_cents - 1))


# =============================================================================
# CONFIGURATION
# =============================================================================

def get_rewards_config(seller_id: str) -> RewardsConfig | None:
    return db.session.query(RewardsConfig).filter_by(seller_id=seller_id).first()


def list_tiers(seller_id: str, *, include_inactive: bool = False) -> list[RewardTier]:
    query = db.session.query(RewardTier).filter_by(seller_id=seller_id)
    if not include_inactive:
        query = query.filter(RewardTier.is_active.is_(True))
    return query.order_by(RewardTier.minimum_purchase_cents.asc()).all()


def configure_rewards(
    seller_id: str,
    *,
    is_active: bool | None = None,
    points_per_peso=None,
    minimum_purchase_cents: int | None = None,
    point_value_cents: int | None = None,
    max_redemption_ratio=None,
    clear_point_value: bool = False,
) -> RewardsConfig:
    """
    Create or update a seller's program. Omitted values keep their current
    setting (or the default on first configuration).
    """
    if points_per_peso is not None:
        points_per_peso = _as_decimal(points_per_peso)
        if points_per_peso <= 0:
            raise InvalidRequest("points_per_peso must be positive")
    if minimum_purchase_cents is not None and minimum_purchase_cents < 0:
        raise InvalidRequest("minimum_purchase_cents cannot be negative")
    if point_value_cents is not None and point_value_cents <= 0:
        raise InvalidRequest("point_value_cents must be positive")
    if max_redemption_ratio is not None:
        max_redemption_ratio = _as_decimal(max_redemption_ratio)
        if not (Decimal("0") < max_redemption_ratio <= Decimal("1")):
            raise InvalidRequest("max_redemption_ratio must be in (0, 1]")

    def _op():
        begin_write()
        config = lock_for_update(db.session.query(RewardsConfig).filter_by(seller_id=seller_id)).first()
        if not config:
            config = RewardsConfig(
                seller_id=seller_id,
                is_active=False,
                points_per_peso=DEFAULT_POINTS_PER_PESO,
                minimum_purchase_cents=DEFAULT_MINIMUM_PURCHASE_CENTS,
                max_redemption_ratio=DEFAULT_MAX_REDEMPTION_RATIO,
            )
            db.session.add(config)

        if is_active is not None:
            config.is_active = is_active
        if points_per_peso is not None:
            config.points_per_peso = points_per_peso
        if minimum_purchase_cents is not None:
            config.minimum_purchase_cents = minimum_purchase_cents
        if clear_point_value:
            config.point_value_cents = None
        elif point_value_cents is not None:
            config.point_value_cents = point_value_cents
        if max_redemption_ratio is not None:
            config.max_redemption_ratio = max_redemption_ratio

        db.session.commit()
        return config

    return run_with_retry(_op)


def upsert_tier(
    seller_id: str,
    tier_name: str,
    *,
    minimum_purchase_cents: int,
    points_multiplier=Decimal("1.0"),
    description: str | None = None,
    is_active: bool = True,
) -> RewardTier:
    tier_name = (tier_name or "").strip()
    if not tier_name:
        raise InvalidRequest("tier_name is required")
    if minimum_purchase_cents is None or minimum_purchase_cents < 0:
        raise InvalidRequest("minimum_purchase_cents cannot be negative")
    points_multiplier = _as_decimal(points_multiplier)
    if points_multiplier <= 0:
        raise InvalidRequest("points_multiplier must be positive")

    def _op():
        begin_write()
        tier = (
            db.session.query(RewardTier)
            .filter_by(seller_id=seller_id, tier_name=tier_name)
            .first()
        )
        if not tier:
            tier = RewardTier(seller_id=seller_id, tier_name=tier_name)
            db.session.add(tier)
        tier.minimum_purchase_cents = minimum_purchase_cents
        tier.points_multiplier = points_multiplier
        tier.description = description
        tier.is_active = is_active
        db.session.commit()
        return tier

    return run_with_retry(_op)


# =============================================================================
# ACCRUAL
# =============================================================================

def accrue_points(order: Order) -> int:
    """
    Credit the buyer for a payment-confirmed order.

    Runs inside the approval transaction and does not commit. Returns the
    points awarded; 0 when the program is off, the order is below the
    minimum, or the order was already credited.
    """
    if points_ledger.has_entry(order.id, LEDGER_EARNED):
        return 0

    config = get_rewards_config(order.seller_id)
    tiers = list_tiers(order.seller_id) if config else []
    quote = calculate_points(config, tiers, order.total_cents)
    if quote.points <= 0:
        return 0

    points_ledger.credit_points(
        user_id=order.buyer_id,
        seller_id=order.seller_id,
        points=quote.points,
        transaction_type=LEDGER_EARNED,
        order_id=order.id,
        description=f"Purchase reward for order #{order.id} ({quote.tier_name or 'Base'})",
    )
    emit_notification(
        user_id=order.buyer_id,
        notification_type=NOTIFY_POINTS_EARNED,
        title="Points earned",
        message=f"You earned {quote.points} points on order #{order.id}.",
        order_id=order.id,
    )
    return quote.points


def preview_points(buyer_id: str, seller_id: str) -> dict:
    """Points the buyer's current cart for this seller would earn at today's prices."""
    _cart, items = get_cart_items(buyer_id, seller_id)
    product_ids = [item.product_id for item in items]
    products = {}
    if product_ids:
        products = {p.id: p for p in db.session.query(Product).filter(Product.id.in_(product_ids)).all()}

    total_cents = 0
    for item in items:
        product = products.get(item.product_id)
        price = product.price_cents if product else item.price_cents
        total_cents += price * item.qty

    config = get_rewards_config(seller_id)
    tiers = list_tiers(seller_id) if config else []
    quote = calculate_points(config, tiers, total_cents)
    return {
        "seller_id": seller_id,
        "cart_total_cents": total_cents,
        "is_active": bool(config and config.is_active),
        "minimum_purchase_cents": config.minimum_purchase_cents if config else None,
        **quote.to_dict(),
    }


# =============================================================================
# REDEMPTION
# =============================================================================

def _existing_redemption(order_id: int) -> Redemption | None:
    return db.session.query(Redemption).filter_by(order_id=order_id).first()


def get_redemption(order_id: int) -> Redemption | None:
    return _existing_redemption(order_id)


def get_redemption_eligibility(order_id: int, seller_id: str) -> dict:
    """
    Read-only view of what the order's buyer could redeem right now.

    `reason` is None when can_redeem is True, otherwise one of
    rewards_inactive, order_not_eligible, already_redeemed, no_points,
    order_too_small.
    """
    order = db.session.query(Order).filter_by(id=order_id).first()
    if not order:
        raise OrderNotFound(f"Order {order_id} not found", details={"order_id": order_id})
    if order.seller_id != seller_id:
        raise OrderNotEligible("Order belongs to a different seller", details={"order_id": order_id})

    config = get_rewards_config(seller_id)
    available = points_ledger.get_balance(order.buyer_id, seller_id)
    existing = _existing_redemption(order.id)

    result = {
        "order_id": order.id,
        "can_redeem": False,
        "available_points": available,
        "max_points_usable": 0,
        "max_discount_cents": 0,
        "point_value_cents": None,
        "order_total_cents": order.total_cents,
        "reason": None,
        "existing_redemption": existing.to_dict() if existing else None,
    }

    if not config or not config.is_active:
        result["reason"] = "rewards_inactive"
        return result

    value = point_value_cents(config)
    max_discount = max_discount_cents(config, order.total_cents)
    max_points = min(available, max_discount // value)
    result.update({
        "point_value_cents": value,
        "max_discount_cents": max_points * value,
        "max_points_usable": max_points,
    })

    if order.status not in REDEEMABLE_ORDER_STATUSES:
        result["reason"] = "order_not_eligible"
    elif existing:
        result["reason"] = "already_redeemed"
    elif available <= 0:
        result["reason"] = "no_points"
    elif max_points <= 0:
        result["reason"] = "order_too_small"
    else:
        result["can_redeem"] = True
    return result


def redeem_points(order_id: int, seller_id: str, points_to_use: int, *, now=None) -> dict:
    """
    Apply points as a discount on an open order.

    Single transaction: Redemption row, order total decrease, balance debit,
    `spent` ledger entry and buyer notification. Any failure leaves all of
    them untouched.

    Raises:
        InvalidRequest, OrderNotFound, OrderNotEligible, RewardsInactive,
        AlreadyRedeemed, InsufficientPoints, DiscountExceedsOrder
    """
    if isinstance(points_to_use, bool) or not isinstance(points_to_use, int) or points_to_use <= 0:
        raise InvalidRequest("points_to_use must be a positive integer", details={"points_to_use": points_to_use})

    def _op():
        begin_write()
        applied_at = now or utcnow()

        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if not order:
            raise OrderNotFound(f"Order {order_id} not found", details={"order_id": order_id})
        if order.seller_id != seller_id:
            raise OrderNotEligible("Order belongs to a different seller", details={"order_id": order_id})
        if order.status not in REDEEMABLE_ORDER_STATUSES:
            raise OrderNotEligible(
                f"Cannot redeem points on a {order.status} order",
                details={"order_id": order_id, "status": order.status},
            )

        config = get_rewards_config(seller_id)
        if not config or not config.is_active:
            raise RewardsInactive("Rewards program is not active for this seller", details={"seller_id": seller_id})

        if _existing_redemption(order.id):
            raise AlreadyRedeemed("Points were already redeemed on this order", details={"order_id": order_id})

        available = points_ledger.get_balance(order.buyer_id, seller_id)
        if available < points_to_use:
            raise InsufficientPoints(
                "Insufficient points",
                details={"requested": points_to_use, "available": available},
            )

        value = point_value_cents(config)
        discount = points_to_use * value
        seen_total = order.total_cents
        if discount >= seen_total or discount > max_discount_cents(config, seen_total):
            raise DiscountExceedsOrder(
                "Discount exceeds the allowed share of the order total",
                details={
                    "discount_cents": discount,
                    "order_total_cents": seen_total,
                    "max_discount_cents": max_discount_cents(config, seen_total),
                },
            )

        redemption = Redemption(
            user_id=order.buyer_id,
            seller_id=seller_id,
            order_id=order.id,
            points_used=points_to_use,
            discount_cents=discount,
            status=REDEMPTION_APPLIED,
            applied_at=applied_at,
        )
        try:
            with db.session.begin_nested():
                db.session.add(redemption)
        except IntegrityError:
            if _existing_redemption(order.id):
                raise AlreadyRedeemed("Points were already redeemed on this order", details={"order_id": order_id})
            raise

        new_total = seen_total - discount
        if not compare_and_set(
            order,
            {"total_cents": seen_total, "status": REDEEMABLE_ORDER_STATUSES},
            total_cents=new_total,
        ):
            if order.status not in REDEEMABLE_ORDER_STATUSES:
                raise OrderNotEligible("Order changed state during redemption", details={"order_id": order_id})
            raise ConcurrentModification("Order total changed during redemption", details={"order_id": order_id})

        _entry, balance = points_ledger.debit_points(
            user_id=order.buyer_id,
            seller_id=seller_id,
            points=points_to_use,
            order_id=order.id,
            description=f"Redeemed on order #{order.id}",
        )
        emit_notification(
            user_id=order.buyer_id,
            notification_type=NOTIFY_POINTS_REDEEMED,
            title="Points redeemed",
            message=f"{points_to_use} points took {discount} cents off order #{order.id}.",
            order_id=order.id,
        )

        db.session.commit()
        return {
            "redemption_id": redemption.id,
            "order_id": order_id,
            "points_used": points_to_use,
            "discount_cents": discount,
            "new_total_cents": new_total,
            "new_balance": balance.points,
        }

    return run_with_retry(_op)


def reverse_redemption(order_id: int, reason: str, *, now=None) -> Redemption | None:
    """
    Undo an applied redemption: refund its points and restore the order total.

    Runs inside the caller's transaction (the expiration sweep). Returns
    None when there is nothing applied to reverse.
    """
    redemption = (
        db.session.query(Redemption)
        .filter_by(order_id=order_id, status=REDEMPTION_APPLIED)
        .first()
    )
    if not redemption:
        return None

    reversed_ok = compare_and_set(
        redemption,
        {"status": REDEMPTION_APPLIED},
        status=REDEMPTION_REVERSED,
        reversed_at=now or utcnow(),
        reversal_reason=reason,
    )
    if not reversed_ok:
        return None

    order = db.session.query(Order).filter_by(id=order_id).first()
    if order:
        compare_and_set(order, {}, total_cents=Order.total_cents + redemption.discount_cents)

    points_ledger.credit_points(
        user_id=redemption.user_id,
        seller_id=redemption.seller_id,
        points=redemption.points_used,
        transaction_type=LEDGER_REFUNDED,
        order_id=order_id,
        description=f"Refund for order #{order_id}: {reason}",
    )
    return redemption


# =============================================================================
# BALANCE & HISTORY
# =============================================================================

def get_points_balance(user_id: str, seller_id: str) -> dict:
    balance = (
        db.session.query(PointsBalance)
        .filter_by(user_id=user_id, seller_id=seller_id)
        .first()
    )
    if not balance:
        return {
            "user_id": user_id,
            "seller_id": seller_id,
            "points": 0,
            "lifetime_earned": 0,
            "lifetime_spent": 0,
            "updated_at": None,
        }
    return balance.to_dict()


def get_points_history(user_id: str, seller_id: str | None = None, *, limit: int = 50, offset: int = 0) -> list[dict]:
    if limit <= 0 or limit > 500:
        raise InvalidRequest("limit must be between 1 and 500")
    if offset < 0:
        raise InvalidRequest("offset cannot be negative")
    entries = points_ledger.list_entries(user_id, seller_id, limit=limit, offset=offset)
    return [entry.to_dict() for entry in entries]


def verify_balance(user_id: str, seller_id: str) -> dict:
    """Audit: compare the stored balance with the sum of the ledger."""
    ledger_points = points_ledger.ledger_total(user_id, seller_id)
    stored_points = points_ledger.get_balance(user_id, seller_id)
    return {
        "user_id": user_id,
        "seller_id": seller_id,
        "ledger_points": ledger_points,
        "balance_points": stored_points,
        "matches": ledger_points == stored_points,
    }
