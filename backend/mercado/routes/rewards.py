# Overview: Flask API routes for seller loyalty programs and buyer point balances.

# backend/mercado/routes/rewards.py
"""
Rewards API Routes

DESIGN:
- Sellers configure their own program (rates, minimum purchase, tiers)
- Buyers read balance, history and a preview of points for their cart
- Points are never credited or spent here; that happens through payment
  approval and order redemption

SECURITY:
- Config and tier writes apply to the caller's own seller id
"""

from decimal import Decimal, InvalidOperation

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_actor
from ..services import loyalty_service
from ..services.errors import InvalidRequest, MarketplaceError, http_status_for


rewards_bp = Blueprint("rewards", __name__, url_prefix="/api/rewards")


def _decimal_or_none(data: dict, key: str):
    value = data.get(key)
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise InvalidRequest(f"{key} must be a number", details={key: value})


def _int_or_none(data: dict, key: str):
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidRequest(f"{key} must be an integer", details={key: value})
    return value


# =============================================================================
# SELLER CONFIGURATION
# =============================================================================

@rewards_bp.get("/config")
@require_actor
def get_config_route():
    """The caller's program config as seller (null if never configured)."""
    config = loyalty_service.get_rewards_config(g.actor_id)
    return jsonify({"config": config.to_dict() if config else None}), 200


@rewards_bp.put("/config")
@require_actor
def update_config_route():
    """
    Create or update the caller's rewards program.

    Request body (all optional):
    {
        "is_active": true,
        "points_per_peso": "0.0286",
        "minimum_purchase_cents": 500000,
        "point_value_cents": 35,            (null clears the override)
        "max_redemption_ratio": "0.5"
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        is_active = data.get("is_active")
        if is_active is not None and not isinstance(is_active, bool):
            return jsonify({"error": "is_active must be true or false"}), 400

        config = loyalty_service.configure_rewards(
            g.actor_id,
            is_active=is_active,
            points_per_peso=_decimal_or_none(data, "points_per_peso"),
            minimum_purchase_cents=_int_or_none(data, "minimum_purchase_cents"),
            point_value_cents=_int_or_none(data, "point_value_cents"),
            max_redemption_ratio=_decimal_or_none(data, "max_redemption_ratio"),
            clear_point_value="point_value_cents" in data and data["point_value_cents"] is None,
        )
        return jsonify({"config": config.to_dict()}), 200

    except MarketplaceError as e:
        return jsonify(e.to_dict()), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to update rewards config")
        return jsonify({"error": "Internal server error"}), 500


@rewards_bp.get("/tiers")
@require_actor
def list_tiers_route():
    """
    Tiers of a seller's program.

    Query params:
    - seller_id: defaults to the caller
    - include_inactive: true to include disabled tiers
    """
    seller_id = request.args.get("seller_id") or g.actor_id
    include_inactive = request.args.get("include_inactive", "false").lower() == "true"
    tiers = loyalty_service.list_tiers(seller_id, include_inactive=include_inactive)
    return jsonify({"tiers": [t.to_dict() for t in tiers]}), 200


@rewards_bp.post("/tiers")
@require_actor
def upsert_tier_route():
    """
    Create or update one of the caller's tiers (matched by name).

    Request body:
    {
        "tier_name": "Plata",
        "minimum_purchase_cents": 1000000,
        "points_multiplier": "1.2",
        "description": "...",              (optional)
        "is_active": true                   (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        minimum = _int_or_none(data, "minimum_purchase_cents")
        if minimum is None:
            return jsonify({"error": "minimum_purchase_cents required"}), 400
        multiplier = _decimal_or_none(data, "points_multiplier")
        is_active = data.get("is_active", True)
        if not isinstance(is_active, bool):
            return jsonify({"error": "is_active must be true or false"}), 400

        tier = loyalty_service.upsert_tier(
            g.actor_id,
            data.get("tier_name"),
            minimum_purchase_cents=minimum,
            points_multiplier=multiplier if multiplier is not None else Decimal("1.0"),
            description=data.get("description"),
            is_active=is_active,
        )
        return jsonify({"tier": tier.to_dict()}), 200

    except MarketplaceError as e:
        return jsonify(e.to_dict()), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to save reward tier")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# BUYER VIEWS
# =============================================================================

@rewards_bp.get("/balance/<seller_id>")
@require_actor
def balance_route(seller_id: str):
    return jsonify({"balance": loyalty_service.get_points_balance(g.actor_id, seller_id)}), 200


@rewards_bp.get("/history")
@require_actor
def history_route():
    """
    The caller's points ledger, newest first.

    Query params:
    - seller_id: optional filter
    - limit: default 50 (max 500)
    - offset: default 0
    """
    try:
        history = loyalty_service.get_points_history(
            g.actor_id,
            request.args.get("seller_id") or None,
            limit=request.args.get("limit", 50, type=int),
            offset=request.args.get("offset", 0, type=int),
        )
        return jsonify({"history": history}), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), http_status_for(e)


@rewards_bp.get("/preview/<seller_id>")
@require_actor
def preview_route(seller_id: str):
    """Points the caller's current cart for this seller would earn."""
    return jsonify(loyalty_service.preview_points(g.actor_id, seller_id)), 200
