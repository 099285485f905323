# Overview: Flask API routes for orders; placement, fulfillment, receipts and points redemption.

# backend/mercado/routes/orders.py
"""
Order API Routes

DESIGN:
- Buyers place orders from their per-seller cart and upload payment receipts
- Sellers confirm delivery; buyers confirm receipt
- Buyers may redeem loyalty points on an open order
- Only the order's buyer or seller can see it

SECURITY:
- Caller identity comes from X-User-Id (set by the auth gateway)
- All state changes go through the service layer
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_actor
from ..services import loyalty_service, order_service, payment_service
from ..services.errors import MarketplaceError, PermissionDenied, http_status_for
from mercado.time_utils import to_utc_z


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _order_for_participant(order_id: int):
    order = order_service.get_order(order_id)
    if g.actor_id not in (order.buyer_id, order.seller_id):
        raise PermissionDenied("Not a participant of this order", details={"order_id": order_id})
    return order


# =============================================================================
# PLACEMENT & QUERIES
# =============================================================================

@orders_bp.post("")
@require_actor
def place_order_route():
    """
    Place an order from the caller's cart for one seller.

    Request body:
    {
        "seller_id": "seller-1",
        "payment_method": "transfer",       (cash | transfer)
        "delivery_address": "...",          (optional)
        "delivery_notes": "..."             (optional)
    }

    Returns:
        201: {"order_id", "total_cents", "expires_at"}
        400: Invalid input / product unavailable
        409: Empty cart
    """
    try:
        data = request.get_json(silent=True) or {}

        seller_id = data.get("seller_id")
        payment_method = data.get("payment_method")
        if not seller_id or not payment_method:
            return jsonify({"error": "seller_id and payment_method required"}), 400

        result = order_service.place_order(
            buyer_id=g.actor_id,
            seller_id=str(seller_id),
            payment_method=payment_method,
            delivery_address=data.get("delivery_address"),
            delivery_notes=data.get("delivery_notes"),
        )
        result["expires_at"] = to_utc_z(result["expires_at"])
        return jsonify(result), 201

    except MarketplaceError as e:
        return jsonify(e.to_dict()), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to place order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("")
@require_actor
def list_orders_route():
    """
    List the caller's orders.

    Query params:
    - role: buyer (default) or seller
    - status: optional order status filter
    - limit: default 50, max 200
    """
    role = request.args.get("role", "buyer")
    status = request.args.get("status") or None
    limit = min(request.args.get("limit", 50, type=int), 200)

    if role == "buyer":
        orders = order_service.list_orders_for_buyer(g.actor_id, status=status, limit=limit)
    elif role == "seller":
        orders = order_service.list_orders_for_seller(g.actor_id, status=status, limit=limit)
    else:
        return jsonify({"error": "role must be buyer or seller"}), 400

    return jsonify({"orders": [o.to_dict(include_items=False) for o in orders]}), 200


@orders_bp.get("/<int:order_id>")
@require_actor
def get_order_route(order_id: int):
    """Order detail with items, payment and redemption."""
    try:
        order = _order_for_participant(order_id)
        redemption = loyalty_service.get_redemption(order.id)
        data = order.to_dict()
        data["payment"] = order.payment.to_dict() if order.payment else None
        data["redemption"] = redemption.to_dict() if redemption else None
        return jsonify({"order": data}), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), http_status_for(e)


# =============================================================================
# PAYMENT RECEIPT
# =============================================================================

@orders_bp.post("/<int:order_id>/receipt")
@require_actor
def upload_receipt_route(order_id: int):
    """
    Upload a payment receipt reference for an order.

    Request body:
    {
        "receipt_ref": "https://files.example/receipts/abc.jpg",
        "transfer_metadata": {                (optional)
            "bank": "...",
            "account": "...",
            "declared_amount": "..."
        }
    }

    Returns:
        200: {"payment_id", "status"}
        400: Missing receipt
        403: Not the order's buyer
        404: Order not found
        409: Order not eligible (cancelled, expired, already paid)
    """
    try:
        data = request.get_json(silent=True) or {}
        result = payment_service.upload_receipt(
            order_id,
            data.get("receipt_ref"),
            transfer_metadata=data.get("transfer_metadata"),
            buyer_id=g.actor_id,
        )
        return jsonify(result), 200

    except MarketplaceError as e:
        return jsonify(e.to_dict()), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to upload receipt")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# FULFILLMENT
# =============================================================================

@orders_bp.post("/<int:order_id>/deliver")
@require_actor
def confirm_delivery_route(order_id: int):
    """Seller marks a payment-confirmed order as delivered."""
    try:
        order = order_service.confirm_delivery(order_id, g.actor_id)
        return jsonify({"order": order.to_dict(include_items=False)}), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to confirm delivery")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/receive")
@require_actor
def confirm_receipt_route(order_id: int):
    """Buyer confirms a delivered order arrived; completes the order."""
    try:
        order = order_service.confirm_receipt(order_id, g.actor_id)
        return jsonify({"order": order.to_dict(include_items=False)}), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to confirm receipt")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# POINTS REDEMPTION
# =============================================================================

@orders_bp.get("/<int:order_id>/redemption")
@require_actor
def redemption_eligibility_route(order_id: int):
    """How many points the order's buyer can redeem on this order."""
    try:
        order = _order_for_participant(order_id)
        eligibility = loyalty_service.get_redemption_eligibility(order.id, order.seller_id)
        return jsonify(eligibility), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), http_status_for(e)


@orders_bp.post("/<int:order_id>/redemption")
@require_actor
def redeem_points_route(order_id: int):
    """
    Redeem the caller's points on their own order.

    Request body:
    {
        "points": 100
    }

    Returns:
        200: {"redemption_id", "discount_cents", "new_total_cents", "new_balance", ...}
        400: Invalid points / discount too large / rewards inactive
        403: Not the order's buyer
        409: Already redeemed, insufficient points, order not eligible
    """
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.get_order(order_id)
        if order.buyer_id != g.actor_id:
            raise PermissionDenied("Only the buyer can redeem points on this order", details={"order_id": order_id})

        result = loyalty_service.redeem_points(order.id, order.seller_id, data.get("points"))
        return jsonify(result), 200

    except MarketplaceError as e:
        return jsonify(e.to_dict()), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to redeem points")
        return jsonify({"error": "Internal server error"}), 500
