# Overview: Flask API routes for payment review; sellers approve or reject uploaded receipts.

# backend/mercado/routes/payments.py
"""
Payment Review API Routes

DESIGN:
- Sellers list receipts waiting for review (oldest first)
- Sellers approve (order confirmed, points credited) or reject with a reason
- Repeating a decision returns the settled state

SECURITY:
- Only the order's seller can review its payment
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_actor
from ..services import payment_service
from ..services.errors import MarketplaceError, PermissionDenied, http_status_for


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


@payments_bp.get("/pending")
@require_actor
def list_pending_route():
    """Payments awaiting the caller's review as seller."""
    limit = min(request.args.get("limit", 100, type=int), 500)
    payments = payment_service.list_pending_reviews(g.actor_id, limit=limit)
    return jsonify({"payments": [p.to_dict() for p in payments]}), 200


@payments_bp.get("/<int:payment_id>")
@require_actor
def get_payment_route(payment_id: int):
    try:
        payment = payment_service.get_payment(payment_id)
        order = payment.order
        if g.actor_id not in (order.buyer_id, order.seller_id):
            raise PermissionDenied("Not a participant of this order", details={"payment_id": payment_id})
        return jsonify({"payment": payment.to_dict()}), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), http_status_for(e)


@payments_bp.post("/<int:payment_id>/validate")
@require_actor
def validate_payment_route(payment_id: int):
    """
    Approve or reject a payment.

    Request body:
    {
        "approved": true,
        "rejection_reason": "Amount does not match"   (optional, used when rejecting)
    }

    Returns:
        200: {"payment_id", "order_id", "payment_status", "order_status", "points_awarded"}
        400: Invalid input
        403: Not the order's seller
        404: Payment not found
        409: Not reviewable (order cancelled, nothing uploaded)
    """
    try:
        data = request.get_json(silent=True) or {}
        approved = data.get("approved")
        if not isinstance(approved, bool):
            return jsonify({"error": "approved (true/false) required"}), 400

        result = payment_service.validate_receipt(
            payment_id,
            g.actor_id,
            approved,
            rejection_reason=data.get("rejection_reason"),
        )
        return jsonify(result), 200

    except MarketplaceError as e:
        return jsonify(e.to_dict()), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to validate payment")
        return jsonify({"error": "Internal server error"}), 500
