# backend/mercado/routes/system.py
"""
System health and scheduler endpoints.

Health reports database connectivity plus the size of the expiration
backlog; the expire-orders endpoint is the HTTP entry point for an
external scheduler (the CLI command `flask orders expire` is the other).
"""

import time
from flask import Blueprint, current_app, jsonify, request

from ..extensions import db
from ..models import Order
from ..models.orders import ORDER_STATUS_PLACED, PAYMENT_STATUS_PENDING, PAYMENT_STATUS_PENDING_REVIEW
from ..decorators import require_cron_secret
from ..services import expiration_service
from mercado.time_utils import utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        order_count = db.session.query(Order).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "orders": order_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_expiration_health() -> dict:
    """
    Report orders waiting for the expiration sweep.

    A backlog means the scheduler is not running; the system still works,
    so this is reported as degraded rather than unhealthy.
    """
    start_time = time.time()
    try:
        now = utcnow()
        overdue = db.session.query(Order).filter(
            Order.status == ORDER_STATUS_PLACED,
            Order.payment_status == PAYMENT_STATUS_PENDING,
            Order.expires_at <= now,
        ).count()
        awaiting_review = db.session.query(Order).filter(
            Order.status == ORDER_STATUS_PLACED,
            Order.payment_status == PAYMENT_STATUS_PENDING_REVIEW,
        ).count()

        elapsed_ms = (time.time() - start_time) * 1000
        batch_size = current_app.config.get("EXPIRATION_SWEEP_BATCH_SIZE", 500)

        result = {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "overdue_orders": overdue,
                "awaiting_review": awaiting_review,
            }
        }
        if overdue > batch_size:
            result["status"] = "degraded"
            result["warning"] = f"{overdue} orders waiting for expiration"
        return result
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Expiration health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Expiration check error"
        }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: Healthy or degraded
    - 503: Database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    expiration_health = check_expiration_health()

    all_checks = [database_health, expiration_health]
    unhealthy_count = sum(1 for check in all_checks if check["status"] == "unhealthy")
    degraded_count = sum(1 for check in all_checks if check["status"] == "degraded")

    if unhealthy_count > 0:
        overall_status = "unhealthy"
        http_status = 503
    elif degraded_count > 0:
        overall_status = "degraded"
        http_status = 200  # Degraded is still operational
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "expiration": expiration_health,
        }
    }

    return response, http_status


@system_bp.post("/system/expire-orders")
@require_cron_secret
def expire_orders_route():
    """
    Run one expiration sweep.

    Request body (optional):
    {
        "limit": 500
    }

    Returns:
        200: {"cancelled": <count>}
        400: Invalid limit
        401/403: Missing or wrong cron secret
    """
    data = request.get_json(silent=True) or {}
    limit = data.get("limit")
    if limit is not None and (not isinstance(limit, int) or isinstance(limit, bool) or limit <= 0):
        return jsonify({"error": "limit must be a positive integer"}), 400

    try:
        cancelled = expiration_service.cancel_expired_orders(limit=limit)
        return jsonify({"cancelled": cancelled}), 200
    except Exception:
        current_app.logger.exception("Expiration sweep failed")
        return jsonify({"error": "Internal server error"}), 500
