# Overview: Flask API routes for reading the caller's notifications.

from flask import Blueprint, request, jsonify, g

from ..decorators import require_actor
from ..services import notification_service
from ..services.errors import MarketplaceError, http_status_for


notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")


@notifications_bp.get("")
@require_actor
def list_notifications_route():
    """
    Query params:
    - unread: true to return unread notifications only
    - limit: default 50 (max 200)
    """
    unread_only = request.args.get("unread", "false").lower() == "true"
    limit = min(request.args.get("limit", 50, type=int), 200)
    notifications = notification_service.list_notifications(g.actor_id, unread_only=unread_only, limit=limit)
    return jsonify({"notifications": [n.to_dict() for n in notifications]}), 200


@notifications_bp.post("/<int:notification_id>/read")
@require_actor
def mark_read_route(notification_id: int):
    try:
        notification = notification_service.mark_read(notification_id, g.actor_id)
        return jsonify({"notification": notification.to_dict()}), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), http_status_for(e)
