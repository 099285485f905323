# Overview: Notification sink; records notifications for external delivery, never failing the caller.

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Notification
from .errors import NotificationNotFound


# Notification.type
NOTIFY_ORDER_PLACED = "order_placed"
NOTIFY_NEW_ORDER = "new_order"
NOTIFY_RECEIPT_UPLOADED = "payment_receipt_uploaded"
NOTIFY_PAYMENT_CONFIRMED = "payment_confirmed"
NOTIFY_PAYMENT_REJECTED = "payment_rejected"
NOTIFY_ORDER_DELIVERED = "order_delivered"
NOTIFY_ORDER_COMPLETED = "order_completed"
NOTIFY_ORDER_EXPIRED = "order_expired"
NOTIFY_POINTS_EARNED = "points_earned"
NOTIFY_POINTS_REDEEMED = "points_redeemed"


def emit_notification(
    *,
    user_id: str,
    notification_type: str,
    title: str,
    message: str,
    order_id: int | None = None,
) -> Notification | None:
    """
    Record a notification inside the caller's transaction.

    Best-effort: the insert runs in a SAVEPOINT, so a failure is logged and
    rolled back on its own while the surrounding order/payment transaction
    carries on. Returns None when the notification was dropped.
    """
    try:
        with db.session.begin_nested():
            notification = Notification(
                user_id=user_id,
                type=notification_type,
                title=title,
                message=message,
                order_id=order_id,
            )
            db.session.add(notification)
        return notification
    except SQLAlchemyError:
        current_app.logger.warning(
            "Dropped %s notification for user %s (order %s)",
            notification_type, user_id, order_id,
            exc_info=True,
        )
        return None


def list_notifications(user_id: str, *, unread_only: bool = False, limit: int = 50) -> list[Notification]:
    query = db.session.query(Notification).filter_by(user_id=user_id)
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))
    return query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()


def mark_read(notification_id: int, user_id: str) -> Notification:
    notification = db.session.query(Notification).filter_by(id=notification_id, user_id=user_id).first()
    if not notification:
        raise NotificationNotFound("Notification not found", details={"notification_id": notification_id})
    if not notification.is_read:
        notification.is_read = True
        db.session.commit()
    return notification
