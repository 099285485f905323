# Overview: Domain error kinds shared by the order, payment and loyalty services.

from __future__ import annotations


class MarketplaceError(Exception):
    """
    Base class for every domain error.

    `code` is stable and safe to return to API clients; `details` carries
    structured context (ids, amounts) for the caller.
    """
    code = "marketplace_error"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": str(self), "code": self.code, "details": self.details}


class InvalidRequest(MarketplaceError):
    """Malformed or out-of-range input."""
    code = "invalid_request"


class EmptyCart(MarketplaceError):
    code = "empty_cart"


class ProductUnavailable(MarketplaceError):
    """A cart line references an inactive, out-of-stock or foreign product."""
    code = "product_unavailable"


class OrderNotFound(MarketplaceError):
    code = "order_not_found"


class PaymentNotFound(MarketplaceError):
    code = "payment_not_found"


class NotificationNotFound(MarketplaceError):
    code = "notification_not_found"


class PermissionDenied(MarketplaceError):
    """Caller is not the party allowed to perform the transition."""
    code = "permission_denied"


class OrderNotEligible(MarketplaceError):
    """Order state does not allow the requested transition."""
    code = "order_not_eligible"


class InvalidAttachment(MarketplaceError):
    code = "invalid_attachment"


class InsufficientPoints(MarketplaceError):
    code = "insufficient_points"


class DiscountExceedsOrder(MarketplaceError):
    code = "discount_exceeds_order"


class AlreadyRedeemed(MarketplaceError):
    code = "already_redeemed"


class RewardsInactive(MarketplaceError):
    code = "rewards_inactive"


class ConcurrentModification(MarketplaceError):
    """A conditional update lost its race and the row is in no settled state."""
    code = "concurrent_modification"


NOT_FOUND_ERRORS = (OrderNotFound, PaymentNotFound, NotificationNotFound)
CONFLICT_ERRORS = (
    OrderNotEligible,
    AlreadyRedeemed,
    InsufficientPoints,
    ConcurrentModification,
    EmptyCart,
)


def http_status_for(exc: MarketplaceError) -> int:
    """Map an error kind to the HTTP status used by the API layer."""
    if isinstance(exc, NOT_FOUND_ERRORS):
        return 404
    if isinstance(exc, PermissionDenied):
        return 403
    if isinstance(exc, CONFLICT_ERRORS):
        return 409
    return 400
