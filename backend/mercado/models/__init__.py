from .catalog import Product, Cart, CartItem
from .orders import Order, OrderItem, Payment
from .rewards import RewardsConfig, RewardTier, PointsLedgerEntry, PointsBalance, Redemption
from .notifications import Notification

__all__ = [
    'Product', 'Cart', 'CartItem',
    'Order', 'OrderItem', 'Payment',
    'RewardsConfig', 'RewardTier', 'PointsLedgerEntry', 'PointsBalance', 'Redemption',
    'Notification',
]
