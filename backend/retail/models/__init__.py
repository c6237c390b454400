from .catalog import Product
from .auth import User, SessionToken
from .orders import Cart, CartItem, Order, OrderItem
from .returns import Return, ReturnItem, Refund
from .ledger import StockAdjustment, StoreCreditEntry, EventOutbox

__all__ = [
    'Product',
    'User', 'SessionToken',
    'Cart', 'CartItem', 'Order', 'OrderItem',
    'Return', 'ReturnItem', 'Refund',
    'StockAdjustment', 'StoreCreditEntry', 'EventOutbox',
]
