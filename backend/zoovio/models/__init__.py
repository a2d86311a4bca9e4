from .auth import User, SessionToken
from .orders import Order, OrderItem
from .payments import Payment
from .audit import AuditEntry

__all__ = [
    'User', 'SessionToken',
    'Order', 'OrderItem',
    'Payment',
    'AuditEntry',
]
