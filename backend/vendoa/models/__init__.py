from .catalog import Product, StockMovement
from .customers import Customer, CreditTransaction
from .sales import Sale, SaleItem
from .auth import User, SessionToken

__all__ = [
    'Product', 'StockMovement',
    'Customer', 'CreditTransaction',
    'Sale', 'SaleItem',
    'User', 'SessionToken',
]
