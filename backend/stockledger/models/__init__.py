from .tenancy import Store, Warehouse, Supplier, Ingredient
from .stock import StockTransaction, StockBalance, TRANSACTION_TYPES, TEMPERATURE_CONDITIONS

__all__ = [
    'Store', 'Warehouse', 'Supplier', 'Ingredient',
    'StockTransaction', 'StockBalance',
    'TRANSACTION_TYPES', 'TEMPERATURE_CONDITIONS',
]
