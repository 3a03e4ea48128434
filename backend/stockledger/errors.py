# backend/stockledger/errors.py
"""
Typed failures raised by the stock ledger services.

Every error carries a machine-readable ``code`` and the HTTP status the
request layer should answer with. Services raise these; they never log or
swallow them.
"""
from __future__ import annotations

from decimal import Decimal


class StockError(Exception):
    """Base class for all stock ledger failures."""

    code = "stock_error"
    status = 500

    def __init__(self, message: str | None = None, *, code: str | None = None):
        super().__init__(message or self.code)
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {"error": self.code, "message": str(self)}


class ValidationError(StockError, ValueError):
    """400-level input problem; raised before any write."""

    code = "validation_error"
    status = 400


class NotFoundError(StockError):
    """Store, ingredient, warehouse, supplier or balance absent."""

    code = "not_found"
    status = 404


class InsufficientStockError(StockError):
    """Requested quantity exceeds what the selected stock can supply."""

    code = "insufficient_stock"
    status = 409

    def __init__(self, available: Decimal, requested: Decimal, message: str | None = None):
        self.available = available
        self.requested = requested
        super().__init__(
            message or f"Insufficient stock. Available: {available}, Requested: {requested}"
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["available_stock"] = str(self.available)
        data["requested"] = str(self.requested)
        return data


class ConcurrentUpdateError(StockError):
    """A guarded balance update matched no row because another writer got there first."""

    code = "concurrent_update_conflict"
    status = 409

    def __init__(self, balance_id: int, message: str | None = None):
        self.balance_id = balance_id
        super().__init__(message or f"Balance {balance_id} changed concurrently")


class InfrastructureError(StockError):
    """Storage unavailable; the session was rolled back and nothing was kept."""

    code = "storage_unavailable"
    status = 503
