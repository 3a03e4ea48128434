# Overview: Read-only stock reports over balances and the ledger; never writes.

from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import func

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import Ingredient, StockBalance, StockTransaction, TRANSACTION_TYPES, Warehouse
from ..quantities import from_milli, to_milli
from ..time_utils import coerce_datetime, to_utc_z, utcnow
from .balance_service import active_balances, fifo_order
from .ledger_service import active_transactions
from .tenancy_service import parse_id, resolve_ingredient, resolve_store, resolve_warehouse


def _dec_str(value):
    return str(value) if value is not None else None


def _optional_id(value, field: str) -> int | None:
    if value is None or value == "":
        return None
    return parse_id(value, field)


def _low_stock_threshold():
    return func.coalesce(StockBalance.min_stock_milli, Ingredient.min_stock_milli, 0)


def _expiring_filter(query, now: datetime, days: int):
    return query.filter(
        StockBalance.quantity_milli > 0,
        StockBalance.expiration_date.isnot(None),
        StockBalance.expiration_date > now,
        StockBalance.expiration_date <= now + timedelta(days=days),
    )


def _expired_filter(query, now: datetime):
    return query.filter(
        StockBalance.quantity_milli > 0,
        StockBalance.expiration_date.isnot(None),
        StockBalance.expiration_date <= now,
    )


def _warning_days(days) -> int:
    if days is None or days == "":
        return int(current_app.config.get("EXPIRY_WARNING_DAYS", 7))
    days = parse_id(days, "days")
    if days < 1:
        raise ValidationError("days must be at least 1", code="invalid_days")
    return days


def get_stock_balance(
    *,
    store_code: str,
    owner_id: int,
    ingredient_id,
    warehouse_id,
    batch_number: str | None = None,
) -> dict:
    """All active rows for the key prefix, FIFO ordered, with their total."""
    store = resolve_store(store_code, owner_id)
    ingredient = resolve_ingredient(store, ingredient_id)
    warehouse = resolve_warehouse(store, warehouse_id)

    q = active_balances().filter(
        StockBalance.ingredient_id == ingredient.id,
        StockBalance.store_id == store.id,
        StockBalance.warehouse_id == warehouse.id,
    )
    if batch_number:
        q = q.filter(StockBalance.batch_number == batch_number)
    balances = fifo_order(q).all()

    if not balances:
        raise NotFoundError("Stock balance not found", code="stock_balance_not_found")

    total_milli = sum(b.quantity_milli for b in balances)
    return {
        "ingredient": ingredient.to_dict(),
        "warehouse": warehouse.to_dict(),
        "balances": [b.to_dict() for b in balances],
        "total_quantity": str(from_milli(total_milli)),
    }


def get_all_balances(
    *,
    store_code: str,
    owner_id: int,
    warehouse_id=None,
    low_stock: bool = False,
    expiring: bool = False,
    expired: bool = False,
    now: datetime | None = None,
) -> dict:
    """
    Active rows holding stock for a store, ordered by ingredient name then
    expiration. The flags narrow the list to the matching report predicate.
    """
    store = resolve_store(store_code, owner_id)
    now = now or utcnow()

    q = active_balances().join(Ingredient, Ingredient.id == StockBalance.ingredient_id).filter(
        StockBalance.store_id == store.id,
        StockBalance.owner_id == store.owner_id,
        StockBalance.quantity_milli > 0,
    )

    warehouse_id = _optional_id(warehouse_id, "warehouse_id")
    if warehouse_id is not None:
        q = q.filter(StockBalance.warehouse_id == warehouse_id)

    if low_stock:
        q = q.filter(StockBalance.quantity_milli <= _low_stock_threshold())
    if expiring:
        q = _expiring_filter(q, now, int(current_app.config.get("EXPIRY_WARNING_DAYS", 7)))
    if expired:
        q = _expired_filter(q, now)

    balances = q.order_by(
        Ingredient.name.asc(),
        StockBalance.expiration_date.is_(None),
        StockBalance.expiration_date.asc(),
        StockBalance.id.asc(),
    ).all()

    return {
        "balances": [b.to_dict() for b in balances],
        "count": len(balances),
    }


def get_transaction_history(
    *,
    store_code: str,
    owner_id: int,
    ingredient_id=None,
    warehouse_id=None,
    type: str | None = None,
    start_date=None,
    end_date=None,
    batch_number: str | None = None,
    page=1,
    limit=None,
) -> dict:
    """
    Paginated ledger for a store, newest first.

    Date bounds are inclusive. limit defaults to HISTORY_PAGE_SIZE and is
    capped by HISTORY_MAX_PAGE_SIZE.
    """
    store = resolve_store(store_code, owner_id)

    page = parse_id(page, "page")
    if page < 1:
        raise ValidationError("page must be at least 1", code="invalid_page")

    max_limit = int(current_app.config.get("HISTORY_MAX_PAGE_SIZE", 200))
    if limit is None or limit == "":
        limit = int(current_app.config.get("HISTORY_PAGE_SIZE", 20))
    limit = parse_id(limit, "limit")
    if limit < 1 or limit > max_limit:
        raise ValidationError(f"limit must be between 1 and {max_limit}", code="invalid_limit")

    q = active_transactions().filter(
        StockTransaction.store_id == store.id,
        StockTransaction.owner_id == store.owner_id,
    )

    ingredient_id = _optional_id(ingredient_id, "ingredient_id")
    if ingredient_id is not None:
        q = q.filter(StockTransaction.ingredient_id == ingredient_id)

    warehouse_id = _optional_id(warehouse_id, "warehouse_id")
    if warehouse_id is not None:
        q = q.filter(StockTransaction.warehouse_id == warehouse_id)

    if type:
        if type not in TRANSACTION_TYPES:
            raise ValidationError(f"Invalid transaction type: {type}", code="invalid_transaction_type")
        q = q.filter(StockTransaction.type == type)

    if batch_number:
        q = q.filter(StockTransaction.batch_number == batch_number)

    start_dt = coerce_datetime(start_date or None, field="start_date")
    end_dt = coerce_datetime(end_date or None, field="end_date")
    if start_dt is not None:
        q = q.filter(StockTransaction.occurred_at >= start_dt)
    if end_dt is not None:
        q = q.filter(StockTransaction.occurred_at <= end_dt)

    total_count = q.count()
    transactions = (
        q.order_by(StockTransaction.occurred_at.desc(), StockTransaction.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )

    return {
        "transactions": [tx.to_dict() for tx in transactions],
        "pagination": {
            "page": page,
            "limit": limit,
            "total_count": total_count,
            "total_pages": (total_count + limit - 1) // limit,
        },
    }


def get_low_stock_report(*, store_code: str, owner_id: int, warehouse_id=None) -> dict:
    """
    Active rows at or below their reorder threshold.

    The threshold is the row's own min_stock, else the ingredient's, else 0,
    so an emptied row with no threshold still shows up.
    """
    store = resolve_store(store_code, owner_id)
    threshold = _low_stock_threshold()

    q = (
        db.session.query(StockBalance, Ingredient, Warehouse, threshold.label("threshold"))
        .join(Ingredient, Ingredient.id == StockBalance.ingredient_id)
        .join(Warehouse, Warehouse.id == StockBalance.warehouse_id)
        .filter(
            StockBalance.is_active.is_(True),
            StockBalance.store_id == store.id,
            StockBalance.owner_id == store.owner_id,
            StockBalance.quantity_milli <= threshold,
        )
    )

    warehouse_id = _optional_id(warehouse_id, "warehouse_id")
    if warehouse_id is not None:
        q = q.filter(StockBalance.warehouse_id == warehouse_id)

    rows = q.order_by(
        Ingredient.name.asc(),
        StockBalance.expiration_date.is_(None),
        StockBalance.expiration_date.asc(),
        StockBalance.id.asc(),
    ).all()

    items = [
        {
            "balance_id": balance.id,
            "ingredient_id": ingredient.id,
            "ingredient_name": ingredient.name,
            "ingredient_code": ingredient.ingredient_code,
            "category": ingredient.category,
            "current_stock": _dec_str(balance.quantity),
            "min_stock": _dec_str(from_milli(threshold_milli)),
            "unit": balance.unit,
            "warehouse_id": warehouse.id,
            "warehouse_name": warehouse.name,
            "batch_number": balance.batch_number,
            "expiration_date": to_utc_z(balance.expiration_date),
            "last_transaction_date": to_utc_z(balance.last_transaction_date),
        }
        for balance, ingredient, warehouse, threshold_milli in rows
    ]
    return {"low_stock_items": items, "count": len(items)}


def get_expiring_report(
    *,
    store_code: str,
    owner_id: int,
    warehouse_id=None,
    days=None,
    now: datetime | None = None,
) -> dict:
    """Rows with stock whose expiration falls within (now, now + days]."""
    store = resolve_store(store_code, owner_id)
    days = _warning_days(days)
    now = now or utcnow()

    q = _expiring_filter(
        active_balances().filter(
            StockBalance.store_id == store.id,
            StockBalance.owner_id == store.owner_id,
        ),
        now,
        days,
    )

    warehouse_id = _optional_id(warehouse_id, "warehouse_id")
    if warehouse_id is not None:
        q = q.filter(StockBalance.warehouse_id == warehouse_id)

    balances = q.order_by(StockBalance.expiration_date.asc(), StockBalance.id.asc()).all()
    return {
        "expiring_items": [b.to_dict() for b in balances],
        "count": len(balances),
        "warning_days": days,
    }


def get_expired_report(
    *,
    store_code: str,
    owner_id: int,
    warehouse_id=None,
    now: datetime | None = None,
) -> dict:
    """Rows with stock whose expiration is at or before now."""
    store = resolve_store(store_code, owner_id)
    now = now or utcnow()

    q = _expired_filter(
        active_balances().filter(
            StockBalance.store_id == store.id,
            StockBalance.owner_id == store.owner_id,
        ),
        now,
    )

    warehouse_id = _optional_id(warehouse_id, "warehouse_id")
    if warehouse_id is not None:
        q = q.filter(StockBalance.warehouse_id == warehouse_id)

    balances = q.order_by(StockBalance.expiration_date.asc(), StockBalance.id.asc()).all()
    return {
        "expired_items": [b.to_dict() for b in balances],
        "count": len(balances),
    }


def get_total_ingredient_stock(ingredient_id: int, store_id: int, owner_id: int):
    """Sum of all active positive rows of an ingredient across the store's warehouses."""
    total = (
        db.session.query(func.coalesce(func.sum(StockBalance.quantity_milli), 0))
        .filter(
            StockBalance.is_active.is_(True),
            StockBalance.ingredient_id == ingredient_id,
            StockBalance.store_id == store_id,
            StockBalance.owner_id == owner_id,
            StockBalance.quantity_milli > 0,
        )
        .scalar()
    )
    return from_milli(int(total))


def check_ingredient_availability(requirements: list[dict]) -> dict:
    """
    Compare required quantities against current totals.

    Each requirement is {ingredient_id, store_id, owner_id, quantity,
    ingredient_name?}. Nothing is reserved or written.
    """
    result = {"is_available": True, "details": [], "unavailable": []}

    for requirement in requirements:
        required_milli = to_milli(requirement.get("quantity"))
        available = get_total_ingredient_stock(
            parse_id(requirement.get("ingredient_id"), "ingredient_id"),
            parse_id(requirement.get("store_id"), "store_id"),
            parse_id(requirement.get("owner_id"), "owner_id"),
        )
        required = from_milli(required_milli)
        detail = {
            "ingredient_id": requirement.get("ingredient_id"),
            "ingredient_name": requirement.get("ingredient_name"),
            "required": str(required),
            "available": str(available),
            "sufficient": available >= required,
            "shortfall": str(max(required - available, from_milli(0))),
        }
        result["details"].append(detail)
        if not detail["sufficient"]:
            result["is_available"] = False
            result["unavailable"].append(detail)

    return result
