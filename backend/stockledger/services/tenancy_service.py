# Overview: Ownership resolution for stock calls; every lookup is scoped to the acting owner.

from __future__ import annotations

from dataclasses import dataclass

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import Ingredient, Store, Supplier, Warehouse


@dataclass(frozen=True)
class StockContext:
    """The already-authorized records a stock operation runs against."""
    store: Store
    ingredient: Ingredient
    warehouse: Warehouse

    @property
    def owner_id(self) -> int:
        return self.store.owner_id


def parse_id(value, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", code=f"invalid_{field}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", code=f"invalid_{field}")


def resolve_store(store_code: str, owner_id: int) -> Store:
    if not store_code:
        raise ValidationError("store_code is required", code="store_code_is_required")
    store = db.session.query(Store).filter_by(
        code=store_code,
        owner_id=owner_id,
        is_active=True,
    ).first()
    if store is None:
        raise NotFoundError(f"Store {store_code!r} not found", code="store_not_found")
    return store


def resolve_ingredient(store: Store, ingredient_id) -> Ingredient:
    ingredient_id = parse_id(ingredient_id, "ingredient_id")
    ingredient = db.session.query(Ingredient).filter_by(
        id=ingredient_id,
        store_id=store.id,
        owner_id=store.owner_id,
        is_active=True,
    ).first()
    if ingredient is None:
        raise NotFoundError(f"Ingredient {ingredient_id} not found", code="ingredient_not_found")
    return ingredient


def resolve_warehouse(store: Store, warehouse_id) -> Warehouse:
    warehouse_id = parse_id(warehouse_id, "warehouse_id")
    warehouse = db.session.query(Warehouse).filter_by(
        id=warehouse_id,
        store_id=store.id,
        owner_id=store.owner_id,
        is_active=True,
    ).first()
    if warehouse is None:
        raise NotFoundError(f"Warehouse {warehouse_id} not found", code="warehouse_not_found")
    return warehouse


def resolve_supplier(owner_id: int, supplier_id) -> Supplier | None:
    if supplier_id is None:
        return None
    supplier_id = parse_id(supplier_id, "supplier_id")
    supplier = db.session.query(Supplier).filter_by(
        id=supplier_id,
        owner_id=owner_id,
        is_active=True,
    ).first()
    if supplier is None:
        raise NotFoundError(f"Supplier {supplier_id} not found", code="supplier_not_found")
    return supplier


def resolve_stock_context(
    *,
    store_code: str,
    owner_id: int,
    ingredient_id,
    warehouse_id,
) -> StockContext:
    store = resolve_store(store_code, owner_id)
    ingredient = resolve_ingredient(store, ingredient_id)
    warehouse = resolve_warehouse(store, warehouse_id)
    return StockContext(store=store, ingredient=ingredient, warehouse=warehouse)
