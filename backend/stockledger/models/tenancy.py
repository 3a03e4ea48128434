from __future__ import annotations

from ..extensions import db
from ..quantities import from_milli
from ..time_utils import to_utc_z


class Store(db.Model):
    """
    Store owned by a tenant.

    MULTI-TENANT: owner_id is the tenant boundary. Store codes are unique per
    owner, not globally; every stock call resolves a store by (code, owner).
    """
    __tablename__ = "stores"
    __table_args__ = (
        db.UniqueConstraint("owner_id", "code", name="uq_stores_owner_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, nullable=False, index=True)
    code = db.Column(db.String(32), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Store id={self.id} code={self.code!r} owner_id={self.owner_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "code": self.code,
            "name": self.name,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class Warehouse(db.Model):
    __tablename__ = "warehouses"
    __table_args__ = (
        db.Index("ix_warehouses_store_active", "store_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    owner_id = db.Column(db.Integer, nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    address = db.Column(db.String(255), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    store = db.relationship("Store", backref=db.backref("warehouses", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "name": self.name,
            "address": self.address,
            "is_active": self.is_active,
        }


class Supplier(db.Model):
    __tablename__ = "suppliers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    contact_info = db.Column(db.String(255), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "contact_info": self.contact_info,
        }


class Ingredient(db.Model):
    """
    Ingredient master data, scoped to a store.

    average_cost_cents and stock_quantity_milli are the ingredient's own
    rollup across all of its batches. They are informational: the
    authoritative per-lot figures live on StockBalance.
    """
    __tablename__ = "ingredients"
    __table_args__ = (
        db.Index("ix_ingredients_store_name", "store_id", "name"),
        db.Index("ix_ingredients_store_active", "store_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    owner_id = db.Column(db.Integer, nullable=False, index=True)
    # Default warehouse the ingredient is kept in
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=True)

    name = db.Column(db.String(255), nullable=False)
    ingredient_code = db.Column(db.String(64), nullable=True)
    category = db.Column(db.String(64), nullable=True)
    unit = db.Column(db.String(20), nullable=False)

    # Reorder thresholds in thousandths of the unit
    min_stock_milli = db.Column(db.BigInteger, nullable=True)
    max_stock_milli = db.Column(db.BigInteger, nullable=True)

    average_cost_cents = db.Column(db.Integer, nullable=True)
    stock_quantity_milli = db.Column(db.BigInteger, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    store = db.relationship("Store", backref=db.backref("ingredients", lazy=True))

    def __repr__(self) -> str:
        return f"<Ingredient id={self.id} name={self.name!r} store_id={self.store_id}>"

    @property
    def min_stock(self):
        return from_milli(self.min_stock_milli)

    @property
    def max_stock(self):
        return from_milli(self.max_stock_milli)

    @property
    def stock_quantity(self):
        return from_milli(self.stock_quantity_milli)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "warehouse_id": self.warehouse_id,
            "name": self.name,
            "ingredient_code": self.ingredient_code,
            "category": self.category,
            "unit": self.unit,
            "min_stock": _str_or_none(self.min_stock),
            "max_stock": _str_or_none(self.max_stock),
            "average_cost_cents": self.average_cost_cents,
            "stock_quantity": _str_or_none(self.stock_quantity),
            "is_active": self.is_active,
        }


def _str_or_none(value):
    return str(value) if value is not None else None
