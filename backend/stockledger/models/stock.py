from __future__ import annotations

from ..extensions import db
from ..quantities import from_milli
from ..time_utils import to_utc_z

TRANSACTION_TYPES = ("in", "out", "adjustment", "transfer", "expired", "damaged")
TEMPERATURE_CONDITIONS = ("frozen", "refrigerated", "room_temp")


def _dec_str(value):
    return str(value) if value is not None else None


class StockTransaction(db.Model):
    """
    One stock movement. Append-only: rows are never updated or deleted.

    quantity_milli is signed (thousandths of `unit`): positive for stock
    arriving at the key, negative for stock leaving it. A reversal is a new
    compensating row, never an edit.
    """
    __tablename__ = "stock_transactions"
    __table_args__ = (
        db.Index("ix_stocktx_key", "ingredient_id", "store_id", "warehouse_id"),
        db.Index("ix_stocktx_store_occurred", "store_id", "occurred_at"),
        db.Index("ix_stocktx_owner_store", "owner_id", "store_id"),
        db.CheckConstraint("quantity_milli <> 0", name="ck_stocktx_nonzero_quantity"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    type = db.Column(db.String(16), nullable=False, index=True)

    ingredient_id = db.Column(db.Integer, db.ForeignKey("ingredients.id"), nullable=False)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False)

    quantity_milli = db.Column(db.BigInteger, nullable=False)
    unit = db.Column(db.String(20), nullable=False)

    batch_number = db.Column(db.String(100), nullable=True, index=True)
    expiration_date = db.Column(db.DateTime(timezone=True), nullable=True, index=True)

    cost_per_unit_cents = db.Column(db.Integer, nullable=True)
    # Frozen at write time: cost_per_unit_cents x |quantity|
    total_cost_cents = db.Column(db.BigInteger, nullable=True)

    # Stock take audit trail
    previous_quantity_milli = db.Column(db.BigInteger, nullable=True)
    new_quantity_milli = db.Column(db.BigInteger, nullable=True)

    user_id = db.Column(db.Integer, nullable=False)
    owner_id = db.Column(db.Integer, nullable=False)

    note = db.Column(db.String(500), nullable=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=True, index=True)
    reference_number = db.Column(db.String(100), nullable=True, index=True)
    recipe_id = db.Column(db.Integer, nullable=True, index=True)
    destination_warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=True)

    temperature_condition = db.Column(db.String(16), nullable=False, default="room_temp")
    quality_check_passed = db.Column(db.Boolean, nullable=False, default=True)
    quality_check_notes = db.Column(db.String(500), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    # Business time of the movement; replay order is (occurred_at, id)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    ingredient = db.relationship("Ingredient")
    warehouse = db.relationship("Warehouse", foreign_keys=[warehouse_id])

    def __repr__(self) -> str:
        return (
            f"<StockTransaction id={self.id} type={self.type} "
            f"ingredient_id={self.ingredient_id} quantity_milli={self.quantity_milli}>"
        )

    @property
    def quantity(self):
        return from_milli(self.quantity_milli)

    @property
    def previous_quantity(self):
        return from_milli(self.previous_quantity_milli)

    @property
    def new_quantity(self):
        return from_milli(self.new_quantity_milli)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "ingredient_id": self.ingredient_id,
            "store_id": self.store_id,
            "warehouse_id": self.warehouse_id,
            "quantity": _dec_str(self.quantity),
            "unit": self.unit,
            "batch_number": self.batch_number,
            "expiration_date": to_utc_z(self.expiration_date),
            "cost_per_unit_cents": self.cost_per_unit_cents,
            "total_cost_cents": self.total_cost_cents,
            "previous_quantity": _dec_str(self.previous_quantity),
            "new_quantity": _dec_str(self.new_quantity),
            "user_id": self.user_id,
            "owner_id": self.owner_id,
            "note": self.note,
            "supplier_id": self.supplier_id,
            "reference_number": self.reference_number,
            "recipe_id": self.recipe_id,
            "destination_warehouse_id": self.destination_warehouse_id,
            "temperature_condition": self.temperature_condition,
            "quality_check": {
                "passed": self.quality_check_passed,
                "notes": self.quality_check_notes,
            },
            "occurred_at": to_utc_z(self.occurred_at),
            "created_at": to_utc_z(self.created_at),
        }


class StockBalance(db.Model):
    """
    Current on-hand quantity for one (ingredient, store, warehouse, batch,
    expiration) key.

    balance_key materializes that tuple as a single string so the uniqueness
    constraint also covers keys whose batch or expiration is NULL.

    All quantity changes go through single conditional UPDATE statements in
    balance_service; nothing assigns quantity_milli on a loaded instance.
    """
    __tablename__ = "stock_balances"
    __table_args__ = (
        db.UniqueConstraint("balance_key", name="uq_stock_balances_key"),
        db.Index("ix_stockbal_lookup", "ingredient_id", "store_id", "warehouse_id", "is_active"),
        db.Index("ix_stockbal_owner_store", "owner_id", "store_id"),
        db.CheckConstraint("quantity_milli >= 0", name="ck_stockbal_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    balance_key = db.Column(db.String(255), nullable=False)

    ingredient_id = db.Column(db.Integer, db.ForeignKey("ingredients.id"), nullable=False)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False)
    batch_number = db.Column(db.String(100), nullable=True, index=True)
    expiration_date = db.Column(db.DateTime(timezone=True), nullable=True, index=True)

    quantity_milli = db.Column(db.BigInteger, nullable=False, default=0, index=True)
    unit = db.Column(db.String(20), nullable=False)

    # Weighted-average unit cost for this lot
    cost_per_unit_cents = db.Column(db.Integer, nullable=True)

    # Copied from the ingredient when the row is created
    min_stock_milli = db.Column(db.BigInteger, nullable=True)
    max_stock_milli = db.Column(db.BigInteger, nullable=True)

    owner_id = db.Column(db.Integer, nullable=False)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=True)
    temperature = db.Column(db.String(16), nullable=False, default="room_temp")

    last_transaction_date = db.Column(db.DateTime(timezone=True), nullable=True)
    last_transaction_id = db.Column(db.Integer, db.ForeignKey("stock_transactions.id"), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    ingredient = db.relationship("Ingredient")
    warehouse = db.relationship("Warehouse")

    def __repr__(self) -> str:
        return f"<StockBalance id={self.id} key={self.balance_key!r} quantity_milli={self.quantity_milli}>"

    @property
    def quantity(self):
        return from_milli(self.quantity_milli)

    @property
    def min_stock(self):
        return from_milli(self.min_stock_milli)

    @property
    def max_stock(self):
        return from_milli(self.max_stock_milli)

    @property
    def total_cost_cents(self) -> int | None:
        if self.cost_per_unit_cents is None:
            return None
        # nearest-cent rounding (half-up)
        return (self.cost_per_unit_cents * self.quantity_milli + 500) // 1000

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ingredient_id": self.ingredient_id,
            "store_id": self.store_id,
            "warehouse_id": self.warehouse_id,
            "batch_number": self.batch_number,
            "expiration_date": to_utc_z(self.expiration_date),
            "quantity": _dec_str(self.quantity),
            "unit": self.unit,
            "cost_per_unit_cents": self.cost_per_unit_cents,
            "total_cost_cents": self.total_cost_cents,
            "min_stock": _dec_str(self.min_stock),
            "max_stock": _dec_str(self.max_stock),
            "supplier_id": self.supplier_id,
            "temperature": self.temperature,
            "last_transaction_date": to_utc_z(self.last_transaction_date),
            "last_transaction_id": self.last_transaction_id,
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
