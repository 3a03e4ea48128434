# Overview: Append-only stock transaction ledger.

from __future__ import annotations

from datetime import datetime
from typing import Optional

from ..errors import ValidationError
from ..extensions import db
from ..models import StockTransaction, TEMPERATURE_CONDITIONS, TRANSACTION_TYPES
from ..quantities import line_cost_cents
from ..time_utils import utcnow
"""
Stock Ledger Invariants (authoritative)

- Append-only: no updates/deletes of existing rows. A reversal is its own
  compensating transaction.
- quantity_milli is never zero and its sign matches the type:
    in                      -> positive
    out, expired, damaged   -> negative
    adjustment, transfer    -> either sign
- total_cost_cents is computed here, once, and frozen.
- The ledger never touches stock_balances; pairing a ledger row with its
  balance effect is the caller's job, inside the same DB transaction.
- Replay order for a key is (occurred_at, id) ascending.
"""

POSITIVE_TYPES = {"in"}
NEGATIVE_TYPES = {"out", "expired", "damaged"}


def active_transactions():
    """Base query for ledger rows that count (the is_active predicate)."""
    return db.session.query(StockTransaction).filter(StockTransaction.is_active.is_(True))


def append_transaction(
    *,
    type: str,
    ingredient_id: int,
    store_id: int,
    warehouse_id: int,
    quantity_milli: int,
    unit: str,
    user_id: int,
    owner_id: int,
    batch_number: str | None = None,
    expiration_date: datetime | None = None,
    cost_per_unit_cents: int | None = None,
    previous_quantity_milli: int | None = None,
    new_quantity_milli: int | None = None,
    note: str | None = None,
    supplier_id: int | None = None,
    reference_number: str | None = None,
    recipe_id: int | None = None,
    destination_warehouse_id: int | None = None,
    temperature_condition: str | None = None,
    quality_check_passed: bool = True,
    quality_check_notes: str | None = None,
    occurred_at: Optional[datetime] = None,
) -> StockTransaction:
    """
    Append one ledger row and flush it so its id is available.

    Does not commit: the caller commits together with the balance update.
    """
    if type not in TRANSACTION_TYPES:
        raise ValidationError(f"Invalid transaction type: {type}", code="invalid_transaction_type")

    if quantity_milli == 0:
        raise ValidationError("Transaction quantity cannot be zero", code="invalid_quantity")

    if type in POSITIVE_TYPES and quantity_milli < 0:
        raise ValidationError(f"{type} transactions must have a positive quantity", code="invalid_quantity")

    if type in NEGATIVE_TYPES and quantity_milli > 0:
        raise ValidationError(f"{type} transactions must have a negative quantity", code="invalid_quantity")

    if type != "adjustment" and (previous_quantity_milli is not None or new_quantity_milli is not None):
        raise ValidationError(
            "previous/new quantity are only recorded on adjustments",
            code="invalid_adjustment_fields",
        )

    temperature_condition = temperature_condition or "room_temp"
    if temperature_condition not in TEMPERATURE_CONDITIONS:
        raise ValidationError(
            "temperature_condition must be frozen, refrigerated or room_temp",
            code="invalid_temperature_condition",
        )

    tx = StockTransaction(
        type=type,
        ingredient_id=ingredient_id,
        store_id=store_id,
        warehouse_id=warehouse_id,
        quantity_milli=quantity_milli,
        unit=unit,
        batch_number=batch_number,
        expiration_date=expiration_date,
        cost_per_unit_cents=cost_per_unit_cents,
        total_cost_cents=line_cost_cents(cost_per_unit_cents, quantity_milli),
        previous_quantity_milli=previous_quantity_milli,
        new_quantity_milli=new_quantity_milli,
        user_id=user_id,
        owner_id=owner_id,
        note=note,
        supplier_id=supplier_id,
        reference_number=reference_number,
        recipe_id=recipe_id,
        destination_warehouse_id=destination_warehouse_id,
        temperature_condition=temperature_condition,
        quality_check_passed=quality_check_passed,
        quality_check_notes=quality_check_notes,
        occurred_at=occurred_at or utcnow(),
    )
    db.session.add(tx)
    db.session.flush()  # ensures tx.id is assigned without committing
    return tx
