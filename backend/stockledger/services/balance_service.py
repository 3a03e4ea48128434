# Overview: StockBalance projection; every quantity change is one conditional UPDATE.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import case, or_, update
from sqlalchemy.exc import IntegrityError

from ..errors import ConcurrentUpdateError, ValidationError
from ..extensions import db
from ..models import StockBalance, StockTransaction
from ..time_utils import utcnow
"""
Stock Balance Invariants (authoritative)

- One row per BalanceKey, enforced by the unique balance_key column.
- quantity_milli >= 0 at all times. A decrease that would go negative
  matches no row and raises ConcurrentUpdateError; it is never clamped.
- No read-modify-write: increments, guarded decrements and
  compare-and-swap sets are each a single UPDATE statement evaluated by the
  database against the row's current values. In-memory instances are
  refreshed afterwards, never written back.
- Weighted-average cost is recomputed only on increases that carry a cost:
    new = (old_cost*old_qty + in_cost*in_qty) / (old_qty + in_qty)
  nearest-cent rounding (half-up). A row with no cost (or no stock) takes
  the incoming cost.
- Rows are never deleted. is_active=False retires a depleted batch row; an
  increase on the same key reactivates it.
"""


@dataclass(frozen=True)
class BalanceKey:
    ingredient_id: int
    store_id: int
    warehouse_id: int
    batch_number: str | None = None
    expiration_date: datetime | None = None

    def __post_init__(self):
        # "" and None are the same lot
        if self.batch_number == "":
            object.__setattr__(self, "batch_number", None)
        # Keys are built from UTC-naive datetimes whatever the backend returns
        if self.expiration_date is not None and self.expiration_date.tzinfo is not None:
            object.__setattr__(
                self,
                "expiration_date",
                self.expiration_date.astimezone(timezone.utc).replace(tzinfo=None),
            )

    @property
    def is_batch_identified(self) -> bool:
        return self.batch_number is not None or self.expiration_date is not None

    def as_string(self) -> str:
        batch = self.batch_number or ""
        expires = self.expiration_date.isoformat() if self.expiration_date else ""
        # Length prefix keeps batch numbers containing ":" unambiguous
        return f"{self.ingredient_id}:{self.store_id}:{self.warehouse_id}:{len(batch)}:{batch}:{expires}"

    @classmethod
    def of(cls, balance: StockBalance) -> "BalanceKey":
        return cls(
            ingredient_id=balance.ingredient_id,
            store_id=balance.store_id,
            warehouse_id=balance.warehouse_id,
            batch_number=balance.batch_number,
            expiration_date=balance.expiration_date,
        )


def active_balances():
    """Base query for balance rows that are still relevant (the is_active predicate)."""
    return db.session.query(StockBalance).filter(StockBalance.is_active.is_(True))


def fifo_order(query):
    """First-expiring first; rows without an expiration last; then oldest row."""
    return query.order_by(
        StockBalance.expiration_date.is_(None),
        StockBalance.expiration_date.asc(),
        StockBalance.created_at.asc(),
        StockBalance.id.asc(),
    )


def find_balance(key: BalanceKey) -> StockBalance | None:
    return db.session.query(StockBalance).filter_by(balance_key=key.as_string()).first()


def weighted_cost_expression(cost_column, quantity_column, incoming_cost_cents: int, incoming_milli: int):
    """
    SQL form of quantities.weighted_average_cents, evaluated against the
    row's current values inside the UPDATE itself.
    """
    total_units = quantity_column + incoming_milli
    return case(
        (or_(cost_column.is_(None), quantity_column <= 0), incoming_cost_cents),
        else_=(cost_column * quantity_column + incoming_cost_cents * incoming_milli + total_units // 2) // total_units,
    )


def _execute_guarded(stmt, balance: StockBalance) -> StockBalance:
    result = db.session.execute(stmt.execution_options(synchronize_session=False))
    if result.rowcount != 1:
        raise ConcurrentUpdateError(balance.id)
    db.session.refresh(balance)
    return balance


def _last_transaction_values(transaction: StockTransaction | None) -> dict:
    if transaction is None:
        return {}
    return {
        "last_transaction_id": transaction.id,
        "last_transaction_date": transaction.occurred_at,
    }


def upsert_increase(
    key: BalanceKey,
    delta_milli: int,
    *,
    unit: str,
    owner_id: int,
    incoming_cost_cents: int | None = None,
    min_stock_milli: int | None = None,
    max_stock_milli: int | None = None,
    supplier_id: int | None = None,
    temperature: str | None = None,
    transaction: StockTransaction | None = None,
) -> StockBalance:
    """
    Add delta_milli to the row for key, creating the row on first receipt.

    The insert runs in a savepoint: if another writer created the key in the
    meantime, the unique constraint fires and the increment path applies the
    delta to their row instead.
    """
    if delta_milli <= 0:
        raise ValidationError("Increase must be positive", code="invalid_quantity")

    balance = find_balance(key)
    if balance is None:
        nested = db.session.begin_nested()
        try:
            balance = StockBalance(
                balance_key=key.as_string(),
                ingredient_id=key.ingredient_id,
                store_id=key.store_id,
                warehouse_id=key.warehouse_id,
                batch_number=key.batch_number,
                expiration_date=key.expiration_date,
                quantity_milli=delta_milli,
                unit=unit,
                cost_per_unit_cents=incoming_cost_cents,
                min_stock_milli=min_stock_milli,
                max_stock_milli=max_stock_milli,
                owner_id=owner_id,
                supplier_id=supplier_id,
                temperature=temperature or "room_temp",
                last_transaction_id=transaction.id if transaction else None,
                last_transaction_date=transaction.occurred_at if transaction else utcnow(),
                is_active=True,
                version_id=1,
            )
            db.session.add(balance)
            nested.commit()
            return balance
        except IntegrityError:
            nested.rollback()
            balance = find_balance(key)
            if balance is None:
                raise

    values = {
        "quantity_milli": StockBalance.quantity_milli + delta_milli,
        "version_id": StockBalance.version_id + 1,
        "is_active": True,
    }
    values.update(_last_transaction_values(transaction))

    if incoming_cost_cents is not None:
        values["cost_per_unit_cents"] = weighted_cost_expression(
            StockBalance.cost_per_unit_cents,
            StockBalance.quantity_milli,
            incoming_cost_cents,
            delta_milli,
        )

    stmt = update(StockBalance).where(StockBalance.id == balance.id).values(**values)
    return _execute_guarded(stmt, balance)


def decrease(
    balance: StockBalance,
    delta_milli: int,
    *,
    retire_when_empty: bool = False,
) -> StockBalance:
    """
    Subtract delta_milli only if the row still holds at least that much.

    Raises ConcurrentUpdateError (state untouched) when the guard fails.
    With retire_when_empty, a batch-identified row that reaches exactly zero
    is soft-deleted in the same statement.
    """
    if delta_milli <= 0:
        raise ValidationError("Decrease must be positive", code="invalid_quantity")

    values = {
        "quantity_milli": StockBalance.quantity_milli - delta_milli,
        "version_id": StockBalance.version_id + 1,
        "last_transaction_date": utcnow(),
    }
    if retire_when_empty and BalanceKey.of(balance).is_batch_identified:
        values["is_active"] = case(
            (StockBalance.quantity_milli - delta_milli == 0, False),
            else_=True,
        )

    stmt = update(StockBalance).where(
        StockBalance.id == balance.id,
        StockBalance.quantity_milli >= delta_milli,
    ).values(**values)
    return _execute_guarded(stmt, balance)


def adjust_to(
    balance: StockBalance,
    physical_count_milli: int,
    *,
    expected_quantity_milli: int,
) -> tuple[StockBalance, int]:
    """
    Set the row to an absolute counted quantity (compare-and-swap).

    The write only applies if the row still holds expected_quantity_milli, the
    figure the caller computed its delta against. Returns the applied delta;
    0 means nothing was written.
    """
    if physical_count_milli < 0:
        raise ValidationError("Physical count cannot be negative", code="invalid_physical_count")

    delta = physical_count_milli - expected_quantity_milli
    if delta == 0:
        return balance, 0

    stmt = update(StockBalance).where(
        StockBalance.id == balance.id,
        StockBalance.quantity_milli == expected_quantity_milli,
    ).values(
        quantity_milli=physical_count_milli,
        version_id=StockBalance.version_id + 1,
        last_transaction_date=utcnow(),
    )
    return _execute_guarded(stmt, balance), delta


def stamp_last_transaction(balance: StockBalance, transaction: StockTransaction) -> StockBalance:
    """Point the row at the ledger entry that produced its current state."""
    stmt = update(StockBalance).where(StockBalance.id == balance.id).values(
        **_last_transaction_values(transaction)
    )
    return _execute_guarded(stmt, balance)
