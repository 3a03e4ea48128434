# Overview: Stock movement engine; each operation pairs ledger rows with their balance effects.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from flask import current_app
from sqlalchemy import case, update

from ..errors import (
    ConcurrentUpdateError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
)
from ..extensions import db
from ..models import Ingredient, StockBalance, StockTransaction
from ..quantities import from_milli, normalize_unit, parse_cost_cents, to_milli
from ..time_utils import coerce_datetime, utcnow
from .balance_service import (
    BalanceKey,
    active_balances,
    adjust_to,
    decrease,
    fifo_order,
    stamp_last_transaction,
    upsert_increase,
    weighted_cost_expression,
)
from .concurrency import run_with_retry
from .cost_notifier import CostChange, notify_cost_change
from .ledger_service import append_transaction
from .tenancy_service import StockContext, resolve_stock_context, resolve_supplier, resolve_warehouse
"""
Stock Movement Invariants (authoritative)

Atomicity:
- Every public operation runs inside run_with_retry. Its ledger rows and
  balance updates are flushed in one session and committed together (or left
  to the caller with commit=False). Any failure rolls the session back, so a
  transaction never exists without its balance effect.

Quantities:
- Requested amounts are positive; the engine stores the signed ledger
  quantity (negative for out / expired / damaged / outbound transfer).
- A balance is never driven below zero. Selection happens first, then a
  guarded decrement; the ledger row is appended only after the decrement
  succeeded.

FIFO:
- Rows are ranked by expiration date (earliest first, undated last), then
  creation time, then id.
- stock_out, transfer_stock and write_off_stock draw from exactly one row
  and never split. deduct_ingredients_fifo walks rows in order and splits.

Costs:
- Balance cost is the per-lot weighted average, updated on stock-in only.
- Ingredient.average_cost_cents is the ingredient's own rollup, updated
  from the ingredient's rollup quantity and the incoming cost.
"""

MAX_BATCH_LENGTH = 100
MAX_NOTE_LENGTH = 500
MAX_REFERENCE_LENGTH = 100

WRITE_OFF_REASONS = ("expired", "damaged")

# Clock skew tolerated on client-supplied movement times
FUTURE_TOLERANCE = timedelta(minutes=2)


@dataclass
class StockMovement:
    transaction: StockTransaction
    balance: StockBalance

    def to_dict(self) -> dict:
        return {
            "transaction": self.transaction.to_dict(),
            "balance": self.balance.to_dict(),
        }


@dataclass
class StockTakeResult:
    balance: StockBalance
    previous_quantity_milli: int
    new_quantity_milli: int
    transaction: StockTransaction | None = None

    @property
    def adjustment_quantity_milli(self) -> int:
        return self.new_quantity_milli - self.previous_quantity_milli

    def to_dict(self) -> dict:
        return {
            "transaction": self.transaction.to_dict() if self.transaction else None,
            "balance": self.balance.to_dict(),
            "adjustment": {
                "previous_quantity": str(from_milli(self.previous_quantity_milli)),
                "new_quantity": str(from_milli(self.new_quantity_milli)),
                "adjustment_quantity": str(from_milli(self.adjustment_quantity_milli)),
            },
        }


@dataclass
class TransferResult:
    outbound: StockTransaction
    inbound: StockTransaction
    source: StockBalance
    destination: StockBalance

    def to_dict(self) -> dict:
        return {
            "outbound_transaction": self.outbound.to_dict(),
            "inbound_transaction": self.inbound.to_dict(),
            "source_balance": self.source.to_dict(),
            "destination_balance": self.destination.to_dict(),
        }


@dataclass
class DeductionResult:
    transactions: list[StockTransaction] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"transactions": [tx.to_dict() for tx in self.transactions]}


# ---------------------------------------------------------------------------
# Input normalization
# ---------------------------------------------------------------------------

def _positive_milli(value, *, field_name: str = "quantity") -> int:
    milli = to_milli(value, field=field_name)
    if milli <= 0:
        raise ValidationError(f"{field_name} must be greater than 0", code=f"invalid_{field_name}")
    return milli


def _optional_text(value, *, field_name: str, max_length: int) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    if not s:
        return None
    if len(s) > max_length:
        raise ValidationError(
            f"{field_name} cannot exceed {max_length} characters",
            code=f"{field_name}_too_long",
        )
    return s


def _occurred_at(value) -> datetime:
    occurred = coerce_datetime(value, field="occurred_at") or utcnow()
    if occurred > utcnow() + FUTURE_TOLERANCE:
        raise ValidationError("occurred_at cannot be in the future", code="invalid_occurred_at")
    return occurred


def _quality_check(value) -> tuple[bool, str | None]:
    if value is None:
        return True, None
    if not isinstance(value, dict):
        raise ValidationError("quality_check must be an object", code="invalid_quality_check")
    passed = value.get("passed", True)
    if not isinstance(passed, bool):
        raise ValidationError("quality_check.passed must be a boolean", code="invalid_quality_check")
    notes = _optional_text(value.get("notes"), field_name="quality_check_notes", max_length=MAX_NOTE_LENGTH)
    return passed, notes


def _retire_depleted() -> bool:
    return bool(current_app.config.get("RETIRE_DEPLETED_BATCHES", True))


def _finish(commit: bool) -> None:
    if commit:
        db.session.commit()
    else:
        db.session.flush()


# ---------------------------------------------------------------------------
# Ingredient rollup
# ---------------------------------------------------------------------------

def _roll_up_ingredient(
    ingredient: Ingredient,
    delta_milli: int,
    *,
    incoming_cost_cents: int | None = None,
) -> CostChange | None:
    """
    Apply a movement to the ingredient's own totals in one UPDATE.

    stock_quantity_milli never drops below zero. average_cost_cents is
    re-blended only for priced receipts. Returns the cost change to announce,
    if any.
    """
    previous_cost = ingredient.average_cost_cents

    new_quantity = Ingredient.stock_quantity_milli + delta_milli
    values = {
        "stock_quantity_milli": case((new_quantity < 0, 0), else_=new_quantity),
    }
    if incoming_cost_cents is not None and delta_milli > 0:
        values["average_cost_cents"] = weighted_cost_expression(
            Ingredient.average_cost_cents,
            Ingredient.stock_quantity_milli,
            incoming_cost_cents,
            delta_milli,
        )

    db.session.execute(
        update(Ingredient)
        .where(Ingredient.id == ingredient.id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.session.refresh(ingredient)

    if incoming_cost_cents is None or ingredient.average_cost_cents == previous_cost:
        return None
    return CostChange(
        ingredient_id=ingredient.id,
        store_id=ingredient.store_id,
        owner_id=ingredient.owner_id,
        previous_cost_cents=previous_cost,
        new_cost_cents=ingredient.average_cost_cents,
    )


# ---------------------------------------------------------------------------
# Single-row selection (no split)
# ---------------------------------------------------------------------------

def _candidate_rows(
    ingredient_id: int,
    store_id: int,
    warehouse_id: int,
    *,
    batch_number: str | None = None,
    expired_only: bool = False,
):
    q = active_balances().filter(
        StockBalance.ingredient_id == ingredient_id,
        StockBalance.store_id == store_id,
        StockBalance.warehouse_id == warehouse_id,
    )
    if batch_number is not None:
        q = q.filter(StockBalance.batch_number == batch_number)
    if expired_only:
        q = q.filter(
            StockBalance.expiration_date.isnot(None),
            StockBalance.expiration_date <= utcnow(),
        )
    return fifo_order(q).populate_existing()


def _largest_row(candidates) -> Decimal:
    quantities = [row.quantity_milli for row in candidates.all()]
    return from_milli(max(quantities, default=0))


def _draw_from_single_row(
    ctx: StockContext,
    quantity_milli: int,
    *,
    warehouse_id: int,
    batch_number: str | None = None,
    expired_only: bool = False,
) -> StockBalance:
    """
    Pick the first FIFO row that can cover the whole amount and decrement it.

    A lost race re-runs the selection once. Raises InsufficientStockError
    when no single row suffices; nothing has been written in that case. The
    reported available amount is the largest single row, the most a retry
    without a batch could draw.
    """
    candidates = _candidate_rows(
        ctx.ingredient.id,
        ctx.store.id,
        warehouse_id,
        batch_number=batch_number,
        expired_only=expired_only,
    )
    requested = from_milli(quantity_milli)

    for attempt in range(2):
        row = candidates.filter(StockBalance.quantity_milli >= quantity_milli).first()
        if row is None:
            raise InsufficientStockError(_largest_row(candidates), requested)

        try:
            return decrease(row, quantity_milli, retire_when_empty=_retire_depleted())
        except ConcurrentUpdateError:
            if attempt == 1:
                raise InsufficientStockError(_largest_row(candidates), requested)


# ---------------------------------------------------------------------------
# Public operations
# ---------------------------------------------------------------------------

def stock_in(
    *,
    store_code: str,
    owner_id: int,
    user_id: int,
    ingredient_id,
    warehouse_id,
    quantity,
    unit,
    batch_number: str | None = None,
    expiration_date=None,
    cost_per_unit_cents: int | None = None,
    supplier_id=None,
    reference_number: str | None = None,
    note: str | None = None,
    temperature_condition: str | None = None,
    quality_check: dict | None = None,
    occurred_at=None,
    commit: bool = True,
) -> StockMovement:
    """
    Receive stock into one (ingredient, store, warehouse, batch, expiration)
    key, creating the balance row on first receipt.

    Cost listeners are notified only after this call commits. With
    commit=False the caller owns the unit of work and no notification is
    sent.
    """
    quantity_milli = _positive_milli(quantity)
    unit = normalize_unit(unit)
    cost = parse_cost_cents(cost_per_unit_cents)
    batch = _optional_text(batch_number, field_name="batch_number", max_length=MAX_BATCH_LENGTH)
    expires = coerce_datetime(expiration_date, field="expiration_date")
    reference = _optional_text(reference_number, field_name="reference_number", max_length=MAX_REFERENCE_LENGTH)
    note = _optional_text(note, field_name="note", max_length=MAX_NOTE_LENGTH)
    qc_passed, qc_notes = _quality_check(quality_check)
    occurred = _occurred_at(occurred_at)

    def _op():
        ctx = resolve_stock_context(
            store_code=store_code,
            owner_id=owner_id,
            ingredient_id=ingredient_id,
            warehouse_id=warehouse_id,
        )
        supplier = resolve_supplier(ctx.owner_id, supplier_id)

        tx = append_transaction(
            type="in",
            ingredient_id=ctx.ingredient.id,
            store_id=ctx.store.id,
            warehouse_id=ctx.warehouse.id,
            quantity_milli=quantity_milli,
            unit=unit,
            user_id=user_id,
            owner_id=ctx.owner_id,
            batch_number=batch,
            expiration_date=expires,
            cost_per_unit_cents=cost,
            note=note or f"Stock in - {from_milli(quantity_milli)} {unit} added",
            supplier_id=supplier.id if supplier else None,
            reference_number=reference,
            temperature_condition=temperature_condition,
            quality_check_passed=qc_passed,
            quality_check_notes=qc_notes,
            occurred_at=occurred,
        )

        key = BalanceKey(
            ingredient_id=ctx.ingredient.id,
            store_id=ctx.store.id,
            warehouse_id=ctx.warehouse.id,
            batch_number=batch,
            expiration_date=expires,
        )
        balance = upsert_increase(
            key,
            quantity_milli,
            unit=unit,
            owner_id=ctx.owner_id,
            incoming_cost_cents=cost,
            min_stock_milli=ctx.ingredient.min_stock_milli,
            max_stock_milli=ctx.ingredient.max_stock_milli,
            supplier_id=supplier.id if supplier else None,
            temperature=tx.temperature_condition,
            transaction=tx,
        )

        change = _roll_up_ingredient(ctx.ingredient, quantity_milli, incoming_cost_cents=cost)

        _finish(commit)
        return StockMovement(transaction=tx, balance=balance), change

    movement, change = run_with_retry(_op)
    if commit and change is not None:
        notify_cost_change(change)
    return movement


def stock_out(
    *,
    store_code: str,
    owner_id: int,
    user_id: int,
    ingredient_id,
    warehouse_id,
    quantity,
    unit,
    batch_number: str | None = None,
    recipe_id: int | None = None,
    note: str | None = None,
    temperature_condition: str | None = None,
    occurred_at=None,
    commit: bool = True,
) -> StockMovement:
    """
    Issue stock from a single balance row.

    With batch_number the row is that batch; otherwise the first row in FIFO
    order holding at least the requested amount. Never splits across rows.
    """
    quantity_milli = _positive_milli(quantity)
    unit = normalize_unit(unit)
    batch = _optional_text(batch_number, field_name="batch_number", max_length=MAX_BATCH_LENGTH)
    note = _optional_text(note, field_name="note", max_length=MAX_NOTE_LENGTH)
    occurred = _occurred_at(occurred_at)

    def _op():
        ctx = resolve_stock_context(
            store_code=store_code,
            owner_id=owner_id,
            ingredient_id=ingredient_id,
            warehouse_id=warehouse_id,
        )

        balance = _draw_from_single_row(
            ctx,
            quantity_milli,
            warehouse_id=ctx.warehouse.id,
            batch_number=batch,
        )

        tx = append_transaction(
            type="out",
            ingredient_id=ctx.ingredient.id,
            store_id=ctx.store.id,
            warehouse_id=ctx.warehouse.id,
            quantity_milli=-quantity_milli,
            unit=unit,
            user_id=user_id,
            owner_id=ctx.owner_id,
            batch_number=balance.batch_number,
            expiration_date=balance.expiration_date,
            cost_per_unit_cents=balance.cost_per_unit_cents,
            note=note or f"Stock out - {from_milli(quantity_milli)} {unit} issued",
            recipe_id=recipe_id,
            temperature_condition=temperature_condition or balance.temperature,
            occurred_at=occurred,
        )
        stamp_last_transaction(balance, tx)
        _roll_up_ingredient(ctx.ingredient, -quantity_milli)

        _finish(commit)
        return StockMovement(transaction=tx, balance=balance)

    return run_with_retry(_op)


def stock_take(
    *,
    store_code: str,
    owner_id: int,
    user_id: int,
    ingredient_id,
    warehouse_id,
    physical_count,
    unit=None,
    batch_number: str | None = None,
    note: str | None = None,
    occurred_at=None,
    commit: bool = True,
) -> StockTakeResult:
    """
    Reconcile a balance row with a physical count.

    A count equal to the recorded quantity changes nothing and writes no
    transaction. Otherwise the row is set to the count with a
    compare-and-swap and one adjustment transaction records the difference.

    A lost compare-and-swap is retried once against the refreshed row; a
    second loss surfaces as ConcurrentUpdateError (409
    concurrent_update_conflict) with nothing written, and the caller recounts.
    """
    count_milli = to_milli(physical_count, field="physical_count")
    if count_milli < 0:
        raise ValidationError("Physical count cannot be negative", code="invalid_physical_count")
    unit = normalize_unit(unit) if unit is not None else None
    batch = _optional_text(batch_number, field_name="batch_number", max_length=MAX_BATCH_LENGTH)
    note = _optional_text(note, field_name="note", max_length=MAX_NOTE_LENGTH)
    occurred = _occurred_at(occurred_at)

    def _op():
        ctx = resolve_stock_context(
            store_code=store_code,
            owner_id=owner_id,
            ingredient_id=ingredient_id,
            warehouse_id=warehouse_id,
        )

        balance = _candidate_rows(
            ctx.ingredient.id,
            ctx.store.id,
            ctx.warehouse.id,
            batch_number=batch,
        ).first()
        if balance is None:
            raise NotFoundError("Stock balance not found", code="stock_balance_not_found")

        for attempt in range(2):
            previous = balance.quantity_milli
            try:
                balance, delta = adjust_to(balance, count_milli, expected_quantity_milli=previous)
                break
            except ConcurrentUpdateError:
                if attempt == 1:
                    raise
                db.session.refresh(balance)

        if delta == 0:
            _finish(commit)
            return StockTakeResult(
                balance=balance,
                previous_quantity_milli=previous,
                new_quantity_milli=count_milli,
            )

        tx_unit = unit or balance.unit
        tx = append_transaction(
            type="adjustment",
            ingredient_id=ctx.ingredient.id,
            store_id=ctx.store.id,
            warehouse_id=ctx.warehouse.id,
            quantity_milli=delta,
            unit=tx_unit,
            user_id=user_id,
            owner_id=ctx.owner_id,
            batch_number=balance.batch_number,
            expiration_date=balance.expiration_date,
            previous_quantity_milli=previous,
            new_quantity_milli=count_milli,
            note=note or (
                f"Stock take adjustment - Physical count: {from_milli(count_milli)}, "
                f"System count: {from_milli(previous)}"
            ),
            temperature_condition=balance.temperature,
            occurred_at=occurred,
        )
        stamp_last_transaction(balance, tx)
        _roll_up_ingredient(ctx.ingredient, delta)

        _finish(commit)
        return StockTakeResult(
            balance=balance,
            previous_quantity_milli=previous,
            new_quantity_milli=count_milli,
            transaction=tx,
        )

    return run_with_retry(_op)


def transfer_stock(
    *,
    store_code: str,
    owner_id: int,
    user_id: int,
    ingredient_id,
    from_warehouse_id,
    to_warehouse_id,
    quantity,
    unit,
    batch_number: str | None = None,
    note: str | None = None,
    occurred_at=None,
    commit: bool = True,
) -> TransferResult:
    """
    Move stock of one lot between two warehouses of the same store.

    The source row is chosen like a stock-out (single row, FIFO). The
    destination key keeps the lot's batch, expiration and unit cost. The
    ingredient's total is unchanged.
    """
    quantity_milli = _positive_milli(quantity)
    unit = normalize_unit(unit)
    batch = _optional_text(batch_number, field_name="batch_number", max_length=MAX_BATCH_LENGTH)
    note = _optional_text(note, field_name="note", max_length=MAX_NOTE_LENGTH)
    occurred = _occurred_at(occurred_at)

    def _op():
        ctx = resolve_stock_context(
            store_code=store_code,
            owner_id=owner_id,
            ingredient_id=ingredient_id,
            warehouse_id=from_warehouse_id,
        )
        destination_wh = resolve_warehouse(ctx.store, to_warehouse_id)
        if destination_wh.id == ctx.warehouse.id:
            raise ValidationError(
                "Source and destination warehouse must differ",
                code="same_warehouse_transfer",
            )

        source = _draw_from_single_row(
            ctx,
            quantity_milli,
            warehouse_id=ctx.warehouse.id,
            batch_number=batch,
        )
        lot_batch = source.batch_number
        lot_expires = source.expiration_date
        lot_cost = source.cost_per_unit_cents
        lot_temperature = source.temperature

        text = note or (
            f"Transfer - {from_milli(quantity_milli)} {unit} "
            f"from warehouse {ctx.warehouse.id} to {destination_wh.id}"
        )

        outbound = append_transaction(
            type="transfer",
            ingredient_id=ctx.ingredient.id,
            store_id=ctx.store.id,
            warehouse_id=ctx.warehouse.id,
            quantity_milli=-quantity_milli,
            unit=unit,
            user_id=user_id,
            owner_id=ctx.owner_id,
            batch_number=lot_batch,
            expiration_date=lot_expires,
            cost_per_unit_cents=lot_cost,
            note=text,
            destination_warehouse_id=destination_wh.id,
            temperature_condition=lot_temperature,
            occurred_at=occurred,
        )
        stamp_last_transaction(source, outbound)

        inbound = append_transaction(
            type="transfer",
            ingredient_id=ctx.ingredient.id,
            store_id=ctx.store.id,
            warehouse_id=destination_wh.id,
            quantity_milli=quantity_milli,
            unit=unit,
            user_id=user_id,
            owner_id=ctx.owner_id,
            batch_number=lot_batch,
            expiration_date=lot_expires,
            cost_per_unit_cents=lot_cost,
            note=text,
            destination_warehouse_id=destination_wh.id,
            temperature_condition=lot_temperature,
            occurred_at=occurred,
        )
        destination = upsert_increase(
            BalanceKey(
                ingredient_id=ctx.ingredient.id,
                store_id=ctx.store.id,
                warehouse_id=destination_wh.id,
                batch_number=lot_batch,
                expiration_date=lot_expires,
            ),
            quantity_milli,
            unit=source.unit,
            owner_id=ctx.owner_id,
            incoming_cost_cents=lot_cost,
            min_stock_milli=ctx.ingredient.min_stock_milli,
            max_stock_milli=ctx.ingredient.max_stock_milli,
            supplier_id=source.supplier_id,
            temperature=lot_temperature,
            transaction=inbound,
        )

        _finish(commit)
        return TransferResult(
            outbound=outbound,
            inbound=inbound,
            source=source,
            destination=destination,
        )

    return run_with_retry(_op)


def write_off_stock(
    *,
    store_code: str,
    owner_id: int,
    user_id: int,
    ingredient_id,
    warehouse_id,
    quantity,
    unit,
    reason: str,
    batch_number: str | None = None,
    note: str | None = None,
    occurred_at=None,
    commit: bool = True,
) -> StockMovement:
    """
    Remove expired or damaged stock from a single row.

    An expired write-off without a batch only considers rows whose
    expiration date has already passed.
    """
    if reason not in WRITE_OFF_REASONS:
        raise ValidationError("reason must be expired or damaged", code="invalid_write_off_reason")
    quantity_milli = _positive_milli(quantity)
    unit = normalize_unit(unit)
    batch = _optional_text(batch_number, field_name="batch_number", max_length=MAX_BATCH_LENGTH)
    note = _optional_text(note, field_name="note", max_length=MAX_NOTE_LENGTH)
    occurred = _occurred_at(occurred_at)

    def _op():
        ctx = resolve_stock_context(
            store_code=store_code,
            owner_id=owner_id,
            ingredient_id=ingredient_id,
            warehouse_id=warehouse_id,
        )

        balance = _draw_from_single_row(
            ctx,
            quantity_milli,
            warehouse_id=ctx.warehouse.id,
            batch_number=batch,
            expired_only=(reason == "expired" and batch is None),
        )

        tx = append_transaction(
            type=reason,
            ingredient_id=ctx.ingredient.id,
            store_id=ctx.store.id,
            warehouse_id=ctx.warehouse.id,
            quantity_milli=-quantity_milli,
            unit=unit,
            user_id=user_id,
            owner_id=ctx.owner_id,
            batch_number=balance.batch_number,
            expiration_date=balance.expiration_date,
            cost_per_unit_cents=balance.cost_per_unit_cents,
            note=note or f"Write-off ({reason}) - {from_milli(quantity_milli)} {unit}",
            temperature_condition=balance.temperature,
            occurred_at=occurred,
        )
        stamp_last_transaction(balance, tx)
        _roll_up_ingredient(ctx.ingredient, -quantity_milli)

        _finish(commit)
        return StockMovement(transaction=tx, balance=balance)

    return run_with_retry(_op)


def _resolve_usage_ingredient(usage: dict) -> Ingredient:
    for required in ("ingredient_id", "store_id", "owner_id", "quantity"):
        if usage.get(required) is None:
            raise ValidationError(f"{required} is required", code=f"{required}_is_required")
    ingredient = db.session.query(Ingredient).filter_by(
        id=usage["ingredient_id"],
        store_id=usage["store_id"],
        owner_id=usage["owner_id"],
        is_active=True,
    ).first()
    if ingredient is None:
        raise NotFoundError(f"Ingredient {usage['ingredient_id']} not found", code="ingredient_not_found")
    return ingredient


def _deduct_one_usage(
    ingredient: Ingredient,
    quantity_milli: int,
    *,
    user_id: int,
    recipe_id: int | None,
    note: str,
    occurred: datetime,
) -> list[StockTransaction]:
    rows = fifo_order(
        active_balances().filter(
            StockBalance.ingredient_id == ingredient.id,
            StockBalance.store_id == ingredient.store_id,
            StockBalance.owner_id == ingredient.owner_id,
            StockBalance.quantity_milli > 0,
        )
    ).populate_existing().all()

    available = sum(row.quantity_milli for row in rows)
    if available < quantity_milli:
        raise InsufficientStockError(from_milli(available), from_milli(quantity_milli))

    transactions = []
    remaining = quantity_milli
    for row in rows:
        if remaining <= 0:
            break
        take = min(row.quantity_milli, remaining)
        decrease(row, take, retire_when_empty=_retire_depleted())

        tx = append_transaction(
            type="out",
            ingredient_id=ingredient.id,
            store_id=ingredient.store_id,
            warehouse_id=row.warehouse_id,
            quantity_milli=-take,
            unit=row.unit,
            user_id=user_id,
            owner_id=ingredient.owner_id,
            batch_number=row.batch_number,
            expiration_date=row.expiration_date,
            cost_per_unit_cents=row.cost_per_unit_cents,
            note=note,
            recipe_id=recipe_id,
            temperature_condition=row.temperature,
            occurred_at=occurred,
        )
        stamp_last_transaction(row, tx)
        transactions.append(tx)
        remaining -= take

    _roll_up_ingredient(ingredient, -quantity_milli)
    return transactions


def deduct_ingredients_fifo(
    usages: list[dict],
    *,
    user_id: int,
    reason: str | None = None,
    occurred_at=None,
    commit: bool = True,
) -> DeductionResult:
    """
    Consume ingredients for prepared items, splitting across batches.

    Each usage is {ingredient_id, store_id, owner_id, quantity, recipe_id?}.
    Rows of the ingredient's store are drawn in FIFO order across all its
    warehouses, with one "out" transaction per row touched. All usages
    succeed together or none is applied.
    """
    if not isinstance(usages, list) or not usages:
        raise ValidationError("usages must be a non-empty list", code="invalid_usages")
    reason = _optional_text(reason, field_name="reason", max_length=MAX_NOTE_LENGTH)
    occurred = _occurred_at(occurred_at)
    note = f"Deducted for recipe preparation - {reason or 'No reason specified'}"

    parsed = []
    for usage in usages:
        if not isinstance(usage, dict):
            raise ValidationError("each usage must be an object", code="invalid_usages")
        parsed.append((usage, _positive_milli(usage.get("quantity"))))

    def _op():
        result = DeductionResult()
        for usage, quantity_milli in parsed:
            ingredient = _resolve_usage_ingredient(usage)
            try:
                transactions = _deduct_one_usage(
                    ingredient,
                    quantity_milli,
                    user_id=user_id,
                    recipe_id=usage.get("recipe_id"),
                    note=note,
                    occurred=occurred,
                )
            except ConcurrentUpdateError:
                # A row changed between the availability check and the draw;
                # undo every usage and report what is there now.
                db.session.rollback()
                available = _available_milli(ingredient)
                raise InsufficientStockError(from_milli(available), from_milli(quantity_milli))
            result.transactions.extend(transactions)

        _finish(commit)
        return result

    return run_with_retry(_op)


def _available_milli(ingredient: Ingredient) -> int:
    rows = active_balances().filter(
        StockBalance.ingredient_id == ingredient.id,
        StockBalance.store_id == ingredient.store_id,
        StockBalance.owner_id == ingredient.owner_id,
        StockBalance.quantity_milli > 0,
    ).populate_existing().all()
    return sum(row.quantity_milli for row in rows)
