# Overview: Ledger replay check; compares each balance with the sum of its transactions.

from __future__ import annotations

from sqlalchemy import func

from ..extensions import db
from ..models import StockBalance, StockTransaction
from ..quantities import from_milli
from .balance_service import BalanceKey


def replayed_quantities(store_id: int | None = None) -> dict[str, int]:
    """
    Sum of signed quantities of all active transactions, per balance key.

    Grouping is by the key columns; the key string is built in Python so it
    matches StockBalance.balance_key exactly.
    """
    q = db.session.query(
        StockTransaction.ingredient_id,
        StockTransaction.store_id,
        StockTransaction.warehouse_id,
        StockTransaction.batch_number,
        StockTransaction.expiration_date,
        func.sum(StockTransaction.quantity_milli),
    ).filter(StockTransaction.is_active.is_(True))
    if store_id is not None:
        q = q.filter(StockTransaction.store_id == store_id)

    rows = q.group_by(
        StockTransaction.ingredient_id,
        StockTransaction.store_id,
        StockTransaction.warehouse_id,
        StockTransaction.batch_number,
        StockTransaction.expiration_date,
    ).all()

    totals: dict[str, int] = {}
    for ingredient_id, sid, warehouse_id, batch_number, expiration_date, total in rows:
        key = BalanceKey(
            ingredient_id=ingredient_id,
            store_id=sid,
            warehouse_id=warehouse_id,
            batch_number=batch_number,
            expiration_date=expiration_date,
        ).as_string()
        totals[key] = totals.get(key, 0) + int(total or 0)
    return totals


def verify_ledger(store_id: int | None = None) -> list[dict]:
    """
    Replay the ledger and report every key whose balance disagrees.

    Retired rows are included: a depleted batch still has to replay to zero.
    A key with transactions but no balance row is reported with a balance of
    0. An empty list means the projection is consistent.
    """
    ledger = replayed_quantities(store_id)

    q = db.session.query(StockBalance)
    if store_id is not None:
        q = q.filter(StockBalance.store_id == store_id)
    balances = {b.balance_key: b.quantity_milli for b in q.all()}

    mismatches = []
    for key in sorted(set(ledger) | set(balances)):
        balance_milli = balances.get(key, 0)
        ledger_milli = ledger.get(key, 0)
        if balance_milli != ledger_milli:
            mismatches.append({
                "balance_key": key,
                "balance_quantity": str(from_milli(balance_milli)),
                "ledger_quantity": str(from_milli(ledger_milli)),
            })
    return mismatches
