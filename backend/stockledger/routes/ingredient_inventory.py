# backend/stockledger/routes/ingredient_inventory.py
"""
Ingredient inventory API routes.

Stock movements (in, out, take, transfer, write-off) and the read-only
balance and ledger reports. Every route runs as the actor named by the
X-User-Id / X-Owner-Id headers.
"""
from flask import Blueprint, current_app, g, jsonify, request
from werkzeug.exceptions import HTTPException

from stockledger.decorators import require_actor
from stockledger.errors import InfrastructureError, StockError
from stockledger.extensions import db
from stockledger.models import StockTransaction
from stockledger.services import reporting_service, stock_service
from stockledger.validation import (
    STOCK_IN_POLICY,
    STOCK_OUT_POLICY,
    STOCK_TAKE_POLICY,
    TRANSFER_POLICY,
    WRITE_OFF_POLICY,
    validate_payload,
)


ingredient_inventory_bp = Blueprint(
    "ingredient_inventory",
    __name__,
    url_prefix="/api/ingredient-inventory",
)


@ingredient_inventory_bp.errorhandler(StockError)
def handle_stock_error(e: StockError):
    db.session.rollback()
    if isinstance(e, InfrastructureError):
        current_app.logger.exception("Ingredient inventory storage failure")
    return jsonify(e.to_dict()), e.status


@ingredient_inventory_bp.errorhandler(Exception)
def handle_unexpected_error(e: Exception):
    if isinstance(e, HTTPException):
        return e
    db.session.rollback()
    current_app.logger.exception("Unhandled ingredient inventory error")
    return jsonify({"error": "internal_error", "message": "Unexpected error"}), 500


def _flag(name: str) -> bool:
    return request.args.get(name, "").strip().lower() in ("1", "true", "yes")


def _payload(policy) -> dict:
    return validate_payload(
        model=StockTransaction,
        payload=request.get_json(silent=True),
        policy=policy,
    )


@ingredient_inventory_bp.post("/stock-in")
@require_actor
def stock_in():
    """
    Receive ingredients into a warehouse.

    Request body:
    {
        "store_code": str,
        "ingredient_id": int,
        "warehouse_id": int,
        "quantity": number,
        "unit": str,
        "batch_number": str (optional),
        "expiration_date": ISO-8601 (optional),
        "cost_per_unit_cents": int (optional),
        "supplier_id": int (optional),
        "reference_number": str (optional),
        "note": str (optional),
        "temperature_condition": "frozen" | "refrigerated" | "room_temp" (optional),
        "quality_check": {"passed": bool, "notes": str} (optional)
    }

    Returns:
        201: Stock received
        400: Invalid request
        404: Store, ingredient, warehouse or supplier not found
    """
    data = _payload(STOCK_IN_POLICY)
    movement = stock_service.stock_in(owner_id=g.owner_id, user_id=g.user_id, **data)
    return jsonify({**movement.to_dict(), "message": "ingredient_stock_in_successful"}), 201


@ingredient_inventory_bp.post("/stock-out")
@require_actor
def stock_out():
    """
    Issue ingredients from a single batch (FIFO when no batch is named).

    Returns:
        200: Stock issued
        400: Invalid request
        404: Store, ingredient or warehouse not found
        409: Insufficient stock (body carries available_stock)
    """
    data = _payload(STOCK_OUT_POLICY)
    movement = stock_service.stock_out(owner_id=g.owner_id, user_id=g.user_id, **data)
    return jsonify({**movement.to_dict(), "message": "ingredient_stock_out_successful"}), 200


@ingredient_inventory_bp.post("/stock-take")
@require_actor
def stock_take():
    """
    Record a physical count and adjust the balance to it.

    Returns:
        200: Adjusted, or no adjustment needed
        400: Invalid request
        404: No stock balance to count against
    """
    data = _payload(STOCK_TAKE_POLICY)
    result = stock_service.stock_take(owner_id=g.owner_id, user_id=g.user_id, **data)
    message = (
        "ingredient_stock_take_successful"
        if result.transaction is not None
        else "no_adjustment_needed"
    )
    return jsonify({**result.to_dict(), "message": message}), 200


@ingredient_inventory_bp.post("/transfer")
@require_actor
def transfer():
    """
    Move stock of one batch between two warehouses of the store.

    Returns:
        200: Transferred
        400: Invalid request (including same source and destination)
        404: Store, ingredient or warehouse not found
        409: Insufficient stock at the source
    """
    data = _payload(TRANSFER_POLICY)
    result = stock_service.transfer_stock(owner_id=g.owner_id, user_id=g.user_id, **data)
    return jsonify({**result.to_dict(), "message": "ingredient_transfer_successful"}), 200


@ingredient_inventory_bp.post("/write-off")
@require_actor
def write_off():
    """
    Write off expired or damaged stock.

    Returns:
        200: Written off
        400: Invalid request or reason
        409: Insufficient stock
    """
    data = _payload(WRITE_OFF_POLICY)
    movement = stock_service.write_off_stock(owner_id=g.owner_id, user_id=g.user_id, **data)
    return jsonify({**movement.to_dict(), "message": "ingredient_write_off_successful"}), 200


@ingredient_inventory_bp.get("/balance/<store_code>/<int:ingredient_id>/<int:warehouse_id>")
@require_actor
def get_stock_balance(store_code: str, ingredient_id: int, warehouse_id: int):
    """Balances of one ingredient in one warehouse; optional ?batch_number=."""
    report = reporting_service.get_stock_balance(
        store_code=store_code,
        owner_id=g.owner_id,
        ingredient_id=ingredient_id,
        warehouse_id=warehouse_id,
        batch_number=request.args.get("batch_number"),
    )
    return jsonify({**report, "message": "stock_balance_retrieved"}), 200


@ingredient_inventory_bp.get("/balances/<store_code>")
@require_actor
def get_all_balances(store_code: str):
    """
    All balances holding stock in a store.

    Query params: warehouse_id, low_stock, expiring, expired
    """
    report = reporting_service.get_all_balances(
        store_code=store_code,
        owner_id=g.owner_id,
        warehouse_id=request.args.get("warehouse_id"),
        low_stock=_flag("low_stock"),
        expiring=_flag("expiring"),
        expired=_flag("expired"),
    )
    return jsonify({**report, "message": "stock_balances_retrieved"}), 200


@ingredient_inventory_bp.get("/transactions/<store_code>")
@require_actor
def get_transaction_history(store_code: str):
    """
    Ledger history for a store, newest first.

    Query params: ingredient_id, warehouse_id, type, start_date, end_date,
    batch_number, page, limit
    """
    args = request.args
    report = reporting_service.get_transaction_history(
        store_code=store_code,
        owner_id=g.owner_id,
        ingredient_id=args.get("ingredient_id"),
        warehouse_id=args.get("warehouse_id"),
        type=args.get("type"),
        start_date=args.get("start_date"),
        end_date=args.get("end_date"),
        batch_number=args.get("batch_number"),
        page=args.get("page", 1),
        limit=args.get("limit"),
    )
    return jsonify({**report, "message": "transaction_history_retrieved"}), 200


@ingredient_inventory_bp.get("/low-stock/<store_code>")
@require_actor
def get_low_stock_report(store_code: str):
    report = reporting_service.get_low_stock_report(
        store_code=store_code,
        owner_id=g.owner_id,
        warehouse_id=request.args.get("warehouse_id"),
    )
    return jsonify({**report, "message": "low_stock_report_generated"}), 200


@ingredient_inventory_bp.get("/expiring/<store_code>")
@require_actor
def get_expiring_report(store_code: str):
    """Query params: warehouse_id, days (default EXPIRY_WARNING_DAYS)."""
    report = reporting_service.get_expiring_report(
        store_code=store_code,
        owner_id=g.owner_id,
        warehouse_id=request.args.get("warehouse_id"),
        days=request.args.get("days"),
    )
    return jsonify({**report, "message": "expiring_ingredients_report_generated"}), 200


@ingredient_inventory_bp.get("/expired/<store_code>")
@require_actor
def get_expired_report(store_code: str):
    report = reporting_service.get_expired_report(
        store_code=store_code,
        owner_id=g.owner_id,
        warehouse_id=request.args.get("warehouse_id"),
    )
    return jsonify({**report, "message": "expired_ingredients_report_generated"}), 200
