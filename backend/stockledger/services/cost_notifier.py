# Overview: Process-local listeners told when a stock-in moves an ingredient's average cost.

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from flask import current_app


@dataclass(frozen=True)
class CostChange:
    ingredient_id: int
    store_id: int
    owner_id: int
    previous_cost_cents: int | None
    new_cost_cents: int


_listeners: list[Callable[[CostChange], None]] = []


def register_listener(listener: Callable[[CostChange], None]) -> Callable[[CostChange], None]:
    """Register a listener; usable as a decorator."""
    if listener not in _listeners:
        _listeners.append(listener)
    return listener


def unregister_listener(listener: Callable[[CostChange], None]) -> None:
    if listener in _listeners:
        _listeners.remove(listener)


def clear_listeners() -> None:
    _listeners.clear()


def notify_cost_change(change: CostChange) -> int:
    """
    Call every listener with the change. Best effort: a failing listener is
    logged and skipped, it never fails the stock movement that triggered it.

    Returns the number of listeners that completed.
    """
    delivered = 0
    for listener in list(_listeners):
        try:
            listener(change)
            delivered += 1
        except Exception:
            current_app.logger.warning(
                "Cost change listener %r failed for ingredient %s",
                listener,
                change.ingredient_id,
                exc_info=True,
            )
    return delivered
