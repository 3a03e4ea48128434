# Overview: Pytest coverage for the stock balance projection and its atomic updates.

from datetime import datetime

import pytest
from sqlalchemy import update

from stockledger.errors import ConcurrentUpdateError, ValidationError
from stockledger.models import StockBalance
from stockledger.services.balance_service import (
    BalanceKey,
    adjust_to,
    decrease,
    find_balance,
    upsert_increase,
)


@pytest.fixture
def key(store_a, warehouse_a, flour):
    return BalanceKey(
        ingredient_id=flour.id,
        store_id=store_a.id,
        warehouse_id=warehouse_a.id,
        batch_number="B1",
        expiration_date=datetime(2030, 1, 1),
    )


@pytest.fixture
def plain_key(store_a, warehouse_a, flour):
    return BalanceKey(ingredient_id=flour.id, store_id=store_a.id, warehouse_id=warehouse_a.id)


def _increase(key, milli, cost=None, owner_id=101):
    return upsert_increase(key, milli, unit="kg", owner_id=owner_id, incoming_cost_cents=cost)


def _set_quantity_behind_the_session(db_session, balance_id, milli):
    """Simulate another writer changing the row after we loaded it."""
    db_session.execute(
        update(StockBalance)
        .where(StockBalance.id == balance_id)
        .values(quantity_milli=milli)
        .execution_options(synchronize_session=False)
    )


class TestBalanceKey:

    def test_empty_batch_is_no_batch(self):
        assert BalanceKey(1, 2, 3, "") == BalanceKey(1, 2, 3, None)
        assert BalanceKey(1, 2, 3, "").as_string() == BalanceKey(1, 2, 3).as_string()

    def test_batch_separators_do_not_collide(self):
        a = BalanceKey(1, 2, 3, "A:1", None)
        b = BalanceKey(1, 2, 3, "A", None)
        assert a.as_string() != b.as_string()

    def test_expiration_distinguishes_keys(self):
        a = BalanceKey(1, 2, 3, "B1", datetime(2030, 1, 1))
        b = BalanceKey(1, 2, 3, "B1", datetime(2030, 1, 2))
        assert a.as_string() != b.as_string()

    def test_batch_identified(self):
        assert BalanceKey(1, 2, 3, "B1").is_batch_identified
        assert BalanceKey(1, 2, 3, None, datetime(2030, 1, 1)).is_batch_identified
        assert not BalanceKey(1, 2, 3).is_batch_identified


class TestUpsertIncrease:

    def test_creates_row_on_first_receipt(self, db_session, key):
        assert find_balance(key) is None
        balance = _increase(key, 10_000, cost=200)
        assert balance.quantity_milli == 10_000
        assert balance.cost_per_unit_cents == 200
        assert balance.balance_key == key.as_string()
        assert balance.is_active is True

    def test_increments_existing_row(self, db_session, key):
        first = _increase(key, 10_000)
        second = _increase(key, 2_500)
        assert first.id == second.id
        assert second.quantity_milli == 12_500
        assert db_session.query(StockBalance).count() == 1

    def test_weighted_average_cost(self, db_session, key):
        _increase(key, 10_000, cost=200)
        balance = _increase(key, 10_000, cost=400)
        assert balance.cost_per_unit_cents == 300

    def test_uncosted_receipt_keeps_cost(self, db_session, key):
        _increase(key, 10_000, cost=200)
        balance = _increase(key, 10_000)
        assert balance.cost_per_unit_cents == 200

    def test_first_cost_on_costless_row_is_taken_as_is(self, db_session, key):
        _increase(key, 10_000)
        balance = _increase(key, 10_000, cost=400)
        assert balance.cost_per_unit_cents == 400

    def test_no_lost_updates(self, db_session, key):
        for _ in range(25):
            balance = _increase(key, 1_500)
        assert balance.quantity_milli == 25 * 1_500

    def test_increment_applies_to_current_row_value(self, db_session, key):
        balance = _increase(key, 10_000)
        _set_quantity_behind_the_session(db_session, balance.id, 50_000)
        balance = _increase(key, 1_000)
        assert balance.quantity_milli == 51_000

    def test_reactivates_retired_row(self, db_session, key):
        balance = _increase(key, 1_000)
        decrease(balance, 1_000, retire_when_empty=True)
        assert balance.is_active is False
        balance = _increase(key, 2_000)
        assert balance.is_active is True
        assert balance.quantity_milli == 2_000

    def test_rejects_non_positive(self, db_session, key):
        with pytest.raises(ValidationError):
            _increase(key, 0)

    def test_bumps_version(self, db_session, key):
        balance = _increase(key, 1_000)
        assert balance.version_id == 1
        balance = _increase(key, 1_000)
        assert balance.version_id == 2


class TestDecrease:

    def test_decrements(self, db_session, key):
        balance = _increase(key, 10_000)
        decrease(balance, 4_000)
        assert balance.quantity_milli == 6_000

    def test_guard_rejects_overdraw(self, db_session, key):
        balance = _increase(key, 10_000)
        with pytest.raises(ConcurrentUpdateError):
            decrease(balance, 10_001)
        db_session.refresh(balance)
        assert balance.quantity_milli == 10_000

    def test_guard_uses_database_value_not_loaded_value(self, db_session, key):
        balance = _increase(key, 10_000)
        # Another writer drew 8 kg; our instance still says 10 kg
        _set_quantity_behind_the_session(db_session, balance.id, 2_000)
        with pytest.raises(ConcurrentUpdateError):
            decrease(balance, 5_000)
        db_session.refresh(balance)
        assert balance.quantity_milli == 2_000

    def test_two_racing_draws_cannot_go_negative(self, db_session, key):
        balance = _increase(key, 10_000)
        stale_copy_quantity = balance.quantity_milli
        decrease(balance, 10_000)
        assert stale_copy_quantity == 10_000
        with pytest.raises(ConcurrentUpdateError):
            decrease(balance, 10_000)
        assert balance.quantity_milli == 0

    def test_retires_batch_row_at_zero(self, db_session, key):
        balance = _increase(key, 3_000)
        decrease(balance, 1_000, retire_when_empty=True)
        assert balance.is_active is True
        decrease(balance, 2_000, retire_when_empty=True)
        assert balance.quantity_milli == 0
        assert balance.is_active is False

    def test_unbatched_row_is_never_retired(self, db_session, plain_key):
        balance = _increase(plain_key, 3_000)
        decrease(balance, 3_000, retire_when_empty=True)
        assert balance.quantity_milli == 0
        assert balance.is_active is True


class TestAdjustTo:

    def test_sets_absolute_count(self, db_session, key):
        balance = _increase(key, 30_000)
        balance, delta = adjust_to(balance, 25_000, expected_quantity_milli=30_000)
        assert delta == -5_000
        assert balance.quantity_milli == 25_000

    def test_zero_delta_writes_nothing(self, db_session, key):
        balance = _increase(key, 30_000)
        version = balance.version_id
        balance, delta = adjust_to(balance, 30_000, expected_quantity_milli=30_000)
        assert delta == 0
        assert balance.version_id == version

    def test_lost_compare_and_swap(self, db_session, key):
        balance = _increase(key, 30_000)
        _set_quantity_behind_the_session(db_session, balance.id, 28_000)
        with pytest.raises(ConcurrentUpdateError):
            adjust_to(balance, 25_000, expected_quantity_milli=30_000)
        db_session.refresh(balance)
        assert balance.quantity_milli == 28_000

    def test_rejects_negative_count(self, db_session, key):
        balance = _increase(key, 1_000)
        with pytest.raises(ValidationError):
            adjust_to(balance, -1, expected_quantity_milli=1_000)
