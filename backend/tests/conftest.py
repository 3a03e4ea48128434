"""
Pytest fixtures for stock ledger tests.

Provides test database setup, tenant fixtures (stores, warehouses,
ingredients) and the test client.
"""

import pytest
from stockledger import create_app
from stockledger.extensions import db
from stockledger.models import Store, Warehouse, Ingredient, Supplier
from stockledger.services import cost_notifier


OWNER_A = 101
OWNER_B = 202
USER_A = 7


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'RETIRE_DEPLETED_BATCHES': True,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        cost_notifier.clear_listeners()

        yield db.session

        # Cleanup after test
        db.session.rollback()
        cost_notifier.clear_listeners()
        app.config['RETIRE_DEPLETED_BATCHES'] = True


@pytest.fixture(scope='function')
def store_a(db_session):
    """Store S1 owned by tenant A."""
    store = Store(owner_id=OWNER_A, code="S1", name="Store A1")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def store_b(db_session):
    """Store with the same code owned by tenant B."""
    store = Store(owner_id=OWNER_B, code="S1", name="Store B1")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def warehouse_a(db_session, store_a):
    warehouse = Warehouse(store_id=store_a.id, owner_id=OWNER_A, name="Main Kitchen")
    db_session.add(warehouse)
    db_session.commit()
    return warehouse


@pytest.fixture(scope='function')
def warehouse_a2(db_session, store_a):
    warehouse = Warehouse(store_id=store_a.id, owner_id=OWNER_A, name="Cold Room")
    db_session.add(warehouse)
    db_session.commit()
    return warehouse


@pytest.fixture(scope='function')
def supplier_a(db_session):
    supplier = Supplier(owner_id=OWNER_A, name="Mill & Co")
    db_session.add(supplier)
    db_session.commit()
    return supplier


@pytest.fixture(scope='function')
def flour(db_session, store_a, warehouse_a):
    """Ingredient with a 5 kg reorder threshold."""
    ingredient = Ingredient(
        store_id=store_a.id,
        owner_id=OWNER_A,
        warehouse_id=warehouse_a.id,
        name="Flour",
        ingredient_code="FLR-001",
        category="dry goods",
        unit="kg",
        min_stock_milli=5_000,
    )
    db_session.add(ingredient)
    db_session.commit()
    return ingredient


@pytest.fixture(scope='function')
def milk(db_session, store_a, warehouse_a):
    """Ingredient without a reorder threshold."""
    ingredient = Ingredient(
        store_id=store_a.id,
        owner_id=OWNER_A,
        warehouse_id=warehouse_a.id,
        name="Milk",
        ingredient_code="MLK-001",
        category="dairy",
        unit="l",
    )
    db_session.add(ingredient)
    db_session.commit()
    return ingredient


@pytest.fixture(scope='function')
def flour_key(store_a, warehouse_a, flour):
    """Keyword arguments addressing flour in the main kitchen as tenant A."""
    return {
        "store_code": store_a.code,
        "owner_id": OWNER_A,
        "user_id": USER_A,
        "ingredient_id": flour.id,
        "warehouse_id": warehouse_a.id,
    }


@pytest.fixture(scope='function')
def actor_headers():
    """Trusted identity headers for a tenant A user."""
    return {'X-User-Id': str(USER_A), 'X-Owner-Id': str(OWNER_A)}
