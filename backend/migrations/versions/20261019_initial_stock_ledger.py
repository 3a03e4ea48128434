"""Initial stock ledger schema

Revision ID: 20261019_initial_stock_ledger
Revises:
Create Date: 2026-10-19 09:00:00.000000

Tables: stores, warehouses, suppliers, ingredients, stock_transactions,
stock_balances. Quantities are BigInteger thousandths of the unit, money is
integer cents.
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_initial_stock_ledger"
down_revision = None
branch_labels = None
depends_on = None


def _created_at():
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False)


def _updated_at():
    return sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False)


def upgrade():
    op.create_table(
        "stores",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("code", sa.String(length=32), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("owner_id", "code", name="uq_stores_owner_code"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("stores", schema=None) as batch_op:
        batch_op.create_index(batch_op.f("ix_stores_owner_id"), ["owner_id"], unique=False)
        batch_op.create_index(batch_op.f("ix_stores_code"), ["code"], unique=False)
        batch_op.create_index(batch_op.f("ix_stores_is_active"), ["is_active"], unique=False)

    op.create_table(
        "warehouses",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("store_id", sa.Integer(), nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("address", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        _created_at(),
        sa.ForeignKeyConstraint(["store_id"], ["stores.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("warehouses", schema=None) as batch_op:
        batch_op.create_index(batch_op.f("ix_warehouses_store_id"), ["store_id"], unique=False)
        batch_op.create_index(batch_op.f("ix_warehouses_owner_id"), ["owner_id"], unique=False)
        batch_op.create_index("ix_warehouses_store_active", ["store_id", "is_active"], unique=False)

    op.create_table(
        "suppliers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("contact_info", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("suppliers", schema=None) as batch_op:
        batch_op.create_index(batch_op.f("ix_suppliers_owner_id"), ["owner_id"], unique=False)

    op.create_table(
        "ingredients",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("store_id", sa.Integer(), nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("warehouse_id", sa.Integer(), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("ingredient_code", sa.String(length=64), nullable=True),
        sa.Column("category", sa.String(length=64), nullable=True),
        sa.Column("unit", sa.String(length=20), nullable=False),
        sa.Column("min_stock_milli", sa.BigInteger(), nullable=True),
        sa.Column("max_stock_milli", sa.BigInteger(), nullable=True),
        sa.Column("average_cost_cents", sa.Integer(), nullable=True),
        sa.Column("stock_quantity_milli", sa.BigInteger(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(["store_id"], ["stores.id"]),
        sa.ForeignKeyConstraint(["warehouse_id"], ["warehouses.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("ingredients", schema=None) as batch_op:
        batch_op.create_index(batch_op.f("ix_ingredients_store_id"), ["store_id"], unique=False)
        batch_op.create_index(batch_op.f("ix_ingredients_owner_id"), ["owner_id"], unique=False)
        batch_op.create_index("ix_ingredients_store_name", ["store_id", "name"], unique=False)
        batch_op.create_index("ix_ingredients_store_active", ["store_id", "is_active"], unique=False)

    op.create_table(
        "stock_transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("ingredient_id", sa.Integer(), nullable=False),
        sa.Column("store_id", sa.Integer(), nullable=False),
        sa.Column("warehouse_id", sa.Integer(), nullable=False),
        sa.Column("quantity_milli", sa.BigInteger(), nullable=False),
        sa.Column("unit", sa.String(length=20), nullable=False),
        sa.Column("batch_number", sa.String(length=100), nullable=True),
        sa.Column("expiration_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cost_per_unit_cents", sa.Integer(), nullable=True),
        sa.Column("total_cost_cents", sa.BigInteger(), nullable=True),
        sa.Column("previous_quantity_milli", sa.BigInteger(), nullable=True),
        sa.Column("new_quantity_milli", sa.BigInteger(), nullable=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("note", sa.String(length=500), nullable=True),
        sa.Column("supplier_id", sa.Integer(), nullable=True),
        sa.Column("reference_number", sa.String(length=100), nullable=True),
        sa.Column("recipe_id", sa.Integer(), nullable=True),
        sa.Column("destination_warehouse_id", sa.Integer(), nullable=True),
        sa.Column("temperature_condition", sa.String(length=16), nullable=False),
        sa.Column("quality_check_passed", sa.Boolean(), nullable=False),
        sa.Column("quality_check_notes", sa.String(length=500), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        _created_at(),
        sa.CheckConstraint("quantity_milli <> 0", name="ck_stocktx_nonzero_quantity"),
        sa.ForeignKeyConstraint(["ingredient_id"], ["ingredients.id"]),
        sa.ForeignKeyConstraint(["store_id"], ["stores.id"]),
        sa.ForeignKeyConstraint(["warehouse_id"], ["warehouses.id"]),
        sa.ForeignKeyConstraint(["destination_warehouse_id"], ["warehouses.id"]),
        sa.ForeignKeyConstraint(["supplier_id"], ["suppliers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("stock_transactions", schema=None) as batch_op:
        batch_op.create_index(batch_op.f("ix_stock_transactions_type"), ["type"], unique=False)
        batch_op.create_index(batch_op.f("ix_stock_transactions_batch_number"), ["batch_number"], unique=False)
        batch_op.create_index(batch_op.f("ix_stock_transactions_expiration_date"), ["expiration_date"], unique=False)
        batch_op.create_index(batch_op.f("ix_stock_transactions_supplier_id"), ["supplier_id"], unique=False)
        batch_op.create_index(batch_op.f("ix_stock_transactions_reference_number"), ["reference_number"], unique=False)
        batch_op.create_index(batch_op.f("ix_stock_transactions_recipe_id"), ["recipe_id"], unique=False)
        batch_op.create_index(batch_op.f("ix_stock_transactions_is_active"), ["is_active"], unique=False)
        batch_op.create_index(batch_op.f("ix_stock_transactions_occurred_at"), ["occurred_at"], unique=False)
        batch_op.create_index("ix_stocktx_key", ["ingredient_id", "store_id", "warehouse_id"], unique=False)
        batch_op.create_index("ix_stocktx_store_occurred", ["store_id", "occurred_at"], unique=False)
        batch_op.create_index("ix_stocktx_owner_store", ["owner_id", "store_id"], unique=False)

    op.create_table(
        "stock_balances",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("balance_key", sa.String(length=255), nullable=False),
        sa.Column("ingredient_id", sa.Integer(), nullable=False),
        sa.Column("store_id", sa.Integer(), nullable=False),
        sa.Column("warehouse_id", sa.Integer(), nullable=False),
        sa.Column("batch_number", sa.String(length=100), nullable=True),
        sa.Column("expiration_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("quantity_milli", sa.BigInteger(), nullable=False),
        sa.Column("unit", sa.String(length=20), nullable=False),
        sa.Column("cost_per_unit_cents", sa.Integer(), nullable=True),
        sa.Column("min_stock_milli", sa.BigInteger(), nullable=True),
        sa.Column("max_stock_milli", sa.BigInteger(), nullable=True),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("supplier_id", sa.Integer(), nullable=True),
        sa.Column("temperature", sa.String(length=16), nullable=False),
        sa.Column("last_transaction_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_transaction_id", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("version_id", sa.Integer(), nullable=False),
        _created_at(),
        _updated_at(),
        sa.CheckConstraint("quantity_milli >= 0", name="ck_stockbal_non_negative"),
        sa.ForeignKeyConstraint(["ingredient_id"], ["ingredients.id"]),
        sa.ForeignKeyConstraint(["store_id"], ["stores.id"]),
        sa.ForeignKeyConstraint(["warehouse_id"], ["warehouses.id"]),
        sa.ForeignKeyConstraint(["supplier_id"], ["suppliers.id"]),
        sa.ForeignKeyConstraint(["last_transaction_id"], ["stock_transactions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("balance_key", name="uq_stock_balances_key"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("stock_balances", schema=None) as batch_op:
        batch_op.create_index(batch_op.f("ix_stock_balances_batch_number"), ["batch_number"], unique=False)
        batch_op.create_index(batch_op.f("ix_stock_balances_expiration_date"), ["expiration_date"], unique=False)
        batch_op.create_index(batch_op.f("ix_stock_balances_quantity_milli"), ["quantity_milli"], unique=False)
        batch_op.create_index(
            "ix_stockbal_lookup",
            ["ingredient_id", "store_id", "warehouse_id", "is_active"],
            unique=False,
        )
        batch_op.create_index("ix_stockbal_owner_store", ["owner_id", "store_id"], unique=False)


def downgrade():
    op.drop_table("stock_balances")
    op.drop_table("stock_transactions")
    op.drop_table("ingredients")
    op.drop_table("suppliers")
    op.drop_table("warehouses")
    op.drop_table("stores")
