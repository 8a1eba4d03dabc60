"""
Ledger schema for the settlement worker.

This migration creates the tables used by the database ledgers: stock,
wallets, wallet_transactions, orders, positions and idempotency_keys.
They correspond to the SQLAlchemy metadata defined in
``workers/src/settlement/services/db_ledger.py``.

Revision ID: 20261018_ledgers
Revises:
Create Date: 2026-10-18
"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "20261018_ledgers"
down_revision = None
branch_labels = None
depends_on = None


def _amount() -> sa.Numeric:
    return sa.Numeric(precision=18, scale=8)


def upgrade() -> None:
    """Create the ledger tables."""
    op.create_table(
        "stock",
        sa.Column("asset_id", sa.String(), primary_key=True),
        sa.Column("available_quantity", _amount(), nullable=False, server_default="0"),
    )
    op.create_table(
        "wallets",
        sa.Column("user_id", sa.String(), primary_key=True),
        sa.Column("balance", _amount(), nullable=False, server_default="0"),
    )
    op.create_table(
        "wallet_transactions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("amount", _amount(), nullable=False),
        sa.Column("payment_method", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_wallet_transactions_user_id", "wallet_transactions", ["user_id"])
    op.create_table(
        "orders",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("asset_id", sa.String(), nullable=False),
        sa.Column("symbol", sa.String(), nullable=False),
        sa.Column("asset_type", sa.String(), nullable=False),
        sa.Column("side", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("quantity", _amount(), nullable=False),
        sa.Column("price", _amount(), nullable=False),
        sa.Column("total", _amount(), nullable=False),
        sa.Column("fees", _amount(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("reverses", sa.String(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_orders_user_id", "orders", ["user_id"])
    op.create_table(
        "positions",
        sa.Column("user_id", sa.String(), primary_key=True),
        sa.Column("asset_id", sa.String(), primary_key=True),
        sa.Column("symbol", sa.String(), nullable=False),
        sa.Column("asset_type", sa.String(), nullable=False),
        sa.Column("quantity", _amount(), nullable=False),
        sa.Column("average_cost", _amount(), nullable=False),
    )
    op.create_table(
        "idempotency_keys",
        sa.Column("key", sa.String(), primary_key=True),
        sa.Column("ledger", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
    )


def downgrade() -> None:
    """Drop the ledger tables."""
    op.drop_table("idempotency_keys")
    op.drop_table("positions")
    op.drop_index("ix_orders_user_id", table_name="orders")
    op.drop_table("orders")
    op.drop_index("ix_wallet_transactions_user_id", table_name="wallet_transactions")
    op.drop_table("wallet_transactions")
    op.drop_table("wallets")
    op.drop_table("stock")
