"""initial dc purchase schema

Revision ID: 0001_dc_purchase
Revises:
Create Date: 2026-10-02
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_dc_purchase"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "dc_purchase_orders",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("oui", sa.Integer(), nullable=False),
        sa.Column("payer", sa.String(), nullable=False),
        sa.Column("escrow", sa.String(), nullable=False),
        sa.Column("usd_requested", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("state_version", sa.Integer(), server_default="0", nullable=False),
        sa.Column("coinbase_partner_user_ref", sa.String(length=48), nullable=False),
        sa.Column("coinbase_transaction_id", sa.String(), nullable=True),
        sa.Column("usdc_amount_received", sa.String(), nullable=True),
        sa.Column("usdc_signature", sa.String(), nullable=True),
        sa.Column("hnt_amount_received", sa.String(), nullable=True),
        sa.Column("jupiter_quote_json", sa.Text(), nullable=True),
        sa.Column("swap_tx_sig", sa.String(), nullable=True),
        sa.Column("mint_tx_sigs", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("dc_minted", sa.String(), nullable=True),
        sa.Column("delegate_tx_sig", sa.String(), nullable=True),
        sa.Column("dc_delegated", sa.String(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_dc_purchase_orders_oui", "dc_purchase_orders", ["oui"])
    op.create_index("ix_dc_purchase_orders_status", "dc_purchase_orders", ["status"])
    op.create_index(
        "ix_dc_purchase_orders_coinbase_partner_user_ref",
        "dc_purchase_orders",
        ["coinbase_partner_user_ref"],
        unique=True,
    )

    op.create_table(
        "dc_purchase_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("order_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.ForeignKeyConstraint(["order_id"], ["dc_purchase_orders.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_dc_purchase_events_order_id", "dc_purchase_events", ["order_id"])
    op.create_index("ix_dc_purchase_events_type", "dc_purchase_events", ["type"])

    op.create_table(
        "ouis",
        sa.Column("oui", sa.Integer(), autoincrement=False, nullable=False),
        sa.Column("owner", sa.String(), nullable=True),
        sa.Column("payer", sa.String(), nullable=True),
        sa.Column("escrow", sa.String(), nullable=True),
        sa.Column("delegate_keys", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("locked", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("oui"),
    )

    op.create_table(
        "oui_balances",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("oui", sa.Integer(), nullable=False),
        sa.Column("date", sa.String(length=10), nullable=False),
        sa.Column("balance_dc", sa.String(), nullable=False),
        sa.Column("fetched_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("oui", "date", name="uq_oui_balance_day"),
    )
    op.create_index("ix_oui_balances_oui", "oui_balances", ["oui"])


def downgrade() -> None:
    op.drop_index("ix_oui_balances_oui", table_name="oui_balances")
    op.drop_table("oui_balances")
    op.drop_table("ouis")
    op.drop_index("ix_dc_purchase_events_type", table_name="dc_purchase_events")
    op.drop_index("ix_dc_purchase_events_order_id", table_name="dc_purchase_events")
    op.drop_table("dc_purchase_events")
    op.drop_index("ix_dc_purchase_orders_coinbase_partner_user_ref", table_name="dc_purchase_orders")
    op.drop_index("ix_dc_purchase_orders_status", table_name="dc_purchase_orders")
    op.drop_index("ix_dc_purchase_orders_oui", table_name="dc_purchase_orders")
    op.drop_table("dc_purchase_orders")
