"""add processing lease columns to orders

Revision ID: 0002_dc_purchase_claim
Revises: 0001_dc_purchase
Create Date: 2026-10-09
"""

from alembic import op
import sqlalchemy as sa


revision = "0002_dc_purchase_claim"
down_revision = "0001_dc_purchase"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("dc_purchase_orders", sa.Column("claim_token", sa.String(), nullable=True))
    op.add_column("dc_purchase_orders", sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True))
    # Sweep scans non-terminal orders oldest first.
    op.create_index(
        "ix_dc_purchase_orders_status_created_at",
        "dc_purchase_orders",
        ["status", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_dc_purchase_orders_status_created_at", table_name="dc_purchase_orders")
    op.drop_column("dc_purchase_orders", "claimed_at")
    op.drop_column("dc_purchase_orders", "claim_token")
