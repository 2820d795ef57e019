"""add per-purchase license key plan

Revision ID: 0003_purchase_units
Revises: 0002_provisioning_hot_index
Create Date: 2026-10-20
"""

from alembic import op
import sqlalchemy as sa


revision = "0003_purchase_units"
down_revision = "0002_provisioning_hot_index"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "purchase_units",
        sa.Column("reference", sa.String(), nullable=False),
        sa.Column("unit_index", sa.Integer(), nullable=False),
        sa.Column("license_key", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("reference", "unit_index"),
    )
    op.create_index("ix_purchase_units_license_key", "purchase_units", ["license_key"], unique=True)


def downgrade() -> None:
    op.drop_index("ix_purchase_units_license_key", table_name="purchase_units")
    op.drop_table("purchase_units")
