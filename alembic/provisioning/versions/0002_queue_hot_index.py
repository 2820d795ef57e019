"""add queue and backlog hot-path indexes

Revision ID: 0002_provisioning_hot_index
Revises: 0001_provisioning
Create Date: 2026-10-19
"""

from alembic import op


revision = "0002_provisioning_hot_index"
down_revision = "0001_provisioning"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "ix_provisioning_queue_status_next_retry_created",
        "provisioning_queue",
        ["status", "next_retry_at", "created_at"],
    )
    op.create_index(
        "ix_reconciliation_tasks_status_created_at",
        "reconciliation_tasks",
        ["status", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_reconciliation_tasks_status_created_at", table_name="reconciliation_tasks")
    op.drop_index("ix_provisioning_queue_status_next_retry_created", table_name="provisioning_queue")
