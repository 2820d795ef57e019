"""initial provisioning schema

Revision ID: 0001_provisioning
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_provisioning"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "licenses",
        sa.Column("license_key", sa.String(), nullable=False),
        sa.Column("payer_id", sa.String(), nullable=False),
        sa.Column("payer_email", sa.String(), nullable=True),
        sa.Column("billing_arrangement_id", sa.String(), nullable=True),
        sa.Column("billing_item_id", sa.String(), nullable=True),
        sa.Column("bound_resource_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("purchase_kind", sa.String(), nullable=False),
        sa.Column("source_reference", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("license_key"),
    )
    for column in (
        "payer_id",
        "payer_email",
        "billing_arrangement_id",
        "billing_item_id",
        "bound_resource_id",
        "status",
        "source_reference",
    ):
        op.create_index(f"ix_licenses_{column}", "licenses", [column])

    op.create_table(
        "provisioning_queue",
        sa.Column("queue_id", sa.String(), nullable=False),
        sa.Column("reference", sa.String(), nullable=False),
        sa.Column("operation", sa.String(), nullable=False),
        sa.Column("payer_id", sa.String(), nullable=False),
        sa.Column("payer_email", sa.String(), nullable=True),
        sa.Column("billing_arrangement_id", sa.String(), nullable=True),
        sa.Column("billing_item_id", sa.String(), nullable=True),
        sa.Column("price_ref", sa.String(), nullable=False),
        sa.Column("charge_ref", sa.String(), nullable=True),
        sa.Column("license_key", sa.String(), nullable=False),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("total_amount", sa.Integer(), nullable=False),
        sa.Column("total_units", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("queue_id"),
    )
    op.create_index("ix_provisioning_queue_reference", "provisioning_queue", ["reference"])
    op.create_index("ix_provisioning_queue_payer_id", "provisioning_queue", ["payer_id"])
    op.create_index("ix_provisioning_queue_license_key", "provisioning_queue", ["license_key"], unique=True)
    op.create_index("ix_provisioning_queue_status", "provisioning_queue", ["status"])
    op.create_index("ix_provisioning_queue_next_retry_at", "provisioning_queue", ["next_retry_at"])

    op.create_table(
        "idempotency_records",
        sa.Column("operation_key", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("result", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("operation_key"),
    )
    op.create_index("ix_idempotency_records_status", "idempotency_records", ["status"])
    op.create_index("ix_idempotency_records_expires_at", "idempotency_records", ["expires_at"])

    op.create_table(
        "billing_arrangements",
        sa.Column("arrangement_id", sa.String(), nullable=False),
        sa.Column("payer_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("arrangement_id"),
    )
    op.create_index("ix_billing_arrangements_payer_id", "billing_arrangements", ["payer_id"])
    op.create_index("ix_billing_arrangements_status", "billing_arrangements", ["status"])

    op.create_table(
        "billing_items",
        sa.Column("item_id", sa.String(), nullable=False),
        sa.Column("arrangement_id", sa.String(), nullable=True),
        sa.Column("license_key", sa.String(), nullable=False),
        sa.Column("price_ref", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("removed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("item_id"),
    )
    op.create_index("ix_billing_items_arrangement_id", "billing_items", ["arrangement_id"])
    op.create_index("ix_billing_items_license_key", "billing_items", ["license_key"])
    op.create_index("ix_billing_items_status", "billing_items", ["status"])

    op.create_table(
        "payment_records",
        sa.Column("record_id", sa.String(), nullable=False),
        sa.Column("payer_id", sa.String(), nullable=False),
        sa.Column("arrangement_id", sa.String(), nullable=True),
        sa.Column("charge_ref", sa.String(), nullable=True),
        sa.Column("source_event_id", sa.String(), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("record_id"),
        sa.UniqueConstraint("source_event_id", name="uq_payment_records_source_event"),
    )
    op.create_index("ix_payment_records_payer_id", "payment_records", ["payer_id"])
    op.create_index("ix_payment_records_arrangement_id", "payment_records", ["arrangement_id"])
    op.create_index("ix_payment_records_charge_ref", "payment_records", ["charge_ref"])

    op.create_table(
        "refunds",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("refund_id", sa.String(), nullable=True),
        sa.Column("charge_ref", sa.String(), nullable=True),
        sa.Column("payer_id", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("queue_id", sa.String(), nullable=True),
        sa.Column("license_key", sa.String(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("refund_id", name="uq_refunds_refund_id"),
    )
    op.create_index("ix_refunds_charge_ref", "refunds", ["charge_ref"])
    op.create_index("ix_refunds_payer_id", "refunds", ["payer_id"])
    op.create_index("ix_refunds_status", "refunds", ["status"])
    op.create_index("ix_refunds_queue_id", "refunds", ["queue_id"])
    op.create_index("ix_refunds_license_key", "refunds", ["license_key"])

    op.create_table(
        "webhook_events",
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("payer_id", sa.String(), nullable=True),
        sa.Column("arrangement_id", sa.String(), nullable=True),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("ix_webhook_events_event_type", "webhook_events", ["event_type"])
    op.create_index("ix_webhook_events_payer_id", "webhook_events", ["payer_id"])
    op.create_index("ix_webhook_events_arrangement_id", "webhook_events", ["arrangement_id"])

    op.create_table(
        "reconciliation_tasks",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_reconciliation_tasks_kind", "reconciliation_tasks", ["kind"])
    op.create_index("ix_reconciliation_tasks_status", "reconciliation_tasks", ["status"])


def downgrade() -> None:
    op.drop_table("reconciliation_tasks")
    op.drop_table("webhook_events")
    op.drop_table("refunds")
    op.drop_table("payment_records")
    op.drop_table("billing_items")
    op.drop_table("billing_arrangements")
    op.drop_table("idempotency_records")
    op.drop_table("provisioning_queue")
    op.drop_table("licenses")
