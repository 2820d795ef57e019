"""Provisioning database models.

The relational store keeps the historical/queryable side of every purchase:
licenses, queue items, idempotency records, billing mirrors, the payment and
refund ledgers, the webhook audit log and the deferred reconciliation backlog.
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from licensesync.common.db import Base, JsonDocument


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class License(Base):
    """Activation credential bound to one purchased unit."""

    __tablename__ = "licenses"

    license_key: Mapped[str] = mapped_column(String, primary_key=True)
    payer_id: Mapped[str] = mapped_column(String, index=True)
    payer_email: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    billing_arrangement_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    billing_item_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    bound_resource_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    status: Mapped[str] = mapped_column(String, default="active", index=True)
    purchase_kind: Mapped[str] = mapped_column(String, default="immediate")
    source_reference: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )


class ProvisioningQueueItem(Base):
    """One unit of deferred provisioning work."""

    __tablename__ = "provisioning_queue"

    queue_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    reference: Mapped[str] = mapped_column(String, index=True)
    operation: Mapped[str] = mapped_column(String)
    payer_id: Mapped[str] = mapped_column(String, index=True)
    payer_email: Mapped[str | None] = mapped_column(String, nullable=True)
    billing_arrangement_id: Mapped[str | None] = mapped_column(String, nullable=True)
    billing_item_id: Mapped[str | None] = mapped_column(String, nullable=True)
    price_ref: Mapped[str] = mapped_column(String)
    charge_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    license_key: Mapped[str] = mapped_column(String, unique=True, index=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    total_amount: Mapped[int] = mapped_column(Integer, default=0)
    total_units: Mapped[int] = mapped_column(Integer, default=1)
    currency: Mapped[str] = mapped_column(String(3), default="usd")
    status: Mapped[str] = mapped_column(String, default="pending", index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class IdempotencyRecord(Base):
    """Gate guaranteeing at-most-once execution per operation key."""

    __tablename__ = "idempotency_records"

    operation_key: Mapped[str] = mapped_column(String, primary_key=True)
    status: Mapped[str] = mapped_column(String, index=True)
    result: Mapped[dict | None] = mapped_column(JsonDocument, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class BillingArrangement(Base):
    """Mirror of a processor-side subscription."""

    __tablename__ = "billing_arrangements"

    arrangement_id: Mapped[str] = mapped_column(String, primary_key=True)
    payer_id: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str] = mapped_column(String, index=True)
    current_period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )


class BillingItem(Base):
    """Mirror of a processor-side subscription item (one per unit)."""

    __tablename__ = "billing_items"

    item_id: Mapped[str] = mapped_column(String, primary_key=True)
    arrangement_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    license_key: Mapped[str] = mapped_column(String, index=True)
    price_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="active", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    removed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PaymentRecord(Base):
    """Append-only ledger entry per successful charge."""

    __tablename__ = "payment_records"

    record_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    payer_id: Mapped[str] = mapped_column(String, index=True)
    arrangement_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    charge_ref: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    source_event_id: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    amount: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    status: Mapped[str] = mapped_column(String, default="succeeded")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class Refund(Base):
    """Automatic refund attempt issued by compensation."""

    __tablename__ = "refunds"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    refund_id: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    charge_ref: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    payer_id: Mapped[str] = mapped_column(String, index=True)
    amount: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    status: Mapped[str] = mapped_column(String, index=True)
    reason: Mapped[str] = mapped_column(Text)
    queue_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    license_key: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    attempts: Mapped[int | None] = mapped_column(Integer, nullable=True)
    details: Mapped[dict | None] = mapped_column("metadata", JsonDocument, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class WebhookEvent(Base):
    """Audit trail of every verified inbound notification."""

    __tablename__ = "webhook_events"

    event_id: Mapped[str] = mapped_column(String, primary_key=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    payer_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    arrangement_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    payload: Mapped[dict] = mapped_column(JsonDocument)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class ReconciliationTask(Base):
    """Persistence work deferred after the billing side already succeeded."""

    __tablename__ = "reconciliation_tasks"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    kind: Mapped[str] = mapped_column(String, index=True)
    payload: Mapped[dict] = mapped_column(JsonDocument)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PurchaseUnit(Base):
    """License key planned for one unit of a purchase, written before any billing call."""

    __tablename__ = "purchase_units"

    reference: Mapped[str] = mapped_column(String, primary_key=True)
    unit_index: Mapped[int] = mapped_column(Integer, primary_key=True)
    license_key: Mapped[str] = mapped_column(String, unique=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
