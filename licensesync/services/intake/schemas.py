"""Canonical event shapes and HTTP request/response schemas for intake."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class PurchaseEvent(BaseModel):
    """Immutable, normalized purchase/payment notification."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(min_length=1)
    event_type: str
    occurred_at: datetime
    payer_id: str = Field(min_length=1)
    payer_email: str | None = None
    # "subscription" when the checkout created a recurring arrangement, else "payment".
    billing_mode: str = "payment"
    # Arrangement the purchase targets; set only when it already existed.
    billing_arrangement_id: str | None = None
    # Arrangement created by this purchase (new subscriptions).
    created_arrangement_id: str | None = None
    charge_ref: str | None = None
    amount: int = Field(default=0, ge=0)
    currency: str = Field(default="usd", min_length=3, max_length=3)
    metadata: dict[str, str] = Field(default_factory=dict)


class ArrangementUpdate(BaseModel):
    """Processor-side subscription state to mirror locally."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str
    arrangement_id: str
    payer_id: str
    status: str
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False


class QueueItemView(BaseModel):
    queue_id: str
    reference: str
    license_key: str
    status: str
    attempts: int
    max_attempts: int
    next_retry_at: str | None = None
    error_message: str | None = None
    billing_arrangement_id: str | None = None
    billing_item_id: str | None = None
    created_at: str | None = None
    processed_at: str | None = None


class QueueStatusResponse(BaseModel):
    """Per-purchase queue introspection returned by `GET /queue-status`."""

    reference: str
    total: int
    pending: int
    processing: int
    completed: int
    failed: int
    items: list[QueueItemView]


class ActivateLicenseRequest(BaseModel):
    resource_id: str = Field(min_length=1)


class LicenseResponse(BaseModel):
    license_key: str
    payer_id: str
    status: str
    billing_arrangement_id: str | None = None
    billing_item_id: str | None = None
    bound_resource_id: str | None = None
    purchase_kind: str
