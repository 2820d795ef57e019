"""Signature verification and normalization of inbound processor events."""

import json
from datetime import datetime, timezone
from typing import Any

import stripe
from pydantic import ValidationError

from licensesync.common.config import settings
from licensesync.services.intake.schemas import ArrangementUpdate, PurchaseEvent
from licensesync.services.provisioning.errors import InvalidSignature, MalformedEvent, UnsupportedEvent


CHECKOUT_COMPLETED = "checkout.session.completed"
PAYMENT_SUCCEEDED = "payment_intent.succeeded"
ARRANGEMENT_UPDATED = "customer.subscription.updated"
ARRANGEMENT_DELETED = "customer.subscription.deleted"


def verify_event(payload: bytes, signature: str | None, secret: str | None = None, tolerance: int | None = None) -> dict:
    """Check the signature header against the raw body, then decode it."""

    if not signature:
        raise InvalidSignature("missing signature header")
    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"),
            signature,
            secret if secret is not None else settings.stripe_webhook_secret,
            tolerance if tolerance is not None else settings.webhook_tolerance_seconds,
        )
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
        raise InvalidSignature(f"signature verification failed: {exc}") from exc
    try:
        event = json.loads(payload)
    except ValueError as exc:
        raise MalformedEvent("body is not valid JSON") from exc
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise MalformedEvent("event envelope needs id and type")
    data_object = (event.get("data") or {}).get("object")
    if not isinstance(data_object, dict):
        raise MalformedEvent("event envelope has no data.object")
    return event


def _timestamp(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError) as exc:
        raise MalformedEvent(f"invalid timestamp {value!r}") from exc


def _reference(value: Any) -> str | None:
    """Expanded objects carry their id; unexpanded references are plain strings."""

    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _metadata(obj: dict) -> dict[str, str]:
    raw = obj.get("metadata") or {}
    if not isinstance(raw, dict):
        raise MalformedEvent("metadata must be an object")
    metadata = {str(k): str(v) for k, v in raw.items() if v is not None}
    if "quantity" in metadata:
        try:
            quantity = int(metadata["quantity"])
        except ValueError as exc:
            raise MalformedEvent(f"metadata quantity {metadata['quantity']!r} is not an integer") from exc
        if quantity < 1:
            raise MalformedEvent("metadata quantity must be at least 1")
    return metadata


def _from_checkout(event: dict, session: dict) -> PurchaseEvent:
    metadata = _metadata(session)
    details = session.get("customer_details") or {}
    mode = session.get("mode") or "payment"
    return PurchaseEvent(
        event_id=event["id"],
        event_type=event["type"],
        occurred_at=_timestamp(event.get("created")) or datetime.now(timezone.utc),
        payer_id=_reference(session.get("customer")) or "",
        payer_email=details.get("email") or session.get("customer_email"),
        billing_mode="subscription" if mode == "subscription" else "payment",
        billing_arrangement_id=metadata.get("arrangement_id") or metadata.get("subscription_id"),
        created_arrangement_id=_reference(session.get("subscription")) if mode == "subscription" else None,
        charge_ref=_reference(session.get("payment_intent")),
        amount=int(session.get("amount_total") or 0),
        currency=(session.get("currency") or "usd").lower(),
        metadata=metadata,
    )


def _from_payment_intent(event: dict, intent: dict) -> PurchaseEvent:
    metadata = _metadata(intent)
    return PurchaseEvent(
        event_id=event["id"],
        event_type=event["type"],
        occurred_at=_timestamp(event.get("created")) or datetime.now(timezone.utc),
        payer_id=_reference(intent.get("customer")) or "",
        payer_email=intent.get("receipt_email") or metadata.get("email"),
        billing_mode="payment",
        billing_arrangement_id=metadata.get("arrangement_id") or metadata.get("subscription_id"),
        charge_ref=intent.get("id"),
        amount=int(intent.get("amount_received") or intent.get("amount") or 0),
        currency=(intent.get("currency") or "usd").lower(),
        metadata=metadata,
    )


def _from_arrangement(event: dict, subscription: dict) -> ArrangementUpdate:
    # Newer API versions report billing periods per item.
    items = (subscription.get("items") or {}).get("data") or [{}]
    period_start = subscription.get("current_period_start") or items[0].get("current_period_start")
    period_end = subscription.get("current_period_end") or items[0].get("current_period_end")
    status = subscription.get("status") or ""
    if event["type"] == ARRANGEMENT_DELETED:
        status = "canceled"
    return ArrangementUpdate(
        event_id=event["id"],
        event_type=event["type"],
        arrangement_id=subscription.get("id") or "",
        payer_id=_reference(subscription.get("customer")) or "",
        status=status,
        current_period_start=_timestamp(period_start),
        current_period_end=_timestamp(period_end),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
    )


def normalize(event: dict) -> PurchaseEvent | ArrangementUpdate:
    """Map a verified event onto its canonical shape.

    Raises `UnsupportedEvent` for types this service ignores and
    `MalformedEvent` when required identifiers are missing.
    """

    event_type = event["type"]
    data_object = event["data"]["object"]
    parsers = {
        CHECKOUT_COMPLETED: _from_checkout,
        PAYMENT_SUCCEEDED: _from_payment_intent,
        ARRANGEMENT_UPDATED: _from_arrangement,
        ARRANGEMENT_DELETED: _from_arrangement,
    }
    parser = parsers.get(event_type)
    if parser is None:
        raise UnsupportedEvent(f"event type {event_type} is not handled")
    try:
        normalized = parser(event, data_object)
    except (ValidationError, ValueError, TypeError) as exc:
        raise MalformedEvent(f"{event_type} could not be normalized: {exc}") from exc
    if isinstance(normalized, ArrangementUpdate) and not (normalized.arrangement_id and normalized.payer_id):
        raise MalformedEvent(f"{event_type} is missing subscription or customer id")
    return normalized
