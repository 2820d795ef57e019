"""Payment-processor client (Stripe).

The processor is the source of truth for billing. This adapter exposes the
small surface the provisioning core needs and translates SDK exceptions into
the transient/permanent taxonomy so `RetryPolicy` can decide what to retry.
"""

from contextlib import contextmanager
from typing import Any, Iterator

import stripe

from licensesync.services.provisioning.errors import PermanentError, TransientError


TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)
PERMANENT_ERRORS = (
    stripe.InvalidRequestError,
    stripe.CardError,
    stripe.AuthenticationError,
    stripe.PermissionError,
    stripe.IdempotencyError,
)


@contextmanager
def translate_errors(operation: str) -> Iterator[None]:
    """Map Stripe SDK failures onto retryable/non-retryable domain errors."""

    try:
        yield
    except TRANSIENT_ERRORS as exc:
        raise TransientError(f"{operation} failed: {exc}") from exc
    except PERMANENT_ERRORS as exc:
        raise PermanentError(f"{operation} rejected: {exc}") from exc
    except stripe.StripeError as exc:
        status = getattr(exc, "http_status", None)
        if status is None or status >= 500:
            raise TransientError(f"{operation} failed: {exc}") from exc
        raise PermanentError(f"{operation} rejected: {exc}") from exc


def _field(obj: Any, name: str, default: Any = None) -> Any:
    try:
        value = obj[name]
    except (KeyError, TypeError, AttributeError):
        return default
    return default if value is None else value


def _plain(obj: Any) -> dict[str, Any]:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj or {})


def _stringify(metadata: dict[str, Any] | None) -> dict[str, str]:
    return {str(k): str(v) for k, v in (metadata or {}).items() if v is not None}


class StripeProcessor:
    """Billing operations against the Stripe API."""

    def __init__(self, api_key: str) -> None:
        stripe.api_key = api_key
        # Retries are owned by RetryPolicy.
        stripe.max_network_retries = 0

    def create_billing_item(
        self, arrangement_id: str, price_ref: str, metadata: dict[str, Any], idempotency_key: str
    ) -> dict[str, str]:
        """Attach one unit (quantity 1) to an existing subscription."""

        with translate_errors("create_billing_item"):
            item = stripe.SubscriptionItem.create(
                subscription=arrangement_id,
                price=price_ref,
                quantity=1,
                metadata=_stringify(metadata),
                proration_behavior="create_prorations",
                idempotency_key=idempotency_key,
            )
        return {"item_id": item["id"], "arrangement_id": arrangement_id}

    def create_arrangement(
        self,
        payer_id: str,
        price_ref: str,
        metadata: dict[str, Any],
        idempotency_key: str,
    ) -> dict[str, str]:
        """Create a one-unit subscription for an already-paid bulk unit."""

        with translate_errors("create_arrangement"):
            subscription = stripe.Subscription.create(
                customer=payer_id,
                items=[{"price": price_ref, "quantity": 1, "metadata": _stringify(metadata)}],
                metadata=_stringify(metadata),
                idempotency_key=idempotency_key,
            )
        items = _field(_field(subscription, "items", {}), "data", [])
        item_id = items[0]["id"] if items else None
        return {"arrangement_id": subscription["id"], "item_id": item_id}

    def create_charge(
        self, payer_id: str, amount: int, currency: str, metadata: dict[str, Any], idempotency_key: str
    ) -> dict[str, str]:
        with translate_errors("create_charge"):
            intent = stripe.PaymentIntent.create(
                customer=payer_id,
                amount=amount,
                currency=currency,
                metadata=_stringify(metadata),
                confirm=True,
                off_session=True,
                idempotency_key=idempotency_key,
            )
        return {"charge_ref": intent["id"], "status": _field(intent, "status", "unknown")}

    def refund(
        self, charge_ref: str, amount: int, metadata: dict[str, Any], idempotency_key: str
    ) -> dict[str, str]:
        target = {"payment_intent": charge_ref} if charge_ref.startswith("pi_") else {"charge": charge_ref}
        with translate_errors("refund"):
            refund = stripe.Refund.create(
                amount=amount,
                metadata=_stringify(metadata),
                idempotency_key=idempotency_key,
                **target,
            )
        return {"refund_id": refund["id"], "status": _field(refund, "status", "unknown")}

    def get_upcoming_charge(self, arrangement_id: str) -> dict[str, int]:
        with translate_errors("get_upcoming_charge"):
            preview = stripe.Invoice.create_preview(subscription=arrangement_id)
        return {"amount_due": int(_field(preview, "amount_due", 0))}

    def list_billing_items(self, arrangement_id: str) -> list[dict[str, Any]]:
        with translate_errors("list_billing_items"):
            listing = stripe.SubscriptionItem.list(subscription=arrangement_id, limit=100)
        items = []
        for item in _field(listing, "data", []):
            items.append(
                {
                    "item_id": item["id"],
                    "price_ref": _field(_field(item, "price", {}), "id"),
                    "quantity": int(_field(item, "quantity", 1)),
                    "metadata": _plain(_field(item, "metadata", {})),
                }
            )
        return items

    def delete_billing_item(self, item_id: str) -> dict[str, Any]:
        with translate_errors("delete_billing_item"):
            stripe.SubscriptionItem.delete(item_id, proration_behavior="create_prorations")
        return {"item_id": item_id, "deleted": True}

    def get_unit_price(self, price_ref: str) -> int | None:
        with translate_errors("get_unit_price"):
            price = stripe.Price.retrieve(price_ref)
        amount = _field(price, "unit_amount")
        return int(amount) if amount is not None else None
