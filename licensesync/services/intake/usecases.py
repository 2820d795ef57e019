"""Use-case router: classifies a `PurchaseEvent` into exactly one intent.

Rules are evaluated in order and the first match wins:

1. brand-new recurring arrangement (none bound yet)   -> NewSubscription
2. metadata tags a bulk quantity purchase             -> BulkQuantity
3. metadata tags an add to an existing arrangement    -> AddItem
4. anything else                                      -> NewSubscription (logged fallback)

Each intent is provisioned by exactly one notification type; the other type
for the same purchase is recognised as owned elsewhere and does nothing.
"""

from dataclasses import dataclass, field

from licensesync.common.config import settings
from licensesync.common.logging import logger
from licensesync.common.metrics import intents_routed_total
from licensesync.services.intake.normalizer import CHECKOUT_COMPLETED, PAYMENT_SUCCEEDED
from licensesync.services.intake.schemas import PurchaseEvent


BULK_TAGS = {"bulk", "quantity", "bulk_quantity"}
ADD_ITEM_TAGS = {"add_item", "add_to_existing", "add_site"}


@dataclass(frozen=True)
class NewSubscription:
    event: PurchaseEvent
    arrangement_id: str | None


@dataclass(frozen=True)
class BulkQuantity:
    event: PurchaseEvent
    quantity: int
    price_ref: str | None


@dataclass(frozen=True)
class AddItem:
    event: PurchaseEvent
    arrangement_id: str
    quantity: int
    price_ref: str | None
    resource_ids: tuple[str, ...] = field(default_factory=tuple)


Intent = NewSubscription | BulkQuantity | AddItem

INTENT_OWNERS: dict[type, str] = {
    NewSubscription: CHECKOUT_COMPLETED,
    AddItem: CHECKOUT_COMPLETED,
    BulkQuantity: PAYMENT_SUCCEEDED,
}


@dataclass(frozen=True)
class Routed:
    intent: Intent
    fallback: bool
    owner: str
    owned: bool

    @property
    def name(self) -> str:
        return type(self.intent).__name__


def _purchase_tag(event: PurchaseEvent) -> str:
    return (event.metadata.get("purchase_type") or event.metadata.get("use_case") or "").strip().lower()


def _price_ref(event: PurchaseEvent) -> str | None:
    return event.metadata.get("price_ref") or event.metadata.get("price_id")


def _resource_ids(event: PurchaseEvent) -> tuple[str, ...]:
    raw = event.metadata.get("resource_ids") or event.metadata.get("sites") or ""
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def classify(event: PurchaseEvent) -> tuple[Intent, bool]:
    """Return the intent and whether the fallback rule produced it."""

    tag = _purchase_tag(event)
    if event.billing_mode == "subscription" and not event.billing_arrangement_id:
        return NewSubscription(event=event, arrangement_id=event.created_arrangement_id), False
    if tag in BULK_TAGS:
        quantity = int(event.metadata.get("quantity", "1"))
        return BulkQuantity(event=event, quantity=quantity, price_ref=_price_ref(event)), False
    if tag in ADD_ITEM_TAGS and event.billing_arrangement_id:
        resource_ids = _resource_ids(event)
        quantity = int(event.metadata.get("quantity") or len(resource_ids) or 1)
        return (
            AddItem(
                event=event,
                arrangement_id=event.billing_arrangement_id,
                quantity=quantity,
                price_ref=_price_ref(event),
                resource_ids=resource_ids,
            ),
            False,
        )
    return NewSubscription(event=event, arrangement_id=event.created_arrangement_id), True


def route(event: PurchaseEvent) -> Routed:
    intent, fallback = classify(event)
    owner = INTENT_OWNERS[type(intent)]
    routed = Routed(intent=intent, fallback=fallback, owner=owner, owned=event.event_type == owner)
    if fallback:
        logger.warning(
            "unknown purchase intent, defaulting to NewSubscription event_id=%s event_type=%s tag=%s",
            event.event_id,
            event.event_type,
            _purchase_tag(event) or "<none>",
        )
    intents_routed_total.labels(
        service=settings.service_name, intent=routed.name, fallback=str(fallback).lower()
    ).inc()
    return routed
