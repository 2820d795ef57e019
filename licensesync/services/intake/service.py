"""Webhook dispatch and the license operations exposed over HTTP."""

from typing import Any

from licensesync.common.config import settings
from licensesync.common.logging import event_id_ctx, logger, payer_id_ctx
from licensesync.common.metrics import webhook_events_total
from licensesync.common.retry import RetryPolicy
from licensesync.services.intake.normalizer import normalize, verify_event
from licensesync.services.intake.schemas import ArrangementUpdate, PurchaseEvent
from licensesync.services.intake.usecases import AddItem, BulkQuantity, NewSubscription, Routed, route
from licensesync.services.provisioning.errors import OperationInFlight, ProvisioningError, UnsupportedEvent
from licensesync.services.provisioning.idempotency import IdempotencyGuard
from licensesync.services.provisioning.persistence import ProvisioningStore, is_transient_db_error
from licensesync.services.provisioning.reversal import LicenseRemoval
from licensesync.services.provisioning.service import (
    ADD_ITEM,
    CREATE_ARRANGEMENT,
    MIRROR_ITEM,
    ProvisioningEngine,
    PurchaseRequest,
)


class IntakeService:
    """Single dispatch point from inbound events to provisioning."""

    def __init__(
        self,
        store: ProvisioningStore,
        engine: ProvisioningEngine,
        removal: LicenseRemoval,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.store = store
        self.engine = engine
        self.removal = removal
        self.db_retry = (retry or RetryPolicy()).with_predicate(is_transient_db_error, "database")
        self.event_guard = IdempotencyGuard(store, scope="event")
        self.removal_guard = IdempotencyGuard(store, scope="removal")

    async def handle_webhook(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """Verify, record and dispatch one notification.

        Only signature and payload problems raise; every accepted event
        answers with a status body so the sender does not redeliver. A
        dispatch that fails is recorded as an `event` reconciliation task.
        """

        raw_event = verify_event(payload, signature)
        event_id_ctx.set(raw_event["id"])
        event_type = raw_event["type"]
        try:
            normalized = normalize(raw_event)
        except UnsupportedEvent:
            webhook_events_total.labels(service=settings.service_name, event_type=event_type, outcome="ignored").inc()
            logger.info("unhandled event type ignored event_type=%s", event_type)
            return {"status": "ignored", "event_id": raw_event["id"], "event_type": event_type}

        payer_id_ctx.set(normalized.payer_id)
        arrangement_id = (
            normalized.arrangement_id
            if isinstance(normalized, ArrangementUpdate)
            else normalized.billing_arrangement_id or normalized.created_arrangement_id
        )
        await self.db_retry.run(
            self.store.record_webhook_event,
            raw_event["id"],
            event_type,
            raw_event,
            normalized.payer_id,
            arrangement_id,
        )

        try:
            result = await self.event_guard.run(f"event:{normalized.event_id}", lambda: self._dispatch(normalized))
            outcome = result.get("status", "processed")
        except OperationInFlight:
            outcome = "in_flight"
            result = {"status": "in_flight", "event_id": normalized.event_id}
        except Exception as exc:
            outcome = "deferred"
            result = self._defer_event(raw_event, exc)
        webhook_events_total.labels(service=settings.service_name, event_type=event_type, outcome=outcome).inc()
        return result

    def _defer_event(self, raw_event: dict[str, Any], exc: Exception) -> dict[str, Any]:
        """Hand a failed dispatch to the reconciler; it is replayed without a redelivery."""

        if isinstance(exc, ProvisioningError):
            logger.error("event provisioning failed event_id=%s code=%s error=%s", raw_event["id"], exc.code, exc)
            error = exc.to_body()["error"]
        else:
            logger.exception("event provisioning crashed event_id=%s: %s", raw_event["id"], exc)
            error = {"code": "internal_error", "message": f"{type(exc).__name__}: {exc}"}
        task_id = self.store.defer_reconciliation("event", {"event_id": raw_event["id"], "event": raw_event})
        return {"status": "deferred", "event_id": raw_event["id"], "task_id": task_id, "error": error}

    async def replay_event(self, payload: dict[str, Any]) -> None:
        """Dispatch a deferred event again through the same idempotency gate.

        Raises while the event still cannot be provisioned so the task stays
        in the reconciliation backlog.
        """

        raw_event = payload["event"]
        event_id_ctx.set(raw_event["id"])
        normalized = normalize(raw_event)
        payer_id_ctx.set(normalized.payer_id)
        result = await self.event_guard.run(f"event:{normalized.event_id}", lambda: self._dispatch(normalized))
        webhook_events_total.labels(
            service=settings.service_name, event_type=raw_event["type"], outcome="replayed"
        ).inc()
        logger.info("deferred event replayed event_id=%s status=%s", normalized.event_id, result.get("status"))

    async def _dispatch(self, event: PurchaseEvent | ArrangementUpdate) -> dict[str, Any]:
        if isinstance(event, ArrangementUpdate):
            return await self.engine.sync_arrangement(
                event.arrangement_id,
                event.payer_id,
                event.status,
                event.current_period_start,
                event.current_period_end,
                event.cancel_at_period_end,
            )

        routed = route(event)
        if not routed.owned:
            logger.info(
                "intent owned by another event type event_id=%s intent=%s owner=%s",
                event.event_id,
                routed.name,
                routed.owner,
            )
            return {"status": "skipped", "reason": "owned_elsewhere", "intent": routed.name, "owner": routed.owner}
        result = await self._provision(routed)
        result["fallback"] = routed.fallback
        return result

    async def _provision(self, routed: Routed) -> dict[str, Any]:
        intent = routed.intent
        event = intent.event
        base = {
            "reference": event.event_id,
            "intent": routed.name,
            "payer_id": event.payer_id,
            "payer_email": event.payer_email,
            "charge_ref": event.charge_ref,
            "total_amount": event.amount,
            "currency": event.currency,
        }
        if isinstance(intent, NewSubscription):
            return await self.engine.provision_new_subscription(
                PurchaseRequest(operation=MIRROR_ITEM, quantity=1, arrangement_id=intent.arrangement_id, **base)
            )
        if isinstance(intent, AddItem):
            return await self.engine.provision_add_item(
                PurchaseRequest(
                    operation=ADD_ITEM,
                    quantity=intent.quantity,
                    price_ref=intent.price_ref,
                    arrangement_id=intent.arrangement_id,
                    resource_ids=intent.resource_ids,
                    **base,
                )
            )
        if isinstance(intent, BulkQuantity):
            return await self.engine.provision_bulk(
                PurchaseRequest(
                    operation=CREATE_ARRANGEMENT,
                    quantity=intent.quantity,
                    price_ref=intent.price_ref,
                    **base,
                )
            )
        raise TypeError(f"unroutable intent {intent!r}")

    def queue_status(self, reference: str) -> dict[str, Any]:
        return self.store.queue_status(reference)

    async def activate_license(self, license_key: str, resource_id: str, payer_id: str | None) -> dict[str, Any]:
        payer_id_ctx.set(payer_id or "")
        return await self.engine.activate_license(license_key, resource_id, payer_id)

    async def remove_license(self, payer_id: str, license_key: str) -> dict[str, Any]:
        payer_id_ctx.set(payer_id)
        return await self.removal_guard.run(
            f"remove:{payer_id}:{license_key}", lambda: self.removal.remove(payer_id, license_key)
        )
