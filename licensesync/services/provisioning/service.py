"""Provisioning engine: turns a classified purchase into licenses.

Small purchases are provisioned synchronously. Purchases larger than
`sync_unit_threshold` get one queue row per unit; the first
`sync_slice_size` rows are claimed and provisioned in-request and the rest
are left `pending` for `QueueWorker`. Every unit runs the same unit of work:
existence check, processor call, per-record persistence, cache upsert.
"""

from dataclasses import dataclass, replace
from datetime import timedelta
from time import perf_counter
from typing import Any

from licensesync.common.cache import license_cache_key
from licensesync.common.config import settings
from licensesync.common.logging import logger, reference_ctx
from licensesync.common.metrics import licenses_provisioned_total, provisioning_latency_seconds, queue_items_total
from licensesync.common.retry import RetryPolicy, backoff_seconds
from licensesync.services.provisioning.compensation import CompensationManager
from licensesync.services.provisioning.errors import (
    LicenseNotFound,
    LicenseStateConflict,
    PermanentError,
    ProvisioningError,
)
from licensesync.services.provisioning.license_keys import generate_unique_keys
from licensesync.services.provisioning.models import License, ProvisioningQueueItem, utcnow
from licensesync.services.provisioning.persistence import (
    ProvisioningStore,
    as_utc,
    is_transient_db_error,
    license_document,
)


# Billing-side action performed for one unit.
ADD_ITEM = "add_item"
CREATE_ARRANGEMENT = "create_arrangement"
MIRROR_ITEM = "mirror_item"


@dataclass(frozen=True)
class PurchaseRequest:
    """One paid purchase, already classified and ready to provision."""

    reference: str
    intent: str
    operation: str
    payer_id: str
    quantity: int
    price_ref: str | None = None
    payer_email: str | None = None
    arrangement_id: str | None = None
    charge_ref: str | None = None
    total_amount: int = 0
    currency: str = "usd"
    resource_ids: tuple[str, ...] = ()
    purchase_kind: str = "immediate"


@dataclass(frozen=True)
class UnitOfWork:
    """Everything needed to provision exactly one license."""

    reference: str
    operation: str
    payer_id: str
    license_key: str
    price_ref: str | None = None
    payer_email: str | None = None
    billing_arrangement_id: str | None = None
    billing_item_id: str | None = None
    resource_id: str | None = None
    purchase_kind: str = "immediate"

    @classmethod
    def from_queue_item(cls, item: ProvisioningQueueItem) -> "UnitOfWork":
        return cls(
            reference=item.reference,
            operation=item.operation,
            payer_id=item.payer_id,
            license_key=item.license_key,
            price_ref=item.price_ref,
            payer_email=item.payer_email,
            billing_arrangement_id=item.billing_arrangement_id,
            billing_item_id=item.billing_item_id,
            resource_id=item.resource_id,
            purchase_kind="bulk" if item.operation == CREATE_ARRANGEMENT else "immediate",
        )


class ProvisioningEngine:
    """Synchronous provisioning plus the per-item step shared with the worker."""

    def __init__(
        self,
        store: ProvisioningStore,
        processor,
        retry: RetryPolicy | None = None,
        db_retry: RetryPolicy | None = None,
        compensation: CompensationManager | None = None,
        sync_unit_threshold: int | None = None,
        sync_slice_size: int | None = None,
        queue_max_attempts: int | None = None,
        queue_backoff_base_seconds: int | None = None,
        key_prefix: str | None = None,
    ) -> None:
        self.store = store
        self.processor = processor
        self.retry = retry or RetryPolicy()
        self.db_retry = db_retry or self.retry.with_predicate(is_transient_db_error, "database")
        self.compensation = compensation or CompensationManager(store, processor, self.retry)
        self.sync_unit_threshold = sync_unit_threshold or settings.sync_unit_threshold
        self.sync_slice_size = sync_slice_size or settings.sync_slice_size
        self.queue_max_attempts = queue_max_attempts or settings.queue_max_attempts
        self.queue_backoff_base_seconds = queue_backoff_base_seconds or settings.queue_backoff_base_seconds
        self.key_prefix = key_prefix or settings.license_key_prefix

    # -- intents -----------------------------------------------------------------

    async def provision_new_subscription(self, request: PurchaseRequest) -> dict[str, Any]:
        """Mirror a freshly created arrangement: one license per billing item."""

        if not request.arrangement_id:
            raise PermanentError("new subscription has no billing arrangement", code="arrangement_missing")
        items = await self.retry.run(self.processor.list_billing_items, request.arrangement_id)
        if not items:
            raise PermanentError(
                f"arrangement {request.arrangement_id} has no billing items", code="arrangement_empty"
            )
        return await self.provision_purchase(replace(request, quantity=len(items)), items=items)

    async def provision_add_item(self, request: PurchaseRequest) -> dict[str, Any]:
        result = await self.provision_purchase(request)
        try:
            upcoming = await self.retry.run(self.processor.get_upcoming_charge, request.arrangement_id)
            result["amount_due"] = upcoming["amount_due"]
        except ProvisioningError as exc:
            logger.warning("upcoming charge lookup failed arrangement_id=%s error=%s", request.arrangement_id, exc)
        return result

    async def provision_bulk(self, request: PurchaseRequest) -> dict[str, Any]:
        return await self.provision_purchase(replace(request, purchase_kind="bulk"))

    # -- purchase ----------------------------------------------------------------

    async def provision_purchase(
        self, request: PurchaseRequest, items: list[dict[str, Any]] | None = None
    ) -> dict[str, Any]:
        if request.quantity < 1:
            raise PermanentError("quantity must be at least 1", code="invalid_quantity")
        started = perf_counter()
        reference_ctx.set(request.reference)
        await self._record_payment(request)

        # A rerun of the same purchase gets the keys of the first run back.
        keys = await self.db_retry.run(
            self.store.plan_purchase_units, request.reference, request.quantity, self._new_keys
        )
        units = [self._unit(request, key, index, items) for index, key in enumerate(keys)]

        # Mirroring existing items makes no processor calls, so it never needs the queue.
        if request.operation == MIRROR_ITEM or request.quantity <= self.sync_unit_threshold:
            provisioned, deferred = await self._provision_inline(request, units)
        else:
            provisioned, deferred = await self._provision_sliced(request, units)

        provisioning_latency_seconds.labels(service=settings.service_name, intent=request.intent).observe(
            perf_counter() - started
        )
        status = "provisioned" if not deferred else "partially_queued"
        if not provisioned:
            status = "queued"
        logger.info(
            "purchase provisioned reference=%s intent=%s units=%s sync=%s queued=%s",
            request.reference,
            request.intent,
            request.quantity,
            len(provisioned),
            deferred,
        )
        return {
            "status": status,
            "reference": request.reference,
            "intent": request.intent,
            "units": request.quantity,
            "licenses": provisioned,
            "queued": deferred,
        }

    def _new_keys(self, count: int) -> list[str]:
        return generate_unique_keys(count, self.store.keys_in_use, prefix=self.key_prefix)

    def _unit(
        self, request: PurchaseRequest, license_key: str, index: int, items: list[dict[str, Any]] | None
    ) -> UnitOfWork:
        item = items[index] if items else {}
        metadata = item.get("metadata") or {}
        resource_id = metadata.get("resource_id") or metadata.get("site")
        if resource_id is None and index < len(request.resource_ids):
            resource_id = request.resource_ids[index]
        return UnitOfWork(
            reference=request.reference,
            operation=request.operation,
            payer_id=request.payer_id,
            license_key=license_key,
            price_ref=item.get("price_ref") or request.price_ref,
            payer_email=request.payer_email,
            billing_arrangement_id=request.arrangement_id,
            billing_item_id=item.get("item_id"),
            resource_id=resource_id,
            purchase_kind=request.purchase_kind,
        )

    def _queue_fields(self, request: PurchaseRequest, unit: UnitOfWork, **overrides: Any) -> dict[str, Any]:
        fields = {
            "reference": request.reference,
            "operation": unit.operation,
            "payer_id": unit.payer_id,
            "payer_email": unit.payer_email,
            "billing_arrangement_id": unit.billing_arrangement_id,
            "billing_item_id": unit.billing_item_id,
            "price_ref": unit.price_ref,
            "charge_ref": request.charge_ref,
            "license_key": unit.license_key,
            "resource_id": unit.resource_id,
            "total_amount": request.total_amount,
            "total_units": request.quantity,
            "currency": request.currency,
            "status": "pending",
            "attempts": 0,
            "max_attempts": self.queue_max_attempts,
        }
        fields.update(overrides)
        return fields

    async def _provision_inline(
        self, request: PurchaseRequest, units: list[UnitOfWork]
    ) -> tuple[list[str], int]:
        """Provision every unit now; units that still fail are handed to the queue.

        Units an earlier run already queued are left to the worker.
        """

        queued = {
            row.license_key: row.status
            for row in await self.db_retry.run(self.store.queue_items_for, request.reference)
        }
        provisioned: list[str] = []
        waiting = 0
        failed: list[dict[str, Any]] = []
        for unit in units:
            if unit.license_key in queued:
                if queued[unit.license_key] == "completed":
                    provisioned.append(unit.license_key)
                else:
                    waiting += 1
                continue
            try:
                result = await self.provision_unit(unit, path="sync")
                provisioned.append(result["license_key"])
            except Exception as exc:
                logger.warning(
                    "sync provisioning failed, queueing license_key=%s error=%s", unit.license_key, exc
                )
                failed.append(
                    self._queue_fields(
                        request,
                        unit,
                        attempts=1,
                        next_retry_at=utcnow() + timedelta(seconds=self.retry_delay(1)),
                        error_message=f"{type(exc).__name__}: {exc}",
                    )
                )
        if failed:
            await self.db_retry.run(self.store.enqueue_items, failed)
        return provisioned, waiting + len(failed)

    async def _provision_sliced(
        self, request: PurchaseRequest, units: list[UnitOfWork]
    ) -> tuple[list[str], int]:
        """Queue every unit not queued yet, then claim and run the first due slice in-request."""

        existing = await self.db_retry.run(self.store.queue_items_for, request.reference)
        queued_keys = {row.license_key for row in existing}
        fresh = [self._queue_fields(request, unit) for unit in units if unit.license_key not in queued_keys]
        if fresh:
            await self.db_retry.run(self.store.enqueue_items, fresh)
        rows = {
            row.license_key: row
            for row in await self.db_retry.run(self.store.queue_items_for, request.reference)
        }

        now = utcnow()
        provisioned: list[str] = []
        due: list[ProvisioningQueueItem] = []
        for unit in units:
            row = rows[unit.license_key]
            if row.status == "completed":
                provisioned.append(row.license_key)
            elif row.status == "pending" and (row.next_retry_at is None or as_utc(row.next_retry_at) <= now):
                due.append(row)
        for row in due[: self.sync_slice_size]:
            item = self.store.claim_item(row.queue_id)
            if item is None:
                continue
            if await self.process_queue_item(item, path="sync") == "completed":
                provisioned.append(item.license_key)
        return provisioned, len(units) - len(provisioned)

    async def _record_payment(self, request: PurchaseRequest) -> None:
        if request.total_amount <= 0:
            return
        payment = {
            "payer_id": request.payer_id,
            "amount": request.total_amount,
            "currency": request.currency,
            "arrangement_id": request.arrangement_id,
            "charge_ref": request.charge_ref,
            "source_event_id": request.reference,
        }
        try:
            await self.db_retry.run(self.store.record_payment, **payment)
        except Exception as exc:
            logger.error("payment record failed reference=%s error=%s", request.reference, exc)
            self.store.defer_reconciliation("payment", payment)

    # -- unit of work --------------------------------------------------------------

    async def provision_unit(self, unit: UnitOfWork, path: str = "sync") -> dict[str, Any]:
        """Provision one license. Re-running for an existing key changes nothing."""

        existing = await self.db_retry.run(self.store.get_license, unit.license_key)
        if existing is not None:
            logger.info("license already provisioned license_key=%s", unit.license_key)
            return {
                "license_key": existing.license_key,
                "billing_arrangement_id": existing.billing_arrangement_id,
                "billing_item_id": existing.billing_item_id,
                "persisted": True,
            }

        arrangement_id, item_id = await self._billing_call(unit)
        license = await self._persist_unit(unit, arrangement_id, item_id)
        licenses_provisioned_total.labels(
            service=settings.service_name, purchase_kind=unit.purchase_kind, path=path
        ).inc()
        return {
            "license_key": license.license_key if license is not None else unit.license_key,
            "billing_arrangement_id": arrangement_id,
            "billing_item_id": item_id,
            "persisted": license is not None,
        }

    async def _billing_call(self, unit: UnitOfWork) -> tuple[str | None, str | None]:
        metadata = {
            "license_key": unit.license_key,
            "payer_id": unit.payer_id,
            "reference": unit.reference,
            "resource_id": unit.resource_id,
        }
        if unit.operation == MIRROR_ITEM:
            return unit.billing_arrangement_id, unit.billing_item_id
        if not unit.price_ref:
            raise PermanentError(f"no price for license {unit.license_key}", code="price_missing")
        if unit.operation == ADD_ITEM:
            if not unit.billing_arrangement_id:
                raise PermanentError("add_item needs a billing arrangement", code="arrangement_missing")
            result = await self.retry.run(
                self.processor.create_billing_item,
                unit.billing_arrangement_id,
                unit.price_ref,
                metadata,
                idempotency_key=f"item:{unit.license_key}",
            )
            return unit.billing_arrangement_id, result["item_id"]
        if unit.operation == CREATE_ARRANGEMENT:
            result = await self.retry.run(
                self.processor.create_arrangement,
                unit.payer_id,
                unit.price_ref,
                metadata,
                idempotency_key=f"arrangement:{unit.license_key}",
            )
            return result["arrangement_id"], result["item_id"]
        raise PermanentError(f"unknown provisioning operation {unit.operation}", code="unknown_operation")

    async def _persist_unit(
        self, unit: UnitOfWork, arrangement_id: str | None, item_id: str | None
    ) -> License | None:
        """Persist after billing succeeded. Failures are deferred, never rolled back.

        Returns the stored license, which is the earlier one when the billing
        item already backs a license, or None when the write was deferred.
        """

        fields = {
            "license_key": unit.license_key,
            "payer_id": unit.payer_id,
            "purchase_kind": unit.purchase_kind,
            "billing_arrangement_id": arrangement_id,
            "billing_item_id": item_id,
            "payer_email": unit.payer_email,
            "bound_resource_id": unit.resource_id,
            "price_ref": unit.price_ref,
            "source_reference": unit.reference,
            "arrangement_status": "active" if unit.operation in (CREATE_ARRANGEMENT, MIRROR_ITEM) else None,
        }
        try:
            license = await self.db_retry.run(self.store.record_provisioned_unit, **fields)
        except Exception as exc:
            logger.error(
                "license persistence failed after billing succeeded license_key=%s error=%s", unit.license_key, exc
            )
            self.store.defer_reconciliation("license", fields)
            self.store.cache.safe_put(
                license_cache_key(unit.payer_id, unit.license_key),
                {
                    "license_key": unit.license_key,
                    "payer_id": unit.payer_id,
                    "status": "active",
                    "billing_arrangement_id": arrangement_id,
                    "billing_item_id": item_id,
                    "bound_resource_id": unit.resource_id,
                    "purchase_kind": unit.purchase_kind,
                },
            )
            return None
        self.store.cache_license(license)
        return license

    # -- queue items -----------------------------------------------------------------

    def retry_delay(self, attempts: int) -> float:
        return backoff_seconds(attempts, self.queue_backoff_base_seconds)

    async def process_queue_item(self, item: ProvisioningQueueItem, path: str = "queue") -> str:
        """Run one claimed item to `completed`, a scheduled retry, or `failed` plus refund."""

        try:
            result = await self.provision_unit(UnitOfWork.from_queue_item(item), path=path)
        except Exception as exc:
            outcome = await self._record_item_failure(item, exc)
            queue_items_total.labels(service=settings.service_name, outcome=outcome).inc()
            return outcome
        self.store.complete_item(item.queue_id, result["billing_arrangement_id"], result["billing_item_id"])
        queue_items_total.labels(service=settings.service_name, outcome="completed").inc()
        return "completed"

    async def _record_item_failure(self, item: ProvisioningQueueItem, exc: Exception) -> str:
        attempts = item.attempts + 1
        error = f"{type(exc).__name__}: {exc}"
        if attempts < item.max_attempts:
            next_retry_at = utcnow() + timedelta(seconds=self.retry_delay(attempts))
            self.store.schedule_retry(item.queue_id, attempts, next_retry_at, error)
            logger.warning(
                "queue_item_retry queue_id=%s attempts=%s next_retry_at=%s error=%s",
                item.queue_id,
                attempts,
                next_retry_at.isoformat(),
                error,
            )
            return "retry"

        self.store.fail_item(item.queue_id, attempts, error)
        logger.error("queue_item_failed queue_id=%s attempts=%s error=%s", item.queue_id, attempts, error)
        item.attempts = attempts
        item.error_message = error
        await self.compensation.refund_failed_item(item, error)
        return "failed"

    # -- arrangement and license lifecycle ---------------------------------------------

    async def sync_arrangement(
        self,
        arrangement_id: str,
        payer_id: str,
        status: str,
        current_period_start=None,
        current_period_end=None,
        cancel_at_period_end: bool = False,
    ) -> dict[str, Any]:
        await self.db_retry.run(
            self.store.upsert_arrangement,
            arrangement_id,
            payer_id,
            status,
            current_period_start,
            current_period_end,
            cancel_at_period_end,
        )
        deactivated: list[str] = []
        if status == "canceled":
            licenses = await self.db_retry.run(self.store.deactivate_arrangement_licenses, arrangement_id)
            for license in licenses:
                self.store.cache_license(license)
                deactivated.append(license.license_key)
            logger.info("arrangement canceled arrangement_id=%s deactivated=%s", arrangement_id, len(deactivated))
        return {
            "status": "synced",
            "arrangement_id": arrangement_id,
            "arrangement_status": status,
            "deactivated": deactivated,
        }

    async def activate_license(
        self, license_key: str, resource_id: str, payer_id: str | None = None
    ) -> dict[str, Any]:
        """Bind an active license to the resource it will be used on."""

        license = await self.db_retry.run(self.store.get_license, license_key)
        if license is None or (payer_id is not None and license.payer_id != payer_id):
            raise LicenseNotFound(f"license {license_key} not found")
        if license.status != "active":
            raise LicenseStateConflict(f"license {license_key} is {license.status}")
        if license.bound_resource_id and license.bound_resource_id != resource_id:
            raise LicenseStateConflict(f"license {license_key} is bound to another resource")
        if license.bound_resource_id != resource_id:
            holder = await self.db_retry.run(self.store.find_license_by_resource, license.payer_id, resource_id)
            if holder is not None and holder.license_key != license_key:
                raise LicenseStateConflict(f"resource {resource_id} already uses license {holder.license_key}")
            license = await self.db_retry.run(self.store.bind_license, license_key, resource_id)
        self.store.cache_license(license)
        return license_document(license)
