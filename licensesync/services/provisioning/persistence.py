"""Persistence adapter over the relational store and the fast cache.

Every other provisioning component talks to storage only through
`ProvisioningStore`. Relational writes open one short session per call so a
single record is committed (or not) on its own; cache access goes through
`KeyValueCache`. The two atomic primitives the core relies on live here:
the unique-key insert of an idempotency record and the conditional
`pending -> processing` queue claim.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable
from uuid import uuid4

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError

from licensesync.common.backlog import update_backlog_metrics
from licensesync.common.cache import KeyValueCache, license_cache_key, sync_pending_key
from licensesync.common.logging import logger
from licensesync.common.metrics import queue_oldest_pending_age_seconds, queue_pending_total
from licensesync.common.state_machine import validate_transition
from licensesync.services.provisioning.models import (
    BillingArrangement,
    BillingItem,
    IdempotencyRecord,
    License,
    PaymentRecord,
    ProvisioningQueueItem,
    PurchaseUnit,
    ReconciliationTask,
    Refund,
    WebhookEvent,
    utcnow,
)


QUEUE_STATUSES = ("pending", "processing", "completed", "failed")


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_transient_db_error(exc: BaseException) -> bool:
    """Connection-level database failures are worth retrying; constraint errors are not."""

    if isinstance(exc, IntegrityError):
        return False
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


def license_document(license: License) -> dict[str, Any]:
    """Cache representation of one license."""

    return {
        "license_key": license.license_key,
        "payer_id": license.payer_id,
        "status": license.status,
        "billing_arrangement_id": license.billing_arrangement_id,
        "billing_item_id": license.billing_item_id,
        "bound_resource_id": license.bound_resource_id,
        "purchase_kind": license.purchase_kind,
    }


def queue_item_view(item: ProvisioningQueueItem) -> dict[str, Any]:
    return {
        "queue_id": item.queue_id,
        "reference": item.reference,
        "license_key": item.license_key,
        "status": item.status,
        "attempts": item.attempts,
        "max_attempts": item.max_attempts,
        "next_retry_at": as_utc(item.next_retry_at).isoformat() if item.next_retry_at else None,
        "error_message": item.error_message,
        "billing_arrangement_id": item.billing_arrangement_id,
        "billing_item_id": item.billing_item_id,
        "created_at": as_utc(item.created_at).isoformat() if item.created_at else None,
        "processed_at": as_utc(item.processed_at).isoformat() if item.processed_at else None,
    }


class ProvisioningStore:
    """Uniform storage interface used by the guard, engine, worker and sagas."""

    def __init__(self, session_factory, cache: KeyValueCache) -> None:
        self.session_factory = session_factory
        self.cache = cache

    # -- idempotency -------------------------------------------------------

    def begin_operation(self, operation_key: str, ttl_seconds: int) -> IdempotencyRecord | None:
        """Insert a `pending` record; return the existing record when the key is taken."""

        now = utcnow()
        with self.session_factory() as db:
            db.add(
                IdempotencyRecord(
                    operation_key=operation_key,
                    status="pending",
                    created_at=now,
                    expires_at=now + timedelta(seconds=ttl_seconds),
                )
            )
            try:
                db.commit()
                return None
            except IntegrityError:
                db.rollback()
        with self.session_factory() as db:
            return db.get(IdempotencyRecord, operation_key)

    def reclaim_operation(self, operation_key: str, ttl_seconds: int) -> bool:
        """Take over a failed or expired record; only one concurrent caller wins."""

        now = utcnow()
        with self.session_factory() as db:
            result = db.execute(
                update(IdempotencyRecord)
                .where(
                    IdempotencyRecord.operation_key == operation_key,
                    or_(IdempotencyRecord.status == "failed", IdempotencyRecord.expires_at < now),
                )
                .values(
                    status="pending",
                    result=None,
                    error=None,
                    created_at=now,
                    expires_at=now + timedelta(seconds=ttl_seconds),
                )
            )
            db.commit()
            return result.rowcount == 1

    def complete_operation(self, operation_key: str, result: dict[str, Any]) -> None:
        with self.session_factory() as db:
            db.execute(
                update(IdempotencyRecord)
                .where(IdempotencyRecord.operation_key == operation_key)
                .values(status="completed", result=result, error=None)
            )
            db.commit()

    def fail_operation(self, operation_key: str, error: str) -> None:
        with self.session_factory() as db:
            db.execute(
                update(IdempotencyRecord)
                .where(IdempotencyRecord.operation_key == operation_key)
                .values(status="failed", error=error[:2000])
            )
            db.commit()

    def purge_expired_operations(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        with self.session_factory() as db:
            expired = db.execute(
                select(IdempotencyRecord).where(
                    IdempotencyRecord.expires_at < now, IdempotencyRecord.status != "pending"
                )
            ).scalars().all()
            for record in expired:
                db.delete(record)
            db.commit()
            return len(expired)

    # -- audit log -----------------------------------------------------------

    def record_webhook_event(
        self,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        payer_id: str | None = None,
        arrangement_id: str | None = None,
    ) -> bool:
        """Durably record a verified notification. Returns False for a replayed id."""

        with self.session_factory() as db:
            db.add(
                WebhookEvent(
                    event_id=event_id,
                    event_type=event_type,
                    payer_id=payer_id,
                    arrangement_id=arrangement_id,
                    payload=payload,
                )
            )
            try:
                db.commit()
                return True
            except IntegrityError:
                db.rollback()
                return False

    # -- licenses ------------------------------------------------------------

    def keys_in_use(self, keys: Iterable[str]) -> set[str]:
        keys = list(keys)
        if not keys:
            return set()
        with self.session_factory() as db:
            licensed = db.execute(select(License.license_key).where(License.license_key.in_(keys))).scalars()
            queued = db.execute(
                select(ProvisioningQueueItem.license_key).where(ProvisioningQueueItem.license_key.in_(keys))
            ).scalars()
            planned = db.execute(select(PurchaseUnit.license_key).where(PurchaseUnit.license_key.in_(keys))).scalars()
            return set(licensed) | set(queued) | set(planned)

    def _planned_units(self, reference: str) -> dict[int, str]:
        with self.session_factory() as db:
            return {
                unit.unit_index: unit.license_key
                for unit in db.execute(select(PurchaseUnit).where(PurchaseUnit.reference == reference)).scalars()
            }

    def plan_purchase_units(
        self, reference: str, quantity: int, generate_keys: Callable[[int], list[str]]
    ) -> list[str]:
        """Return the license key of every unit, reusing the plan of an earlier run.

        Keys are committed before any billing call, so a rerun of the same
        purchase addresses the same licenses and processor idempotency keys.
        """

        planned = self._planned_units(reference)
        missing = [index for index in range(quantity) if index not in planned]
        if missing:
            fresh = dict(zip(missing, generate_keys(len(missing))))
            with self.session_factory() as db:
                db.add_all(
                    PurchaseUnit(reference=reference, unit_index=index, license_key=key)
                    for index, key in fresh.items()
                )
                try:
                    db.commit()
                    planned.update(fresh)
                except IntegrityError:
                    # A concurrent run planned the same purchase first.
                    db.rollback()
                    planned = self._planned_units(reference)
                    if any(index not in planned for index in range(quantity)):
                        raise
        return [planned[index] for index in range(quantity)]

    def get_license(self, license_key: str) -> License | None:
        with self.session_factory() as db:
            return db.get(License, license_key)

    def license_exists(self, license_key: str) -> bool:
        return self.get_license(license_key) is not None

    def find_license_by_resource(self, payer_id: str, resource_id: str) -> License | None:
        with self.session_factory() as db:
            return db.execute(
                select(License)
                .where(
                    License.payer_id == payer_id,
                    License.bound_resource_id == resource_id,
                    License.status == "active",
                )
                .order_by(License.created_at)
                .limit(1)
            ).scalar_one_or_none()

    def list_licenses(self, payer_id: str | None = None, reference: str | None = None) -> list[License]:
        query = select(License).order_by(License.created_at)
        if payer_id is not None:
            query = query.where(License.payer_id == payer_id)
        if reference is not None:
            query = query.where(License.source_reference == reference)
        with self.session_factory() as db:
            return list(db.execute(query).scalars().all())

    def record_provisioned_unit(
        self,
        license_key: str,
        payer_id: str,
        purchase_kind: str,
        billing_arrangement_id: str | None,
        billing_item_id: str | None,
        payer_email: str | None = None,
        bound_resource_id: str | None = None,
        price_ref: str | None = None,
        source_reference: str | None = None,
        arrangement_status: str | None = None,
    ) -> License:
        """Insert the license and its billing mirrors in one transaction.

        Re-running for an existing key, or for a billing item that already
        backs a license, is a no-op that returns the stored row.
        """

        with self.session_factory() as db:
            existing = db.get(License, license_key)
            if existing is not None:
                return existing
            if billing_item_id:
                mirrored = db.get(BillingItem, billing_item_id)
                if mirrored is not None and mirrored.license_key:
                    owner = db.get(License, mirrored.license_key)
                    if owner is not None:
                        return owner
            if (
                arrangement_status
                and billing_arrangement_id
                and db.get(BillingArrangement, billing_arrangement_id) is None
            ):
                db.add(
                    BillingArrangement(
                        arrangement_id=billing_arrangement_id, payer_id=payer_id, status=arrangement_status
                    )
                )
            license = License(
                license_key=license_key,
                payer_id=payer_id,
                payer_email=payer_email,
                billing_arrangement_id=billing_arrangement_id,
                billing_item_id=billing_item_id,
                bound_resource_id=bound_resource_id,
                status="active",
                purchase_kind=purchase_kind,
                source_reference=source_reference,
            )
            db.add(license)
            if billing_item_id and db.get(BillingItem, billing_item_id) is None:
                db.add(
                    BillingItem(
                        item_id=billing_item_id,
                        arrangement_id=billing_arrangement_id,
                        license_key=license_key,
                        price_ref=price_ref,
                        resource_id=bound_resource_id,
                    )
                )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                existing = db.get(License, license_key)
                if existing is None:
                    raise
                return existing
            return license

    def set_license_status(self, license_key: str, status: str) -> License:
        with self.session_factory() as db:
            license = db.get(License, license_key)
            if license is None:
                raise LookupError(f"license {license_key} not found")
            license.status = status
            license.updated_at = utcnow()
            if status == "inactive" and license.billing_item_id:
                item = db.get(BillingItem, license.billing_item_id)
                if item is not None and item.status != "removed":
                    item.status = "removed"
                    item.removed_at = utcnow()
            db.commit()
            return license

    def bind_license(self, license_key: str, resource_id: str) -> License:
        with self.session_factory() as db:
            license = db.get(License, license_key)
            if license is None:
                raise LookupError(f"license {license_key} not found")
            license.bound_resource_id = resource_id
            license.updated_at = utcnow()
            db.commit()
            return license

    def deactivate_arrangement_licenses(self, arrangement_id: str) -> list[License]:
        with self.session_factory() as db:
            licenses = db.execute(
                select(License).where(
                    License.billing_arrangement_id == arrangement_id, License.status == "active"
                )
            ).scalars().all()
            for license in licenses:
                license.status = "inactive"
                license.updated_at = utcnow()
            db.commit()
            return list(licenses)

    # -- billing mirrors -------------------------------------------------------

    def upsert_arrangement(
        self,
        arrangement_id: str,
        payer_id: str,
        status: str,
        current_period_start: datetime | None = None,
        current_period_end: datetime | None = None,
        cancel_at_period_end: bool = False,
    ) -> BillingArrangement:
        with self.session_factory() as db:
            arrangement = db.get(BillingArrangement, arrangement_id)
            if arrangement is None:
                arrangement = BillingArrangement(arrangement_id=arrangement_id, payer_id=payer_id, status=status)
                db.add(arrangement)
            arrangement.payer_id = payer_id
            arrangement.status = status
            arrangement.current_period_start = current_period_start or arrangement.current_period_start
            arrangement.current_period_end = current_period_end or arrangement.current_period_end
            arrangement.cancel_at_period_end = cancel_at_period_end
            arrangement.updated_at = utcnow()
            db.commit()
            return arrangement

    def get_arrangement(self, arrangement_id: str) -> BillingArrangement | None:
        with self.session_factory() as db:
            return db.get(BillingArrangement, arrangement_id)

    def record_payment(
        self,
        payer_id: str,
        amount: int,
        currency: str,
        arrangement_id: str | None = None,
        charge_ref: str | None = None,
        source_event_id: str | None = None,
        status: str = "succeeded",
    ) -> bool:
        """Append one ledger entry. A replayed source event is ignored."""

        with self.session_factory() as db:
            db.add(
                PaymentRecord(
                    payer_id=payer_id,
                    arrangement_id=arrangement_id,
                    charge_ref=charge_ref,
                    source_event_id=source_event_id,
                    amount=amount,
                    currency=currency,
                    status=status,
                )
            )
            try:
                db.commit()
                return True
            except IntegrityError:
                db.rollback()
                return False

    def list_payments(self, payer_id: str) -> list[PaymentRecord]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(PaymentRecord).where(PaymentRecord.payer_id == payer_id).order_by(PaymentRecord.created_at)
                ).scalars()
            )

    def record_refund(
        self,
        payer_id: str,
        amount: int,
        currency: str,
        status: str,
        reason: str,
        refund_id: str | None = None,
        charge_ref: str | None = None,
        queue_id: str | None = None,
        license_key: str | None = None,
        attempts: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> Refund:
        with self.session_factory() as db:
            refund = Refund(
                refund_id=refund_id,
                charge_ref=charge_ref,
                payer_id=payer_id,
                amount=amount,
                currency=currency,
                status=status,
                reason=reason,
                queue_id=queue_id,
                license_key=license_key,
                attempts=attempts,
                details=details,
            )
            db.add(refund)
            db.commit()
            return refund

    def list_refunds(self, queue_id: str) -> list[Refund]:
        with self.session_factory() as db:
            return list(db.execute(select(Refund).where(Refund.queue_id == queue_id)).scalars())

    # -- provisioning queue ----------------------------------------------------

    def enqueue_items(self, items: list[dict[str, Any]]) -> list[ProvisioningQueueItem]:
        """Insert queue rows for one purchase in a single transaction."""

        with self.session_factory() as db:
            rows = [ProvisioningQueueItem(**fields) for fields in items]
            db.add_all(rows)
            db.commit()
            return rows

    def get_queue_item(self, queue_id: str) -> ProvisioningQueueItem | None:
        with self.session_factory() as db:
            return db.get(ProvisioningQueueItem, queue_id)

    def select_due_items(self, now: datetime, limit: int) -> list[str]:
        """Oldest-first ids of pending items whose retry time has come."""

        with self.session_factory() as db:
            return list(
                db.execute(
                    select(ProvisioningQueueItem.queue_id)
                    .where(
                        ProvisioningQueueItem.status == "pending",
                        or_(
                            ProvisioningQueueItem.next_retry_at.is_(None),
                            ProvisioningQueueItem.next_retry_at <= now,
                        ),
                    )
                    .order_by(ProvisioningQueueItem.created_at, ProvisioningQueueItem.queue_id)
                    .limit(limit)
                ).scalars()
            )

    def _transition(
        self, db, queue_id: str, current: str, new: str, manual: bool = False, **values: Any
    ) -> bool:
        """Apply one validated queue transition guarded by the current status."""

        validate_transition(current, new, manual=manual)
        result = db.execute(
            update(ProvisioningQueueItem)
            .where(ProvisioningQueueItem.queue_id == queue_id, ProvisioningQueueItem.status == current)
            .values(status=new, updated_at=utcnow(), **values)
        )
        return result.rowcount == 1

    def claim_item(self, queue_id: str) -> ProvisioningQueueItem | None:
        """Atomically move one item `pending -> processing`; None if another worker won."""

        with self.session_factory() as db:
            claimed = self._transition(db, queue_id, "pending", "processing")
            db.commit()
            if not claimed:
                return None
            return db.get(ProvisioningQueueItem, queue_id)

    def complete_item(
        self, queue_id: str, billing_arrangement_id: str | None, billing_item_id: str | None
    ) -> None:
        with self.session_factory() as db:
            done = self._transition(
                db,
                queue_id,
                "processing",
                "completed",
                billing_arrangement_id=billing_arrangement_id,
                billing_item_id=billing_item_id,
                processed_at=utcnow(),
            )
            if not done:
                raise RuntimeError(f"queue item {queue_id} is no longer processing")
            db.commit()

    def schedule_retry(self, queue_id: str, attempts: int, next_retry_at: datetime, error: str) -> None:
        with self.session_factory() as db:
            done = self._transition(
                db,
                queue_id,
                "processing",
                "pending",
                attempts=attempts,
                next_retry_at=next_retry_at,
                error_message=error[:2000],
            )
            if not done:
                raise RuntimeError(f"queue item {queue_id} is no longer processing")
            db.commit()

    def fail_item(self, queue_id: str, attempts: int, error: str) -> None:
        with self.session_factory() as db:
            done = self._transition(
                db,
                queue_id,
                "processing",
                "failed",
                attempts=attempts,
                next_retry_at=None,
                error_message=error[:2000],
            )
            if not done:
                raise RuntimeError(f"queue item {queue_id} is no longer processing")
            db.commit()

    def append_item_error(self, queue_id: str, entry: str) -> None:
        with self.session_factory() as db:
            item = db.get(ProvisioningQueueItem, queue_id)
            if item is None:
                raise LookupError(f"queue item {queue_id} not found")
            trail = f"{item.error_message} | {entry}" if item.error_message else entry
            item.error_message = trail
            item.updated_at = utcnow()
            db.commit()

    def reclaim_stale_items(self, now: datetime, timeout_seconds: int) -> int:
        """Return `processing` items abandoned by a crashed worker to `pending`."""

        stale_before = now - timedelta(seconds=timeout_seconds)
        with self.session_factory() as db:
            stale = db.execute(
                select(ProvisioningQueueItem.queue_id).where(
                    ProvisioningQueueItem.status == "processing",
                    ProvisioningQueueItem.updated_at < stale_before,
                )
            ).scalars().all()
            reclaimed = 0
            for queue_id in stale:
                if self._transition(db, queue_id, "processing", "pending", next_retry_at=None):
                    reclaimed += 1
            db.commit()
            return reclaimed

    def reset_failed_item(self, queue_id: str) -> bool:
        """Manual `failed -> pending` re-entry with a fresh attempt budget."""

        with self.session_factory() as db:
            item = db.get(ProvisioningQueueItem, queue_id)
            if item is None or item.status != "failed":
                return False
            trail = f"{item.error_message} | manual_reset" if item.error_message else "manual_reset"
            done = self._transition(
                db,
                queue_id,
                "failed",
                "pending",
                manual=True,
                attempts=0,
                next_retry_at=None,
                error_message=trail,
            )
            db.commit()
            return done

    def queue_items_for(self, reference: str) -> list[ProvisioningQueueItem]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(ProvisioningQueueItem)
                    .where(ProvisioningQueueItem.reference == reference)
                    .order_by(ProvisioningQueueItem.created_at, ProvisioningQueueItem.queue_id)
                ).scalars()
            )

    def queue_status(self, reference: str) -> dict[str, Any]:
        items = self.queue_items_for(reference)
        counts = {status: 0 for status in QUEUE_STATUSES}
        for item in items:
            counts[item.status] = counts.get(item.status, 0) + 1
        return {
            "reference": reference,
            "total": len(items),
            **counts,
            "items": [queue_item_view(item) for item in items],
        }

    def update_queue_metrics(self, service_name: str) -> None:
        now = utcnow()
        open_statuses = ("pending", "processing")
        with self.session_factory() as db:
            table = ProvisioningQueueItem.__table__
            pending_count = db.execute(
                select(func.count()).select_from(table).where(table.c.status.in_(open_statuses))
            ).scalar_one()
            oldest = db.execute(select(func.min(table.c.created_at)).where(table.c.status.in_(open_statuses))).scalar_one()
            update_backlog_metrics(db, ReconciliationTask, service_name)
        age_seconds = 0.0
        if oldest is not None:
            age_seconds = max(0.0, (now - as_utc(oldest)).total_seconds())
        queue_pending_total.labels(service=service_name).set(float(pending_count))
        queue_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)

    # -- deferred reconciliation -------------------------------------------------

    def defer_reconciliation(self, kind: str, payload: dict[str, Any]) -> str:
        """Record persistence work for background retry.

        Falls back to a `sync_pending:` cache entry when the relational store
        itself is unreachable, so the work is never silently dropped.
        """

        task_id = str(uuid4())
        try:
            with self.session_factory() as db:
                db.add(ReconciliationTask(id=task_id, kind=kind, payload=payload))
                db.commit()
            logger.warning("reconciliation_deferred task_id=%s kind=%s", task_id, kind)
            return task_id
        except Exception as exc:
            logger.error("reconciliation_backlog_write_failed task_id=%s kind=%s error=%s", task_id, kind, exc)
        if not self.cache.safe_put(sync_pending_key(task_id), {"id": task_id, "kind": kind, "payload": payload}):
            logger.error("reconciliation_lost task_id=%s kind=%s payload=%s", task_id, kind, payload)
        return task_id

    def adopt_parked_reconciliations(self, limit: int = 100) -> int:
        """Move `sync_pending:` cache entries into the relational backlog."""

        adopted = 0
        for key in self.cache.scan("sync_pending:*", limit=limit):
            parked = self.cache.get(key)
            if not parked:
                continue
            with self.session_factory() as db:
                if db.get(ReconciliationTask, parked["id"]) is None:
                    db.add(ReconciliationTask(id=parked["id"], kind=parked["kind"], payload=parked["payload"]))
                    db.commit()
            self.cache.delete(key)
            adopted += 1
        return adopted

    # -- cache -------------------------------------------------------------------

    def get_cached_license(self, payer_id: str, license_key: str) -> dict[str, Any] | None:
        return self.cache.get(license_cache_key(payer_id, license_key))

    def put_cached_license(self, payer_id: str, license_key: str, document: dict[str, Any]) -> None:
        self.cache.put(license_cache_key(payer_id, license_key), document)

    def restore_cached_license(self, payer_id: str, license_key: str, snapshot: dict[str, Any] | None) -> None:
        key = license_cache_key(payer_id, license_key)
        if snapshot is None:
            self.cache.delete(key)
        else:
            self.cache.put(key, snapshot)

    def cache_license(self, license: License) -> bool:
        """Best-effort upsert of the fast-lookup copy."""

        return self.cache.safe_put(license_cache_key(license.payer_id, license.license_key), license_document(license))
