"""Background drain of work deferred after a partial failure.

Built-in kinds replay persistence writes that failed after billing
succeeded. Other components add kinds with `register`; intake uses this to
re-dispatch events whose first dispatch failed.
"""

import asyncio
from typing import Any, Awaitable, Callable

from licensesync.common.backlog import (
    claim_backlog_batch,
    mark_backlog_applied,
    park_backlog_task,
    requeue_backlog_task,
    update_backlog_metrics,
)
from licensesync.common.config import settings
from licensesync.common.logging import logger
from licensesync.services.provisioning.models import ReconciliationTask
from licensesync.services.provisioning.persistence import ProvisioningStore


Handler = Callable[[dict[str, Any]], Awaitable[Any]]


class Reconciler:
    """Replays deferred `license`, `payment` and `license_status` writes plus registered kinds."""

    def __init__(
        self,
        store: ProvisioningStore,
        batch_size: int | None = None,
        max_attempts: int | None = None,
        interval_seconds: float | None = None,
    ) -> None:
        self.store = store
        self.batch_size = batch_size or settings.reconcile_batch_size
        self.max_attempts = max_attempts or settings.reconcile_max_attempts
        self.interval_seconds = interval_seconds or settings.reconcile_interval_seconds
        self.handlers: dict[str, Handler] = {
            "license": self._apply_license,
            "payment": self._apply_payment,
            "license_status": self._apply_license_status,
        }

    def register(self, kind: str, handler: Handler) -> None:
        self.handlers[kind] = handler

    async def _apply_license(self, payload: dict) -> None:
        license = self.store.record_provisioned_unit(**payload)
        self.store.cache_license(license)

    async def _apply_payment(self, payload: dict) -> None:
        self.store.record_payment(**payload)

    async def _apply_license_status(self, payload: dict) -> None:
        license = self.store.set_license_status(payload["license_key"], payload["status"])
        self.store.cache_license(license)

    async def drain_once(self) -> dict[str, int]:
        summary = {"applied": 0, "requeued": 0, "parked": 0}
        self.store.adopt_parked_reconciliations(limit=self.batch_size)
        with self.store.session_factory() as db:
            tasks = claim_backlog_batch(db, ReconciliationTask, limit=self.batch_size)
            db.commit()
        for task in tasks:
            handler = self.handlers.get(task["kind"])
            try:
                if handler is None:
                    raise ValueError(f"unknown reconciliation kind {task['kind']}")
                await handler(task["payload"])
            except Exception as exc:
                # Parked tasks stay in the table for an operator.
                parked = handler is None or task["attempts"] >= self.max_attempts
                with self.store.session_factory() as db:
                    if parked:
                        park_backlog_task(db, ReconciliationTask, task["id"], str(exc))
                    else:
                        requeue_backlog_task(db, ReconciliationTask, task["id"], str(exc))
                    db.commit()
                summary["parked" if parked else "requeued"] += 1
                log = logger.error if parked else logger.warning
                log("reconciliation task not applied id=%s kind=%s parked=%s error=%s", task["id"], task["kind"], parked, exc)
                continue
            with self.store.session_factory() as db:
                mark_backlog_applied(db, ReconciliationTask, task["id"])
                db.commit()
            summary["applied"] += 1
        if tasks:
            logger.info("reconciliation batch %s", summary)
        return summary

    async def run_forever(self) -> None:
        while True:
            try:
                await self.drain_once()
                purged = self.store.purge_expired_operations()
                if purged:
                    logger.info("expired idempotency records purged count=%s", purged)
                with self.store.session_factory() as db:
                    update_backlog_metrics(db, ReconciliationTask, settings.service_name)
            except Exception as exc:
                logger.exception("reconciliation tick failed: %s", exc)
            await asyncio.sleep(self.interval_seconds)
