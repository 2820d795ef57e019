"""Scheduled worker that drains the provisioning queue."""

import asyncio
from typing import Any, Awaitable, Callable

from licensesync.common.config import settings
from licensesync.common.logging import logger, queue_id_ctx, reference_ctx
from licensesync.common.tracing import tracer
from licensesync.services.provisioning.models import utcnow
from licensesync.services.provisioning.persistence import ProvisioningStore
from licensesync.services.provisioning.service import ProvisioningEngine


class QueueWorker:
    """Processes due queue items in bounded, oldest-first batches.

    Each item is claimed with a conditional `pending -> processing` update
    before any side effect, so overlapping ticks (or several processes)
    never provision the same item twice.
    """

    def __init__(
        self,
        store: ProvisioningStore,
        engine: ProvisioningEngine,
        batch_size: int | None = None,
        interval_seconds: float | None = None,
        processing_timeout_seconds: int | None = None,
        call_delay_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.engine = engine
        self.batch_size = batch_size or settings.queue_batch_size
        self.interval_seconds = interval_seconds or settings.queue_interval_seconds
        self.processing_timeout_seconds = processing_timeout_seconds or settings.queue_processing_timeout_seconds
        self.call_delay_seconds = (
            call_delay_seconds if call_delay_seconds is not None else settings.processor_call_delay_seconds
        )
        self.sleep = sleep

    async def run_once(self) -> dict[str, int]:
        """Process one batch. A run with nothing due performs no writes."""

        summary = {"selected": 0, "completed": 0, "retry": 0, "failed": 0, "skipped": 0}
        due = self.store.select_due_items(utcnow(), self.batch_size)
        if not due:
            return summary
        summary["selected"] = len(due)
        for index, queue_id in enumerate(due):
            item = self.store.claim_item(queue_id)
            if item is None:
                summary["skipped"] += 1
                continue
            queue_id_ctx.set(item.queue_id)
            reference_ctx.set(item.reference)
            with tracer.start_as_current_span("queue.process_item") as span:
                span.set_attribute("licensesync.queue_id", item.queue_id)
                span.set_attribute("licensesync.reference", item.reference)
                span.set_attribute("licensesync.attempt", item.attempts + 1)
                outcome = await self.engine.process_queue_item(item)
                span.set_attribute("licensesync.outcome", outcome)
            summary[outcome] += 1
            if index < len(due) - 1:
                await self.sleep(self.call_delay_seconds)
        queue_id_ctx.set("")
        logger.info("queue batch processed %s", summary)
        return summary

    def recover_stale_claims(self) -> int:
        reclaimed = self.store.reclaim_stale_items(utcnow(), self.processing_timeout_seconds)
        if reclaimed:
            logger.warning("stale queue claims returned to pending count=%s", reclaimed)
        return reclaimed

    async def run_forever(self) -> None:
        while True:
            try:
                self.recover_stale_claims()
                await self.run_once()
                self.store.update_queue_metrics(settings.service_name)
            except Exception as exc:
                logger.exception("queue worker tick failed: %s", exc)
            await asyncio.sleep(self.interval_seconds)
