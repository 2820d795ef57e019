"""Compensating actions for steps that cannot be undone transactionally.

Two classes of compensation exist:

* reversible steps (a cache write preceding a failed billing call) register a
  rollback on a `Saga` and are restored in reverse order, best-effort;
* irreversible financial steps (a queue item that exhausted its retries) are
  compensated with an automatic refund of that unit's price.
"""

from dataclasses import dataclass, field
from typing import Any, Callable

from licensesync.common.config import settings
from licensesync.common.logging import logger
from licensesync.common.metrics import refunds_total, rollbacks_total
from licensesync.common.retry import RetryPolicy
from licensesync.services.provisioning.errors import ProvisioningError
from licensesync.services.provisioning.models import ProvisioningQueueItem
from licensesync.services.provisioning.persistence import ProvisioningStore


@dataclass
class _Compensation:
    step: str
    action: Callable[..., Any]
    args: tuple = field(default_factory=tuple)


class Saga:
    """Ordered forward steps with their registered rollbacks."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._compensations: list[_Compensation] = []

    def on_rollback(self, step: str, action: Callable[..., Any], *args: Any) -> None:
        self._compensations.append(_Compensation(step=step, action=action, args=args))

    def compensate(self) -> bool:
        """Run every registered rollback, newest first. Returns True if all succeeded."""

        all_ok = True
        for compensation in reversed(self._compensations):
            try:
                compensation.action(*compensation.args)
                rollbacks_total.labels(
                    service=settings.service_name, step=compensation.step, outcome="restored"
                ).inc()
                logger.warning("rollback applied saga=%s step=%s", self.name, compensation.step)
            except Exception as exc:
                all_ok = False
                rollbacks_total.labels(
                    service=settings.service_name, step=compensation.step, outcome="failed"
                ).inc()
                logger.error("rollback failed saga=%s step=%s error=%s", self.name, compensation.step, exc)
        self._compensations.clear()
        return all_ok


class CompensationManager:
    """Issues refunds and cache restores on behalf of the engine and worker."""

    def __init__(self, store: ProvisioningStore, processor, retry: RetryPolicy | None = None) -> None:
        self.store = store
        self.processor = processor
        self.retry = retry or RetryPolicy()

    def restore_license_cache(self, payer_id: str, license_key: str, snapshot: dict[str, Any] | None) -> None:
        self.store.restore_cached_license(payer_id, license_key, snapshot)

    async def unit_price(self, item: ProvisioningQueueItem) -> tuple[int, str]:
        """Processor unit price when available, otherwise the even share of the charge."""

        if item.price_ref:
            try:
                price = await self.retry.run(self.processor.get_unit_price, item.price_ref)
                if price:
                    return price, "price"
            except ProvisioningError as exc:
                logger.warning("unit price lookup failed queue_id=%s error=%s", item.queue_id, exc)
        units = item.total_units or 1
        return item.total_amount // units, "share"

    async def refund_failed_item(self, item: ProvisioningQueueItem, reason: str) -> str:
        """Refund one exhausted unit and append the outcome to its error trail.

        Returns the trail entry that was written.
        """

        amount, basis = await self.unit_price(item)
        details = {
            "reason": reason[:450],
            "queue_id": item.queue_id,
            "attempts": item.attempts,
            "license_key": item.license_key,
            "price_basis": basis,
        }
        refund_id = None
        if not item.charge_ref or amount <= 0:
            status = "skipped"
            entry = f"refund_skipped: charge_ref={item.charge_ref} amount={amount}"
        else:
            try:
                result = await self.retry.run(
                    self.processor.refund,
                    item.charge_ref,
                    amount,
                    details,
                    idempotency_key=f"refund:{item.queue_id}",
                )
                refund_id = result["refund_id"]
                status = "succeeded"
                entry = f"refund={refund_id} amount={amount}"
            except ProvisioningError as exc:
                status = "failed"
                entry = f"refund_failed: {exc}"
        refunds_total.labels(service=settings.service_name, outcome=status).inc()
        log = logger.warning if status == "succeeded" else logger.error
        log(
            "compensation refund queue_id=%s status=%s amount=%s refund_id=%s",
            item.queue_id,
            status,
            amount,
            refund_id,
        )

        try:
            self.store.record_refund(
                payer_id=item.payer_id,
                amount=amount,
                currency=item.currency,
                status=status,
                reason=reason,
                refund_id=refund_id,
                charge_ref=item.charge_ref,
                queue_id=item.queue_id,
                license_key=item.license_key,
                attempts=item.attempts,
                details=details,
            )
        except Exception as exc:
            logger.error("refund_record_write_failed queue_id=%s error=%s", item.queue_id, exc)
            entry = f"{entry} (ledger write failed)"
        self.store.append_item_error(item.queue_id, entry)
        return entry
