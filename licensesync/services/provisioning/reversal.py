"""User-initiated removal of a provisioned unit.

Steps run in a fixed order chosen to keep the rollback surface small:

1. snapshot the cached license,
2. mark it inactive in the cache (retried),
3. delete the billing item at the processor; on failure restore the snapshot
   and report a compensated failure,
4. update the relational store; on failure defer it for reconciliation.
"""

from typing import Any

from licensesync.common.cache import CacheError
from licensesync.common.logging import logger
from licensesync.common.retry import RetryPolicy
from licensesync.services.provisioning.compensation import CompensationManager, Saga
from licensesync.services.provisioning.errors import (
    CompensatedFailure,
    LicenseNotFound,
    LicenseStateConflict,
    PermanentError,
    ProvisioningError,
)
from licensesync.services.provisioning.persistence import ProvisioningStore, is_transient_db_error, license_document


class LicenseRemoval:
    def __init__(
        self,
        store: ProvisioningStore,
        processor,
        retry: RetryPolicy | None = None,
        compensation: CompensationManager | None = None,
    ) -> None:
        self.store = store
        self.processor = processor
        self.retry = retry or RetryPolicy()
        self.cache_retry = self.retry.with_predicate(lambda exc: isinstance(exc, CacheError), "cache")
        self.db_retry = self.retry.with_predicate(is_transient_db_error, "database")
        self.compensation = compensation or CompensationManager(store, processor, self.retry)

    async def remove(self, payer_id: str, license_key: str) -> dict[str, Any]:
        license = await self.db_retry.run(self.store.get_license, license_key)
        if license is None or license.payer_id != payer_id:
            raise LicenseNotFound(f"license {license_key} not found")
        if license.status != "active":
            raise LicenseStateConflict(f"license {license_key} is already {license.status}")
        if not license.billing_item_id:
            raise PermanentError(f"license {license_key} has no billing item", code="billing_item_missing")

        saga = Saga("license_removal")
        cache_state = "skipped"
        try:
            snapshot = await self.cache_retry.run(self.store.get_cached_license, payer_id, license_key)
            removed = {**(snapshot or license_document(license)), "status": "inactive"}
            await self.cache_retry.run(self.store.put_cached_license, payer_id, license_key, removed)
            saga.on_rollback("cache_license", self.compensation.restore_license_cache, payer_id, license_key, snapshot)
            cache_state = "updated"
        except CacheError as exc:
            logger.warning("removal cache update skipped license_key=%s error=%s", license_key, exc)

        try:
            await self.retry.run(self.processor.delete_billing_item, license.billing_item_id)
        except ProvisioningError as exc:
            restored = saga.compensate()
            logger.error(
                "billing item removal failed license_key=%s rolled_back=%s error=%s", license_key, restored, exc
            )
            raise CompensatedFailure(f"billing item removal failed: {exc.message}", rolled_back=restored) from exc

        store_state = "updated"
        try:
            await self.db_retry.run(self.store.set_license_status, license_key, "inactive")
        except Exception as exc:
            logger.error("license deactivation deferred license_key=%s error=%s", license_key, exc)
            self.store.defer_reconciliation("license_status", {"license_key": license_key, "status": "inactive"})
            store_state = "deferred"

        logger.info("license removed license_key=%s cache=%s store=%s", license_key, cache_state, store_state)
        return {
            "status": "removed",
            "license_key": license_key,
            "billing_item_id": license.billing_item_id,
            "cache": cache_state,
            "store": store_state,
        }
