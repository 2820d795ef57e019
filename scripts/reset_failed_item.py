"""Move one `failed` provisioning queue item back to `pending`.

This is the only way a failed item re-enters the queue. Attempts are
cleared and the reset is appended to the item's error trail. Check whether
a refund was already issued (see the trail) before resetting.
"""

import argparse
import json

from licensesync.common.cache import KeyValueCache
from licensesync.common.config import settings
from licensesync.common.db import SessionLocal
from licensesync.services.provisioning.persistence import ProvisioningStore, queue_item_view


def main() -> None:
    """CLI entrypoint for manual queue resets."""

    parser = argparse.ArgumentParser(description="Reset a failed provisioning queue item to pending.")
    parser.add_argument("--queue-id", required=True)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    store = ProvisioningStore(SessionLocal, KeyValueCache.from_url(settings.redis_url))
    item = store.get_queue_item(args.queue_id)
    if item is None:
        raise SystemExit(f"No queue item with queue_id={args.queue_id}")
    print(json.dumps(queue_item_view(item), indent=2))
    if item.status != "failed":
        raise SystemExit(f"Queue item is {item.status}; only failed items can be reset")
    if args.dry_run:
        print("Dry run only; no reset performed.")
        return

    if not store.reset_failed_item(args.queue_id):
        raise SystemExit("Reset lost a race with another writer; re-check the item")
    print(f"Reset queue_id={args.queue_id} to pending")


if __name__ == "__main__":
    main()
