"""Reusable helpers for a claimable work backlog table.

These utilities are model-agnostic: any table with `id`, `kind`, `payload`,
`status`, `attempts`, `last_error`, `created_at` and `claimed_at` columns
(the deferred reconciliation table) can reuse the same claim/requeue/mark
logic.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_, select, update

from licensesync.common.metrics import reconciliation_pending_total


def claim_backlog_batch(db, backlog_model, limit: int = 100, processing_timeout_seconds: int = 300) -> list[dict]:
    """Atomically claim a batch of pending/stale rows for processing."""

    table = backlog_model.__table__
    now = datetime.now(timezone.utc)
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    claim_ids = (
        select(table.c.id)
        .where(
            or_(
                table.c.status == "PENDING",
                (table.c.status == "PROCESSING")
                & (table.c.claimed_at.is_not(None))
                & (table.c.claimed_at < stale_before),
            )
        )
        .order_by(table.c.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .cte("claim_ids")
    )
    rows = db.execute(
        update(table)
        .where(table.c.id.in_(select(claim_ids.c.id)))
        .values(status="PROCESSING", claimed_at=now, attempts=table.c.attempts + 1)
        .returning(table.c.id, table.c.kind, table.c.payload, table.c.attempts)
    ).all()
    return [{"id": row.id, "kind": row.kind, "payload": row.payload, "attempts": row.attempts} for row in rows]


def mark_backlog_applied(db, backlog_model, task_id: str) -> None:
    """Mark one claimed row as applied."""

    table = backlog_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == task_id, table.c.status == "PROCESSING")
        .values(status="APPLIED", claimed_at=datetime.now(timezone.utc), last_error=None)
    )


def requeue_backlog_task(db, backlog_model, task_id: str, error: str) -> None:
    """Return a claimed row to `PENDING` so it can be retried."""

    table = backlog_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == task_id, table.c.status == "PROCESSING")
        .values(status="PENDING", claimed_at=None, last_error=error[:1000])
    )


def park_backlog_task(db, backlog_model, task_id: str, error: str) -> None:
    """Take a claimed row out of rotation; it needs an operator."""

    table = backlog_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == task_id, table.c.status == "PROCESSING")
        .values(status="PARKED", last_error=error[:1000])
    )


def update_backlog_metrics(db, backlog_model, service_name: str) -> None:
    """Update the service-level gauge for unapplied backlog depth."""

    table = backlog_model.__table__
    pending_count = db.execute(
        select(func.count()).select_from(table).where(table.c.status.in_(("PENDING", "PROCESSING")))
    ).scalar_one()
    reconciliation_pending_total.labels(service=service_name).set(float(pending_count))
