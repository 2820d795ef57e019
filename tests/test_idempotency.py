"""Idempotency guard: one execution per key, replayed results afterwards."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update

from licensesync.services.provisioning.errors import OperationInFlight, TransientError
from licensesync.services.provisioning.idempotency import IdempotencyGuard
from licensesync.services.provisioning.models import IdempotencyRecord, utcnow


class SideEffect:
    def __init__(self, fail_first: int = 0):
        self.calls = 0
        self.fail_first = fail_first

    async def __call__(self):
        self.calls += 1
        await asyncio.sleep(0)
        if self.calls <= self.fail_first:
            raise TransientError("processor timeout")
        return {"status": "provisioned", "licenses": ["KEY-A"], "call": self.calls}


async def test_concurrent_duplicates_execute_once(store):
    guard = IdempotencyGuard(store, ttl_seconds=60)
    effect = SideEffect()

    outcomes = await asyncio.gather(*[guard.run("event:evt_1", effect) for _ in range(5)], return_exceptions=True)
    replays = [await guard.run("event:evt_1", effect) for _ in range(5)]

    results = [outcome for outcome in outcomes if isinstance(outcome, dict)]
    in_flight = [outcome for outcome in outcomes if isinstance(outcome, OperationInFlight)]
    assert effect.calls == 1
    assert len(results) == 1
    assert len(in_flight) == 4
    assert all(replay == results[0] for replay in replays)


async def test_failure_allows_a_later_retry(store):
    guard = IdempotencyGuard(store, ttl_seconds=60)
    effect = SideEffect(fail_first=1)

    with pytest.raises(TransientError):
        await guard.run("event:evt_2", effect)
    with store.session_factory() as db:
        assert db.get(IdempotencyRecord, "event:evt_2").status == "failed"

    result = await guard.run("event:evt_2", effect)

    assert result["call"] == 2
    with store.session_factory() as db:
        record = db.get(IdempotencyRecord, "event:evt_2")
        assert record.status == "completed"
        assert record.result == result


async def test_pending_record_blocks_until_it_expires(store):
    guard = IdempotencyGuard(store, ttl_seconds=60)
    effect = SideEffect()
    assert store.begin_operation("event:evt_3", 60) is None

    with pytest.raises(OperationInFlight):
        await guard.run("event:evt_3", effect)
    assert effect.calls == 0

    with store.session_factory() as db:
        db.execute(
            update(IdempotencyRecord)
            .where(IdempotencyRecord.operation_key == "event:evt_3")
            .values(expires_at=utcnow() - timedelta(seconds=1))
        )
        db.commit()

    result = await guard.run("event:evt_3", effect)

    assert effect.calls == 1
    assert result["status"] == "provisioned"


def test_purge_keeps_live_and_in_flight_records(store):
    store.begin_operation("event:old", 60)
    store.complete_operation("event:old", {"status": "provisioned"})
    store.begin_operation("event:stuck", 60)
    store.begin_operation("event:fresh", 600)
    store.complete_operation("event:fresh", {"status": "provisioned"})

    purged = store.purge_expired_operations(now=utcnow() + timedelta(seconds=120))

    assert purged == 1
    with store.session_factory() as db:
        assert db.get(IdempotencyRecord, "event:old") is None
        assert db.get(IdempotencyRecord, "event:stuck") is not None
        assert db.get(IdempotencyRecord, "event:fresh") is not None


def test_only_one_caller_takes_over_an_expired_record(store):
    store.begin_operation("event:evt_4", 60)
    store.fail_operation("event:evt_4", "boom")

    assert store.reclaim_operation("event:evt_4", 60) is True
    assert store.reclaim_operation("event:evt_4", 60) is False
