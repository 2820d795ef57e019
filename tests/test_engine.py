"""Synchronous provisioning path, deferred reconciliation, license lifecycle."""

from dataclasses import replace

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from licensesync.services.provisioning.errors import (
    LicenseNotFound,
    LicenseStateConflict,
    PermanentError,
    TransientError,
)
from licensesync.services.provisioning.models import BillingArrangement, BillingItem, PaymentRecord, ReconciliationTask
from licensesync.services.provisioning.reconciliation import Reconciler
from licensesync.services.provisioning.service import (
    ADD_ITEM,
    MIRROR_ITEM,
    PurchaseRequest,
    UnitOfWork,
)


def add_item_request(quantity=3, reference="evt_add"):
    return PurchaseRequest(
        reference=reference,
        intent="AddItem",
        operation=ADD_ITEM,
        payer_id="cus_1",
        quantity=quantity,
        price_ref="price_site",
        arrangement_id="sub_1",
        charge_ref="pi_add",
        total_amount=3000,
        currency="usd",
        resource_ids=("a.com", "b.com", "c.com"),
    )


async def test_add_item_provisions_one_license_per_unit(engine, store, processor):
    result = await engine.provision_add_item(add_item_request())

    assert result["status"] == "provisioned"
    assert result["amount_due"] == 1234
    assert len(result["licenses"]) == 3
    licenses = store.list_licenses(reference="evt_add")
    assert sorted(lic.bound_resource_id for lic in licenses) == ["a.com", "b.com", "c.com"]
    created = [detail for method, detail in processor.calls if method == "create_billing_item"]
    assert created == [f"item:{key}" for key in result["licenses"]]
    for lic in licenses:
        cached = store.get_cached_license("cus_1", lic.license_key)
        assert cached["status"] == "active"
        assert cached["billing_item_id"] == lic.billing_item_id
    with store.session_factory() as db:
        assert len(db.execute(select(BillingItem)).scalars().all()) == 3
        payments = db.execute(select(PaymentRecord)).scalars().all()
    assert [(p.amount, p.source_event_id) for p in payments] == [(3000, "evt_add")]


async def test_transient_processor_error_is_retried(engine, processor, sleeps):
    processor.fail_next("create_billing_item", TransientError("timeout"), TransientError("503"))

    result = await engine.provision_add_item(add_item_request(quantity=1, reference="evt_retry"))

    assert result["status"] == "provisioned"
    assert sleeps == [1.0, 2.0]


async def test_exhausted_sync_unit_is_handed_to_the_queue(engine, store, processor):
    processor.fail_always("create_billing_item", TransientError("processor down"))

    result = await engine.provision_add_item(add_item_request(quantity=1, reference="evt_down"))

    status = store.queue_status("evt_down")
    assert result["status"] == "queued"
    assert status["pending"] == 1
    assert status["items"][0]["attempts"] == 1
    assert store.list_licenses(reference="evt_down") == []


async def test_rerunning_an_existing_license_is_a_noop(engine, processor):
    unit = UnitOfWork(
        reference="evt_x",
        operation=ADD_ITEM,
        payer_id="cus_1",
        license_key="KEY-AAAA-BBBB-CCCC-DDDD",
        price_ref="price_site",
        billing_arrangement_id="sub_1",
    )

    first = await engine.provision_unit(unit)
    second = await engine.provision_unit(unit)

    assert first["billing_item_id"] == second["billing_item_id"]
    assert len([call for call in processor.calls if call[0] == "create_billing_item"]) == 1


async def test_permanent_error_is_not_retried(engine, processor, sleeps):
    unit = UnitOfWork(
        reference="evt_bad",
        operation=ADD_ITEM,
        payer_id="cus_1",
        license_key="KEY-BBBB-BBBB-CCCC-DDDD",
        price_ref="price_gone",
        billing_arrangement_id="sub_1",
    )
    processor.fail_next("create_billing_item", PermanentError("no such price"))

    with pytest.raises(PermanentError):
        await engine.provision_unit(unit)
    assert sleeps == []


async def test_new_subscription_mirrors_existing_items(engine, store, processor):
    processor.arrangement_items["sub_new"] = [
        {"item_id": "si_a", "price_ref": "price_site", "quantity": 1, "metadata": {"site": "a.com"}},
        {"item_id": "si_b", "price_ref": "price_site", "quantity": 1, "metadata": {"site": "b.com"}},
    ]
    request = PurchaseRequest(
        reference="evt_new",
        intent="NewSubscription",
        operation=MIRROR_ITEM,
        payer_id="cus_1",
        quantity=1,
        arrangement_id="sub_new",
        total_amount=2000,
    )

    result = await engine.provision_new_subscription(request)

    assert result["units"] == 2
    licenses = store.list_licenses(reference="evt_new")
    assert sorted((lic.billing_item_id, lic.bound_resource_id) for lic in licenses) == [
        ("si_a", "a.com"),
        ("si_b", "b.com"),
    ]
    assert not [call for call in processor.calls if call[0] == "create_billing_item"]
    assert store.get_arrangement("sub_new").status == "active"


async def test_new_subscription_without_items_is_permanent(engine):
    request = PurchaseRequest(
        reference="evt_empty",
        intent="NewSubscription",
        operation=MIRROR_ITEM,
        payer_id="cus_1",
        quantity=1,
        arrangement_id="sub_empty",
    )

    with pytest.raises(PermanentError):
        await engine.provision_new_subscription(request)


async def test_persistence_failure_after_billing_is_deferred_not_rolled_back(engine, store, processor, monkeypatch):
    def database_down(**_):
        raise OperationalError("INSERT INTO licenses", {}, Exception("connection refused"))

    original = store.record_provisioned_unit
    monkeypatch.setattr(store, "record_provisioned_unit", database_down)

    result = await engine.provision_add_item(add_item_request(quantity=1, reference="evt_defer"))

    key = result["licenses"][0]
    assert result["status"] == "provisioned"
    assert processor.side_effects == [("create_billing_item", f"item:{key}")]
    assert store.get_license(key) is None
    assert store.get_cached_license("cus_1", key)["status"] == "active"
    with store.session_factory() as db:
        tasks = db.execute(select(ReconciliationTask)).scalars().all()
    assert [task.kind for task in tasks] == ["license"]

    monkeypatch.setattr(store, "record_provisioned_unit", original)
    summary = await Reconciler(store, batch_size=10, max_attempts=3).drain_once()

    assert summary["applied"] == 1
    assert store.get_license(key).billing_item_id is not None


async def test_reconciliation_adopts_tasks_parked_in_cache(store, redis_client):
    store.cache.put(
        "sync_pending:task-1",
        {
            "id": "task-1",
            "kind": "payment",
            "payload": {"payer_id": "cus_1", "amount": 500, "currency": "usd", "source_event_id": "evt_parked"},
        },
    )

    summary = await Reconciler(store, batch_size=10, max_attempts=3).drain_once()

    assert summary["applied"] == 1
    assert redis_client.get("sync_pending:task-1") is None
    assert [p.amount for p in store.list_payments("cus_1")] == [500]


async def test_activation_binds_resource(engine, store):
    result = await engine.provision_add_item(add_item_request(quantity=1, reference="evt_act"))
    key = result["licenses"][0]
    assert store.get_license(key).bound_resource_id == "a.com"

    again = await engine.activate_license(key, "a.com", payer_id="cus_1")
    assert again["bound_resource_id"] == "a.com"
    with pytest.raises(LicenseStateConflict):
        await engine.activate_license(key, "other.com", payer_id="cus_1")
    with pytest.raises(LicenseNotFound):
        await engine.activate_license(key, "a.com", payer_id="cus_2")


async def test_activation_of_unbound_license(engine, store):
    store.record_provisioned_unit(
        license_key="KEY-CCCC-BBBB-CCCC-DDDD",
        payer_id="cus_1",
        purchase_kind="bulk",
        billing_arrangement_id="sub_9",
        billing_item_id="si_9",
    )

    result = await engine.activate_license("KEY-CCCC-BBBB-CCCC-DDDD", "new.com")

    assert result["bound_resource_id"] == "new.com"
    assert store.get_cached_license("cus_1", "KEY-CCCC-BBBB-CCCC-DDDD")["bound_resource_id"] == "new.com"


async def test_canceled_arrangement_deactivates_licenses(engine, store):
    result = await engine.provision_add_item(add_item_request(quantity=2, reference="evt_cancel"))

    synced = await engine.sync_arrangement("sub_1", "cus_1", "canceled")

    assert sorted(synced["deactivated"]) == sorted(result["licenses"])
    for key in result["licenses"]:
        assert store.get_license(key).status == "inactive"
        assert store.get_cached_license("cus_1", key)["status"] == "inactive"
    with store.session_factory() as db:
        assert db.get(BillingArrangement, "sub_1").status == "canceled"


async def test_resource_already_holding_a_license_is_rejected(engine, store):
    result = await engine.provision_add_item(add_item_request(quantity=1, reference="evt_held"))
    store.record_provisioned_unit(
        license_key="KEY-DDDD-BBBB-CCCC-DDDD",
        payer_id="cus_1",
        purchase_kind="bulk",
        billing_arrangement_id="sub_9",
        billing_item_id="si_10",
    )

    with pytest.raises(LicenseStateConflict):
        await engine.activate_license("KEY-DDDD-BBBB-CCCC-DDDD", "a.com", payer_id="cus_1")
    assert store.get_license(result["licenses"][0]).bound_resource_id == "a.com"


def flaky_after_first_call(fn, calls):
    def wrapper(*args, **kwargs):
        calls.append(args)
        if len(calls) > 1:
            raise OperationalError("SELECT licenses", {}, Exception("connection reset"))
        return fn(*args, **kwargs)

    return wrapper


def queue_unavailable(_items):
    raise OperationalError("INSERT INTO provisioning_queue", {}, Exception("connection reset"))


async def test_rerun_after_partial_failure_bills_each_unit_once(engine, store, processor, monkeypatch):
    request = add_item_request(quantity=2, reference="evt_partial")
    get_license, enqueue_items = store.get_license, store.enqueue_items
    monkeypatch.setattr(store, "get_license", flaky_after_first_call(get_license, []))
    monkeypatch.setattr(store, "enqueue_items", queue_unavailable)

    with pytest.raises(OperationalError):
        await engine.provision_add_item(request)
    assert len(store.list_licenses(reference="evt_partial")) == 1

    monkeypatch.setattr(store, "get_license", get_license)
    monkeypatch.setattr(store, "enqueue_items", enqueue_items)
    result = await engine.provision_add_item(request)

    licenses = store.list_licenses(reference="evt_partial")
    assert result["status"] == "provisioned"
    assert sorted(result["licenses"]) == sorted(lic.license_key for lic in licenses)
    assert sorted(lic.bound_resource_id for lic in licenses) == ["a.com", "b.com"]
    assert processor.side_effects == [("create_billing_item", f"item:{key}") for key in result["licenses"]]
    with store.session_factory() as db:
        assert len(db.execute(select(BillingItem)).scalars().all()) == 2


async def test_database_error_on_one_unit_queues_that_unit(engine, store, processor, monkeypatch):
    monkeypatch.setattr(store, "get_license", flaky_after_first_call(store.get_license, []))

    result = await engine.provision_add_item(add_item_request(quantity=2, reference="evt_db_blip"))

    status = store.queue_status("evt_db_blip")
    assert result["status"] == "partially_queued"
    assert (len(result["licenses"]), result["queued"]) == (1, 1)
    assert (status["total"], status["pending"]) == (1, 1)
    assert status["items"][0]["error_message"].startswith("OperationalError")


async def test_rerun_leaves_queued_units_to_the_worker(engine, store, processor):
    processor.fail_always("create_billing_item", TransientError("processor down"))
    await engine.provision_add_item(add_item_request(quantity=1, reference="evt_requeue"))
    processor.permanent_failures.clear()

    again = await engine.provision_add_item(add_item_request(quantity=1, reference="evt_requeue"))

    assert (again["status"], again["queued"]) == ("queued", 1)
    assert store.queue_status("evt_requeue")["total"] == 1
    assert processor.side_effects == []


async def test_mirroring_the_same_items_again_reuses_their_licenses(engine, store, processor):
    processor.arrangement_items["sub_new"] = [
        {"item_id": "si_a", "price_ref": "price_site", "quantity": 1, "metadata": {"site": "a.com"}},
        {"item_id": "si_b", "price_ref": "price_site", "quantity": 1, "metadata": {"site": "b.com"}},
    ]
    request = PurchaseRequest(
        reference="evt_mirror",
        intent="NewSubscription",
        operation=MIRROR_ITEM,
        payer_id="cus_1",
        quantity=1,
        arrangement_id="sub_new",
    )

    first = await engine.provision_new_subscription(request)
    second = await engine.provision_new_subscription(replace(request, reference="evt_mirror_again"))

    assert second["licenses"] == first["licenses"]
    assert len(store.list_licenses(payer_id="cus_1")) == 2
