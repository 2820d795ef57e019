"""End-to-end intake: signature, dedupe, routing, deferred replay and license endpoints."""

import json

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from conftest import checkout_event, payment_intent_event, sign_payload
from licensesync.services.provisioning.errors import TransientError
from licensesync.services.provisioning.models import BillingItem, ReconciliationTask, WebhookEvent

BULK_METADATA = {"purchase_type": "bulk", "quantity": "15", "price_ref": "price_unit"}


def site_items(*sites):
    return [
        {"item_id": f"si_{site}", "price_ref": "price_site", "quantity": 1, "metadata": {"site": site}}
        for site in sites
    ]


def test_duplicate_delivery_provisions_once(post_event, processor, store):
    processor.arrangement_items["sub_new"] = site_items("a.com")
    event = checkout_event()

    first = post_event(event)
    second = post_event(event)

    assert first.status_code == second.status_code == 200
    assert first.json() == second.json()
    assert first.json()["status"] == "provisioned"
    assert len(store.list_licenses(payer_id="cus_1")) == 1
    assert [p.amount for p in store.list_payments("cus_1")] == [5000]
    assert len([call for call in processor.calls if call[0] == "list_billing_items"]) == 1


def test_verified_event_is_recorded_for_audit(post_event, processor, store):
    processor.arrangement_items["sub_new"] = site_items("a.com")

    post_event(checkout_event(event_id="evt_audit"))

    with store.session_factory() as db:
        (row,) = db.execute(select(WebhookEvent)).scalars().all()
    assert (row.event_id, row.event_type, row.payer_id, row.arrangement_id) == (
        "evt_audit",
        "checkout.session.completed",
        "cus_1",
        "sub_new",
    )
    assert row.payload["id"] == "evt_audit"


def test_bad_signature_is_rejected(post_event, store):
    response = post_event(checkout_event(), secret="whsec_wrong")

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_signature"
    assert store.list_licenses() == []


def test_missing_signature_is_rejected(client):
    response = client.post("/webhook", content=json.dumps(checkout_event()))

    assert response.status_code == 400


def test_malformed_event_is_rejected(client):
    payload = json.dumps({"type": "checkout.session.completed", "data": {"object": {}}})

    response = client.post("/webhook", content=payload, headers={"stripe-signature": sign_payload(payload)})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "malformed_event"


def test_event_without_payer_is_rejected(post_event):
    response = post_event(payment_intent_event(customer=None, metadata=BULK_METADATA))

    assert response.status_code == 400


def test_unhandled_event_type_is_acknowledged(post_event, processor):
    response = post_event({"id": "evt_inv", "type": "invoice.created", "data": {"object": {"id": "in_1"}}})

    assert response.status_code == 200
    assert response.json()["status"] == "ignored"
    assert processor.calls == []


def test_non_owning_event_type_does_nothing(post_event, processor, store):
    event = checkout_event(event_id="evt_cs_bulk", mode="payment", subscription=None, metadata=BULK_METADATA)

    response = post_event(event)

    assert response.json()["status"] == "skipped"
    assert response.json()["owner"] == "payment_intent.succeeded"
    assert store.list_licenses() == []
    assert processor.calls == []


def test_event_in_progress_elsewhere_reports_in_flight(post_event, store, processor):
    store.begin_operation("event:evt_busy", 300)

    response = post_event(checkout_event(event_id="evt_busy"))

    assert response.status_code == 200
    assert response.json() == {"status": "in_flight", "event_id": "evt_busy"}
    assert processor.calls == []


def test_bulk_purchase_is_partially_queued_and_observable(post_event, client):
    response = post_event(payment_intent_event(event_id="evt_bulk_http", metadata=BULK_METADATA))

    body = response.json()
    assert body["status"] == "partially_queued"
    assert len(body["licenses"]) == 5
    assert body["queued"] == 10

    status = client.get("/queue-status", params={"reference": "evt_bulk_http"})

    assert status.status_code == 200
    view = status.json()
    assert (view["total"], view["completed"], view["pending"], view["failed"]) == (15, 5, 10, 0)
    assert len(view["items"]) == 15
    assert {item["status"] for item in view["items"]} == {"completed", "pending"}


async def deliver(intake, event):
    payload = json.dumps(event)
    return await intake.handle_webhook(payload.encode("utf-8"), sign_payload(payload))


async def test_failed_dispatch_is_deferred_and_replayed_without_redelivery(
    client, intake, reconciler, processor, store
):
    event = checkout_event(event_id="evt_later", subscription="sub_late")

    first = await deliver(intake, event)

    assert first["status"] == "deferred"
    assert first["error"]["code"] == "arrangement_empty"
    with store.session_factory() as db:
        (task,) = db.execute(select(ReconciliationTask)).scalars().all()
    assert (task.id, task.kind, task.payload["event_id"]) == (first["task_id"], "event", "evt_later")

    processor.arrangement_items["sub_late"] = site_items("a.com", "b.com")
    summary = await reconciler.drain_once()

    assert summary == {"applied": 1, "requeued": 0, "parked": 0}
    assert len(store.list_licenses(reference="evt_later")) == 2
    redelivered = await deliver(intake, event)
    assert redelivered["status"] == "provisioned"
    assert len(store.list_licenses(reference="evt_later")) == 2


async def test_deferred_event_that_keeps_failing_is_parked(client, intake, reconciler, store):
    await deliver(intake, checkout_event(event_id="evt_never", subscription="sub_never"))

    for _ in range(3):
        await reconciler.drain_once()

    with store.session_factory() as db:
        (task,) = db.execute(select(ReconciliationTask)).scalars().all()
    assert (task.status, task.attempts) == ("PARKED", 3)
    assert "has no billing items" in task.last_error
    assert store.list_licenses(reference="evt_never") == []


async def test_partially_provisioned_add_item_completes_with_one_charge_per_unit(
    client, intake, reconciler, processor, store, monkeypatch
):
    event = checkout_event(
        event_id="evt_add_partial",
        mode="payment",
        subscription=None,
        metadata={
            "purchase_type": "add_item",
            "arrangement_id": "sub_1",
            "price_id": "price_site",
            "sites": "a.com,b.com",
        },
    )
    get_license, enqueue_items = store.get_license, store.enqueue_items
    lookups = []

    def flaky_lookup(license_key):
        lookups.append(license_key)
        if len(lookups) > 1:
            raise OperationalError("SELECT licenses", {}, Exception("connection reset"))
        return get_license(license_key)

    def queue_unavailable(_items):
        raise OperationalError("INSERT INTO provisioning_queue", {}, Exception("connection reset"))

    monkeypatch.setattr(store, "get_license", flaky_lookup)
    monkeypatch.setattr(store, "enqueue_items", queue_unavailable)

    first = await deliver(intake, event)

    assert first["status"] == "deferred"
    assert first["error"]["code"] == "internal_error"
    assert len(store.list_licenses(reference="evt_add_partial")) == 1

    monkeypatch.setattr(store, "get_license", get_license)
    monkeypatch.setattr(store, "enqueue_items", enqueue_items)
    summary = await reconciler.drain_once()

    assert summary["applied"] == 1
    licenses = store.list_licenses(reference="evt_add_partial")
    assert sorted(lic.bound_resource_id for lic in licenses) == ["a.com", "b.com"]
    assert [method for method, _ in processor.side_effects] == ["create_billing_item", "create_billing_item"]
    with store.session_factory() as db:
        assert len(db.execute(select(BillingItem)).scalars().all()) == 2


def test_subscription_cancellation_is_mirrored(post_event, processor, store):
    processor.arrangement_items["sub_new"] = site_items("a.com")
    post_event(checkout_event())
    event = {
        "id": "evt_sub_gone",
        "type": "customer.subscription.deleted",
        "data": {"object": {"id": "sub_new", "customer": "cus_1", "status": "canceled"}},
    }

    response = post_event(event)

    assert response.json()["status"] == "synced"
    assert [lic.status for lic in store.list_licenses(payer_id="cus_1")] == ["inactive"]


def test_activation_endpoint(post_event, processor, client, store):
    processor.arrangement_items["sub_new"] = site_items("a.com")
    key = post_event(checkout_event()).json()["licenses"][0]

    ok = client.post(f"/licenses/{key}/activate", json={"resource_id": "a.com"}, headers={"x-payer-id": "cus_1"})
    conflict = client.post(f"/licenses/{key}/activate", json={"resource_id": "b.com"})
    missing = client.post("/licenses/KEY-NONE-NONE-NONE-NONE/activate", json={"resource_id": "a.com"})

    assert ok.status_code == 200
    assert ok.json()["bound_resource_id"] == "a.com"
    assert conflict.status_code == 409
    assert missing.status_code == 404


def test_removal_endpoint_is_idempotent(post_event, processor, client):
    processor.arrangement_items["sub_new"] = site_items("a.com")
    key = post_event(checkout_event()).json()["licenses"][0]

    first = client.post(f"/licenses/{key}/remove", headers={"x-payer-id": "cus_1"})
    second = client.post(f"/licenses/{key}/remove", headers={"x-payer-id": "cus_1"})

    assert first.status_code == second.status_code == 200
    assert first.json() == second.json()
    assert first.json()["status"] == "removed"
    assert processor.deleted_items == ["si_a.com"]


def test_removal_endpoint_reports_rollback(post_event, processor, client, store):
    processor.arrangement_items["sub_new"] = site_items("a.com")
    key = post_event(checkout_event()).json()["licenses"][0]
    processor.fail_always("delete_billing_item", TransientError("processor down"))

    response = client.post(f"/licenses/{key}/remove", headers={"x-payer-id": "cus_1"})

    assert response.status_code == 502
    error = response.json()["error"]
    assert error["code"] == "operation_rolled_back"
    assert error["rolled_back"] is True
    assert store.get_cached_license("cus_1", key)["status"] == "active"


def test_removal_requires_payer_header(client):
    response = client.post("/licenses/KEY-AAAA-BBBB-CCCC-DDDD/remove")

    assert response.status_code == 422


def test_health(client):
    assert client.get("/health").json() == {"ok": True}
