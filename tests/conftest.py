"""Shared fixtures: in-memory SQLite store, fake Redis, fake payment processor."""

import hashlib
import hmac
import itertools
import json
import os
import time

os.environ["POSTGRES_DSN"] = "sqlite+pysqlite:///:memory:"
os.environ["TRACING_ENABLED"] = "false"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["API_KEY"] = ""

import fakeredis
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from licensesync.common.cache import KeyValueCache
from licensesync.common.db import Base
from licensesync.common.retry import RetryPolicy
from licensesync.services.provisioning import models  # noqa: F401
from licensesync.services.provisioning.persistence import ProvisioningStore
from licensesync.services.provisioning.queue import QueueWorker
from licensesync.services.provisioning.reconciliation import Reconciler
from licensesync.services.provisioning.reversal import LicenseRemoval
from licensesync.services.provisioning.service import ProvisioningEngine


WEBHOOK_SECRET = "whsec_test_secret"


class FakeProcessor:
    """In-memory payment processor honouring idempotency keys."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, object]] = []
        self.side_effects: list[tuple[str, str]] = []
        self.queued_failures: dict[str, list[Exception]] = {}
        self.permanent_failures: dict[str, Exception] = {}
        self.arrangement_items: dict[str, list[dict]] = {}
        self.unit_prices: dict[str, int] = {}
        self.deleted_items: list[str] = []
        self.refunds: list[dict] = []
        self._replays: dict[str, dict] = {}
        self._ids = itertools.count(1)

    def fail_next(self, method: str, *errors: Exception) -> None:
        self.queued_failures.setdefault(method, []).extend(errors)

    def fail_always(self, method: str, error: Exception) -> None:
        self.permanent_failures[method] = error

    def _call(self, method: str, detail: object = None) -> None:
        self.calls.append((method, detail))
        if method in self.permanent_failures:
            raise self.permanent_failures[method]
        pending = self.queued_failures.get(method)
        if pending:
            raise pending.pop(0)

    def _once(self, method: str, idempotency_key: str, build) -> dict:
        if idempotency_key in self._replays:
            return self._replays[idempotency_key]
        result = build()
        self._replays[idempotency_key] = result
        self.side_effects.append((method, idempotency_key))
        return result

    def create_billing_item(self, arrangement_id, price_ref, metadata, idempotency_key):
        self._call("create_billing_item", idempotency_key)
        return self._once(
            "create_billing_item",
            idempotency_key,
            lambda: {"item_id": f"si_{next(self._ids)}", "arrangement_id": arrangement_id},
        )

    def create_arrangement(self, payer_id, price_ref, metadata, idempotency_key):
        self._call("create_arrangement", idempotency_key)
        return self._once(
            "create_arrangement",
            idempotency_key,
            lambda: {"arrangement_id": f"sub_{next(self._ids)}", "item_id": f"si_{next(self._ids)}"},
        )

    def create_charge(self, payer_id, amount, currency, metadata, idempotency_key):
        self._call("create_charge", idempotency_key)
        return self._once(
            "create_charge", idempotency_key, lambda: {"charge_ref": f"pi_{next(self._ids)}", "status": "succeeded"}
        )

    def refund(self, charge_ref, amount, metadata, idempotency_key):
        self._call("refund", idempotency_key)

        def build():
            refund = {"refund_id": f"re_{next(self._ids)}", "status": "succeeded"}
            self.refunds.append(
                {"charge_ref": charge_ref, "amount": amount, "metadata": metadata, "idempotency_key": idempotency_key}
            )
            return refund

        return self._once("refund", idempotency_key, build)

    def get_upcoming_charge(self, arrangement_id):
        self._call("get_upcoming_charge", arrangement_id)
        return {"amount_due": 1234}

    def list_billing_items(self, arrangement_id):
        self._call("list_billing_items", arrangement_id)
        return list(self.arrangement_items.get(arrangement_id, []))

    def delete_billing_item(self, item_id):
        self._call("delete_billing_item", item_id)
        self.deleted_items.append(item_id)
        return {"item_id": item_id, "deleted": True}

    def get_unit_price(self, price_ref):
        self._call("get_unit_price", price_ref)
        return self.unit_prices.get(price_ref)


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def store(session_factory, redis_client):
    return ProvisioningStore(session_factory, KeyValueCache(redis_client))


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def retry(sleeps):
    async def record_sleep(seconds):
        sleeps.append(seconds)

    return RetryPolicy(max_attempts=3, base_delay=1.0, sleep=record_sleep)


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def engine(store, processor, retry):
    return ProvisioningEngine(
        store,
        processor,
        retry=retry,
        sync_unit_threshold=5,
        sync_slice_size=5,
        queue_max_attempts=3,
        queue_backoff_base_seconds=120,
        key_prefix="KEY",
    )


@pytest.fixture
def worker(store, engine, sleeps):
    async def record_sleep(seconds):
        sleeps.append(seconds)

    return QueueWorker(store, engine, batch_size=100, call_delay_seconds=0.0, sleep=record_sleep)


@pytest.fixture
def removal(store, processor, retry, engine):
    return LicenseRemoval(store, processor, retry=retry, compensation=engine.compensation)


@pytest.fixture
def intake(store, engine, removal, retry):
    from licensesync.services.intake.service import IntakeService

    return IntakeService(store, engine, removal, retry=retry)


@pytest.fixture
def reconciler(store):
    return Reconciler(store, batch_size=10, max_attempts=3)


@pytest.fixture
def client(intake, reconciler):
    """App wired to the reconciler, so deferred events replay through `intake`."""

    from fastapi.testclient import TestClient

    from licensesync.services.intake.main import create_app

    return TestClient(create_app(intake, reconciler=reconciler))


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    digest = hmac.new(secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture
def post_event(client):
    """Deliver a signed event to `POST /webhook` and return the response."""

    def deliver(event: dict, secret: str = WEBHOOK_SECRET):
        payload = json.dumps(event)
        return client.post(
            "/webhook",
            content=payload,
            headers={"content-type": "application/json", "stripe-signature": sign_payload(payload, secret)},
        )

    return deliver


def checkout_event(
    event_id: str = "evt_checkout_1",
    mode: str = "subscription",
    customer: str = "cus_1",
    subscription: str | None = "sub_new",
    amount_total: int = 5000,
    metadata: dict | None = None,
    payment_intent: str | None = None,
) -> dict:
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "created": 1760000000,
        "data": {
            "object": {
                "id": f"cs_{event_id}",
                "mode": mode,
                "customer": customer,
                "customer_details": {"email": "payer@example.com"},
                "subscription": subscription,
                "payment_intent": payment_intent,
                "amount_total": amount_total,
                "currency": "usd",
                "metadata": metadata or {},
            }
        },
    }


def payment_intent_event(
    event_id: str = "evt_pi_1",
    intent_id: str = "pi_bulk_1",
    customer: str = "cus_1",
    amount: int = 15000,
    metadata: dict | None = None,
) -> dict:
    return {
        "id": event_id,
        "type": "payment_intent.succeeded",
        "created": 1760000000,
        "data": {
            "object": {
                "id": intent_id,
                "customer": customer,
                "amount": amount,
                "amount_received": amount,
                "currency": "usd",
                "metadata": metadata or {},
            }
        },
    }
