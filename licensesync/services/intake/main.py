"""HTTP surface: processor webhook, queue introspection and license operations.

The queue worker and the reconciliation drain run as background tasks tied
to the app lifespan.
"""

import asyncio
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from licensesync.common.cache import KeyValueCache
from licensesync.common.config import settings
from licensesync.common.db import SessionLocal
from licensesync.common.logging import configure_logging, logger, trace_id_ctx
from licensesync.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from licensesync.common.startup import log_startup_config
from licensesync.common.tracing import instrument_app, setup_tracing
from licensesync.services.intake.schemas import ActivateLicenseRequest, LicenseResponse, QueueStatusResponse
from licensesync.services.intake.service import IntakeService
from licensesync.services.provisioning.errors import ProvisioningError
from licensesync.services.provisioning.persistence import ProvisioningStore
from licensesync.services.provisioning.processor import StripeProcessor
from licensesync.services.provisioning.queue import QueueWorker
from licensesync.services.provisioning.reconciliation import Reconciler
from licensesync.services.provisioning.reversal import LicenseRemoval
from licensesync.services.provisioning.service import ProvisioningEngine


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject ops requests without the configured API key (when one is set)."""

    if settings.api_key and x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def build_service(store: ProvisioningStore, processor) -> IntakeService:
    engine = ProvisioningEngine(store, processor)
    return IntakeService(store, engine, LicenseRemoval(store, processor, compensation=engine.compensation))


def create_app(
    service: IntakeService,
    worker: QueueWorker | None = None,
    reconciler: Reconciler | None = None,
) -> FastAPI:
    if reconciler is not None:
        reconciler.register("event", service.replay_event)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        """Run the queue worker and reconciliation drain with the app lifecycle."""

        tasks = []
        if worker is not None:
            tasks.append(asyncio.create_task(worker.run_forever()))
        if reconciler is not None:
            tasks.append(asyncio.create_task(reconciler.run_forever()))
        yield
        for task in tasks:
            task.cancel()

    app = FastAPI(title="LicenseSync", lifespan=lifespan)
    instrument_app(app)

    @app.exception_handler(ProvisioningError)
    async def provisioning_error_handler(_: Request, exc: ProvisioningError):
        return JSONResponse(status_code=exc.http_status, content=exc.to_body())

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        trace_id_ctx.set(request.headers.get("x-request-id") or str(uuid4()))
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=settings.service_name,
                route=route,
                method=method,
            ).observe(elapsed)
            http_requests_total.labels(
                service=settings.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    @app.post("/webhook")
    async def webhook(request: Request, stripe_signature: str | None = Header(default=None)):
        """Accept one signed processor notification.

        400 for a bad signature or malformed payload, 200 for everything that
        was durably accepted. Failed dispatches come back as `deferred` and
        are replayed by the reconciler.
        """

        payload = await request.body()
        return await service.handle_webhook(payload, stripe_signature)

    @app.get("/queue-status", response_model=QueueStatusResponse)
    def queue_status(reference: str = Query(min_length=1), x_api_key: str | None = Header(default=None)):
        """Read-only view of the queue items created for one purchase."""

        enforce_api_key(x_api_key)
        return service.queue_status(reference)

    @app.post("/licenses/{license_key}/activate", response_model=LicenseResponse)
    async def activate_license(
        license_key: str,
        req: ActivateLicenseRequest,
        x_payer_id: str | None = Header(default=None),
    ):
        """Bind an active license to the resource it is used on."""

        return await service.activate_license(license_key, req.resource_id, x_payer_id)

    @app.post("/licenses/{license_key}/remove")
    async def remove_license(license_key: str, x_payer_id: str = Header(min_length=1)):
        """Remove one provisioned unit (cache, billing item, then store)."""

        result = await service.remove_license(x_payer_id, license_key)
        logger.info("license removal finished license_key=%s", license_key)
        return result

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True}

    return app


configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "REDIS_URL",
        "STRIPE_API_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "SYNC_UNIT_THRESHOLD",
        "QUEUE_INTERVAL_SECONDS",
        "QUEUE_MAX_ATTEMPTS",
    ],
)
store = ProvisioningStore(SessionLocal, KeyValueCache.from_url(settings.redis_url))
service = build_service(store, StripeProcessor(settings.stripe_api_key))
app = create_app(
    service,
    worker=QueueWorker(store, service.engine),
    reconciler=Reconciler(store),
)
