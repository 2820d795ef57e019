"""Structured JSON logging with purchase and queue correlation fields.

Every record carries the inbound event, the payer, the purchase reference
the engine is provisioning and, inside the worker, the queue item being
processed. Empty strings mean the field does not apply to that record.
"""

import logging
import sys
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from licensesync.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
event_id_ctx: ContextVar[str] = ContextVar("event_id", default="")
payer_id_ctx: ContextVar[str] = ContextVar("payer_id", default="")
reference_ctx: ContextVar[str] = ContextVar("reference", default="")
queue_id_ctx: ContextVar[str] = ContextVar("queue_id", default="")

LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(service_name)s %(trace_id)s %(event_id)s "
    "%(payer_id)s %(reference)s %(queue_id)s %(message)s"
)


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.trace_id = trace_id_ctx.get()
        record.event_id = event_id_ctx.get()
        record.payer_id = payer_id_ctx.get()
        record.reference = reference_ctx.get()
        record.queue_id = queue_id_ctx.get()
        return True


def configure_logging() -> None:
    """Configure root logger once per process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    handler.setFormatter(JsonFormatter(LOG_FORMAT))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    root.addFilter(context_filter)
    # SQL statements carry payer data; keep them out of INFO output.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


logger = logging.getLogger("licensesync")
