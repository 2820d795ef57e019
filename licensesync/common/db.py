"""Relational store bootstrap: one engine and session factory per process."""

from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from licensesync.common.config import settings


def _engine_options(dsn: str) -> dict:
    # The worker and reconciler loops share the engine with request handlers.
    if make_url(dsn).get_backend_name() == "sqlite":
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True, "pool_size": 10, "max_overflow": 5}


engine = create_engine(settings.postgres_dsn, **_engine_options(settings.postgres_dsn))
# Store methods hand ORM rows back after their session closes.
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

# Event payloads and idempotency results: JSONB on PostgreSQL, JSON elsewhere.
JsonDocument = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass
