"""Central environment-driven settings shared by the API and workers.

The process loads this once at startup. Deployment-specific behavior is
controlled by environment variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "licensesync"
    log_level: str = "INFO"
    postgres_dsn: str
    redis_url: str = "redis://redis:6379/0"
    api_key: str | None = None
    stripe_api_key: str = ""
    stripe_webhook_secret: str = ""
    webhook_tolerance_seconds: int = 300
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    tracing_enabled: bool = True
    idempotency_ttl_seconds: int = 86400
    sync_unit_threshold: int = 10
    sync_slice_size: int = 5
    queue_batch_size: int = 100
    queue_interval_seconds: int = 60
    queue_max_attempts: int = 3
    queue_backoff_base_seconds: int = 120
    queue_processing_timeout_seconds: int = 900
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    processor_call_delay_seconds: float = 0.2
    reconcile_interval_seconds: int = 30
    reconcile_batch_size: int = 100
    reconcile_max_attempts: int = 10
    license_key_prefix: str = "KEY"
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
