"""Central environment-driven settings shared by the API and worker processes.

Each process loads this once at startup. Tenant-scoped studio settings are not
here; they live in the database and are loaded per request (see `tenancy`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "unknown-service"
    log_level: str = "INFO"
    postgres_dsn: str
    api_key: str
    kafka_bootstrap_servers: str = "kafka:9092"
    redis_url: str = "redis://redis:6379/0"
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    mercadopago_api_url: str = "https://api.mercadopago.com"
    public_base_url: str = "http://localhost:8000"
    gateway_timeout_seconds: float = 10.0
    whatsapp_timeout_seconds: float = 10.0
    charge_expiry_minutes: int = 30
    rate_limit_per_minute: int = 10
    notification_max_attempts: int = 5
    notification_poll_seconds: float = 5.0
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
