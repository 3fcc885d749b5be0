"""Environment-driven settings for the payments service.

The process loads this once at startup and passes the resulting value into the
payment service, webhook reconciler and gateway registry. See `.env.example`.
"""

from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "payments"
    log_level: str = "INFO"
    postgres_dsn: str
    api_key: str
    redis_url: str = "redis://redis:6379/0"
    rate_limit_per_minute: int = 30
    otel_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"

    currency: str = "INR"
    default_gst_rate: Decimal = Decimal("18")
    primary_gateway: str = "razorpay"
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_base_url: str = "https://api.razorpay.com/v1"
    webhook_secret: str = ""
    # Accept unsigned webhooks when no secret is configured. Operator opt-in only.
    webhook_insecure_mode: bool = False
    gateway_timeout_seconds: float = 10.0
    data_retention_days: int = 7 * 365
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
