from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 5
    r2_account_id: str | None = None
    r2_access_key_id: str | None = None
    r2_secret_access_key: str | None = None
    r2_endpoint_url: str | None = None
    r2_bucket_name: str | None = None
    brevo_api_key: str | None = None
    brevo_api_url: str = "https://api.brevo.com/v3/smtp/email"
    notifier_timeout_seconds: float = 10.0
    email_from: str | None = None
    email_reply_to: str | None = None
    site_dns: str = "dedicart.com.br"
    process_limit: int = 200
    worker_concurrency: int = 5
    email_max_retries: int = 3
    email_backoff_base_seconds: float = 0.5
    days_standard_ttl: int = 30
    days_premium_ttl: int = 60
    reconcile_interval_seconds: float = 3600.0
    run_once: bool = False
    failure_backoff_seconds: float = 30.0
    max_backoff_seconds: float = 900.0
    otel_enabled: bool = True
    otel_service_name: str = "intention-reaper"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="REAPER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
