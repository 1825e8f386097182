from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "crosslist-dispatch-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    database_command_timeout_seconds: float = 15.0
    credentials_encryption_key: str | None = None
    register_page_size: int = 10
    poll_page_size: int = 25
    poll_window_seconds: int = 30
    agent_active_window_seconds: int = 120
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    otel_enabled: bool = True
    otel_service_name: str = "crosslist-dispatch-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="CD_", extra="ignore")


class WorkerSettings(BaseSettings):
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 5
    database_command_timeout_seconds: float = 15.0
    credentials_encryption_key: str | None = None
    server_executed_platforms: list[str] = ["ebay", "etsy"]
    automation_base_url: str = "http://localhost:8100"
    automation_timeout_seconds: float = 60.0
    queue_concurrency: int = 2
    queue_max_attempts: int = 3
    queue_backoff_base_seconds: float = 5.0
    queue_backoff_max_seconds: float = 300.0
    queue_keep_completed_count: int = 1000
    queue_keep_completed_seconds: int = 24 * 3600
    queue_keep_failed_count: int = 5000
    poll_interval_seconds: float = 2.0
    poll_batch_size: int = 20
    max_backoff_seconds: float = 15.0
    stale_sweep_interval_seconds: float = 60.0
    stale_sweep_batch_size: int = 100
    stale_processing_seconds: int = 900
    otel_enabled: bool = True
    otel_service_name: str = "crosslist-dispatch-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="CD_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()


@lru_cache
def get_worker_settings() -> WorkerSettings:
    return WorkerSettings()
