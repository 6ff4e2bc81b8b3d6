from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "pr-review-bot"
    environment: str = "dev"
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    admin_api_key_header: str = "X-API-Key"
    admin_api_key: str | None = None
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    database_command_timeout_seconds: float = 15.0
    queue_database_url: str | None = None
    github_webhook_secret: str | None = None
    webhook_max_payload_bytes: int = 25 * 1024 * 1024
    github_api_base_url: str = "https://api.github.com"
    github_token: str | None = None
    github_timeout_seconds: float = 10.0
    analyzer_base_url: str = "https://api.groq.com/openai/v1"
    analyzer_api_key: str | None = None
    analyzer_model: str = "llama-3.3-70b-versatile"
    analyzer_temperature: float = 0.3
    analyzer_max_tokens: int = 2000
    analyzer_timeout_seconds: float = 60.0
    queue_name: str = "pr-reviews"
    queue_max_attempts: int = 3
    queue_backoff_base_seconds: float = 1.0
    queue_backoff_max_seconds: float = 600.0
    queue_lease_seconds: int = 300
    queue_max_stalls: int = 1
    queue_completed_retention_seconds: int = 24 * 3600
    queue_completed_retention_count: int = 100
    queue_failed_retention_seconds: int = 7 * 24 * 3600
    worker_concurrency: int = 2
    worker_poll_interval_seconds: float = 1.0
    worker_max_backoff_seconds: float = 15.0
    lease_reaper_interval_seconds: float = 15.0
    lease_reaper_batch_size: int = 100
    retention_interval_seconds: float = 300.0
    otel_enabled: bool = True
    otel_service_name: str = "pr-review-bot"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="PRR_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
