"""
Application configuration using Pydantic Settings.
Loads configuration from environment variables with sensible defaults.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    mongodb_uri: str | None = None
    mongodb_host: str = "localhost"
    mongodb_port: int = 27017
    mongodb_database: str = "kiln"
    mongodb_collection: str = "tasks"
    index_create_attempts: int = 5
    storage_retry_attempts: int = 3
    storage_retry_backoff_seconds: float = 0.5

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Worker Configuration
    worker_parallelism: int | None = None
    worker_lease_seconds: int = 300
    worker_poll_interval_ms: int = 200
    distributor_poll_attempts: int = 5
    progress_debounce_seconds: float = 1.0
    task_type_modules: list[str] = []

    # DAG Configuration
    dag_submit_delay_ms: int = 100

    # Reaper Configuration
    reaper_interval_seconds: int = 10

    # Change stream monitor
    monitor_restart_backoff_seconds: float = 1.0

    # Remote execution
    remote_worker_url: str | None = None
    remote_response_url: str | None = None
    remote_timeout_seconds: float = 30.0

    # Observability
    otel_exporter_otlp_endpoint: str = "http://localhost:4317"
    otel_service_name: str = "kiln"
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    @property
    def mongodb_url(self) -> str:
        """Connection string, built from host and port when no URI is set."""
        if self.mongodb_uri:
            return self.mongodb_uri
        return f"mongodb://{self.mongodb_host}:{self.mongodb_port}"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
