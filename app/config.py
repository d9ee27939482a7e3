from __future__ import annotations

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "Idea Scan"
    app_version: str = "0.1.0"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"

    # Database
    database_url: str | None = None
    db_pool_min_size: int = 1
    db_pool_max_size: int = 5
    db_auto_create_schema: bool = False

    # AI gateway (OpenAI-compatible)
    ai_gateway_api_key: str | None = None
    ai_gateway_base_url: str = "https://ai.gateway.lovable.dev/v1"
    ai_chat_model: str = "google/gemini-2.5-flash"
    ai_embedding_model: str = "text-embedding-3-small"
    ai_embedding_dimensions: int = 768
    ai_request_timeout_seconds: float = 30.0

    # Patent registry
    patent_registry_api_key: str | None = None
    patent_registry_base_url: str = "https://search.patentsview.org/api/v1"

    # Scan pipeline
    scan_scoring_strategy: str = "lexical"
    scan_source_timeout_seconds: float = 20.0
    scan_source_result_limit: int = 5
    scan_discovery_kinds: list[str] = ["startup", "research"]
    scan_score_jitter: float = 7.5
    scan_score_seed: int | None = None
    scan_embedding_concurrency: int = 4
    scan_snippet_max_length: int = 500

    # HTTP
    cors_origins: list[str] = []  # Empty by default for security
    trusted_hosts: list[str] = ["localhost", "127.0.0.1"]

    # Sentry
    sentry_dsn: str | None = None
    sentry_traces_sample_rate: float = 0.1

    # Metrics
    metrics_backend: str = "stdout"
    metrics_namespace: str = "idea_scan"
    metrics_disable: bool = False
    metrics_sample_rate: float = 1.0
    metrics_statsd_host: str = "127.0.0.1"
    metrics_statsd_port: int = 8125

    model_config = ConfigDict(env_file=".env", case_sensitive=False)


settings = Settings()
