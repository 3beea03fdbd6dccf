"""Shared configuration management for the document analyzer.

Based on Pydantic Settings v2 best practices:
https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the prefix 'APP_'.
    Example: APP_PROCESSING_CONCURRENCY=4
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Service configuration
    service_name: str = Field(
        default="document-analyzer",
        description="Service identifier for metrics and logs",
    )
    service_version: str = Field(
        default="0.1.0",
        description="Service version",
    )

    # Database
    database_url: str = Field(
        default="sqlite:///./analyzer.db",
        description="SQLAlchemy database URL (postgresql+psycopg://... in production)",
    )
    database_echo: bool = Field(
        default=False,
        description="Log every SQL statement",
    )

    # Processing queue
    processing_concurrency: int = Field(
        default=2,
        ge=1,
        description="Maximum number of documents processed at the same time",
    )

    # Extraction provider configuration
    extraction_provider: Literal["content_understanding", "openai"] = Field(
        default="content_understanding",
        description=(
            "Extraction provider: content_understanding (Azure AI Content Understanding), "
            "openai (vision model with structured output)"
        ),
    )

    # Content Understanding configuration
    cu_endpoint: str = Field(
        default="",
        description="Content Understanding resource endpoint (https://<name>.services.ai.azure.com)",
    )
    cu_key: str = Field(
        default="",
        description="Content Understanding subscription key (use env var APP_CU_KEY)",
    )
    cu_analyzer_id: str = Field(
        default="invoice-analyzer",
        description="Analyzer id used for the analyze call",
    )
    cu_api_version: str = Field(
        default="2025-11-01",
        description="Content Understanding REST API version",
    )

    # Extraction polling and rate-limit handling
    extraction_poll_interval_seconds: float = Field(
        default=1.2,
        ge=0,
        description="Delay between two polls of a running analysis operation",
    )
    extraction_max_polls: int | None = Field(
        default=None,
        ge=1,
        description="Upper bound on polls per operation (None polls until a terminal status)",
    )
    extraction_max_retries: int = Field(
        default=5,
        ge=0,
        description="Retries of a single submit/poll step after a rate-limit response",
    )
    extraction_backoff_base_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Base delay of the exponential rate-limit backoff",
    )
    extraction_backoff_jitter_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Maximum random jitter added to each backoff delay",
    )
    extraction_request_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Timeout of a single HTTP request to the extraction service",
    )

    # OpenAI configuration (for extraction_provider="openai")
    openai_api_key: str = Field(
        default="",
        description="OpenAI API key (use env var APP_OPENAI_API_KEY)",
    )
    openai_model: str = Field(
        default="gpt-4o-mini",
        description="Vision-capable model used for extraction",
    )
    openai_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="OpenAI request timeout",
    )
    openai_max_retries: int = Field(
        default=1,
        ge=0,
        description="Additional attempts after a failed OpenAI call",
    )

    # Normalization
    default_currency: str = Field(
        default="EUR",
        min_length=3,
        max_length=3,
        description="Currency code used when the document does not report one",
    )
    error_reason_max_length: int = Field(
        default=500,
        ge=1,
        description="Maximum stored length of a FAILED document's error reason",
    )

    # Storage configuration (S3-compatible object storage)
    storage_endpoint: str = Field(
        default="localhost:9000",
        description="S3-compatible storage endpoint (host:port)",
    )
    storage_access_key: str = Field(
        default="",
        description="Storage access key (use env var APP_STORAGE_ACCESS_KEY)",
    )
    storage_secret_key: str = Field(
        default="",
        description="Storage secret key (use env var APP_STORAGE_SECRET_KEY)",
    )
    storage_bucket: str = Field(
        default="invoices",
        description="Bucket holding uploaded documents",
    )
    storage_secure: bool = Field(
        default=False,
        description="Use HTTPS for storage connections",
    )
    storage_url_expiry_seconds: int = Field(
        default=86400,
        gt=0,
        description="Lifetime of the presigned URL handed to the extraction service",
    )

    # Message bus
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis URL used for request/reply and event messaging",
    )

    # Duplicate detection
    duplicate_check_enabled: bool = Field(
        default=True,
        description="Ask the invoice service of record whether an invoice already exists",
    )
    duplicate_check_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Timeout of the duplicate check request",
    )
    revert_blob_on_duplicate: bool = Field(
        default=True,
        description="Delete the uploaded blob when a document is rejected as duplicate",
    )

    # Observability
    metrics_port: int | None = Field(
        default=None,
        description="Port for the Prometheus metrics endpoint (disabled when unset)",
    )


def get_settings() -> Settings:
    """Factory function to get settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()
