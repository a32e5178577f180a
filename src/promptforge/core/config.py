"""Application configuration using Pydantic BaseSettings."""

import logging

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database Configuration
    database_url: str = Field(alias="DATABASE_URL")
    db_pool_size: int = Field(default=20, alias="DB_POOL_SIZE")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # CORS Configuration
    cors_origins: str = Field(default="http://localhost:3000", alias="CORS_ORIGINS")

    # Server Configuration
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")

    # Provider credentials (a model is only dispatchable when its provider is configured)
    replicate_api_token: str = Field(default="", alias="REPLICATE_API_TOKEN")
    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")
    stability_api_key: str = Field(default="", alias="STABILITY_API_KEY")
    runware_api_key: str = Field(default="", alias="RUNWARE_API_KEY")

    # Batch execution
    batch_worker_pool_size: int = Field(default=4, ge=1, alias="BATCH_WORKER_POOL_SIZE")
    batch_max_items: int = Field(default=100, ge=1, alias="BATCH_MAX_ITEMS")
    prompt_max_length: int = Field(default=1000, ge=1, alias="PROMPT_MAX_LENGTH")

    # Dispatch retry policy
    dispatch_max_attempts: int = Field(default=3, ge=1, alias="DISPATCH_MAX_ATTEMPTS")
    dispatch_timeout_seconds: float = Field(default=300.0, gt=0, alias="DISPATCH_TIMEOUT_SECONDS")
    dispatch_backoff_base_seconds: float = Field(
        default=1.0, ge=0, alias="DISPATCH_BACKOFF_BASE_SECONDS"
    )
    dispatch_backoff_max_seconds: float = Field(
        default=30.0, ge=0, alias="DISPATCH_BACKOFF_MAX_SECONDS"
    )

    # Orchestrator-level retry for storage faults
    orchestrator_max_item_retries: int = Field(
        default=3, ge=1, alias="ORCHESTRATOR_MAX_ITEM_RETRIES"
    )
    orchestrator_retry_delay_seconds: float = Field(
        default=1.0, ge=0, alias="ORCHESTRATOR_RETRY_DELAY_SECONDS"
    )

    # Claim lease and recovery sweep (0 disables the periodic sweep)
    batch_item_lease_seconds: float = Field(default=1800.0, gt=0, alias="BATCH_ITEM_LEASE_SECONDS")
    batch_recovery_interval_seconds: float = Field(
        default=60.0, ge=0, alias="BATCH_RECOVERY_INTERVAL_SECONDS"
    )

    # Accounts
    welcome_credits: int = Field(default=10, ge=0, alias="WELCOME_CREDITS")

    @property
    def max_dispatch_seconds(self) -> float:
        """Longest one dispatch can run: every attempt timing out plus capped, jittered backoff."""
        attempts = self.dispatch_max_attempts
        return (
            attempts * self.dispatch_timeout_seconds
            + (attempts - 1) * self.dispatch_backoff_max_seconds * 1.25
        )

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def provider_credentials(self) -> dict[str, str]:
        """Credentials keyed by provider id, as used by the dispatch transports."""
        return {
            "replicate": self.replicate_api_token,
            "openai": self.openai_api_key,
            "stability": self.stability_api_key,
            "runware": self.runware_api_key,
        }

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate required configuration on startup.

        At least one generation provider must be configured, otherwise every batch
        would fail item by item. Validation is skipped in test environments.
        """
        if self.app_env in ("test", "testing"):
            return self

        if not any(self.provider_credentials.values()):
            raise ValueError(
                "CRITICAL: No generation provider is configured.\n\n"
                "Set at least one of REPLICATE_API_TOKEN, OPENAI_API_KEY, "
                "STABILITY_API_KEY or RUNWARE_API_KEY in your .env file and restart."
            )

        return self

    @model_validator(mode="after")
    def validate_item_lease(self) -> "Settings":
        """A claim lease must outlive the slowest dispatch, or recovery could take over live items."""
        if self.batch_item_lease_seconds <= self.max_dispatch_seconds:
            raise ValueError(
                f"BATCH_ITEM_LEASE_SECONDS ({self.batch_item_lease_seconds}) must exceed the "
                f"longest possible dispatch ({self.max_dispatch_seconds}s with the current "
                "DISPATCH_* settings)."
            )
        return self


def configure_logging(settings: Settings) -> None:
    """Configure structlog based on application environment.

    - Production: JSON output for log aggregation
    - Development: Console output for human readability
    """
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    if settings.app_env == "production":
        renderer = structlog.processors.JSONRenderer()
        extra_processors = [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
        ]
    else:
        renderer = structlog.dev.ConsoleRenderer()
        extra_processors = []

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            *extra_processors,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
