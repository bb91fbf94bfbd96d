"""Application configuration using Pydantic BaseSettings."""

import logging

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Generation Service
    generation_api_url: str = Field(default="http://localhost:8000/api", alias="GENERATION_API_URL")
    generation_api_token: str = Field(default="", alias="GENERATION_API_TOKEN")
    public_base_url: str = Field(default="http://localhost:8000", alias="PUBLIC_BASE_URL")
    request_timeout_seconds: float = Field(default=30.0, alias="REQUEST_TIMEOUT_SECONDS")

    # Polling cadence (tiered by elapsed time since submission)
    poll_initial_interval_seconds: float = Field(
        default=10.0, alias="POLL_INITIAL_INTERVAL_SECONDS"
    )
    poll_interval_seconds: float = Field(default=15.0, alias="POLL_INTERVAL_SECONDS")
    poll_slow_interval_seconds: float = Field(default=20.0, alias="POLL_SLOW_INTERVAL_SECONDS")
    poll_slow_after_seconds: float = Field(default=120.0, alias="POLL_SLOW_AFTER_SECONDS")

    # Rate-limit recovery
    rate_limit_base_delay_seconds: float = Field(
        default=5.0, alias="RATE_LIMIT_BASE_DELAY_SECONDS"
    )
    rate_limit_max_retries: int = Field(default=3, alias="RATE_LIMIT_MAX_RETRIES")

    # Result resolution
    max_playback_fallbacks: int = Field(default=1, alias="MAX_PLAYBACK_FALLBACKS")
    resolver_strategies: str = Field(
        default="direct,token_query,buffered_copy,credentialed", alias="RESOLVER_STRATEGIES"
    )
    verify_playback: bool = Field(default=False, alias="VERIFY_PLAYBACK")
    media_cache_dir: str = Field(default=".media-cache", alias="MEDIA_CACHE_DIR")
    media_cache_max_age_seconds: float = Field(
        default=86400.0, alias="MEDIA_CACHE_MAX_AGE_SECONDS"
    )

    # Prompt validation
    max_prompt_length: int = Field(default=4000, alias="MAX_PROMPT_LENGTH")

    # Optional Job Ledger persistence (empty = in-memory only)
    database_url: str = Field(default="", alias="DATABASE_URL")
    db_pool_size: int = Field(default=20, alias="DB_POOL_SIZE")

    # HTTP surface
    cors_origins: str = Field(default="http://localhost:3000", alias="CORS_ORIGINS")
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def resolver_strategy_names(self) -> list[str]:
        """Parse the ordered resolver strategy list."""
        return [name.strip() for name in self.resolver_strategies.split(",") if name.strip()]

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate configuration on startup.

        Collects every problem and fails fast with a single message. The API token is
        only required outside test/development environments.
        """
        problems = []

        positive = {
            "POLL_INITIAL_INTERVAL_SECONDS": self.poll_initial_interval_seconds,
            "POLL_INTERVAL_SECONDS": self.poll_interval_seconds,
            "POLL_SLOW_INTERVAL_SECONDS": self.poll_slow_interval_seconds,
            "RATE_LIMIT_BASE_DELAY_SECONDS": self.rate_limit_base_delay_seconds,
            "MEDIA_CACHE_MAX_AGE_SECONDS": self.media_cache_max_age_seconds,
        }
        for name, value in positive.items():
            if value <= 0:
                problems.append(f"{name}: must be positive (got {value})")

        if not self.resolver_strategy_names:
            problems.append("RESOLVER_STRATEGIES: must name at least one strategy")

        if self.rate_limit_max_retries < 0:
            problems.append("RATE_LIMIT_MAX_RETRIES: must not be negative")

        if not self.public_base_url.startswith(("http://", "https://")):
            problems.append("PUBLIC_BASE_URL: must be an absolute http(s) URL")

        if self.app_env not in ("test", "testing", "development") and not self.generation_api_token:
            problems.append("GENERATION_API_TOKEN: bearer credential for the generation service")

        if problems:
            error_msg = "CRITICAL: Invalid configuration:\n\n" + "\n".join(
                f"  - {p}" for p in problems
            )
            error_msg += "\n\nPlease update your .env file and restart."
            raise ValueError(error_msg)

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
        renderer = [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderer = [structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            *renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
