"""
Centralized configuration management using Pydantic Settings.
Validates environment variables on startup and provides typed config access.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import List, Optional


class Settings(BaseSettings):
    """
    Application settings with validation.
    Loads from environment variables with fallback to .env file.
    """

    # Database Configuration (run archive)
    database_url_sqlite: str = Field(
        default="sqlite+aiosqlite:///./agui_runs.db",
        description="SQLite database URL for the run archive"
    )
    database_echo: bool = Field(
        default=False,
        description="Log all SQL queries"
    )
    archive_runs_enabled: bool = Field(
        default=True,
        description="Persist terminal runs and their event log"
    )

    # Transport Configuration
    transport_queue_size: int = Field(
        default=100,
        description="Frames buffered between a run and its HTTP stream before the producer blocks"
    )
    shutdown_drain_timeout_seconds: float = 10.0

    # Middleware Configuration
    # Auth stage is only installed when a secret is configured
    auth_secret_key: Optional[str] = Field(
        default=None,
        description="HMAC secret for run bearer tokens"
    )
    rate_limit_requests: int = 60
    rate_limit_window_seconds: int = 60
    allowed_tools: Optional[List[str]] = Field(
        default=None,
        description="Tool names forwarded to agents; None forwards every tool"
    )

    # State Sync Configuration
    state_sync_verify_deltas: bool = Field(
        default=True,
        description="Re-apply every emitted delta and compare with the new state"
    )

    # Echo agent
    echo_chunk_size: int = 16

    # Environment
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @property
    def database_url(self) -> str:
        """
        Returns the SQLite database URL.
        """
        return self.database_url_sqlite

    def is_production(self) -> bool:
        """Check if running in production"""
        return self.environment.lower() == "production"

    def validate_critical_config(self):
        """
        Validate critical configuration on startup.
        Raises ValueError if critical config is missing.
        """
        errors = []

        if self.transport_queue_size < 1:
            errors.append("TRANSPORT_QUEUE_SIZE must be at least 1")

        if self.rate_limit_requests < 1 or self.rate_limit_window_seconds < 1:
            errors.append("RATE_LIMIT_REQUESTS and RATE_LIMIT_WINDOW_SECONDS must be positive")

        # Warn about auth if not configured (non-critical outside production)
        if not self.auth_secret_key:
            if self.is_production():
                errors.append("AUTH_SECRET_KEY must be set in production")
            else:
                import structlog
                logger = structlog.get_logger()
                logger.warning(
                    "auth_not_configured",
                    message="AUTH_SECRET_KEY not set - run requests are not authenticated"
                )

        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")

    def get_connection_args(self) -> dict:
        """Get SQLite-specific connection arguments"""
        return {
            "timeout": 10.0,
            "check_same_thread": False,
        }


# Global settings instance
settings = Settings()
