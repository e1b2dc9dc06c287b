"""Configuration management using pydantic-settings.

Process-level settings (paths, intervals, logging) come from environment
variables. Service URLs, API keys, the bot token and admin ids are edited at
runtime through the dashboard and live in the ``settings`` document instead,
see ``src.storage.models.ServiceSettings``.
"""

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    data_dir: Path = Field(
        default=Path("."),
        description="Directory holding the JSON documents shared with the dashboard",
    )

    lock_file: Path = Field(
        default=Path("telegram-bot.lock"),
        description="Single-instance lock file for the approval bot (relative to data_dir)",
    )

    dashboard_url: str = Field(
        default="http://127.0.0.1:5002",
        description="Dashboard base URL used to resolve relative payment slip URLs",
    )

    # HTTP
    http_timeout: float = Field(
        default=15.0,
        description="Timeout in seconds for media server / request manager / *arr calls",
        gt=0,
    )

    # Access policy reconciler
    policy_sync_interval_seconds: float = Field(
        default=10.0,
        description="Unconditional policy sync interval",
        gt=0,
    )

    policy_sync_debounce_ms: int = Field(
        default=500,
        description="Debounce applied to document change signals before a policy sync",
        ge=0,
    )

    trial_days: int = Field(
        default=7,
        description="Length of the automatic trial granted to new users",
        ge=1,
    )

    disable_playback_on_expiry: bool = Field(
        default=True,
        description="Disable media playback once a user's subscription has ended",
    )

    always_unlimited_users: str = Field(
        default="",
        description="Comma-separated usernames that always keep full library access",
    )

    # Approval workflow
    watch_debounce_ms: int = Field(
        default=300,
        description="Debounce applied to document change signals before notifying admins",
        ge=0,
    )

    watch_poll_interval: float = Field(
        default=0.25,
        description="How often watched documents are checked for modification",
        gt=0,
    )

    telegram_poll_timeout: int = Field(
        default=5,
        description="Long-poll timeout passed to getUpdates",
        ge=0,
    )

    bot_idle_sleep: float = Field(
        default=1.0,
        description="Pause between bot loop iterations",
        ge=0,
    )

    bot_error_sleep: float = Field(
        default=3.0,
        description="Pause after a failed iteration or while no bot token is configured",
        ge=0,
    )

    media_status_interval_seconds: float = Field(
        default=300.0,
        description="How often approved media requests are polled for download status",
        gt=0,
    )

    default_plan_days: int = Field(
        default=30,
        description="Validity used when an approved payment has no duration",
        ge=1,
    )

    # Application Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    environment: str = Field(
        default="production",
        description="Environment name (development, production)",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard levels."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of {allowed}")
        return v_upper

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment is development or production."""
        allowed = {"development", "production"}
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v_lower

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"

    @property
    def unlimited_usernames(self) -> set[str]:
        """Lowercased allow-list of usernames that are always unlimited."""
        return {
            name.strip().lower() for name in self.always_unlimited_users.split(",") if name.strip()
        }

    @property
    def lock_path(self) -> Path:
        """Absolute lock file location."""
        if self.lock_file.is_absolute():
            return self.lock_file
        return self.data_dir / self.lock_file


# Global settings instance
settings = Settings()
