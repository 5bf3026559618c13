"""Configuration management for Repair Brain."""

from functools import lru_cache

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: str = Field(default="production", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")

    # File logging
    log_to_file: bool = Field(default=False, description="Also write JSON logs to a file")
    log_directory: str = Field(default="logs", description="Directory for log files")
    log_file_max_bytes: int = Field(
        default=10 * 1024 * 1024, gt=0, description="Rotate log file after this many bytes"
    )
    log_file_backup_count: int = Field(default=5, ge=0, description="Rotated files to keep")

    # PostgreSQL (metric store)
    postgres_dsn: SecretStr | None = Field(
        default=None, description="asyncpg DSN for the repair tables"
    )

    # Monitoring
    window_capacity: int = Field(
        default=120, ge=5, description="Samples kept per metric sliding window"
    )
    min_samples: int = Field(
        default=5, ge=3, description="Samples required before a window is analysed"
    )
    sample_interval_seconds: int = Field(
        default=300, gt=0, description="Expected seconds between heartbeat samples"
    )

    # Repair
    fix_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Upper bound for a single fix handler"
    )
    self_healing_enabled: bool = Field(
        default=True, description="Apply recommended fixes during the repair cycle"
    )

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() == "development"

    @property
    def log_file_path(self) -> str:
        """Full path of the rotating log file."""
        return f"{self.log_directory.rstrip('/')}/repair_brain.log"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
