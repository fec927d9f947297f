"""Configuration management for worktimer."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Worktimer data directory
WORKTIMER_DIR = Path.home() / ".worktimer"
WORKTIMER_ENV_FILE = WORKTIMER_DIR / ".env"

# One 8-hour working day
DEFAULT_REFERENCE_SECONDS_PER_TASK = 8 * 60 * 60


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="WORKTIMER_",
        # Load from multiple locations (later files override earlier)
        # 1. ~/.worktimer/.env (user config)
        # 2. .env in current directory (project-specific override)
        env_file=(str(WORKTIMER_ENV_FILE), ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage settings
    data_dir: Path | None = Field(
        default=None,
        description="Directory holding the time log database and registry file (default: ~/.worktimer)",
    )
    database_path: Path | None = Field(
        default=None,
        description="Path for the SQLite time log database (default: <data_dir>/time_logs.db)",
    )
    registry_path: Path | None = Field(
        default=None,
        description="Directory for active session slot files (default: <data_dir>/active_sessions)",
    )
    tasks_file: Path | None = Field(
        default=None,
        description="YAML file describing tasks for filtering and completion counts (default: <data_dir>/tasks.yaml)",
    )

    # Durable store settings
    store_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout applied to every durable-store call",
    )
    store_retry_attempts: int = Field(
        default=3,
        description="Attempts made for an unacknowledged time log write",
    )
    store_retry_backoff_seconds: float = Field(
        default=0.2,
        description="Initial backoff between time log write attempts (doubles each retry)",
    )
    store_retry_backoff_max_seconds: float = Field(
        default=2.0,
        description="Upper bound on the backoff between write attempts",
    )
    lock_timeout_seconds: float = Field(
        default=10.0,
        description="Maximum wait for a per-user timer lock",
    )

    # CLI settings
    default_user: str = Field(
        default="",
        description="User id the CLI acts as when --user is not given (default: login name)",
    )

    # Aggregation settings
    reference_seconds_per_task: int = Field(
        default=DEFAULT_REFERENCE_SECONDS_PER_TASK,
        description="Baseline seconds of work per completed task used by the efficiency score",
    )
    timezone: str = Field(
        default="UTC",
        description="Timezone used to resolve 'today', 'week' and other range shortcuts",
    )

    # Export settings
    export_chunk_rows: int = Field(
        default=500,
        description="Rows fetched from the store per page while streaming an export",
    )

    def get_data_dir(self) -> Path:
        """Get the data directory, using default if not set."""
        if self.data_dir:
            return self.data_dir
        return WORKTIMER_DIR

    def get_database_path(self) -> Path:
        """Get the time log database path, using default if not set."""
        if self.database_path:
            return self.database_path
        return self.get_data_dir() / "time_logs.db"

    def get_registry_path(self) -> Path:
        """Get the active session registry path, using default if not set."""
        if self.registry_path:
            return self.registry_path
        return self.get_data_dir() / "active_sessions"

    def get_tasks_file(self) -> Path:
        """Get the task directory YAML path, using default if not set."""
        if self.tasks_file:
            return self.tasks_file
        return self.get_data_dir() / "tasks.yaml"


# Global settings instance
settings = Settings()
