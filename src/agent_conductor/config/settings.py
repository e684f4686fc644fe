"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "agent-conductor"
    log_level: str = "INFO"
    database_url: str = ""
    workspace_root: Path = PROJECT_ROOT
    default_max_turns: int = Field(default=100, ge=1)
    brain_max_turns: int = Field(default=5, ge=1)
    recent_execution_limit: int = Field(default=10, ge=1)
    task_start_delay_s: float = Field(default=1.0, ge=0.0)
    task_poll_interval_s: float = Field(default=30.0, ge=0.1)
    routine_check_interval_s: float = Field(default=3600.0, ge=1.0)
    brain_interval_hours: float = Field(default=24.0, ge=0.0)
    brain_hour: int = Field(default=9, ge=0, le=23)
    encryption_key: str = ""
    engine_model: str = ""
    engine_permission_mode: str = "bypassPermissions"
    capability_server_python: str = "python"

    model_config = SettingsConfigDict(
        env_prefix="AGENT_CONDUCTOR_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("DATABASE_URL", "")

    def resolved_encryption_key(self) -> str:
        return self.encryption_key or os.getenv("ENCRYPTION_KEY", "")

    def sessions_root(self) -> Path:
        return Path(self.workspace_root) / "agent-sessions"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
