"""Application configuration using pydantic-settings."""
from functools import lru_cache
from pathlib import Path
from urllib.parse import urlparse

from pydantic_settings import BaseSettings, SettingsConfigDict


CONFLICT_STRATEGIES = {"server_wins", "client_wins", "merge", "prompt_user"}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[3] / ".env"),
        case_sensitive=False,
        extra="ignore",
    )

    # Remote report store
    reports_api_base_url: str = "http://localhost:8080/api"
    reports_api_token: str = ""
    reports_api_timeout_seconds: float = 15.0

    # Application
    log_level: str = "INFO"

    # Polling
    enable_polling: bool = True
    polling_interval_seconds: float = 30.0
    stale_time_seconds: float = 15.0
    refetch_on_focus: bool = True
    refetch_on_reconnect: bool = True
    default_branch_id: str = ""
    default_page_size: int = 10

    # Optimistic updates
    enable_optimistic_updates: bool = True
    max_retries: int = 3
    retry_delay_seconds: float = 1.0
    conflict_window_seconds: float = 30.0

    # Concurrency
    conflict_resolution: str = "server_wins"
    max_concurrent_updates: int = 5
    update_timeout_seconds: float = 10.0
    completed_update_retention: int = 100

    def normalized_conflict_resolution(self) -> str:
        strategy = (self.conflict_resolution or "").strip().lower()
        return strategy if strategy in CONFLICT_STRATEGIES else "server_wins"

    def is_local_backend(self) -> bool:
        try:
            host = (urlparse(self.reports_api_base_url).hostname or "").lower()
        except Exception:
            return False
        return host in {"localhost", "127.0.0.1", "::1"} or host.endswith(".local")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
