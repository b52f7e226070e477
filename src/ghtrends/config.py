from datetime import date
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigError(RuntimeError):
    """Raised when a required credential or secret is missing."""


class Settings(BaseSettings):
    """App-wide configuration pulled from environment variables or .env."""

    # Database
    db_user: str = "crawler"
    db_password: str = "crawler"
    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "ghtrends"
    database_url: str | None = None

    # GitHub
    github_token: str | None = None
    github_api_base: str = "https://api.github.com"
    search_delay_seconds: float = 2.1
    search_max_attempts: int = 5
    search_per_page: int = 100

    # Trigger
    cron_secret: str | None = None

    # Discovery
    max_tasks_per_run: int = 3
    max_pages_per_task: int = 3
    discovery_created_from: date = date(2020, 1, 1)
    discovery_pushed_after: date | None = None
    discovery_stars_min: int = 100
    refresh_every_days: int = 7
    max_consecutive_failures: int = 5
    stale_task_minutes: int = 60

    # Scoring
    trend_window_days: int = 14
    scoring_use_batch: bool = True

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )

    def require_github_token(self) -> str:
        if not self.github_token:
            raise ConfigError(
                "GITHUB_TOKEN environment variable is required. "
                "Create a Personal Access Token at https://github.com/settings/tokens"
            )
        return self.github_token

    def require_cron_secret(self) -> str:
        if not self.cron_secret:
            raise ConfigError("CRON_SECRET environment variable is required.")
        return self.cron_secret


@lru_cache()
def get_settings() -> Settings:  # pragma: no cover
    return Settings()
