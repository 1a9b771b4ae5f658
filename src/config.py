"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "HealthSync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Database ---
    database_url: str = ""  # postgres DSN for asyncpg; empty = in-memory store
    db_pool_min_size: int = 2
    db_pool_max_size: int = 20

    # --- Pipeline ---
    timezone: str = "UTC"  # day boundaries for summaries and activity dates
    batch_max_items: int = 1000
    pipeline_config_path: str | None = None  # override bundled pipeline_config.yaml

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:8081"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
