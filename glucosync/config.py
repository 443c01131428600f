"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file).

    Pipeline tuning (deadlines, retry policy, trend tables) lives in
    ``glucosync/cgm/sync_config.yaml`` instead.
    """

    # --- App ---
    app_name: str = "glucosync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Supabase ---
    supabase_db_url: str  # direct postgres connection string for asyncpg
    db_pool_min_size: int = 1
    db_pool_max_size: int = 10
    db_command_timeout_seconds: float = 15.0

    # --- Scheduler trigger ---
    cron_secret: str  # shared secret sent by the scheduler in X-Cron-Secret

    # --- LibreLinkUp ---
    librelinkup_api_base: str = "https://api.libreview.io"
    librelinkup_client_version: str = "4.16.0"
    librelinkup_product: str = "llu.ios"
    http_timeout_seconds: float = 15.0

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
