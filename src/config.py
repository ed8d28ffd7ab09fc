"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "Prime Human Performance"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Database / Supabase ---
    database_url: str  # direct postgres connection string for asyncpg
    supabase_jwt_secret: str  # HS256 secret that signs Supabase session tokens
    db_pool_min_size: int = 2
    db_pool_max_size: int = 20

    # --- Whoop OAuth ---
    whoop_client_id: str = ""
    whoop_client_secret: str = ""
    whoop_redirect_uri: str = "http://localhost:8000/api/v1/auth/whoop/callback"
    whoop_encryption_key: str  # encrypts stored OAuth tokens
    whoop_api_base: str = "https://api.prod.whoop.com/developer/v2"
    whoop_oauth_base: str = "https://api.prod.whoop.com/oauth/oauth2"
    whoop_request_timeout_s: float = 20.0

    # --- Scheduled jobs ---
    cron_secret: str = ""  # Bearer secret the scheduler presents to /cron routes

    # --- Relationships ---
    default_doctor_id: str | None = None

    # --- Frontend ---
    frontend_url: str = "http://localhost:3000"  # OAuth callback redirects here

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
