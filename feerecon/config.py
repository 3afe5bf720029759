# feerecon/config.py

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App
    app_name: str = "Fee Reconciliation API"
    app_env: str = "development"
    debug: bool = True
    frontend_url: str = "http://localhost:5173"
    log_level: str = "INFO"

    # Supabase (local cache mirror + auth)
    supabase_url: str
    supabase_anon_key: str
    supabase_service_role_key: str

    # Zoho CRM
    zoho_client_id: str
    zoho_client_secret: str
    zoho_refresh_token: str
    zoho_accounts_url: str = "https://accounts.zoho.eu"
    zoho_api_domain: str = "https://www.zohoapis.eu"

    # Anthropic (Claude)
    anthropic_api_key: str = ""
    enable_ai_explanations: bool = True

    # Matching config
    default_tolerance: float = 5.0
    prescreening_threshold: int = 50

    # Sync / backpressure
    sync_batch_size: int = 100
    sync_batch_delay_seconds: float = 2.0
    read_delay_seconds: float = 0.2
    default_retry_after_seconds: int = 60

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
