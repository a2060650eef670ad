"""Application configuration. All sensitive config from .env."""
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """App settings from environment."""

    # Database - default SQLite for easy local dev; use DATABASE_URL for PostgreSQL
    database_url: str = "sqlite:///./careerpulse.db"

    # SQLAlchemy pooling (Postgres only)
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout_s: int = 30
    db_pool_recycle_s: int = 1800

    # Google OAuth client used for Gmail access and token refresh
    google_client_id: str = ""
    google_client_secret: str = ""
    google_token_uri: str = "https://oauth2.googleapis.com/token"
    # Redirect URI registered in Google Cloud (e.g. http://localhost:8000/api/gmail/callback)
    gmail_oauth_redirect_uri: Optional[str] = None
    # Refresh the access token this many seconds before it actually expires
    token_refresh_skew_seconds: int = 60

    # Gmail listing
    gmail_page_size: int = 100
    sync_default_max_results: int = 100
    sync_max_results_limit: int = 500
    sync_default_days_back: int = 30

    # AI - set OPENAI_API_KEY for field extraction
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_temperature: float = 0.1
    openai_max_tokens: int = 1000
    # Body characters sent to the model
    extraction_body_chars: int = 2000
    # Max entries in the in-process extraction cache (FIFO eviction)
    extraction_cache_max_size: int = 1000

    # CORS
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Auth - JWT verification or API key (tokens are issued elsewhere)
    secret_key: str = ""
    api_key_header: str = "X-API-Key"
    api_key: str = ""
    api_key_user_id: Optional[int] = None
    jwt_algorithm: str = "HS256"

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
