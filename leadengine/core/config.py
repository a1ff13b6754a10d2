"""
Centralized application settings

All configuration is read from environment variables (or a local .env file)
through pydantic-settings. Use get_settings() everywhere instead of reading
os.environ directly.
"""
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Runtime
    environment: str = "development"
    log_level: str = "INFO"
    use_json_logging: bool = False

    # Database
    database_url: str = "sqlite:///./leadengine.db"

    # AI (judge, DM generation, message analysis)
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    ai_timeout_seconds: float = 30.0

    # Reddit
    reddit_client_id: Optional[str] = None
    reddit_user_agent: str = "leadengine:com.leadengine.agent:v1.0.0"
    reddit_api_base: str = "https://oauth.reddit.com"
    reddit_token_url: str = "https://www.reddit.com/api/v1/access_token"
    http_timeout_seconds: float = 30.0

    # Token lifecycle
    token_refresh_margin_seconds: int = 300
    token_encryption_key: Optional[str] = None

    # API auth
    jwt_secret_key: str = "change-me"
    jwt_algorithm: str = "HS256"

    # Celery
    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/1"
    conversation_poll_seconds: int = 300

    # Pipeline tuning
    knowledge_snippet_limit: int = 20
    price_per_lead_cents: int = 500
    tracking_redirect_fallback_url: str = "https://www.reddit.com"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """Get cached application settings"""
    return Settings()
