from pydantic_settings import BaseSettings, NoDecode
from pydantic import field_validator, model_validator
from functools import lru_cache
from typing import Annotated


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://localhost:5432/feedback_portal"

    @field_validator('DATABASE_URL', mode='before')
    @classmethod
    def convert_database_url(cls, v: str) -> str:
        """Convert postgresql:// to postgresql+asyncpg:// for async support."""
        if v and v.startswith('postgresql://'):
            return v.replace('postgresql://', 'postgresql+asyncpg://', 1)
        return v

    # CORS
    FRONTEND_URL: str = "http://localhost:3000"

    # User sync integrations (segment membership webhooks)
    USER_SYNC_WEBHOOK_URLS: Annotated[list[str], NoDecode] = []
    USER_SYNC_WEBHOOK_SECRET: str | None = None
    USER_SYNC_TIMEOUT_SECONDS: float = 10.0

    @field_validator('USER_SYNC_WEBHOOK_URLS', mode='before')
    @classmethod
    def split_webhook_urls(cls, v):
        """Accept a comma-separated string as well as a list."""
        if isinstance(v, str):
            return [url.strip() for url in v.split(',') if url.strip()]
        return v

    # Segments
    DEFAULT_SEGMENT_COLOR: str = "#6b7280"
    SEGMENT_SCHEDULER_ENABLED: bool = True
    SEGMENT_EVALUATION_INTERVAL_MINUTES: int = 0

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    DOCS_ENABLED: bool = True

    @model_validator(mode='after')
    def check_production_debug(self) -> "Settings":
        """Production must not run with DEBUG enabled."""
        if self.ENVIRONMENT == "production" and self.DEBUG:
            raise ValueError("DEBUG must be disabled when ENVIRONMENT=production")
        return self

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def sqlalchemy_echo(self) -> bool:
        # Never echo SQL in production, statements can carry user data
        return self.DEBUG and not self.is_production

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
