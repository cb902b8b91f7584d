from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional
import os

class Settings(BaseSettings):
    # Upstream video provider (OpenAI Videos API)
    openai_api_key: str = ""
    openai_org_id: Optional[str] = None
    openai_project_id: Optional[str] = None
    openai_base_url: str = "https://api.openai.com/v1"
    upstream_timeout_seconds: float = 30.0
    upstream_max_concurrent: int = 10
    delete_upstream_on_delete: bool = False

    # Database - Railway provides DATABASE_URL, fallback to SQLite for local
    database_url: Optional[str] = None

    # Redis cache (optional)
    redis_url: Optional[str] = None

    # Quota
    default_videos_limit: int = 100
    anonymous_videos_limit: int = 10

    # Background status reconciler
    reconciler_enabled: bool = True
    reconciler_interval_seconds: float = 30.0
    reconciler_max_concurrent: int = 5

    # Auth - optional HS256 secret for Bearer tokens, X-User-ID header otherwise
    jwt_secret: Optional[str] = None

    # Rate limiting
    rate_limit_enabled: bool = True
    create_rate_limit: str = "10/minute"

    # App Settings
    app_name: str = "Sora Studio API"
    app_version: str = "1.0.0"
    debug: bool = False
    allowed_origins: str = "http://localhost:3001"

    # API Settings
    backend_host: str = "0.0.0.0"
    backend_port: int = int(os.getenv("PORT", "3000"))

    class Config:
        env_file = ".env"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Auto-detect database URL
        if self.database_url is None:
            self.database_url = "sqlite+aiosqlite:///./sora_studio.db"
        # SQLAlchemy async needs postgresql+asyncpg://
        if self.database_url.startswith("postgres://"):
            self.database_url = self.database_url.replace("postgres://", "postgresql+asyncpg://", 1)
        elif self.database_url.startswith("postgresql://"):
            self.database_url = self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

@lru_cache()
def get_settings() -> Settings:
    return Settings()
