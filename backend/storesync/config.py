from pydantic_settings import BaseSettings
from typing import Optional
import os
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    SECRET_KEY: str = "your-secret-key-change-in-production"
    DEBUG: bool = False

    # Local ERP database. SQLite is fine for development and tests; production
    # deployments point this at Postgres.
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./storesync.db")

    ALLOWED_ORIGINS: str = "http://localhost:5173,http://localhost:3000"

    # Remote store connection. These are only fallbacks: once an operator saves
    # connector settings through the API, the row in connector_settings wins.
    PLATFORM_BASE_URL: Optional[str] = None
    PLATFORM_CONSUMER_KEY: Optional[str] = None
    PLATFORM_CONSUMER_SECRET: Optional[str] = None
    PLATFORM_WEBHOOK_SECRET: Optional[str] = None
    PLATFORM_API_PREFIX: str = "/wp-json/wc/v3"

    # Transport policy. The retry delay doubles on every attempt.
    PLATFORM_REQUEST_TIMEOUT_SECONDS: float = 120.0
    PLATFORM_MAX_RETRIES: int = 3
    PLATFORM_RETRY_DELAY_SECONDS: float = 3.0

    # Paginated job policy
    SYNC_PAGE_SIZE: int = 10
    SYNC_PAGE_DELAY_SECONDS: float = 2.0
    SYNC_ERROR_RETRY_DELAY_SECONDS: float = 5.0
    # Consecutive failures of the same page before the job is marked failed.
    SYNC_MAX_PAGE_FAILURES: int = 5
    SYNC_ERROR_LOG_LIMIT: int = 50
    SYNC_JOB_RETENTION_DAYS: int = 30
    SYNC_CLEANUP_INTERVAL_SECONDS: int = 86400

    # Dependency resolution
    RESOLVER_MAX_DEPTH: int = 8
    RESOLVER_PLACEHOLDERS_ENABLED: bool = True

    class Config:
        env_file = None
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def secret_key(self) -> str:
        return self.SECRET_KEY

    @property
    def allowed_origins(self) -> list:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]


settings = Settings()
