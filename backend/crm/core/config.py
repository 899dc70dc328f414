"""Application configuration loaded from environment variables."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Typed settings exposed via dependency injection throughout the app."""

    # Read .env with BOM tolerance; case-sensitive keys
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8-sig",
        case_sensitive=True,
    )

    APP_NAME: str = "Xeno CRM API"
    ENV: str = "dev"  # dev | staging | prod
    DEBUG: bool = False

    # JWT
    SECRET_KEY: str  # set via env/.env
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7
    JWT_ISSUER: str = "xeno-crm"
    JWT_AUDIENCE: str = "xeno-crm-dashboard"

    # CORS
    CORS_ALLOWED_ORIGINS: list[str] = Field(default_factory=list)

    # DB
    DB_URL: str | None = None  # full SQLAlchemy async URL; overrides DB_* parts
    DB_HOST: str = "127.0.0.1"
    DB_PORT: int = 3306
    DB_USER: str = "crm"
    DB_PASSWORD: str = ""  # set via env/.env
    DB_NAME: str = "xeno_crm"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600
    DB_ISOLATION_LEVEL: str = "READ COMMITTED"
    DB_RETRY_ATTEMPTS: int = 4
    DB_RETRY_BASE_DELAY: float = 0.05
    DB_RETRY_JITTER: float = 0.025
    INNODB_LOCK_WAIT_TIMEOUT_SEC: int = 10
    SELECT_MAX_EXECUTION_TIME_MS: int = 5000
    DB_NOWAIT_LOCKS: bool = False
    IDEMPOTENCY_TTL_MINUTES: int = 5
    SECURITY_MAX_CONCURRENCY: int = 4

    # Redis cache for analytics overviews (skipped when Redis is unreachable)
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str | None = None
    REDIS_ENABLED: bool = True
    ANALYTICS_CACHE_TTL_SEC: int = 60

    # Requests are JSON only; audience rule lists are the largest bodies.
    MAX_BODY_BYTES: int = 256 * 1024

    LOG_LEVEL: str = "INFO"
    SLOW_REQUEST_MS: int = 1000

    # Rate limits, see crm.core.rate_limit.limiter for syntax.
    LOGIN_RATE: str = "10/minute"
    PREVIEW_RATE: str = "30/minute"

    # Campaign execution simulator. The rates stand in for a real dispatcher.
    CAMPAIGN_COMPLETION_DELAY_SEC: float = 5.0
    SIMULATED_DELIVERY_RATE: float = 0.95
    SIMULATED_OPEN_RATE: float = 0.25
    SIMULATED_CLICK_RATE: float = 0.05

    @property
    def DATABASE_URL(self) -> str:
        if self.DB_URL:
            return self.DB_URL
        return (
            f"mysql+aiomysql://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}?charset=utf8mb4"
        )


settings = Settings()
