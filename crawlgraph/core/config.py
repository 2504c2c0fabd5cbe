"""
Environment settings for the API, the workers and the crawler defaults.

Values come from the process environment or `.env`; names are matched
case-sensitively. The CRAWLER_* values are only defaults: each crawl
request may override them (see CrawlOptions.from_settings).
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, RedisDsn, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ASYNC_DRIVER = "postgresql+asyncpg"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )

    APP_VERSION: str = "1.0.0"
    ENV: Literal["development", "staging", "production"] = "development"
    DEBUG: bool = False
    CORS_ORIGINS: list[str] = ["http://localhost:3000"]

    # PostgreSQL (kept as str: pydantic's multi-host URL type rewrites usernames)
    POSTGRES_DSN: str = Field(..., description="PostgreSQL connection string")
    POSTGRES_POOL_SIZE: int = 20
    POSTGRES_MAX_OVERFLOW: int = 40
    POSTGRES_POOL_TIMEOUT: int = 30
    POSTGRES_ECHO: bool = False
    POSTGRES_SSL: bool = False   # alembic only; the API passes SSL in the DSN

    # Redis / Celery
    REDIS_DSN: RedisDsn = Field(..., description="Redis connection string")
    REDIS_MAX_CONNECTIONS: int = 50
    REDIS_SOCKET_TIMEOUT: float = 5.0
    CELERY_BROKER_URL: str = Field(..., description="Celery broker URL")
    CELERY_RESULT_BACKEND: str = Field(..., description="Celery result backend URL")
    CELERY_TASK_SOFT_TIME_LIMIT: int = 3600
    CELERY_TASK_TIME_LIMIT: int = 7200
    CELERY_MAX_RETRIES: int = 3
    CELERY_RETRY_BACKOFF: int = 60   # seconds, multiplied by the attempt number

    # Crawl defaults
    CRAWLER_MAX_PAGES: int = Field(default=100, ge=1)
    CRAWLER_MAX_DEPTH: int = Field(default=3, ge=0)
    CRAWLER_IGNORE_QUERY_PARAMS: bool = True
    CRAWLER_FOLLOW_EXTERNAL_LINKS: bool = False
    CRAWLER_DELAY_MS: int = Field(default=500, ge=0)
    CRAWLER_REQUEST_TIMEOUT: float = Field(default=10.0, gt=0)
    CRAWLER_MAX_REDIRECTS: int = Field(default=5, ge=0)
    CRAWLER_RESPECT_ROBOTS_TXT: bool = True
    CRAWLER_USER_AGENT: str = "SEOMax Crawler Bot"
    CRAWLER_JS_RENDER: bool = False
    CRAWLER_JS_RENDER_TIMEOUT: int = 15_000   # ms

    # Similarity oracle for the duplicate content pass; disabled without a key
    OPENAI_API_KEY: str = ""
    OPENAI_MODEL: str = "gpt-4o"
    SIMILARITY_ORACLE_TIMEOUT: float = 30.0

    TLS_EXPIRY_WARNING_DAYS: int = 30

    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: Literal["json", "console"] = "json"

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def split_origins(cls, v: str | list) -> list:
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @model_validator(mode="after")
    def check_time_limits(self) -> "Settings":
        if self.CELERY_TASK_SOFT_TIME_LIMIT >= self.CELERY_TASK_TIME_LIMIT:
            raise ValueError("CELERY_TASK_SOFT_TIME_LIMIT must be below CELERY_TASK_TIME_LIMIT")
        return self

    @property
    def postgres_url(self) -> str:
        """POSTGRES_DSN with its scheme swapped for the asyncpg driver."""
        scheme, sep, rest = self.POSTGRES_DSN.partition("://")
        if not sep or not scheme.startswith("postgres"):
            return self.POSTGRES_DSN
        return f"{ASYNC_DRIVER}://{rest}"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
