from pathlib import Path
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Postgres settings
    DATABASE_URL: str = "postgresql://localhost:5432/go_leadership"

    # Redis settings (only used by the durable queue tier)
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int = 20

    # OpenAI settings
    OPENAI_API_KEY: str | None = None
    OPENAI_MODEL: str = "gpt-4o"
    OPENAI_MAX_TOKENS: int = 600
    OPENAI_TEMPERATURE: float = 0.7
    OPENAI_TIMEOUT_SECONDS: float = 30.0
    OPENAI_MAX_RETRIES: int = 3
    # Whole generation call, retries and backoff included
    OPENAI_DEADLINE_SECONDS: float = 75.0

    # Resend settings
    RESEND_API_KEY: str | None = None
    RESEND_API_URL: str = "https://api.resend.com/emails"
    RESEND_FROM_ADDRESS: str = "GO Leadership <onboarding@resend.dev>"
    RESEND_WEBHOOK_SECRET: str | None = None

    # Public URL used for tracking links inside rendered emails
    PUBLIC_BASE_URL: str = "http://localhost:8000"

    # Admin endpoints require this token in X-Admin-Token when set
    ADMIN_API_TOKEN: str | None = None

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 2
    DB_POOL_MAX_SIZE: int = 10
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    # =================================================================
    # DRIP CAMPAIGN SETTINGS
    # =================================================================
    EMAIL_QUEUE_BACKEND: Literal["memory", "redis"] = "memory"
    EMAIL_QUEUE_CONCURRENCY: int = 3
    EMAIL_QUEUE_RATE_LIMIT_MAX: int = 10
    EMAIL_QUEUE_RATE_LIMIT_WINDOW_SECONDS: float = 60.0
    EMAIL_QUEUE_MAX_ATTEMPTS: int = 3
    EMAIL_QUEUE_BACKOFF_BASE_SECONDS: float = 2.0
    EMAIL_QUEUE_BACKOFF_MAX_SECONDS: float = 300.0
    EMAIL_QUEUE_POLL_INTERVAL_SECONDS: float = 1.0
    EMAIL_QUEUE_KEEP_COMPLETED: int = 50
    EMAIL_QUEUE_KEEP_FAILED: int = 100
    EMAIL_QUEUE_SHUTDOWN_TIMEOUT_SECONDS: float = 30.0

    PROGRAM_WEEKS: int = 12
    SEND_WEEKDAY: int = 0  # Monday
    SEND_HOUR: int = 9
    SERVER_TIMEZONE: str = "UTC"

    CONTENT_GENERATION_TIMEOUT_SECONDS: float = 90.0
    MAIL_TRANSMISSION_TIMEOUT_SECONDS: float = 20.0

    SCHEDULER_ENABLED: bool = True

    # Create tables and indexes from app/db/schema.sql on pool startup
    DB_APPLY_SCHEMA: bool = False

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @model_validator(mode="after")
    def check_generation_deadline(self) -> "Settings":
        # Content generation must return its fallback before the pipeline gives up on it
        if self.OPENAI_DEADLINE_SECONDS >= self.CONTENT_GENERATION_TIMEOUT_SECONDS:
            raise ValueError(
                "OPENAI_DEADLINE_SECONDS must be below CONTENT_GENERATION_TIMEOUT_SECONDS"
            )
        return self

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            config.update(
                {
                    "min_size": 1,
                    "max_size": 5,
                    "timeout": 15.0,
                }
            )

        return config

    def get_queue_config(self) -> dict:
        """Queue tuning shared by both queue backends."""
        return {
            "concurrency": self.EMAIL_QUEUE_CONCURRENCY,
            "rate_limit_max": self.EMAIL_QUEUE_RATE_LIMIT_MAX,
            "rate_limit_window_seconds": self.EMAIL_QUEUE_RATE_LIMIT_WINDOW_SECONDS,
            "poll_interval_seconds": self.EMAIL_QUEUE_POLL_INTERVAL_SECONDS,
            "keep_completed": self.EMAIL_QUEUE_KEEP_COMPLETED,
            "keep_failed": self.EMAIL_QUEUE_KEEP_FAILED,
            "shutdown_timeout_seconds": self.EMAIL_QUEUE_SHUTDOWN_TIMEOUT_SECONDS,
        }


settings = Settings()
