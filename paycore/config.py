"""
Application configuration using pydantic-settings.
Loads from environment variables / .env file.
"""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_name: str = "paycore"
    app_env: Literal["development", "staging", "production"] = "development"
    debug: bool = False

    # API Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Postgres
    database_url: str = ""
    database_ssl: bool = False

    # Redis (Celery broker + alert de-duplication)
    redis_url: str = "redis://localhost:6379/0"

    # PayPlus
    payplus_api_url: str = "https://restapidev.payplus.co.il/api/v1.0/"
    payplus_api_key: str = ""
    payplus_secret_key: str = ""
    payplus_payment_page_uid: str = ""
    payplus_enforce_signature: bool = True
    payplus_request_timeout_seconds: float = 15.0
    currency: str = "ILS"

    # Public URLs
    api_url: str = "http://localhost:8000"
    frontend_url: str = "http://localhost:5173"

    # Admin
    admin_api_key: str = ""

    # Checkout sessions
    session_ttl_minutes: int = 30

    # Polling fallback
    polling_enabled: bool = True
    polling_grace_seconds: int = 60
    polling_backoff_base_seconds: int = 15
    polling_backoff_ceiling_seconds: int = 240
    polling_max_attempts: int = 10
    polling_pass_interval_seconds: int = 30
    polling_batch_size: int = 100

    # Webhook acknowledgment bound
    webhook_processing_timeout_seconds: float = 5.0

    # What to do with a terminal result that lands after the session expired
    late_resolution_policy: Literal["grant", "manual_review"] = "grant"

    # Operational alerts
    alert_webhook_url: str = ""
    alert_dedupe_ttl_seconds: int = 3600

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def environment_tag(self) -> str:
        """Environment recorded on transactions and tokens."""
        return "production" if self.is_production else "staging"

    @property
    def payplus_webhook_url(self) -> str:
        return self.api_url.rstrip("/") + "/webhooks/payplus"

    @property
    def payment_result_url(self) -> str:
        return self.frontend_url.rstrip("/") + "/payment-result"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
