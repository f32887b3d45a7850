"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"

    # Database
    database_url: str = "postgresql+asyncpg://localhost:5432/crmbridge"
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis (caches, entity locks, alert cooldowns)
    redis_url: str = "redis://localhost:6379/0"

    # Encryption (Fernet key for CRM API keys and LPTracker password)
    encryption_key: str = ""

    # Admin endpoints (queue stats, cache reset). Empty = unguarded.
    admin_api_key: str = ""

    # Sentry
    sentry_dsn: str = ""

    # Alerting
    alert_webhook_url: str = ""  # Discord/Slack webhook URL for critical alerts

    # Webhook queue
    queue_enabled: bool = True
    queue_concurrency: int = 5
    queue_max_attempts: int = 3
    queue_backoff_base_ms: int = 1000
    queue_backoff_cap_ms: int = 30000
    queue_tick_interval_ms: int = 100
    queue_job_max_age_seconds: int = 3600
    queue_cleanup_interval_seconds: int = 300

    # Caches
    rules_cache_ttl_seconds: int = 300        # 5 minutes
    metadata_cache_ttl_seconds: int = 1800    # 30 minutes
    lptracker_token_ttl_seconds: int = 43200  # 12 hours

    # Entity locks around rule execution
    entity_lock_ttl_seconds: int = 60
    entity_lock_wait_seconds: float = 10.0

    # CRM HTTP
    crm_http_timeout: float = 10.0
    amocrm_domain: str = "amocrm.ru"
    lptracker_address: str = "direct.lptracker.ru"
    lptracker_service: str = "CRM Integration"

    # Region for phone numbers written without a country code
    phone_default_region: str = "RU"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
