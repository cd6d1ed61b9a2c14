from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    database_url: str = "sqlite:///./feedsync.db"
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    debug: bool = False

    # Shopify Admin API
    shopify_api_version: str = "2025-10"
    shopify_webhook_secret: str = ""
    shopify_request_timeout_seconds: float = 20.0
    shopify_page_size: int = 250
    collections_batch_size: int = 50

    # Shared keys for the admin and export surfaces
    admin_key: str = ""
    export_key: str = ""

    # Public base URL, used as the webhook subscription address
    app_base_url: str = ""

    # Sync scheduling and locking
    sync_lease_ttl_minutes: int = 10
    batch_sync_default_limit: int = 20
    batch_sync_interval_minutes: int = 15
    batch_retry_backoff_minutes: int = 30

    # 0 keeps sync run audit rows forever
    sync_run_retention_days: int = 0

    # Redis / Celery
    redis_url: str = ""
    celery_broker_url: str = ""
    celery_result_backend: str = ""

    # Environment
    environment: str = "development"
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def is_deployed(self) -> bool:
        return self.environment.lower() in ("production", "staging")

    @property
    def effective_celery_broker(self) -> str:
        return self.celery_broker_url or self.redis_url or "memory://"

    @property
    def effective_celery_backend(self) -> str:
        return self.celery_result_backend or self.redis_url or "cache+memory://"

    def validate_production(self) -> None:
        """Raise if production is using insecure defaults."""
        if self.is_production and not self.shopify_webhook_secret:
            raise ValueError("SHOPIFY_WEBHOOK_SECRET must be set in production")
        if self.is_production and not self.admin_key:
            raise ValueError("ADMIN_KEY must be set in production")
        if self.is_production and not self.export_key:
            raise ValueError("EXPORT_KEY must be set in production")
        if self.is_production and not self.app_base_url:
            raise ValueError("APP_BASE_URL must be set in production (e.g. https://feed.example.com)")
        if self.is_production and not self.redis_url:
            raise ValueError("REDIS_URL must be set in production")
        if self.is_production and "sqlite" in self.database_url:
            raise ValueError("DATABASE_URL must point at PostgreSQL in production")

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
