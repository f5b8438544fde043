from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    database_url: str = Field("sqlite:///./fulfiller.db", alias="DATABASE_URL")
    shop_url: Optional[str] = Field(None, alias="SHOP_URL")
    shop_token: Optional[str] = Field(None, alias="SHOP_TOKEN")
    shopify_api_version: str = Field("2024-01", alias="SHOPIFY_API_VERSION")
    shopify_webhook_secret: Optional[str] = Field(None, alias="SHOPIFY_WEBHOOK_SECRET")
    app_url: Optional[str] = Field(None, alias="APP_URL")

    # Enrichment calls run while the order lock is held, keep them short.
    enrichment_timeout_seconds: float = Field(5.0, alias="ENRICHMENT_TIMEOUT_SECONDS")
    enrichment_max_retries: int = Field(2, alias="ENRICHMENT_MAX_RETRIES")

    webhook_dedupe_ttl_seconds: int = Field(600, alias="WEBHOOK_DEDUPE_TTL_SECONDS")
    retention_days: int = Field(60, alias="RETENTION_DAYS")
    log_level: str = Field("INFO", alias="LOG_LEVEL")


@lru_cache()
def get_settings() -> Settings:
    return Settings()
