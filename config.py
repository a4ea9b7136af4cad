import os
from functools import lru_cache
from typing import List
from urllib.parse import quote_plus

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file
load_dotenv()


def _default_database_url() -> str:
    user = os.getenv("DB_USER", "orderflow")
    password = quote_plus(os.getenv("DB_PASSWORD", "orderflow"))
    host = os.getenv("DB_HOST", "localhost")
    name = os.getenv("DB_NAME", "orderflow")
    return f"postgresql://{user}:{password}@{host}/{name}"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = Field(default_factory=_default_database_url)

    # --- Shopify ---
    shopify_store_url: str = ""
    shopify_access_token: str = ""
    shopify_api_version: str = "2024-10"
    shopify_fallback_api_versions: str = "2024-10,2024-07,2024-04,2024-01,2023-10,2023-07"
    shopify_cdn_host: str = "https://cdn.shopify.com"
    shopify_timeout_seconds: float = 30.0
    shopify_max_retries: int = 5
    shopify_retry_base_delay: float = 1.0
    shopify_page_limit: int = 250
    shopify_max_pages: int = 10000
    shopify_max_empty_pages: int = 3
    shopify_request_delay_seconds: float = 0.5

    # --- Product images ---
    image_batch_size: int = Field(50, le=50, ge=1)
    image_individual_fetch_cap: int = 200
    image_individual_concurrency: int = 10
    image_individual_delay_seconds: float = 0.1

    # --- Sync drivers ---
    sync_poll_enabled: bool = True
    sync_poll_interval_minutes: int = 5
    sync_poll_window_hours: int = 24
    sync_deep_window_days: int = 7
    sync_run_on_startup: bool = True
    resync_delay_seconds: float = 1.0
    sync_server_url: str = "http://localhost:8000"
    webhook_dedupe_capacity: int = 1000

    log_level: str = "INFO"

    @property
    def api_versions(self) -> List[str]:
        """Primary version first, then the fallbacks in order, without repeats."""
        versions: List[str] = []
        for v in [self.shopify_api_version, *self.shopify_fallback_api_versions.split(",")]:
            v = v.strip()
            if v and v not in versions:
                versions.append(v)
        return versions


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
