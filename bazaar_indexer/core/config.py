from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    PROJECT_NAME: str = "x402-bazaar-indexer"
    DATABASE_URL: str = "sqlite+aiosqlite:///./x402.db"
    DB_ECHO: bool = False

    # Discovery sources
    FACILITATOR_URL: str = "https://api.cdp.coinbase.com/platform/v2/x402"
    ECOSYSTEM_URL: str = "https://www.x402.org/ecosystem"
    PARTNERS_DATA_PATH: Optional[str] = None
    SKIP_DISCOVERY: bool = False
    SKIP_ECOSYSTEM: bool = False

    # Probing
    TIMEOUT_MS: int = Field(10000, gt=0)
    CONCURRENCY: int = Field(5, ge=1)
    PROBE_RETRIES: int = Field(2, ge=0)
    RETRY_BASE_DELAY_MS: int = Field(500, ge=0)
    SKIP_HEALTH_CHECKS: bool = False

    # Output
    OUTPUT_PATH: Optional[str] = None
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Retention
    # Must cover the 7-day rollup window
    HEALTH_RETENTION_DAYS: int = Field(30, ge=7)
    STALE_RESOURCE_DAYS: int = Field(7, ge=1)

    RUN_INDEX_ON_STARTUP: bool = False

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file=".env",
        extra="ignore"
    )

@lru_cache()
def get_settings():
    return Settings()
