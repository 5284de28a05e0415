"""
engine settings, loaded from IB_* environment variables (or a .env file).
"""

from decimal import Decimal
from functools import lru_cache
from typing import Dict, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# referral walks never go deeper than this, even on corrupted (cyclic) data
MAX_REFERRAL_DEPTH = 10


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="IB_",
        env_file=".env",
        extra="ignore",
    )

    # database
    database_dsn: str = "dbname=ibcrm user=ibcrm password=secret host=localhost port=5432"

    # commission math
    pip_value: Decimal = Field(Decimal("10"), ge=0, description="money per pip per lot")
    pip_values: Dict[str, Decimal] = Field(
        default_factory=dict,
        description="optional per-symbol pip value overrides",
    )
    min_trade_duration_seconds: int = Field(60, ge=0)
    max_referral_depth: int = Field(MAX_REFERRAL_DEPTH, ge=1, le=MAX_REFERRAL_DEPTH)

    # trade-history feed
    trade_feed_base_url: str = "http://localhost:8080/api"
    trade_feed_api_key: Optional[str] = None
    trade_feed_timeout_seconds: float = Field(15.0, gt=0)
    trade_feed_page_size: int = Field(1000, ge=1)
    trade_feed_max_pages: int = Field(100, ge=1)
    lookback_hours: int = Field(24, ge=1)

    # batch
    sync_workers: int = Field(4, ge=1)
    sync_interval_minutes: int = Field(15, ge=1)

    # logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.upper()

    def pip_value_for(self, symbol: str) -> Decimal:
        return self.pip_values.get(symbol, self.pip_value)


@lru_cache
def get_settings() -> Settings:
    return Settings()
