import logging
from pydantic_settings import BaseSettings
from pydantic import model_validator, ConfigDict
from functools import lru_cache

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment: "development" or "production"
    environment: str = "development"

    database_url: str = "postgresql+asyncpg://localhost/amazon_ads"

    @model_validator(mode="before")
    @classmethod
    def _fix_database_url_for_asyncpg(cls, values: dict) -> dict:
        """Hosted Postgres gives postgresql://; asyncpg needs postgresql+asyncpg://."""
        if not isinstance(values, dict):
            return values
        url = values.get("database_url") or ""
        if url.startswith("postgresql://") and "+asyncpg" not in url:
            values["database_url"] = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return values

    api_key: str = ""  # Required in production; in dev, empty = auth disabled
    cron_secret: str = ""
    encryption_key: str = ""

    # Amazon Ads Reporting API
    ads_api_timeout_seconds: float = 60.0

    # Scheduler loops (seconds)
    scheduler_enabled: bool = True
    submit_interval_seconds: float = 30
    check_interval_seconds: float = 60
    process_interval_seconds: float = 30
    cleanup_interval_seconds: float = 24 * 60 * 60
    sync_pass_interval_seconds: float = 24 * 60 * 60

    # Batch sizes per tick
    submit_batch_size: int = 5
    check_batch_size: int = 10
    process_batch_size: int = 3

    # Job lifecycle
    job_max_retries: int = 3
    job_timeout_minutes: int = 15
    job_retention_days: int = 7
    claim_ttl_seconds: int = 300

    # Per-account rate limits (Amazon Ads reporting quotas)
    rate_limit_per_second: int = 5
    rate_limit_per_minute: int = 100
    rate_limit_per_hour: int = 1000
    rate_limit_burst: int = 10
    rate_limit_inter_request_delay_ms: int = 200

    # Sync-mode selection
    full_attribution_frequency_days: int = 7
    daily_attribution_check_days: int = 3
    sync_ad_products: str = "SPONSORED_PRODUCTS,SPONSORED_BRANDS,SPONSORED_DISPLAY"
    incremental_report_kinds: str = "campaign"
    backfill_policy: str = "tiered"  # tiered | legacy
    legacy_hot_slice_days: int = 7
    legacy_cold_slice_days: int = 10

    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":
        """Enforce that critical secrets are set when running in production."""
        if self.is_production:
            if not self.api_key:
                raise ValueError(
                    "API_KEY must be set in production. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
            if not self.encryption_key:
                raise ValueError(
                    "ENCRYPTION_KEY must be set in production. "
                    "Generate one with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
                )
            if not self.database_url or "localhost" in self.database_url:
                logger.warning("DATABASE_URL appears to point at localhost in production.")
        return self

    @model_validator(mode="after")
    def _validate_sync_options(self) -> "Settings":
        if self.backfill_policy not in ("tiered", "legacy"):
            raise ValueError(f"BACKFILL_POLICY must be 'tiered' or 'legacy', got {self.backfill_policy!r}")
        if not 3 <= self.legacy_hot_slice_days <= 7:
            raise ValueError("LEGACY_HOT_SLICE_DAYS must be between 3 and 7")
        if not 10 <= self.legacy_cold_slice_days <= 30:
            raise ValueError("LEGACY_COLD_SLICE_DAYS must be between 10 and 30")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def ad_product_list(self) -> list[str]:
        return [p.strip().upper() for p in self.sync_ad_products.split(",") if p.strip()]

    @property
    def incremental_report_kind_list(self) -> list[str]:
        return [k.strip().lower() for k in self.incremental_report_kinds.split(",") if k.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
