"""
Tests for application configuration and settings validation.
"""

import os
import pytest
from unittest.mock import patch


def test_settings_loads_defaults():
    """Settings should load with sensible defaults in development."""
    # Clear the lru_cache so we get a fresh Settings instance
    from report_sync.config import get_settings
    get_settings.cache_clear()

    with patch.dict(os.environ, {
        "ENVIRONMENT": "development",
        "DATABASE_URL": "postgresql+asyncpg://localhost/test",
    }, clear=False):
        get_settings.cache_clear()
        settings = get_settings()
        assert settings.environment == "development"
        assert settings.is_production is False
        assert settings.job_max_retries == 3
        assert settings.job_timeout_minutes == 15
        assert settings.rate_limit_per_second == 5
        assert settings.backfill_policy == "tiered"
        get_settings.cache_clear()


def test_plain_postgres_url_gets_asyncpg_driver():
    from report_sync.config import Settings
    settings = Settings(database_url="postgresql://user:pw@db.example.com/ads")
    assert settings.database_url == "postgresql+asyncpg://user:pw@db.example.com/ads"


def test_ad_product_and_kind_lists():
    """Comma-separated options should be split, trimmed and normalized."""
    from report_sync.config import Settings
    settings = Settings(
        sync_ad_products="sponsored_products, SPONSORED_BRANDS",
        incremental_report_kinds="Campaign, ad_group",
    )
    assert settings.ad_product_list == ["SPONSORED_PRODUCTS", "SPONSORED_BRANDS"]
    assert settings.incremental_report_kind_list == ["campaign", "ad_group"]


def test_production_requires_api_key():
    """Production mode should refuse to start without an API key."""
    from report_sync.config import get_settings, Settings
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="API_KEY must be set"):
        Settings(
            environment="production",
            database_url="postgresql+asyncpg://prod-host/db",
            encryption_key="x" * 44,
        )
    get_settings.cache_clear()


def test_production_requires_encryption_key():
    from report_sync.config import Settings
    with pytest.raises(ValueError, match="ENCRYPTION_KEY must be set"):
        Settings(
            environment="production",
            database_url="postgresql+asyncpg://prod-host/db",
            api_key="a-real-api-key",
        )


def test_production_accepts_real_secrets():
    """Production mode should accept real secrets."""
    from report_sync.config import Settings
    settings = Settings(
        environment="production",
        api_key="a-real-api-key-that-is-not-empty",
        encryption_key="x" * 44,
        database_url="postgresql+asyncpg://prod-host/db",
    )
    assert settings.is_production is True


@pytest.mark.parametrize("field, value", [
    ("legacy_hot_slice_days", 2),
    ("legacy_hot_slice_days", 8),
    ("legacy_cold_slice_days", 9),
    ("legacy_cold_slice_days", 31),
    ("backfill_policy", "weekly"),
])
def test_sync_options_are_validated(field, value):
    from report_sync.config import Settings
    with pytest.raises(ValueError):
        Settings(**{field: value})
