"""
Test settings validation.
"""

import pytest
from pydantic import ValidationError

from mdw_sync.core.config import DatabaseConfig, Settings


def test_page_limit_is_clamped_to_middleware_cap():
    assert Settings(mdw_page_limit=500).mdw_page_limit == 100
    assert Settings(mdw_page_limit=25).mdw_page_limit == 25
    with pytest.raises(ValidationError):
        Settings(mdw_page_limit=0)


def test_environment_must_be_known():
    assert Settings(environment="production").is_production
    with pytest.raises(ValidationError):
        Settings(environment="qa")


def test_log_level_is_upper_cased():
    assert Settings(log_level="debug").log_level == "DEBUG"
    with pytest.raises(ValidationError):
        Settings(log_level="verbose")


def test_batch_sizes_must_be_positive():
    with pytest.raises(ValidationError):
        Settings(parallel_workers=0)
    with pytest.raises(ValidationError):
        Settings(reorg_depth=-1)


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("REORG_DEPTH", "25")
    monkeypatch.setenv("SYNC_INTERVAL_MS", "1500")
    monkeypatch.setenv("MIDDLEWARE_URL", "https://testnet.aeternity.io/mdw/")

    settings = Settings()

    assert settings.reorg_depth == 25
    assert settings.sync_interval_seconds == 1.5
    assert settings.middleware_url == "https://testnet.aeternity.io/mdw"


def test_database_url_driver_selection():
    url = "postgresql://user:pw@db:5432/mdw"

    assert DatabaseConfig.get_database_url(url) == "postgresql+asyncpg://user:pw@db:5432/mdw"
    assert DatabaseConfig.get_database_url(
        "postgresql+asyncpg://user:pw@db:5432/mdw", async_driver=False
    ) == url
    assert DatabaseConfig.get_engine_config("sqlite+aiosqlite:///x.db") == {"connect_args": {"timeout": 30}}
