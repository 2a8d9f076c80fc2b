"""
Tests for environment-driven Settings.
"""
import os

import pytest

from otc_sync.config.config import Settings, env_bool, env_list


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("OTC_"):
            monkeypatch.delenv(key, raising=False)


class TestLoad:

    def test_defaults(self):
        cfg = Settings.load()
        assert cfg.contract_address is None
        assert cfg.price_chunk_size == 30
        assert cfg.bulk_batch_size == 10
        assert cfg.reconnect_base_delay_sec == 1.0
        assert cfg.reconnect_max_delay_sec == 30.0
        assert cfg.max_reconnect_attempts == 5
        assert cfg.fallback_rpc_urls == []

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("OTC_CONTRACT_ADDRESS", "0x" + "ab" * 20)
        monkeypatch.setenv("OTC_FALLBACK_RPC_URLS", "https://a.test, https://b.test,")
        monkeypatch.setenv("OTC_BULK_BATCH_SIZE", "25")
        monkeypatch.setenv("OTC_LOG_LEVEL", "debug")
        monkeypatch.setenv("OTC_LOG_ASYNC_FILE", "no")

        cfg = Settings.load()

        assert cfg.contract_address == "0x" + "ab" * 20
        assert cfg.fallback_rpc_urls == ["https://a.test", "https://b.test"]
        assert cfg.bulk_batch_size == 25
        assert cfg.log_level == "DEBUG"
        assert cfg.log_async_file is False

    def test_empty_value_uses_default(self, monkeypatch):
        monkeypatch.setenv("OTC_PRICE_REFRESH_SEC", "")
        assert Settings.load().price_refresh_sec == 60.0

    @pytest.mark.parametrize("key,value", [
        ("OTC_BULK_BATCH_SIZE", "0"),
        ("OTC_PRICE_CHUNK_SIZE", "31"),
        ("OTC_LEDGER_MAX_CONCURRENT", "0"),
        ("OTC_RECONNECT_BASE_DELAY_SEC", "60"),
        ("OTC_REQUEST_TIMEOUT_SEC", "0"),
    ])
    def test_invalid_values_rejected(self, monkeypatch, key, value):
        monkeypatch.setenv(key, value)
        with pytest.raises(ValueError):
            Settings.load()

    def test_frozen(self):
        cfg = Settings.load()
        with pytest.raises(Exception):
            cfg.bulk_batch_size = 3


class TestHelpers:

    @pytest.mark.parametrize("raw,expected", [("1", True), ("Yes", True), ("false", False), ("0", False)])
    def test_env_bool(self, monkeypatch, raw, expected):
        monkeypatch.setenv("OTC_FLAG", raw)
        assert env_bool("OTC_FLAG", not expected) is expected

    def test_env_bool_default(self):
        assert env_bool("OTC_FLAG", True) is True

    def test_env_list_empty(self):
        assert env_list("OTC_NOTHING") == []
