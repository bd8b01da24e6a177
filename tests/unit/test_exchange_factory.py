"""
Unit Tests for the Exchange Factory

Run with:
    pytest tests/unit/test_exchange_factory.py -v
"""

import pytest

from core.config import Settings
from core.exchange_factory import (
    EXCHANGE_CLASSES,
    create_exchange,
    get_exchange_features,
    get_exchange_requirements,
    get_supported_exchanges,
    is_supported,
    validate_exchange_config,
)
from core.schemas import ExchangeCredentials
from exchanges.binance import BinanceExchange
from exchanges.bitget import BitgetExchange
from exchanges.bybit import BybitExchange
from exchanges.okx import OKXExchange


class TestCreateExchange:
    """Tests for name -> adapter dispatch"""

    def test_supported_exchanges(self):
        assert get_supported_exchanges() == ["binance", "bybit", "okx", "bitget"]

    @pytest.mark.parametrize("name,cls", [
        ("binance", BinanceExchange),
        ("BYBIT", BybitExchange),
        (" okx ", OKXExchange),
        ("Bitget", BitgetExchange),
    ])
    def test_create_by_name(self, name, cls):
        adapter = create_exchange(name)
        assert isinstance(adapter, cls)
        assert not adapter.is_connected()

    def test_settings_are_passed_through(self):
        config = Settings(_env_file=None, amount_precision=2)
        assert create_exchange("binance", config).settings is config

    def test_unsupported_exchange(self):
        assert not is_supported("kraken")
        with pytest.raises(ValueError, match="not supported"):
            create_exchange("kraken")


class TestValidation:
    """Tests for credential validation"""

    def test_valid_credentials(self):
        validate_exchange_config("binance", ExchangeCredentials(api_key="k", api_secret="s"))
        validate_exchange_config("okx", ExchangeCredentials(api_key="k", api_secret="s", passphrase="p"))

    @pytest.mark.parametrize("name", ["okx", "bitget"])
    def test_passphrase_required(self, name):
        with pytest.raises(ValueError, match="passphrase"):
            validate_exchange_config(name, ExchangeCredentials(api_key="k", api_secret="s"))

    def test_blank_key_rejected(self):
        with pytest.raises(ValueError, match="API key"):
            validate_exchange_config("bybit", ExchangeCredentials(api_key="  ", api_secret="s"))

    def test_blank_secret_rejected(self):
        with pytest.raises(ValueError, match="API secret"):
            validate_exchange_config("bybit", ExchangeCredentials(api_key="k", api_secret=""))

    def test_missing_credentials(self):
        with pytest.raises(ValueError):
            validate_exchange_config("binance", None)

    def test_unsupported_exchange(self):
        with pytest.raises(ValueError):
            validate_exchange_config("kraken", ExchangeCredentials(api_key="k", api_secret="s"))


class TestDescriptors:
    """Tests for requirement and feature descriptions"""

    def test_requirements(self):
        assert get_exchange_requirements("binance")["required"] == ["api_key", "api_secret"]
        assert get_exchange_requirements("bitget") == {
            "exchange": "bitget",
            "required": ["api_key", "api_secret", "passphrase"],
            "optional": ["sandbox"],
        }

    def test_features_are_a_copy(self):
        features = get_exchange_features("okx")
        assert features["kline"] is False
        features["kline"] = True
        assert EXCHANGE_CLASSES["okx"].capabilities["kline"] is False
