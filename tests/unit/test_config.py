"""
Unit Tests for Configuration Module

These tests verify that the configuration system works correctly:
- Default reconnect/health constants match the documented policy
- Endpoint helpers resolve live and sandbox URLs
- Validation catches invalid configurations

Run with:
    pytest tests/unit/test_config.py -v
"""

import pytest
from core.config import Settings, validate_configuration


def make_settings(**overrides) -> Settings:
    """Settings isolated from any local .env file."""
    return Settings(_env_file=None, **overrides)


# ============================================
# Defaults
# ============================================

class TestDefaults:
    """Test the built-in default values"""

    def test_health_and_reconnect_defaults(self):
        config = make_settings()
        assert config.health_check_interval == 30.0
        assert config.max_reconnect_attempts == 5
        assert config.reconnect_base_delay == 2.0

    def test_precision_defaults(self):
        config = make_settings()
        assert config.amount_precision == 8
        assert config.price_precision == 6

    def test_scheduler_stale_defaults(self):
        config = make_settings()
        assert config.stale_after_execution_seconds == 300
        assert config.stale_before_first_run_seconds == 120

    def test_reconnect_policy_snapshot(self):
        config = make_settings(max_reconnect_attempts=2)
        assert config.reconnect_policy() == {
            "health_check_interval": 30.0,
            "max_reconnect_attempts": 2,
            "reconnect_base_delay": 2.0,
        }

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("HEALTH_CHECK_INTERVAL", "5")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        config = make_settings()
        assert config.health_check_interval == 5.0
        assert config.log_level == "debug"


# ============================================
# Endpoint Helpers
# ============================================

class TestEndpoints:
    """Test REST and WebSocket URL resolution"""

    def test_live_rest_urls(self):
        config = make_settings()
        assert config.rest_url("binance") == "https://fapi.binance.com"
        assert config.rest_url("bybit") == "https://api.bybit.com"
        assert config.rest_url("okx") == "https://www.okx.com"
        assert config.rest_url("bitget") == "https://api.bitget.com"

    def test_sandbox_rest_urls(self):
        config = make_settings()
        assert config.rest_url("binance", sandbox=True) == "https://testnet.binancefuture.com"
        assert config.rest_url("bybit", sandbox=True) == "https://api-testnet.bybit.com"

    def test_ws_urls(self):
        config = make_settings()
        assert config.ws_url("okx") == "wss://ws.okx.com:8443/ws/v5"
        assert config.ws_url("okx", sandbox=True) == "wss://wspap.okx.com:8443/ws/v5"
        assert config.ws_url("bitget") == "wss://ws.bitget.com/v2/ws"

    def test_exchange_name_is_case_insensitive(self):
        assert make_settings().rest_url("BINANCE") == "https://fapi.binance.com"

    def test_trailing_slash_is_stripped(self):
        config = make_settings(bybit_base_url="https://api.bybit.com/")
        assert config.rest_url("bybit") == "https://api.bybit.com"

    def test_unknown_exchange_raises(self):
        with pytest.raises(ValueError):
            make_settings().rest_url("kraken")
        with pytest.raises(ValueError):
            make_settings().ws_url("kraken")


# ============================================
# Validation
# ============================================

class TestValidateConfiguration:
    """Test startup validation"""

    def test_defaults_are_valid(self):
        validate_configuration(make_settings())

    @pytest.mark.parametrize("overrides", [
        {"health_check_interval": 0},
        {"max_reconnect_attempts": -1},
        {"reconnect_base_delay": -0.5},
        {"request_retries": 0},
        {"stale_after_execution_seconds": 0},
        {"stale_before_first_run_seconds": -1},
        {"amount_precision": 19},
        {"price_precision": -1},
        {"log_level": "VERBOSE"},
    ])
    def test_invalid_values_raise(self, overrides):
        with pytest.raises(ValueError):
            validate_configuration(make_settings(**overrides))

    def test_zero_reconnect_attempts_is_allowed(self):
        validate_configuration(make_settings(max_reconnect_attempts=0))
