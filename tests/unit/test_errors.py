"""
Unit Tests for the Exchange Error Taxonomy

Run with:
    pytest tests/unit/test_errors.py -v
"""

import pytest

from core.errors import (
    AuthenticationError,
    ExchangeError,
    InsufficientFunds,
    InvalidOrder,
    NetworkError,
    OrderNotFound,
    RateLimitExceeded,
    map_error,
    map_http_status,
)


class TestExchangeError:
    """Test error attributes and rendering"""

    def test_str_includes_exchange_and_code(self):
        err = ExchangeError("boom", exchange="okx", native_code=51008)
        assert str(err) == "[okx] boom (code 51008)"

    def test_str_without_context(self):
        assert str(ExchangeError("boom")) == "boom"

    def test_native_code_is_stored_as_string(self):
        assert OrderNotFound("gone", native_code=-2013).native_code == "-2013"

    @pytest.mark.parametrize("cls,code", [
        (ExchangeError, "EXCHANGE_ERROR"),
        (NetworkError, "NETWORK_ERROR"),
        (AuthenticationError, "AUTH_ERROR"),
        (InsufficientFunds, "INSUFFICIENT_FUNDS"),
        (InvalidOrder, "INVALID_ORDER"),
        (OrderNotFound, "ORDER_NOT_FOUND"),
        (RateLimitExceeded, "RATE_LIMIT_EXCEEDED"),
    ])
    def test_taxonomy_codes(self, cls, code):
        assert cls.code == code
        assert issubclass(cls, ExchangeError)


class TestMapError:
    """Test native code translation"""

    CODES = {"-2013": OrderNotFound, "-2019": InsufficientFunds}

    def test_mapped_code(self):
        err = map_error(self.CODES, -2019, "Margin is insufficient.", "binance")
        assert isinstance(err, InsufficientFunds)
        assert err.exchange == "binance"
        assert err.native_code == "-2019"

    def test_unmapped_code_falls_back_to_base(self):
        err = map_error(self.CODES, "-9999", "weird", "binance")
        assert type(err) is ExchangeError


class TestMapHttpStatus:
    """Test exchange-independent HTTP statuses"""

    @pytest.mark.parametrize("status,cls", [
        (429, RateLimitExceeded),
        (418, RateLimitExceeded),
        (401, AuthenticationError),
        (403, AuthenticationError),
        (500, NetworkError),
        (503, NetworkError),
    ])
    def test_mapped_statuses(self, status, cls):
        assert isinstance(map_http_status(status, "msg", "bybit"), cls)

    @pytest.mark.parametrize("status", [200, 400, 404])
    def test_other_statuses_return_none(self, status):
        assert map_http_status(status, "msg", "bybit") is None
