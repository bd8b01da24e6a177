"""
Unit Tests for Formatting and Time Utilities

Run with:
    pytest tests/unit/test_utils.py -v
"""

import re
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from core.utils.formatting import (
    format_number,
    generate_client_order_id,
    optional_float,
    round_decimal,
    safe_float,
    split_symbol,
    to_concatenated_symbol,
    to_okx_swap_symbol,
    to_unified_symbol,
)
from core.utils.time import ms_to_iso, to_milliseconds


# ============================================
# Symbols
# ============================================

class TestSymbolConversion:
    """Test conversions between unified and exchange spellings"""

    @pytest.mark.parametrize("raw,expected", [
        ("BTCUSDT", "BTC/USDT"),
        ("btc/usdt", "BTC/USDT"),
        ("ETH-USDT-SWAP", "ETH/USDT"),
        ("SOL/USDT:USDT", "SOL/USDT"),
        ("ETHBTC", "ETH/BTC"),
        ("BTCUSDC", "BTC/USDC"),
    ])
    def test_to_unified_symbol(self, raw, expected):
        assert to_unified_symbol(raw) == expected

    def test_unsplittable_symbol_is_upper_cased(self):
        assert to_unified_symbol("foo") == "FOO"

    def test_split_symbol_rejects_unknown_quote(self):
        with pytest.raises(ValueError):
            split_symbol("FOOBAR")

    def test_concatenated_and_okx_spellings(self):
        assert to_concatenated_symbol("BTC/USDT") == "BTCUSDT"
        assert to_okx_swap_symbol("BTC/USDT") == "BTC-USDT-SWAP"
        assert to_okx_swap_symbol("ETHUSDT") == "ETH-USDT-SWAP"


# ============================================
# Numbers
# ============================================

class TestNumberFormatting:
    """Test rounding and rendering of amounts and prices"""

    def test_round_half_up(self):
        assert round_decimal("0.125", 2) == Decimal("0.13")
        assert round_decimal(2.5, 0) == Decimal("3")

    @pytest.mark.parametrize("value,precision,expected", [
        (0.1234567891, 8, "0.12345679"),
        (25000.0, 6, "25000"),
        (0.00000001, 8, "0.00000001"),
        (1.10, 6, "1.1"),
        (0, 8, "0"),
    ])
    def test_format_number(self, value, precision, expected):
        assert format_number(value, precision) == expected

    def test_safe_float(self):
        assert safe_float("") == 0.0
        assert safe_float(None, default=-1.0) == -1.0
        assert safe_float("1.5") == 1.5
        assert safe_float("n/a") == 0.0

    def test_optional_float(self):
        assert optional_float("") is None
        assert optional_float(None) is None
        assert optional_float("2") == 2.0


class TestClientOrderId:
    """Test client order id generation"""

    def test_format(self):
        order_id = generate_client_order_id()
        assert re.fullmatch(r"perp_\d{13}_[a-z0-9]{9}", order_id)

    def test_custom_prefix(self):
        assert generate_client_order_id("bot").startswith("bot_")

    def test_ids_are_unique(self):
        ids = {generate_client_order_id() for _ in range(50)}
        assert len(ids) == 50


# ============================================
# Time
# ============================================

class TestTime:
    """Test timestamp normalization"""

    @pytest.mark.parametrize("raw", [
        1704110400,
        1704110400000,
        "1704110400000",
        "1704110400",
        "2024-01-01T12:00:00Z",
        datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc),
    ])
    def test_to_milliseconds(self, raw):
        assert to_milliseconds(raw) == 1704110400000

    def test_to_milliseconds_none_is_now(self):
        now_ms = int(datetime.now(timezone.utc).timestamp() * 1000)
        assert abs(to_milliseconds(None) - now_ms) < 5000

    def test_negative_timestamp_raises(self):
        with pytest.raises(ValueError):
            to_milliseconds(-1)

    def test_garbage_string_raises(self):
        with pytest.raises(ValueError):
            to_milliseconds("yesterday")

    def test_ms_to_iso(self):
        assert ms_to_iso(1704110400123) == "2024-01-01T12:00:00.123Z"
        assert ms_to_iso(1704110400000) == "2024-01-01T12:00:00.000Z"
