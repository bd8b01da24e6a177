"""
Symbol and Precision Formatting

Contract-level symbols are always "BASE/QUOTE" (e.g. "BTC/USDT"). Exchanges
want their own spelling:

    binance / bybit / bitget   BTCUSDT
    okx                        BTC-USDT-SWAP

Amounts and prices are rounded half-up to a fixed number of decimals before
they leave the process, and rendered without exponent notation.
"""

import random
import string
import time
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional, Union


# Longest first so "USDC" is not mistaken for "USD" + "C"
KNOWN_QUOTES = ("USDT", "USDC", "BUSD", "USD", "BTC", "ETH")


def split_symbol(symbol: str) -> tuple:
    """
    Split a symbol into (base, quote).

    Accepts "BTC/USDT", "BTC-USDT", "BTC-USDT-SWAP", "BTC/USDT:USDT" and
    concatenated "BTCUSDT".

    Raises:
        ValueError: If no quote currency can be identified
    """
    cleaned = symbol.strip().upper().split(":")[0]

    for sep in ("/", "-", "_"):
        if sep in cleaned:
            parts = [p for p in cleaned.split(sep) if p]
            if len(parts) >= 2:
                return parts[0], parts[1]

    for quote in KNOWN_QUOTES:
        if cleaned.endswith(quote) and len(cleaned) > len(quote):
            return cleaned[: -len(quote)], quote

    raise ValueError(f"Cannot determine quote currency of symbol '{symbol}'")


def to_unified_symbol(symbol: str) -> str:
    """
    Convert any exchange spelling into "BASE/QUOTE".

    Symbols that cannot be split are returned upper-cased unchanged.

    Examples:
        >>> to_unified_symbol("BTCUSDT")
        'BTC/USDT'
        >>> to_unified_symbol("ETH-USDT-SWAP")
        'ETH/USDT'
    """
    try:
        base, quote = split_symbol(symbol)
    except ValueError:
        return symbol.strip().upper()
    return f"{base}/{quote}"


def to_concatenated_symbol(symbol: str) -> str:
    """'BTC/USDT' -> 'BTCUSDT' (Binance, Bybit, Bitget)."""
    base, quote = split_symbol(symbol)
    return f"{base}{quote}"


def to_okx_swap_symbol(symbol: str) -> str:
    """'BTC/USDT' -> 'BTC-USDT-SWAP'."""
    base, quote = split_symbol(symbol)
    return f"{base}-{quote}-SWAP"


def round_decimal(value: Union[int, float, str, Decimal], precision: int) -> Decimal:
    """Round half-up to `precision` decimal places."""
    quantum = Decimal(1).scaleb(-precision)
    return Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP)


def format_number(value: Union[int, float, str, Decimal], precision: int) -> str:
    """
    Round and render a number for an exchange request body.

    Trailing zeros are stripped and exponent notation is never produced.

    Example:
        >>> format_number(0.1234567891, 8)
        '0.12345679'
        >>> format_number(25000.0, 6)
        '25000'
    """
    rounded = round_decimal(value, precision)
    text = format(rounded, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def safe_float(value: Any, default: float = 0.0) -> float:
    """
    Parse a numeric field that exchanges may send as "", None or a string.

    Example:
        >>> safe_float("")
        0.0
        >>> safe_float("1.5")
        1.5
    """
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def optional_float(value: Any) -> Optional[float]:
    """Like safe_float but returns None for missing or zero-like empty values."""
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_client_order_id(prefix: str = "perp") -> str:
    """
    Build a client order id: "<prefix>_<ms>_<9 random base36 chars>".

    Some exchanges cap the length (OKX: 32 alphanumerics, no underscore), so
    variants may post-process the result.
    """
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"
