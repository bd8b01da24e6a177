"""
Exchange Error Taxonomy

Every adapter maps exchange-native failures onto this fixed set of exceptions
exactly once, at the REST/WebSocket boundary. Callers never see raw exchange
codes, only these classes (the raw code stays available as `native_code`).

Hierarchy:
    ExchangeError
    ├── NetworkError          transient, retried by the manager's reconnect loop
    ├── AuthenticationError   fatal, halts auto-reconnect for that connection
    ├── InsufficientFunds     business-level, surfaced to the caller
    ├── InvalidOrder          business-level, surfaced to the caller
    ├── OrderNotFound         business-level, surfaced to the caller
    └── RateLimitExceeded     business-level, surfaced to the caller

Usage:
    from core.errors import ExchangeError, map_error

    raise map_error(ERROR_CODES, "-2010", "Account has insufficient balance", "binance")
"""

from typing import Dict, Optional, Type, Union


class ExchangeError(Exception):
    """
    Base class for all normalized exchange errors.

    Attributes:
        message: Human readable description
        code: Stable taxonomy code (e.g., "NETWORK_ERROR")
        exchange: Exchange name that raised the error
        native_code: Exchange-specific error code, if any
    """

    code: str = "EXCHANGE_ERROR"

    def __init__(
        self,
        message: str,
        exchange: Optional[str] = None,
        native_code: Optional[Union[str, int]] = None
    ):
        super().__init__(message)
        self.message = message
        self.exchange = exchange
        self.native_code = None if native_code is None else str(native_code)

    def __str__(self) -> str:
        prefix = f"[{self.exchange}] " if self.exchange else ""
        suffix = f" (code {self.native_code})" if self.native_code else ""
        return f"{prefix}{self.message}{suffix}"


class NetworkError(ExchangeError):
    """Transport failure, timeout, clock skew or 5xx. Retryable."""

    code = "NETWORK_ERROR"


class AuthenticationError(ExchangeError):
    """Invalid, expired or under-privileged credentials. Fatal."""

    code = "AUTH_ERROR"


class InsufficientFunds(ExchangeError):
    code = "INSUFFICIENT_FUNDS"


class InvalidOrder(ExchangeError):
    code = "INVALID_ORDER"


class OrderNotFound(ExchangeError):
    code = "ORDER_NOT_FOUND"


class RateLimitExceeded(ExchangeError):
    code = "RATE_LIMIT_EXCEEDED"


ErrorCodeMap = Dict[str, Type[ExchangeError]]


def map_error(
    code_map: ErrorCodeMap,
    native_code: Union[str, int, None],
    message: str,
    exchange: str
) -> ExchangeError:
    """
    Translate an exchange-native error code into the taxonomy.

    Args:
        code_map: Exchange-specific mapping of native code (as str) to error class
        native_code: Code returned by the exchange
        message: Exchange-provided message
        exchange: Exchange name

    Returns:
        ExchangeError: Instance of the mapped class, or the base class if unmapped

    Example:
        >>> err = map_error({"-2013": OrderNotFound}, -2013, "Order does not exist.", "binance")
        >>> type(err).__name__
        'OrderNotFound'
    """
    error_cls = code_map.get(str(native_code), ExchangeError)
    return error_cls(message, exchange=exchange, native_code=native_code)


def map_http_status(status: int, message: str, exchange: str) -> Optional[ExchangeError]:
    """
    Map HTTP status codes that have a meaning independent of the exchange.

    Returns:
        ExchangeError or None when the status carries no taxonomy meaning
        (the response body must then be inspected)
    """
    if status in (429, 418):
        return RateLimitExceeded(message, exchange=exchange, native_code=status)
    if status in (401, 403):
        return AuthenticationError(message, exchange=exchange, native_code=status)
    if status >= 500:
        return NetworkError(message, exchange=exchange, native_code=status)
    return None
