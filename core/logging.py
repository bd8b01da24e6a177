"""
Unified Logging Configuration

Centralized logging for the connectivity core. Every module logs through the
"perpcore" logger hierarchy instead of print().

Usage:
    from core.logging import logger, get_logger

    logger.info("Manager started")

    log = get_logger(__name__)          # -> "perpcore.exchanges.okx"
    log.warning("Heartbeat overdue")

Log Levels:
    DEBUG    - Raw frames, request parameters, timer arming
    INFO     - Connects, disconnects, task start/stop
    WARNING  - Retries, stale heartbeats, reconnect attempts
    ERROR    - Failed requests, task function exceptions, exhausted reconnects

Configuration:
    The level comes from LOG_LEVEL (see core.config.Settings).
"""

import logging
import sys
from typing import Optional

from core.config import settings


ROOT_LOGGER_NAME = "perpcore"


def setup_logging(
    log_level: str = "INFO",
    log_format: Optional[str] = None,
    include_timestamp: bool = True,
    include_module: bool = True
) -> logging.Logger:
    """
    Configure and return the application logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Custom log format string (uses default if None)
        include_timestamp: Include timestamp in log messages
        include_module: Include logger name in log messages

    Returns:
        logging.Logger: Configured "perpcore" logger

    Example:
        >>> logger = setup_logging(log_level="DEBUG")
        >>> logger.info("Connected to okx")
        2024-01-01 12:00:00 [INFO] perpcore: Connected to okx
    """
    if log_format is None:
        format_parts = []

        if include_timestamp:
            format_parts.append("%(asctime)s")

        format_parts.append("[%(levelname)s]")

        if include_module:
            format_parts.append("%(name)s:")

        format_parts.append("%(message)s")

        log_format = " ".join(format_parts)

    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format=log_format,
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
        force=True
    )

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(level)

    return root


# ============================================
# Initialize Logger with Settings
# ============================================

logger = setup_logging(log_level=settings.log_level)


# ============================================
# Convenience Functions
# ============================================

def get_logger(name: str) -> logging.Logger:
    """
    Get a child logger for a module or component.

    Args:
        name: Name for the logger (typically __name__)

    Returns:
        logging.Logger: "perpcore.<name>" logger

    Example:
        >>> log = get_logger("exchanges.bybit.ws_client")
        >>> log.name
        'perpcore.exchanges.bybit.ws_client'
    """
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def set_log_level(level: str) -> None:
    """
    Change the log level at runtime.

    Args:
        level: New log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    numeric = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(numeric)
    logging.getLogger().setLevel(numeric)


# ============================================
# Log Helper Functions
# ============================================

def log_api_request(exchange: str, method: str, path: str, params: dict = None) -> None:
    """
    Log an outgoing REST request with consistent formatting.

    Signed values are never passed here; callers log the unsigned params.

    Example:
        >>> log_api_request("binance", "GET", "/fapi/v1/depth", {"symbol": "BTCUSDT"})
        [DEBUG] API Request: binance GET /fapi/v1/depth | Params: {'symbol': 'BTCUSDT'}
    """
    if params:
        logger.debug(f"API Request: {exchange} {method} {path} | Params: {params}")
    else:
        logger.debug(f"API Request: {exchange} {method} {path}")


def log_api_response(exchange: str, path: str, status: int, response_time: float = None) -> None:
    """
    Log a REST response with status and timing information.

    Example:
        >>> log_api_response("bybit", "/v5/market/tickers", 200, 0.112)
        [DEBUG] API Response: bybit /v5/market/tickers | Status: 200 | Time: 0.112s
    """
    time_str = f" | Time: {response_time:.3f}s" if response_time else ""
    logger.debug(f"API Response: {exchange} {path} | Status: {status}{time_str}")


def log_websocket_event(exchange: str, event: str, symbol: str = None, details: str = None) -> None:
    """
    Log a WebSocket lifecycle event.

    "error" events are logged at ERROR, everything else at INFO.

    Example:
        >>> log_websocket_event("okx", "subscribed", "BTC/USDT", "tickers")
        [INFO] WebSocket: okx subscribed | Symbol: BTC/USDT | tickers
    """
    symbol_str = f" | Symbol: {symbol}" if symbol else ""
    details_str = f" | {details}" if details else ""

    level = logging.ERROR if event == "error" else logging.INFO
    logger.log(level, f"WebSocket: {exchange} {event}{symbol_str}{details_str}")


logger.debug("Logging system initialized")
