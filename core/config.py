"""
Configuration Management Module

This module handles loading, validating, and providing access to application configuration
from environment variables (.env file).

Uses Pydantic Settings for automatic validation and type conversion.

Key Features:
- Loads configuration from .env file
- Exposes reconnect/backoff and health-check constants as settings
- Holds live and sandbox endpoints for every supported exchange
- Provides type-safe access to configuration values

Usage:
    from core.config import settings

    print(settings.health_check_interval)
    print(settings.rest_url("okx", sandbox=True))
"""

from typing import Dict
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """
    Application Settings

    Values are automatically loaded from environment variables or .env file.

    Attributes:
        log_level: Logging level for the "perpcore" logger
        request_timeout: Timeout for HTTP requests in seconds
        request_retries: Attempts per REST call on rate-limit / transport errors
        recv_window_ms: Signature validity window sent to exchanges that support it
        health_check_interval: Seconds between connection health sweeps
        max_reconnect_attempts: Automatic reconnect attempts before giving up
        reconnect_base_delay: Base delay for exponential reconnect backoff (seconds)
        ws_ping_interval: Seconds between WebSocket keepalive pings
        ws_max_reconnect_delay: Upper bound on WebSocket reconnect backoff (seconds)
        stale_after_execution_seconds: Scheduler stale threshold after last run
        stale_before_first_run_seconds: Scheduler stale threshold for never-run tasks
        amount_precision: Decimal places for order amounts
        price_precision: Decimal places for order prices
    """

    # ============================================
    # Application Configuration
    # ============================================

    environment: str = Field(
        default="development",
        description="Application environment (development, production)"
    )

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    # ============================================
    # REST Transport
    # ============================================

    request_timeout: int = Field(
        default=10,
        description="HTTP request timeout in seconds"
    )

    request_retries: int = Field(
        default=3,
        description="Maximum attempts per REST request on retryable failures"
    )

    recv_window_ms: int = Field(
        default=10_000,
        description="Signed request validity window in milliseconds"
    )

    # ============================================
    # Connection Health & Reconnect
    # ============================================

    health_check_interval: float = Field(
        default=30.0,
        description="Seconds between health checks of connected exchanges"
    )

    max_reconnect_attempts: int = Field(
        default=5,
        description="Automatic reconnect attempts before a connection is given up"
    )

    reconnect_base_delay: float = Field(
        default=2.0,
        description="Base delay in seconds; attempt n waits base * 2**n"
    )

    ws_ping_interval: float = Field(
        default=20.0,
        description="Seconds between WebSocket keepalive pings"
    )

    ws_max_reconnect_delay: float = Field(
        default=30.0,
        description="Maximum delay between WebSocket reconnection attempts (seconds)"
    )

    # ============================================
    # Scheduler
    # ============================================

    stale_after_execution_seconds: float = Field(
        default=300.0,
        description="A task idle this long after its last execution is considered stale"
    )

    stale_before_first_run_seconds: float = Field(
        default=120.0,
        description="A task that never executed this long after start is considered stale"
    )

    # ============================================
    # Order Formatting
    # ============================================

    amount_precision: int = Field(
        default=8,
        description="Decimal places used when sending order amounts"
    )

    price_precision: int = Field(
        default=6,
        description="Decimal places used when sending order prices"
    )

    # ============================================
    # Exchange Endpoints
    # ============================================

    binance_base_url: str = Field(default="https://fapi.binance.com")
    binance_testnet_url: str = Field(default="https://testnet.binancefuture.com")
    binance_ws_url: str = Field(default="wss://fstream.binance.com/ws")
    binance_testnet_ws_url: str = Field(default="wss://stream.binancefuture.com/ws")

    bybit_base_url: str = Field(default="https://api.bybit.com")
    bybit_testnet_url: str = Field(default="https://api-testnet.bybit.com")
    bybit_ws_url: str = Field(default="wss://stream.bybit.com/v5")
    bybit_testnet_ws_url: str = Field(default="wss://stream-testnet.bybit.com/v5")

    # OKX demo trading shares the REST host and is selected by header
    okx_base_url: str = Field(default="https://www.okx.com")
    okx_testnet_url: str = Field(default="https://www.okx.com")
    okx_ws_url: str = Field(default="wss://ws.okx.com:8443/ws/v5")
    okx_testnet_ws_url: str = Field(default="wss://wspap.okx.com:8443/ws/v5")

    bitget_base_url: str = Field(default="https://api.bitget.com")
    bitget_testnet_url: str = Field(default="https://api.bitget.com")
    bitget_ws_url: str = Field(default="wss://ws.bitget.com/v2/ws")
    bitget_testnet_ws_url: str = Field(default="wss://wspap.bitget.com/v2/ws")

    # ============================================
    # Pydantic Settings Configuration
    # ============================================

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False
    )

    # ============================================
    # Endpoint Helpers
    # ============================================

    def rest_url(self, exchange: str, sandbox: bool = False) -> str:
        """
        Get the REST base URL for an exchange.

        Args:
            exchange: Exchange name (e.g., "binance")
            sandbox: Return the testnet/demo URL instead of production

        Returns:
            Base URL without trailing slash

        Raises:
            ValueError: If no URL is configured for the exchange
        """
        return self._endpoint(exchange, "testnet_url" if sandbox else "base_url")

    def ws_url(self, exchange: str, sandbox: bool = False) -> str:
        """Get the WebSocket base URL for an exchange."""
        return self._endpoint(exchange, "testnet_ws_url" if sandbox else "ws_url")

    def _endpoint(self, exchange: str, suffix: str) -> str:
        attr = f"{exchange.lower()}_{suffix}"
        if not hasattr(self, attr):
            raise ValueError(f"No endpoint configured for exchange '{exchange}'")
        return getattr(self, attr).rstrip("/")

    def reconnect_policy(self) -> Dict[str, float]:
        """
        Snapshot of the reconnect/backoff constants.

        Returns:
            Dictionary with interval, attempts and base delay
        """
        return {
            "health_check_interval": self.health_check_interval,
            "max_reconnect_attempts": self.max_reconnect_attempts,
            "reconnect_base_delay": self.reconnect_base_delay,
        }


# ============================================
# Global Settings Instance
# ============================================

# Loaded once and reused; components accept an explicit Settings for tests
settings = Settings()


# ============================================
# Configuration Validation
# ============================================

def validate_configuration(config: Settings = None) -> None:
    """
    Validate critical configuration settings on startup.

    Args:
        config: Settings to check (defaults to the global instance)

    Raises:
        ValueError: If required configuration is missing or invalid
    """
    # logging.py imports config.py, so we can't import at module level
    from core.logging import logger

    config = config or settings

    if config.health_check_interval <= 0:
        raise ValueError(
            f"Invalid HEALTH_CHECK_INTERVAL: {config.health_check_interval}. Must be positive"
        )

    if config.max_reconnect_attempts < 0:
        raise ValueError(
            f"Invalid MAX_RECONNECT_ATTEMPTS: {config.max_reconnect_attempts}. Must be >= 0"
        )

    if config.reconnect_base_delay < 0:
        raise ValueError(
            f"Invalid RECONNECT_BASE_DELAY: {config.reconnect_base_delay}. Must be >= 0"
        )

    if config.request_retries < 1:
        raise ValueError(f"Invalid REQUEST_RETRIES: {config.request_retries}. Must be >= 1")

    if config.stale_before_first_run_seconds <= 0 or config.stale_after_execution_seconds <= 0:
        raise ValueError("Scheduler stale thresholds must be positive")

    for name in ("amount_precision", "price_precision"):
        value = getattr(config, name)
        if not (0 <= value <= 18):
            raise ValueError(f"Invalid {name.upper()}: {value}. Must be between 0 and 18")

    valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    if config.log_level.upper() not in valid_log_levels:
        raise ValueError(
            f"Invalid LOG_LEVEL: '{config.log_level}'. "
            f"Must be one of: {', '.join(valid_log_levels)}"
        )

    logger.info("Configuration validated successfully")
    logger.info(
        f"Health check every {config.health_check_interval}s, "
        f"max {config.max_reconnect_attempts} reconnect attempts "
        f"(base delay {config.reconnect_base_delay}s)"
    )
    logger.info(f"Log level: {config.log_level.upper()}")
