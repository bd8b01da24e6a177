"""
Exchange Interface: Abstract Contract for All Exchanges

This module defines the abstract base class that every exchange variant must
implement. The connection manager, the scheduler's task functions and any
other caller work with ExchangeInterface, never with a concrete exchange.

What the base class owns:
    - Session lifecycle: connect() verifies credentials over REST, then starts
      the public WebSocket in the background; disconnect() tears both down
    - Observer registry (EventBus) for lifecycle and stream events
    - Subscription registry keyed by (SubscriptionType, "BASE/QUOTE"):
      the first subscribe sends the exchange frame, later ones only add a
      listener, unsubscribe removes every listener of the key
    - Normalization helpers shared by all variants

What each variant implements:
    - REST operations (account, market data, orders, leverage)
    - Client factories: _create_api_client, _create_public_ws, _create_private_ws
    - _verify_credentials (authenticated call), _ping (public call)
    - _topic_for: (type, symbol) -> exchange stream topic

Events (subscribe with exchange.on(event, callback)):
    connected, disconnected, ws_connected, ws_disconnected, ws_error,
    heartbeat, error, message

Capabilities System:
    Each variant declares which stream types and optional features it
    supports. Subscribing to an unsupported stream raises NotImplementedError.

    Example:
        capabilities = {
            "ticker": True,
            "orderbook": True,
            "kline": False,   # not offered by this exchange
            ...
        }

Example:
    exchange = create_exchange("bybit")
    await exchange.connect(ExchangeCredentials(api_key="...", api_secret="..."))
    ticker = await exchange.get_ticker("BTC/USDT")
    await exchange.subscribe_websocket("ticker", "BTC/USDT", print)
"""

import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from core.config import Settings, settings as default_settings
from core.errors import InvalidOrder, NetworkError, ExchangeError
from core.event_bus import EventBus
from core.logging import get_logger
from core.rest_client import RestClient
from core.schemas import (
    AccountInfo,
    Balance,
    ExchangeCredentials,
    Order,
    OrderBook,
    OrderRequest,
    Position,
    SubscriptionType,
    Ticker,
    Trade,
    WebSocketMessage,
)
from core.utils.formatting import format_number, generate_client_order_id, to_unified_symbol
from core.ws_client import WebSocketClient


MessageCallback = Callable[[WebSocketMessage], Any]
SubscriptionKey = Tuple[SubscriptionType, str]


class ExchangeInterface(ABC):
    """
    Abstract Base Class for Exchange Adapters

    Class Attributes:
        name: Unique identifier for the exchange (lowercase, e.g., "binance")
        capabilities: Dictionary indicating which features this exchange supports

    Instance Attributes:
        settings: Settings used for endpoints, precision and timeouts
        credentials: Credentials bound by the last connect()
        api: REST client (None while disconnected)
        public_ws: Public stream client (None while disconnected)
        private_ws: Authenticated stream client, created on first private subscribe
        events: Observer registry for lifecycle and stream events
        last_heartbeat: Millisecond timestamp of the last inbound frame or connect
    """

    # ============================================
    # Class Attributes (must be set by subclasses)
    # ============================================

    name: str
    """Unique exchange identifier (lowercase). Example: "binance", "okx" """

    capabilities: Dict[str, bool] = {
        "ticker": False,
        "orderbook": False,
        "kline": False,
        "trade": False,
        "account": False,
        "order": False,
        "position": False,
        "set_margin_type": False,
    }
    """Dictionary indicating which features this exchange supports"""

    requires_passphrase: bool = False

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self.credentials: Optional[ExchangeCredentials] = None

        self.api: Optional[RestClient] = None
        self.public_ws: Optional[WebSocketClient] = None
        self.private_ws: Optional[WebSocketClient] = None

        self.events = EventBus(self.name)
        self.last_heartbeat: Optional[int] = None
        self._connected = False
        self._subscriptions: Dict[SubscriptionKey, List[MessageCallback]] = {}

        self.logger = get_logger(f"exchanges.{self.name}")
        self.events.on("heartbeat", self._record_heartbeat)

    # ============================================
    # Variant Hooks
    # ============================================

    @abstractmethod
    def _create_api_client(self, credentials: ExchangeCredentials) -> RestClient:
        """Build (but do not open) the REST client for these credentials."""

    @abstractmethod
    def _create_public_ws(self) -> WebSocketClient:
        """Build the public market-data stream client."""

    @abstractmethod
    async def _create_private_ws(self) -> WebSocketClient:
        """Build the authenticated account stream client (may call REST)."""

    @abstractmethod
    async def _verify_credentials(self) -> None:
        """
        Make one authenticated REST call.

        Raises:
            AuthenticationError: Keys rejected
            NetworkError: Exchange unreachable
        """

    @abstractmethod
    async def _ping(self) -> None:
        """Lightweight public REST call used by health_check()."""

    @abstractmethod
    def _topic_for(self, sub_type: SubscriptionType, symbol: str) -> str:
        """Exchange-native stream topic for a unified (type, symbol) key."""

    # ============================================
    # Connection Lifecycle
    # ============================================

    async def connect(self, credentials: ExchangeCredentials) -> None:
        """
        Establish the REST session and the public WebSocket.

        A previous live session is torn down first so that at most one REST
        and WebSocket pairing exists per adapter.

        Args:
            credentials: API key material (passphrase for OKX/Bitget)

        Raises:
            AuthenticationError: Credentials rejected (fatal)
            NetworkError: Exchange unreachable (retryable)

        Example:
            >>> await exchange.connect(ExchangeCredentials(api_key="k", api_secret="s"))
            >>> exchange.is_connected()
            True
        """
        if self.api is not None or self._connected:
            await self._teardown()

        self.credentials = credentials
        self.api = self._create_api_client(credentials)
        await self.api.open()

        try:
            await self._verify_credentials()
        except Exception:
            await self.api.close()
            self.api = None
            raise

        self.public_ws = self._create_public_ws()
        await self.public_ws.start()

        self._connected = True
        self.last_heartbeat = self._now_ms()
        self.logger.info(f"✓ {self.name} connected (sandbox={credentials.sandbox})")
        self.events.emit("connected", {"exchange": self.name})

    async def disconnect(self) -> None:
        """
        Close WebSockets and the REST session, and forget all subscriptions.

        Safe to call when already disconnected.
        """
        was_connected = self._connected
        await self._teardown()
        if was_connected:
            self.logger.info(f"{self.name} disconnected")
            self.events.emit("disconnected", {"exchange": self.name})

    async def cleanup(self) -> None:
        """Disconnect and drop every observer. The adapter is unusable afterwards."""
        await self.disconnect()
        self.events.clear()

    async def _teardown(self) -> None:
        self._connected = False
        self._subscriptions.clear()

        for client in (self.private_ws, self.public_ws):
            if client is not None:
                try:
                    await client.stop()
                except Exception as e:
                    self.logger.warning(f"{self.name} WebSocket stop failed: {e}")
        self.private_ws = None
        self.public_ws = None

        if self.api is not None:
            await self.api.close()
        self.api = None

    def is_connected(self) -> bool:
        return self._connected

    def is_websocket_connected(self) -> bool:
        return self.public_ws is not None and self.public_ws.is_connected

    async def health_check(self) -> bool:
        """
        Check if the exchange API is reachable.

        Returns:
            bool: False when disconnected or the ping fails; never raises
        """
        if not self._connected:
            return False
        try:
            await self._ping()
            return True
        except ExchangeError as e:
            self.logger.warning(f"{self.name} health check failed: {e}")
            return False

    # ============================================
    # Account Operations
    # ============================================

    @abstractmethod
    async def get_account(self) -> AccountInfo:
        """Futures account summary (wallet, margin, unrealized PnL)."""

    @abstractmethod
    async def get_balances(self) -> List[Balance]:
        """Per-currency balances with a non-zero total."""

    @abstractmethod
    async def get_positions(self, symbol: Optional[str] = None) -> List[Position]:
        """
        Open positions (size > 0), optionally filtered by symbol.

        Args:
            symbol: Unified symbol (e.g., "BTC/USDT") or None for all
        """

    # ============================================
    # Market Data Operations
    # ============================================

    @abstractmethod
    async def get_ticker(self, symbol: str) -> Ticker:
        """24h ticker with best bid/ask for a unified symbol."""

    @abstractmethod
    async def get_order_book(self, symbol: str, limit: int = 20) -> OrderBook:
        """Order book snapshot, best levels first on both sides."""

    @abstractmethod
    async def get_trades(self, symbol: str, limit: int = 100) -> List[Trade]:
        """Recent public trades, oldest first."""

    # ============================================
    # Order Operations
    # ============================================

    @abstractmethod
    async def create_order(self, request: OrderRequest) -> Order:
        """
        Place an order.

        Amounts are rounded to amount_precision and prices to price_precision
        decimals before they are sent.

        Raises:
            InvalidOrder: Rejected parameters (e.g., limit order without price)
            InsufficientFunds: Not enough margin
            RateLimitExceeded: Still rate limited after REST retries
        """

    @abstractmethod
    async def cancel_order(self, order_id: str, symbol: str) -> Order:
        """Cancel an open order. Raises OrderNotFound if unknown."""

    @abstractmethod
    async def get_order(self, order_id: str, symbol: str) -> Order:
        """Fetch one order. Raises OrderNotFound if unknown."""

    @abstractmethod
    async def get_orders(self, symbol: Optional[str] = None, limit: int = 100) -> List[Order]:
        """Order history (open and closed)."""

    @abstractmethod
    async def get_open_orders(self, symbol: Optional[str] = None) -> List[Order]:
        """Currently open orders."""

    @abstractmethod
    async def set_leverage(self, symbol: str, leverage: int) -> None:
        """Set leverage for a symbol."""

    @abstractmethod
    async def set_margin_type(self, symbol: str, margin_type: str) -> None:
        """Switch a symbol between "isolated" and "cross" margin."""

    # ============================================
    # WebSocket Subscriptions
    # ============================================

    async def subscribe_websocket(
        self,
        sub_type: Union[SubscriptionType, str],
        symbol: Optional[str],
        callback: MessageCallback
    ) -> None:
        """
        Subscribe a callback to a (type, symbol) stream.

        The first subscription on a key sends the exchange subscribe frame.
        Subscribing again only registers the extra callback, and registering
        the same callback twice is a no-op.

        Args:
            sub_type: SubscriptionType or its value (e.g., "ticker")
            symbol: Unified symbol; None/"" for account-wide private streams
            callback: Receives a WebSocketMessage per update

        Raises:
            NetworkError: Adapter not connected
            NotImplementedError: Stream type not supported by this exchange

        Example:
            >>> await exchange.subscribe_websocket("ticker", "BTC/USDT", on_ticker)
        """
        self._ensure_connected()
        sub_type = SubscriptionType(sub_type)
        if not self.supports(sub_type.value):
            raise NotImplementedError(f"{self.name} does not support {sub_type.value} streams")

        key = self._subscription_key(sub_type, symbol)
        listeners = self._subscriptions.get(key)
        if listeners is not None:
            if callback not in listeners:
                listeners.append(callback)
            return

        self._subscriptions[key] = [callback]
        try:
            client = await self._private_ws_client() if sub_type.is_private else self.public_ws
            await client.subscribe([self._topic_for(sub_type, key[1])])
        except Exception:
            self._subscriptions.pop(key, None)
            raise
        self.logger.info(f"{self.name} subscribed to {sub_type.value} {key[1] or '*'}")

    async def unsubscribe_websocket(
        self,
        sub_type: Union[SubscriptionType, str],
        symbol: Optional[str]
    ) -> bool:
        """
        Remove every callback of a (type, symbol) key and stop the stream.

        Returns:
            bool: False if the key was not subscribed
        """
        sub_type = SubscriptionType(sub_type)
        key = self._subscription_key(sub_type, symbol)
        if self._subscriptions.pop(key, None) is None:
            return False

        client = self.private_ws if sub_type.is_private else self.public_ws
        if client is not None:
            await client.unsubscribe([self._topic_for(sub_type, key[1])])
        self.logger.info(f"{self.name} unsubscribed from {sub_type.value} {key[1] or '*'}")
        return True

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def has_subscription(self, sub_type: Union[SubscriptionType, str], symbol: Optional[str]) -> bool:
        return self._subscription_key(SubscriptionType(sub_type), symbol) in self._subscriptions

    def emit_websocket_data(
        self,
        sub_type: SubscriptionType,
        symbol: Optional[str],
        data: Any
    ) -> int:
        """
        Dispatch one normalized stream update to its listeners.

        Listeners of the exact key are called first, then account-wide
        listeners (symbol "") for private streams. A failing listener is
        logged and skipped.

        Returns:
            int: Number of callbacks invoked
        """
        unified = to_unified_symbol(symbol) if symbol else None
        message = WebSocketMessage(
            type=sub_type,
            symbol=unified,
            data=data,
            timestamp=self._now_ms(),
            exchange=self.name,
        )

        keys = [(sub_type, unified or "")]
        if sub_type.is_private and unified:
            keys.append((sub_type, ""))

        delivered = 0
        for key in keys:
            for callback in list(self._subscriptions.get(key, ())):
                delivered += 1
                try:
                    callback(message)
                except Exception as e:
                    self.logger.error(f"{self.name} {sub_type.value} listener raised: {e}")

        self.events.emit("message", message)
        return delivered

    async def _private_ws_client(self) -> WebSocketClient:
        if self.private_ws is None:
            client = await self._create_private_ws()
            await client.start()
            self.private_ws = client
        return self.private_ws

    @staticmethod
    def _subscription_key(sub_type: SubscriptionType, symbol: Optional[str]) -> SubscriptionKey:
        return sub_type, to_unified_symbol(symbol) if symbol else ""

    # ============================================
    # Observer Helpers
    # ============================================

    def on(self, event: str, callback: Callable[[Any], Any]) -> None:
        self.events.on(event, callback)

    def off(self, event: str, callback: Callable[[Any], Any] = None) -> None:
        self.events.off(event, callback)

    def _record_heartbeat(self, payload: Dict[str, Any]) -> None:
        self.last_heartbeat = payload.get("timestamp") or self._now_ms()

    def _report_error(self, error: Exception) -> None:
        self.logger.error(f"{self.name} error: {error}")
        self.events.emit("error", {"exchange": self.name, "error": str(error)})

    # ============================================
    # Normalization Helpers
    # ============================================

    def _ensure_connected(self) -> RestClient:
        if not self._connected or self.api is None:
            raise NetworkError(f"{self.name} is not connected", exchange=self.name)
        return self.api

    def _format_amount(self, amount: float) -> str:
        return format_number(amount, self.settings.amount_precision)

    def _format_price(self, price: float) -> str:
        return format_number(price, self.settings.price_precision)

    def _validate_order(self, request: OrderRequest) -> None:
        if request.type == "limit" and request.price is None:
            raise InvalidOrder("Limit order requires a price", exchange=self.name)

    def _client_order_id(self, request: OrderRequest) -> str:
        return request.client_order_id or generate_client_order_id()

    @staticmethod
    def _now_ms() -> int:
        return int(time.time() * 1000)

    # ============================================
    # Helper Methods
    # ============================================

    def supports(self, feature: str) -> bool:
        """
        Check if this exchange supports a specific feature.

        Args:
            feature: Stream type value (e.g., "kline") or optional feature name

        Example:
            >>> exchange.supports("kline")
            False
        """
        return self.capabilities.get(feature, False)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(name='{self.name}', connected={self._connected})>"
