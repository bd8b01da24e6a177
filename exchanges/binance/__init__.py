"""
Binance Exchange Adapter

This module implements the ExchangeInterface for Binance Futures (USD-M).

API Documentation:
    https://binance-docs.github.io/apidocs/futures/en/

Endpoints Used:
    REST:
        - GET  /fapi/v2/account, /fapi/v2/positionRisk - Account and positions
        - GET  /fapi/v1/ticker/24hr, /fapi/v1/ticker/bookTicker - Ticker
        - GET  /fapi/v1/depth, /fapi/v1/aggTrades - Order book and trades
        - POST/DELETE/GET /fapi/v1/order - Order lifecycle
        - POST /fapi/v1/leverage, /fapi/v1/marginType - Symbol settings
        - POST/PUT /fapi/v1/listenKey - User data stream

    WebSocket:
        - wss://fstream.binance.com/ws - Market streams (SUBSCRIBE frames)
        - wss://fstream.binance.com/ws/<listenKey> - User data stream

Symbol Format:
    "BTC/USDT" <-> "BTCUSDT"
"""

from typing import Any, Dict, List, Optional

from core.exchange_interface import ExchangeInterface
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
)
from core.utils.formatting import to_concatenated_symbol
from .api_client import BinanceAPIClient
from .ws_client import (
    BinanceUserDataClient,
    BinanceWebSocketClient,
    market_topic,
    parse_market_message,
    parse_user_message,
)


class BinanceExchange(ExchangeInterface):
    """
    Binance Futures Exchange Adapter

    Example:
        >>> exchange = BinanceExchange()
        >>> await exchange.connect(ExchangeCredentials(api_key="...", api_secret="..."))
        >>> book = await exchange.get_order_book("BTC/USDT", limit=10)
        >>> await exchange.subscribe_websocket("trade", "BTC/USDT", on_trade)
    """

    # ============================================
    # Class Attributes
    # ============================================

    name = "binance"

    capabilities = {
        "ticker": True,
        "orderbook": True,
        "kline": True,
        "trade": True,
        "account": True,
        "order": True,
        "position": True,
        "set_margin_type": True,
    }

    # ============================================
    # Client Factories
    # ============================================

    def _create_api_client(self, credentials: ExchangeCredentials) -> BinanceAPIClient:
        return BinanceAPIClient(
            self.settings.rest_url(self.name, credentials.sandbox),
            credentials,
            timeout=self.settings.request_timeout,
            retries=self.settings.request_retries,
            recv_window_ms=self.settings.recv_window_ms,
        )

    def _create_public_ws(self) -> BinanceWebSocketClient:
        return BinanceWebSocketClient(
            self.settings.ws_url(self.name, self.credentials.sandbox),
            events=self.events,
            on_message=self._handle_market_message,
            ping_interval=self.settings.ws_ping_interval,
            max_reconnect_delay=self.settings.ws_max_reconnect_delay,
        )

    async def _create_private_ws(self) -> BinanceUserDataClient:
        listen_key = await self.api.create_listen_key()
        base = self.settings.ws_url(self.name, self.credentials.sandbox)
        return BinanceUserDataClient(
            f"{base}/{listen_key}",
            events=self.events,
            on_message=self._handle_user_message,
            keepalive=self.api.keepalive_listen_key,
            ping_interval=self.settings.ws_ping_interval,
            max_reconnect_delay=self.settings.ws_max_reconnect_delay,
        )

    async def _verify_credentials(self) -> None:
        await self.api.get_account_raw()

    async def _ping(self) -> None:
        await self._ensure_connected().ping()

    def _topic_for(self, sub_type: SubscriptionType, symbol: str) -> str:
        if sub_type.is_private:
            return sub_type.value
        return market_topic(sub_type, to_concatenated_symbol(symbol))

    # ============================================
    # Stream Dispatch
    # ============================================

    def _handle_market_message(self, data: Dict[str, Any]) -> None:
        parsed = parse_market_message(data)
        if parsed is not None:
            self.emit_websocket_data(*parsed)

    def _handle_user_message(self, data: Dict[str, Any]) -> None:
        if data.get("e") == "listenKeyExpired":
            self._report_error(RuntimeError("binance listenKey expired"))
            return
        for event in parse_user_message(data):
            self.emit_websocket_data(*event)

    # ============================================
    # Account Operations
    # ============================================

    async def get_account(self) -> AccountInfo:
        return await self._ensure_connected().get_account()

    async def get_balances(self) -> List[Balance]:
        return await self._ensure_connected().get_balances()

    async def get_positions(self, symbol: Optional[str] = None) -> List[Position]:
        api = self._ensure_connected()
        return await api.get_positions(to_concatenated_symbol(symbol) if symbol else None)

    # ============================================
    # Market Data Operations
    # ============================================

    async def get_ticker(self, symbol: str) -> Ticker:
        return await self._ensure_connected().get_ticker(to_concatenated_symbol(symbol))

    async def get_order_book(self, symbol: str, limit: int = 20) -> OrderBook:
        return await self._ensure_connected().get_order_book(to_concatenated_symbol(symbol), limit)

    async def get_trades(self, symbol: str, limit: int = 100) -> List[Trade]:
        return await self._ensure_connected().get_trades(to_concatenated_symbol(symbol), limit)

    # ============================================
    # Order Operations
    # ============================================

    async def create_order(self, request: OrderRequest) -> Order:
        """
        Place a futures order (POST /fapi/v1/order).

        Limit orders default to GTC; position_side is only sent when given
        (hedge mode accounts).
        """
        api = self._ensure_connected()
        self._validate_order(request)

        params: Dict[str, Any] = {
            "symbol": to_concatenated_symbol(request.symbol),
            "side": request.side.upper(),
            "type": request.type.upper(),
            "quantity": self._format_amount(request.amount),
            "newClientOrderId": self._client_order_id(request),
        }
        if request.type == "limit":
            params["price"] = self._format_price(request.price)
            params["timeInForce"] = request.time_in_force or "GTC"
        if request.position_side:
            params["positionSide"] = request.position_side.upper()
        if request.reduce_only:
            params["reduceOnly"] = "true"

        order = await api.create_order(params)
        self.logger.info(f"binance order {order.order_id} placed: {request.side} {request.amount} {request.symbol}")
        return order

    async def cancel_order(self, order_id: str, symbol: str) -> Order:
        return await self._ensure_connected().cancel_order(to_concatenated_symbol(symbol), order_id)

    async def get_order(self, order_id: str, symbol: str) -> Order:
        return await self._ensure_connected().get_order(to_concatenated_symbol(symbol), order_id)

    async def get_orders(self, symbol: Optional[str] = None, limit: int = 100) -> List[Order]:
        api = self._ensure_connected()
        return await api.get_all_orders(to_concatenated_symbol(symbol) if symbol else None, limit)

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[Order]:
        api = self._ensure_connected()
        return await api.get_open_orders(to_concatenated_symbol(symbol) if symbol else None)

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        await self._ensure_connected().set_leverage(to_concatenated_symbol(symbol), leverage)

    async def set_margin_type(self, symbol: str, margin_type: str) -> None:
        api = self._ensure_connected()
        await api.set_margin_type(
            to_concatenated_symbol(symbol),
            "ISOLATED" if margin_type == "isolated" else "CROSSED"
        )

    async def disconnect(self) -> None:
        if self.private_ws is not None and self.api is not None:
            try:
                await self.api.close_listen_key()
            except Exception as e:
                self.logger.debug(f"binance listenKey close failed: {e}")
        await super().disconnect()
