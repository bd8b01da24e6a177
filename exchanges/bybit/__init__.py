"""
Bybit Exchange Adapter

This module implements the ExchangeInterface for Bybit USDT perpetuals
through the V5 unified API (category=linear).

API Documentation:
    https://bybit-exchange.github.io/docs/v5/intro

Endpoints Used:
    REST:
        - GET  /v5/account/wallet-balance - Account and balances
        - GET  /v5/position/list - Positions
        - GET  /v5/market/tickers, /v5/market/orderbook, /v5/market/recent-trade
        - POST /v5/order/create, /v5/order/cancel
        - GET  /v5/order/realtime, /v5/order/history
        - POST /v5/position/set-leverage, /v5/position/switch-isolated

    WebSocket:
        - wss://stream.bybit.com/v5/public/linear
        - wss://stream.bybit.com/v5/private

Symbol Format:
    "BTC/USDT" <-> "BTCUSDT"

Notes:
    - Order create/cancel responses only carry the order id; the full order
      is fetched afterwards
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
from .api_client import BybitAPIClient, CATEGORY
from .ws_client import BybitPrivateClient, BybitStreamParser, BybitWebSocketClient, stream_topic


class BybitExchange(ExchangeInterface):
    """
    Bybit V5 Exchange Adapter

    Example:
        >>> exchange = BybitExchange()
        >>> await exchange.connect(ExchangeCredentials(api_key="...", api_secret="...", sandbox=True))
        >>> order = await exchange.create_order(OrderRequest(symbol="BTC/USDT", side="buy", type="market", amount=0.001))
    """

    # ============================================
    # Class Attributes
    # ============================================

    name = "bybit"

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

    def __init__(self, settings=None):
        super().__init__(settings)
        self._parser = BybitStreamParser()
        self._leverage: Dict[str, int] = {}

    # ============================================
    # Client Factories
    # ============================================

    def _create_api_client(self, credentials: ExchangeCredentials) -> BybitAPIClient:
        return BybitAPIClient(
            self.settings.rest_url(self.name, credentials.sandbox),
            credentials,
            timeout=self.settings.request_timeout,
            retries=self.settings.request_retries,
            recv_window_ms=self.settings.recv_window_ms,
        )

    def _create_public_ws(self) -> BybitWebSocketClient:
        self._parser.reset()
        base = self.settings.ws_url(self.name, self.credentials.sandbox)
        return BybitWebSocketClient(
            f"{base}/public/{CATEGORY}",
            events=self.events,
            on_message=self._handle_ws_message,
            ping_interval=self.settings.ws_ping_interval,
            max_reconnect_delay=self.settings.ws_max_reconnect_delay,
        )

    async def _create_private_ws(self) -> BybitPrivateClient:
        base = self.settings.ws_url(self.name, self.credentials.sandbox)
        return BybitPrivateClient(
            f"{base}/private",
            events=self.events,
            on_message=self._handle_ws_message,
            credentials=self.credentials,
            ping_interval=self.settings.ws_ping_interval,
            max_reconnect_delay=self.settings.ws_max_reconnect_delay,
        )

    async def _verify_credentials(self) -> None:
        await self.api.get_wallet()

    async def _ping(self) -> None:
        await self._ensure_connected().get_server_time()

    def _topic_for(self, sub_type: SubscriptionType, symbol: str) -> str:
        return stream_topic(sub_type, to_concatenated_symbol(symbol) if symbol else "")

    def _handle_ws_message(self, data: Dict[str, Any]) -> None:
        if data.get("op") in ("subscribe", "unsubscribe") and data.get("success") is False:
            self._report_error(RuntimeError(f"bybit subscription rejected: {data.get('ret_msg')}"))
            return
        for event in self._parser.parse(data):
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
        Place an order (POST /v5/order/create) and return its full state.

        Side and type are title-cased ("Buy", "Limit") as V5 expects.
        """
        api = self._ensure_connected()
        self._validate_order(request)
        symbol = to_concatenated_symbol(request.symbol)

        body: Dict[str, Any] = {
            "category": CATEGORY,
            "symbol": symbol,
            "side": request.side.capitalize(),
            "orderType": request.type.capitalize(),
            "qty": self._format_amount(request.amount),
            "orderLinkId": self._client_order_id(request),
        }
        if request.type == "limit":
            body["price"] = self._format_price(request.price)
            body["timeInForce"] = request.time_in_force or "GTC"
        if request.reduce_only:
            body["reduceOnly"] = True
        if request.position_side in ("long", "short"):
            body["positionIdx"] = 1 if request.position_side == "long" else 2

        order_id = await api.create_order(body)
        self.logger.info(f"bybit order {order_id} placed: {request.side} {request.amount} {request.symbol}")
        return await api.get_order(symbol, order_id)

    async def cancel_order(self, order_id: str, symbol: str) -> Order:
        api = self._ensure_connected()
        bybit_symbol = to_concatenated_symbol(symbol)
        await api.cancel_order(bybit_symbol, order_id)
        return await api.get_order(bybit_symbol, order_id)

    async def get_order(self, order_id: str, symbol: str) -> Order:
        return await self._ensure_connected().get_order(to_concatenated_symbol(symbol), order_id)

    async def get_orders(self, symbol: Optional[str] = None, limit: int = 100) -> List[Order]:
        api = self._ensure_connected()
        return await api.get_order_history(to_concatenated_symbol(symbol) if symbol else None, limit)

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[Order]:
        api = self._ensure_connected()
        return await api.get_open_orders(to_concatenated_symbol(symbol) if symbol else None)

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        bybit_symbol = to_concatenated_symbol(symbol)
        await self._ensure_connected().set_leverage(bybit_symbol, leverage)
        self._leverage[bybit_symbol] = leverage

    async def set_margin_type(self, symbol: str, margin_type: str) -> None:
        api = self._ensure_connected()
        bybit_symbol = to_concatenated_symbol(symbol)
        await api.set_margin_type(
            bybit_symbol,
            isolated=margin_type == "isolated",
            leverage=self._leverage.get(bybit_symbol, 10)
        )
