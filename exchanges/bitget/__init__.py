"""
Bitget Exchange Adapter

This module implements the ExchangeInterface for Bitget USDT-M perpetual
futures through the V2 mix API.

API Documentation:
    https://www.bitget.com/api-doc/contract/intro

Endpoints Used:
    REST:
        - GET  /api/v2/mix/account/accounts, /api/v2/mix/position/*
        - GET  /api/v2/mix/market/ticker, merge-depth, fills
        - POST /api/v2/mix/order/place-order, cancel-order
        - GET  /api/v2/mix/order/detail, orders-history, orders-pending
        - POST /api/v2/mix/account/set-leverage, set-margin-mode

    WebSocket:
        - wss://ws.bitget.com/v2/ws/public
        - wss://ws.bitget.com/v2/ws/private

Symbol Format:
    "BTC/USDT" <-> "BTCUSDT"

Notes:
    - Requires an API passphrase
    - Sandbox mode is Bitget demo trading (SUSDT-FUTURES, paptrading header)
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
from .api_client import BitgetAPIClient
from .ws_client import CHANNELS, BitgetPrivateClient, BitgetWebSocketClient, parse_message


class BitgetExchange(ExchangeInterface):
    """
    Bitget V2 Exchange Adapter

    Example:
        >>> exchange = BitgetExchange()
        >>> await exchange.connect(ExchangeCredentials(api_key="...", api_secret="...", passphrase="..."))
        >>> await exchange.set_leverage("ETH/USDT", 5)
    """

    # ============================================
    # Class Attributes
    # ============================================

    name = "bitget"

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

    requires_passphrase = True

    def __init__(self, settings=None):
        super().__init__(settings)
        self._margin_modes: Dict[str, str] = {}

    # ============================================
    # Client Factories
    # ============================================

    def _create_api_client(self, credentials: ExchangeCredentials) -> BitgetAPIClient:
        return BitgetAPIClient(
            self.settings.rest_url(self.name, credentials.sandbox),
            credentials,
            timeout=self.settings.request_timeout,
            retries=self.settings.request_retries,
            recv_window_ms=self.settings.recv_window_ms,
        )

    def _create_public_ws(self) -> BitgetWebSocketClient:
        base = self.settings.ws_url(self.name, self.credentials.sandbox)
        return BitgetWebSocketClient(
            f"{base}/public",
            events=self.events,
            on_message=self._handle_ws_message,
            product_type=self.api.product_type,
            ping_interval=self.settings.ws_ping_interval,
            max_reconnect_delay=self.settings.ws_max_reconnect_delay,
        )

    async def _create_private_ws(self) -> BitgetPrivateClient:
        base = self.settings.ws_url(self.name, self.credentials.sandbox)
        return BitgetPrivateClient(
            f"{base}/private",
            events=self.events,
            on_message=self._handle_ws_message,
            credentials=self.credentials,
            product_type=self.api.product_type,
            ping_interval=self.settings.ws_ping_interval,
            max_reconnect_delay=self.settings.ws_max_reconnect_delay,
        )

    async def _verify_credentials(self) -> None:
        await self.api.get_accounts_raw()

    async def _ping(self) -> None:
        await self._ensure_connected().get_server_time()

    def _topic_for(self, sub_type: SubscriptionType, symbol: str) -> str:
        channel = CHANNELS[sub_type]
        if sub_type.is_private or not symbol:
            return channel
        return f"{channel}:{to_concatenated_symbol(symbol)}"

    def _handle_ws_message(self, data: Dict[str, Any]) -> None:
        if data.get("event") == "error":
            self._report_error(RuntimeError(f"bitget stream error {data.get('code')}: {data.get('msg')}"))
            return
        for event in parse_message(data):
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
        Place an order (POST /api/v2/mix/order/place-order) and return its full state.

        Bitget takes the time in force as "force" in lower case.
        """
        api = self._ensure_connected()
        self._validate_order(request)
        symbol = to_concatenated_symbol(request.symbol)

        body: Dict[str, Any] = {
            "symbol": symbol,
            "marginMode": self._margin_modes.get(symbol, "crossed"),
            "side": request.side,
            "orderType": request.type,
            "size": self._format_amount(request.amount),
            "clientOid": self._client_order_id(request),
        }
        if request.type == "limit":
            body["price"] = self._format_price(request.price)
            body["force"] = (request.time_in_force or "GTC").lower()
        if request.reduce_only:
            body["reduceOnly"] = "YES"

        order_id = await api.create_order(body)
        self.logger.info(f"bitget order {order_id} placed: {request.side} {request.amount} {request.symbol}")
        return await api.get_order(symbol, order_id)

    async def cancel_order(self, order_id: str, symbol: str) -> Order:
        api = self._ensure_connected()
        bitget_symbol = to_concatenated_symbol(symbol)
        await api.cancel_order(bitget_symbol, order_id)
        return await api.get_order(bitget_symbol, order_id)

    async def get_order(self, order_id: str, symbol: str) -> Order:
        return await self._ensure_connected().get_order(to_concatenated_symbol(symbol), order_id)

    async def get_orders(self, symbol: Optional[str] = None, limit: int = 100) -> List[Order]:
        api = self._ensure_connected()
        return await api.get_order_history(to_concatenated_symbol(symbol) if symbol else None, limit)

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[Order]:
        api = self._ensure_connected()
        return await api.get_open_orders(to_concatenated_symbol(symbol) if symbol else None)

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        await self._ensure_connected().set_leverage(to_concatenated_symbol(symbol), leverage)

    async def set_margin_type(self, symbol: str, margin_type: str) -> None:
        bitget_symbol = to_concatenated_symbol(symbol)
        mode = "isolated" if margin_type == "isolated" else "crossed"
        await self._ensure_connected().set_margin_mode(bitget_symbol, mode)
        self._margin_modes[bitget_symbol] = mode
