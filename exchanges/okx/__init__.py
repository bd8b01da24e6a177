"""
OKX Exchange Adapter

This module implements the ExchangeInterface for OKX USDT-margined
perpetual swaps through the V5 API.

API Documentation:
    https://www.okx.com/docs-v5/en/

Endpoints Used:
    REST:
        - GET  /api/v5/account/balance, /api/v5/account/positions
        - GET  /api/v5/market/ticker, /api/v5/market/books, /api/v5/market/trades
        - POST /api/v5/trade/order, /api/v5/trade/cancel-order
        - GET  /api/v5/trade/order, /orders-history, /orders-pending
        - POST /api/v5/account/set-leverage

    WebSocket:
        - wss://ws.okx.com:8443/ws/v5/public
        - wss://ws.okx.com:8443/ws/v5/private

Symbol Format:
    "BTC/USDT" <-> "BTC-USDT-SWAP"

Notes:
    - Requires an API passphrase
    - Sandbox mode uses demo trading (x-simulated-trading header, wspap host)
    - Margin mode is chosen per order (tdMode); set_margin_type records the
      mode for later orders and applies it to the symbol's leverage setting
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
from core.utils.formatting import to_okx_swap_symbol
from .api_client import OKXAPIClient
from .ws_client import CHANNELS, OKXPrivateClient, OKXWebSocketClient, parse_message


DEFAULT_LEVERAGE = 10


class OKXExchange(ExchangeInterface):
    """
    OKX V5 Exchange Adapter

    Example:
        >>> exchange = OKXExchange()
        >>> await exchange.connect(ExchangeCredentials(api_key="...", api_secret="...", passphrase="..."))
        >>> positions = await exchange.get_positions("BTC/USDT")
    """

    # ============================================
    # Class Attributes
    # ============================================

    name = "okx"

    capabilities = {
        "ticker": True,
        "orderbook": True,
        "kline": False,
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
        self._leverage: Dict[str, int] = {}

    # ============================================
    # Client Factories
    # ============================================

    def _create_api_client(self, credentials: ExchangeCredentials) -> OKXAPIClient:
        return OKXAPIClient(
            self.settings.rest_url(self.name, credentials.sandbox),
            credentials,
            timeout=self.settings.request_timeout,
            retries=self.settings.request_retries,
            recv_window_ms=self.settings.recv_window_ms,
        )

    def _create_public_ws(self) -> OKXWebSocketClient:
        base = self.settings.ws_url(self.name, self.credentials.sandbox)
        return OKXWebSocketClient(
            f"{base}/public",
            events=self.events,
            on_message=self._handle_ws_message,
            ping_interval=self.settings.ws_ping_interval,
            max_reconnect_delay=self.settings.ws_max_reconnect_delay,
        )

    async def _create_private_ws(self) -> OKXPrivateClient:
        base = self.settings.ws_url(self.name, self.credentials.sandbox)
        return OKXPrivateClient(
            f"{base}/private",
            events=self.events,
            on_message=self._handle_ws_message,
            credentials=self.credentials,
            ping_interval=self.settings.ws_ping_interval,
            max_reconnect_delay=self.settings.ws_max_reconnect_delay,
        )

    async def _verify_credentials(self) -> None:
        await self.api.get_balance_raw()

    async def _ping(self) -> None:
        await self._ensure_connected().get_server_time()

    def _topic_for(self, sub_type: SubscriptionType, symbol: str) -> str:
        channel = CHANNELS[sub_type]
        if sub_type.is_private or not symbol:
            return channel
        return f"{channel}:{to_okx_swap_symbol(symbol)}"

    def _handle_ws_message(self, data: Dict[str, Any]) -> None:
        if data.get("event") == "error":
            self._report_error(RuntimeError(f"okx stream error {data.get('code')}: {data.get('msg')}"))
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
        return await api.get_positions(to_okx_swap_symbol(symbol) if symbol else None)

    # ============================================
    # Market Data Operations
    # ============================================

    async def get_ticker(self, symbol: str) -> Ticker:
        return await self._ensure_connected().get_ticker(to_okx_swap_symbol(symbol))

    async def get_order_book(self, symbol: str, limit: int = 20) -> OrderBook:
        return await self._ensure_connected().get_order_book(to_okx_swap_symbol(symbol), limit)

    async def get_trades(self, symbol: str, limit: int = 100) -> List[Trade]:
        return await self._ensure_connected().get_trades(to_okx_swap_symbol(symbol), limit)

    # ============================================
    # Order Operations
    # ============================================

    async def create_order(self, request: OrderRequest) -> Order:
        """
        Place an order (POST /api/v5/trade/order) and return its full state.

        IOC / FOK limit orders map to OKX's dedicated ordType values.
        clOrdId only accepts alphanumerics, so separators are stripped.
        """
        api = self._ensure_connected()
        self._validate_order(request)
        inst_id = to_okx_swap_symbol(request.symbol)

        ord_type = request.type
        if request.type == "limit" and request.time_in_force in ("IOC", "FOK"):
            ord_type = request.time_in_force.lower()

        body: Dict[str, Any] = {
            "instId": inst_id,
            "tdMode": self._margin_modes.get(inst_id, "cross"),
            "side": request.side,
            "ordType": ord_type,
            "sz": self._format_amount(request.amount),
            "clOrdId": self._client_order_id(request).replace("_", "")[:32],
        }
        if request.type == "limit":
            body["px"] = self._format_price(request.price)
        if request.reduce_only:
            body["reduceOnly"] = True
        if request.position_side in ("long", "short"):
            body["posSide"] = request.position_side

        order_id = await api.create_order(body)
        self.logger.info(f"okx order {order_id} placed: {request.side} {request.amount} {request.symbol}")
        return await api.get_order(inst_id, order_id)

    async def cancel_order(self, order_id: str, symbol: str) -> Order:
        api = self._ensure_connected()
        inst_id = to_okx_swap_symbol(symbol)
        await api.cancel_order(inst_id, order_id)
        return await api.get_order(inst_id, order_id)

    async def get_order(self, order_id: str, symbol: str) -> Order:
        return await self._ensure_connected().get_order(to_okx_swap_symbol(symbol), order_id)

    async def get_orders(self, symbol: Optional[str] = None, limit: int = 100) -> List[Order]:
        api = self._ensure_connected()
        return await api.get_order_history(to_okx_swap_symbol(symbol) if symbol else None, limit)

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[Order]:
        api = self._ensure_connected()
        return await api.get_open_orders(to_okx_swap_symbol(symbol) if symbol else None)

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        inst_id = to_okx_swap_symbol(symbol)
        await self._ensure_connected().set_leverage(
            inst_id, leverage, self._margin_modes.get(inst_id, "cross")
        )
        self._leverage[inst_id] = leverage

    async def set_margin_type(self, symbol: str, margin_type: str) -> None:
        inst_id = to_okx_swap_symbol(symbol)
        mode = "isolated" if margin_type == "isolated" else "cross"
        await self._ensure_connected().set_leverage(
            inst_id, self._leverage.get(inst_id, DEFAULT_LEVERAGE), mode
        )
        self._margin_modes[inst_id] = mode
