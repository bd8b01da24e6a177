"""
In-memory exchange adapter used by the interface and manager tests.

DummyExchange runs the real ExchangeInterface lifecycle (REST open/verify,
public stream start, subscription registry, event bus) against fakes that
never touch the network. Failures are injected through `connect_errors`,
`ticker_error` and `ping_error`.
"""

import time
from typing import List, Optional

from core.exchange_interface import ExchangeInterface
from core.schemas import (
    AccountInfo,
    ExchangeCredentials,
    Order,
    OrderBook,
    OrderRequest,
    Ticker,
)
from core.ws_client import WebSocketClient


def now_ms() -> int:
    return int(time.time() * 1000)


def credentials(**overrides) -> ExchangeCredentials:
    values = {"api_key": "key", "api_secret": "secret", "passphrase": "pass"}
    values.update(overrides)
    return ExchangeCredentials(**values)


class FakeRestClient:
    def __init__(self):
        self.opened = False
        self.closed = False

    async def open(self):
        self.opened = True
        return self

    async def close(self):
        self.closed = True


class FakeStream(WebSocketClient):
    """Stream client that records topic changes instead of connecting."""

    EXCHANGE = "dummy"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.subscribe_calls: List[List[str]] = []
        self.unsubscribe_calls: List[List[str]] = []
        self.stopped = False

    def subscribe_message(self, topics):
        return {"op": "subscribe", "args": topics}

    def unsubscribe_message(self, topics):
        return {"op": "unsubscribe", "args": topics}

    async def start(self):
        self._is_running = True

    async def stop(self):
        self._is_running = False
        self.stopped = True

    async def subscribe(self, topics):
        self.subscribe_calls.append(list(topics))
        await super().subscribe(topics)

    async def unsubscribe(self, topics):
        self.unsubscribe_calls.append(list(topics))
        await super().unsubscribe(topics)


class DummyExchange(ExchangeInterface):
    name = "dummy"

    capabilities = {
        "ticker": True,
        "orderbook": True,
        "kline": False,
        "trade": True,
        "account": True,
        "order": True,
        "position": True,
        "set_margin_type": False,
    }

    def __init__(self, settings=None, name: Optional[str] = None):
        if name:
            self.name = name
        super().__init__(settings)
        self.connect_errors: List[Exception] = []
        self.connect_count = 0
        self.ticker_error: Optional[Exception] = None
        self.ping_error: Optional[Exception] = None
        self.price = 100.0
        self.orders: List[OrderRequest] = []

    def _create_api_client(self, credentials: ExchangeCredentials) -> FakeRestClient:
        return FakeRestClient()

    def _create_public_ws(self) -> FakeStream:
        return FakeStream("wss://dummy/public", events=self.events, on_message=lambda data: None)

    async def _create_private_ws(self) -> FakeStream:
        return FakeStream(
            "wss://dummy/private", events=self.events, on_message=lambda data: None, private=True
        )

    async def _verify_credentials(self) -> None:
        self.connect_count += 1
        if self.connect_errors:
            raise self.connect_errors.pop(0)

    async def _ping(self) -> None:
        self._ensure_connected()
        if self.ping_error is not None:
            raise self.ping_error

    def _topic_for(self, sub_type, symbol):
        return f"{sub_type.value}:{symbol or '*'}"

    async def get_account(self) -> AccountInfo:
        self._ensure_connected()
        return AccountInfo(
            exchange=self.name, account_id=f"{self.name}_futures", name=self.name,
            balance=1000.0, timestamp=now_ms(),
        )

    async def get_balances(self):
        return []

    async def get_positions(self, symbol=None):
        self._ensure_connected()
        return []

    async def get_ticker(self, symbol: str) -> Ticker:
        self._ensure_connected()
        if self.ticker_error is not None:
            raise self.ticker_error
        return Ticker(symbol=symbol, last=self.price, bid=self.price, ask=self.price, timestamp=now_ms())

    async def get_order_book(self, symbol, limit=20):
        return OrderBook(symbol=symbol, timestamp=now_ms())

    async def get_trades(self, symbol, limit=100):
        return []

    async def create_order(self, request: OrderRequest) -> Order:
        self._ensure_connected()
        self._validate_order(request)
        self.orders.append(request)
        return Order(
            symbol=request.symbol,
            order_id=str(len(self.orders)),
            client_order_id=self._client_order_id(request),
            side=request.side,
            type=request.type,
            amount=float(self._format_amount(request.amount)),
            price=request.price,
            timestamp=now_ms(),
        )

    async def cancel_order(self, order_id, symbol):
        raise NotImplementedError

    async def get_order(self, order_id, symbol):
        raise NotImplementedError

    async def get_orders(self, symbol=None, limit=100):
        return []

    async def get_open_orders(self, symbol=None):
        return []

    async def set_leverage(self, symbol, leverage):
        return None

    async def set_margin_type(self, symbol, margin_type):
        return None
