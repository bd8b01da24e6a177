"""
Bybit WebSocket Clients

Stream clients for the Bybit V5 WebSocket API:

    BybitWebSocketClient   public linear streams (/v5/public/linear)
    BybitPrivateClient     private streams (/v5/private), authenticated with
                           the "auth" op before subscribing

Supported Streams:
    - Ticker: tickers.{symbol}           (snapshot + partial deltas)
    - Order book: orderbook.50.{symbol}  (snapshot + level deltas)
    - Kline: kline.1.{symbol}
    - Trades: publicTrade.{symbol}
    - Private: wallet, order, position

WebSocket Documentation:
    https://bybit-exchange.github.io/docs/v5/ws/connect

Bybit drops idle connections after 10 minutes; the client sends
{"op": "ping"} every ws_ping_interval seconds.
"""

import hashlib
import hmac
import time
from typing import Any, Dict, List, Optional, Tuple

from core.schemas import ExchangeCredentials, Kline, OrderBook, SubscriptionType, Trade
from core.utils.formatting import safe_float
from core.ws_client import WebSocketClient
from .api_client import parse_balance, parse_order, parse_position, parse_ticker


StreamEvent = Tuple[SubscriptionType, Optional[str], Any]

PRIVATE_TOPICS = {
    SubscriptionType.ACCOUNT: "wallet",
    SubscriptionType.ORDER: "order",
    SubscriptionType.POSITION: "position",
}


class BybitWebSocketClient(WebSocketClient):
    """Public V5 stream client."""

    EXCHANGE = "bybit"

    def subscribe_message(self, topics: List[str]) -> Dict[str, Any]:
        return {"op": "subscribe", "args": topics}

    def unsubscribe_message(self, topics: List[str]) -> Dict[str, Any]:
        return {"op": "unsubscribe", "args": topics}

    def ping_payload(self) -> Dict[str, Any]:
        return {"op": "ping"}


class BybitPrivateClient(BybitWebSocketClient):
    """
    Private V5 stream client.

    Auth signature: HMAC_SHA256(secret, "GET/realtime" + expires)
    """

    AUTH_TTL_MS = 10_000

    def __init__(self, *args, credentials: ExchangeCredentials, **kwargs):
        kwargs.setdefault("private", True)
        super().__init__(*args, **kwargs)
        self.credentials = credentials

    def login_message(self) -> Dict[str, Any]:
        expires = int(time.time() * 1000) + self.AUTH_TTL_MS
        signature = hmac.new(
            self.credentials.api_secret.encode(),
            f"GET/realtime{expires}".encode(),
            hashlib.sha256
        ).hexdigest()
        return {"op": "auth", "args": [self.credentials.api_key, expires, signature]}

    def is_login_ack(self, data: Any) -> Optional[bool]:
        if isinstance(data, dict) and data.get("op") == "auth":
            return bool(data.get("success"))
        return None


# ============================================
# Topic Builders
# ============================================

def stream_topic(sub_type: SubscriptionType, exchange_symbol: str) -> str:
    """
    Example:
        >>> stream_topic(SubscriptionType.ORDERBOOK, "BTCUSDT")
        'orderbook.50.BTCUSDT'
    """
    if sub_type.is_private:
        return PRIVATE_TOPICS[sub_type]
    prefix = {
        SubscriptionType.TICKER: "tickers",
        SubscriptionType.ORDERBOOK: "orderbook.50",
        SubscriptionType.KLINE: "kline.1",
        SubscriptionType.TRADE: "publicTrade",
    }[sub_type]
    return f"{prefix}.{exchange_symbol}"


# ============================================
# Stateful Message Parser
# ============================================

class LocalOrderBook:
    """
    Order book rebuilt from a snapshot plus level deltas.

    A level with size 0 is removed.
    """

    def __init__(self) -> None:
        self.bids: Dict[float, float] = {}
        self.asks: Dict[float, float] = {}

    def apply(self, data: Dict[str, Any], snapshot: bool) -> None:
        if snapshot:
            self.bids.clear()
            self.asks.clear()
        for side, levels in ((self.bids, data.get("b", [])), (self.asks, data.get("a", []))):
            for price, size in levels:
                p, q = float(price), float(size)
                if q == 0:
                    side.pop(p, None)
                else:
                    side[p] = q

    def top(self, depth: int = 50) -> Tuple[List[Tuple[float, float]], List[Tuple[float, float]]]:
        bids = sorted(self.bids.items(), key=lambda level: -level[0])[:depth]
        asks = sorted(self.asks.items(), key=lambda level: level[0])[:depth]
        return bids, asks


class BybitStreamParser:
    """
    Normalizes V5 stream frames.

    Tickers and order books arrive as a snapshot followed by deltas carrying
    only changed fields, so the parser keeps the merged state per symbol.
    """

    def __init__(self) -> None:
        self._tickers: Dict[str, Dict[str, Any]] = {}
        self._books: Dict[str, LocalOrderBook] = {}

    def reset(self) -> None:
        self._tickers.clear()
        self._books.clear()

    def parse(self, message: Dict[str, Any]) -> List[StreamEvent]:
        topic = message.get("topic")
        if not topic:
            return []

        data = message.get("data")
        ts = int(message.get("ts") or message.get("creationTime") or time.time() * 1000)
        snapshot = message.get("type") != "delta"

        if topic.startswith("tickers."):
            symbol = data["symbol"]
            merged = data if snapshot else {**self._tickers.get(symbol, {}), **data}
            self._tickers[symbol] = merged
            return [(SubscriptionType.TICKER, symbol, parse_ticker(merged, ts))]

        if topic.startswith("orderbook."):
            symbol = data["s"]
            book = self._books.setdefault(symbol, LocalOrderBook())
            book.apply(data, snapshot)
            bids, asks = book.top()
            return [(SubscriptionType.ORDERBOOK, symbol, OrderBook(
                symbol=symbol, bids=bids, asks=asks, timestamp=ts, nonce=data.get("u")
            ))]

        if topic.startswith("kline."):
            symbol = topic.rsplit(".", 1)[-1]
            return [
                (SubscriptionType.KLINE, symbol, Kline(
                    symbol=symbol,
                    interval=f"{k.get('interval', '1')}m",
                    open_time=int(k["start"]),
                    close_time=int(k["end"]),
                    open=float(k["open"]),
                    high=float(k["high"]),
                    low=float(k["low"]),
                    close=float(k["close"]),
                    volume=safe_float(k.get("volume")),
                    is_closed=bool(k.get("confirm")),
                ))
                for k in data
            ]

        if topic.startswith("publicTrade."):
            return [
                (SubscriptionType.TRADE, t["s"], Trade(
                    id=t["i"],
                    symbol=t["s"],
                    side=t["S"].lower(),
                    amount=safe_float(t.get("v")),
                    price=safe_float(t.get("p")),
                    timestamp=int(t["T"]),
                ))
                for t in data
            ]

        if topic == "wallet":
            balances = [parse_balance(coin) for account in data for coin in account.get("coin", [])]
            return [(SubscriptionType.ACCOUNT, None, balances)]

        if topic == "order":
            return [
                (SubscriptionType.ORDER, row["symbol"], parse_order(row))
                for row in data
                if row.get("category", "linear") == "linear"
            ]

        if topic == "position":
            return [
                (SubscriptionType.POSITION, row["symbol"], parse_position(row))
                for row in data
                if row.get("category", "linear") == "linear"
            ]

        return []
