"""
Binance WebSocket Clients

Two stream clients built on the shared WebSocketClient:

    BinanceWebSocketClient   public market streams on one combined socket,
                             managed with SUBSCRIBE / UNSUBSCRIBE frames
    BinanceUserDataClient    private user data stream bound to a listenKey;
                             Binance pushes every account event, so there is
                             nothing to subscribe and the key is kept alive
                             every 30 minutes

Supported Streams:
    - Ticker: {symbol}@ticker
    - Order book: {symbol}@depth20@100ms
    - Kline: {symbol}@kline_1m
    - Trades: {symbol}@aggTrade
    - User data: ACCOUNT_UPDATE, ORDER_TRADE_UPDATE

WebSocket Documentation:
    https://binance-docs.github.io/apidocs/futures/en/#websocket-market-streams

Binance sends protocol pings itself and aiohttp answers them. Those never
reach the application, so the keepalive is a LIST_SUBSCRIPTIONS request whose
reply counts as a heartbeat.
"""

import asyncio
import itertools
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from core.schemas import Balance, Kline, OrderBook, SubscriptionType, Ticker, Trade
from core.utils.formatting import safe_float
from core.ws_client import WebSocketClient
from .api_client import parse_order, parse_position


StreamEvent = Tuple[SubscriptionType, Optional[str], Any]

LISTEN_KEY_KEEPALIVE_SECONDS = 30 * 60


class BinanceWebSocketClient(WebSocketClient):
    """
    Public market-data stream client.

    Example:
        >>> client = BinanceWebSocketClient(url, events=bus, on_message=handler)
        >>> await client.start()
        >>> await client.subscribe(["btcusdt@ticker"])
    """

    EXCHANGE = "binance"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._request_ids = itertools.count(1)

    def subscribe_message(self, topics: List[str]) -> Dict[str, Any]:
        return {"method": "SUBSCRIBE", "params": topics, "id": next(self._request_ids)}

    def unsubscribe_message(self, topics: List[str]) -> Dict[str, Any]:
        return {"method": "UNSUBSCRIBE", "params": topics, "id": next(self._request_ids)}

    def ping_payload(self) -> Dict[str, Any]:
        return {"method": "LIST_SUBSCRIPTIONS", "id": next(self._request_ids)}


class BinanceUserDataClient(BinanceWebSocketClient):
    """
    Private user data stream (wss://.../ws/<listenKey>).

    Args:
        keepalive: Coroutine function extending the listenKey validity
    """

    def __init__(self, *args, keepalive: Callable[[], Awaitable[None]], **kwargs):
        kwargs.setdefault("private", True)
        super().__init__(*args, **kwargs)
        self._keepalive = keepalive
        self._keepalive_task: Optional[asyncio.Task] = None

    def subscribe_message(self, topics: List[str]) -> None:
        return None

    def unsubscribe_message(self, topics: List[str]) -> None:
        return None

    async def start(self) -> None:
        await super().start()
        if self._keepalive_task is None:
            self._keepalive_task = asyncio.create_task(self._keepalive_loop())

    async def stop(self) -> None:
        if self._keepalive_task and not self._keepalive_task.done():
            self._keepalive_task.cancel()
            try:
                await self._keepalive_task
            except asyncio.CancelledError:
                pass
        self._keepalive_task = None
        await super().stop()

    async def _keepalive_loop(self) -> None:
        while self._is_running:
            await asyncio.sleep(LISTEN_KEY_KEEPALIVE_SECONDS)
            try:
                await self._keepalive()
                self.logger.debug("binance listenKey extended")
            except Exception as e:
                self.logger.warning(f"binance listenKey keepalive failed: {e}")


# ============================================
# Topic Builders
# ============================================

def market_topic(sub_type: SubscriptionType, exchange_symbol: str) -> str:
    """
    Build a market stream name.

    Example:
        >>> market_topic(SubscriptionType.TICKER, "BTCUSDT")
        'btcusdt@ticker'
    """
    symbol = exchange_symbol.lower()
    suffix = {
        SubscriptionType.TICKER: "ticker",
        SubscriptionType.ORDERBOOK: "depth20@100ms",
        SubscriptionType.KLINE: "kline_1m",
        SubscriptionType.TRADE: "aggTrade",
    }[sub_type]
    return f"{symbol}@{suffix}"


# ============================================
# Message Parsing
# ============================================

def parse_market_message(data: Dict[str, Any]) -> Optional[StreamEvent]:
    """
    Normalize one market stream event.

    Returns:
        (type, exchange symbol, model) or None for acks and unknown events
    """
    event = data.get("e")

    if event == "24hrTicker":
        return SubscriptionType.TICKER, data["s"], Ticker(
            symbol=data["s"],
            high=safe_float(data.get("h")),
            low=safe_float(data.get("l")),
            open=safe_float(data.get("o")),
            close=safe_float(data.get("c")),
            last=safe_float(data.get("c")),
            change=safe_float(data.get("p")),
            percentage=safe_float(data.get("P")),
            base_volume=safe_float(data.get("v")),
            quote_volume=safe_float(data.get("q")),
            timestamp=int(data["E"]),
        )

    if event == "depthUpdate":
        return SubscriptionType.ORDERBOOK, data["s"], OrderBook(
            symbol=data["s"],
            bids=[(float(p), float(q)) for p, q in data.get("b", [])],
            asks=[(float(p), float(q)) for p, q in data.get("a", [])],
            timestamp=int(data.get("T") or data["E"]),
            nonce=data.get("u"),
        )

    if event == "kline":
        k = data["k"]
        return SubscriptionType.KLINE, k["s"], Kline(
            symbol=k["s"],
            interval=k.get("i", "1m"),
            open_time=int(k["t"]),
            close_time=int(k["T"]),
            open=float(k["o"]),
            high=float(k["h"]),
            low=float(k["l"]),
            close=float(k["c"]),
            volume=safe_float(k.get("v")),
            is_closed=bool(k.get("x")),
        )

    if event == "aggTrade":
        return SubscriptionType.TRADE, data["s"], Trade(
            id=str(data["a"]),
            symbol=data["s"],
            side="sell" if data.get("m") else "buy",
            amount=safe_float(data.get("q")),
            price=safe_float(data.get("p")),
            timestamp=int(data.get("T") or data["E"]),
        )

    return None


def parse_user_message(data: Dict[str, Any]) -> List[StreamEvent]:
    """
    Normalize one user data event.

    ACCOUNT_UPDATE fans out into one account event (balances) and one
    position event per changed position; ORDER_TRADE_UPDATE yields an order.
    """
    event = data.get("e")
    timestamp = int(data.get("E") or 0)

    if event == "ACCOUNT_UPDATE":
        update = data.get("a", {})
        events: List[StreamEvent] = []

        balances = [
            Balance(
                currency=b["a"],
                total=safe_float(b.get("wb")),
                free=safe_float(b.get("cw")),
                used=max(safe_float(b.get("wb")) - safe_float(b.get("cw")), 0.0),
            )
            for b in update.get("B", [])
        ]
        if balances:
            events.append((SubscriptionType.ACCOUNT, None, balances))

        for p in update.get("P", []):
            if safe_float(p.get("pa")) == 0:
                continue
            row = {
                "symbol": p["s"],
                "positionAmt": p.get("pa"),
                "entryPrice": p.get("ep"),
                "unRealizedProfit": p.get("up"),
                "marginType": p.get("mt", "cross"),
            }
            events.append((SubscriptionType.POSITION, p["s"], parse_position(row, timestamp)))
        return events

    if event == "ORDER_TRADE_UPDATE":
        o = data["o"]
        row = {
            "orderId": o.get("i"),
            "clientOrderId": o.get("c"),
            "symbol": o["s"],
            "side": o["S"],
            "type": o.get("o", ""),
            "origQty": o.get("q"),
            "price": o.get("p"),
            "stopPrice": o.get("sp"),
            "avgPrice": o.get("ap"),
            "status": o.get("X"),
            "timeInForce": o.get("f"),
            "executedQty": o.get("z"),
            "commission": o.get("n"),
            "commissionAsset": o.get("N"),
            "updateTime": o.get("T") or timestamp,
            "positionSide": o.get("ps"),
            "reduceOnly": o.get("R"),
        }
        return [(SubscriptionType.ORDER, o["s"], parse_order(row))]

    return []
