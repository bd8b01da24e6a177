"""
Bitget WebSocket Clients

Stream clients for the Bitget V2 WebSocket API:

    BitgetWebSocketClient   public channels (/v2/ws/public)
    BitgetPrivateClient     private channels (/v2/ws/private), "login" op first

Topics are "channel:instId" strings; private channels use instId "default"
(every symbol). Each topic expands into
{"instType": <product type>, "channel": ..., "instId": ...}, except "account"
which takes {"coin": "default"}.

Supported Channels:
    - ticker, books15, candle1m, trade
    - account, orders, positions

Bitget closes connections without a ping for 2 minutes; the client sends the
text frame "ping" and receives "pong".

WebSocket Documentation:
    https://www.bitget.com/api-doc/common/websocket-intro
"""

import base64
import hashlib
import hmac
import time
from typing import Any, Dict, List, Optional, Tuple

from core.schemas import Balance, ExchangeCredentials, Kline, SubscriptionType
from core.utils.formatting import safe_float
from core.ws_client import WebSocketClient
from .api_client import parse_order, parse_order_book, parse_position, parse_ticker, parse_trade


StreamEvent = Tuple[SubscriptionType, Optional[str], Any]

CHANNELS = {
    SubscriptionType.TICKER: "ticker",
    SubscriptionType.ORDERBOOK: "books15",
    SubscriptionType.KLINE: "candle1m",
    SubscriptionType.TRADE: "trade",
    SubscriptionType.ACCOUNT: "account",
    SubscriptionType.ORDER: "orders",
    SubscriptionType.POSITION: "positions",
}

KLINE_INTERVAL_MS = 60_000


class BitgetWebSocketClient(WebSocketClient):
    """
    Public V2 stream client.

    Args:
        product_type: instType sent with every subscription
    """

    EXCHANGE = "bitget"

    def __init__(self, *args, product_type: str = "USDT-FUTURES", **kwargs):
        super().__init__(*args, **kwargs)
        self.product_type = product_type

    def topic_arg(self, topic: str) -> Dict[str, str]:
        """
        Example:
            >>> client.topic_arg("ticker:BTCUSDT")
            {'instType': 'USDT-FUTURES', 'channel': 'ticker', 'instId': 'BTCUSDT'}
        """
        channel, _, inst_id = topic.partition(":")
        if channel == "account":
            return {"instType": self.product_type, "channel": channel, "coin": "default"}
        return {"instType": self.product_type, "channel": channel, "instId": inst_id or "default"}

    def subscribe_message(self, topics: List[str]) -> Dict[str, Any]:
        return {"op": "subscribe", "args": [self.topic_arg(t) for t in topics]}

    def unsubscribe_message(self, topics: List[str]) -> Dict[str, Any]:
        return {"op": "unsubscribe", "args": [self.topic_arg(t) for t in topics]}

    def ping_payload(self) -> str:
        return "ping"


class BitgetPrivateClient(BitgetWebSocketClient):
    """
    Private V2 stream client.

    Login signature: Base64(HMAC_SHA256(secret, timestamp + "GET" + "/user/verify"))
    with timestamp in seconds.
    """

    def __init__(self, *args, credentials: ExchangeCredentials, **kwargs):
        kwargs.setdefault("private", True)
        super().__init__(*args, **kwargs)
        self.credentials = credentials

    def login_message(self) -> Dict[str, Any]:
        timestamp = str(int(time.time()))
        digest = hmac.new(
            self.credentials.api_secret.encode(),
            f"{timestamp}GET/user/verify".encode(),
            hashlib.sha256
        ).digest()
        return {
            "op": "login",
            "args": [{
                "apiKey": self.credentials.api_key,
                "passphrase": self.credentials.passphrase or "",
                "timestamp": timestamp,
                "sign": base64.b64encode(digest).decode(),
            }],
        }

    def is_login_ack(self, data: Any) -> Optional[bool]:
        if not isinstance(data, dict):
            return None
        if data.get("event") == "login":
            return str(data.get("code", "0")) == "0"
        if data.get("event") == "error":
            return False
        return None


# ============================================
# Message Parsing
# ============================================

def parse_message(message: Dict[str, Any]) -> List[StreamEvent]:
    """
    Normalize one push frame ({"action": ..., "arg": {...}, "data": [...]}).
    """
    arg = message.get("arg") or {}
    data = message.get("data")
    if not data:
        return []

    channel = arg.get("channel")
    inst_id = arg.get("instId")

    if channel == "ticker":
        return [(SubscriptionType.TICKER, row.get("instId") or inst_id, parse_ticker(row)) for row in data]

    if channel == "books15":
        return [(SubscriptionType.ORDERBOOK, inst_id, parse_order_book(inst_id, book)) for book in data]

    if channel == "candle1m":
        # [ts, open, high, low, close, base volume, quote volume, usdt volume]
        return [
            (SubscriptionType.KLINE, inst_id, Kline(
                symbol=inst_id,
                interval="1m",
                open_time=int(row[0]),
                close_time=int(row[0]) + KLINE_INTERVAL_MS - 1,
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=safe_float(row[5]),
            ))
            for row in data
        ]

    if channel == "trade":
        return [(SubscriptionType.TRADE, inst_id, parse_trade(row, inst_id)) for row in data]

    if channel == "account":
        balances = [
            Balance(
                currency=row["marginCoin"],
                free=safe_float(row.get("available")),
                used=safe_float(row.get("frozen")),
                total=safe_float(row.get("equity")),
            )
            for row in data
        ]
        return [(SubscriptionType.ACCOUNT, None, balances)]

    if channel == "orders":
        return [(SubscriptionType.ORDER, row.get("instId"), parse_order(row)) for row in data]

    if channel == "positions":
        return [(SubscriptionType.POSITION, row.get("instId"), parse_position(row)) for row in data]

    return []
