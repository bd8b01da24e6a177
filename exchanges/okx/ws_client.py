"""
OKX WebSocket Clients

Stream clients for the OKX V5 WebSocket API:

    OKXWebSocketClient   public channels (/ws/v5/public)
    OKXPrivateClient     private channels (/ws/v5/private), "login" op first

Topics are kept as "channel:instId" strings (or a bare channel name for
account-wide channels) and expanded into OKX argument objects when sent:

    "tickers:BTC-USDT-SWAP" -> {"channel": "tickers", "instId": "BTC-USDT-SWAP"}
    "orders"                -> {"channel": "orders", "instType": "SWAP"}

Supported Channels:
    - tickers, books5, trades
    - account, orders, positions

Candlestick channels live on the separate /business endpoint and are not
offered by this adapter.

OKX closes connections that stay silent for 30 seconds; the client sends the
text frame "ping" and receives "pong".

WebSocket Documentation:
    https://www.okx.com/docs-v5/en/#overview-websocket
"""

import base64
import hashlib
import hmac
import time
from typing import Any, Dict, List, Optional, Tuple

from core.schemas import Balance, ExchangeCredentials, SubscriptionType
from core.utils.formatting import safe_float
from core.ws_client import WebSocketClient
from .api_client import INST_TYPE, parse_order, parse_order_book, parse_position, parse_ticker, parse_trade


StreamEvent = Tuple[SubscriptionType, Optional[str], Any]

CHANNELS = {
    SubscriptionType.TICKER: "tickers",
    SubscriptionType.ORDERBOOK: "books5",
    SubscriptionType.TRADE: "trades",
    SubscriptionType.ACCOUNT: "account",
    SubscriptionType.ORDER: "orders",
    SubscriptionType.POSITION: "positions",
}


def topic_arg(topic: str) -> Dict[str, str]:
    """
    Expand a topic string into an OKX subscription argument.

    Example:
        >>> topic_arg("books5:ETH-USDT-SWAP")
        {'channel': 'books5', 'instId': 'ETH-USDT-SWAP'}
        >>> topic_arg("account")
        {'channel': 'account'}
    """
    channel, _, inst_id = topic.partition(":")
    if inst_id:
        return {"channel": channel, "instId": inst_id}
    if channel in ("orders", "positions"):
        return {"channel": channel, "instType": INST_TYPE}
    return {"channel": channel}


class OKXWebSocketClient(WebSocketClient):
    """Public V5 stream client."""

    EXCHANGE = "okx"

    def subscribe_message(self, topics: List[str]) -> Dict[str, Any]:
        return {"op": "subscribe", "args": [topic_arg(t) for t in topics]}

    def unsubscribe_message(self, topics: List[str]) -> Dict[str, Any]:
        return {"op": "unsubscribe", "args": [topic_arg(t) for t in topics]}

    def ping_payload(self) -> str:
        return "ping"


class OKXPrivateClient(OKXWebSocketClient):
    """
    Private V5 stream client.

    Login signature: Base64(HMAC_SHA256(secret, timestamp + "GET" + "/users/self/verify"))
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
            f"{timestamp}GET/users/self/verify".encode(),
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
    Normalize one push frame ({"arg": {...}, "data": [...]}).

    Event frames (subscribe acks, errors) carry no "data" and yield nothing.
    """
    arg = message.get("arg") or {}
    data = message.get("data")
    if not data:
        return []

    channel = arg.get("channel")

    if channel == "tickers":
        return [(SubscriptionType.TICKER, row["instId"], parse_ticker(row)) for row in data]

    if channel == "books5":
        inst_id = arg["instId"]
        return [(SubscriptionType.ORDERBOOK, inst_id, parse_order_book(inst_id, book)) for book in data]

    if channel == "trades":
        return [(SubscriptionType.TRADE, row["instId"], parse_trade(row)) for row in data]

    if channel == "account":
        balances = [
            Balance(
                currency=d["ccy"],
                free=safe_float(d.get("availBal")),
                used=safe_float(d.get("frozenBal")),
                total=safe_float(d.get("eq")),
            )
            for account in data
            for d in account.get("details") or []
        ]
        return [(SubscriptionType.ACCOUNT, None, balances)]

    if channel == "orders":
        return [(SubscriptionType.ORDER, row["instId"], parse_order(row)) for row in data]

    if channel == "positions":
        return [(SubscriptionType.POSITION, row["instId"], parse_position(row)) for row in data]

    return []
