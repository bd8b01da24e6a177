"""
Bitget REST API Client

This module provides an async HTTP client for the Bitget V2 mix (futures)
API, USDT-margined perpetuals.
It handles:
- Base64 HMAC-SHA256 signing over timestamp + METHOD + path(?query) + body
- Passphrase header and demo trading (paptrading: 1, SUSDT-FUTURES)
- Response envelope {"code": "00000", "msg": "success", "data": ...}
- Error code mapping to the core.errors taxonomy
- Data normalization to our schemas

API Documentation:
    https://www.bitget.com/api-doc/contract/intro

Usage:
    async with BitgetAPIClient(base_url, credentials) as client:
        ticker = await client.get_ticker("BTCUSDT")
"""

import base64
import hashlib
import hmac
from typing import Any, Dict, List, Optional, Tuple

from core.errors import (
    AuthenticationError,
    ExchangeError,
    InsufficientFunds,
    InvalidOrder,
    NetworkError,
    OrderNotFound,
    RateLimitExceeded,
)
from core.rest_client import RestClient
from core.schemas import AccountInfo, Balance, Order, OrderBook, Position, Ticker, Trade
from core.utils.formatting import optional_float, safe_float


SUCCESS_CODE = "00000"

ORDER_STATUS = {
    "init": "new",
    "new": "new",
    "live": "new",
    "partial_filled": "partially_filled",
    "partially_filled": "partially_filled",
    "filled": "filled",
    "cancelled": "canceled",
    "canceled": "canceled",
    "rejected": "rejected",
}

# merge-depth only accepts these sizes
DEPTH_LIMITS = (1, 5, 15, 50)


class BitgetAPIClient(RestClient):
    """
    Async HTTP client for Bitget V2 mix REST API

    Attributes:
        product_type: "USDT-FUTURES" (live) or "SUSDT-FUTURES" (demo)
        margin_coin: "USDT" (live) or "SUSDT" (demo)
    """

    EXCHANGE = "bitget"

    ERROR_CODES = {
        "40008": NetworkError,
        "40006": AuthenticationError,
        "40009": AuthenticationError,
        "40012": AuthenticationError,
        "40014": AuthenticationError,
        "40037": AuthenticationError,
        "429": RateLimitExceeded,
        "40010": RateLimitExceeded,
        "40762": InsufficientFunds,
        "43012": InsufficientFunds,
        "40768": OrderNotFound,
        "43001": OrderNotFound,
        "40017": InvalidOrder,
        "40808": InvalidOrder,
        "45110": InvalidOrder,
        "45111": InvalidOrder,
    }

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        demo = bool(self.credentials and self.credentials.sandbox)
        self.product_type = "SUSDT-FUTURES" if demo else "USDT-FUTURES"
        self.margin_coin = "SUSDT" if demo else "USDT"

    # ============================================
    # Signing
    # ============================================

    def _sign_request(self, method, path, params, body):
        credentials = self._require_credentials()
        timestamp = str(self._timestamp_ms())
        query = self._query_string(params)
        request_path = f"{path}?{query}" if query else path

        digest = hmac.new(
            credentials.api_secret.encode(),
            f"{timestamp}{method}{request_path}{body or ''}".encode(),
            hashlib.sha256
        ).digest()

        headers = {
            **self._public_headers(),
            "ACCESS-KEY": credentials.api_key,
            "ACCESS-SIGN": base64.b64encode(digest).decode(),
            "ACCESS-TIMESTAMP": timestamp,
            "ACCESS-PASSPHRASE": credentials.passphrase or "",
        }
        return params, headers

    def _public_headers(self) -> Dict[str, str]:
        headers = {"locale": "en-US"}
        if self.credentials and self.credentials.sandbox:
            headers["paptrading"] = "1"
        return headers

    def _extract_error(self, payload: Any) -> Optional[Tuple[str, str]]:
        if isinstance(payload, dict) and "code" in payload and str(payload["code"]) != SUCCESS_CODE:
            return str(payload["code"]), payload.get("msg", "")
        return None

    def _unwrap(self, payload: Any) -> Any:
        if isinstance(payload, dict) and "data" in payload:
            return payload["data"]
        return payload

    def _product(self, **params: Any) -> Dict[str, Any]:
        return {"productType": self.product_type, **params}

    # ============================================
    # General Endpoints
    # ============================================

    async def get_server_time(self) -> int:
        data = await self.request("GET", "/api/v2/public/time")
        return int(data["serverTime"])

    # ============================================
    # Account Endpoints
    # ============================================

    async def get_accounts_raw(self) -> List[Dict[str, Any]]:
        return await self.request("GET", "/api/v2/mix/account/accounts", self._product(), signed=True) or []

    async def get_account(self) -> AccountInfo:
        """
        Fetch the futures account for the margin coin.

        Returns:
            AccountInfo: margin_ratio = crossedRiskRate
        """
        accounts = await self.get_accounts_raw()
        account = next(
            (a for a in accounts if a.get("marginCoin") == self.margin_coin),
            accounts[0] if accounts else {}
        )
        equity = safe_float(account.get("usdtEquity") or account.get("accountEquity"))
        available = safe_float(account.get("available"))
        unrealized = safe_float(account.get("unrealizedPL"))
        locked = safe_float(account.get("locked"))

        return AccountInfo(
            exchange=self.EXCHANGE,
            account_id="bitget_futures",
            name="Bitget Futures Account",
            balance=equity,
            available_balance=available,
            unrealized_pnl=unrealized,
            margin_ratio=safe_float(account.get("crossedRiskRate")),
            total_wallet_balance=equity - unrealized,
            total_unrealized_pnl=unrealized,
            total_margin_balance=equity,
            total_maint_margin=0.0,
            total_initial_margin=locked,
            max_withdraw_amount=safe_float(account.get("maxTransferOut"), available),
            timestamp=self._timestamp_ms(),
        )

    async def get_balances(self) -> List[Balance]:
        accounts = await self.get_accounts_raw()
        return [
            Balance(
                currency=a["marginCoin"],
                free=safe_float(a.get("available")),
                used=safe_float(a.get("locked")),
                total=safe_float(a.get("accountEquity")),
            )
            for a in accounts
            if safe_float(a.get("accountEquity")) != 0
        ]

    async def get_positions(self, symbol: Optional[str] = None) -> List[Position]:
        if symbol:
            path = "/api/v2/mix/position/single-position"
            params = self._product(symbol=symbol, marginCoin=self.margin_coin)
        else:
            path = "/api/v2/mix/position/all-position"
            params = self._product(marginCoin=self.margin_coin)
        rows = await self.request("GET", path, params, signed=True) or []
        return [parse_position(row) for row in rows if safe_float(row.get("total")) > 0]

    # ============================================
    # Market Data Endpoints
    # ============================================

    async def get_ticker(self, symbol: str) -> Ticker:
        data = await self.request("GET", "/api/v2/mix/market/ticker", self._product(symbol=symbol))
        if not data:
            raise ExchangeError(f"No ticker for {symbol}", exchange=self.EXCHANGE)
        return parse_ticker(data[0] if isinstance(data, list) else data)

    async def get_order_book(self, symbol: str, limit: int = 20) -> OrderBook:
        depth = next((n for n in DEPTH_LIMITS if n >= limit), "max")
        data = await self.request(
            "GET", "/api/v2/mix/market/merge-depth", self._product(symbol=symbol, limit=depth)
        )
        return parse_order_book(symbol, data, limit)

    async def get_trades(self, symbol: str, limit: int = 100) -> List[Trade]:
        """Recent fills; Bitget returns newest first, so the list is reversed."""
        rows = await self.request(
            "GET", "/api/v2/mix/market/fills", self._product(symbol=symbol, limit=limit)
        ) or []
        return [parse_trade(row, symbol) for row in reversed(rows)]

    # ============================================
    # Order Endpoints
    # ============================================

    async def create_order(self, body: Dict[str, Any]) -> str:
        payload = self._product(marginCoin=self.margin_coin, **body)
        data = await self.request("POST", "/api/v2/mix/order/place-order", body=payload, signed=True)
        return data["orderId"]

    async def cancel_order(self, symbol: str, order_id: str) -> str:
        data = await self.request(
            "POST",
            "/api/v2/mix/order/cancel-order",
            body=self._product(symbol=symbol, marginCoin=self.margin_coin, orderId=order_id),
            signed=True
        )
        return data["orderId"]

    async def get_order(self, symbol: str, order_id: str) -> Order:
        data = await self.request(
            "GET", "/api/v2/mix/order/detail", self._product(symbol=symbol, orderId=order_id), signed=True
        )
        if not data:
            raise OrderNotFound(f"Order {order_id} not found", exchange=self.EXCHANGE)
        return parse_order(data)

    async def get_order_history(self, symbol: Optional[str], limit: int = 100) -> List[Order]:
        data = await self.request(
            "GET",
            "/api/v2/mix/order/orders-history",
            self._product(symbol=symbol, limit=min(limit, 100)),
            signed=True
        )
        return [parse_order(row) for row in (data or {}).get("entrustedList") or []]

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[Order]:
        data = await self.request(
            "GET", "/api/v2/mix/order/orders-pending", self._product(symbol=symbol), signed=True
        )
        return [parse_order(row) for row in (data or {}).get("entrustedList") or []]

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        await self.request(
            "POST",
            "/api/v2/mix/account/set-leverage",
            body=self._product(symbol=symbol, marginCoin=self.margin_coin, leverage=str(leverage)),
            signed=True
        )

    async def set_margin_mode(self, symbol: str, margin_mode: str) -> None:
        """margin_mode is Bitget's spelling: "isolated" or "crossed"."""
        await self.request(
            "POST",
            "/api/v2/mix/account/set-margin-mode",
            body=self._product(symbol=symbol, marginCoin=self.margin_coin, marginMode=margin_mode),
            signed=True
        )


# ============================================
# Normalization Helpers
# ============================================

def parse_ticker(row: Dict[str, Any]) -> Ticker:
    """change24h is a fraction; percentage is reported x100."""
    last = safe_float(row.get("lastPr"))
    open_price = safe_float(row.get("open24h") or row.get("open"))
    return Ticker(
        symbol=row.get("symbol") or row["instId"],
        high=safe_float(row.get("high24h")),
        low=safe_float(row.get("low24h")),
        bid=safe_float(row.get("bidPr")),
        bid_volume=safe_float(row.get("bidSz")),
        ask=safe_float(row.get("askPr")),
        ask_volume=safe_float(row.get("askSz")),
        open=open_price,
        close=last,
        last=last,
        change=last - open_price if open_price else 0.0,
        percentage=safe_float(row.get("change24h")) * 100,
        base_volume=safe_float(row.get("baseVolume")),
        quote_volume=safe_float(row.get("usdtVolume") or row.get("quoteVolume")),
        timestamp=int(row["ts"]),
    )


def parse_order_book(symbol: str, book: Dict[str, Any], limit: Optional[int] = None) -> OrderBook:
    bids = [(float(level[0]), float(level[1])) for level in book.get("bids") or []]
    asks = [(float(level[0]), float(level[1])) for level in book.get("asks") or []]
    if limit:
        bids, asks = bids[:limit], asks[:limit]
    return OrderBook(symbol=symbol, bids=bids, asks=asks, timestamp=int(book["ts"]))


def parse_trade(row: Dict[str, Any], symbol: str) -> Trade:
    return Trade(
        id=str(row["tradeId"]),
        symbol=row.get("symbol") or symbol,
        side=row["side"].lower(),
        amount=safe_float(row.get("size")),
        price=safe_float(row.get("price")),
        timestamp=int(row["ts"]),
    )


def parse_position(row: Dict[str, Any]) -> Position:
    size = safe_float(row.get("total"))
    mark = safe_float(row.get("markPrice"))
    unrealized = safe_float(row.get("unrealizedPL"))
    margin = safe_float(row.get("marginSize"))
    return Position(
        symbol=row.get("symbol") or row["instId"],
        side="long" if row.get("holdSide") == "long" else "short",
        size=size,
        notional=size * mark,
        entry_price=safe_float(row.get("openPriceAvg")),
        mark_price=mark,
        unrealized_pnl=unrealized,
        percentage=unrealized / margin * 100 if margin else 0.0,
        leverage=safe_float(row.get("leverage"), 1.0),
        margin_type="cross" if row.get("marginMode") == "crossed" else "isolated",
        liquidation_price=safe_float(row.get("liquidationPrice")),
        timestamp=int(row.get("uTime") or row.get("cTime") or 0),
    )


def parse_order(row: Dict[str, Any]) -> Order:
    """
    Normalize an order (REST detail/list row or "orders" channel push).

    REST uses "state" and "baseVolume" for the filled size; the stream uses
    "status" and "accBaseVolume".
    """
    amount = safe_float(row.get("size"))
    filled = safe_float(row.get("accBaseVolume") or row.get("baseVolume"))
    average = optional_float(row.get("priceAvg"))
    updated = row.get("uTime")
    force = (row.get("force") or "").upper()
    pos_side = row.get("posSide")

    return Order(
        order_id=str(row["orderId"]),
        client_order_id=row.get("clientOid") or None,
        symbol=row.get("symbol") or row["instId"],
        side=row["side"],
        type="market" if row.get("orderType") == "market" else "limit",
        amount=amount,
        price=optional_float(row.get("price")) or None,
        status=ORDER_STATUS.get(row.get("state") or row.get("status") or "", "new"),
        time_in_force=force if force in ("GTC", "IOC", "FOK") else None,
        filled=filled,
        remaining=max(amount - filled, 0.0),
        cost=safe_float(row.get("quoteVolume")) or filled * (average or 0.0),
        average=average or None,
        fee=abs(safe_float(row.get("fee"))),
        fee_currency=row.get("marginCoin") or "USDT",
        timestamp=int(row.get("cTime") or 0),
        last_trade_timestamp=int(updated) if updated else None,
        position_side=pos_side if pos_side in ("long", "short") else None,
        reduce_only=str(row.get("reduceOnly", "")).upper() == "YES",
    )
