"""
Binance REST API Client

This module provides an async HTTP client for the Binance USD-M Futures REST API.
It handles:
- HMAC-SHA256 query signing (timestamp + recvWindow + signature)
- Rate limit handling (429, 418) via the shared RestClient retry loop
- Error code mapping to the core.errors taxonomy
- Data normalization to our schemas

API Documentation:
    https://binance-docs.github.io/apidocs/futures/en/

Rate Limits:
    - Weight-based system (each endpoint has a weight)
    - 2400 weight per minute limit
    - HTTP 418 means the IP was auto-banned after ignoring 429s

Usage:
    async with BinanceAPIClient(base_url, credentials) as client:
        ticker = await client.get_ticker("BTCUSDT")
        positions = await client.get_positions()
"""

import asyncio
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


ORDER_STATUS = {
    "NEW": "new",
    "PARTIALLY_FILLED": "partially_filled",
    "FILLED": "filled",
    "CANCELED": "canceled",
    "REJECTED": "rejected",
    "EXPIRED": "expired",
}

# Returned when the requested margin type is already active
NO_NEED_TO_CHANGE_MARGIN_TYPE = "-4046"


class BinanceAPIClient(RestClient):
    """
    Async HTTP client for Binance Futures REST API

    All market/account methods return normalized Pydantic models; symbols are
    passed in Binance spelling ("BTCUSDT") and come back unified ("BTC/USDT").

    Example:
        >>> async with BinanceAPIClient("https://fapi.binance.com", creds) as client:
        ...     account = await client.get_account()
        ...     print(account.total_wallet_balance)
    """

    EXCHANGE = "binance"

    ERROR_CODES = {
        "-1003": RateLimitExceeded,
        "-1021": NetworkError,
        "-1022": AuthenticationError,
        "-2014": AuthenticationError,
        "-2015": AuthenticationError,
        "-2010": InsufficientFunds,
        "-2019": InsufficientFunds,
        "-1013": InvalidOrder,
        "-1111": InvalidOrder,
        "-1116": InvalidOrder,
        "-4003": InvalidOrder,
        "-2011": OrderNotFound,
        "-2013": OrderNotFound,
    }

    # ============================================
    # Signing
    # ============================================

    def _sign_request(self, method, path, params, body):
        credentials = self._require_credentials()
        signed = {
            **params,
            "timestamp": self._timestamp_ms(),
            "recvWindow": self.recv_window_ms,
        }
        signature = hmac.new(
            credentials.api_secret.encode(),
            self._query_string(signed).encode(),
            hashlib.sha256
        ).hexdigest()
        signed["signature"] = signature
        return signed, {"X-MBX-APIKEY": credentials.api_key}

    def _public_headers(self) -> Dict[str, str]:
        # listenKey endpoints need the key header without a signature
        if self.credentials:
            return {"X-MBX-APIKEY": self.credentials.api_key}
        return {}

    def _extract_error(self, payload: Any) -> Optional[Tuple[str, str]]:
        """Binance errors are {"code": <negative int>, "msg": "..."}."""
        if isinstance(payload, dict) and isinstance(payload.get("code"), int) and payload["code"] < 0:
            return str(payload["code"]), payload.get("msg", "")
        return None

    # ============================================
    # General Endpoints
    # ============================================

    async def ping(self) -> None:
        await self.request("GET", "/fapi/v1/ping")

    async def get_server_time(self) -> int:
        data = await self.request("GET", "/fapi/v1/time")
        return int(data["serverTime"])

    # ============================================
    # Account Endpoints
    # ============================================

    async def get_account_raw(self) -> Dict[str, Any]:
        return await self.request("GET", "/fapi/v2/account", signed=True)

    async def get_account(self) -> AccountInfo:
        """
        Fetch the futures account summary.

        Returns:
            AccountInfo: margin_ratio = totalMaintMargin / totalWalletBalance
        """
        account = await self.get_account_raw()
        wallet = safe_float(account.get("totalWalletBalance"))
        maint = safe_float(account.get("totalMaintMargin"))
        unrealized = safe_float(account.get("totalUnrealizedProfit"))

        return AccountInfo(
            exchange=self.EXCHANGE,
            account_id="binance_futures",
            name="Binance Futures Account",
            balance=wallet,
            available_balance=safe_float(account.get("availableBalance")),
            unrealized_pnl=unrealized,
            margin_ratio=maint / wallet if wallet else 0.0,
            total_wallet_balance=wallet,
            total_unrealized_pnl=unrealized,
            total_margin_balance=safe_float(account.get("totalMarginBalance")),
            total_maint_margin=maint,
            total_initial_margin=safe_float(account.get("totalInitialMargin")),
            max_withdraw_amount=safe_float(account.get("maxWithdrawAmount")),
            timestamp=int(account.get("updateTime") or self._timestamp_ms()),
        )

    async def get_balances(self) -> List[Balance]:
        account = await self.get_account_raw()
        return [
            Balance(
                currency=asset["asset"],
                free=safe_float(asset.get("availableBalance")),
                used=safe_float(asset.get("initialMargin")),
                total=safe_float(asset.get("walletBalance")),
            )
            for asset in account.get("assets", [])
            if safe_float(asset.get("walletBalance")) != 0
        ]

    async def get_positions(self, symbol: Optional[str] = None) -> List[Position]:
        """
        Fetch open positions (/fapi/v2/positionRisk).

        Zero-size rows (Binance returns every symbol) are filtered out.
        """
        rows = await self.request("GET", "/fapi/v2/positionRisk", {"symbol": symbol}, signed=True)
        now = self._timestamp_ms()
        return [parse_position(row, now) for row in rows if safe_float(row.get("positionAmt")) != 0]

    # ============================================
    # Market Data Endpoints
    # ============================================

    async def get_ticker(self, symbol: str) -> Ticker:
        """
        Fetch 24h statistics and the best bid/ask in parallel.

        /fapi/v1/ticker/24hr does not carry bid/ask on futures, so the book
        ticker is merged in.
        """
        stats, book = await asyncio.gather(
            self.request("GET", "/fapi/v1/ticker/24hr", {"symbol": symbol}),
            self.request("GET", "/fapi/v1/ticker/bookTicker", {"symbol": symbol}),
        )
        return Ticker(
            symbol=stats["symbol"],
            high=safe_float(stats.get("highPrice")),
            low=safe_float(stats.get("lowPrice")),
            bid=safe_float(book.get("bidPrice")),
            bid_volume=safe_float(book.get("bidQty")),
            ask=safe_float(book.get("askPrice")),
            ask_volume=safe_float(book.get("askQty")),
            open=safe_float(stats.get("openPrice")),
            close=safe_float(stats.get("lastPrice")),
            last=safe_float(stats.get("lastPrice")),
            change=safe_float(stats.get("priceChange")),
            percentage=safe_float(stats.get("priceChangePercent")),
            base_volume=safe_float(stats.get("volume")),
            quote_volume=safe_float(stats.get("quoteVolume")),
            timestamp=int(stats.get("closeTime") or self._timestamp_ms()),
        )

    async def get_order_book(self, symbol: str, limit: int = 20) -> OrderBook:
        # Binance accepts 5, 10, 20, 50, 100, 500, 1000
        allowed = (5, 10, 20, 50, 100, 500, 1000)
        depth = next((n for n in allowed if n >= limit), 1000)
        book = await self.request("GET", "/fapi/v1/depth", {"symbol": symbol, "limit": depth})
        return OrderBook(
            symbol=symbol,
            bids=[(float(p), float(q)) for p, q in book.get("bids", [])[:limit]],
            asks=[(float(p), float(q)) for p, q in book.get("asks", [])[:limit]],
            timestamp=int(book.get("T") or book.get("E") or self._timestamp_ms()),
            nonce=book.get("lastUpdateId"),
        )

    async def get_trades(self, symbol: str, limit: int = 100) -> List[Trade]:
        """Aggregate trades; "m" (buyer is maker) means the taker sold."""
        trades = await self.request("GET", "/fapi/v1/aggTrades", {"symbol": symbol, "limit": limit})
        return [
            Trade(
                id=str(t["a"]),
                symbol=symbol,
                side="sell" if t.get("m") else "buy",
                amount=safe_float(t.get("q")),
                price=safe_float(t.get("p")),
                timestamp=int(t["T"]),
            )
            for t in trades
        ]

    # ============================================
    # Order Endpoints
    # ============================================

    async def create_order(self, params: Dict[str, Any]) -> Order:
        raw = await self.request("POST", "/fapi/v1/order", params, signed=True)
        return parse_order(raw)

    async def cancel_order(self, symbol: str, order_id: str) -> Order:
        raw = await self.request(
            "DELETE", "/fapi/v1/order", {"symbol": symbol, "orderId": order_id}, signed=True
        )
        return parse_order(raw)

    async def get_order(self, symbol: str, order_id: str) -> Order:
        raw = await self.request(
            "GET", "/fapi/v1/order", {"symbol": symbol, "orderId": order_id}, signed=True
        )
        return parse_order(raw)

    async def get_all_orders(self, symbol: Optional[str], limit: int = 100) -> List[Order]:
        rows = await self.request(
            "GET", "/fapi/v1/allOrders", {"symbol": symbol, "limit": limit}, signed=True
        )
        return [parse_order(row) for row in rows]

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[Order]:
        rows = await self.request("GET", "/fapi/v1/openOrders", {"symbol": symbol}, signed=True)
        return [parse_order(row) for row in rows]

    async def set_leverage(self, symbol: str, leverage: int) -> Dict[str, Any]:
        return await self.request(
            "POST", "/fapi/v1/leverage", {"symbol": symbol, "leverage": leverage}, signed=True
        )

    async def set_margin_type(self, symbol: str, margin_type: str) -> None:
        """
        Switch margin type ("ISOLATED" / "CROSSED").

        Binance answers -4046 when the type is already active; that is success.
        """
        try:
            await self.request(
                "POST", "/fapi/v1/marginType", {"symbol": symbol, "marginType": margin_type}, signed=True
            )
        except ExchangeError as e:
            if e.native_code != NO_NEED_TO_CHANGE_MARGIN_TYPE:
                raise

    # ============================================
    # User Data Stream
    # ============================================

    async def create_listen_key(self) -> str:
        data = await self.request("POST", "/fapi/v1/listenKey")
        return data["listenKey"]

    async def keepalive_listen_key(self) -> None:
        await self.request("PUT", "/fapi/v1/listenKey")

    async def close_listen_key(self) -> None:
        await self.request("DELETE", "/fapi/v1/listenKey")


# ============================================
# Normalization Helpers
# ============================================

def parse_order(raw: Dict[str, Any]) -> Order:
    """
    Normalize a Binance order (REST response or ORDER_TRADE_UPDATE payload).

    Example:
        >>> parse_order({"orderId": 1, "symbol": "BTCUSDT", "side": "BUY", "type": "LIMIT",
        ...              "origQty": "0.01", "executedQty": "0", "status": "NEW", "time": 1700000000000}).status
        'new'
    """
    amount = safe_float(raw.get("origQty"))
    filled = safe_float(raw.get("executedQty"))
    position_side = raw.get("positionSide")
    price = optional_float(raw.get("price"))
    average = optional_float(raw.get("avgPrice"))

    return Order(
        order_id=str(raw.get("orderId") or raw.get("clientOrderId")),
        client_order_id=raw.get("clientOrderId"),
        symbol=raw["symbol"],
        side=raw["side"].lower(),
        type=raw.get("type", "").lower(),
        amount=amount,
        price=price or None,
        stop_price=optional_float(raw.get("stopPrice")) or None,
        status=ORDER_STATUS.get(raw.get("status", ""), "new"),
        time_in_force=raw.get("timeInForce"),
        filled=filled,
        remaining=max(amount - filled, 0.0),
        cost=safe_float(raw.get("cumQuote")),
        average=average or None,
        fee=safe_float(raw.get("commission")),
        fee_currency=raw.get("commissionAsset") or "USDT",
        timestamp=int(raw.get("time") or raw.get("updateTime") or 0),
        position_side=position_side.lower() if position_side else None,
        reduce_only=raw.get("reduceOnly"),
    )


def parse_position(row: Dict[str, Any], timestamp: int) -> Position:
    """Normalize one positionRisk row; sign of positionAmt gives the side."""
    amount = safe_float(row.get("positionAmt"))
    entry = safe_float(row.get("entryPrice"))
    leverage = safe_float(row.get("leverage"), 1.0)
    unrealized = safe_float(row.get("unRealizedProfit"))
    notional = abs(safe_float(row.get("notional")))

    margin = abs(amount) * entry / leverage if leverage else 0.0
    return Position(
        symbol=row["symbol"],
        side="long" if amount > 0 else "short",
        size=abs(amount),
        notional=notional,
        entry_price=entry,
        mark_price=safe_float(row.get("markPrice")),
        unrealized_pnl=unrealized,
        percentage=unrealized / margin * 100 if margin else 0.0,
        leverage=leverage,
        margin_type="isolated" if row.get("marginType", "").lower() == "isolated" else "cross",
        liquidation_price=safe_float(row.get("liquidationPrice")),
        timestamp=timestamp,
    )
