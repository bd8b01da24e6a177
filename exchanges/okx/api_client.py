"""
OKX REST API Client

This module provides an async HTTP client for the OKX V5 API (USDT-margined
perpetual swaps, instType=SWAP).
It handles:
- Base64 HMAC-SHA256 signing over timestamp + method + path(+query) + body
- Passphrase header and demo trading header (x-simulated-trading: 1)
- Response envelope {"code": "0", "msg": "", "data": [...]}, including the
  per-item sCode/sMsg of order endpoints
- Error code mapping to the core.errors taxonomy
- Data normalization to our schemas

API Documentation:
    https://www.okx.com/docs-v5/en/

Notes:
    - Order sizes (sz) are contract counts, passed through unchanged
    - Timestamps in the signature are ISO-8601 with milliseconds (UTC)

Usage:
    async with OKXAPIClient(base_url, credentials) as client:
        ticker = await client.get_ticker("BTC-USDT-SWAP")
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
from core.utils.time import ms_to_iso


INST_TYPE = "SWAP"

ORDER_STATUS = {
    "live": "new",
    "partially_filled": "partially_filled",
    "filled": "filled",
    "canceled": "canceled",
    "mmp_canceled": "canceled",
}


class OKXAPIClient(RestClient):
    """
    Async HTTP client for OKX V5 REST API

    Example:
        >>> async with OKXAPIClient("https://www.okx.com", creds) as client:
        ...     book = await client.get_order_book("BTC-USDT-SWAP", 5)
    """

    EXCHANGE = "okx"

    ERROR_CODES = {
        "50001": NetworkError,
        "50004": NetworkError,
        "50102": NetworkError,
        "50100": AuthenticationError,
        "50105": AuthenticationError,
        "50111": AuthenticationError,
        "50113": AuthenticationError,
        "50114": AuthenticationError,
        "50119": AuthenticationError,
        "50011": RateLimitExceeded,
        "50061": RateLimitExceeded,
        "51008": InsufficientFunds,
        "51131": InsufficientFunds,
        "51603": OrderNotFound,
        "51000": InvalidOrder,
        "51001": InvalidOrder,
        "51004": InvalidOrder,
        "51006": InvalidOrder,
        "51121": InvalidOrder,
    }

    # ============================================
    # Signing
    # ============================================

    def _sign_request(self, method, path, params, body):
        credentials = self._require_credentials()
        timestamp = ms_to_iso(self._timestamp_ms())
        query = self._query_string(params)
        request_path = f"{path}?{query}" if query else path

        digest = hmac.new(
            credentials.api_secret.encode(),
            f"{timestamp}{method}{request_path}{body or ''}".encode(),
            hashlib.sha256
        ).digest()

        headers = {
            **self._public_headers(),
            "OK-ACCESS-KEY": credentials.api_key,
            "OK-ACCESS-SIGN": base64.b64encode(digest).decode(),
            "OK-ACCESS-TIMESTAMP": timestamp,
            "OK-ACCESS-PASSPHRASE": credentials.passphrase or "",
        }
        return params, headers

    def _public_headers(self) -> Dict[str, str]:
        if self.credentials and self.credentials.sandbox:
            return {"x-simulated-trading": "1"}
        return {}

    def _extract_error(self, payload: Any) -> Optional[Tuple[str, str]]:
        """
        Top-level code wins unless it is the generic "1"/"2" batch failure,
        in which case the first item's sCode is more specific.
        """
        if not isinstance(payload, dict) or str(payload.get("code", "0")) == "0":
            return None
        items = payload.get("data") or []
        first = items[0] if items and isinstance(items[0], dict) else {}
        if first.get("sCode") not in (None, "", "0"):
            return str(first["sCode"]), first.get("sMsg", "")
        return str(payload["code"]), payload.get("msg", "")

    def _unwrap(self, payload: Any) -> Any:
        if isinstance(payload, dict) and "data" in payload:
            return payload["data"]
        return payload

    # ============================================
    # General Endpoints
    # ============================================

    async def get_server_time(self) -> int:
        data = await self.request("GET", "/api/v5/public/time")
        return int(data[0]["ts"])

    # ============================================
    # Account Endpoints
    # ============================================

    async def get_balance_raw(self) -> Dict[str, Any]:
        data = await self.request("GET", "/api/v5/account/balance", signed=True)
        return data[0] if data else {}

    async def get_account(self) -> AccountInfo:
        """
        Fetch the trading account summary.

        Returns:
            AccountInfo: margin_ratio = mmr / totalEq
        """
        account = await self.get_balance_raw()
        details = account.get("details") or []
        usdt = next((d for d in details if d.get("ccy") == "USDT"), details[0] if details else {})

        equity = safe_float(account.get("totalEq"))
        maint = safe_float(account.get("mmr"))
        unrealized = safe_float(account.get("upl"), safe_float(usdt.get("upl")))
        available = safe_float(usdt.get("availEq")) or safe_float(usdt.get("availBal"))

        return AccountInfo(
            exchange=self.EXCHANGE,
            account_id="okx_futures",
            name="OKX Futures Account",
            balance=equity,
            available_balance=available,
            unrealized_pnl=unrealized,
            margin_ratio=maint / equity if equity else 0.0,
            total_wallet_balance=equity,
            total_unrealized_pnl=unrealized,
            total_margin_balance=safe_float(account.get("adjEq")) or equity,
            total_maint_margin=maint,
            total_initial_margin=safe_float(account.get("imr")),
            max_withdraw_amount=available,
            timestamp=int(account.get("uTime") or self._timestamp_ms()),
        )

    async def get_balances(self) -> List[Balance]:
        account = await self.get_balance_raw()
        return [
            Balance(
                currency=d["ccy"],
                free=safe_float(d.get("availBal")),
                used=safe_float(d.get("frozenBal")),
                total=safe_float(d.get("eq")),
            )
            for d in account.get("details") or []
            if safe_float(d.get("eq")) != 0
        ]

    async def get_positions(self, inst_id: Optional[str] = None) -> List[Position]:
        data = await self.request(
            "GET", "/api/v5/account/positions", {"instType": INST_TYPE, "instId": inst_id}, signed=True
        )
        return [parse_position(row) for row in data if safe_float(row.get("pos")) != 0]

    # ============================================
    # Market Data Endpoints
    # ============================================

    async def get_ticker(self, inst_id: str) -> Ticker:
        data = await self.request("GET", "/api/v5/market/ticker", {"instId": inst_id})
        if not data:
            raise ExchangeError(f"No ticker for {inst_id}", exchange=self.EXCHANGE)
        return parse_ticker(data[0])

    async def get_order_book(self, inst_id: str, limit: int = 20) -> OrderBook:
        data = await self.request("GET", "/api/v5/market/books", {"instId": inst_id, "sz": limit})
        return parse_order_book(inst_id, data[0])

    async def get_trades(self, inst_id: str, limit: int = 100) -> List[Trade]:
        """Recent trades; OKX returns newest first, so the list is reversed."""
        data = await self.request("GET", "/api/v5/market/trades", {"instId": inst_id, "limit": limit})
        return [parse_trade(row) for row in reversed(data)]

    # ============================================
    # Order Endpoints
    # ============================================

    async def create_order(self, body: Dict[str, Any]) -> str:
        data = await self.request("POST", "/api/v5/trade/order", body=body, signed=True)
        return data[0]["ordId"]

    async def cancel_order(self, inst_id: str, order_id: str) -> str:
        data = await self.request(
            "POST", "/api/v5/trade/cancel-order", body={"instId": inst_id, "ordId": order_id}, signed=True
        )
        return data[0]["ordId"]

    async def get_order(self, inst_id: str, order_id: str) -> Order:
        data = await self.request(
            "GET", "/api/v5/trade/order", {"instId": inst_id, "ordId": order_id}, signed=True
        )
        if not data:
            raise OrderNotFound(f"Order {order_id} not found", exchange=self.EXCHANGE)
        return parse_order(data[0])

    async def get_order_history(self, inst_id: Optional[str], limit: int = 100) -> List[Order]:
        data = await self.request(
            "GET",
            "/api/v5/trade/orders-history",
            {"instType": INST_TYPE, "instId": inst_id, "limit": min(limit, 100)},
            signed=True
        )
        return [parse_order(row) for row in data]

    async def get_open_orders(self, inst_id: Optional[str] = None) -> List[Order]:
        data = await self.request(
            "GET", "/api/v5/trade/orders-pending", {"instType": INST_TYPE, "instId": inst_id}, signed=True
        )
        return [parse_order(row) for row in data]

    async def set_leverage(self, inst_id: str, leverage: int, margin_mode: str) -> None:
        await self.request(
            "POST",
            "/api/v5/account/set-leverage",
            body={"instId": inst_id, "lever": str(leverage), "mgnMode": margin_mode},
            signed=True
        )


# ============================================
# Normalization Helpers
# ============================================

def parse_ticker(row: Dict[str, Any]) -> Ticker:
    last = safe_float(row.get("last"))
    open_price = safe_float(row.get("open24h"))
    return Ticker(
        symbol=row["instId"],
        high=safe_float(row.get("high24h")),
        low=safe_float(row.get("low24h")),
        bid=safe_float(row.get("bidPx")),
        bid_volume=safe_float(row.get("bidSz")),
        ask=safe_float(row.get("askPx")),
        ask_volume=safe_float(row.get("askSz")),
        open=open_price,
        close=last,
        last=last,
        change=last - open_price,
        percentage=(last - open_price) / open_price * 100 if open_price else 0.0,
        base_volume=safe_float(row.get("volCcy24h")),
        quote_volume=safe_float(row.get("volCcy24h")) * last,
        timestamp=int(row["ts"]),
    )


def parse_order_book(inst_id: str, book: Dict[str, Any]) -> OrderBook:
    """OKX levels are [price, size, deprecated, order count]; only the first two are kept."""
    return OrderBook(
        symbol=inst_id,
        bids=[(float(level[0]), float(level[1])) for level in book.get("bids", [])],
        asks=[(float(level[0]), float(level[1])) for level in book.get("asks", [])],
        timestamp=int(book["ts"]),
        nonce=book.get("seqId"),
    )


def parse_trade(row: Dict[str, Any]) -> Trade:
    return Trade(
        id=str(row["tradeId"]),
        symbol=row["instId"],
        side=row["side"],
        amount=safe_float(row.get("sz")),
        price=safe_float(row.get("px")),
        timestamp=int(row["ts"]),
    )


def parse_position(row: Dict[str, Any]) -> Position:
    """
    Normalize a position row.

    In net mode (posSide "net") the sign of pos gives the direction.
    """
    pos = safe_float(row.get("pos"))
    pos_side = row.get("posSide", "net")
    if pos_side in ("long", "short"):
        side = pos_side
    else:
        side = "long" if pos > 0 else "short"

    return Position(
        symbol=row["instId"],
        side=side,
        size=abs(pos),
        notional=abs(safe_float(row.get("notionalUsd"))),
        entry_price=safe_float(row.get("avgPx")),
        mark_price=safe_float(row.get("markPx")),
        unrealized_pnl=safe_float(row.get("upl")),
        percentage=safe_float(row.get("uplRatio")) * 100,
        leverage=safe_float(row.get("lever"), 1.0),
        margin_type="cross" if row.get("mgnMode") == "cross" else "isolated",
        liquidation_price=safe_float(row.get("liqPx")),
        timestamp=int(row.get("uTime") or 0),
    )


def parse_order(row: Dict[str, Any]) -> Order:
    """
    Normalize an order row (REST or "orders" channel).

    OKX reports fees as negative numbers; fee is returned as a positive cost.
    """
    amount = safe_float(row.get("sz"))
    filled = safe_float(row.get("accFillSz"))
    ord_type = row.get("ordType", "")
    average = optional_float(row.get("avgPx"))
    updated = row.get("uTime")
    reduce_only = row.get("reduceOnly")

    return Order(
        order_id=str(row["ordId"]),
        client_order_id=row.get("clOrdId") or None,
        symbol=row["instId"],
        side=row["side"],
        type="market" if ord_type == "market" else "limit",
        amount=amount,
        price=optional_float(row.get("px")) or None,
        status=ORDER_STATUS.get(row.get("state", ""), "new"),
        time_in_force={"ioc": "IOC", "fok": "FOK"}.get(ord_type, "GTC" if ord_type != "market" else None),
        filled=filled,
        remaining=max(amount - filled, 0.0),
        cost=filled * (average or 0.0),
        average=average or None,
        fee=abs(safe_float(row.get("fee"))),
        fee_currency=row.get("feeCcy") or "USDT",
        timestamp=int(row.get("cTime") or 0),
        last_trade_timestamp=int(updated) if updated else None,
        position_side=row.get("posSide") if row.get("posSide") in ("long", "short") else None,
        reduce_only=reduce_only in (True, "true"),
    )
