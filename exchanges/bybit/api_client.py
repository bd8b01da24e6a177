"""
Bybit REST API Client

This module provides an async HTTP client for the Bybit V5 API (linear USDT
perpetuals, category=linear).
It handles:
- V5 HMAC signing (timestamp + api_key + recv_window + query/body)
- Response envelope {"retCode": 0, "retMsg": "OK", "result": {...}}
- Error code mapping to the core.errors taxonomy
- Data normalization to our schemas

API Documentation:
    https://bybit-exchange.github.io/docs/v5/intro

Usage:
    async with BybitAPIClient(base_url, credentials) as client:
        ticker = await client.get_ticker("BTCUSDT")
"""

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


CATEGORY = "linear"

ORDER_STATUS = {
    "New": "new",
    "Created": "new",
    "Untriggered": "new",
    "PartiallyFilled": "partially_filled",
    "Filled": "filled",
    "Cancelled": "canceled",
    "PartiallyFilledCanceled": "canceled",
    "Rejected": "rejected",
    "Deactivated": "expired",
}

# "not modified" answers that mean the requested state is already active
LEVERAGE_NOT_MODIFIED = "110043"
MARGIN_MODE_NOT_MODIFIED = "110026"


class BybitAPIClient(RestClient):
    """
    Async HTTP client for Bybit V5 REST API

    Symbols are passed in Bybit spelling ("BTCUSDT"); returned models carry
    the unified spelling ("BTC/USDT").

    Example:
        >>> async with BybitAPIClient("https://api.bybit.com", creds) as client:
        ...     positions = await client.get_positions()
    """

    EXCHANGE = "bybit"

    ERROR_CODES = {
        "10002": NetworkError,
        "10003": AuthenticationError,
        "10004": AuthenticationError,
        "10005": AuthenticationError,
        "10007": AuthenticationError,
        "10010": AuthenticationError,
        "33004": AuthenticationError,
        "10006": RateLimitExceeded,
        "10018": RateLimitExceeded,
        "110004": InsufficientFunds,
        "110007": InsufficientFunds,
        "110012": InsufficientFunds,
        "110001": OrderNotFound,
        "110008": OrderNotFound,
        "10001": InvalidOrder,
        "110003": InvalidOrder,
        "110017": InvalidOrder,
        "110094": InvalidOrder,
    }

    # ============================================
    # Signing
    # ============================================

    def _sign_request(self, method, path, params, body):
        credentials = self._require_credentials()
        timestamp = str(self._timestamp_ms())
        recv_window = str(self.recv_window_ms)
        payload = body if method == "POST" else self._query_string(params)

        signature = hmac.new(
            credentials.api_secret.encode(),
            f"{timestamp}{credentials.api_key}{recv_window}{payload or ''}".encode(),
            hashlib.sha256
        ).hexdigest()

        headers = {
            "X-BAPI-API-KEY": credentials.api_key,
            "X-BAPI-TIMESTAMP": timestamp,
            "X-BAPI-RECV-WINDOW": recv_window,
            "X-BAPI-SIGN": signature,
            "X-BAPI-SIGN-TYPE": "2",
        }
        return params, headers

    def _extract_error(self, payload: Any) -> Optional[Tuple[str, str]]:
        if isinstance(payload, dict) and payload.get("retCode", 0) != 0:
            return str(payload["retCode"]), payload.get("retMsg", "")
        return None

    def _unwrap(self, payload: Any) -> Any:
        if isinstance(payload, dict) and "result" in payload:
            return payload["result"]
        return payload

    # ============================================
    # General Endpoints
    # ============================================

    async def get_server_time(self) -> int:
        """
        Get Bybit server time in milliseconds.

        Returns:
            int: timeNano / 1e6
        """
        result = await self.request("GET", "/v5/market/time")
        return int(result["timeNano"]) // 1_000_000

    # ============================================
    # Account Endpoints
    # ============================================

    async def get_wallet(self) -> Dict[str, Any]:
        result = await self.request(
            "GET", "/v5/account/wallet-balance", {"accountType": "UNIFIED"}, signed=True
        )
        accounts = result.get("list") or []
        return accounts[0] if accounts else {}

    async def get_account(self) -> AccountInfo:
        """
        Fetch the unified account summary, using the USDT coin row for balances.

        Returns:
            AccountInfo: margin_ratio = accountMMRate (maintenance / equity)
        """
        account = await self.get_wallet()
        coins = account.get("coin") or []
        usdt = next((c for c in coins if c.get("coin") == "USDT"), coins[0] if coins else {})

        wallet = safe_float(usdt.get("walletBalance"))
        available = safe_float(usdt.get("availableToWithdraw")) or safe_float(account.get("totalAvailableBalance"))
        unrealized = safe_float(account.get("totalPerpUPL"))
        maint = safe_float(account.get("totalMaintenanceMargin"))

        return AccountInfo(
            exchange=self.EXCHANGE,
            account_id="bybit_futures",
            name="Bybit Futures Account",
            balance=wallet,
            available_balance=available,
            unrealized_pnl=unrealized,
            margin_ratio=maint / wallet if wallet else 0.0,
            total_wallet_balance=wallet,
            total_unrealized_pnl=unrealized,
            total_margin_balance=safe_float(account.get("totalMarginBalance")),
            total_maint_margin=maint,
            total_initial_margin=safe_float(account.get("totalInitialMargin")),
            max_withdraw_amount=available,
            timestamp=self._timestamp_ms(),
        )

    async def get_balances(self) -> List[Balance]:
        account = await self.get_wallet()
        return [parse_balance(coin) for coin in account.get("coin") or [] if safe_float(coin.get("walletBalance")) != 0]

    async def get_positions(self, symbol: Optional[str] = None) -> List[Position]:
        params = {"category": CATEGORY, "symbol": symbol}
        if symbol is None:
            params["settleCoin"] = "USDT"
        result = await self.request("GET", "/v5/position/list", params, signed=True)
        return [parse_position(row) for row in result.get("list", []) if safe_float(row.get("size")) > 0]

    # ============================================
    # Market Data Endpoints
    # ============================================

    async def get_ticker(self, symbol: str) -> Ticker:
        result = await self.request("GET", "/v5/market/tickers", {"category": CATEGORY, "symbol": symbol})
        rows = result.get("list") or []
        if not rows:
            raise ExchangeError(f"No ticker for {symbol}", exchange=self.EXCHANGE)
        return parse_ticker(rows[0], int(result.get("time") or self._timestamp_ms()))

    async def get_order_book(self, symbol: str, limit: int = 20) -> OrderBook:
        result = await self.request(
            "GET", "/v5/market/orderbook", {"category": CATEGORY, "symbol": symbol, "limit": limit}
        )
        return OrderBook(
            symbol=symbol,
            bids=[(float(p), float(q)) for p, q in result.get("b", [])],
            asks=[(float(p), float(q)) for p, q in result.get("a", [])],
            timestamp=int(result.get("ts") or self._timestamp_ms()),
            nonce=result.get("u"),
        )

    async def get_trades(self, symbol: str, limit: int = 100) -> List[Trade]:
        """Recent public trades; Bybit returns newest first, so the list is reversed."""
        result = await self.request(
            "GET", "/v5/market/recent-trade", {"category": CATEGORY, "symbol": symbol, "limit": limit}
        )
        rows = list(reversed(result.get("list", [])))
        return [
            Trade(
                id=row["execId"],
                symbol=row.get("symbol") or symbol,
                side=row["side"].lower(),
                amount=safe_float(row.get("size")),
                price=safe_float(row.get("price")),
                timestamp=int(row["time"]),
            )
            for row in rows
        ]

    # ============================================
    # Order Endpoints
    # ============================================

    async def create_order(self, body: Dict[str, Any]) -> str:
        """
        Submit an order.

        Returns:
            str: Bybit order id (the create response carries no order state)
        """
        result = await self.request("POST", "/v5/order/create", body=body, signed=True)
        return result["orderId"]

    async def cancel_order(self, symbol: str, order_id: str) -> str:
        result = await self.request(
            "POST",
            "/v5/order/cancel",
            body={"category": CATEGORY, "symbol": symbol, "orderId": order_id},
            signed=True
        )
        return result["orderId"]

    async def get_order(self, symbol: str, order_id: str) -> Order:
        """
        Look up an order in the active list, then in history.

        Raises:
            OrderNotFound: Neither list knows the order id
        """
        params = {"category": CATEGORY, "symbol": symbol, "orderId": order_id}
        for path in ("/v5/order/realtime", "/v5/order/history"):
            result = await self.request("GET", path, params, signed=True)
            rows = result.get("list") or []
            if rows:
                return parse_order(rows[0])
        raise OrderNotFound(f"Order {order_id} not found", exchange=self.EXCHANGE)

    async def get_order_history(self, symbol: Optional[str], limit: int = 50) -> List[Order]:
        result = await self.request(
            "GET",
            "/v5/order/history",
            {"category": CATEGORY, "symbol": symbol, "limit": min(limit, 50)},
            signed=True
        )
        return [parse_order(row) for row in result.get("list", [])]

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[Order]:
        params = {"category": CATEGORY, "symbol": symbol}
        if symbol is None:
            params["settleCoin"] = "USDT"
        result = await self.request("GET", "/v5/order/realtime", params, signed=True)
        return [parse_order(row) for row in result.get("list", [])]

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        try:
            await self.request(
                "POST",
                "/v5/position/set-leverage",
                body={
                    "category": CATEGORY,
                    "symbol": symbol,
                    "buyLeverage": str(leverage),
                    "sellLeverage": str(leverage),
                },
                signed=True
            )
        except ExchangeError as e:
            if e.native_code != LEVERAGE_NOT_MODIFIED:
                raise

    async def set_margin_type(self, symbol: str, isolated: bool, leverage: int = 10) -> None:
        """
        Switch cross/isolated margin (tradeMode 0 = cross, 1 = isolated).

        Bybit requires leverage on the same call; 10x is used when the caller
        has not set one.
        """
        try:
            await self.request(
                "POST",
                "/v5/position/switch-isolated",
                body={
                    "category": CATEGORY,
                    "symbol": symbol,
                    "tradeMode": 1 if isolated else 0,
                    "buyLeverage": str(leverage),
                    "sellLeverage": str(leverage),
                },
                signed=True
            )
        except ExchangeError as e:
            if e.native_code != MARGIN_MODE_NOT_MODIFIED:
                raise


# ============================================
# Normalization Helpers
# ============================================

def parse_ticker(row: Dict[str, Any], timestamp: int) -> Ticker:
    """
    Normalize a V5 linear ticker row (REST list entry or WS snapshot).

    price24hPcnt is a fraction ("0.0123"), percentage is reported x100.
    """
    last = safe_float(row.get("lastPrice"))
    open_price = safe_float(row.get("prevPrice24h"))
    pct = safe_float(row.get("price24hPcnt"))
    return Ticker(
        symbol=row["symbol"],
        high=safe_float(row.get("highPrice24h")),
        low=safe_float(row.get("lowPrice24h")),
        bid=safe_float(row.get("bid1Price")),
        bid_volume=safe_float(row.get("bid1Size")),
        ask=safe_float(row.get("ask1Price")),
        ask_volume=safe_float(row.get("ask1Size")),
        open=open_price,
        close=last,
        last=last,
        change=last - open_price if open_price else 0.0,
        percentage=pct * 100,
        base_volume=safe_float(row.get("volume24h")),
        quote_volume=safe_float(row.get("turnover24h")),
        timestamp=timestamp,
    )


def parse_balance(coin: Dict[str, Any]) -> Balance:
    total = safe_float(coin.get("walletBalance"))
    free = safe_float(coin.get("availableToWithdraw"), total)
    return Balance(currency=coin["coin"], free=free, used=max(total - free, 0.0), total=total)


def parse_position(row: Dict[str, Any]) -> Position:
    """Bybit side is "Buy" (long) / "Sell" (short); tradeMode 1 is isolated."""
    value = safe_float(row.get("positionValue"))
    unrealized = safe_float(row.get("unrealisedPnl"))
    leverage = safe_float(row.get("leverage"), 1.0)
    margin = value / leverage if leverage else 0.0
    return Position(
        symbol=row["symbol"],
        side="long" if row.get("side") == "Buy" else "short",
        size=safe_float(row.get("size")),
        notional=abs(value),
        entry_price=safe_float(row.get("avgPrice") or row.get("entryPrice")),
        mark_price=safe_float(row.get("markPrice")),
        unrealized_pnl=unrealized,
        percentage=unrealized / margin * 100 if margin else 0.0,
        leverage=leverage,
        margin_type="isolated" if str(row.get("tradeMode")) == "1" else "cross",
        liquidation_price=safe_float(row.get("liqPrice")),
        timestamp=int(row.get("updatedTime") or 0),
    )


def parse_order(row: Dict[str, Any]) -> Order:
    amount = safe_float(row.get("qty"))
    filled = safe_float(row.get("cumExecQty"))
    updated = optional_float(row.get("updatedTime"))
    return Order(
        order_id=row["orderId"],
        client_order_id=row.get("orderLinkId") or None,
        symbol=row["symbol"],
        side=row["side"].lower(),
        type=row.get("orderType", "").lower(),
        amount=amount,
        price=optional_float(row.get("price")) or None,
        stop_price=optional_float(row.get("triggerPrice")) or None,
        status=ORDER_STATUS.get(row.get("orderStatus", ""), "new"),
        time_in_force=row.get("timeInForce"),
        filled=filled,
        remaining=max(amount - filled, 0.0),
        cost=safe_float(row.get("cumExecValue")),
        average=optional_float(row.get("avgPrice")) or None,
        fee=safe_float(row.get("cumExecFee")),
        fee_currency="USDT",
        timestamp=int(row.get("createdTime") or 0),
        last_trade_timestamp=int(updated) if updated else None,
        reduce_only=row.get("reduceOnly"),
    )
