"""
Normalized Data Schemas

This module defines Pydantic models for every value that crosses the adapter
contract. Regardless of which exchange the data comes from, it is normalized
into these shapes:

    - symbol: always "BASE/QUOTE" (e.g. "BTC/USDT")
    - timestamp: always integer milliseconds since epoch (UTC)
    - numeric fields: plain floats, already parsed from exchange strings

Models:
    Credentials & requests:
        - ExchangeCredentials: API key material bound to one adapter
        - OrderRequest: Unified order placement parameters
    Account:
        - AccountInfo, Balance, Position
    Market data:
        - Ticker, OrderBook, Trade
    Orders:
        - Order
    Streaming:
        - SubscriptionType, WebSocketMessage
    Orchestration snapshots:
        - ExchangeStatus (connection manager), TaskStatus (scheduler)
"""

from datetime import datetime
from enum import Enum
from typing import Any, Callable, List, Literal, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from core.utils.formatting import to_unified_symbol
from core.utils.time import ms_to_iso


OrderSide = Literal["buy", "sell"]
OrderStatus = Literal["new", "partially_filled", "filled", "canceled", "rejected", "expired"]
PositionSide = Literal["long", "short", "both"]
MarginType = Literal["isolated", "cross"]
TimeInForce = Literal["GTC", "IOC", "FOK"]


# ============================================
# Credentials
# ============================================

class ExchangeCredentials(BaseModel):
    """
    API credentials for one exchange account.

    Attributes:
        api_key: Public API key
        api_secret: Secret used for request signing
        passphrase: Extra secret required by OKX and Bitget
        sandbox: Use the exchange's testnet / demo environment

    Notes:
        - The secret is excluded from repr() so it never lands in logs
    """

    api_key: str = Field(..., description="Public API key")
    api_secret: str = Field(..., repr=False, description="API secret")
    passphrase: Optional[str] = Field(None, repr=False, description="API passphrase (OKX, Bitget)")
    sandbox: bool = Field(False, description="Use testnet / demo trading")


# ============================================
# Base Model for Symbol-Bearing Values
# ============================================

class SymbolModel(BaseModel):
    """
    Base for every value object carrying a symbol.

    The validator accepts exchange spellings ("BTCUSDT", "BTC-USDT-SWAP") and
    stores the unified "BASE/QUOTE" form.
    """

    symbol: str = Field(..., examples=["BTC/USDT", "ETH/USDT"])

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, v: str) -> str:
        return to_unified_symbol(v)


# ============================================
# Account Schemas
# ============================================

class AccountInfo(BaseModel):
    """
    Futures account summary.

    margin_ratio is maintenance margin / wallet balance (0 when the wallet is empty).
    """

    exchange: str
    account_id: str
    name: str
    balance: float = 0.0
    available_balance: float = 0.0
    unrealized_pnl: float = 0.0
    margin_ratio: float = 0.0
    total_wallet_balance: float = 0.0
    total_unrealized_pnl: float = 0.0
    total_margin_balance: float = 0.0
    total_maint_margin: float = 0.0
    total_initial_margin: float = 0.0
    max_withdraw_amount: float = 0.0
    timestamp: int = Field(..., description="Snapshot time in milliseconds")


class Balance(BaseModel):
    """Per-currency balance (free + used = total, as reported)."""

    currency: str
    free: float = 0.0
    used: float = 0.0
    total: float = 0.0

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class Position(SymbolModel):
    """
    Open futures position.

    Attributes:
        side: "long" / "short" (one-way mode) or "both"
        size: Absolute position size in base units or contracts
        notional: Absolute position value in quote currency
        percentage: Unrealized PnL as percentage of initial margin
    """

    side: PositionSide
    size: float = Field(..., ge=0)
    notional: float = 0.0
    entry_price: float = 0.0
    mark_price: float = 0.0
    unrealized_pnl: float = 0.0
    percentage: float = 0.0
    leverage: float = 1.0
    margin_type: MarginType = "cross"
    liquidation_price: float = 0.0
    timestamp: int


# ============================================
# Market Data Schemas
# ============================================

class Ticker(SymbolModel):
    """24h rolling ticker with top of book."""

    high: float = 0.0
    low: float = 0.0
    bid: float = 0.0
    bid_volume: float = 0.0
    ask: float = 0.0
    ask_volume: float = 0.0
    open: float = 0.0
    close: float = 0.0
    last: float = 0.0
    change: float = 0.0
    percentage: float = 0.0
    base_volume: float = 0.0
    quote_volume: float = 0.0
    timestamp: int
    datetime: str = ""

    @model_validator(mode="after")
    def fill_datetime(self) -> "Ticker":
        if not self.datetime:
            self.datetime = ms_to_iso(self.timestamp)
        return self


class OrderBook(SymbolModel):
    """
    Order book snapshot.

    bids are sorted best (highest) first, asks best (lowest) first;
    each level is (price, amount).
    """

    bids: List[Tuple[float, float]] = Field(default_factory=list)
    asks: List[Tuple[float, float]] = Field(default_factory=list)
    timestamp: int
    datetime: str = ""
    nonce: Optional[int] = None

    @model_validator(mode="after")
    def fill_datetime(self) -> "OrderBook":
        if not self.datetime:
            self.datetime = ms_to_iso(self.timestamp)
        return self


class Trade(SymbolModel):
    """Public trade print. side is the taker side."""

    id: str
    side: OrderSide
    amount: float
    price: float
    cost: float = 0.0
    timestamp: int
    datetime: str = ""

    @model_validator(mode="after")
    def fill_derived(self) -> "Trade":
        if not self.cost:
            self.cost = self.amount * self.price
        if not self.datetime:
            self.datetime = ms_to_iso(self.timestamp)
        return self


# ============================================
# Order Schemas
# ============================================

class OrderRequest(SymbolModel):
    """
    Unified order placement request.

    Example:
        >>> OrderRequest(symbol="BTC/USDT", side="buy", type="limit", amount=0.01, price=42000)
    """

    side: OrderSide
    type: Literal["market", "limit"]
    amount: float = Field(..., gt=0)
    price: Optional[float] = Field(None, gt=0)
    time_in_force: Optional[TimeInForce] = None
    position_side: Optional[PositionSide] = None
    reduce_only: bool = False
    close_position: bool = False
    client_order_id: Optional[str] = None


class Order(SymbolModel):
    """Order state as reported by the exchange."""

    order_id: str
    client_order_id: Optional[str] = None
    side: OrderSide
    type: str
    amount: float = 0.0
    price: Optional[float] = None
    stop_price: Optional[float] = None
    status: OrderStatus = "new"
    time_in_force: Optional[str] = None
    filled: float = 0.0
    remaining: float = 0.0
    cost: float = 0.0
    average: Optional[float] = None
    fee: float = 0.0
    fee_currency: str = "USDT"
    timestamp: int
    datetime: str = ""
    last_trade_timestamp: Optional[int] = None
    position_side: Optional[PositionSide] = None
    reduce_only: Optional[bool] = None

    @model_validator(mode="after")
    def fill_datetime(self) -> "Order":
        if not self.datetime:
            self.datetime = ms_to_iso(self.timestamp)
        return self


# ============================================
# Streaming Schemas
# ============================================

class SubscriptionType(str, Enum):
    """WebSocket subscription topics understood by every adapter."""

    TICKER = "ticker"
    ORDERBOOK = "orderbook"
    KLINE = "kline"
    TRADE = "trade"
    ACCOUNT = "account"
    ORDER = "order"
    POSITION = "position"

    @property
    def is_private(self) -> bool:
        return self in (SubscriptionType.ACCOUNT, SubscriptionType.ORDER, SubscriptionType.POSITION)


class WebSocketMessage(BaseModel):
    """
    One normalized stream event.

    Attributes:
        type: Subscription type that produced the event
        symbol: Unified symbol (None for account-wide streams)
        data: Normalized payload (a schema model or a plain dict)
        timestamp: Local receive time in milliseconds
        exchange: Originating exchange; set by the manager's fan-out
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    type: SubscriptionType
    symbol: Optional[str] = None
    data: Any = None
    timestamp: int
    exchange: Optional[str] = None


class Kline(SymbolModel):
    """Streaming candlestick update."""

    interval: str = "1m"
    open_time: int
    close_time: int = 0
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    is_closed: bool = False


# ============================================
# Orchestration Snapshots
# ============================================

class ExchangeStatus(BaseModel):
    """Health snapshot of one managed connection."""

    name: str
    connected: bool
    ws_connected: bool
    last_heartbeat: Optional[int] = None
    reconnect_attempts: int = 0
    subscription_count: int = 0
    reconnect_halted: bool = False
    error: Optional[str] = None


class TaskStatus(BaseModel):
    """Point-in-time copy of a scheduled task's state."""

    task_id: str
    is_running: bool
    start_time: Optional[datetime] = None
    last_execution_time: Optional[datetime] = None
    next_execution_time: Optional[datetime] = None
    execution_count: int = 0


class SchedulerConfig(BaseModel):
    """
    Registration parameters for a recurring task.

    Bounds are not validated here; callers guarantee 0 < min < max.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    task_id: str
    min_time_seconds: int
    max_time_seconds: int
    task_function: Callable[[], Any]
