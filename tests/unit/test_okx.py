"""
Unit Tests for the OKX Variant

These tests verify that:
- Requests are signed with Base64 HMAC over ISO timestamp + method + path + body
- Demo trading adds the x-simulated-trading header
- Item-level sCode errors win over the generic top-level code
- Tickers, positions and orders are normalized (fees as positive cost)
- Topics expand into OKX argument objects
- Orders map IOC/FOK onto OKX order types and stored margin modes

Run with:
    pytest tests/unit/test_okx.py -v
"""

import base64
import hashlib
import hmac
from unittest.mock import AsyncMock

import pytest

from core.config import Settings
from core.errors import InsufficientFunds, InvalidOrder, OrderNotFound
from core.schemas import ExchangeCredentials, OrderRequest, SubscriptionType
from exchanges.okx import OKXExchange
from exchanges.okx.api_client import OKXAPIClient, parse_order, parse_position, parse_ticker
from exchanges.okx.ws_client import OKXPrivateClient, parse_message, topic_arg


CREDS = ExchangeCredentials(api_key="okx-key", api_secret="okx-secret", passphrase="okx-pass")

ORDER_ROW = {
    "ordId": "312269865356374016", "clOrdId": "perp1", "instId": "BTC-USDT-SWAP",
    "side": "sell", "ordType": "ioc", "sz": "3", "px": "42000", "state": "partially_filled",
    "accFillSz": "1", "avgPx": "42000", "fee": "-0.5", "feeCcy": "USDT",
    "cTime": "1700000000000", "uTime": "1700000002000", "posSide": "short", "reduceOnly": "true",
}


def make_adapter(client):
    adapter = OKXExchange(Settings(_env_file=None))
    adapter.credentials = CREDS
    adapter.api = client
    adapter._connected = True
    return adapter


# ============================================
# Signing & Envelope
# ============================================

class TestSigning:
    """Tests for request signing"""

    def test_signature_over_path_and_query(self):
        client = OKXAPIClient("https://www.okx.com", CREDS)
        client._timestamp_ms = lambda: 1700000000000

        _, headers = client._sign_request("GET", "/api/v5/account/positions", {"instType": "SWAP"}, None)

        timestamp = "2023-11-14T22:13:20.000Z"
        digest = hmac.new(
            b"okx-secret", f"{timestamp}GET/api/v5/account/positions?instType=SWAP".encode(), hashlib.sha256
        ).digest()
        assert headers["OK-ACCESS-TIMESTAMP"] == timestamp
        assert headers["OK-ACCESS-SIGN"] == base64.b64encode(digest).decode()
        assert headers["OK-ACCESS-KEY"] == "okx-key"
        assert headers["OK-ACCESS-PASSPHRASE"] == "okx-pass"
        assert "x-simulated-trading" not in headers

    def test_demo_trading_header(self):
        sandbox = CREDS.model_copy(update={"sandbox": True})
        client = OKXAPIClient("https://www.okx.com", sandbox)

        _, headers = client._sign_request("POST", "/api/v5/trade/order", {}, "{}")

        assert client._public_headers() == {"x-simulated-trading": "1"}
        assert headers["x-simulated-trading"] == "1"


class TestEnvelope:
    """Tests for code/sCode handling"""

    def test_success(self):
        client = OKXAPIClient("https://www.okx.com", CREDS)
        payload = {"code": "0", "msg": "", "data": [{"ts": "1"}]}
        assert client._extract_error(payload) is None
        assert client._unwrap(payload) == [{"ts": "1"}]

    def test_item_code_wins(self):
        client = OKXAPIClient("https://www.okx.com", CREDS)
        payload = {"code": "1", "msg": "All operations failed",
                   "data": [{"sCode": "51008", "sMsg": "Insufficient balance"}]}

        assert client._extract_error(payload) == ("51008", "Insufficient balance")
        assert isinstance(client._to_error(200, payload, ""), InsufficientFunds)

    def test_top_level_code_without_items(self):
        client = OKXAPIClient("https://www.okx.com", CREDS)
        payload = {"code": "51000", "msg": "Parameter sz error", "data": []}

        error = client._to_error(200, payload, "")

        assert isinstance(error, InvalidOrder)
        assert error.native_code == "51000"


# ============================================
# REST Operations
# ============================================

class TestRestOperations:
    """Tests for REST calls and normalization"""

    @pytest.mark.asyncio
    async def test_missing_order_raises(self):
        client = OKXAPIClient("https://www.okx.com", CREDS)
        client.request = AsyncMock(return_value=[])

        with pytest.raises(OrderNotFound):
            await client.get_order("BTC-USDT-SWAP", "1")

    @pytest.mark.asyncio
    async def test_flat_positions_are_skipped(self):
        client = OKXAPIClient("https://www.okx.com", CREDS)
        client.request = AsyncMock(return_value=[
            {"instId": "BTC-USDT-SWAP", "pos": "0"},
            {"instId": "ETH-USDT-SWAP", "pos": "-4", "posSide": "net", "notionalUsd": "-8000",
             "upl": "-20", "uplRatio": "-0.05", "lever": "5", "mgnMode": "isolated"},
        ])

        positions = await client.get_positions()

        assert len(positions) == 1
        assert positions[0].symbol == "ETH/USDT"
        assert positions[0].side == "short"
        assert positions[0].size == 4.0
        assert positions[0].notional == 8000.0
        assert positions[0].percentage == pytest.approx(-5.0)
        assert positions[0].margin_type == "isolated"

    def test_parse_ticker(self):
        ticker = parse_ticker({
            "instId": "BTC-USDT-SWAP", "last": "44000", "open24h": "40000",
            "bidPx": "43999", "askPx": "44001", "volCcy24h": "10", "ts": "1700000000000",
        })

        assert ticker.symbol == "BTC/USDT"
        assert ticker.change == 4000.0
        assert ticker.percentage == pytest.approx(10.0)
        assert ticker.quote_volume == 440000.0
        assert ticker.datetime == "2023-11-14T22:13:20.000Z"

    def test_parse_order(self):
        order = parse_order(ORDER_ROW)

        assert order.symbol == "BTC/USDT"
        assert order.type == "limit"
        assert order.time_in_force == "IOC"
        assert order.status == "partially_filled"
        assert order.remaining == 2.0
        assert order.cost == 42000.0
        assert order.fee == 0.5
        assert order.position_side == "short"
        assert order.reduce_only is True

    def test_parse_market_order_has_no_time_in_force(self):
        order = parse_order({**ORDER_ROW, "ordType": "market", "state": "filled", "px": ""})

        assert order.type == "market"
        assert order.time_in_force is None
        assert order.price is None
        assert order.status == "filled"

    def test_parse_net_position_direction(self):
        position = parse_position({"instId": "BTC-USDT-SWAP", "pos": "2", "posSide": "net", "mgnMode": "cross"})
        assert position.side == "long"
        assert position.margin_type == "cross"


# ============================================
# Streams
# ============================================

class TestStreams:
    """Tests for topic expansion, login and push parsing"""

    def test_topic_args(self):
        assert topic_arg("tickers:BTC-USDT-SWAP") == {"channel": "tickers", "instId": "BTC-USDT-SWAP"}
        assert topic_arg("orders") == {"channel": "orders", "instType": "SWAP"}
        assert topic_arg("account") == {"channel": "account"}

    def test_login(self):
        client = OKXPrivateClient("wss://x", events=OKXExchange().events, on_message=print, credentials=CREDS)
        frame = client.login_message()

        arg = frame["args"][0]
        digest = hmac.new(b"okx-secret", f"{arg['timestamp']}GET/users/self/verify".encode(), hashlib.sha256).digest()
        assert frame["op"] == "login"
        assert arg["passphrase"] == "okx-pass"
        assert arg["sign"] == base64.b64encode(digest).decode()
        assert client.is_login_ack({"event": "login", "code": "0"}) is True
        assert client.is_login_ack({"event": "error", "code": "60009"}) is False
        assert client.is_login_ack("pong") is None

    def test_books_push(self):
        [(sub_type, symbol, book)] = parse_message({
            "arg": {"channel": "books5", "instId": "BTC-USDT-SWAP"},
            "data": [{"bids": [["100", "2", "0", "1"]], "asks": [["101", "3", "0", "2"]], "ts": "5", "seqId": 7}],
        })

        assert sub_type == SubscriptionType.ORDERBOOK
        assert symbol == "BTC-USDT-SWAP"
        assert book.bids == [(100.0, 2.0)]
        assert book.nonce == 7

    def test_account_push(self):
        [(sub_type, symbol, balances)] = parse_message({
            "arg": {"channel": "account"},
            "data": [{"details": [{"ccy": "USDT", "availBal": "90", "frozenBal": "10", "eq": "100"}]}],
        })

        assert sub_type == SubscriptionType.ACCOUNT
        assert symbol is None
        assert balances[0].total == 100.0

    def test_event_frames_yield_nothing(self):
        assert parse_message({"event": "subscribe", "arg": {"channel": "tickers"}}) == []


# ============================================
# Adapter
# ============================================

class TestAdapter:
    """Tests for OKXExchange"""

    def test_no_kline_support(self):
        exchange = OKXExchange()
        assert exchange.supports("kline") is False
        assert exchange._topic_for(SubscriptionType.TICKER, "ETH/USDT") == "tickers:ETH-USDT-SWAP"
        assert exchange._topic_for(SubscriptionType.ORDER, "ETH/USDT") == "orders"

    @pytest.mark.asyncio
    async def test_create_ioc_order(self):
        client = OKXAPIClient("https://www.okx.com", CREDS)
        client.create_order = AsyncMock(return_value="312269865356374016")
        client.get_order = AsyncMock(return_value=parse_order(ORDER_ROW))
        adapter = make_adapter(client)

        await adapter.create_order(OrderRequest(
            symbol="BTC/USDT", side="sell", type="limit", amount=3, price=42000,
            time_in_force="IOC", position_side="short", reduce_only=True, client_order_id="perp_1_abc",
        ))

        body = client.create_order.await_args.args[0]
        assert body == {
            "instId": "BTC-USDT-SWAP",
            "tdMode": "cross",
            "side": "sell",
            "ordType": "ioc",
            "sz": "3",
            "clOrdId": "perp1abc",
            "px": "42000",
            "reduceOnly": True,
            "posSide": "short",
        }
        client.get_order.assert_awaited_once_with("BTC-USDT-SWAP", "312269865356374016")

    @pytest.mark.asyncio
    async def test_margin_mode_is_remembered(self):
        client = OKXAPIClient("https://www.okx.com", CREDS)
        client.set_leverage = AsyncMock()
        adapter = make_adapter(client)

        await adapter.set_margin_type("ETH/USDT", "isolated")
        await adapter.set_leverage("ETH/USDT", 4)

        assert client.set_leverage.await_args_list[0].args == ("ETH-USDT-SWAP", 10, "isolated")
        assert client.set_leverage.await_args_list[1].args == ("ETH-USDT-SWAP", 4, "isolated")

    def test_stream_error_is_reported(self):
        adapter = OKXExchange()
        errors = []
        adapter.on("error", errors.append)

        adapter._handle_ws_message({"event": "error", "code": "60012", "msg": "Invalid request"})

        assert errors == [{"exchange": "okx", "error": "okx stream error 60012: Invalid request"}]
