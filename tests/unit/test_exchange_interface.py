"""
Unit Tests for Exchange Interface

These tests verify that:
- ExchangeInterface is properly defined as an abstract class
- connect()/disconnect() manage the REST session and streams
- The subscription registry sends one exchange frame per (type, symbol)
- Stream updates are normalized and dispatched to the right listeners
- Shared helpers (precision, validation, capabilities) behave

Run with:
    pytest tests/unit/test_exchange_interface.py -v
"""

import pytest
import pytest_asyncio

from core.config import Settings
from core.errors import AuthenticationError, InvalidOrder, NetworkError
from core.exchange_interface import ExchangeInterface
from core.schemas import OrderRequest, SubscriptionType
from tests.unit.fakes import DummyExchange, credentials, now_ms


@pytest_asyncio.fixture
async def exchange():
    adapter = DummyExchange(Settings(_env_file=None, amount_precision=3, price_precision=1))
    await adapter.connect(credentials())
    yield adapter
    await adapter.cleanup()


def record(adapter, event):
    received = []
    adapter.on(event, received.append)
    return received


# ============================================
# Interface Contract
# ============================================

class TestInterfaceContract:
    """Tests for the abstract base class"""

    def test_cannot_instantiate_abstract_class(self):
        with pytest.raises(TypeError):
            ExchangeInterface()

    def test_supports_reads_capabilities(self):
        adapter = DummyExchange()
        assert adapter.supports("ticker") is True
        assert adapter.supports("kline") is False
        assert adapter.supports("unknown_feature") is False

    def test_repr(self):
        assert repr(DummyExchange()) == "<DummyExchange(name='dummy', connected=False)>"


# ============================================
# Connection Lifecycle
# ============================================

class TestLifecycle:
    """Tests for connect/disconnect"""

    @pytest.mark.asyncio
    async def test_connect_opens_session_and_stream(self):
        adapter = DummyExchange()
        connected = record(adapter, "connected")

        await adapter.connect(credentials())

        assert adapter.is_connected()
        assert adapter.api.opened
        assert adapter.public_ws.is_running
        assert adapter.last_heartbeat is not None
        assert connected == [{"exchange": "dummy"}]
        await adapter.cleanup()

    @pytest.mark.asyncio
    async def test_rejected_credentials_leave_adapter_disconnected(self):
        adapter = DummyExchange()
        adapter.connect_errors = [AuthenticationError("bad key", exchange="dummy")]

        with pytest.raises(AuthenticationError):
            await adapter.connect(credentials())

        assert not adapter.is_connected()
        assert adapter.api is None
        assert adapter.public_ws is None

    @pytest.mark.asyncio
    async def test_reconnect_tears_down_previous_session(self, exchange):
        old_api, old_stream = exchange.api, exchange.public_ws

        await exchange.connect(credentials())

        assert old_api.closed
        assert old_stream.stopped
        assert exchange.api is not old_api

    @pytest.mark.asyncio
    async def test_disconnect_emits_and_clears_subscriptions(self, exchange):
        disconnected = record(exchange, "disconnected")
        await exchange.subscribe_websocket("ticker", "BTC/USDT", lambda m: None)
        stream = exchange.public_ws

        await exchange.disconnect()
        await exchange.disconnect()

        assert not exchange.is_connected()
        assert stream.stopped
        assert exchange.subscription_count == 0
        assert len(disconnected) == 1

    @pytest.mark.asyncio
    async def test_operations_require_connection(self):
        adapter = DummyExchange()
        with pytest.raises(NetworkError):
            await adapter.get_ticker("BTC/USDT")
        with pytest.raises(NetworkError):
            await adapter.subscribe_websocket("ticker", "BTC/USDT", lambda m: None)

    @pytest.mark.asyncio
    async def test_health_check(self, exchange):
        assert await exchange.health_check() is True

        exchange.ping_error = NetworkError("timeout", exchange="dummy")
        assert await exchange.health_check() is False

        await exchange.disconnect()
        assert await exchange.health_check() is False

    @pytest.mark.asyncio
    async def test_heartbeat_event_updates_last_heartbeat(self, exchange):
        exchange.events.emit("heartbeat", {"timestamp": 42})
        assert exchange.last_heartbeat == 42


# ============================================
# Subscriptions
# ============================================

class TestSubscriptions:
    """Tests for the subscription registry"""

    @pytest.mark.asyncio
    async def test_second_subscriber_does_not_resubscribe(self, exchange):
        await exchange.subscribe_websocket("ticker", "BTC/USDT", lambda m: None)
        await exchange.subscribe_websocket(SubscriptionType.TICKER, "BTCUSDT", lambda m: None)

        assert exchange.public_ws.subscribe_calls == [["ticker:BTC/USDT"]]
        assert exchange.subscription_count == 1
        assert exchange.has_subscription("ticker", "btc/usdt")

    @pytest.mark.asyncio
    async def test_unsupported_stream_raises(self, exchange):
        with pytest.raises(NotImplementedError):
            await exchange.subscribe_websocket("kline", "BTC/USDT", lambda m: None)
        assert exchange.subscription_count == 0

    @pytest.mark.asyncio
    async def test_unsubscribe_removes_all_listeners(self, exchange):
        received = []
        await exchange.subscribe_websocket("ticker", "BTC/USDT", received.append)

        assert await exchange.unsubscribe_websocket("ticker", "BTC/USDT") is True
        assert await exchange.unsubscribe_websocket("ticker", "BTC/USDT") is False

        assert exchange.public_ws.unsubscribe_calls == [["ticker:BTC/USDT"]]
        assert exchange.emit_websocket_data(SubscriptionType.TICKER, "BTCUSDT", {}) == 0
        assert received == []

    @pytest.mark.asyncio
    async def test_private_stream_is_created_lazily(self, exchange):
        assert exchange.private_ws is None

        await exchange.subscribe_websocket("order", None, lambda m: None)

        assert exchange.private_ws is not None
        assert exchange.private_ws.private is True
        assert exchange.private_ws.subscribe_calls == [["order:*"]]
        assert exchange.public_ws.subscribe_calls == []


# ============================================
# Dispatch
# ============================================

class TestDispatch:
    """Tests for emit_websocket_data()"""

    @pytest.mark.asyncio
    async def test_message_is_normalized(self, exchange):
        received = []
        await exchange.subscribe_websocket("ticker", "BTC/USDT", received.append)

        delivered = exchange.emit_websocket_data(SubscriptionType.TICKER, "BTCUSDT", {"last": 1})

        assert delivered == 1
        message = received[0]
        assert message.type == SubscriptionType.TICKER
        assert message.symbol == "BTC/USDT"
        assert message.exchange == "dummy"
        assert message.data == {"last": 1}
        assert abs(message.timestamp - now_ms()) < 5000

    @pytest.mark.asyncio
    async def test_every_listener_of_a_key_is_called(self, exchange):
        first, second = [], []
        await exchange.subscribe_websocket("trade", "ETH/USDT", first.append)
        await exchange.subscribe_websocket("trade", "ETH/USDT", second.append)

        exchange.emit_websocket_data(SubscriptionType.TRADE, "ETH/USDT", [])

        assert len(first) == len(second) == 1

    @pytest.mark.asyncio
    async def test_other_symbols_are_not_delivered(self, exchange):
        received = []
        await exchange.subscribe_websocket("ticker", "BTC/USDT", received.append)

        exchange.emit_websocket_data(SubscriptionType.TICKER, "ETHUSDT", {})

        assert received == []

    @pytest.mark.asyncio
    async def test_account_wide_listener_gets_every_symbol(self, exchange):
        everything, eth_only = [], []
        await exchange.subscribe_websocket("position", None, everything.append)
        await exchange.subscribe_websocket("position", "ETH/USDT", eth_only.append)

        exchange.emit_websocket_data(SubscriptionType.POSITION, "ETHUSDT", {})
        exchange.emit_websocket_data(SubscriptionType.POSITION, "BTCUSDT", {})

        assert [m.symbol for m in everything] == ["ETH/USDT", "BTC/USDT"]
        assert [m.symbol for m in eth_only] == ["ETH/USDT"]

    @pytest.mark.asyncio
    async def test_failing_listener_is_skipped(self, exchange):
        received = []

        def broken(message):
            raise ValueError("listener bug")

        await exchange.subscribe_websocket("ticker", "BTC/USDT", broken)
        await exchange.subscribe_websocket("ticker", "BTC/USDT", received.append)

        assert exchange.emit_websocket_data(SubscriptionType.TICKER, "BTC/USDT", {}) == 2
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_message_event_is_emitted(self, exchange):
        messages = record(exchange, "message")
        exchange.emit_websocket_data(SubscriptionType.TICKER, "BTC/USDT", {})
        assert len(messages) == 1


# ============================================
# Helpers
# ============================================

class TestHelpers:
    """Tests for shared normalization helpers"""

    @pytest.mark.asyncio
    async def test_precision_follows_settings(self, exchange):
        assert exchange._format_amount(0.12345) == "0.123"
        assert exchange._format_price(101.25) == "101.3"

    @pytest.mark.asyncio
    async def test_limit_order_without_price_is_rejected(self, exchange):
        request = OrderRequest(symbol="BTC/USDT", side="buy", type="limit", amount=1)
        with pytest.raises(InvalidOrder):
            await exchange.create_order(request)

    def test_client_order_id_prefers_request_value(self):
        adapter = DummyExchange()
        request = OrderRequest(symbol="BTC/USDT", side="buy", type="market", amount=1, client_order_id="mine")
        assert adapter._client_order_id(request) == "mine"
        generated = adapter._client_order_id(request.model_copy(update={"client_order_id": None}))
        assert generated.startswith("perp_")
