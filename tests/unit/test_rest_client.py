"""
Unit Tests for the RestClient Base

These tests verify that RestClient:
- Signs requests through the subclass hook
- Maps body codes and HTTP statuses onto the error taxonomy
- Retries transport errors for GET only and surfaces rate limits at once
- Refuses to send without an open session

The aiohttp session is replaced with an in-memory fake.

Run with:
    pytest tests/unit/test_rest_client.py -v
"""

import asyncio
import json
from unittest.mock import AsyncMock

import aiohttp
import pytest

from core.errors import (
    AuthenticationError,
    ExchangeError,
    NetworkError,
    OrderNotFound,
    RateLimitExceeded,
)
from core.rest_client import RestClient
from core.schemas import ExchangeCredentials


# ============================================
# Fakes
# ============================================

class FakeResponse:
    def __init__(self, status, text):
        self.status = status
        self._text = text

    async def text(self):
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """Replays queued (status, body) tuples or raises queued exceptions."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []
        self.closed = False

    def request(self, method, url, data=None, headers=None, timeout=None):
        self.calls.append({"method": method, "url": url, "data": data, "headers": headers})
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        status, body = item
        text = body if isinstance(body, str) else json.dumps(body)
        return FakeResponse(status, text)

    async def close(self):
        self.closed = True


class DummyClient(RestClient):
    EXCHANGE = "dummy"
    ERROR_CODES = {"-2013": OrderNotFound}

    def _sign_request(self, method, path, params, body):
        return {**params, "signature": "sig"}, {"X-KEY": self.credentials.api_key}

    def _extract_error(self, payload):
        if isinstance(payload, dict) and payload.get("code", 0) != 0:
            return str(payload["code"]), payload.get("msg", "")
        return None

    def _unwrap(self, payload):
        if isinstance(payload, dict) and "data" in payload:
            return payload["data"]
        return payload


@pytest.fixture
def no_sleep(monkeypatch):
    sleep = AsyncMock()
    monkeypatch.setattr(asyncio, "sleep", sleep)
    return sleep


def make_client(*responses, retries=3):
    client = DummyClient(
        "https://api.dummy.test/",
        ExchangeCredentials(api_key="key", api_secret="secret"),
        retries=retries,
    )
    client.session = FakeSession(*responses)
    return client


# ============================================
# Successful Requests
# ============================================

class TestRequests:
    """Tests for URL building, signing and unwrapping"""

    @pytest.mark.asyncio
    async def test_public_get_builds_url_and_unwraps(self):
        client = make_client((200, {"code": 0, "data": {"price": "1"}}))

        result = await client.request("get", "/ticker", params={"symbol": "BTCUSDT", "skip": None})

        assert result == {"price": "1"}
        call = client.session.calls[0]
        assert call["method"] == "GET"
        assert call["url"] == "https://api.dummy.test/ticker?symbol=BTCUSDT"
        assert call["data"] is None

    @pytest.mark.asyncio
    async def test_signed_post_sends_json_body(self):
        client = make_client((200, {"code": 0, "data": "ok"}))

        await client.request("POST", "/order", body={"qty": "1"}, signed=True)

        call = client.session.calls[0]
        assert call["url"].endswith("/order?signature=sig")
        assert call["data"] == '{"qty":"1"}'
        assert call["headers"]["X-KEY"] == "key"
        assert call["headers"]["Content-Type"] == "application/json"

    @pytest.mark.asyncio
    async def test_missing_session_raises_network_error(self):
        client = DummyClient("https://api.dummy.test")
        with pytest.raises(NetworkError):
            await client.request("GET", "/ping")

    def test_query_string_skips_none(self):
        assert RestClient._query_string({"a": 1, "b": None, "c": "x"}) == "a=1&c=x"


# ============================================
# Error Mapping
# ============================================

class TestErrorMapping:
    """Tests for body code and HTTP status translation"""

    @pytest.mark.asyncio
    async def test_body_code_is_mapped(self, no_sleep):
        client = make_client((400, {"code": -2013, "msg": "Order does not exist."}))

        with pytest.raises(OrderNotFound) as exc_info:
            await client.request("GET", "/order")

        assert exc_info.value.native_code == "-2013"
        assert exc_info.value.exchange == "dummy"
        assert len(client.session.calls) == 1

    @pytest.mark.asyncio
    async def test_unmapped_body_code_uses_http_status(self):
        client = make_client((401, {"code": -2015, "msg": "Invalid API-key"}))

        with pytest.raises(AuthenticationError):
            await client.request("GET", "/account", signed=True)

    @pytest.mark.asyncio
    async def test_unmapped_body_code_with_plain_status(self):
        client = make_client((200, {"code": 99999, "msg": "odd"}))

        with pytest.raises(ExchangeError) as exc_info:
            await client.request("GET", "/account")

        assert type(exc_info.value) is ExchangeError
        assert exc_info.value.native_code == "99999"

    @pytest.mark.asyncio
    async def test_non_json_error_body(self):
        client = make_client((404, "<html>not found</html>"))

        with pytest.raises(ExchangeError) as exc_info:
            await client.request("GET", "/missing")

        assert exc_info.value.native_code == "404"


# ============================================
# Retry Logic
# ============================================

class TestRetries:
    """Tests for the retry policy"""

    @pytest.mark.asyncio
    async def test_rate_limit_on_signed_post_is_raised_at_once(self, no_sleep):
        client = make_client((429, ""), (200, {"code": 0, "data": 1}))

        with pytest.raises(RateLimitExceeded):
            await client.request("POST", "/order", body={"qty": "1"}, signed=True)

        assert len(client.session.calls) == 1
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rate_limit_on_get_is_raised_at_once(self, no_sleep):
        client = make_client((429, ""), (200, {"code": 0, "data": 1}))

        with pytest.raises(RateLimitExceeded):
            await client.request("GET", "/ticker")

        assert len(client.session.calls) == 1
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_get_transport_error_gives_up_after_retries(self, no_sleep):
        client = make_client(asyncio.TimeoutError(), asyncio.TimeoutError(), asyncio.TimeoutError())

        with pytest.raises(NetworkError):
            await client.request("GET", "/ticker")

        assert len(client.session.calls) == 3
        assert [c.args[0] for c in no_sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_zero_retries_still_sends_once(self, no_sleep):
        client = make_client((400, {"code": -2013, "msg": "Order does not exist."}), retries=0)

        assert client.retries == 1
        with pytest.raises(OrderNotFound):
            await client.request("GET", "/order")

        assert len(client.session.calls) == 1

    @pytest.mark.asyncio
    async def test_get_transport_error_is_retried(self, no_sleep):
        client = make_client(asyncio.TimeoutError(), (200, {"code": 0, "data": "ok"}))

        assert await client.request("GET", "/ticker") == "ok"
        assert len(client.session.calls) == 2

    @pytest.mark.asyncio
    async def test_post_transport_error_is_not_retried(self, no_sleep):
        client = make_client(aiohttp.ClientConnectionError("reset"), (200, {"code": 0}))

        with pytest.raises(NetworkError):
            await client.request("POST", "/order", body={"qty": "1"})

        assert len(client.session.calls) == 1
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_server_error_is_retried_for_get(self, no_sleep):
        client = make_client((503, "unavailable"), (200, {"code": 0, "data": []}))

        assert await client.request("GET", "/positions") == []


class TestSessionLifecycle:
    """Tests for open/close"""

    @pytest.mark.asyncio
    async def test_context_manager_opens_and_closes(self):
        async with DummyClient("https://api.dummy.test") as client:
            assert client.session is not None
            assert not client.session.closed
        assert client.session is None
