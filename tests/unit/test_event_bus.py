"""
Unit Tests for EventBus

Run with:
    pytest tests/unit/test_event_bus.py -v
"""

import asyncio
import logging

import pytest

from core.event_bus import EventBus


class TestRegistration:
    """Tests for on/off bookkeeping"""

    def test_on_ignores_duplicate_callback(self):
        bus = EventBus("test")
        received = []
        bus.on("tick", received.append)
        bus.on("tick", received.append)

        assert bus.listener_count("tick") == 1
        assert bus.emit("tick", 1) == 1
        assert received == [1]

    def test_off_single_callback(self):
        bus = EventBus("test")
        first, second = [], []
        bus.on("tick", first.append)
        bus.on("tick", second.append)

        bus.off("tick", first.append)
        bus.emit("tick", "x")

        assert first == []
        assert second == ["x"]

    def test_off_last_callback_drops_topic(self):
        bus = EventBus("test")
        received = []
        bus.on("tick", received.append)
        bus.off("tick", received.append)

        assert "tick" not in bus.topics()
        assert bus.emit("tick", 1) == 0

    def test_off_without_callback_clears_topic(self):
        bus = EventBus("test")
        bus.on("tick", lambda _: None)
        bus.on("tick", lambda _: None)
        bus.off("tick")

        assert bus.listener_count("tick") == 0

    def test_off_unknown_topic_is_noop(self):
        EventBus("test").off("nothing")

    def test_clear(self):
        bus = EventBus("test")
        bus.on("a", lambda _: None)
        bus.on("b", lambda _: None)
        bus.clear()
        assert bus.topics() == []


class TestDelivery:
    """Tests for emit()"""

    def test_delivery_in_registration_order(self):
        bus = EventBus("test")
        order = []
        bus.on("tick", lambda p: order.append(("first", p)))
        bus.on("tick", lambda p: order.append(("second", p)))

        bus.emit("tick", 7)

        assert order == [("first", 7), ("second", 7)]

    def test_failing_listener_does_not_block_others(self):
        bus = EventBus("test")
        received = []

        def broken(_):
            raise RuntimeError("listener bug")

        bus.on("tick", broken)
        bus.on("tick", received.append)

        assert bus.emit("tick", "payload") == 2
        assert received == ["payload"]

    def test_listener_removing_itself_during_emit(self):
        bus = EventBus("test")
        calls = []

        def once(payload):
            calls.append(payload)
            bus.off("tick", once)

        bus.on("tick", once)
        bus.emit("tick", 1)
        bus.emit("tick", 2)

        assert calls == [1]

    @pytest.mark.asyncio
    async def test_coroutine_listener_is_scheduled(self):
        bus = EventBus("test")
        received = []

        async def listener(payload):
            received.append(payload)

        bus.on("tick", listener)
        bus.emit("tick", "async")
        await asyncio.sleep(0)

        assert received == ["async"]

    @pytest.mark.asyncio
    async def test_failing_coroutine_listener_is_logged(self, caplog):
        bus = EventBus("test")

        async def listener(payload):
            raise RuntimeError("listener broke")

        bus.on("tick", listener)
        with caplog.at_level(logging.ERROR, logger="perpcore"):
            bus.emit("tick", 1)
            await asyncio.sleep(0)
            await asyncio.sleep(0)

        messages = [r.getMessage() for r in caplog.records if r.name.startswith("perpcore")]
        assert any("listener broke" in m and "'tick'" in m for m in messages)
        assert not bus._pending
