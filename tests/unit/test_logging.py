"""
Unit Tests for Logging Configuration

These tests verify that:
- Module loggers are children of the "perpcore" logger
- The level can be changed at runtime
- WebSocket errors are logged at ERROR level

Run with:
    pytest tests/unit/test_logging.py -v
"""

import logging

import pytest

from core.logging import ROOT_LOGGER_NAME, get_logger, log_websocket_event, logger, set_log_level


@pytest.fixture
def restore_level():
    previous = logger.level
    yield
    set_log_level(logging.getLevelName(previous))


def test_child_logger_name():
    log = get_logger("exchanges.okx.ws_client")
    assert log.name == "perpcore.exchanges.okx.ws_client"


def test_set_log_level(restore_level):
    set_log_level("warning")
    assert logger.level == logging.WARNING

    set_log_level("not-a-level")
    assert logger.level == logging.INFO


def test_websocket_error_logged_at_error(caplog):
    with caplog.at_level(logging.DEBUG, logger=ROOT_LOGGER_NAME):
        log_websocket_event("bybit", "error", "BTC/USDT", "connection reset")
        log_websocket_event("bybit", "connected")

    levels = [(r.levelno, r.getMessage()) for r in caplog.records if r.name == ROOT_LOGGER_NAME]
    assert (logging.ERROR, "WebSocket: bybit error | Symbol: BTC/USDT | connection reset") in levels
    assert (logging.INFO, "WebSocket: bybit connected") in levels
