"""
Test Suite

Contains unit tests for the connectivity core.

Structure:
- tests/unit/: Tests for individual components (config, errors, REST/WebSocket
  bases, exchange variants, connection manager, scheduler)

Network access is never required: REST sessions and WebSocket connections are
replaced by in-memory fakes. Uses pytest with pytest-asyncio for testing async
functionality.
"""
