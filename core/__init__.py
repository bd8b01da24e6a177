"""
Core Package

Contains the exchange-agnostic core logic including:
- ExchangeInterface: Abstract base class every exchange variant implements
- ExchangeManager: Connection registry with health monitoring and reconnect
- exchange_factory: Name -> adapter dispatch table and credential checks
- RestClient / WebSocketClient: Shared transports the variants build on
- Schemas: Pydantic models for normalized values (Ticker, Order, Position, ...)
- errors: The exchange error taxonomy

This layer keeps callers independent of any single exchange's API.
"""
