"""
Exchange Connectors Package

This package contains one adapter per exchange (USDT-margined perpetuals).
Each exchange (Binance, Bybit, OKX, Bitget) has its own subfolder with:
- api_client.py: REST API logic and response normalization
- ws_client.py: WebSocket stream clients, topic builders and message parsers
- __init__.py: Main exchange class implementing ExchangeInterface

Adapters are created by name through core.exchange_factory.
"""
