"""
Exchange Factory: Variant Dispatch Table

Maps exchange names to adapter classes and checks credentials before an
adapter is created. The connection manager uses create_exchange() for every
add_exchange() call, so registering a new variant here is all it takes to
make it manageable.

Supported exchanges:
    binance, bybit, okx, bitget

Example:
    >>> validate_exchange_config("okx", ExchangeCredentials(api_key="k", api_secret="s"))
    ValueError: okx requires an API passphrase
    >>> exchange = create_exchange("bybit")
"""

from typing import Dict, List, Optional, Type

from core.config import Settings
from core.exchange_interface import ExchangeInterface
from core.logging import logger
from core.schemas import ExchangeCredentials
from exchanges.binance import BinanceExchange
from exchanges.bitget import BitgetExchange
from exchanges.bybit import BybitExchange
from exchanges.okx import OKXExchange


EXCHANGE_CLASSES: Dict[str, Type[ExchangeInterface]] = {
    "binance": BinanceExchange,
    "bybit": BybitExchange,
    "okx": OKXExchange,
    "bitget": BitgetExchange,
}


def _normalize(name: str) -> str:
    return (name or "").strip().lower()


def is_supported(name: str) -> bool:
    return _normalize(name) in EXCHANGE_CLASSES


def get_supported_exchanges() -> List[str]:
    return list(EXCHANGE_CLASSES.keys())


def create_exchange(name: str, settings: Optional[Settings] = None) -> ExchangeInterface:
    """
    Instantiate a (disconnected) adapter by exchange name.

    Args:
        name: Exchange name, case-insensitive
        settings: Settings passed to the adapter (defaults to the global instance)

    Raises:
        ValueError: If the exchange is not supported
    """
    key = _normalize(name)
    if key not in EXCHANGE_CLASSES:
        raise ValueError(
            f"Exchange '{name}' is not supported. "
            f"Available exchanges: {', '.join(EXCHANGE_CLASSES)}"
        )
    logger.debug(f"Creating {key} adapter")
    return EXCHANGE_CLASSES[key](settings)


def validate_exchange_config(name: str, credentials: Optional[ExchangeCredentials]) -> None:
    """
    Check that credentials carry every field the exchange needs.

    Raises:
        ValueError: Unsupported exchange, missing api_key/api_secret, or a
            missing passphrase for exchanges that require one
    """
    key = _normalize(name)
    if key not in EXCHANGE_CLASSES:
        raise ValueError(f"Exchange '{name}' is not supported")
    if credentials is None:
        raise ValueError(f"{key} requires credentials")
    if not credentials.api_key or not credentials.api_key.strip():
        raise ValueError(f"{key} requires an API key")
    if not credentials.api_secret or not credentials.api_secret.strip():
        raise ValueError(f"{key} requires an API secret")
    if EXCHANGE_CLASSES[key].requires_passphrase and not credentials.passphrase:
        raise ValueError(f"{key} requires an API passphrase")


def get_exchange_requirements(name: str) -> Dict[str, object]:
    """
    Describe the credential fields an exchange expects.

    Example:
        >>> get_exchange_requirements("bitget")
        {'exchange': 'bitget', 'required': ['api_key', 'api_secret', 'passphrase'], 'optional': ['sandbox']}
    """
    key = _normalize(name)
    if key not in EXCHANGE_CLASSES:
        raise ValueError(f"Exchange '{name}' is not supported")

    required = ["api_key", "api_secret"]
    if EXCHANGE_CLASSES[key].requires_passphrase:
        required.append("passphrase")
    return {"exchange": key, "required": required, "optional": ["sandbox"]}


def get_exchange_features(name: str) -> Dict[str, bool]:
    """Copy of the adapter class's capability map."""
    key = _normalize(name)
    if key not in EXCHANGE_CLASSES:
        raise ValueError(f"Exchange '{name}' is not supported")
    return dict(EXCHANGE_CLASSES[key].capabilities)
