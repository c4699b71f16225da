"""
Exchange Gateway Factory.

============================================================
PURPOSE
============================================================
Creates the gateway named by ExchangeConfig.exchange_id.

USAGE
============================================================
```python
gateway = create_gateway(config.exchange)
async with gateway:
    price = await gateway.get_current_price("BTCUSDT")
```

============================================================
"""

import logging
from enum import Enum
from typing import Optional

from ..config import ExchangeConfig
from ..types import ConfigurationError
from .base import ExchangeGateway
from .binance import BinanceSpotGateway
from .mock import MockExchangeGateway, MockConfig


logger = logging.getLogger(__name__)


class ExchangeId(Enum):
    """Supported exchange identifiers."""

    BINANCE = "binance"
    MOCK = "mock"


def create_gateway(
    config: ExchangeConfig,
    mock_config: Optional[MockConfig] = None,
) -> ExchangeGateway:
    """
    Create an exchange gateway.

    Args:
        config: Exchange configuration
        mock_config: Settings for the mock gateway

    Returns:
        Unconnected gateway instance

    Raises:
        ConfigurationError: If the exchange is not supported
    """
    try:
        exchange_id = ExchangeId(config.exchange_id.lower())
    except ValueError:
        raise ConfigurationError(f"Unsupported exchange: {config.exchange_id}") from None

    if exchange_id == ExchangeId.MOCK:
        logger.info("Using mock exchange gateway")
        return MockExchangeGateway(mock_config)

    if not config.api_key or not config.api_secret:
        raise ConfigurationError("Binance API key and secret are required")

    logger.info(f"Using Binance spot gateway (testnet={config.testnet})")
    return BinanceSpotGateway(config)
