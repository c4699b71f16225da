"""
DCA Engine - Adapters Package.

============================================================
PURPOSE
============================================================
Exchange gateway implementations.

AVAILABLE GATEWAYS:
- BinanceSpotGateway: Binance spot REST API
- MockExchangeGateway: In-memory exchange for tests and dry runs

============================================================
"""

from .base import ExchangeGateway, ExchangeOrder, SymbolRules
from .binance import BinanceSpotGateway
from .mock import MockExchangeGateway, MockConfig, MockOrder
from .factory import ExchangeId, create_gateway


__all__ = [
    "ExchangeGateway",
    "ExchangeOrder",
    "SymbolRules",
    "BinanceSpotGateway",
    "MockExchangeGateway",
    "MockConfig",
    "MockOrder",
    "ExchangeId",
    "create_gateway",
]
