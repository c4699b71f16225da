"""
DCA Engine - Binance Spot Gateway.

============================================================
PURPOSE
============================================================
Production gateway for the Binance spot REST API.

SAFETY FEATURES:
- Request signing (HMAC-SHA256)
- Price/quantity rounding to exchange filters
- Error mapping to the internal taxonomy
- Credential masking in debug logs

============================================================
"""

import asyncio
import hashlib
import hmac
import logging
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any, List
from urllib.parse import urlencode

import aiohttp

from ..types import OrderSide, OrderStatus, ExchangeError
from ..errors import map_binance_error, is_retryable
from ..config import ExchangeConfig
from .base import ExchangeGateway, ExchangeOrder, SymbolRules


logger = logging.getLogger(__name__)


def _from_millis(value: Optional[int]) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def _plain(value: Decimal) -> str:
    """Decimal as a plain (non-scientific) string."""
    return format(value, "f")


def _mask(value: str) -> str:
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}****{value[-4:]}"


# ============================================================
# BINANCE SPOT GATEWAY
# ============================================================

class BinanceSpotGateway(ExchangeGateway):
    """
    Binance spot exchange gateway.

    Implements the ExchangeGateway interface for /api/v3.
    """

    def __init__(self, config: ExchangeConfig):
        """
        Initialize Binance gateway.

        Args:
            config: Exchange configuration (credentials included)
        """
        self._config = config
        self._rest_url = config.base_url

        self._session: Optional[aiohttp.ClientSession] = None
        self._connected = False

        # Symbol rules cache
        self._symbol_rules: Dict[str, SymbolRules] = {}

        # Last seen request weight (X-MBX-USED-WEIGHT-1M)
        self._weight_used = 0

    @property
    def exchange_id(self) -> str:
        return "binance"

    @property
    def is_testnet(self) -> bool:
        return self._config.testnet

    @property
    def is_connected(self) -> bool:
        return self._connected and self._session is not None

    @property
    def weight_used(self) -> int:
        return self._weight_used

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    async def connect(self) -> None:
        """Open the HTTP session and ping the API."""
        if self._session is not None:
            await self.disconnect()

        timeout = aiohttp.ClientTimeout(
            connect=self._config.connection_timeout_seconds,
            total=self._config.read_timeout_seconds,
        )
        self._session = aiohttp.ClientSession(timeout=timeout)

        try:
            await self._request("GET", "/api/v3/ping")
            self._connected = True
            logger.info(f"Connected to Binance spot ({'testnet' if self.is_testnet else 'mainnet'})")
        except ExchangeError:
            await self.disconnect()
            raise

    async def disconnect(self) -> None:
        self._connected = False
        if self._session:
            await self._session.close()
            self._session = None
            logger.info("Disconnected from Binance spot")

    # --------------------------------------------------------
    # MARKET / ACCOUNT
    # --------------------------------------------------------

    async def get_current_price(self, symbol: str) -> Decimal:
        data = await self._request("GET", "/api/v3/ticker/price", params={"symbol": symbol})
        if not data or "price" not in data:
            raise ExchangeError(f"no price data returned for {symbol}", code="EXC_UNKNOWN_ERROR")
        return Decimal(data["price"])

    async def get_account_balance(self, asset: str) -> Decimal:
        data = await self._request("GET", "/api/v3/account", signed=True)

        for balance in data.get("balances", []):
            if balance["asset"] == asset:
                free = Decimal(balance["free"])
                logger.debug(f"Balance for {asset}: free={free}, locked={balance.get('locked')}")
                return free

        logger.warning(f"Asset {asset} not found in account balances.")
        return Decimal("0")

    # --------------------------------------------------------
    # SYMBOL RULES
    # --------------------------------------------------------

    async def get_symbol_rules(self, symbol: str) -> SymbolRules:
        """Get (cached) trading rules for symbol."""
        if symbol in self._symbol_rules:
            return self._symbol_rules[symbol]

        data = await self._request("GET", "/api/v3/exchangeInfo", params={"symbol": symbol})
        symbols = data.get("symbols", [])
        if not symbols:
            raise ExchangeError(f"exchange info not found for symbol {symbol}", code="VAL_INVALID_SYMBOL")

        rules = self._parse_symbol_rules(symbols[0])
        self._symbol_rules[symbol] = rules
        return rules

    @staticmethod
    def _parse_symbol_rules(info: Dict[str, Any]) -> SymbolRules:
        tick_size = step_size = None
        min_quantity = Decimal("0")

        for filt in info.get("filters", []):
            filter_type = filt.get("filterType")
            if filter_type == "PRICE_FILTER":
                tick_size = Decimal(filt["tickSize"])
            elif filter_type == "LOT_SIZE":
                step_size = Decimal(filt["stepSize"])
                min_quantity = Decimal(filt.get("minQty", "0"))

        if tick_size is None or step_size is None:
            raise ExchangeError(
                f"could not find PRICE_FILTER or LOT_SIZE filter for symbol {info.get('symbol')}",
                code="VAL_MISSING_FILTERS",
            )

        return SymbolRules(
            symbol=info["symbol"],
            tick_size=tick_size,
            step_size=step_size,
            min_quantity=min_quantity,
            base_asset=info.get("baseAsset", ""),
            quote_asset=info.get("quoteAsset", ""),
        )

    # --------------------------------------------------------
    # ORDER OPERATIONS
    # --------------------------------------------------------

    async def place_limit_order(
        self,
        symbol: str,
        side: OrderSide,
        price: Decimal,
        quantity: Decimal,
    ) -> ExchangeOrder:
        rules = await self.get_symbol_rules(symbol)
        rounded_price = rules.round_price(price)
        rounded_quantity = rules.round_quantity(quantity)

        logger.info(
            f"Placing {side.value} limit order for {rounded_quantity} {symbol} "
            f"at price {rounded_price}"
        )

        params = {
            "symbol": symbol,
            "side": side.value,
            "type": "LIMIT",
            "timeInForce": "GTC",
            "quantity": _plain(rounded_quantity),
            "price": _plain(rounded_price),
            "newOrderRespType": "RESULT",
        }
        data = await self._request("POST", "/api/v3/order", params=params, signed=True)

        order = self._parse_order(data, placed_key="transactTime", updated_key="transactTime")
        logger.info(f"Order placed successfully on Binance: ID {order.exchange_order_id}, Status: {order.status.value}")
        return order

    async def get_order_status(self, symbol: str, exchange_order_id: str) -> ExchangeOrder:
        data = await self._request(
            "GET",
            "/api/v3/order",
            params={"symbol": symbol, "orderId": exchange_order_id},
            signed=True,
        )
        return self._parse_order(data)

    async def cancel_order(self, symbol: str, exchange_order_id: str) -> None:
        logger.info(f"Attempting to cancel order ID {exchange_order_id} for symbol {symbol}...")
        await self._request(
            "DELETE",
            "/api/v3/order",
            params={"symbol": symbol, "orderId": exchange_order_id},
            signed=True,
        )
        logger.info(f"Successfully cancelled order ID {exchange_order_id} for symbol {symbol}.")

    async def list_open_orders(self, symbol: str) -> List[ExchangeOrder]:
        data = await self._request(
            "GET",
            "/api/v3/openOrders",
            params={"symbol": symbol},
            signed=True,
        )
        return [self._parse_order(item) for item in data]

    @classmethod
    def _parse_order(
        cls,
        data: Dict[str, Any],
        placed_key: str = "time",
        updated_key: str = "updateTime",
    ) -> ExchangeOrder:
        """
        Convert a Binance order payload.

        Raises:
            ExchangeError: If the payload is malformed or carries an
                unknown status
        """
        try:
            return cls._build_order(data, placed_key, updated_key)
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            order_id = data.get("orderId") if isinstance(data, dict) else None
            logger.error(f"Unparseable order payload from Binance (order {order_id}): {e!r}")
            raise ExchangeError(
                f"unparseable order payload for order {order_id}: {e!r}",
                code="EXC_UNKNOWN_ERROR",
            ) from e

    @staticmethod
    def _build_order(
        data: Dict[str, Any],
        placed_key: str,
        updated_key: str,
    ) -> ExchangeOrder:
        price = Decimal(data.get("price", "0"))
        quantity = Decimal(data.get("origQty", "0"))
        executed_quantity = Decimal(data.get("executedQty", "0"))
        cumulative_quote = Decimal(data.get("cummulativeQuoteQty", "0"))

        executed_price = None
        if executed_quantity > 0 and cumulative_quote > 0:
            executed_price = cumulative_quote / executed_quantity

        status = OrderStatus.from_exchange(data["status"])

        if cumulative_quote > 0:
            quote_quantity = cumulative_quote
        elif status.is_active():
            quote_quantity = price * quantity
        else:
            quote_quantity = Decimal("0")

        return ExchangeOrder(
            exchange_order_id=str(data["orderId"]),
            symbol=data["symbol"],
            side=OrderSide(data["side"]),
            status=status,
            price=price,
            quantity=quantity,
            executed_quantity=executed_quantity,
            executed_price=executed_price,
            quote_quantity=quote_quantity,
            placed_at=_from_millis(data.get(placed_key)),
            updated_at=_from_millis(data.get(updated_key)),
            raw_response=data,
        )

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    def _sign(self, params: Dict[str, Any]) -> Dict[str, Any]:
        signed = dict(params)
        signed["recvWindow"] = str(self._config.recv_window_ms)
        signed["timestamp"] = str(int(time.time() * 1000))
        query_string = urlencode(signed)
        signed["signature"] = hmac.new(
            self._config.api_secret.encode(),
            query_string.encode(),
            hashlib.sha256,
        ).hexdigest()
        return signed

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        """Make API request."""
        if not self._session:
            raise ExchangeError("Not connected", code="NET_CONNECTION_FAILED", is_retryable=True)

        url = f"{self._rest_url}{path}"
        headers = {"X-MBX-APIKEY": self._config.api_key}

        params = params or {}
        if signed:
            params = self._sign(params)

        logger.debug(
            f"{method} {path} key={_mask(self._config.api_key)} "
            f"params={ {k: v for k, v in params.items() if k != 'signature'} }"
        )

        try:
            async with self._session.request(
                method,
                url,
                params=params if method in ("GET", "DELETE") else None,
                data=params if method not in ("GET", "DELETE") else None,
                headers=headers,
            ) as response:
                self._update_weight(response.headers)

                try:
                    data = await response.json(content_type=None)
                except ValueError as e:
                    raise ExchangeError(
                        f"Undecodable response for {method} {path} (HTTP {response.status})",
                        code="EXC_SERVER_ERROR" if response.status >= 500 else "EXC_UNKNOWN_ERROR",
                        is_retryable=response.status >= 500,
                    ) from e

                if response.status != 200:
                    code = data.get("code", -1) if isinstance(data, dict) else -1
                    msg = data.get("msg", "Unknown error") if isinstance(data, dict) else str(data)
                    internal_code = map_binance_error(code)
                    if response.status >= 500 and internal_code == "EXC_UNKNOWN_ERROR":
                        internal_code = "EXC_SERVER_ERROR"
                    if response.status in (418, 429):
                        internal_code = "RTE_API_WEIGHT"

                    raise ExchangeError(
                        f"Binance error {code}: {msg}",
                        code=internal_code,
                        is_retryable=is_retryable(internal_code),
                    )

                return data

        except aiohttp.ClientError as e:
            raise ExchangeError(
                f"Network error: {e}",
                code="NET_CONNECTION_FAILED",
                is_retryable=True,
            ) from e
        except asyncio.TimeoutError as e:
            raise ExchangeError(
                "Request timeout",
                code="TMO_READ",
                is_retryable=True,
            ) from e

    def _update_weight(self, headers: Any) -> None:
        if "X-MBX-USED-WEIGHT-1M" in headers:
            self._weight_used = int(headers["X-MBX-USED-WEIGHT-1M"])
