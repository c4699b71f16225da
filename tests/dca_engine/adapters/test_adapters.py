"""
Exchange Adapter Tests.

============================================================
PURPOSE
============================================================
Unit tests for exchange gateways.

TEST CATEGORIES:
- Factory tests: Gateway creation
- Error mapping tests: Error code translation
- Binance tests: Payload parsing, signing, rounding
- Mock tests: Order book and balance simulation

============================================================
"""

import hashlib
import hmac
import json
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch
from urllib.parse import urlencode

import pytest

from dca_engine.adapters import (
    BinanceSpotGateway,
    ExchangeId,
    MockConfig,
    MockExchangeGateway,
    SymbolRules,
    create_gateway,
)
from dca_engine.adapters.binance import _mask
from dca_engine.config import ExchangeConfig
from dca_engine.errors import (
    ErrorCategory,
    get_error_info,
    is_retryable,
    map_binance_error,
)
from dca_engine.types import (
    OrderSide,
    OrderStatus,
    ConfigurationError,
    ExchangeError,
)


SYMBOL = "BTCUSDT"

EXCHANGE_INFO = {
    "symbols": [{
        "symbol": SYMBOL,
        "baseAsset": "BTC",
        "quoteAsset": "USDT",
        "filters": [
            {"filterType": "PRICE_FILTER", "minPrice": "0.01", "tickSize": "0.01000000"},
            {"filterType": "LOT_SIZE", "minQty": "0.00001000", "stepSize": "0.00001000"},
        ],
    }],
}


def _binance_config():
    return ExchangeConfig(exchange_id="binance", api_key="test_key_12345678", api_secret="test_secret")


# ============================================================
# FACTORY TESTS
# ============================================================

class TestGatewayFactory:
    """Tests for create_gateway."""

    def test_create_mock_gateway(self):
        gateway = create_gateway(ExchangeConfig(exchange_id="mock"))

        assert isinstance(gateway, MockExchangeGateway)
        assert gateway.exchange_id == ExchangeId.MOCK.value

    def test_mock_config_is_passed_through(self):
        gateway = create_gateway(
            ExchangeConfig(exchange_id="mock"),
            mock_config=MockConfig(first_order_id=5),
        )

        assert gateway.add_external_order(SYMBOL, OrderSide.BUY, Decimal("1"), Decimal("1")) == "5"

    def test_create_binance_gateway(self):
        gateway = create_gateway(_binance_config())

        assert isinstance(gateway, BinanceSpotGateway)
        assert gateway.is_testnet
        assert not gateway.is_connected

    def test_binance_without_keys_raises(self):
        with pytest.raises(ConfigurationError):
            create_gateway(ExchangeConfig(exchange_id="binance"))

    def test_create_unsupported_raises(self):
        with pytest.raises(ConfigurationError, match="Unsupported exchange"):
            create_gateway(ExchangeConfig(exchange_id="unsupported_exchange"))


# ============================================================
# ERROR MAPPING TESTS
# ============================================================

class TestErrorMapping:
    """Tests for error code translation."""

    def test_binance_codes(self):
        assert map_binance_error(-1003) == "RTE_API_WEIGHT"
        assert map_binance_error(-2010) == "SUB_ORDER_REJECTED"
        assert map_binance_error(-2013) == "EXC_ORDER_NOT_FOUND"
        assert map_binance_error(-9999) == "EXC_UNKNOWN_ERROR"

    def test_retryability(self):
        assert is_retryable("NET_CONNECTION_FAILED")
        assert is_retryable("TMO_READ")
        assert not is_retryable("SUB_ORDER_REJECTED")
        assert is_retryable("RTE_API_WEIGHT")

    def test_unknown_code_is_internal(self):
        info = get_error_info("NOT_A_CODE")

        assert info.category == ErrorCategory.INTERNAL
        assert not info.is_retryable


# ============================================================
# SYMBOL RULES TESTS
# ============================================================

class TestSymbolRules:
    """Tests for price/quantity rounding."""

    def test_price_rounds_to_tick(self):
        rules = SymbolRules(SYMBOL, tick_size=Decimal("0.01000000"), step_size=Decimal("0.00001"))

        assert rules.round_price(Decimal("99.015")) == Decimal("99.02")
        assert rules.round_price(Decimal("100.98")) == Decimal("100.98")

    def test_quantity_rounds_down_to_step(self):
        rules = SymbolRules(SYMBOL, tick_size=Decimal("0.01"), step_size=Decimal("0.00001000"))

        assert rules.round_quantity(Decimal("0.10101010")) == Decimal("0.10101")

    def test_quantity_raised_to_minimum(self):
        rules = SymbolRules(
            SYMBOL,
            tick_size=Decimal("0.01"),
            step_size=Decimal("0.001"),
            min_quantity=Decimal("0.001"),
        )

        assert rules.round_quantity(Decimal("0.0004")) == Decimal("0.001")


# ============================================================
# BINANCE TESTS
# ============================================================

class TestBinanceGateway:
    """Tests for the Binance spot gateway without network access."""

    def test_parse_filled_order(self):
        order = BinanceSpotGateway._parse_order({
            "symbol": SYMBOL,
            "orderId": 28,
            "side": "BUY",
            "status": "FILLED",
            "price": "99.00000000",
            "origQty": "0.10101000",
            "executedQty": "0.10101000",
            "cummulativeQuoteQty": "9.99999000",
            "time": 1700000000000,
            "updateTime": 1700000060000,
        })

        assert order.exchange_order_id == "28"
        assert order.side == OrderSide.BUY
        assert order.status == OrderStatus.FILLED
        assert order.executed_price == Decimal("99")
        assert order.fill_quantity == Decimal("0.10101")
        assert order.quote_quantity == Decimal("9.99999")
        assert order.placed_at.tzinfo is not None

    def test_parse_resting_order(self):
        order = BinanceSpotGateway._parse_order({
            "symbol": SYMBOL,
            "orderId": 29,
            "side": "SELL",
            "status": "NEW",
            "price": "100.98000000",
            "origQty": "0.10000000",
            "executedQty": "0.00000000",
            "cummulativeQuoteQty": "0.00000000",
        })

        assert order.executed_price is None
        assert order.fill_price == Decimal("100.98")
        assert order.quote_quantity == Decimal("10.098")

    @pytest.mark.parametrize("raw,expected", [
        ("EXPIRED_IN_MATCH", OrderStatus.EXPIRED),
        ("PENDING_NEW", OrderStatus.NEW),
    ])
    def test_parse_exchange_specific_status(self, raw, expected):
        order = BinanceSpotGateway._parse_order({
            "symbol": SYMBOL,
            "orderId": 30,
            "side": "BUY",
            "status": raw,
            "price": "99.00000000",
            "origQty": "0.10101000",
            "executedQty": "0.00000000",
            "cummulativeQuoteQty": "0.00000000",
        })

        assert order.status == expected

    @pytest.mark.parametrize("payload", [
        {"symbol": SYMBOL, "orderId": 31, "side": "BUY", "status": "SETTLED"},
        {"symbol": SYMBOL, "orderId": 32, "side": "BUY", "status": "NEW", "price": "n/a"},
        {"symbol": SYMBOL, "orderId": 33, "side": "BUY"},
    ])
    def test_unparseable_order_raises_exchange_error(self, payload):
        with pytest.raises(ExchangeError) as exc_info:
            BinanceSpotGateway._parse_order(payload)

        assert exc_info.value.code == "EXC_UNKNOWN_ERROR"
        assert not exc_info.value.is_retryable

    @pytest.mark.parametrize("http_status,code,retryable", [
        (200, "EXC_UNKNOWN_ERROR", False),
        (502, "EXC_SERVER_ERROR", True),
    ])
    @pytest.mark.asyncio
    async def test_non_json_body_raises_exchange_error(self, http_status, code, retryable):
        gateway = BinanceSpotGateway(_binance_config())
        response = MagicMock()
        response.status = http_status
        response.headers = {}
        response.json = AsyncMock(side_effect=json.JSONDecodeError("Expecting value", "<html>", 0))
        context = MagicMock()
        context.__aenter__ = AsyncMock(return_value=response)
        context.__aexit__ = AsyncMock(return_value=False)
        gateway._session = MagicMock()
        gateway._session.request.return_value = context

        with pytest.raises(ExchangeError) as exc_info:
            await gateway.get_current_price(SYMBOL)

        assert exc_info.value.code == code
        assert exc_info.value.is_retryable is retryable

    def test_parse_symbol_rules(self):
        rules = BinanceSpotGateway._parse_symbol_rules(EXCHANGE_INFO["symbols"][0])

        assert rules.tick_size == Decimal("0.01")
        assert rules.step_size == Decimal("0.00001")
        assert rules.min_quantity == Decimal("0.00001")
        assert rules.base_asset == "BTC"

    def test_missing_filters_raise(self):
        with pytest.raises(ExchangeError) as exc_info:
            BinanceSpotGateway._parse_symbol_rules({"symbol": SYMBOL, "filters": []})

        assert exc_info.value.code == "VAL_MISSING_FILTERS"

    def test_signature(self):
        gateway = BinanceSpotGateway(_binance_config())

        signed = gateway._sign({"symbol": SYMBOL})

        unsigned = {k: v for k, v in signed.items() if k != "signature"}
        expected = hmac.new(b"test_secret", urlencode(unsigned).encode(), hashlib.sha256).hexdigest()
        assert signed["signature"] == expected
        assert signed["recvWindow"] == "5000"

    def test_api_key_is_masked(self):
        assert _mask("test_key_12345678") == "test****5678"
        assert _mask("short") == "****"

    @pytest.mark.asyncio
    async def test_request_without_session_raises(self):
        gateway = BinanceSpotGateway(_binance_config())

        with pytest.raises(ExchangeError) as exc_info:
            await gateway.get_current_price(SYMBOL)

        assert exc_info.value.code == "NET_CONNECTION_FAILED"
        assert exc_info.value.is_retryable

    @pytest.mark.asyncio
    async def test_free_balance(self):
        gateway = BinanceSpotGateway(_binance_config())
        account = {"balances": [
            {"asset": "BTC", "free": "0.5", "locked": "0.1"},
            {"asset": "USDT", "free": "90.0", "locked": "10.0"},
        ]}

        with patch.object(gateway, "_request", AsyncMock(return_value=account)):
            assert await gateway.get_account_balance("USDT") == Decimal("90.0")
            assert await gateway.get_account_balance("ETH") == Decimal("0")

    @pytest.mark.asyncio
    async def test_place_limit_order_rounds_and_caches_rules(self):
        gateway = BinanceSpotGateway(_binance_config())
        response = {
            "symbol": SYMBOL,
            "orderId": 12345,
            "side": "BUY",
            "status": "NEW",
            "price": "99.01000000",
            "origQty": "0.10101000",
            "executedQty": "0.00000000",
            "cummulativeQuoteQty": "0.00000000",
            "transactTime": 1700000000000,
        }
        request = AsyncMock(side_effect=[EXCHANGE_INFO, response, response])

        with patch.object(gateway, "_request", request):
            order = await gateway.place_limit_order(
                SYMBOL, OrderSide.BUY, Decimal("99.0123"), Decimal("0.10101010"),
            )
            await gateway.place_limit_order(
                SYMBOL, OrderSide.BUY, Decimal("99.0123"), Decimal("0.10101010"),
            )

        assert order.exchange_order_id == "12345"
        assert order.status == OrderStatus.NEW
        assert request.await_count == 3

        params = request.await_args_list[1].kwargs["params"]
        assert params["type"] == "LIMIT"
        assert params["timeInForce"] == "GTC"
        assert params["price"] == "99.01"
        assert params["quantity"] == "0.10101"


# ============================================================
# MOCK TESTS
# ============================================================

class TestMockExchangeGateway:
    """Tests for the in-memory exchange."""

    @pytest.fixture
    def mock_gateway(self):
        gateway = MockExchangeGateway(MockConfig(initial_balances={"USDT": Decimal("100")}))
        gateway.set_price(SYMBOL, Decimal("100"))
        return gateway

    @pytest.mark.asyncio
    async def test_connect(self, mock_gateway):
        async with mock_gateway:
            assert mock_gateway.is_connected

        assert not mock_gateway.is_connected

    @pytest.mark.asyncio
    async def test_buy_reserves_quote(self, mock_gateway):
        placed = await mock_gateway.place_limit_order(SYMBOL, OrderSide.BUY, Decimal("99"), Decimal("0.1"))

        assert placed.exchange_order_id == "1001"
        assert placed.status == OrderStatus.NEW
        assert await mock_gateway.get_account_balance("USDT") == Decimal("90.1")

    @pytest.mark.asyncio
    async def test_insufficient_balance_rejected(self, mock_gateway):
        with pytest.raises(ExchangeError) as exc_info:
            await mock_gateway.place_limit_order(SYMBOL, OrderSide.BUY, Decimal("99"), Decimal("2"))

        assert exc_info.value.code == "SUB_ORDER_REJECTED"
        assert mock_gateway.orders() == []

    @pytest.mark.asyncio
    async def test_fill_with_price_improvement(self, mock_gateway):
        placed = await mock_gateway.place_limit_order(SYMBOL, OrderSide.BUY, Decimal("99"), Decimal("0.1"))

        mock_gateway.fill_order(placed.exchange_order_id, price=Decimal("98"))

        status = await mock_gateway.get_order_status(SYMBOL, placed.exchange_order_id)
        assert status.status == OrderStatus.FILLED
        assert status.executed_price == Decimal("98")
        assert await mock_gateway.get_account_balance("USDT") == Decimal("90.2")
        assert await mock_gateway.get_account_balance("BTC") == Decimal("0.1")

    @pytest.mark.asyncio
    async def test_partial_fill_bounds(self, mock_gateway):
        placed = await mock_gateway.place_limit_order(SYMBOL, OrderSide.BUY, Decimal("99"), Decimal("0.1"))

        with pytest.raises(ValueError):
            mock_gateway.partially_fill_order(placed.exchange_order_id, Decimal("0.1"))

        partial = mock_gateway.partially_fill_order(placed.exchange_order_id, Decimal("0.04"))
        assert partial.status == OrderStatus.PARTIALLY_FILLED
        assert partial.fill_quantity == Decimal("0.04")

    @pytest.mark.asyncio
    async def test_cancel_refunds_and_rejects_twice(self, mock_gateway):
        placed = await mock_gateway.place_limit_order(SYMBOL, OrderSide.BUY, Decimal("99"), Decimal("0.1"))

        await mock_gateway.cancel_order(SYMBOL, placed.exchange_order_id)

        assert await mock_gateway.get_account_balance("USDT") == Decimal("100")
        assert await mock_gateway.list_open_orders(SYMBOL) == []
        with pytest.raises(ExchangeError) as exc_info:
            await mock_gateway.cancel_order(SYMBOL, placed.exchange_order_id)
        assert exc_info.value.code == "EXC_CANCEL_REJECTED"

    @pytest.mark.asyncio
    async def test_unknown_order(self, mock_gateway):
        with pytest.raises(ExchangeError) as exc_info:
            await mock_gateway.get_order_status(SYMBOL, "404")

        assert exc_info.value.code == "EXC_ORDER_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_injected_errors(self, mock_gateway):
        mock_gateway.inject_error("get_current_price", code="TMO_READ", times=2)

        for _ in range(2):
            with pytest.raises(ExchangeError) as exc_info:
                await mock_gateway.get_current_price(SYMBOL)
            assert exc_info.value.is_retryable

        assert await mock_gateway.get_current_price(SYMBOL) == Decimal("100")
        assert mock_gateway.count_calls("get_current_price") == 3

    @pytest.mark.asyncio
    async def test_persistent_error_until_cleared(self, mock_gateway):
        mock_gateway.inject_error("list_open_orders", times=None)

        for _ in range(3):
            with pytest.raises(ExchangeError):
                await mock_gateway.list_open_orders(SYMBOL)

        mock_gateway.clear_errors()
        assert await mock_gateway.list_open_orders(SYMBOL) == []

    @pytest.mark.asyncio
    async def test_price_crossing_fills_when_enabled(self):
        gateway = MockExchangeGateway(MockConfig(
            initial_balances={"USDT": Decimal("100")},
            fill_at_or_better=True,
        ))
        placed = await gateway.place_limit_order(SYMBOL, OrderSide.BUY, Decimal("99"), Decimal("0.1"))

        gateway.set_price(SYMBOL, Decimal("99.5"))
        assert gateway.get_order(placed.exchange_order_id).status == OrderStatus.NEW

        gateway.set_price(SYMBOL, Decimal("98.9"))
        assert gateway.get_order(placed.exchange_order_id).status == OrderStatus.FILLED
