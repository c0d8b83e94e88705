# Scanner tests
# tests/test_scanner.py
"""
Opportunity Scanner Tests for FlowSniper
Tests round-robin batching, per-symbol failure isolation, scan metrics
and the timer / block triggers
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import pytest

from flowsniper.exceptions import ConfigurationError, QuoteFailure
from flowsniper.scanner import BlockTrigger, OpportunityScanner, TimerTrigger, build_trigger
from flowsniper.types import DetectionParams, PriceResult, QuoteSet, Venue
from flowsniper.utils.logger import get_logger

logger = get_logger(__name__)

D = Decimal

SYMBOLS = ["WMATIC", "WETH", "WBTC", "LINK"]


@pytest.fixture
def detection_params():
    return DetectionParams(gas_estimate=D("0.02"), min_profit_fraction=D("0.001"))


@pytest.fixture
def oracle():
    mock_oracle = Mock()
    mock_oracle.get_price = AsyncMock(return_value=PriceResult.none())
    return mock_oracle


@pytest.fixture
def aggregator():
    """WMATIC has a spread, WETH's batch read fails, everything else is flat"""

    async def get_quotes(token_in, token_out, notional):
        if token_out.symbol == "WMATIC":
            return QuoteSet(notional_in=notional, v2_buy_out=D("5"),
                            v3_sell_unit_price=D("2.05"), v3_sell_fee=3000)
        if token_out.symbol == "WETH":
            raise QuoteFailure("Multicall batch failed: connection refused", symbol="WETH")
        return QuoteSet(notional_in=notional)

    mock_aggregator = Mock()
    mock_aggregator.get_quotes = AsyncMock(side_effect=get_quotes)
    return mock_aggregator


@pytest.fixture
def scanner(registry, oracle, aggregator):
    return OpportunityScanner(registry, oracle, aggregator, TimerTrigger(0.01), SYMBOLS, batch_size=3)


class TestBatching:
    """Round-robin symbol selection"""

    def test_round_robin_wraps(self, scanner):
        assert scanner.next_batch() == ["WMATIC", "WETH", "WBTC"]
        assert scanner.next_batch() == ["LINK", "WMATIC", "WETH"]
        assert scanner.next_batch() == ["WBTC", "LINK", "WMATIC"]
        logger.info("✅ Round-robin batches OK")

    def test_batch_size_capped_by_symbols(self, registry, oracle, aggregator):
        scanner = OpportunityScanner(registry, oracle, aggregator, TimerTrigger(1), ["WMATIC", "WETH"],
                                     batch_size=5)

        assert scanner.batch_size == 2
        assert scanner.next_batch() == ["WMATIC", "WETH"]
        assert scanner.next_batch() == ["WMATIC", "WETH"]

    def test_symbols_required(self, registry, oracle, aggregator):
        with pytest.raises(ConfigurationError):
            OpportunityScanner(registry, oracle, aggregator, TimerTrigger(1), [])


class TestScanBatch:
    """Concurrent detection with failures isolated per symbol"""

    @pytest.mark.asyncio
    async def test_failure_isolated_to_its_symbol(self, scanner, detection_params):
        results = await scanner.scan_batch(["WMATIC", "WETH", "WBTC"], D("10"), detection_params)

        assert [symbol for symbol, _ in results] == ["WMATIC", "WETH", "WBTC"]

        wmatic = results[0][1]
        assert wmatic.opportunity is not None
        assert wmatic.opportunity.estimated_net_profit == D("0.21")
        assert wmatic.opportunity.buy_venue is Venue.AMM_V2

        assert isinstance(results[1][1], QuoteFailure)

        wbtc = results[2][1]
        assert wbtc.opportunity is None
        assert wbtc.reason == "no liquidity on either direction"
        logger.info("✅ WETH failure did not affect the other symbols")

    @pytest.mark.asyncio
    async def test_quotes_and_prices_per_symbol(self, scanner, registry, oracle, aggregator, detection_params):
        await scanner.scan_batch(["WMATIC"], D("10"), detection_params)

        wmatic = registry.get_token("WMATIC")
        aggregator.get_quotes.assert_awaited_once_with(registry.quote_token(), wmatic, D("10"))
        oracle.get_price.assert_awaited_once_with(wmatic)

    @pytest.mark.asyncio
    async def test_metrics(self, scanner, detection_params):
        await scanner.scan_batch(["WMATIC", "WETH", "WBTC"], D("10"), detection_params)
        await scanner.scan_batch(["LINK"], D("10"), detection_params)

        metrics = scanner.get_scanner_metrics()
        assert metrics["trigger"] == "timer"
        assert metrics["total_scans"] == 2
        assert metrics["symbols_scanned"] == 4
        assert metrics["opportunities_found"] == 1
        assert metrics["symbol_failures"] == 1
        assert scanner.metrics.last_scan_time is not None


class TestTriggers:
    """Timer and block triggers behind one interface"""

    def test_build_timer_trigger(self, settings):
        trigger = build_trigger(settings)

        assert isinstance(trigger, TimerTrigger)
        assert trigger.interval == settings.trading.scan_interval

    def test_build_block_trigger(self, settings):
        settings.trading.scan_trigger = "block"
        settings.network.ws_url = "wss://polygon.example/ws"

        trigger = build_trigger(settings)

        assert isinstance(trigger, BlockTrigger)
        assert trigger.ws_url == "wss://polygon.example/ws"

    def test_block_trigger_needs_ws_url(self, settings):
        settings.trading.scan_trigger = "block"
        settings.network.ws_url = None

        with pytest.raises(ConfigurationError):
            build_trigger(settings)

    def test_unknown_trigger(self, settings):
        settings.trading.scan_trigger = "poll"

        with pytest.raises(ConfigurationError):
            build_trigger(settings)

    def test_negative_interval_rejected(self):
        with pytest.raises(ValueError):
            TimerTrigger(-1)

    @pytest.mark.asyncio
    async def test_timer_fires_immediately(self):
        ticks = TimerTrigger(0).ticks()

        assert await ticks.__anext__() == 0
        assert await ticks.__anext__() == 1
        await ticks.aclose()

    @staticmethod
    def _socket(messages):
        async def process_subscriptions():
            for message in messages:
                yield message

        w3 = Mock()
        w3.eth.subscribe = AsyncMock(return_value="0xsub")
        w3.socket.process_subscriptions = process_subscriptions

        connection = MagicMock()
        connection.__aenter__ = AsyncMock(return_value=w3)
        connection.__aexit__ = AsyncMock(return_value=False)
        return w3, connection

    @pytest.mark.asyncio
    async def test_block_trigger_yields_block_numbers(self):
        w3, connection = self._socket([
            {"result": {"number": "0x10"}},
            {"result": {"number": 17}},
        ])

        with patch("flowsniper.scanner.WebSocketProvider") as provider, \
                patch("flowsniper.scanner.AsyncWeb3", return_value=connection):
            ticks = BlockTrigger("wss://polygon.example/ws").ticks()
            assert await ticks.__anext__() == 16
            assert await ticks.__anext__() == 17
            await ticks.aclose()

        provider.assert_called_once_with("wss://polygon.example/ws")
        w3.eth.subscribe.assert_awaited_once_with("newHeads")
        logger.info("✅ Block trigger follows newHeads")

    @pytest.mark.asyncio
    async def test_block_trigger_reconnects(self):
        _, connection = self._socket([{"result": {"number": "0x2a"}}])

        with patch("flowsniper.scanner.WebSocketProvider"), \
                patch("flowsniper.scanner.AsyncWeb3", side_effect=[ConnectionError("refused"), connection]):
            ticks = BlockTrigger("wss://polygon.example/ws", reconnect_delay=0).ticks()
            assert await ticks.__anext__() == 42
            await ticks.aclose()
