# tests/test_detector.py
"""
Arbitrage detection tests: profit arithmetic, thresholds and safety checks
"""

from decimal import Decimal

import pytest

from flowsniper.arbitrage_detector import detect, estimate_gas_cost_usd, evaluate, explain
from flowsniper.types import DetectionParams, PriceResult, PriceSourceTag, QuoteSet, Venue
from flowsniper.utils.logger import get_logger

logger = get_logger(__name__)

D = Decimal


def make_quotes(notional="10", v2_buy_out="5.0", v3_sell="2.05", v3_buy_out="0", v2_sell="0"):
    return QuoteSet(
        notional_in=D(notional),
        v2_buy_out=D(v2_buy_out),
        v3_buy_out=D(v3_buy_out),
        v3_buy_fee=500,
        v2_sell_unit_price=D(v2_sell),
        v3_sell_unit_price=D(v3_sell),
        v3_sell_fee=3000,
    )


@pytest.fixture
def params():
    return DetectionParams(gas_estimate=D("0.02"), min_profit_fraction=D("0.001"))


class TestProfitArithmetic:
    """Round-trip scoring"""

    def test_reference_scenario_fires(self, params):
        """10 USDT -> 5.0 TOKEN on V2, sold at 2.05 on V3, 0.02 gas per leg"""
        opportunity = detect("WMATIC", make_quotes(), None, params)

        assert opportunity is not None, "Spread clears the target and must fire"
        assert opportunity.buy_venue is Venue.AMM_V2
        assert opportunity.sell_venue is Venue.AMM_V3
        assert opportunity.fee_tier == 3000
        assert opportunity.estimated_gross_profit == D("0.25")
        assert opportunity.estimated_net_profit == D("0.21")
        assert opportunity.roi == D("0.021")
        assert opportunity.pair_label == "WMATIC/USDT"
        logger.info("✅ Reference scenario produces net 0.21")

    def test_net_equal_to_target_does_not_fire(self, params):
        # gross 0.05, net 0.01, target 10 * 0.001 = 0.01
        detection = evaluate("WMATIC", make_quotes(v3_sell="2.01"), None, params)

        assert detection.opportunity is None
        assert detection.net_profit == D("0.01")
        assert "below target" in detection.reason

    def test_net_just_above_target_fires(self, params):
        assert detect("WMATIC", make_quotes(v3_sell="2.0101"), None, params) is not None

    def test_gas_counts_twice(self):
        # gross 0.25 against gas 0.12 per leg leaves 0.01, equal to the target
        params = DetectionParams(gas_estimate=D("0.12"), min_profit_fraction=D("0.001"))
        assert detect("WMATIC", make_quotes(), None, params) is None

    @pytest.mark.parametrize("v2_buy_out,v3_sell", [
        ("5.0", "2.0"),
        ("5.0", "2.009"),
        ("5.0", "2.0081"),
        ("5.0", "2.03"),
        ("4.9", "2.05"),
        ("5.01", "2.0"),
    ])
    def test_fires_exactly_when_spread_exceeds_costs(self, params, v2_buy_out, v3_sell):
        notional = D("10")
        spread = D(v2_buy_out) * D(v3_sell) - notional
        threshold = 2 * params.gas_estimate + notional * params.min_profit_fraction

        opportunity = detect("WMATIC", make_quotes(v2_buy_out=v2_buy_out, v3_sell=v3_sell), None, params)

        assert (opportunity is not None) == (spread > threshold)

    def test_reverse_direction(self, params):
        quotes = make_quotes(v2_buy_out="0", v3_sell="0", v3_buy_out="5.0", v2_sell="2.05")
        opportunity = detect("WETH", quotes, None, params)

        assert opportunity is not None
        assert opportunity.buy_venue is Venue.AMM_V3
        assert opportunity.sell_venue is Venue.AMM_V2
        assert opportunity.fee_tier == 500
        assert opportunity.route_label == "Uniswap V3 -> QuickSwap V2"

    def test_better_direction_wins(self, params):
        quotes = make_quotes(v2_buy_out="5.0", v3_sell="2.05", v3_buy_out="5.0", v2_sell="2.06")
        opportunity = detect("WETH", quotes, None, params)

        assert opportunity.buy_venue is Venue.AMM_V3
        assert opportunity.estimated_gross_profit == D("0.30")

    def test_forward_wins_ties(self, params):
        quotes = make_quotes(v2_buy_out="5.0", v3_sell="2.05", v3_buy_out="5.0", v2_sell="2.05")
        assert detect("WETH", quotes, None, params).buy_venue is Venue.AMM_V2

    def test_no_liquidity(self, params):
        quotes = make_quotes(v2_buy_out="0", v3_sell="2.05", v3_buy_out="5.0", v2_sell="0")

        assert detect("WBTC", quotes, None, params) is None
        assert explain("WBTC", quotes, None, params) == "no liquidity on either direction"


class TestSafetyChecks:
    """ROI circuit breaker and reference-price cross-check"""

    def test_roi_circuit_breaker(self, params):
        # gross 10.5 on 10 notional is not a real spread
        quotes = make_quotes(v2_buy_out="10.0", v3_sell="2.05")

        assert detect("WMATIC", quotes, None, params) is None
        assert "circuit breaker" in explain("WMATIC", quotes, None, params)

    def test_roi_breaker_regardless_of_reference(self, params):
        quotes = make_quotes(v2_buy_out="10.0", v3_sell="2.05")
        reference = PriceResult(D("2.05"), PriceSourceTag.BINANCE)

        assert detect("WMATIC", quotes, reference, params) is None

    def test_divergent_reference_abstains(self, params):
        """Reference 20% away from the 2.05 sell price"""
        reference = PriceResult(D("2.05") * D("0.8"), PriceSourceTag.BYBIT)

        detection = evaluate("WMATIC", make_quotes(), reference, params)

        assert detection.opportunity is None
        assert detection.net_profit == D("0.21"), "Abstains despite a positive net profit"
        assert "diverges" in detection.reason
        logger.info("✅ Divergent reference blocks execution")

    def test_divergent_reference_above_sell_price_abstains(self, params):
        reference = PriceResult(D("2.05") * D("1.2"), PriceSourceTag.COINGECKO)
        assert detect("WMATIC", make_quotes(), reference, params) is None

    def test_reference_within_tolerance(self, params):
        reference = PriceResult(D("2.00"), PriceSourceTag.BINANCE)
        assert detect("WMATIC", make_quotes(), reference, params) is not None

    def test_onchain_reference_is_not_independent(self, params):
        reference = PriceResult(D("1.00"), PriceSourceTag.ONCHAIN)
        assert detect("WMATIC", make_quotes(), reference, params) is not None

    def test_missing_reference_skips_check(self, params):
        assert detect("WMATIC", make_quotes(), PriceResult.none(), params) is not None


class TestGasCost:

    def test_estimate_gas_cost_usd(self):
        # 100 gwei * 250k gas = 0.025 POL at 0.50 USD
        assert estimate_gas_cost_usd(100 * 10 ** 9, 250000, D("0.5")) == D("0.0125")

    @pytest.mark.parametrize("gas_price,units,price", [(0, 250000, "0.5"), (10 ** 9, 0, "0.5"), (10 ** 9, 1, "0")])
    def test_degenerate_inputs(self, gas_price, units, price):
        assert estimate_gas_cost_usd(gas_price, units, D(price)) == 0
