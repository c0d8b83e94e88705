# flowsniper/arbitrage_detector.py
"""
Arbitrage Detector - Round-Trip Scoring

Pure functions over one cycle's quotes. Two directions are priced:

    forward:  buy on V2, sell on V3   profit = v2_buy_out * v3_sell_unit_price - notional
    reverse:  buy on V3, sell on V2   profit = v3_buy_out * v2_sell_unit_price - notional

The better one pays gas for two legs and must clear the profit floor, stay
under the ROI circuit breaker and agree with an independent reference price.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from flowsniper.types import (
    ArbitrageOpportunity,
    DetectionParams,
    PriceResult,
    QuoteSet,
    Venue,
)

WEI_PER_NATIVE = Decimal(10) ** 18


@dataclass
class Detection:
    """Outcome of one evaluation: an opportunity, or why there is none."""
    opportunity: Optional[ArbitrageOpportunity]
    reason: str
    net_profit: Decimal = Decimal(0)


def evaluate(symbol: str, quotes: QuoteSet, reference: Optional[PriceResult],
             params: DetectionParams) -> Detection:
    """
    Score a symbol's quotes.

    Args:
        symbol: Token symbol being traded against the stablecoin
        quotes: QuoteSet from the aggregator (human units)
        reference: Oracle price; on-chain or missing prices skip the cross-check
        params: Gas estimate per leg and safety thresholds

    Returns:
        Detection with the opportunity or the abstention reason
    """
    notional = quotes.notional_in
    if notional <= 0:
        return Detection(None, "non-positive notional")

    candidates = []

    if quotes.v2_buy_out > 0 and quotes.v3_sell_unit_price > 0:
        gross = quotes.v2_buy_out * quotes.v3_sell_unit_price - notional
        candidates.append((gross, Venue.AMM_V2, Venue.AMM_V3, quotes.v3_sell_fee,
                           quotes.v2_buy_out, quotes.v3_sell_unit_price))

    if quotes.v3_buy_out > 0 and quotes.v2_sell_unit_price > 0:
        gross = quotes.v3_buy_out * quotes.v2_sell_unit_price - notional
        candidates.append((gross, Venue.AMM_V3, Venue.AMM_V2, quotes.v3_buy_fee,
                           quotes.v3_buy_out, quotes.v2_sell_unit_price))

    if not candidates:
        return Detection(None, "no liquidity on either direction")

    # Forward wins ties
    gross, buy_venue, sell_venue, fee_tier, buy_out, sell_price = max(candidates, key=lambda c: c[0])
    net = gross - 2 * params.gas_estimate

    target = notional * params.min_profit_fraction
    if net <= target:
        return Detection(None, f"net {net:.6f} below target {target:.6f}", net)

    roi = net / notional
    if roi > params.max_roi:
        return Detection(None, f"ROI {roi:.2%} above circuit breaker {params.max_roi:.0%}", net)

    if reference is not None and reference.is_independent:
        divergence = abs(sell_price - reference.price) / reference.price
        if divergence > params.divergence_tolerance:
            return Detection(
                None,
                f"sell price {sell_price:.6f} diverges {divergence:.2%} from "
                f"{reference.source.value} reference {reference.price}",
                net,
            )

    opportunity = ArbitrageOpportunity(
        symbol=symbol,
        buy_venue=buy_venue,
        sell_venue=sell_venue,
        fee_tier=fee_tier,
        buy_amount_out=buy_out,
        sell_unit_price=sell_price,
        estimated_gross_profit=gross,
        estimated_net_profit=net,
        notional_in=notional,
    )
    return Detection(opportunity, "opportunity", net)


def detect(symbol: str, quotes: QuoteSet, reference: Optional[PriceResult],
           params: DetectionParams) -> Optional[ArbitrageOpportunity]:
    """The opportunity, or None."""
    return evaluate(symbol, quotes, reference, params).opportunity


def explain(symbol: str, quotes: QuoteSet, reference: Optional[PriceResult],
            params: DetectionParams) -> str:
    """Human-readable reason for the decision."""
    return evaluate(symbol, quotes, reference, params).reason


def estimate_gas_cost_usd(gas_price_wei: int, gas_units: int, native_price: Decimal) -> Decimal:
    """USD cost of one leg at the given gas price and native token price."""
    if gas_price_wei <= 0 or gas_units <= 0 or native_price <= 0:
        return Decimal(0)
    return Decimal(gas_price_wei) * Decimal(gas_units) / WEI_PER_NATIVE * native_price
