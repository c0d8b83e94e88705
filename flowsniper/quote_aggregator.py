# flowsniper/quote_aggregator.py
"""
Quote Aggregator - Batched On-Chain Quotes

Prices a stablecoin/token round trip on both AMM families with a single
Multicall3 read: QuickSwap (constant product) through the V2 router's
getAmountsOut, Uniswap V3 through the quoter across every fee tier.
"""

from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from eth_utils import to_checksum_address

from config.addresses import DEX_ADDRESSES, UNISWAP_V3_FEE_TIERS
from flowsniper.chain_client import encode_call
from flowsniper.decimal_utils import denormalize_amount, normalize_amount
from flowsniper.types import Quote, QuoteSet, Token, Venue
from flowsniper.utils.logger import get_logger

logger = get_logger(__name__)

V2_GET_AMOUNTS_OUT = "getAmountsOut(uint256,address[])"
V3_QUOTE_EXACT_INPUT_SINGLE = "quoteExactInputSingle(address,address,uint24,uint256,uint160)"


def v2_quote_call(router: str, amount_in: int, path: Sequence[str]) -> Tuple[str, bytes]:
    """(target, calldata) for router.getAmountsOut"""
    return router, encode_call(
        V2_GET_AMOUNTS_OUT, ["uint256", "address[]"],
        [amount_in, [to_checksum_address(a) for a in path]],
    )


def v3_quote_call(quoter: str, token_in: str, token_out: str, fee: int, amount_in: int) -> Tuple[str, bytes]:
    """(target, calldata) for quoter.quoteExactInputSingle with no price limit"""
    return quoter, encode_call(
        V3_QUOTE_EXACT_INPUT_SINGLE, ["address", "address", "uint24", "uint256", "uint160"],
        [to_checksum_address(token_in), to_checksum_address(token_out), fee, amount_in, 0],
    )


def decode_v2_amount_out(success: bool, data: bytes) -> int:
    """Last element of getAmountsOut; 0 on failure."""
    if not success or not data:
        return 0
    try:
        amounts = decode(["uint256[]"], data)[0]
    except DecodingError:
        return 0
    return int(amounts[-1]) if amounts else 0


def decode_v3_amount_out(success: bool, data: bytes) -> int:
    """First return word of quoteExactInputSingle; 0 on failure."""
    if not success or not data:
        return 0
    try:
        return int(decode(["uint256"], data[:32])[0])
    except DecodingError:
        return 0


def best_v3(quotes: Sequence[Quote]) -> Optional[Quote]:
    """Highest output; on ties the lowest fee tier wins."""
    best = None
    for quote in sorted(quotes, key=lambda q: q.fee_tier):
        if quote.amount_out > 0 and (best is None or quote.amount_out > best.amount_out):
            best = quote
    return best


class QuoteAggregator:
    """
    Batched quote reader for both AMM venues.

    Features:
    - Up to 8 read calls per pair in one tryAggregate round trip
    - Failed or undecodable calls degrade to zero output for that leg
    - Decimal-aware conversion through the TokenRegistry
    - Best fee tier per direction, ties to the cheapest tier
    """

    def __init__(self, chain, registry, fee_tiers: Optional[List[int]] = None,
                 v2_router: str = DEX_ADDRESSES["QUICKSWAP_ROUTER"],
                 v3_quoter: str = DEX_ADDRESSES["UNISWAP_V3_QUOTER"]):
        self.chain = chain
        self.registry = registry
        self.fee_tiers = sorted(fee_tiers or UNISWAP_V3_FEE_TIERS)
        self.v2_router = v2_router
        self.v3_quoter = v3_quoter

    async def get_quotes(self, token_in: Token, token_out: Token, notional_in: Decimal) -> QuoteSet:
        """
        Quote both directions of a round trip.

        Args:
            token_in: Stablecoin spent on the buy leg
            token_out: Token bought and then sold back
            notional_in: Amount of ``token_in`` in human units

        Returns:
            QuoteSet with the best buy output and sell unit price per venue

        Raises:
            QuoteFailure: if the batched call itself fails
        """
        decimals_in = await self.registry.resolve_decimals(token_in.address)
        decimals_out = await self.registry.resolve_decimals(token_out.address)

        amount_in = denormalize_amount(notional_in, decimals_in)
        one_unit = 10 ** decimals_out

        calls = [
            v2_quote_call(self.v2_router, amount_in, [token_in.address, token_out.address]),
            v2_quote_call(self.v2_router, one_unit, [token_out.address, token_in.address]),
        ]
        for fee in self.fee_tiers:
            calls.append(v3_quote_call(self.v3_quoter, token_in.address, token_out.address, fee, amount_in))
        for fee in self.fee_tiers:
            calls.append(v3_quote_call(self.v3_quoter, token_out.address, token_in.address, fee, one_unit))

        results = await self.chain.try_aggregate(calls)

        tiers = len(self.fee_tiers)
        v2_buy = Quote(Venue.AMM_V2, amount_in, decode_v2_amount_out(*results[0]))
        v2_sell = Quote(Venue.AMM_V2, one_unit, decode_v2_amount_out(*results[1]))
        v3_buys = [
            Quote(Venue.AMM_V3, amount_in, decode_v3_amount_out(*results[2 + i]), fee)
            for i, fee in enumerate(self.fee_tiers)
        ]
        v3_sells = [
            Quote(Venue.AMM_V3, one_unit, decode_v3_amount_out(*results[2 + tiers + i]), fee)
            for i, fee in enumerate(self.fee_tiers)
        ]

        best_buy = best_v3(v3_buys)
        best_sell = best_v3(v3_sells)

        quote_set = QuoteSet(
            notional_in=notional_in,
            v2_buy_out=normalize_amount(v2_buy.amount_out, decimals_out),
            v3_buy_out=normalize_amount(best_buy.amount_out, decimals_out) if best_buy else Decimal(0),
            v3_buy_fee=best_buy.fee_tier if best_buy else None,
            v2_sell_unit_price=normalize_amount(v2_sell.amount_out, decimals_in),
            v3_sell_unit_price=normalize_amount(best_sell.amount_out, decimals_in) if best_sell else Decimal(0),
            v3_sell_fee=best_sell.fee_tier if best_sell else None,
            quotes=[v2_buy, v2_sell] + v3_buys + v3_sells,
        )

        logger.debug(
            f"📊 {token_out.symbol}: V2 buy {quote_set.v2_buy_out} / sell {quote_set.v2_sell_unit_price} | "
            f"V3 buy {quote_set.v3_buy_out}@{quote_set.v3_buy_fee} / sell {quote_set.v3_sell_unit_price}@{quote_set.v3_sell_fee}"
        )
        return quote_set

    async def get_v3_unit_price(self, token: Token) -> Decimal:
        """Best V3 output, in the quote stablecoin, for selling one whole ``token``."""
        quote_token = self.registry.quote_token()
        decimals_out = await self.registry.resolve_decimals(token.address)
        decimals_quote = await self.registry.resolve_decimals(quote_token.address)
        one_unit = 10 ** decimals_out

        calls = [
            v3_quote_call(self.v3_quoter, token.address, quote_token.address, fee, one_unit)
            for fee in self.fee_tiers
        ]
        results = await self.chain.try_aggregate(calls)

        best = best_v3([
            Quote(Venue.AMM_V3, one_unit, decode_v3_amount_out(*result), fee)
            for result, fee in zip(results, self.fee_tiers)
        ])
        return normalize_amount(best.amount_out, decimals_quote) if best else Decimal(0)

    async def get_v2_amount_out(self, amount_in: int, path: Sequence[str]) -> int:
        """Raw V2 output for ``amount_in`` along ``path``; 0 when unroutable."""
        results = await self.chain.try_aggregate([v2_quote_call(self.v2_router, amount_in, path)])
        return decode_v2_amount_out(*results[0])
