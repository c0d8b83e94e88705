"""
Decimal handling utilities and the token registry
"""
# flowsniper/decimal_utils.py

import asyncio
from decimal import Decimal
from typing import Dict, Optional, Union

from config.addresses import (
    CEX_SYMBOLS,
    COINGECKO_IDS,
    POLYGON_ADDRESSES,
    QUOTE_SYMBOL,
    TOKEN_DECIMALS,
)
from flowsniper.exceptions import ConfigurationError
from flowsniper.types import Token
from flowsniper.utils.logger import get_logger

logger = get_logger(__name__)


def normalize_amount(amount: int, decimals: int) -> Decimal:
    """Convert base units to human-readable"""
    if amount <= 0:
        return Decimal(0)
    return Decimal(amount) / (Decimal(10) ** decimals)


def denormalize_amount(amount: Union[Decimal, str, int], decimals: int) -> int:
    """Convert human-readable amount to base units, truncating dust"""
    value = Decimal(str(amount))
    if value <= 0:
        return 0
    return int(value * (Decimal(10) ** decimals))


class TokenRegistry:
    """
    Token metadata and the process-lifetime decimals cache.

    Known tokens come from the static address book. Any other address is
    resolved with a single on-chain ``decimals()`` call and memoized; a
    token's decimals never change once resolved.
    """

    def __init__(self, chain=None, static_decimals: Optional[Dict[str, int]] = None):
        self.chain = chain
        self._decimals: Dict[str, int] = {
            address.lower(): decimals
            for address, decimals in (static_decimals if static_decimals is not None else TOKEN_DECIMALS).items()
        }
        self._resolve_locks: Dict[str, asyncio.Lock] = {}
        self.onchain_lookups = 0

    def get_token(self, symbol: str) -> Token:
        """Build the Token for a configured symbol."""
        symbol = symbol.upper()
        if symbol == "POL":
            symbol = "WMATIC"

        address = POLYGON_ADDRESSES.get(symbol)
        if address is None:
            raise ConfigurationError(f"Unknown token symbol: {symbol}")

        decimals = self._decimals.get(address.lower())
        if decimals is None:
            raise ConfigurationError(f"Decimals for {symbol} not resolved yet; call resolve_decimals first")

        return Token(
            symbol=symbol,
            address=address,
            decimals=decimals,
            cex_symbol=CEX_SYMBOLS.get(symbol),
            coingecko_id=COINGECKO_IDS.get(symbol),
        )

    def quote_token(self) -> Token:
        return self.get_token(QUOTE_SYMBOL)

    async def resolve_decimals(self, address: str) -> int:
        """
        Decimals for ``address``, hitting the chain at most once per token.

        Args:
            address: ERC-20 contract address

        Returns:
            Token decimals
        """
        key = address.lower()
        cached = self._decimals.get(key)
        if cached is not None:
            return cached

        lock = self._resolve_locks.get(key)
        if lock is None:
            lock = self._resolve_locks[key] = asyncio.Lock()

        async with lock:
            # Another task may have resolved it while we waited
            cached = self._decimals.get(key)
            if cached is not None:
                return cached

            if self.chain is None:
                raise ConfigurationError(f"No chain client to resolve decimals for {address}")

            decimals = await self.chain.get_decimals(address)
            self.onchain_lookups += 1
            self._decimals[key] = decimals
            logger.debug(f"Resolved decimals for {address}: {decimals}")
            return decimals
