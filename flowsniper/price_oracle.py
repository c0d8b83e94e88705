# flowsniper/price_oracle.py
"""
Price Oracle - Multi-Source Reference Prices

Resolves a USD reference price for a token from an ordered chain of
sources: a caching proxy, two exchange tickers, CoinGecko and finally the
on-chain Uniswap V3 quoter. The first strictly positive price wins and is
cached for a few seconds.
"""

import time
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import aiohttp

from config.settings import Settings
from flowsniper.types import PriceResult, PriceSourceTag, Token
from flowsniper.utils.logger import get_logger

logger = get_logger(__name__)


def _to_price(value: Any) -> Optional[Decimal]:
    """Parse an API price field; None unless strictly positive."""
    if value is None:
        return None
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return price if price > 0 else None


class PriceSource(ABC):
    """One link of the fallback chain."""

    tag: PriceSourceTag

    @abstractmethod
    async def try_fetch(self, token: Token) -> Optional[Decimal]:
        """Price in USD, or None when this source has nothing usable."""


class HttpPriceSource(PriceSource):
    """Base for JSON-over-HTTP sources sharing the oracle's session."""

    def __init__(self, base_url: str, timeout: float = 4.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None

    async def _get_json(self, path: str, params: Dict[str, str],
                        headers: Optional[Dict[str, str]] = None) -> Any:
        if self.session is None:
            raise RuntimeError(f"{type(self).__name__} used without an HTTP session")

        async with self.session.get(
                f"{self.base_url}{path}",
                params=params,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
        ) as response:
            if response.status != 200:
                logger.debug(f"{self.tag.value} HTTP {response.status} for {params}")
                return None
            return await response.json(content_type=None)


class ProxyPriceSource(HttpPriceSource):
    """Server-side aggregation proxy: GET /api/price?symbol= -> {price, source}"""

    tag = PriceSourceTag.PROXY

    async def try_fetch(self, token: Token) -> Optional[Decimal]:
        if not token.cex_symbol:
            return None
        data = await self._get_json("/api/price", {"symbol": token.cex_symbol})
        if not isinstance(data, dict):
            return None
        return _to_price(data.get("price"))


class BybitPriceSource(HttpPriceSource):
    """Bybit v5 linear tickers"""

    tag = PriceSourceTag.BYBIT

    async def try_fetch(self, token: Token) -> Optional[Decimal]:
        if not token.cex_symbol:
            return None
        data = await self._get_json("/v5/market/tickers", {"category": "linear", "symbol": token.cex_symbol})
        if not isinstance(data, dict) or data.get("retCode") != 0:
            return None
        tickers = (data.get("result") or {}).get("list") or []
        if not tickers:
            return None
        return _to_price(tickers[0].get("lastPrice"))


class BinancePriceSource(HttpPriceSource):
    """Binance v3 ticker price"""

    tag = PriceSourceTag.BINANCE

    async def try_fetch(self, token: Token) -> Optional[Decimal]:
        if not token.cex_symbol:
            return None
        data = await self._get_json("/api/v3/ticker/price", {"symbol": token.cex_symbol})
        if not isinstance(data, dict):
            return None
        return _to_price(data.get("price"))


class CoinGeckoPriceSource(HttpPriceSource):
    """CoinGecko simple/price by coin id"""

    tag = PriceSourceTag.COINGECKO

    def __init__(self, base_url: str, timeout: float = 5.0, api_key: Optional[str] = None):
        super().__init__(base_url, timeout)
        self.api_key = api_key

    async def try_fetch(self, token: Token) -> Optional[Decimal]:
        if not token.coingecko_id:
            return None
        headers = {"x-cg-demo-api-key": self.api_key} if self.api_key else None
        data = await self._get_json(
            "/simple/price", {"ids": token.coingecko_id, "vs_currencies": "usd"}, headers=headers
        )
        if not isinstance(data, dict):
            return None
        return _to_price((data.get(token.coingecko_id) or {}).get("usd"))


class OnChainPriceSource(PriceSource):
    """Last resort: 1-unit quote from the Uniswap V3 quoter."""

    tag = PriceSourceTag.ONCHAIN

    def __init__(self, quote_aggregator):
        self.quote_aggregator = quote_aggregator

    async def try_fetch(self, token: Token) -> Optional[Decimal]:
        price = await self.quote_aggregator.get_v3_unit_price(token)
        return price if price > 0 else None


class PriceOracle:
    """
    Reference price resolver with a short-lived cache.

    Features:
    - Ordered fallback chain of PriceSource objects
    - Per-symbol cache (default TTL 10s)
    - One shared aiohttp session for all HTTP sources
    - "No price" sentinel instead of a zero price
    - Per-source failure counters for health reporting
    """

    def __init__(self, settings: Settings, registry, quote_aggregator=None,
                 sources: Optional[List[PriceSource]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.settings = settings
        self.registry = registry
        self.cache_ttl = settings.api.price_cache_ttl
        self._clock = clock

        self.sources = sources if sources is not None else self._default_sources(quote_aggregator)

        # Price cache: symbol -> (result, fetched_at)
        self._cache: Dict[str, Tuple[PriceResult, float]] = {}
        self.failures: Dict[str, int] = {source.tag.value: 0 for source in self.sources}
        self.session: Optional[aiohttp.ClientSession] = None
        self._owns_session = False

        logger.info(f"PriceOracle ready: {' -> '.join(s.tag.value for s in self.sources)}")

    def _default_sources(self, quote_aggregator) -> List[PriceSource]:
        api = self.settings.api
        sources: List[PriceSource] = []

        if api.price_proxy_url:
            sources.append(ProxyPriceSource(api.price_proxy_url, api.request_timeout))

        sources.extend([
            BybitPriceSource(api.bybit_base_url, api.request_timeout),
            BinancePriceSource(api.binance_base_url, api.request_timeout),
            CoinGeckoPriceSource(api.coingecko_base_url, api.coingecko_timeout, api.coingecko_api_key),
        ])

        if quote_aggregator is not None:
            sources.append(OnChainPriceSource(quote_aggregator))

        return sources

    async def __aenter__(self):
        """Async context manager entry."""
        self._attach_session(aiohttp.ClientSession(headers={"Accept": "application/json"}))
        self._owns_session = True
        logger.info("🌐 HTTP session started")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def close(self):
        if self.session and self._owns_session:
            await self.session.close()
            logger.info("🌐 HTTP session closed")
        self.session = None
        self._owns_session = False

    def _attach_session(self, session: aiohttp.ClientSession):
        self.session = session
        for source in self.sources:
            if isinstance(source, HttpPriceSource):
                source.session = session

    async def get_price(self, token: Union[str, Token]) -> PriceResult:
        """
        Resolve a reference price.

        Args:
            token: Token or configured symbol

        Returns:
            PriceResult tagged with its source; PriceResult.none() when
            every source failed
        """
        if isinstance(token, str):
            token = self.registry.get_token(token)

        cached = self._cache.get(token.symbol)
        if cached and self._clock() - cached[1] < self.cache_ttl:
            return cached[0]

        if self.session is None and any(isinstance(s, HttpPriceSource) for s in self.sources):
            self._attach_session(aiohttp.ClientSession(headers={"Accept": "application/json"}))
            self._owns_session = True

        for source in self.sources:
            try:
                price = await source.try_fetch(token)
            except Exception as e:
                self.failures[source.tag.value] = self.failures.get(source.tag.value, 0) + 1
                logger.debug(f"{source.tag.value} price fetch failed for {token.symbol}: {e}")
                continue

            if price is not None and price > 0:
                result = PriceResult(price=price, source=source.tag)
                self._cache[token.symbol] = (result, self._clock())
                logger.debug(f"💲 {token.symbol} = {price} ({source.tag.value})")
                return result

            self.failures[source.tag.value] = self.failures.get(source.tag.value, 0) + 1

        logger.warning(f"⚠️ No reference price for {token.symbol} from any source")
        return PriceResult.none()

    def clear_cache(self):
        self._cache.clear()

    def get_health_status(self) -> Dict[str, Any]:
        """Cache size and per-source failure counters"""
        return {
            "sources": [s.tag.value for s in self.sources],
            "cached_symbols": len(self._cache),
            "cache_ttl": self.cache_ttl,
            "failures": dict(self.failures),
        }
