# flowsniper/scanner.py
"""
Opportunity Scanner - Scan Triggers and Detection Fan-Out

A scan cycle is driven either by a fixed timer or by new block headers from
a WebSocket subscription. Whatever the trigger, the cycle is the same: pick
the next batch of symbols round-robin, then quote, price and score every
symbol of the batch concurrently.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple

from web3 import AsyncWeb3, WebSocketProvider

from config.settings import Settings
from flowsniper.arbitrage_detector import Detection, evaluate
from flowsniper.exceptions import ConfigurationError
from flowsniper.types import DetectionParams
from flowsniper.utils.logger import get_logger

logger = get_logger(__name__)


class ScanTrigger(ABC):
    """Source of scan ticks."""

    name = "trigger"

    @abstractmethod
    def ticks(self) -> AsyncIterator[int]:
        """Yield once per scan cycle."""


class TimerTrigger(ScanTrigger):
    """Fires immediately, then every ``interval`` seconds after a cycle ends."""

    name = "timer"

    def __init__(self, interval: float):
        if interval < 0:
            raise ValueError("scan interval must not be negative")
        self.interval = interval

    async def ticks(self) -> AsyncIterator[int]:
        tick = 0
        while True:
            yield tick
            tick += 1
            await asyncio.sleep(self.interval)


class BlockTrigger(ScanTrigger):
    """Fires on every ``newHeads`` notification; reconnects after socket errors."""

    name = "block"

    def __init__(self, ws_url: str, reconnect_delay: float = 5.0):
        if not ws_url:
            raise ConfigurationError("Block-driven scanning requires a WebSocket RPC URL")
        self.ws_url = ws_url
        self.reconnect_delay = reconnect_delay

    async def ticks(self) -> AsyncIterator[int]:
        while True:
            try:
                async with AsyncWeb3(WebSocketProvider(self.ws_url)) as w3:
                    subscription_id = await w3.eth.subscribe("newHeads")
                    logger.info(f"🧱 Subscribed to new blocks ({subscription_id})")

                    async for message in w3.socket.process_subscriptions():
                        header = message.get("result") or {}
                        number = header.get("number")
                        yield int(number, 16) if isinstance(number, str) else int(number or 0)
            except Exception as e:
                logger.error(f"Block subscription dropped: {e}; reconnecting in {self.reconnect_delay}s")
                await asyncio.sleep(self.reconnect_delay)


def build_trigger(settings: Settings) -> ScanTrigger:
    """Trigger selected by SCAN_TRIGGER ("timer" or "block")."""
    kind = settings.trading.scan_trigger.lower()
    if kind == "block":
        return BlockTrigger(settings.network.ws_url)
    if kind == "timer":
        return TimerTrigger(settings.trading.scan_interval)
    raise ConfigurationError(f"Unknown scan trigger: {settings.trading.scan_trigger}")


@dataclass
class ScanMetrics:
    """Counters for scanner performance."""
    total_scans: int = 0
    symbols_scanned: int = 0
    opportunities_found: int = 0
    symbol_failures: int = 0
    last_scan_duration_ms: int = 0
    last_scan_time: Optional[float] = None


# (symbol, detection) or (symbol, exception raised by that symbol's task)
ScanResult = Tuple[str, object]


class OpportunityScanner:
    """
    Per-cycle detection pipeline shared by both triggers.

    Features:
    - Round-robin symbol batches
    - Concurrent quote and reference-price fetching per symbol
    - Per-symbol failure isolation
    - Scan metrics
    """

    def __init__(self, registry, oracle, aggregator, trigger: ScanTrigger,
                 symbols: Sequence[str], batch_size: int = 3):
        if not symbols:
            raise ConfigurationError("At least one scan symbol is required")

        self.registry = registry
        self.oracle = oracle
        self.aggregator = aggregator
        self.trigger = trigger
        self.symbols = list(symbols)
        self.batch_size = max(1, min(batch_size, len(self.symbols)))
        self._cursor = 0
        self.metrics = ScanMetrics()

        logger.info(f"OpportunityScanner ready: {len(self.symbols)} symbols, "
                    f"batch {self.batch_size}, {trigger.name} trigger")

    def next_batch(self) -> List[str]:
        """Next ``batch_size`` symbols, wrapping around the list."""
        batch = [self.symbols[(self._cursor + i) % len(self.symbols)] for i in range(self.batch_size)]
        self._cursor = (self._cursor + self.batch_size) % len(self.symbols)
        return batch

    async def scan_symbol(self, symbol: str, notional, params: DetectionParams) -> Detection:
        """Quote, price and score one symbol."""
        token = self.registry.get_token(symbol)
        quote_token = self.registry.quote_token()

        quotes, reference = await asyncio.gather(
            self.aggregator.get_quotes(quote_token, token, notional),
            self.oracle.get_price(token),
        )
        return evaluate(symbol, quotes, reference, params)

    async def scan_batch(self, symbols: Sequence[str], notional,
                         params: DetectionParams) -> List[ScanResult]:
        """
        Run one detection pass over ``symbols`` concurrently.

        Returns:
            (symbol, Detection) pairs; a symbol whose task raised carries the
            exception instead
        """
        started = time.monotonic()
        outcomes = await asyncio.gather(
            *(self.scan_symbol(symbol, notional, params) for symbol in symbols),
            return_exceptions=True,
        )

        results: List[ScanResult] = []
        for symbol, outcome in zip(symbols, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                self.metrics.symbol_failures += 1
                logger.warning(f"Scan failed for {symbol}: {outcome}")
            elif outcome.opportunity is not None:
                self.metrics.opportunities_found += 1
            results.append((symbol, outcome))

        self.metrics.total_scans += 1
        self.metrics.symbols_scanned += len(symbols)
        self.metrics.last_scan_duration_ms = int((time.monotonic() - started) * 1000)
        self.metrics.last_scan_time = time.time()
        return results

    def get_scanner_metrics(self) -> Dict:
        return {
            "trigger": self.trigger.name,
            "total_scans": self.metrics.total_scans,
            "symbols_scanned": self.metrics.symbols_scanned,
            "opportunities_found": self.metrics.opportunities_found,
            "symbol_failures": self.metrics.symbol_failures,
            "last_scan_duration_ms": self.metrics.last_scan_duration_ms,
        }
