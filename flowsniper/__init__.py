# flowsniper/__init__.py
"""
FlowSniper Package

Cross-DEX stablecoin arbitrage on Polygon between QuickSwap (V2) and
Uniswap V3:
- engine.py: Scheduler, session state machine and entry point
- scanner.py: Scan triggers (timer / new blocks) and detection fan-out
- price_oracle.py: Reference prices from a chain of HTTP and on-chain sources
- quote_aggregator.py: Batched Multicall3 quotes on both venues
- arbitrage_detector.py: Round-trip scoring and safety checks
- custody.py: Owner / operator keys, pairing and allowance delegation
- trade_executor.py: Swap, transfer and approval submission
- consolidation.py: Proceeds sweep to the owner
- risk_manager.py: Circuit breakers and error classification
- journal.py: FlowStep audit trail
- watchdog.py / control.py: Liveness restarts and console handlers
- utils/: Logging, notifications, helpers
"""

# Version information
__version__ = "1.0.0"
__author__ = "FlowSniper Team"

# Core components
from .engine import EngineScheduler, build_engine
from .scanner import OpportunityScanner, TimerTrigger, BlockTrigger
from .price_oracle import PriceOracle
from .quote_aggregator import QuoteAggregator
from .custody import CustodyManager
from .trade_executor import TradeExecutor, compute_min_amount_out
from .consolidation import ConsolidationService
from .risk_manager import RiskManager, classify_error
from .journal import FlowJournal
from .control import EngineController
from .watchdog import LivenessWatchdog

__all__ = [
    # Core Classes
    "EngineScheduler",
    "build_engine",
    "OpportunityScanner",
    "TimerTrigger",
    "BlockTrigger",
    "PriceOracle",
    "QuoteAggregator",
    "CustodyManager",
    "TradeExecutor",
    "ConsolidationService",
    "RiskManager",
    "FlowJournal",
    "EngineController",
    "LivenessWatchdog",

    # Functions
    "compute_min_amount_out",
    "classify_error",

    # Package Info
    "__version__",
    "__author__"
]