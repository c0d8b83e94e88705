# flowsniper/risk_manager.py
"""
Risk Management for the FlowSniper engine
Session circuit breakers, gas-floor pauses and execution error classification
"""

import time
from decimal import Decimal
from typing import Dict, List, Optional, Set

from config.settings import Settings
from flowsniper.exceptions import (
    CircuitBreakerTrip,
    ErrorCategory,
    ExecutionRevertedError,
    InsufficientAllowanceError,
    InsufficientGasError,
)
from flowsniper.types import EngineMode, EngineState
from flowsniper.utils.logger import get_logger

logger = get_logger(__name__)

# A net spread above this fraction of notional is presumed a bad read
ROI_CIRCUIT_BREAKER = Decimal("0.5")

# Message fragments, checked in order; first match wins
_ERROR_PATTERNS = [
    (ErrorCategory.INSUFFICIENT_GAS, (
        "insufficient funds", "gas required exceeds", "intrinsic gas too low",
        "insufficient native", "out of gas",
    )),
    (ErrorCategory.INSUFFICIENT_ALLOWANCE, (
        "allowance", "transfer amount exceeds", "transferhelper",
    )),
    (ErrorCategory.USER_REJECTED, (
        "user rejected", "user denied", "rejected the request", "action_rejected",
    )),
    (ErrorCategory.DEX_REVERT, (
        "execution reverted", "too little received", "insufficient_output_amount",
        "insufficient output amount", "revert", "expired",
    )),
    (ErrorCategory.NETWORK, (
        "timeout", "timed out", "connection", "429", "too many requests",
        "503", "502", "network", "nonce too low", "replacement transaction",
    )),
]


def classify_error(exc: BaseException) -> ErrorCategory:
    """
    Map an execution failure to a user-facing category.

    Typed engine errors map directly; anything else is classified by
    substrings of its message.
    """
    if isinstance(exc, InsufficientGasError):
        return ErrorCategory.INSUFFICIENT_GAS
    if isinstance(exc, InsufficientAllowanceError):
        return ErrorCategory.INSUFFICIENT_ALLOWANCE
    if isinstance(exc, ExecutionRevertedError) and exc.category is not ErrorCategory.UNKNOWN:
        return exc.category
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return ErrorCategory.NETWORK

    message = str(exc).lower()
    for category, fragments in _ERROR_PATTERNS:
        if any(fragment in message for fragment in fragments):
            return category

    return ErrorCategory.UNKNOWN


class RiskManager:
    """
    Session-level risk controls

    Features:
    - Drawdown circuit breaker (terminal for the session)
    - Simulated gas exhaustion breaker (DEMO mode)
    - Per-signer pause while the native balance is below the floor
    - Failure accounting by error category
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.min_native_balance: Decimal = settings.risk.min_native_balance

        # State Tracking
        self.consecutive_failures = 0
        self.failures_by_category: Dict[str, int] = {}
        self.gas_paused_signers: Set[str] = set()
        self.trade_history: List[Dict] = []
        self.last_trip: Optional[CircuitBreakerTrip] = None

        logger.info(
            f"🛡️ Risk Manager initialized | max drawdown {settings.risk.max_drawdown} USDT | "
            f"gas floor {self.min_native_balance} {settings.network.currency_symbol}"
        )

    def check_circuit_breakers(self, state: EngineState) -> Optional[CircuitBreakerTrip]:
        """
        Evaluate the session-terminal breakers against the current state.

        Returns:
            The trip to act on, or None when trading may continue
        """
        if state.daily_pnl <= state.max_drawdown:
            trip = CircuitBreakerTrip(
                f"Drawdown limit reached: {state.daily_pnl} <= {state.max_drawdown}",
                reason="DRAWDOWN",
                limit=state.max_drawdown,
                current=state.daily_pnl,
            )
            self.last_trip = trip
            return trip

        if state.mode is EngineMode.DEMO and state.gas_balance <= 0:
            trip = CircuitBreakerTrip(
                "Simulated gas balance exhausted",
                reason="GAS_EXHAUSTED",
                limit=Decimal(0),
                current=state.gas_balance,
            )
            self.last_trip = trip
            return trip

        return None

    def record_trade_result(self, pair: str, success: bool, pnl: Decimal = Decimal(0),
                            category: Optional[ErrorCategory] = None):
        """Record a completed or failed round trip."""
        if success:
            self.consecutive_failures = 0
        else:
            self.consecutive_failures += 1
            key = (category or ErrorCategory.UNKNOWN).value
            self.failures_by_category[key] = self.failures_by_category.get(key, 0) + 1

        self.trade_history.append({
            "pair": pair,
            "success": success,
            "pnl": str(pnl),
            "category": category.value if category else None,
            "timestamp": time.time(),
        })

        # Keep only recent history
        if len(self.trade_history) > 1000:
            self.trade_history = self.trade_history[-500:]

    # Gas floor handling

    def pause_signer(self, address: str):
        """Stop trading from a signer whose native balance is below the floor."""
        key = address.lower()
        if key not in self.gas_paused_signers:
            self.gas_paused_signers.add(key)
            logger.warning(f"⛽ Trading paused for {address}: native balance below floor")

    def resume_signer(self, address: str):
        key = address.lower()
        if key in self.gas_paused_signers:
            self.gas_paused_signers.discard(key)
            logger.info(f"⛽ Trading resumed for {address}")

    def is_signer_paused(self, address: str) -> bool:
        return address.lower() in self.gas_paused_signers

    def reset_session(self):
        """Clear per-session counters when a fresh session starts."""
        self.consecutive_failures = 0
        self.failures_by_category = {}
        self.gas_paused_signers.clear()
        self.last_trip = None

    def get_risk_status(self) -> Dict:
        """Get current risk management status"""
        return {
            "consecutive_failures": self.consecutive_failures,
            "failures_by_category": dict(self.failures_by_category),
            "gas_paused_signers": sorted(self.gas_paused_signers),
            "last_trip": str(self.last_trip) if self.last_trip else None,
            "trades_recorded": len(self.trade_history),
        }
