# flowsniper/exceptions.py
"""
Exception hierarchy for the FlowSniper engine.

Each failure mode the engine reacts to differently has its own type so the
scheduler can decide between skipping a symbol, pausing a signer and
stopping the session.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    """User-facing classification of execution failures."""

    INSUFFICIENT_GAS = "INSUFFICIENT_GAS"
    INSUFFICIENT_ALLOWANCE = "INSUFFICIENT_ALLOWANCE"
    USER_REJECTED = "USER_REJECTED"
    DEX_REVERT = "DEX_REVERT"
    NETWORK = "NETWORK"
    UNKNOWN = "UNKNOWN"


class FlowSniperError(Exception):
    """Base exception for all engine errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class ConfigurationError(FlowSniperError):
    """Raised when settings or runtime parameters are invalid."""

    pass


class QuoteFailure(FlowSniperError):
    """Raised when the batched quote read itself fails."""

    def __init__(self, message: str, symbol: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.symbol = symbol


class InsufficientGasError(FlowSniperError):
    """Raised when a signer's native balance is below the safety floor."""

    def __init__(self, message: str, address: Optional[str] = None,
                 balance: Optional[Any] = None, required: Optional[Any] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.address = address
        self.balance = balance
        self.required = required


class InsufficientAllowanceError(FlowSniperError):
    """Raised when operator balance plus owner allowance cannot cover a trade."""

    def __init__(self, message: str, token: Optional[str] = None,
                 available: Optional[int] = None, required: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.token = token
        self.available = available
        self.required = required


class ExecutionRevertedError(FlowSniperError):
    """Raised when a submitted transaction reverts or is rejected."""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.UNKNOWN,
                 tx_hash: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.category = category
        self.tx_hash = tx_hash


class CustodyError(FlowSniperError):
    """Raised when key material or the owner pairing is missing or invalid."""

    pass


class CircuitBreakerTrip(FlowSniperError):
    """Raised when a session-terminal safety limit is crossed."""

    def __init__(self, message: str, reason: str = "DRAWDOWN",
                 limit: Optional[Any] = None, current: Optional[Any] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.reason = reason
        self.limit = limit
        self.current = current
