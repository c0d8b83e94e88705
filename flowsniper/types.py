# flowsniper/types.py
"""
Data model shared by the FlowSniper components.

Money is Decimal in human units; on-chain amounts are int base units.
"""

import json
import re
import time
import uuid
from dataclasses import dataclass, field, asdict, replace
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


class Venue(str, Enum):
    """AMM protocol family"""
    AMM_V2 = "AMM_V2"  # constant product (QuickSwap)
    AMM_V3 = "AMM_V3"  # concentrated liquidity (Uniswap V3)

    @property
    def label(self) -> str:
        return "QuickSwap V2" if self is Venue.AMM_V2 else "Uniswap V3"


class PriceSourceTag(str, Enum):
    PROXY = "PROXY"
    BYBIT = "BYBIT"
    BINANCE = "BINANCE"
    COINGECKO = "COINGECKO"
    ONCHAIN = "ONCHAIN"
    NONE = "NONE"


class EngineMode(str, Enum):
    REAL = "REAL"
    DEMO = "DEMO"


class EngineStatus(str, Enum):
    STOPPED = "STOPPED"
    SCANNING = "SCANNING"
    EXECUTING = "EXECUTING"


class FlowOperation(str, Enum):
    CROSS_DEX_ARBITRAGE = "CROSS_DEX_ARBITRAGE"
    ASSET_CONSOLIDATION = "ASSET_CONSOLIDATION"
    SCAN_PULSE = "SCAN_PULSE"
    OPPORTUNITY_SKIPPED = "OPPORTUNITY_SKIPPED"
    GAS_RECHARGE = "GAS_RECHARGE"
    WITHDRAWAL = "WITHDRAWAL"
    LIQUIDATION = "LIQUIDATION"


class StepStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


@dataclass(frozen=True)
class Token:
    """ERC-20 token with its immutable decimals."""
    symbol: str
    address: str
    decimals: int
    cex_symbol: Optional[str] = None
    coingecko_id: Optional[str] = None


@dataclass
class Quote:
    """One leg/tier quote from the batched read, in base units."""
    venue: Venue
    amount_in: int
    amount_out: int
    fee_tier: Optional[int] = None


@dataclass
class QuoteSet:
    """Best executable outputs per protocol per direction, in human units."""
    notional_in: Decimal
    v2_buy_out: Decimal = Decimal(0)
    v3_buy_out: Decimal = Decimal(0)
    v3_buy_fee: Optional[int] = None
    v2_sell_unit_price: Decimal = Decimal(0)
    v3_sell_unit_price: Decimal = Decimal(0)
    v3_sell_fee: Optional[int] = None
    quotes: List[Quote] = field(default_factory=list)


@dataclass
class PriceResult:
    price: Decimal
    source: PriceSourceTag

    @classmethod
    def none(cls) -> "PriceResult":
        """The "no price" sentinel."""
        return cls(price=Decimal(0), source=PriceSourceTag.NONE)

    @property
    def is_available(self) -> bool:
        return self.source is not PriceSourceTag.NONE and self.price > 0

    @property
    def is_independent(self) -> bool:
        """On-chain prices reflect the liquidity being traded, so they do not count."""
        return self.is_available and self.source is not PriceSourceTag.ONCHAIN


@dataclass
class DetectionParams:
    gas_estimate: Decimal
    min_profit_fraction: Decimal
    max_roi: Decimal = Decimal("0.5")
    divergence_tolerance: Decimal = Decimal("0.15")


@dataclass
class ArbitrageOpportunity:
    """Round trip priced within a single detection cycle."""
    symbol: str
    buy_venue: Venue
    sell_venue: Venue
    fee_tier: Optional[int]
    buy_amount_out: Decimal
    sell_unit_price: Decimal
    estimated_gross_profit: Decimal
    estimated_net_profit: Decimal
    notional_in: Decimal

    @property
    def roi(self) -> Decimal:
        if self.notional_in <= 0:
            return Decimal(0)
        return self.estimated_net_profit / self.notional_in

    @property
    def pair_label(self) -> str:
        return f"{self.symbol}/USDT"

    @property
    def route_label(self) -> str:
        return f"{self.buy_venue.label} -> {self.sell_venue.label}"


@dataclass
class WalletIdentity:
    """Owner / operator binding. The key never leaves the local keystore."""
    operator_address: str
    operator_private_key: str = field(repr=False)
    owner_address: Optional[str] = None
    pairing_signature: Optional[str] = None
    allowance_granted: bool = False

    @property
    def is_paired(self) -> bool:
        return bool(self.owner_address and self.pairing_signature)


@dataclass
class EngineParams:
    """Tunable session parameters; hot-updatable while the engine runs."""
    trade_amount: Decimal
    slippage_tolerance: Decimal
    min_profit_fraction: Decimal
    consolidation_threshold: Decimal
    max_drawdown: Decimal

    _FIELDS = ("trade_amount", "slippage_tolerance", "min_profit_fraction",
               "consolidation_threshold", "max_drawdown")

    @classmethod
    def from_settings(cls, settings) -> "EngineParams":
        return cls(
            trade_amount=settings.trading.trade_amount,
            slippage_tolerance=settings.trading.slippage_tolerance,
            min_profit_fraction=settings.trading.min_profit_fraction,
            consolidation_threshold=settings.trading.consolidation_threshold,
            max_drawdown=settings.risk.max_drawdown,
        )

    def updated(self, changes: Optional[Dict[str, Any]]) -> "EngineParams":
        """Return a copy with the known keys of ``changes`` applied and validated."""
        if not changes:
            return replace(self)

        values = {}
        for key, value in changes.items():
            if key not in self._FIELDS or value is None:
                continue
            values[key] = Decimal(str(value))

        params = replace(self, **values)
        params.validate()
        return params

    def validate(self):
        if self.trade_amount <= 0:
            raise ValueError("trade_amount must be positive")
        if not (Decimal(0) <= self.slippage_tolerance < Decimal(1)):
            raise ValueError("slippage_tolerance must be in [0, 1)")
        if self.min_profit_fraction < 0:
            raise ValueError("min_profit_fraction must not be negative")
        if self.consolidation_threshold < 0:
            raise ValueError("consolidation_threshold must not be negative")
        if self.max_drawdown > 0:
            raise ValueError("max_drawdown must be zero or negative")

    def to_dict(self) -> Dict[str, str]:
        return {name: str(getattr(self, name)) for name in self._FIELDS}


class AdvisoryKind(str, Enum):
    HOLD = "HOLD"
    WAIT = "WAIT"
    ACT = "ACT"


@dataclass(frozen=True)
class Advisory:
    """Informational market commentary; never gates trading."""
    kind: AdvisoryKind
    strategy: Optional[str] = None
    reason: Optional[str] = None

    _ACT_ACTIONS = {"ACT", "BUY", "SELL", "TRADE", "EXECUTE"}

    @classmethod
    def parse(cls, payload: Any) -> Optional["Advisory"]:
        """
        Parse a loosely-typed advisory payload.

        Accepts a dict or a JSON string (optionally wrapped in a markdown
        code fence) carrying either ``action``/``reason`` or
        ``recommendation``/``suggestedStrategy`` keys.

        Returns:
            Advisory, or None when the payload is unusable
        """
        if isinstance(payload, str):
            cleaned = re.sub(r"```(?:json)?\n?|```", "", payload).strip()
            try:
                payload = json.loads(cleaned)
            except ValueError:
                return None

        if not isinstance(payload, dict):
            return None

        action = str(payload.get("action") or "").strip().upper()
        strategy = payload.get("strategy") or payload.get("suggestedStrategy")
        reason = payload.get("reason") or payload.get("recommendation") or payload.get("summary")

        if action == "HOLD":
            return cls(AdvisoryKind.HOLD, reason=reason)
        if action == "WAIT":
            return cls(AdvisoryKind.WAIT, reason=reason)
        if action in cls._ACT_ACTIONS or (not action and strategy):
            return cls(AdvisoryKind.ACT, strategy=str(strategy) if strategy else action, reason=reason)

        return None


@dataclass(frozen=True)
class FlowStep:
    """Append-only audit entry. Every outcome produces one."""
    operation: FlowOperation
    pair: str
    profit: Decimal
    status: StepStatus
    tx_hash: Optional[str] = None
    detail: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["operation"] = self.operation.value
        data["status"] = self.status.value
        data["profit"] = str(self.profit)
        return data


@dataclass
class EngineState:
    """Session state. Written only by the scheduler."""
    mode: EngineMode
    params: EngineParams
    active: bool = False
    status: EngineStatus = EngineStatus.STOPPED
    daily_pnl: Decimal = Decimal(0)
    gas_balance: Decimal = Decimal(0)
    advisory: Optional[Advisory] = None
    last_activity: float = field(default_factory=time.time)
    stop_reason: Optional[str] = None
    session_started: float = field(default_factory=time.time)
    trades_executed: int = 0
    trades_failed: int = 0

    @property
    def trade_amount(self) -> Decimal:
        return self.params.trade_amount

    @property
    def slippage_tolerance(self) -> Decimal:
        return self.params.slippage_tolerance

    @property
    def min_profit_fraction(self) -> Decimal:
        return self.params.min_profit_fraction

    @property
    def consolidation_threshold(self) -> Decimal:
        return self.params.consolidation_threshold

    @property
    def max_drawdown(self) -> Decimal:
        return self.params.max_drawdown

    def to_dict(self) -> Dict[str, Any]:
        return {
            "active": self.active,
            "status": self.status.value,
            "mode": self.mode.value,
            "daily_pnl": str(self.daily_pnl),
            "gas_balance": str(self.gas_balance) if self.mode is EngineMode.DEMO else None,
            "params": self.params.to_dict(),
            "advisory": self.advisory.kind.value if self.advisory else None,
            "last_activity": self.last_activity,
            "stop_reason": self.stop_reason,
            "trades_executed": self.trades_executed,
            "trades_failed": self.trades_failed,
        }
