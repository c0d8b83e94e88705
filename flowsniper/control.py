# flowsniper/control.py
"""
Control handlers for the operator console

Each handler maps to one engine, executor or custody operation and returns
a JSON-ready result dict. Failures are logged and reported in the result
rather than raised, so a transport layer can hand them straight back.
"""

import json
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional

from config.addresses import DEFAULT_SCAN_SYMBOLS, get_token_symbol, is_stablecoin
from flowsniper.decimal_utils import denormalize_amount, normalize_amount
from flowsniper.exceptions import ConfigurationError, FlowSniperError
from flowsniper.risk_manager import classify_error
from flowsniper.trade_executor import compute_min_amount_out, simulated_tx_hash
from flowsniper.types import EngineMode, FlowOperation, FlowStep, StepStatus, Token, Venue
from flowsniper.utils.helpers import truncate_address, validate_address
from flowsniper.utils.logger import get_logger

logger = get_logger(__name__)


class ControlStateStore:
    """Console configuration persisted as JSON: desired run state, mode, parameters."""

    def __init__(self, path: Optional[str]):
        self.path = Path(path) if path else None

    def load(self) -> Dict[str, Any]:
        if self.path is None or not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load control state {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def save(self, data: Dict[str, Any]):
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        except OSError as e:
            logger.error(f"Failed to save control state {self.path}: {e}")


def _failure(action: str, error: Exception) -> Dict[str, Any]:
    category = classify_error(error)
    logger.error(f"[control] {action} failed [{category.value}]: {error}")
    return {"success": False, "error": str(error), "category": category.value}


class EngineController:
    """
    Handlers: start, stop, config, withdraw, liquidate, recharge, status.

    Args:
        scheduler: EngineScheduler
        store: Optional ControlStateStore for the console configuration
    """

    def __init__(self, scheduler, store: Optional[ControlStateStore] = None):
        self.scheduler = scheduler
        self.settings = scheduler.settings
        self.executor = scheduler.executor
        self.custody = scheduler.custody
        self.registry = scheduler.registry
        self.chain = scheduler.chain
        self.journal = scheduler.journal
        self.aggregator = scheduler.scanner.aggregator
        self.store = store or ControlStateStore(None)

        saved = self.store.load()
        self.desired_running = bool(saved.get("is_running", False))
        self.saved_mode = saved.get("mode")
        self.saved_params = saved.get("params") or {}

    def _persist(self):
        self.store.save({
            "is_running": self.desired_running,
            "mode": self.scheduler.state.mode.value,
            "params": self.scheduler.state.params.to_dict(),
        })

    async def restore(self) -> Optional[Dict[str, Any]]:
        """Resume a session that was running when the console state was last saved."""
        if not self.desired_running:
            return None
        logger.info("Restoring engine from saved console state")
        return await self.start(self.saved_mode, self.saved_params)

    # Engine lifecycle

    async def start(self, mode: Optional[str] = None, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            state = await self.scheduler.start(mode, params)
        except (ValueError, FlowSniperError) as e:
            return _failure("start", e)

        self.desired_running = True
        self._persist()
        return {"success": True, "running": state.active, "mode": state.mode.value}

    async def stop(self) -> Dict[str, Any]:
        self.scheduler.stop("stopped from console")
        self.desired_running = False
        self._persist()
        return {"success": True, "running": False}

    async def config(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Hot-update parameters; applied to the next session when stopped."""
        try:
            if self.scheduler.state.active:
                updated = self.scheduler.update_params(params)
            else:
                updated = self.scheduler.state.params.updated(params)
                self.scheduler.state.params = updated
        except (ValueError, FlowSniperError) as e:
            return _failure("config", e)

        self._persist()
        return {"success": True, "params": updated.to_dict()}

    async def status(self) -> Dict[str, Any]:
        status = self.scheduler.get_status()
        status["desired_running"] = self.desired_running
        status["signer"] = {
            "operator": self.custody.operator_address,
            "owner": self.custody.owner_address,
            "paired": self.custody.is_paired,
        }
        return status

    # Funds

    async def _resolve_token(self, token: str) -> Token:
        if validate_address(token):
            decimals = await self.registry.resolve_decimals(token)
            symbol = get_token_symbol(token)
            return Token(symbol=symbol, address=token, decimals=decimals)
        return self.registry.get_token(token)

    async def withdraw(self, token: str, to: str, amount) -> Dict[str, Any]:
        """Transfer ``amount`` (human units) of ``token`` (symbol or address) to ``to``."""
        try:
            if not validate_address(to):
                raise ConfigurationError(f"Invalid destination address: {to}")
            resolved = await self._resolve_token(token)
            raw_amount = denormalize_amount(Decimal(str(amount)), resolved.decimals)
            tx_hash = await self.executor.transfer(resolved, to, raw_amount)
        except Exception as e:
            self._record(FlowOperation.WITHDRAWAL, f"{token} -> {truncate_address(to)}", StepStatus.FAILED,
                         detail=str(e))
            return _failure("withdraw", e)

        self._record(FlowOperation.WITHDRAWAL, f"{resolved.symbol} -> {truncate_address(to)}",
                     StepStatus.SUCCESS, tx_hash, f"{amount} {resolved.symbol}")
        return {"success": True, "txHash": tx_hash}

    async def liquidate(self) -> Dict[str, Any]:
        """Stop the engine and sell every non-stable signer balance back to the stablecoin on V2."""
        self.scheduler.stop("liquidation")
        self.desired_running = False
        self._persist()
        await self.scheduler.wait_stopped(timeout=self.settings.trading.execution_timeout)

        try:
            signer = self.custody.resolve_signer()
            quote = self.registry.quote_token()
        except FlowSniperError as e:
            return _failure("liquidate", e)

        symbols = list(dict.fromkeys(list(self.settings.trading.scan_symbols) + DEFAULT_SCAN_SYMBOLS))
        sold, failed = [], []
        for symbol in symbols:
            try:
                token = self.registry.get_token(symbol)
                if is_stablecoin(token.address):
                    continue

                balance = await self.chain.token_balance(token.address, signer.address)
                if balance <= 0:
                    continue

                quoted = await self.aggregator.get_v2_amount_out(balance, [token.address, quote.address])
                min_out = compute_min_amount_out(quoted, self.scheduler.state.params.slippage_tolerance)
                tx_hash = await self.executor.execute(token, quote, balance, min_out, Venue.AMM_V2,
                                                      wait=True, signer=signer)
            except Exception as e:
                logger.error(f"Liquidation of {symbol} failed: {e}")
                self._record(FlowOperation.LIQUIDATION, f"{symbol}/{quote.symbol}", StepStatus.FAILED,
                             detail=f"{classify_error(e).value}: {e}")
                failed.append(symbol)
                continue

            self._record(FlowOperation.LIQUIDATION, f"{symbol}/{quote.symbol}", StepStatus.SUCCESS, tx_hash,
                         f"{normalize_amount(balance, token.decimals)} {symbol}")
            sold.append({"symbol": symbol, "txHash": tx_hash})

        return {"success": not failed, "sold": sold, "failed": failed}

    async def recharge(self, amount) -> Dict[str, Any]:
        """Swap ``amount`` of the stablecoin to the native gas token."""
        state = self.scheduler.state
        try:
            usdt_amount = Decimal(str(amount))
            if usdt_amount <= 0:
                raise ValueError("recharge amount must be positive")
            quote = self.registry.quote_token()

            if state.mode is EngineMode.DEMO:
                native = await self.scheduler.oracle.get_price("WMATIC") if self.scheduler.oracle else None
                if native is None or not native.is_available:
                    raise ConfigurationError("No native price available for a simulated recharge")
                state.gas_balance += usdt_amount / native.price
                tx_hash = simulated_tx_hash()
            else:
                raw_amount = denormalize_amount(usdt_amount, quote.decimals)
                quoted = await self.aggregator.get_v2_amount_out(
                    raw_amount, [quote.address, self.registry.get_token("WMATIC").address]
                )
                min_out = compute_min_amount_out(quoted, state.params.slippage_tolerance)
                tx_hash = await self.executor.swap_to_native(raw_amount, min_out)
        except Exception as e:
            self._record(FlowOperation.GAS_RECHARGE, "USDT -> POL", StepStatus.FAILED, detail=str(e))
            return _failure("recharge", e)

        self._record(FlowOperation.GAS_RECHARGE, "USDT -> POL", StepStatus.SUCCESS, tx_hash,
                     f"{usdt_amount} USDT")
        return {"success": True, "txHash": tx_hash}

    def _record(self, operation: FlowOperation, pair: str, status: StepStatus,
                tx_hash: Optional[str] = None, detail: Optional[str] = None):
        self.journal.record(FlowStep(
            operation=operation,
            pair=pair,
            profit=Decimal(0),
            status=status,
            tx_hash=tx_hash,
            detail=detail,
        ))
