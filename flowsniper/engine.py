# flowsniper/engine.py
"""
FlowSniper Engine - Scheduler and Session State Machine

    STOPPED -> SCANNING <-> EXECUTING -> SCANNING ...
                   \\-> STOPPED on drawdown breach or simulated gas exhaustion

Each cycle quotes and prices a batch of symbols concurrently, then executes
the qualifying round trips one after another. Stopping is cooperative: the
loop checks ``active`` at the top of every cycle and a trade that has been
submitted always runs to completion.
"""

import asyncio
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from config.addresses import GAS_ESTIMATES, QUOTE_SYMBOL
from config.settings import Settings
from flowsniper.arbitrage_detector import estimate_gas_cost_usd
from flowsniper.decimal_utils import denormalize_amount, normalize_amount
from flowsniper.exceptions import (
    CircuitBreakerTrip,
    ErrorCategory,
    ExecutionRevertedError,
    InsufficientGasError,
)
from flowsniper.risk_manager import classify_error
from flowsniper.trade_executor import compute_min_amount_out
from flowsniper.types import (
    Advisory,
    ArbitrageOpportunity,
    DetectionParams,
    EngineMode,
    EngineParams,
    EngineState,
    EngineStatus,
    FlowOperation,
    FlowStep,
    StepStatus,
    Venue,
)
from flowsniper.utils.helpers import format_currency, format_duration
from flowsniper.utils.logger import get_logger

logger = get_logger(__name__)

NATIVE_PRICE_SYMBOL = "WMATIC"

# Simulated gas burned per leg when no native price is available
DEMO_GAS_PER_LEG = Decimal("0.05")


def _signed_human(raw_delta: int, decimals: int) -> Decimal:
    return Decimal(raw_delta) / (Decimal(10) ** decimals)


def coerce_mode(mode: Union[str, EngineMode, None], default: str) -> EngineMode:
    if isinstance(mode, EngineMode):
        return mode
    return EngineMode(str(mode or default).upper())


class EngineScheduler:
    """
    Drives detection and execution for one trading session at a time.

    Features:
    - Fresh session on start, in-place parameter hot-update while running
    - Round-robin symbol batches scanned concurrently
    - Sequential execution of the cycle's opportunities
    - DEMO sessions simulated end to end with a simulated gas balance
    - Drawdown circuit breaker checked at the top of every cycle
    - FlowStep journal for every outcome; last activity for the watchdog
    """

    def __init__(self, settings: Settings, scanner, executor, custody, risk_manager, journal,
                 registry, chain=None, oracle=None, consolidation=None, notifier=None):
        self.settings = settings
        self.scanner = scanner
        self.executor = executor
        self.custody = custody
        self.risk_manager = risk_manager
        self.journal = journal
        self.registry = registry
        self.chain = chain
        self.oracle = oracle
        self.consolidation = consolidation
        self.notifier = notifier

        self.state = EngineState(
            mode=coerce_mode(None, settings.trading.mode),
            params=EngineParams.from_settings(settings),
        )
        self._task: Optional[asyncio.Task] = None
        self._in_cycle = False
        self._last_gas_check = 0.0

        self.journal.add_listener(self._on_flow_step)

    def _on_flow_step(self, step: FlowStep):
        self.state.last_activity = time.time()

    def _record(self, step: FlowStep) -> FlowStep:
        return self.journal.record(step)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # Session control

    async def start(self, mode: Union[str, EngineMode, None] = None,
                    params: Union[EngineParams, Dict[str, Any], None] = None) -> EngineState:
        """
        Start a session, or hot-update the running one.

        Args:
            mode: REAL or DEMO; defaults to the configured mode
            params: EngineParams or a dict of parameter overrides

        Returns:
            The session state
        """
        if isinstance(params, EngineParams):
            params = params.to_dict()

        if self.state.active:
            if params:
                self.update_params(params)
            if mode is not None and coerce_mode(mode, self.settings.trading.mode) is not self.state.mode:
                logger.warning("Mode change ignored while running; stop the engine to switch modes")
            return self.state

        if self.is_running:
            await self.wait_stopped()

        session_mode = coerce_mode(mode, self.settings.trading.mode)
        session_params = EngineParams.from_settings(self.settings).updated(params)

        self.state = EngineState(
            mode=session_mode,
            params=session_params,
            active=True,
            status=EngineStatus.SCANNING,
            gas_balance=self.settings.trading.initial_demo_gas if session_mode is EngineMode.DEMO else Decimal(0),
        )
        self.risk_manager.reset_session()
        self._last_gas_check = 0.0
        self._task = asyncio.create_task(self._run_loop(self.state))

        logger.info(f"🚀 Engine started in {session_mode.value} mode | "
                    f"{format_currency(session_params.trade_amount)} per round trip")
        await self._notify_status(
            "Engine Started",
            f"{session_mode.value} | trade {session_params.trade_amount} USDT | "
            f"max drawdown {session_params.max_drawdown} USDT",
        )
        return self.state

    def update_params(self, changes: Dict[str, Any]) -> EngineParams:
        """Apply parameter changes to the current session; the next cycle picks them up."""
        self.state.params = self.state.params.updated(changes)
        logger.info(f"⚙️ Parameters updated: {self.state.params.to_dict()}")
        return self.state.params

    def stop(self, reason: str = "manual stop"):
        """
        Request a cooperative stop.

        An idle loop (waiting for the next tick) is cancelled at once; a
        loop inside a cycle finishes its in-flight trade and exits at the
        next top-of-loop check.
        """
        state = self.state
        if not state.active:
            return

        state.active = False
        state.stop_reason = reason
        logger.info(f"⏹️ Stopping engine: {reason}")

        if self.is_running and self._in_cycle:
            return

        state.status = EngineStatus.STOPPED
        if self.is_running:
            self._task.cancel()

    def abort(self):
        """Cancel the loop task even mid-cycle. Used by the watchdog on a stuck loop."""
        self.state.active = False
        if self.is_running:
            self._task.cancel()

    async def wait_stopped(self, timeout: Optional[float] = None) -> bool:
        """Wait for the loop task to exit; False on timeout."""
        task = self._task
        if task is None:
            return True
        done, _ = await asyncio.wait({task}, timeout=timeout)
        return bool(done)

    async def restart(self, delay: float = 0.0) -> EngineState:
        """Stop, then start a fresh session with the same mode and parameters."""
        mode, params = self.state.mode, self.state.params
        self.stop("restart")
        if not await self.wait_stopped(timeout=self.settings.trading.execution_timeout):
            self.abort()
            await self.wait_stopped()
        if delay > 0:
            await asyncio.sleep(delay)
        return await self.start(mode, params)

    def set_advisory(self, payload: Any) -> Optional[Advisory]:
        """Store market commentary. Informational only; trading never waits on it."""
        advisory = Advisory.parse(payload)
        self.state.advisory = advisory
        if advisory is None:
            logger.debug("Advisory payload ignored: unrecognized shape")
        else:
            logger.info(f"🧭 Advisory: {advisory.kind.value}"
                        f"{' (' + advisory.strategy + ')' if advisory.strategy else ''}")
        return advisory

    # Main loop

    async def _run_loop(self, state: EngineState):
        ticks = self.scanner.trigger.ticks()
        try:
            async for _ in ticks:
                if not state.active:
                    break

                trip = self.risk_manager.check_circuit_breakers(state)
                if trip is not None:
                    await self._trip(state, trip)
                    break

                self._in_cycle = True
                try:
                    await self._run_cycle(state)
                except Exception as e:
                    logger.error(f"Error in scan cycle: {e}")
                finally:
                    self._in_cycle = False
                    if not state.active:
                        state.status = EngineStatus.STOPPED
        finally:
            await ticks.aclose()
            state.active = False
            state.status = EngineStatus.STOPPED
            logger.info(
                f"Engine stopped ({state.stop_reason or 'loop exited'}) after "
                f"{format_duration(time.time() - state.session_started)} | "
                f"PnL {format_currency(state.daily_pnl)} | "
                f"{state.trades_executed} executed, {state.trades_failed} failed"
            )

    async def _trip(self, state: EngineState, trip: CircuitBreakerTrip):
        state.active = False
        state.stop_reason = str(trip)
        logger.error(f"🚨 Circuit breaker tripped: {trip}")
        if self.notifier is not None:
            try:
                await self.notifier.send_circuit_breaker_alert(str(trip), state.daily_pnl)
            except Exception as e:
                logger.error(f"Failed to send circuit breaker alert: {e}")

    async def _run_cycle(self, state: EngineState):
        params = state.params
        batch = self.scanner.next_batch()
        detection_params = DetectionParams(
            gas_estimate=await self._gas_estimate(state),
            min_profit_fraction=params.min_profit_fraction,
            max_roi=self.settings.trading.max_roi,
            divergence_tolerance=self.settings.trading.divergence_tolerance,
        )

        results = await self.scanner.scan_batch(batch, params.trade_amount, detection_params)

        opportunities: List[ArbitrageOpportunity] = []
        for symbol, outcome in results:
            pair = f"{symbol}/{QUOTE_SYMBOL}"
            if isinstance(outcome, BaseException):
                self._record(FlowStep(
                    operation=FlowOperation.OPPORTUNITY_SKIPPED,
                    pair=pair,
                    profit=Decimal(0),
                    status=StepStatus.FAILED,
                    detail=f"{classify_error(outcome).value}: {outcome}",
                ))
            elif outcome.opportunity is None:
                self._record(FlowStep(
                    operation=FlowOperation.SCAN_PULSE,
                    pair=pair,
                    profit=Decimal(0),
                    status=StepStatus.SUCCESS,
                    detail=outcome.reason,
                ))
            else:
                opportunities.append(outcome.opportunity)

        if state.advisory is not None and opportunities:
            logger.debug(f"Advisory {state.advisory.kind.value} noted; execution proceeds on detection")

        # One signer, one nonce sequence: opportunities execute in order
        for opportunity in sorted(opportunities, key=lambda o: o.estimated_net_profit, reverse=True):
            try:
                skip_reason = await self._execution_blocker(state)
                if skip_reason is None:
                    await self._execute(state, opportunity, params, detection_params.gas_estimate)
                    continue
            except Exception as e:
                logger.error(f"Could not execute {opportunity.pair_label}: {e}")
                skip_reason = f"{classify_error(e).value}: {e}"

            self._record(FlowStep(
                operation=FlowOperation.OPPORTUNITY_SKIPPED,
                pair=opportunity.pair_label,
                profit=Decimal(0),
                status=StepStatus.FAILED,
                detail=skip_reason,
            ))

    async def _execution_blocker(self, state: EngineState) -> Optional[str]:
        """Why the next opportunity must not execute, or None."""
        if not state.active:
            return "engine stopping"
        if state.daily_pnl <= state.max_drawdown:
            return "drawdown limit reached"
        if state.mode is EngineMode.DEMO:
            return "simulated gas exhausted" if state.gas_balance <= 0 else None
        if not await self._signer_can_trade():
            return f"{ErrorCategory.INSUFFICIENT_GAS.value}: signer paused until native balance is above the floor"
        return None

    async def _signer_can_trade(self) -> bool:
        signer = self.custody.resolve_signer()
        if not self.risk_manager.is_signer_paused(signer.address):
            return True

        now = time.monotonic()
        if now - self._last_gas_check < self.settings.risk.gas_recheck_interval:
            return False
        self._last_gas_check = now

        try:
            await self.executor.check_gas(signer.address)
        except InsufficientGasError:
            return False

        self.risk_manager.resume_signer(signer.address)
        return True

    async def _gas_estimate(self, state: EngineState) -> Decimal:
        """Per-leg gas cost in USD: live in REAL mode when possible, else the configured estimate."""
        static = self.settings.trading.gas_estimate_usd
        if state.mode is not EngineMode.REAL or self.chain is None or self.oracle is None:
            return static

        try:
            gas_price = await self.chain.priority_gas_price()
            native = await self.oracle.get_price(NATIVE_PRICE_SYMBOL)
        except Exception as e:
            logger.debug(f"Live gas estimate unavailable: {e}")
            return static

        if not native.is_available:
            return static
        live = estimate_gas_cost_usd(gas_price, GAS_ESTIMATES["UNISWAP_V3_SWAP"], native.price)
        return live if live > 0 else static

    # Execution

    async def _execute(self, state: EngineState, opportunity: ArbitrageOpportunity,
                       params: EngineParams, gas_estimate: Decimal) -> FlowStep:
        pair = opportunity.pair_label
        state.status = EngineStatus.EXECUTING
        logger.info(f"🎯 {pair} {opportunity.route_label} | est. net "
                    f"{format_currency(opportunity.estimated_net_profit)} (ROI {opportunity.roi:.3%})")

        try:
            if state.mode is EngineMode.DEMO:
                pnl, tx_hash = await self._simulate_round_trip(state, opportunity, params, gas_estimate)
            else:
                pnl, tx_hash = await self._real_round_trip(state, opportunity, params)
        except Exception as e:
            category = classify_error(e)
            if isinstance(e, InsufficientGasError) and state.mode is EngineMode.REAL and e.address:
                self.risk_manager.pause_signer(e.address)

            state.trades_failed += 1
            self.risk_manager.record_trade_result(pair, False, category=category)
            logger.error(f"Round trip failed for {pair} [{category.value}]: {e}")

            step = self._record(FlowStep(
                operation=FlowOperation.CROSS_DEX_ARBITRAGE,
                pair=pair,
                profit=Decimal(0),
                status=StepStatus.FAILED,
                tx_hash=getattr(e, "tx_hash", None),
                detail=f"{category.value}: {e}",
            ))
            await self._notify_error(f"{pair} round trip failed ({category.value})", str(e))
            return step
        finally:
            if state.active:
                state.status = EngineStatus.SCANNING

        state.daily_pnl += pnl
        state.trades_executed += 1
        self.risk_manager.record_trade_result(pair, True, pnl)

        step = self._record(FlowStep(
            operation=FlowOperation.CROSS_DEX_ARBITRAGE,
            pair=pair,
            profit=pnl,
            status=StepStatus.SUCCESS,
            tx_hash=tx_hash,
            detail=opportunity.route_label,
        ))

        if self.notifier is not None:
            try:
                await self.notifier.send_trade_alert(pair, pnl, tx_hash, state.mode.value)
            except Exception as e:
                logger.error(f"Failed to send trade alert: {e}")

        if state.mode is EngineMode.REAL and self.consolidation is not None:
            await self.consolidation.consolidate(self.registry.quote_token(), params.consolidation_threshold)

        return step

    @staticmethod
    def _fee_for(venue: Venue, opportunity: ArbitrageOpportunity) -> Optional[int]:
        return opportunity.fee_tier if venue is Venue.AMM_V3 else None

    async def _simulate_round_trip(self, state: EngineState, opportunity: ArbitrageOpportunity,
                                   params: EngineParams, gas_estimate: Decimal):
        quote = self.registry.quote_token()
        token = self.registry.get_token(opportunity.symbol)

        amount_in = denormalize_amount(params.trade_amount, quote.decimals)
        buy_out = denormalize_amount(opportunity.buy_amount_out, token.decimals)
        sell_out = denormalize_amount(opportunity.buy_amount_out * opportunity.sell_unit_price, quote.decimals)

        await self.executor.execute(
            quote, token, amount_in, compute_min_amount_out(buy_out, params.slippage_tolerance),
            opportunity.buy_venue, fee_tier=self._fee_for(opportunity.buy_venue, opportunity), simulate=True,
        )
        tx_hash = await self.executor.execute(
            token, quote, buy_out, compute_min_amount_out(sell_out, params.slippage_tolerance),
            opportunity.sell_venue, fee_tier=self._fee_for(opportunity.sell_venue, opportunity), simulate=True,
        )

        state.gas_balance -= 2 * await self._native_gas_per_leg(gas_estimate)
        return opportunity.estimated_net_profit, tx_hash

    async def _native_gas_per_leg(self, gas_estimate_usd: Decimal) -> Decimal:
        if self.oracle is None:
            return DEMO_GAS_PER_LEG
        try:
            native = await self.oracle.get_price(NATIVE_PRICE_SYMBOL)
        except Exception as e:
            logger.debug(f"Native price unavailable for simulated gas: {e}")
            return DEMO_GAS_PER_LEG
        if not native.is_available:
            return DEMO_GAS_PER_LEG
        return gas_estimate_usd / native.price

    async def _real_round_trip(self, state: EngineState, opportunity: ArbitrageOpportunity,
                               params: EngineParams):
        """
        Buy then sell on-chain, each leg awaited before the next.

        PnL is the signer's stablecoin balance after the sell minus the
        balance before the buy. If the sell fails the realized loss still
        counts against the session before the error propagates.
        """
        quote = self.registry.quote_token()
        token = self.registry.get_token(opportunity.symbol)
        signer = self.custody.resolve_signer()

        amount_in = denormalize_amount(params.trade_amount, quote.decimals)
        await self.custody.ensure_funds(quote, amount_in, signer=signer)

        quote_before = await self.chain.token_balance(quote.address, signer.address)
        token_before = await self.chain.token_balance(token.address, signer.address)

        buy_out = denormalize_amount(opportunity.buy_amount_out, token.decimals)
        buy_hash = await self.executor.execute(
            quote, token, amount_in, compute_min_amount_out(buy_out, params.slippage_tolerance),
            opportunity.buy_venue, fee_tier=self._fee_for(opportunity.buy_venue, opportunity),
            wait=True, signer=signer,
        )

        try:
            bought = await self.chain.token_balance(token.address, signer.address) - token_before
            if bought <= 0:
                raise ExecutionRevertedError(
                    f"Buy leg {buy_hash} delivered no {token.symbol}",
                    category=ErrorCategory.DEX_REVERT, tx_hash=buy_hash,
                )

            expected = normalize_amount(bought, token.decimals) * opportunity.sell_unit_price
            sell_out = denormalize_amount(expected, quote.decimals)
            sell_hash = await self.executor.execute(
                token, quote, bought, compute_min_amount_out(sell_out, params.slippage_tolerance),
                opportunity.sell_venue, fee_tier=self._fee_for(opportunity.sell_venue, opportunity),
                wait=True, signer=signer,
            )
        except Exception:
            try:
                quote_after = await self.chain.token_balance(quote.address, signer.address)
                state.daily_pnl += _signed_human(quote_after - quote_before, quote.decimals)
            except Exception as read_error:
                logger.error(f"Could not read balance after failed sell leg: {read_error}")
            logger.error(f"Sell leg failed after buy {buy_hash}; {token.symbol} remains with the signer")
            raise

        quote_after = await self.chain.token_balance(quote.address, signer.address)
        return _signed_human(quote_after - quote_before, quote.decimals), sell_hash

    # Notifications

    async def _notify_status(self, status: str, details: Optional[str] = None):
        if self.notifier is None:
            return
        try:
            await self.notifier.send_status_alert(status, details)
        except Exception as e:
            logger.error(f"Failed to send status alert: {e}")

    async def _notify_error(self, message: str, details: Optional[str] = None):
        if self.notifier is None:
            return
        try:
            await self.notifier.send_error_alert(message, additional_info=details)
        except Exception as e:
            logger.error(f"Failed to send error alert: {e}")

    # Status

    def get_status(self) -> Dict[str, Any]:
        """Current session state plus scanner, risk and journal summaries."""
        status = self.state.to_dict()
        status.update({
            "running": self.is_running,
            "scanner": self.scanner.get_scanner_metrics(),
            "risk": self.risk_manager.get_risk_status(),
            "recent_steps": [step.to_dict() for step in self.journal.recent(10)],
        })
        return status

    async def close(self):
        """Stop the session and release HTTP sessions."""
        self.stop("shutdown")
        if not await self.wait_stopped(timeout=self.settings.trading.execution_timeout):
            self.abort()
            await self.wait_stopped()

        if self.oracle is not None:
            await self.oracle.close()
        if self.notifier is not None:
            await self.notifier.close()


def build_engine(settings: Settings, w3=None) -> EngineScheduler:
    """Wire every component from settings into a ready scheduler."""
    from flowsniper.chain_client import ChainClient
    from flowsniper.consolidation import ConsolidationService
    from flowsniper.custody import CustodyManager
    from flowsniper.decimal_utils import TokenRegistry
    from flowsniper.journal import FlowJournal
    from flowsniper.price_oracle import PriceOracle
    from flowsniper.quote_aggregator import QuoteAggregator
    from flowsniper.risk_manager import RiskManager
    from flowsniper.scanner import OpportunityScanner, build_trigger
    from flowsniper.trade_executor import TradeExecutor
    from flowsniper.utils.notifications import NotificationManager

    chain = ChainClient(settings, w3)
    registry = TokenRegistry(chain)
    aggregator = QuoteAggregator(chain, registry)
    oracle = PriceOracle(settings, registry, quote_aggregator=aggregator)
    custody = CustodyManager(settings, chain)
    executor = TradeExecutor(settings, chain, registry, custody)
    journal = FlowJournal(settings.monitoring.journal_path)
    consolidation = ConsolidationService(chain, custody, executor, journal)
    scanner = OpportunityScanner(
        registry, oracle, aggregator, build_trigger(settings),
        settings.trading.scan_symbols, settings.trading.scan_batch_size,
    )

    return EngineScheduler(
        settings,
        scanner=scanner,
        executor=executor,
        custody=custody,
        risk_manager=RiskManager(settings),
        journal=journal,
        registry=registry,
        chain=chain,
        oracle=oracle,
        consolidation=consolidation,
        notifier=NotificationManager.from_monitoring(settings.monitoring),
    )


# Async Context Manager Support
class FlowSniperEngineManager:
    """Async context manager for the engine"""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine: Optional[EngineScheduler] = None

    async def __aenter__(self) -> EngineScheduler:
        self.engine = build_engine(self.settings)
        return self.engine

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.engine:
            await self.engine.close()


# Main execution function
async def main():
    """Main execution function"""
    import argparse
    from config.settings import load_settings
    from flowsniper.control import ControlStateStore, EngineController
    from flowsniper.utils.logger import configure_file_logging
    from flowsniper.watchdog import LivenessWatchdog

    parser = argparse.ArgumentParser(description='FlowSniper cross-DEX arbitrage engine')
    parser.add_argument('--mode', choices=['REAL', 'DEMO'], help='Override ENGINE_MODE')
    parser.add_argument('--trigger', choices=['timer', 'block'], help='Override SCAN_TRIGGER')
    parser.add_argument('--log-level', default=None, help='Log level')
    args = parser.parse_args()

    settings = load_settings()
    if args.trigger:
        settings.trading.scan_trigger = args.trigger
    configure_file_logging(settings.monitoring.log_file_path, args.log_level or settings.monitoring.log_level)

    async with FlowSniperEngineManager(settings) as engine:
        controller = EngineController(engine, ControlStateStore(settings.trading.control_state_path))
        watchdog = LivenessWatchdog.from_settings(engine, settings)

        try:
            if await controller.restore() is None:
                result = await controller.start(args.mode)
                if not result["success"]:
                    logger.error(f"Engine failed to start: {result['error']}")
                    return

            watchdog.start()

            # The watchdog may replace the loop task; keep waiting while a session runs
            while True:
                await engine.wait_stopped()
                await asyncio.sleep(settings.risk.watchdog_restart_delay + 1)
                if not engine.is_running:
                    break
        except KeyboardInterrupt:
            logger.info("Engine stopped by user")
        except Exception as e:
            logger.error(f"Engine error: {e}")
        finally:
            await watchdog.stop()


if __name__ == "__main__":
    asyncio.run(main())
