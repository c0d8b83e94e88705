# Engine logic tests
# tests/test_bot.py
"""
Engine Logic Tests for FlowSniper
Tests the scheduler session lifecycle, execution flow, circuit breakers,
watchdog restarts and console handlers
"""

import asyncio
import json
import time
from decimal import Decimal
from unittest.mock import AsyncMock, Mock

import pytest
from eth_account import Account

from flowsniper.arbitrage_detector import Detection
from flowsniper.control import ControlStateStore, EngineController
from flowsniper.engine import DEMO_GAS_PER_LEG, EngineScheduler
from flowsniper.exceptions import (
    CustodyError,
    ErrorCategory,
    ExecutionRevertedError,
    InsufficientAllowanceError,
    InsufficientGasError,
    QuoteFailure,
)
from flowsniper.journal import FlowJournal
from flowsniper.risk_manager import RiskManager, classify_error
from flowsniper.scanner import TimerTrigger
from flowsniper.types import (
    Advisory,
    AdvisoryKind,
    ArbitrageOpportunity,
    EngineMode,
    EngineParams,
    EngineState,
    EngineStatus,
    FlowOperation,
    FlowStep,
    PriceResult,
    PriceSourceTag,
    StepStatus,
    Venue,
)
from flowsniper.utils.logger import get_logger
from flowsniper.watchdog import LivenessWatchdog

logger = get_logger(__name__)

D = Decimal


def make_opportunity(net="0.21", symbol="WMATIC", buy_venue=Venue.AMM_V2, sell_venue=Venue.AMM_V3):
    return ArbitrageOpportunity(
        symbol=symbol,
        buy_venue=buy_venue,
        sell_venue=sell_venue,
        fee_tier=3000,
        buy_amount_out=D("5"),
        sell_unit_price=D("2.05"),
        estimated_gross_profit=D("0.25"),
        estimated_net_profit=D(net),
        notional_in=D("10"),
    )


def found(*opportunities):
    """One scan cycle's results for the given opportunities"""
    return [(o.symbol, Detection(o, "opportunity", o.estimated_net_profit)) for o in opportunities]


def cycles(*results):
    """scan_batch side effect: the given cycles in order, then empty cycles"""
    queue = list(results)

    def scan_batch(symbols, notional, params):
        return queue.pop(0) if queue else []

    return scan_batch


async def wait_until(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def scanner():
    """Scanner double on a fast timer"""
    mock_scanner = Mock()
    mock_scanner.trigger = TimerTrigger(0.01)
    mock_scanner.next_batch.return_value = ["WMATIC"]
    mock_scanner.scan_batch = AsyncMock(return_value=[])
    mock_scanner.get_scanner_metrics.return_value = {"total_scans": 0}
    mock_scanner.aggregator = Mock()
    return mock_scanner


@pytest.fixture
def executor():
    mock_executor = Mock()
    mock_executor.execute = AsyncMock(return_value="0xSIM_test")
    mock_executor.check_gas = AsyncMock(return_value=D("5"))
    mock_executor.transfer = AsyncMock(return_value="0xwithdraw")
    return mock_executor


@pytest.fixture
def journal():
    return FlowJournal()


@pytest.fixture
def scheduler(settings, scanner, executor, registry, journal):
    return EngineScheduler(
        settings,
        scanner=scanner,
        executor=executor,
        custody=Mock(),
        risk_manager=RiskManager(settings),
        journal=journal,
        registry=registry,
    )


def steps(journal, operation, status=None):
    return [s for s in journal.recent(1000)
            if s.operation is operation and (status is None or s.status is status)]


class TestSessionLifecycle:
    """Start, hot-update and cooperative stop"""

    @pytest.mark.asyncio
    async def test_start_creates_fresh_session(self, scheduler, settings):
        state = await scheduler.start("DEMO", {"trade_amount": "2"})

        assert state.active
        assert state.status is EngineStatus.SCANNING
        assert state.mode is EngineMode.DEMO
        assert state.params.trade_amount == D("2")
        assert state.gas_balance == settings.trading.initial_demo_gas
        assert scheduler.is_running

        scheduler.stop()
        assert await scheduler.wait_stopped(timeout=2)
        assert state.status is EngineStatus.STOPPED
        logger.info("✅ Session lifecycle OK")

    @pytest.mark.asyncio
    async def test_hot_update_keeps_session(self, scheduler):
        state = await scheduler.start("DEMO")
        task = scheduler._task

        updated = await scheduler.start(params={"trade_amount": "3", "slippage_tolerance": "0.01"})

        assert updated is state
        assert scheduler._task is task
        assert state.params.trade_amount == D("3")
        assert state.params.slippage_tolerance == D("0.01")

        scheduler.stop()
        await scheduler.wait_stopped(timeout=2)

    @pytest.mark.asyncio
    async def test_invalid_update_rejected(self, scheduler):
        await scheduler.start("DEMO")

        with pytest.raises(ValueError):
            scheduler.update_params({"slippage_tolerance": "1.5"})
        assert scheduler.state.params.slippage_tolerance == D("0.005")

        scheduler.stop()
        await scheduler.wait_stopped(timeout=2)

    @pytest.mark.asyncio
    async def test_idle_stop_is_immediate(self, scheduler, scanner):
        scanner.trigger = TimerTrigger(60)
        await scheduler.start("DEMO")
        await wait_until(lambda: scanner.scan_batch.await_count == 1)

        scheduler.stop("manual stop")

        assert await scheduler.wait_stopped(timeout=1)
        assert scheduler.state.stop_reason == "manual stop"
        assert scheduler.state.status is EngineStatus.STOPPED

    @pytest.mark.asyncio
    async def test_stop_lets_in_flight_trade_finish(self, scheduler, scanner, executor, journal):
        """A stop requested mid-trade completes the trade and starts no new cycle"""
        trade_started = asyncio.Event()
        release = asyncio.Event()

        async def slow_execute(*args, **kwargs):
            trade_started.set()
            await release.wait()
            return "0xSIM_slow"

        executor.execute.side_effect = slow_execute
        scanner.scan_batch.side_effect = cycles(found(make_opportunity()))

        await scheduler.start("DEMO")
        await asyncio.wait_for(trade_started.wait(), timeout=2)

        scheduler.stop("manual stop")
        await asyncio.sleep(0.05)
        assert scheduler.is_running, "In-flight trade is not cancelled"

        release.set()
        assert await scheduler.wait_stopped(timeout=2)

        assert scheduler.state.trades_executed == 1
        assert scanner.scan_batch.await_count == 1
        assert len(steps(journal, FlowOperation.CROSS_DEX_ARBITRAGE, StepStatus.SUCCESS)) == 1
        logger.info("✅ Cooperative stop honoured the in-flight trade")

    @pytest.mark.asyncio
    async def test_status_stopped_once_cycle_finishes(self, scheduler, scanner, executor):
        trade_started = asyncio.Event()
        release = asyncio.Event()

        async def slow_execute(*args, **kwargs):
            trade_started.set()
            await release.wait()
            return "0xSIM_slow"

        scanner.trigger = TimerTrigger(60)
        executor.execute.side_effect = slow_execute
        scanner.scan_batch.side_effect = cycles(found(make_opportunity()))

        await scheduler.start("DEMO")
        await asyncio.wait_for(trade_started.wait(), timeout=2)
        scheduler.stop("manual stop")
        assert scheduler.state.status is EngineStatus.EXECUTING

        release.set()
        await wait_until(lambda: scheduler.state.trades_executed == 1)
        await wait_until(lambda: scheduler.state.status is EngineStatus.STOPPED)

        # The next tick is a minute away; status must not wait for it
        assert scheduler.is_running
        scheduler.abort()
        await scheduler.wait_stopped(timeout=2)

    @pytest.mark.asyncio
    async def test_restart_replaces_session(self, scheduler):
        first = await scheduler.start("DEMO", {"trade_amount": "4"})

        second = await scheduler.restart()

        assert second is not first
        assert second.active
        assert second.params.trade_amount == D("4")
        assert not first.active

        scheduler.stop()
        await scheduler.wait_stopped(timeout=2)


class TestDemoExecution:

    @pytest.mark.asyncio
    async def test_simulated_round_trip(self, scheduler, scanner, executor, journal, settings):
        scanner.scan_batch.side_effect = cycles(found(make_opportunity()))

        await scheduler.start("DEMO")
        scheduler.set_advisory('```json\n{"action": "HOLD", "reason": "volatile"}\n```')
        await wait_until(lambda: scheduler.state.trades_executed == 1)
        scheduler.stop()
        await scheduler.wait_stopped(timeout=2)

        state = scheduler.state
        assert state.daily_pnl == D("0.21")
        assert state.gas_balance == settings.trading.initial_demo_gas - 2 * DEMO_GAS_PER_LEG
        assert state.advisory.kind is AdvisoryKind.HOLD, "Advisory never gates execution"

        assert executor.execute.await_count == 2
        buy_call, sell_call = executor.execute.await_args_list
        assert buy_call.kwargs["simulate"] and sell_call.kwargs["simulate"]
        assert buy_call.args[4] is Venue.AMM_V2 and buy_call.kwargs["fee_tier"] is None
        assert sell_call.args[4] is Venue.AMM_V3 and sell_call.kwargs["fee_tier"] == 3000

        step = steps(journal, FlowOperation.CROSS_DEX_ARBITRAGE)[0]
        assert step.profit == D("0.21")
        assert step.tx_hash == "0xSIM_test"

    @pytest.mark.asyncio
    async def test_native_price_drives_simulated_gas(self, scheduler, scanner, settings):
        oracle = Mock()
        oracle.get_price = AsyncMock(return_value=PriceResult(D("0.4"), PriceSourceTag.BINANCE))
        scheduler.oracle = oracle
        scanner.scan_batch.side_effect = cycles(found(make_opportunity()))

        await scheduler.start("DEMO")
        await wait_until(lambda: scheduler.state.trades_executed == 1)
        scheduler.stop()
        await scheduler.wait_stopped(timeout=2)

        # 0.02 USD per leg at 0.40 USD per POL
        expected = settings.trading.initial_demo_gas - 2 * (settings.trading.gas_estimate_usd / D("0.4"))
        assert scheduler.state.gas_balance == expected

    @pytest.mark.asyncio
    async def test_best_opportunity_first(self, scheduler, scanner, executor, journal):
        scanner.scan_batch.side_effect = cycles(found(
            make_opportunity("0.05", symbol="WETH"), make_opportunity("0.30", symbol="WMATIC"),
        ))

        await scheduler.start("DEMO")
        await wait_until(lambda: scheduler.state.trades_executed == 2)
        scheduler.stop()
        await scheduler.wait_stopped(timeout=2)

        pairs = [s.pair for s in steps(journal, FlowOperation.CROSS_DEX_ARBITRAGE)]
        assert pairs == ["WMATIC/USDT", "WETH/USDT"]

    @pytest.mark.asyncio
    async def test_gas_exhaustion_stops_session(self, scheduler, scanner, settings):
        settings.trading.initial_demo_gas = 2 * DEMO_GAS_PER_LEG
        scanner.scan_batch.side_effect = cycles(found(make_opportunity()))

        await scheduler.start("DEMO")

        assert await scheduler.wait_stopped(timeout=2)
        assert scheduler.state.gas_balance == 0
        assert scheduler.state.stop_reason == "Simulated gas balance exhausted"
        assert scanner.scan_batch.await_count == 1


class TestCircuitBreakers:

    @pytest.mark.asyncio
    async def test_drawdown_at_limit_stops_next_cycle(self, scheduler, scanner):
        scanner.scan_batch.side_effect = cycles(found(make_opportunity("-5")))

        await scheduler.start("DEMO", {"max_drawdown": "-5"})

        assert await scheduler.wait_stopped(timeout=2)
        assert scheduler.state.daily_pnl == D("-5")
        assert scheduler.state.stop_reason.startswith("Drawdown limit reached")
        assert scanner.scan_batch.await_count == 1, "No cycle after the breach"
        assert not scheduler.state.active
        logger.info("✅ Drawdown breaker tripped at the limit")

    @pytest.mark.asyncio
    async def test_drawdown_blocks_rest_of_cycle(self, scheduler, scanner, journal):
        scanner.scan_batch.side_effect = cycles(found(
            make_opportunity("-2", symbol="WMATIC"), make_opportunity("-3", symbol="WETH"),
        ))

        await scheduler.start("DEMO", {"max_drawdown": "-2"})
        await scheduler.wait_stopped(timeout=2)

        assert scheduler.state.trades_executed == 1
        skipped = steps(journal, FlowOperation.OPPORTUNITY_SKIPPED)
        assert [s.pair for s in skipped] == ["WETH/USDT"]
        assert skipped[0].detail == "drawdown limit reached"

    @pytest.mark.asyncio
    async def test_watchdog_leaves_tripped_engine_alone(self, scheduler, scanner):
        scanner.scan_batch.side_effect = cycles(found(make_opportunity("-5")))
        await scheduler.start("DEMO", {"max_drawdown": "-5"})
        await scheduler.wait_stopped(timeout=2)

        watchdog = LivenessWatchdog(scheduler, inactivity_timeout=0, restart_delay=0,
                                    clock=lambda: time.time() + 1000)

        assert not await watchdog.check()
        assert not scheduler.is_running


class TestScanOutcomes:

    @pytest.mark.asyncio
    async def test_pulse_and_failed_symbols_are_journaled(self, scheduler, scanner, journal):
        scanner.scan_batch.side_effect = cycles([
            ("WMATIC", Detection(None, "net 0.010000 below target 0.010000", D("0.01"))),
            ("WETH", QuoteFailure("connection refused")),
        ])

        await scheduler.start("DEMO")
        await wait_until(lambda: len(journal) >= 2)
        scheduler.stop()
        await scheduler.wait_stopped(timeout=2)

        pulse = steps(journal, FlowOperation.SCAN_PULSE)[0]
        assert pulse.status is StepStatus.SUCCESS
        assert pulse.detail.startswith("net 0.010000 below target")

        failed = steps(journal, FlowOperation.OPPORTUNITY_SKIPPED)[0]
        assert failed.status is StepStatus.FAILED
        assert failed.pair == "WETH/USDT"
        assert failed.detail.startswith("NETWORK")

    def test_journal_refreshes_activity(self, scheduler, journal):
        scheduler.state.last_activity = 0

        journal.record(FlowStep(FlowOperation.SCAN_PULSE, "WMATIC/USDT", D(0), StepStatus.SUCCESS, detail="pulse"))

        assert scheduler.state.last_activity > 0

    def test_journal_file_skips_pulses(self, tmp_path):
        path = tmp_path / "flowsteps.jsonl"
        disk_journal = FlowJournal(str(path))

        disk_journal.record(FlowStep(FlowOperation.SCAN_PULSE, "WMATIC/USDT", D(0), StepStatus.SUCCESS,
                                     detail="no spread"))
        disk_journal.record(FlowStep(FlowOperation.OPPORTUNITY_SKIPPED, "WETH/USDT", D(0), StepStatus.FAILED,
                                     detail="NETWORK: timeout"))

        lines = path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 1
        assert json.loads(lines[0])["operation"] == "OPPORTUNITY_SKIPPED"
        assert len(disk_journal) == 2

    def test_status_snapshot(self, scheduler):
        status = scheduler.get_status()

        assert status["active"] is False
        assert status["mode"] == "DEMO"
        assert status["scanner"] == {"total_scans": 0}
        assert "risk" in status and "recent_steps" in status


class TestRealExecution:
    """REAL round trips against chain/custody doubles"""

    OPERATOR = Account.create().address

    @pytest.fixture
    def real_scheduler(self, scheduler, settings, registry):
        signer = Mock()
        signer.address = self.OPERATOR
        scheduler.custody.resolve_signer.return_value = signer
        scheduler.custody.ensure_funds = AsyncMock(return_value=0)

        scheduler.chain = Mock()
        scheduler.consolidation = Mock()
        scheduler.consolidation.consolidate = AsyncMock(return_value=None)
        return scheduler

    @pytest.mark.asyncio
    async def test_realized_pnl_from_balance_delta(self, real_scheduler, scanner, executor, registry):
        real_scheduler.chain.token_balance = AsyncMock(side_effect=[
            100_000_000,        # USDT before
            0,                  # WMATIC before
            5 * 10 ** 18,       # WMATIC after buy
            100_210_000,        # USDT after sell
        ])
        executor.execute.side_effect = ["0xbuy", "0xsell"]
        scanner.scan_batch.side_effect = cycles(found(make_opportunity()))

        await real_scheduler.start("REAL")
        await wait_until(lambda: real_scheduler.state.trades_executed == 1)
        real_scheduler.stop()
        await real_scheduler.wait_stopped(timeout=2)

        assert real_scheduler.state.daily_pnl == D("0.21")
        real_scheduler.custody.ensure_funds.assert_awaited_once()

        buy_call, sell_call = executor.execute.await_args_list
        assert buy_call.args[2] == 500_000          # 0.5 USDT notional
        assert buy_call.kwargs["wait"] is True
        assert sell_call.args[2] == 5 * 10 ** 18    # sells what was bought
        assert sell_call.kwargs["fee_tier"] == 3000

        real_scheduler.consolidation.consolidate.assert_awaited_once_with(
            registry.quote_token(), real_scheduler.state.params.consolidation_threshold
        )

    @pytest.mark.asyncio
    async def test_failed_sell_counts_realized_loss(self, real_scheduler, scanner, executor, journal):
        real_scheduler.chain.token_balance = AsyncMock(side_effect=[
            100_000_000, 0, 5 * 10 ** 18, 99_500_000,
        ])
        executor.execute.side_effect = [
            "0xbuy",
            ExecutionRevertedError("execution reverted: Too little received",
                                   category=ErrorCategory.DEX_REVERT, tx_hash="0xsell"),
        ]
        scanner.scan_batch.side_effect = cycles(found(make_opportunity()))

        await real_scheduler.start("REAL")
        await wait_until(lambda: real_scheduler.state.trades_failed == 1)
        real_scheduler.stop()
        await real_scheduler.wait_stopped(timeout=2)

        assert real_scheduler.state.daily_pnl == D("-0.5")
        failed = steps(journal, FlowOperation.CROSS_DEX_ARBITRAGE, StepStatus.FAILED)[0]
        assert failed.detail.startswith("DEX_REVERT")
        assert failed.tx_hash == "0xsell"
        real_scheduler.consolidation.consolidate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_buy_aborts_before_sell(self, real_scheduler, scanner, executor):
        real_scheduler.chain.token_balance = AsyncMock(side_effect=[100_000_000, 0, 0, 99_990_000])
        scanner.scan_batch.side_effect = cycles(found(make_opportunity()))

        await real_scheduler.start("REAL")
        await wait_until(lambda: real_scheduler.state.trades_failed == 1)
        real_scheduler.stop()
        await real_scheduler.wait_stopped(timeout=2)

        assert executor.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_gas_failure_pauses_signer(self, real_scheduler, scanner, executor, settings):
        executor.execute.side_effect = InsufficientGasError("low", address=self.OPERATOR)
        real_scheduler.chain.token_balance = AsyncMock(return_value=100_000_000)
        scanner.scan_batch.side_effect = cycles(found(make_opportunity()))

        await real_scheduler.start("REAL")
        await wait_until(lambda: real_scheduler.state.trades_failed == 1)
        real_scheduler.stop()
        await real_scheduler.wait_stopped(timeout=2)

        assert real_scheduler.risk_manager.is_signer_paused(self.OPERATOR)

    @pytest.mark.asyncio
    async def test_paused_signer_skips_until_gas_returns(self, real_scheduler, scanner, executor,
                                                         journal, settings):
        settings.risk.gas_recheck_interval = 0
        executor.check_gas.side_effect = InsufficientGasError("still low", address=self.OPERATOR)
        scanner.scan_batch.side_effect = cycles(found(make_opportunity()))

        await real_scheduler.start("REAL")
        # start() resets the session; pause again before the first cycle runs
        real_scheduler.risk_manager.pause_signer(self.OPERATOR)
        await wait_until(lambda: len(steps(journal, FlowOperation.OPPORTUNITY_SKIPPED)) == 1)
        real_scheduler.stop()
        await real_scheduler.wait_stopped(timeout=2)

        skipped = steps(journal, FlowOperation.OPPORTUNITY_SKIPPED)[0]
        assert skipped.detail.startswith("INSUFFICIENT_GAS")
        executor.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_signer_skips_every_opportunity(self, real_scheduler, scanner, executor, journal):
        real_scheduler.custody.resolve_signer.side_effect = CustodyError("No trusted signer")
        scanner.scan_batch.side_effect = cycles(found(
            make_opportunity("0.3", symbol="WETH"),
            make_opportunity("0.2", symbol="WMATIC"),
        ))

        await real_scheduler.start("REAL")
        await wait_until(lambda: len(steps(journal, FlowOperation.OPPORTUNITY_SKIPPED)) == 2)
        real_scheduler.stop()
        await real_scheduler.wait_stopped(timeout=2)

        skipped = steps(journal, FlowOperation.OPPORTUNITY_SKIPPED, StepStatus.FAILED)
        assert [s.pair for s in skipped] == ["WETH/USDT", "WMATIC/USDT"]
        assert all("No trusted signer" in s.detail for s in skipped)
        executor.execute.assert_not_awaited()
        logger.info("✅ Signer failure journaled per opportunity")

    @pytest.mark.asyncio
    async def test_gas_recheck_network_error_is_journaled(self, real_scheduler, scanner, executor,
                                                          journal, settings):
        settings.risk.gas_recheck_interval = 0
        executor.check_gas.side_effect = ConnectionError("rpc down")
        scanner.scan_batch.side_effect = cycles(found(make_opportunity()))

        await real_scheduler.start("REAL")
        real_scheduler.risk_manager.pause_signer(self.OPERATOR)
        await wait_until(lambda: len(steps(journal, FlowOperation.OPPORTUNITY_SKIPPED)) == 1)
        real_scheduler.stop()
        await real_scheduler.wait_stopped(timeout=2)

        skipped = steps(journal, FlowOperation.OPPORTUNITY_SKIPPED)[0]
        assert skipped.status is StepStatus.FAILED
        assert skipped.detail == "NETWORK: rpc down"
        executor.execute.assert_not_awaited()


class TestWatchdog:

    @pytest.fixture
    def idle_scheduler(self):
        mock_scheduler = Mock()
        mock_scheduler.state = EngineState(mode=EngineMode.DEMO, params=Mock(), active=True, last_activity=0)
        mock_scheduler.restart = AsyncMock()
        return mock_scheduler

    @pytest.mark.asyncio
    async def test_restarts_silent_engine(self, idle_scheduler):
        watchdog = LivenessWatchdog(idle_scheduler, inactivity_timeout=300, restart_delay=2,
                                    clock=lambda: 1000)

        assert await watchdog.check()
        idle_scheduler.restart.assert_awaited_once_with(delay=2)
        assert watchdog.restarts == 1

    @pytest.mark.asyncio
    async def test_recent_activity_is_fine(self, idle_scheduler):
        idle_scheduler.state.last_activity = 900
        watchdog = LivenessWatchdog(idle_scheduler, inactivity_timeout=300, clock=lambda: 1000)

        assert not await watchdog.check()
        idle_scheduler.restart.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_inactive_engine_not_restarted(self, idle_scheduler):
        idle_scheduler.state.active = False
        watchdog = LivenessWatchdog(idle_scheduler, clock=lambda: 10 ** 6)

        assert not await watchdog.check()

    @pytest.mark.asyncio
    async def test_restart_on_real_scheduler(self, scheduler):
        await scheduler.start("DEMO", {"trade_amount": "7"})
        old_state = scheduler.state
        old_state.last_activity = time.time() - 1000

        watchdog = LivenessWatchdog(scheduler, inactivity_timeout=300, restart_delay=0)
        assert await watchdog.check()

        assert scheduler.state is not old_state
        assert scheduler.state.active
        assert scheduler.state.params.trade_amount == D("7")

        scheduler.stop()
        await scheduler.wait_stopped(timeout=2)

    @pytest.mark.asyncio
    async def test_background_task_lifecycle(self, idle_scheduler):
        watchdog = LivenessWatchdog(idle_scheduler, check_interval=0.01, inactivity_timeout=300,
                                    restart_delay=0, clock=lambda: 1000)

        watchdog.start()
        await wait_until(lambda: watchdog.restarts >= 1)
        await watchdog.stop()

        assert watchdog._task is None


class TestController:
    """Console handlers return result dicts instead of raising"""

    @pytest.fixture
    def controller(self, scheduler, tmp_path):
        return EngineController(scheduler, ControlStateStore(str(tmp_path / "engine_config.json")))

    @pytest.mark.asyncio
    async def test_start_and_stop_persist_desired_state(self, controller, scheduler, tmp_path):
        result = await controller.start("DEMO", {"trade_amount": "2"})
        assert result == {"success": True, "running": True, "mode": "DEMO"}

        saved = json.loads((tmp_path / "engine_config.json").read_text())
        assert saved["is_running"] is True
        assert saved["params"]["trade_amount"] == "2"

        assert (await controller.stop())["success"]
        await scheduler.wait_stopped(timeout=2)
        assert json.loads((tmp_path / "engine_config.json").read_text())["is_running"] is False

    @pytest.mark.asyncio
    async def test_restore_resumes_saved_session(self, scheduler, tmp_path):
        path = tmp_path / "engine_config.json"
        path.write_text(json.dumps({"is_running": True, "mode": "DEMO", "params": {"trade_amount": "3"}}))

        controller = EngineController(scheduler, ControlStateStore(str(path)))
        result = await controller.restore()

        assert result["success"]
        assert scheduler.state.params.trade_amount == D("3")
        scheduler.stop()
        await scheduler.wait_stopped(timeout=2)

    @pytest.mark.asyncio
    async def test_nothing_to_restore(self, controller):
        assert await controller.restore() is None

    @pytest.mark.asyncio
    async def test_config_validation_failure(self, controller):
        result = await controller.config({"max_drawdown": "3"})

        assert result["success"] is False
        assert "max_drawdown" in result["error"]

    @pytest.mark.asyncio
    async def test_config_applies_to_stopped_engine(self, controller, scheduler):
        result = await controller.config({"min_profit_fraction": "0.002", "unknown": 1})

        assert result["success"]
        assert scheduler.state.params.min_profit_fraction == D("0.002")
        assert result["params"]["min_profit_fraction"] == "0.002"

    @pytest.mark.asyncio
    async def test_withdraw(self, controller, executor, registry, journal):
        destination = Account.create().address

        result = await controller.withdraw("USDT", destination, "1.5")

        assert result == {"success": True, "txHash": "0xwithdraw"}
        token, to, amount = executor.transfer.await_args.args
        assert token == registry.get_token("USDT")
        assert (to, amount) == (destination, 1_500_000)
        assert len(steps(journal, FlowOperation.WITHDRAWAL, StepStatus.SUCCESS)) == 1

    @pytest.mark.asyncio
    async def test_withdraw_bad_destination(self, controller, executor, journal):
        result = await controller.withdraw("USDT", "not-an-address", "1")

        assert result["success"] is False
        executor.transfer.assert_not_awaited()
        assert len(steps(journal, FlowOperation.WITHDRAWAL, StepStatus.FAILED)) == 1

    @pytest.mark.asyncio
    async def test_withdraw_failure_is_categorized(self, controller, executor):
        executor.transfer.side_effect = InsufficientGasError("native balance below floor")

        result = await controller.withdraw("USDT", Account.create().address, "1")

        assert result == {
            "success": False,
            "error": "native balance below floor",
            "category": "INSUFFICIENT_GAS",
        }

    @pytest.mark.asyncio
    async def test_demo_recharge(self, controller, scheduler, journal):
        oracle = Mock()
        oracle.get_price = AsyncMock(return_value=PriceResult(D("0.5"), PriceSourceTag.BYBIT))
        scheduler.oracle = oracle
        before = scheduler.state.gas_balance

        result = await controller.recharge("1")

        assert result["success"]
        assert result["txHash"].startswith("0xSIM_")
        assert scheduler.state.gas_balance == before + D("2")
        assert len(steps(journal, FlowOperation.GAS_RECHARGE, StepStatus.SUCCESS)) == 1

    @pytest.mark.asyncio
    async def test_liquidate_sells_volatile_balances(self, scheduler, scanner, executor, registry,
                                                     journal, tmp_path):
        signer = Mock()
        signer.address = Account.create().address
        scheduler.custody.resolve_signer.return_value = signer

        wmatic, link, usdt = (registry.get_token(s) for s in ("WMATIC", "LINK", "USDT"))
        balances = {wmatic.address: 2 * 10 ** 18, link.address: 3 * 10 ** 18, usdt.address: 50_000_000}
        scheduler.chain = Mock()
        scheduler.chain.token_balance = AsyncMock(side_effect=lambda token, owner: balances.get(token, 0))
        scanner.aggregator.get_v2_amount_out = AsyncMock(return_value=1_000_000)

        async def sell(token_in, token_out, amount_in, min_out, venue, **kwargs):
            if token_in.symbol == "LINK":
                raise ExecutionRevertedError("execution reverted: K", category=ErrorCategory.DEX_REVERT)
            return "0xliq"

        executor.execute.side_effect = sell
        controller = EngineController(scheduler, ControlStateStore(str(tmp_path / "engine_config.json")))

        result = await controller.liquidate()

        assert result == {"success": False, "sold": [{"symbol": "WMATIC", "txHash": "0xliq"}], "failed": ["LINK"]}
        wmatic_sale = executor.execute.await_args_list[0]
        assert wmatic_sale.args == (wmatic, usdt, 2 * 10 ** 18, 995_000, Venue.AMM_V2)
        assert wmatic_sale.kwargs == {"wait": True, "signer": signer}
        assert executor.execute.await_count == 2, "Stablecoins and empty balances are not sold"

        assert len(steps(journal, FlowOperation.LIQUIDATION, StepStatus.SUCCESS)) == 1
        failed = steps(journal, FlowOperation.LIQUIDATION, StepStatus.FAILED)[0]
        assert failed.detail.startswith("DEX_REVERT")
        assert json.loads((tmp_path / "engine_config.json").read_text())["is_running"] is False
        logger.info("✅ Liquidation sold volatile balances back to USDT")

    @pytest.mark.asyncio
    async def test_liquidate_without_signer(self, controller, scheduler, executor):
        scheduler.custody.resolve_signer.side_effect = CustodyError("No trusted signer")

        result = await controller.liquidate()

        assert result["success"] is False
        assert result["error"] == "No trusted signer"
        executor.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_recharge_rejects_non_positive(self, controller):
        assert (await controller.recharge("0"))["success"] is False

    @pytest.mark.asyncio
    async def test_status_includes_signer(self, controller, scheduler):
        scheduler.custody.operator_address = "0xoperator"
        scheduler.custody.owner_address = None
        scheduler.custody.is_paired = False

        status = await controller.status()

        assert status["desired_running"] is False
        assert status["signer"] == {"operator": "0xoperator", "owner": None, "paired": False}


class TestAdvisory:

    @pytest.mark.parametrize("payload,kind", [
        ({"action": "HOLD", "reason": "thin books"}, AdvisoryKind.HOLD),
        ('{"action": "wait"}', AdvisoryKind.WAIT),
        ('```json\n{"suggestedStrategy": "CROSS_DEX", "recommendation": "spreads widening"}\n```', AdvisoryKind.ACT),
        ({"action": "EXECUTE"}, AdvisoryKind.ACT),
    ])
    def test_parse(self, payload, kind):
        assert Advisory.parse(payload).kind is kind

    @pytest.mark.parametrize("payload", ["not json", 42, {"action": "PANIC"}, {}])
    def test_unusable_payloads(self, payload):
        assert Advisory.parse(payload) is None

    def test_scheduler_stores_advisory(self, scheduler):
        advisory = scheduler.set_advisory({"recommendation": "go", "suggestedStrategy": "ARB"})

        assert advisory.strategy == "ARB"
        assert scheduler.get_status()["advisory"] == "ACT"


class TestErrorClassification:

    @pytest.mark.parametrize("error,category", [
        (InsufficientGasError("x"), ErrorCategory.INSUFFICIENT_GAS),
        (InsufficientAllowanceError("x"), ErrorCategory.INSUFFICIENT_ALLOWANCE),
        (ExecutionRevertedError("x", category=ErrorCategory.DEX_REVERT), ErrorCategory.DEX_REVERT),
        (TimeoutError(), ErrorCategory.NETWORK),
        (ValueError("insufficient funds for gas * price + value"), ErrorCategory.INSUFFICIENT_GAS),
        (ValueError("ERC20: transfer amount exceeds allowance"), ErrorCategory.INSUFFICIENT_ALLOWANCE),
        (ValueError("User rejected the request"), ErrorCategory.USER_REJECTED),
        (ValueError("execution reverted: UniswapV2Router: INSUFFICIENT_OUTPUT_AMOUNT"), ErrorCategory.DEX_REVERT),
        (ValueError("429 Too Many Requests"), ErrorCategory.NETWORK),
        (ValueError("something odd"), ErrorCategory.UNKNOWN),
    ])
    def test_classify(self, error, category):
        assert classify_error(error) is category


class TestEngineParams:

    @pytest.fixture
    def params(self, settings):
        return EngineParams.from_settings(settings)

    def test_defaults_from_settings(self, params, settings):
        assert params.trade_amount == settings.trading.trade_amount
        assert params.max_drawdown == settings.risk.max_drawdown

    def test_updates_are_copies(self, params):
        updated = params.updated({"trade_amount": 2, "ignored": "x", "slippage_tolerance": None})

        assert updated.trade_amount == D("2")
        assert params.trade_amount == D("0.5")
        assert updated.slippage_tolerance == params.slippage_tolerance

    @pytest.mark.parametrize("changes", [
        {"trade_amount": "0"},
        {"slippage_tolerance": "1"},
        {"min_profit_fraction": "-0.1"},
        {"consolidation_threshold": "-1"},
        {"max_drawdown": "0.01"},
    ])
    def test_validation(self, params, changes):
        with pytest.raises(ValueError):
            params.updated(changes)

    def test_circuit_breakers(self, settings, params):
        risk = RiskManager(settings)
        state = EngineState(mode=EngineMode.REAL, params=params, daily_pnl=D("-4.99"))
        assert risk.check_circuit_breakers(state) is None

        state.daily_pnl = params.max_drawdown
        assert risk.check_circuit_breakers(state).reason == "DRAWDOWN"

        demo = EngineState(mode=EngineMode.DEMO, params=params, gas_balance=D(0))
        assert risk.check_circuit_breakers(demo).reason == "GAS_EXHAUSTED"
