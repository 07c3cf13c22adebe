"""
Main Bot Runner for the Up/Down Momentum Strategy.

Wires market data, the opportunity detector, the trader and the hedge engine
into one bot that runs in paper mode (default) or live mode.

Key Features:
- Paper mode by default (NEVER trades live unless --live flag)
- Kill switch check every snapshot
- Independent sweeps for fills/sells, market closure and summaries
- Deferred hedge-sell jobs run beside the monitoring loop
- Balance resync on startup; clean shutdown on Ctrl+C

Example:
    >>> bot = MomentumBot(paper_mode=True)
    >>> await bot.run()

Components:
    - MarketDataSource: Builds a snapshot of the current period's markets
    - OpportunityDetector: Momentum and dual-limit entry signals
    - Trader: Ledger, buys, sell/stop-loss sweep, redemption sweep
    - HedgeEngine: Early and standard hedges for one-sided dual-limit fills
    - TrendOracle: Rolling price trends for the early hedge
"""

import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from ..config import KILL_SWITCH_FILE, StrategyConfig
from ..trading.gateway import ExchangeGateway, GatewayError
from ..trading.paper_gateway import PaperGateway
from .audit import AuditSink, JsonlAuditSink
from .detector import OpportunityDetector
from .hedge import HedgeEngine
from .market_data import MarketDataSource
from .models import BuyOpportunity, MarketSnapshot
from .scheduler import Clock, DeferredJobQueue, SystemClock
from .trader import Trader, TradingError
from .trend import TrendOracle

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def activate_kill_switch(reason: str = "Manual activation", path: Path = KILL_SWITCH_FILE) -> None:
    """
    Activate the kill switch by creating the file.

    The file contains a timestamp and reason for activation.
    """
    try:
        with open(path, "w") as f:
            f.write(f"Kill switch activated at {_utc_now().isoformat()}\n")
            f.write(f"Reason: {reason}\n")
        logger.critical(f"Kill switch ACTIVATED: {reason}")
    except OSError as e:
        logger.error(f"Failed to create kill switch file: {e}")


def deactivate_kill_switch(path: Path = KILL_SWITCH_FILE) -> bool:
    """
    Deactivate the kill switch by removing the file.

    Returns:
        True if successfully deactivated (or not active), False otherwise.
    """
    try:
        if path.exists():
            os.remove(path)
            logger.info("Kill switch DEACTIVATED")
        return True
    except OSError as e:
        logger.error(f"Failed to remove kill switch file: {e}")
        return False


@dataclass
class BotState:
    """
    Current state of the momentum bot.

    Attributes:
        is_running: Whether the bot is currently running.
        paper_mode: Whether running in paper mode.
        snapshot_count: Number of snapshots processed.
        buys_submitted: Buy intents sent to the trader this session.
        buys_failed: Buy intents rejected or not filled.
        current_period: Period of the latest snapshot.
        last_snapshot_time: Timestamp of last processed snapshot.
        last_error: Last error message (if any).
    """

    is_running: bool = False
    paper_mode: bool = True
    snapshot_count: int = 0
    buys_submitted: int = 0
    buys_failed: int = 0
    current_period: Optional[int] = None
    last_snapshot_time: Optional[datetime] = None
    last_error: Optional[str] = None
    start_time: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert state to dictionary."""
        return {
            "is_running": self.is_running,
            "paper_mode": self.paper_mode,
            "snapshot_count": self.snapshot_count,
            "buys_submitted": self.buys_submitted,
            "buys_failed": self.buys_failed,
            "current_period": self.current_period,
            "last_snapshot_time": self.last_snapshot_time.isoformat() if self.last_snapshot_time else None,
            "last_error": self.last_error,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "uptime_seconds": (
                int((_utc_now() - self.start_time).total_seconds())
                if self.start_time
                else 0
            ),
        }


class MomentumBot:
    """
    Orchestrator for the momentum and dual-limit strategies.

    Flow per snapshot:
    1. Check kill switch
    2. Roll per-period state over when a new period starts
    3. Feed quotes to the paper gateway and the trend oracle
    4. Detect entries (momentum, or dual-limit at market start)
    5. Drop intents for tokens already held, then buy in parallel
    6. Run the hedge checks (dual-limit only)

    Fill/sell, closure and summary sweeps run on their own intervals.

    Example:
        >>> bot = MomentumBot(paper_mode=True)
        >>> task = bot.start()  # Non-blocking
        >>> await asyncio.sleep(3600)
        >>> bot.stop()
    """

    def __init__(
        self,
        config: Optional[StrategyConfig] = None,
        paper_mode: bool = True,
        gateway: Optional[ExchangeGateway] = None,
        data_source: Optional[MarketDataSource] = None,
        audit: Optional[AuditSink] = None,
        clock: Optional[Clock] = None,
        kill_switch_file: Path = KILL_SWITCH_FILE,
    ):
        """
        Initialize the momentum bot.

        Args:
            config: Strategy parameters (default from environment)
            paper_mode: If True, trade against the paper gateway (default: True)
            gateway: Exchange gateway (required for live mode)
            data_source: Snapshot source (default: Gamma + CLOB polling)
            audit: Audit sink (default: JSONL trade history under data/)
            clock: Time source shared by all components
            kill_switch_file: Path of the kill switch file
        """
        self.config = config or StrategyConfig.from_env()
        self.config.validate()

        # SAFETY: Paper mode by default
        self.paper_mode = paper_mode
        if not paper_mode and gateway is None:
            raise ValueError(
                "Live trading requires a gateway. "
                "Pass gateway=ClobGateway() or use paper_mode=True"
            )

        self.clock = clock or SystemClock()
        self.kill_switch_file = kill_switch_file
        self.gateway = gateway or PaperGateway(clock=self.clock)
        self.audit = audit or JsonlAuditSink()

        self.scheduler = DeferredJobQueue(self.clock)
        self.detector = OpportunityDetector(self.config, audit=self.audit)
        self.trader = Trader(
            self.gateway,
            self.config,
            detector=self.detector,
            audit=self.audit,
            scheduler=self.scheduler,
            clock=self.clock,
        )
        self.oracle = TrendOracle(self.config.trend_history_size)
        self.hedge = HedgeEngine(self.trader, self.config, oracle=self.oracle, audit=self.audit)
        self.data_source = data_source or MarketDataSource(self.detector.enabled_assets, clock=self.clock)

        self.state = BotState(paper_mode=paper_mode)
        self._shutdown_event = asyncio.Event()

        self._setup_signal_handlers()

        mode_str = "PAPER" if paper_mode else "LIVE"
        logger.info(
            f"MomentumBot initialized in {mode_str} mode: strategy={self.config.strategy_mode}, "
            f"assets={[a.value for a in self.detector.enabled_assets]}, "
            f"amount=${self.config.fixed_trade_amount:.2f}, "
            f"trigger=${self.config.trigger_price:.2f}-${self.config.max_buy_price:.2f}"
        )

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for clean shutdown."""
        try:
            signal.signal(signal.SIGINT, self._signal_handler)
            signal.signal(signal.SIGTERM, self._signal_handler)
        except (ValueError, RuntimeError):
            # Signal handlers can only be set in main thread
            pass

    def _signal_handler(self, signum: int, frame: Any) -> None:
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, initiating shutdown...")
        self.stop()

    def check_kill_switch(self) -> bool:
        return self.kill_switch_file.exists()

    # =========================================================================
    # Snapshot processing
    # =========================================================================

    async def process_snapshot(self, snapshot: MarketSnapshot) -> None:
        """Run detection, buying and hedging for one snapshot."""
        previous = self.state.current_period
        if previous is not None and snapshot.period != previous:
            await self._on_period_rollover(previous)
        self.state.current_period = snapshot.period

        self.trader.observe_snapshot(snapshot)
        if isinstance(self.gateway, PaperGateway):
            self.gateway.update_quotes(snapshot)
        for market in snapshot.markets.values():
            for _, quote in market.tokens():
                if quote.bid is not None:
                    self.oracle.track_price(
                        snapshot.period, quote.token_id, snapshot.elapsed_seconds, quote.bid
                    )

        await self.trader.cleanup_old_abandoned_trades(snapshot.period)

        if self.config.strategy_mode == "dual-limit":
            entries = self.detector.detect_dual_limit_entries(snapshot)
            if entries:
                await asyncio.gather(*(self._place_limit_entry(o) for o in entries))
            await self.hedge.check_early_hedge(snapshot)
            await self.hedge.check_standard_hedge(snapshot)
        else:
            opportunities = self.detector.detect(snapshot)
            if opportunities:
                await self._execute_opportunities(opportunities)

        self.state.snapshot_count += 1
        self.state.last_snapshot_time = _utc_now()

    async def _execute_opportunities(self, opportunities: list[BuyOpportunity]) -> None:
        held = await asyncio.gather(
            *(self.trader.has_active_position(o.period, o.token_type) for o in opportunities)
        )
        candidates = [o for o, active in zip(opportunities, held) if not active]
        if candidates:
            await asyncio.gather(*(self._execute_buy(o) for o in candidates))

    async def _execute_buy(self, opportunity: BuyOpportunity) -> None:
        self.state.buys_submitted += 1
        try:
            await self.trader.execute_buy(opportunity)
            self.detector.mark_token_bought(opportunity.token_id)
        except (TradingError, GatewayError) as e:
            self.state.buys_failed += 1
            logger.warning(f"{opportunity.token_type.display_name}: buy not executed: {e}")

    async def _place_limit_entry(self, opportunity: BuyOpportunity) -> None:
        self.state.buys_submitted += 1
        try:
            await self.trader.execute_limit_buy(
                opportunity,
                place_sell_orders=False,
                size_override=self.config.dual_limit_shares,
            )
            self.detector.mark_token_bought(opportunity.token_id)
        except (TradingError, GatewayError) as e:
            self.state.buys_failed += 1
            logger.warning(f"{opportunity.token_type.display_name}: limit entry not placed: {e}")

    async def _on_period_rollover(self, old_period: int) -> None:
        logger.info(f"New period started; rolling over state of period {old_period}")
        await self.trader.reset_period(old_period)
        self.detector.reset_period()
        self.oracle.clear_period(old_period)
        self.hedge.reset_period(old_period)

    # =========================================================================
    # Loops
    # =========================================================================

    async def _wait(self, seconds: float) -> None:
        """Sleep until the next interval or shutdown, whichever comes first."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass  # Normal timeout, continue to next cycle

    async def _every(self, interval: float, name: str, work: Callable[[], Awaitable[Any]]) -> None:
        while not self._shutdown_event.is_set():
            try:
                await work()
            except Exception as e:
                logger.error(f"Error in {name}: {e}", exc_info=True)
                self.state.last_error = f"{name}: {e}"
            await self._wait(interval)

    async def _snapshot_cycle(self) -> None:
        if self.check_kill_switch():
            logger.warning("Kill switch detected - stopping bot")
            self.stop()
            return
        snapshot = await self.data_source.get_snapshot()
        if not snapshot.markets:
            logger.debug("No active markets in snapshot")
        await self.process_snapshot(snapshot)

    async def startup(self) -> None:
        """Reconcile the ledger with on-exchange balances before trading."""
        result = await self.trader.sync_trades_with_portfolio()
        logger.info(f"Startup sync complete: {result}")

    async def run(self, duration: Optional[float] = None) -> None:
        """
        Main bot loop.

        Runs until stopped, the kill switch is activated, or `duration`
        seconds have passed.
        """
        logger.info(f"Starting MomentumBot (paper_mode={self.paper_mode})")
        self.state.is_running = True
        self.state.start_time = _utc_now()

        await self.startup()

        cfg = self.config
        tasks = [
            asyncio.create_task(
                self._every(cfg.check_interval_ms / 1000, "snapshot loop", self._snapshot_cycle)
            ),
            asyncio.create_task(
                self._every(cfg.pending_check_interval_seconds, "pending sweep", self.trader.check_pending_trades)
            ),
            asyncio.create_task(
                self._every(cfg.market_closure_check_interval_seconds, "closure sweep", self.trader.check_market_closure)
            ),
            asyncio.create_task(
                self._every(cfg.trade_summary_interval_seconds, "trade summary", self.trader.log_trade_summary)
            ),
            asyncio.create_task(self.scheduler.run_forever()),
        ]

        try:
            if duration is not None:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=duration)
            else:
                await self._shutdown_event.wait()
        except asyncio.TimeoutError:
            logger.info(f"Run duration of {duration}s reached")
        except asyncio.CancelledError:
            logger.info("Bot run cancelled")
        finally:
            self._shutdown_event.set()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self.trader.log_trade_summary()
            self.state.is_running = False
            logger.info("MomentumBot stopped")

    def stop(self) -> None:
        """Signal all loops to exit."""
        logger.info("Stopping MomentumBot...")
        self._shutdown_event.set()
        self.state.is_running = False

    def start(self) -> asyncio.Task:
        """
        Start the bot as a background task.

        Returns:
            asyncio.Task that can be awaited or cancelled
        """
        return asyncio.create_task(self.run())

    async def get_status(self) -> dict[str, Any]:
        """Bot state, open trades and paper P&L."""
        return {
            "bot_state": self.state.to_dict(),
            "trades": await self.trader.trade_summary(),
            "paper_stats": self.gateway.get_pnl_summary() if isinstance(self.gateway, PaperGateway) else None,
            "kill_switch_active": self.check_kill_switch(),
        }
