"""
Momentum Opportunity Detector for 15-minute up/down markets.

Emits a buy intent when a token's bid sits in [trigger, max] late in the
period, with enough time left to exit.

Key Features:
- Reset hysteresis: after a sell the token type must trade back below the
  trigger before it can be bought again
- Per-period state cleared on rollover
- Dual-limit entries: resting buys on both sides at market start

Example:
    detector = OpportunityDetector(StrategyConfig(), audit=MemoryAuditSink())
    for opportunity in detector.detect(snapshot):
        await trader.execute_buy(opportunity)
"""

import logging
from enum import Enum
from typing import Optional

from ..config import StrategyConfig
from .audit import AuditEventType, AuditSink
from .models import (
    Asset,
    BuyOpportunity,
    MarketSnapshot,
    Role,
    TokenQuote,
    TokenType,
)

logger = logging.getLogger(__name__)


class ResetState(Enum):
    READY = "ready"
    NEEDS_RESET = "needs_reset"


class OpportunityDetector:
    """
    Momentum trigger with reset hysteresis.

    Args:
        config: Strategy parameters (trigger, max price, timing guards, assets)
        audit: Sink for state-transition events
        log: Logger override
    """

    def __init__(
        self,
        config: StrategyConfig,
        audit: Optional[AuditSink] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.audit = audit or AuditSink()
        self.log = log or logger

        self._reset_states: dict[TokenType, ResetState] = {}
        self._period_acted: set[str] = set()
        self._first_period_seen: Optional[int] = None

    @property
    def enabled_assets(self) -> list[Asset]:
        assets = [Asset.BTC]
        if self.config.enable_eth:
            assets.append(Asset.ETH)
        if self.config.enable_solana:
            assets.append(Asset.SOL)
        if self.config.enable_xrp:
            assets.append(Asset.XRP)
        return assets

    def reset_state(self, token_type: TokenType) -> ResetState:
        return self._reset_states.get(token_type, ResetState.READY)

    def detect(self, snapshot: MarketSnapshot) -> list[BuyOpportunity]:
        """
        Scan a snapshot for momentum entries.

        Returns:
            All qualifying opportunities for this cycle (unordered)
        """
        if snapshot.time_remaining_seconds <= 0:
            return []

        opportunities = []
        for asset in self.enabled_assets:
            market = snapshot.market(asset)
            if market is None:
                continue
            for token_type, quote in market.tokens():
                opportunity = self._check_token(snapshot, market.condition_id, token_type, quote)
                if opportunity is not None:
                    opportunities.append(opportunity)
        return opportunities

    def _check_token(
        self,
        snapshot: MarketSnapshot,
        condition_id: str,
        token_type: TokenType,
        quote: TokenQuote,
    ) -> Optional[BuyOpportunity]:
        bid = quote.bid
        if bid is None:
            return None

        cfg = self.config
        elapsed = snapshot.elapsed_seconds
        min_elapsed = cfg.min_elapsed_minutes * 60

        if self.reset_state(token_type) == ResetState.NEEDS_RESET:
            if bid < cfg.trigger_price:
                self._reset_states[token_type] = ResetState.READY
                self.log.info(
                    f"{token_type.display_name}: reset completed, bid={bid:.3f} < "
                    f"trigger={cfg.trigger_price:.2f}"
                )
            return None

        if elapsed < min_elapsed:
            return None
        if bid < cfg.trigger_price:
            return None
        if bid > cfg.max_buy_price:
            return None
        if snapshot.time_remaining_seconds < cfg.min_time_remaining_seconds:
            self.log.info(
                f"{token_type.display_name}: skipping buy, only "
                f"{snapshot.time_remaining_seconds}s remaining"
            )
            return None

        self.log.info(
            f"{token_type.display_name} BUY signal: bid={bid:.3f} | "
            f"elapsed={elapsed // 60}m | remaining={snapshot.time_remaining_seconds}s"
        )
        return BuyOpportunity(
            condition_id=condition_id,
            token_id=quote.token_id,
            token_type=token_type,
            price=bid,
            period=snapshot.period,
            time_remaining_seconds=snapshot.time_remaining_seconds,
            time_elapsed_seconds=elapsed,
            use_market_order=True,
            role=Role.ENTRY,
        )

    def detect_dual_limit_entries(self, snapshot: MarketSnapshot) -> list[BuyOpportunity]:
        """
        Resting limit buys on both sides of every enabled market.

        Fires once per period, only within the entry window at market start,
        and never for the period the bot joined mid-way.
        """
        cfg = self.config
        if cfg.dual_limit_price is None or snapshot.time_remaining_seconds <= 0:
            return []

        if self._first_period_seen is None:
            self._first_period_seen = snapshot.period
        if snapshot.period == self._first_period_seen:
            return []

        if snapshot.elapsed_seconds > cfg.dual_limit_entry_window_seconds:
            return []

        period_key = f"{snapshot.period}:dual_limit"
        if period_key in self._period_acted:
            return []
        self._period_acted.add(period_key)

        opportunities = []
        for asset in self.enabled_assets:
            market = snapshot.market(asset)
            if market is None:
                continue
            for token_type, quote in market.tokens():
                opportunities.append(
                    BuyOpportunity(
                        condition_id=market.condition_id,
                        token_id=quote.token_id,
                        token_type=token_type,
                        price=cfg.dual_limit_price,
                        period=snapshot.period,
                        time_remaining_seconds=snapshot.time_remaining_seconds,
                        time_elapsed_seconds=snapshot.elapsed_seconds,
                        use_market_order=False,
                        role=Role.LIMIT_ENTRY,
                        size_override=cfg.dual_limit_shares,
                    )
                )
        self.log.info(
            f"Dual-limit window: {len(opportunities)} resting buys at "
            f"${cfg.dual_limit_price:.2f} for period {snapshot.period}"
        )
        return opportunities

    def clear_dual_limit_tracking(self, period: int) -> None:
        """Allow dual-limit entries to be placed again for `period`."""
        self._period_acted.discard(f"{period}:dual_limit")

    def mark_token_bought(self, token_id: str) -> None:
        self._period_acted.add(token_id)

    def mark_cycle_completed(self, token_type: TokenType) -> None:
        """Arm reset hysteresis after a sell (profit or stop-loss)."""
        self._reset_states[token_type] = ResetState.NEEDS_RESET
        self.audit.emit(
            AuditEventType.CYCLE_COMPLETED,
            f"{token_type.display_name}: price must drop below "
            f"${self.config.trigger_price:.2f} before the next buy",
            token_type=token_type.value,
        )

    def reset_period(self) -> None:
        """Clear per-period state on rollover."""
        self._period_acted.clear()
        self._reset_states.clear()
