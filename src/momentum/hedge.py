"""
Hedge decisions for dual-limit pairs.

After resting limit buys on both sides of a market, a one-sided fill leaves
the position exposed. Two variants buy the unfilled side at double size:

- Early/trend hedge: after the early threshold, once the unfilled side's bid
  crosses the hedge price and is trending up
- Standard hedge: after the hedge threshold, whenever the unfilled side's
  bid is at or above the hedge price

Both fire at most once per (period, asset) and leave the two-tier resting
sells to the trader's deferred-job queue.
"""

import logging
from typing import Optional

from ..config import StrategyConfig
from .audit import AuditSink
from .models import (
    Asset,
    AssetMarket,
    BuyOpportunity,
    Direction,
    MarketSnapshot,
    PendingTrade,
    Role,
    TokenQuote,
    TokenType,
)
from .trader import Trader, TradingError
from .trend import TrendOracle

logger = logging.getLogger(__name__)

PRICE_EPSILON = 1e-9


class HedgeEngine:
    """
    Early and standard hedge triggers for one-sided dual-limit fills.

    Args:
        trader: Trader owning the ledger and the gateway
        config: Strategy parameters (hedge price, thresholds, trend gate)
        oracle: Optional trend oracle; without one, price >= hedge price is
            treated as an uptrend
        audit: Sink for state-transition events (defaults to the trader's)
        log: Logger override
    """

    def __init__(
        self,
        trader: Trader,
        config: StrategyConfig,
        oracle: Optional[TrendOracle] = None,
        audit: Optional[AuditSink] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.trader = trader
        self.config = config
        self.oracle = oracle
        self.audit = audit or trader.audit
        self.log = log or logger

        self._previous_bids: dict[str, float] = {}
        self._early_executed: set[tuple[int, Asset]] = set()
        self._standard_executed: set[tuple[int, Asset]] = set()

    @property
    def hedge_price(self) -> float:
        return self.config.dual_limit_hedge_price

    def _assets(self, snapshot: MarketSnapshot) -> list[AssetMarket]:
        enabled = [Asset.BTC]
        if self.config.enable_eth:
            enabled.append(Asset.ETH)
        if self.config.enable_solana:
            enabled.append(Asset.SOL)
        if self.config.enable_xrp:
            enabled.append(Asset.XRP)
        return [snapshot.markets[a] for a in enabled if a in snapshot.markets]

    async def _pair_fill_state(
        self,
        snapshot: MarketSnapshot,
        market: AssetMarket,
    ) -> Optional[tuple[PendingTrade, TokenQuote, TokenType, Optional[PendingTrade]]]:
        """
        Locate the filled and unfilled side of a pair.

        Returns:
            (filled_trade, unfilled_quote, unfilled_type, unfilled_trade) when
            exactly one side is confirmed, else None
        """
        if market.up is None or market.down is None:
            return None
        up_trade = await self.trader.get_pending_limit_trade(snapshot.period, market.up.token_id)
        down_trade = await self.trader.get_pending_limit_trade(snapshot.period, market.down.token_id)

        up_filled = up_trade is not None and up_trade.buy_confirmed
        down_filled = down_trade is not None and down_trade.buy_confirmed
        if up_filled == down_filled:
            return None

        if up_filled:
            unfilled_type = TokenType.for_asset(market.asset, Direction.DOWN)
            return up_trade, market.down, unfilled_type, down_trade
        unfilled_type = TokenType.for_asset(market.asset, Direction.UP)
        return down_trade, market.up, unfilled_type, up_trade

    def _crossed(self, quote: TokenQuote) -> bool:
        """Record the bid and report an upward crossing of the hedge price."""
        if quote.bid is None:
            return False
        previous = self._previous_bids.get(quote.token_id)
        self._previous_bids[quote.token_id] = quote.bid
        if previous is None:
            return quote.bid >= self.hedge_price
        return previous < self.hedge_price <= quote.bid

    def _is_uptrending(self, period: int, quote: TokenQuote) -> bool:
        if self.oracle is None:
            return quote.bid is not None and quote.bid >= self.hedge_price
        return self.oracle.is_uptrending(
            period,
            quote.token_id,
            self.config.trend_strength_threshold,
            self.config.trend_min_samples,
        )

    async def check_early_hedge(self, snapshot: MarketSnapshot) -> int:
        """
        Early/trend hedge sweep for one snapshot.

        Returns:
            Number of hedge buys executed
        """
        if snapshot.elapsed_seconds < self.config.dual_limit_early_hedge_minutes * 60:
            return 0

        executed = 0
        for market in self._assets(snapshot):
            crossed = [q for q in (market.up, market.down) if q is not None and self._crossed(q)]
            slot = (snapshot.period, market.asset)
            if slot in self._early_executed or not crossed:
                continue

            pair = await self._pair_fill_state(snapshot, market)
            if pair is None:
                continue
            filled_trade, quote, unfilled_type, _ = pair
            if quote.bid is None or quote.bid < self.hedge_price:
                continue
            if not self._is_uptrending(snapshot.period, quote):
                self.log.info(
                    f"{unfilled_type.display_name}: unfilled side at ${quote.bid:.4f} "
                    f"not trending up, waiting"
                )
                continue

            self.log.info(
                f"INDIVIDUAL HEDGE: {filled_trade.token_type.display_name} filled, "
                f"{unfilled_type.display_name} crossed ${self.hedge_price:.2f} and is uptrending"
            )
            # Missing resting order is fine here
            await self.trader.cancel_pending_buy(snapshot.period, quote.token_id)

            if await self._hedge_buy(snapshot, market, quote, unfilled_type, Role.INDIVIDUAL_HEDGE):
                self._early_executed.add(slot)
                executed += 1
        return executed

    async def check_standard_hedge(self, snapshot: MarketSnapshot) -> int:
        """
        Standard timed hedge sweep for one snapshot.

        Returns:
            Number of hedge buys executed
        """
        if snapshot.elapsed_seconds < self.config.dual_limit_hedge_after_minutes * 60:
            return 0

        executed = 0
        for market in self._assets(snapshot):
            slot = (snapshot.period, market.asset)
            if slot in self._standard_executed or slot in self._early_executed:
                continue

            pair = await self._pair_fill_state(snapshot, market)
            if pair is None:
                continue
            filled_trade, quote, unfilled_type, unfilled_trade = pair
            if unfilled_trade is None:
                continue
            if unfilled_trade.purchase_price >= self.hedge_price - PRICE_EPSILON:
                continue
            if quote.bid is None or quote.bid < self.hedge_price:
                continue

            self.log.info(
                f"STANDARD HEDGE: {filled_trade.token_type.display_name} filled, "
                f"{unfilled_type.display_name} bid ${quote.bid:.4f} >= ${self.hedge_price:.2f}"
            )
            if not await self.trader.cancel_pending_buy(snapshot.period, quote.token_id):
                self.log.warning(
                    f"{unfilled_type.display_name}: resting buy could not be cancelled, no hedge"
                )
                continue

            if await self._hedge_buy(snapshot, market, quote, unfilled_type, Role.STANDARD_HEDGE):
                self._standard_executed.add(slot)
                executed += 1
        return executed

    async def _hedge_buy(
        self,
        snapshot: MarketSnapshot,
        market: AssetMarket,
        quote: TokenQuote,
        token_type: TokenType,
        role: Role,
    ) -> bool:
        amount = self.config.fixed_trade_amount * 2
        opportunity = BuyOpportunity(
            condition_id=market.condition_id,
            token_id=quote.token_id,
            token_type=token_type,
            price=quote.bid,
            period=snapshot.period,
            time_remaining_seconds=snapshot.time_remaining_seconds,
            time_elapsed_seconds=snapshot.elapsed_seconds,
            use_market_order=True,
            role=role,
            investment_override=amount,
        )
        try:
            await self.trader.execute_buy(opportunity)
        except TradingError as e:
            self.log.warning(f"{token_type.display_name}: {role.value} buy failed: {e}")
            return False
        self.log.info(
            f"{token_type.display_name}: hedge bought ${amount:.2f} @ ~${quote.bid:.4f}, "
            f"tier sells in {self.config.hedge_sell_delay_seconds:.0f}s"
        )
        return True

    def reset_period(self, old_period: int) -> None:
        """Forget executed flags of a finished period."""
        self._early_executed = {s for s in self._early_executed if s[0] != old_period}
        self._standard_executed = {s for s in self._standard_executed if s[0] != old_period}
        self._previous_bids.clear()
