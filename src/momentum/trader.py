"""
Trader: buy execution, sell/stop-loss sweep and redemption sweep.

Owns the trade ledger and drives every position from buy intent to
settlement against an ExchangeGateway (live or paper).

Key Features:
- Buys reserve their (period, token type) slot before any order is sent
- Confirmed size is always the re-read on-exchange balance
- Bounded sell retry with price-recovery abort and allowance refresh
- Stop-loss with a mirrored hedge on the opposite token
- One redemption attempt per closure sweep, Abandoned after max_redemption_attempts
- Hedge buys schedule two-tier resting sells through the deferred-job queue

Example:
    trader = Trader(gateway, StrategyConfig(), detector=detector)
    await trader.sync_trades_with_portfolio()
    await trader.execute_buy(opportunity)
    await trader.check_pending_trades()
    await trader.check_market_closure()
"""

import logging
import math
from typing import Any, Optional

from ..config import StrategyConfig
from ..trading.gateway import (
    DefinitiveGatewayError,
    ExchangeGateway,
    GatewayError,
    MarketResolution,
    OrderResult,
    OrderSide,
    TimeInForce,
    simplify_error,
)
from .audit import AuditEventType, AuditSink
from .detector import OpportunityDetector
from .ledger import TradeLedger
from .models import (
    BuyOpportunity,
    MarketSnapshot,
    PendingTrade,
    Role,
    TokenType,
    TradeKey,
)
from .retry import retry_until
from .scheduler import Clock, DeferredJobQueue, SystemClock

logger = logging.getLogger(__name__)

# Balance changes smaller than this are noise
BALANCE_EPSILON = 1e-6

# Pause after refreshing the allowance cache before selling
ALLOWANCE_SETTLE_SECONDS = 0.5

# Mirrored stop-loss hedge rests this far above the hedge entry
OPPOSITE_HEDGE_MARKUP = 0.1

# Post-buy balance polling while a market fill settles
CONFIRM_ATTEMPTS = 3
CONFIRM_DELAY = 1.0

LIMIT_ROLES = (Role.LIMIT_ENTRY, Role.OPPOSITE_LIMIT)


class TradingError(Exception):
    """Base exception for trading decisions."""
    pass


class BuyRejectedError(TradingError):
    """Raised when a buy intent is no longer valid at execution time."""
    pass


class DuplicatePositionError(TradingError):
    """Raised when a live position already exists for (period, token type)."""
    pass


class BuyFailedError(TradingError):
    """Raised when the exchange did not fill or accept a buy."""
    pass


def _round_price(price: float) -> float:
    return round(min(max(price, 0.01), 0.99), 2)


def _floor_size(size: float) -> float:
    """Round a sell size down to 2dp so it never exceeds the held balance."""
    return math.floor(size * 100 + 1e-9) / 100


class Trader:
    """
    Trade ledger and execution engine.

    Args:
        gateway: Exchange gateway (live or paper)
        config: Strategy parameters
        detector: Notified after every sell to arm reset hysteresis
        audit: Sink for state-transition events
        scheduler: Deferred-job queue for hedge sell placement
        clock: Time source; also provides the sleep used for retry spacing
        log: Logger override
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        config: StrategyConfig,
        detector: Optional[OpportunityDetector] = None,
        audit: Optional[AuditSink] = None,
        scheduler: Optional[DeferredJobQueue] = None,
        clock: Optional[Clock] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.gateway = gateway
        self.config = config
        self.detector = detector
        self.audit = audit or AuditSink()
        self.clock = clock or SystemClock()
        self.scheduler = scheduler or DeferredJobQueue(self.clock)
        self.log = log or logger

        self.ledger = TradeLedger()
        self.total_profit = 0.0
        self.trades_executed = 0

        # (condition_id, token_type) -> token_id, learned from snapshots
        self._token_index: dict[tuple[str, TokenType], str] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def has_active_position(self, period: int, token_type: TokenType) -> bool:
        """True if a live (not sold, not abandoned) position exists."""
        return await self.ledger.has_active_position(period, token_type)

    async def get_pending_trade(
        self,
        period: int,
        token_id: str,
        role: Optional[Role] = None,
    ) -> Optional[PendingTrade]:
        roles = [role] if role is not None else list(Role)
        return await self.ledger.find(period, token_id, roles)

    async def get_pending_limit_trade(self, period: int, token_id: str) -> Optional[PendingTrade]:
        return await self.ledger.find(period, token_id, LIMIT_ROLES)

    def observe_snapshot(self, snapshot: MarketSnapshot) -> None:
        """Remember token ids so the opposite side of a market can be found."""
        for market in snapshot.markets.values():
            for token_type, quote in market.tokens():
                self._token_index[(market.condition_id, token_type)] = quote.token_id

    def opposite_token_id(self, trade: PendingTrade) -> Optional[str]:
        return self._token_index.get((trade.condition_id, trade.token_type.opposite()))

    # ------------------------------------------------------------------
    # Buying
    # ------------------------------------------------------------------

    async def execute_buy(self, opportunity: BuyOpportunity) -> PendingTrade:
        """
        Execute a buy intent.

        Market orders spend the investment amount as a FOK buy and confirm
        size from the re-read balance. Limit intents are delegated to
        execute_limit_buy.

        Raises:
            BuyRejectedError: Too little time left in the period
            DuplicatePositionError: A live position already exists
            BuyFailedError: The exchange rejected or did not fill the order
        """
        self._check_time_remaining(opportunity)
        if not opportunity.use_market_order:
            return await self.execute_limit_buy(opportunity, place_sell_orders=True)

        amount = opportunity.investment_override or self.config.fixed_trade_amount
        estimated_units = opportunity.size_override or amount / opportunity.price
        hold = opportunity.role == Role.DUAL_LIMIT_HEDGE
        sell_price = self.config.sell_price
        if opportunity.role in (Role.INDIVIDUAL_HEDGE, Role.STANDARD_HEDGE):
            tiers = self.config.hedge_sell_tiers
            sell_price = round(sum(tiers) / len(tiers), 4)
        trade = PendingTrade(
            token_id=opportunity.token_id,
            condition_id=opportunity.condition_id,
            token_type=opportunity.token_type,
            role=opportunity.role,
            investment_amount=amount,
            units=estimated_units,
            purchase_price=opportunity.price,
            sell_price=sell_price,
            period=opportunity.period,
            hold_to_expiry=hold,
            claim_on_closure=hold,
            created_at=self.clock.now(),
        )
        if not await self.ledger.reserve(trade):
            raise DuplicatePositionError(
                f"{opportunity.token_type.display_name} already held for period {opportunity.period}"
            )

        self.log.info(
            f"BUY {opportunity.token_type.display_name} ({opportunity.role.value}) | "
            f"${amount:.2f} @ ~${opportunity.price:.3f} (~{estimated_units:.2f} shares)"
        )

        try:
            baseline = await self.gateway.check_balance(opportunity.token_id)
            result = await self.gateway.place_market_order(
                opportunity.token_id, amount, OrderSide.BUY, TimeInForce.FOK
            )
        except GatewayError as e:
            await self._fail_buy(trade, str(e))
            raise BuyFailedError(str(e)) from e

        if not result.success:
            await self._fail_buy(trade, result.message)
            raise BuyFailedError(result.message)

        balance = await self._await_balance_above(opportunity.token_id, baseline)
        if balance is None:
            # Fill not visible yet; the sweep confirms it from the baseline
            self.log.warning(
                f"{opportunity.token_type.display_name}: order {result.order_id} accepted "
                f"but balance not yet increased; confirming on sweep"
            )
            stored = await self.ledger.update(
                trade.key, order_id=result.order_id, balance_baseline=baseline
            )
        else:
            stored = await self.ledger.mutate(
                trade.key, lambda t: (setattr(t, "order_id", result.order_id), t.confirm(balance))
            )
        self.trades_executed += 1

        self.audit.emit(
            AuditEventType.HEDGE if opportunity.role.is_hedge else AuditEventType.BUY,
            f"{opportunity.token_type.display_name} | period {opportunity.period} | "
            f"${amount:.2f} @ ${opportunity.price:.3f} | "
            f"units {balance if balance is not None else estimated_units:.4f}",
            key=str(trade.key),
            role=opportunity.role.value,
            order_id=result.order_id,
            amount=amount,
            price=opportunity.price,
            confirmed_units=balance,
        )

        if opportunity.role in (Role.INDIVIDUAL_HEDGE, Role.STANDARD_HEDGE):
            self.schedule_hedge_sells(trade.key)

        return stored or trade

    async def execute_limit_buy(
        self,
        opportunity: BuyOpportunity,
        place_sell_orders: bool = True,
        size_override: Optional[float] = None,
    ) -> PendingTrade:
        """
        Place a resting limit buy and record the balance baseline for fill detection.

        Args:
            opportunity: Intent carrying the limit price
            place_sell_orders: If False the position is held to expiry once filled
            size_override: Explicit share count (defaults to amount / price)
        """
        self._check_time_remaining(opportunity)
        amount = opportunity.investment_override or self.config.fixed_trade_amount
        size = size_override or opportunity.size_override or amount / opportunity.price
        size = round(size, 2)
        price = _round_price(opportunity.price)

        trade = PendingTrade(
            token_id=opportunity.token_id,
            condition_id=opportunity.condition_id,
            token_type=opportunity.token_type,
            role=opportunity.role if opportunity.role in LIMIT_ROLES else Role.LIMIT_ENTRY,
            investment_amount=size * price,
            units=size,
            purchase_price=price,
            sell_price=self.config.sell_price,
            period=opportunity.period,
            hold_to_expiry=not place_sell_orders,
            created_at=self.clock.now(),
        )
        if not await self.ledger.reserve(trade):
            raise DuplicatePositionError(
                f"{opportunity.token_type.display_name} already held for period {opportunity.period}"
            )

        try:
            baseline = await self.gateway.check_balance(opportunity.token_id)
            result = await self.gateway.place_limit_order(
                opportunity.token_id, OrderSide.BUY, size, price
            )
        except GatewayError as e:
            await self._fail_buy(trade, str(e))
            raise BuyFailedError(str(e)) from e

        if not result.success:
            await self._fail_buy(trade, result.message)
            raise BuyFailedError(result.message)

        stored = await self.ledger.update(
            trade.key, order_id=result.order_id, balance_baseline=baseline
        )
        self.audit.emit(
            AuditEventType.LIMIT_BUY_PLACED,
            f"{opportunity.token_type.display_name} | period {opportunity.period} | "
            f"{size:.2f} @ ${price:.2f}",
            key=str(trade.key),
            order_id=result.order_id,
            size=size,
            price=price,
            baseline=baseline,
        )
        return stored or trade

    def _check_time_remaining(self, opportunity: BuyOpportunity) -> None:
        guard = self.config.min_time_remaining_seconds
        if opportunity.time_remaining_seconds < guard:
            raise BuyRejectedError(
                f"{opportunity.token_type.display_name}: {opportunity.time_remaining_seconds}s "
                f"remaining < {guard}s minimum"
            )

    async def _fail_buy(self, trade: PendingTrade, message: str) -> None:
        await self.ledger.remove(trade.key)
        reason = simplify_error(message)
        self.audit.emit(
            AuditEventType.BUY_FAILED,
            f"{trade.token_type.display_name} | period {trade.period} | {reason}",
            key=str(trade.key),
            error=message,
        )

    async def _await_balance_above(self, token_id: str, baseline: float) -> Optional[float]:
        """Poll the balance until it rises above `baseline`; None if it never does."""
        outcome = await retry_until(
            lambda: self.gateway.check_balance(token_id),
            attempts=CONFIRM_ATTEMPTS,
            delay=CONFIRM_DELAY,
            is_failure=lambda balance: balance is None or balance <= baseline + BALANCE_EPSILON,
            sleep=self.clock.sleep,
            operation_name=f"confirm balance {token_id[:16]}",
        )
        return outcome.result if outcome.succeeded else None

    async def cancel_pending_buy(self, period: int, token_id: str) -> bool:
        """
        Cancel the resting limit buy for (period, token_id).

        Returns:
            True if no resting buy remains (cancelled, or none existed);
            False if it already filled or the cancel failed
        """
        trade = await self.get_pending_limit_trade(period, token_id)
        if trade is None:
            return True
        if trade.buy_confirmed:
            return False

        if trade.order_id:
            try:
                result = await self.gateway.cancel_order(trade.order_id)
            except GatewayError as e:
                self.log.warning(f"Cancel of {trade.order_id} failed: {e}")
                return False
            if not result.success:
                self.log.warning(f"Cancel of {trade.order_id} rejected: {result.message}")
                return False

        # A fill can land between the last sweep and the cancel
        balance = await self.gateway.check_balance(token_id)
        baseline = trade.balance_baseline or 0.0
        if balance > baseline + BALANCE_EPSILON:
            await self.ledger.mutate(trade.key, lambda t: t.confirm(balance))
            self.log.info(f"{trade.token_type.display_name}: limit buy filled before cancel")
            return False

        await self.ledger.remove(trade.key)
        self.audit.emit(
            AuditEventType.CANCELLED,
            f"{trade.token_type.display_name} | period {period} | resting buy cancelled",
            key=str(trade.key),
            order_id=trade.order_id,
        )
        return True

    # ------------------------------------------------------------------
    # Hedge sell scheduling
    # ------------------------------------------------------------------

    def schedule_hedge_sells(self, key: TradeKey) -> None:
        """Place the two-tier resting sells after the configured delay."""
        self.scheduler.schedule(
            self.config.hedge_sell_delay_seconds,
            lambda: self.place_hedge_sell_orders(key),
            name=f"hedge-sells {key}",
        )

    async def place_hedge_sell_orders(self, key: TradeKey) -> int:
        """
        Rest one SELL per profit tier, splitting the confirmed balance across tiers.

        Returns:
            Number of tiers placed
        """
        trade = await self.ledger.get(key)
        if trade is None or trade.sold:
            return 0

        balance = await self.gateway.check_balance(trade.token_id)
        if balance <= BALANCE_EPSILON:
            self.log.warning(f"{trade.token_type.display_name}: no balance for hedge sells")
            return 0
        await self.ledger.mutate(key, lambda t: t.confirm(balance))

        tiers = list(self.config.hedge_sell_tiers)
        per_tier = _floor_size(balance / len(tiers))
        sizes = [per_tier] * (len(tiers) - 1)
        sizes.append(_floor_size(balance - sum(sizes)))

        placed = 0
        for tier, size in zip(tiers, sizes):
            if size <= 0:
                continue
            try:
                outcome = await retry_until(
                    lambda tier=tier, size=size: self.gateway.place_limit_order(
                        trade.token_id, OrderSide.SELL, size, tier
                    ),
                    attempts=self.config.hedge_sell_max_attempts,
                    delay=self.config.hedge_sell_retry_delay,
                    give_up_on=(DefinitiveGatewayError,),
                    sleep=self.clock.sleep,
                    operation_name=f"hedge sell @{tier}",
                )
            except DefinitiveGatewayError as e:
                self.log.error(f"{trade.token_type.display_name}: hedge sell @{tier} rejected: {e}")
                continue
            if outcome.succeeded:
                placed += 1

        if placed:
            await self.ledger.update(key, sell_orders_placed=True)
            self.audit.emit(
                AuditEventType.SELL_ORDERS_PLACED,
                f"{trade.token_type.display_name} | {placed}/{len(tiers)} tiers "
                f"at {', '.join(f'${t:.2f}' for t in tiers)} | {balance:.4f} shares",
                key=str(key),
                tiers=tiers,
                sizes=sizes,
            )
        else:
            self.log.error(f"{trade.token_type.display_name}: no hedge sell tier could be placed")
        return placed

    # ------------------------------------------------------------------
    # Sell / stop-loss sweep
    # ------------------------------------------------------------------

    async def check_pending_trades(self) -> None:
        """Sweep a point-in-time copy of the ledger for fills, sells and stop-losses."""
        for trade in await self.ledger.snapshot():
            if trade.sold or trade.abandoned:
                continue
            try:
                await self._process_trade(trade)
            except DefinitiveGatewayError as e:
                self.log.error(f"{trade.key}: definitive exchange error, parking for redemption: {e}")
                await self.ledger.update(trade.key, claim_on_closure=True)
            except GatewayError as e:
                self.log.warning(f"{trade.key}: exchange error during sweep: {e}")

    async def _process_trade(self, trade: PendingTrade) -> None:
        if not trade.buy_confirmed:
            if trade.balance_baseline is not None:
                await self._detect_buy_fill(trade)
            return

        if trade.hold_to_expiry or trade.claim_on_closure:
            return

        if trade.sell_orders_placed:
            await self._detect_sell_fill(trade)
            return

        # Hedges wait for their scheduled tier sells
        if trade.is_hedge:
            return

        if self.config.sell_mode == "limit" and trade.role == Role.ENTRY:
            await self._place_resting_sell(trade)
            return

        price = await self.gateway.get_price(trade.token_id, OrderSide.SELL)
        if price is None:
            return

        if price >= trade.sell_price or price >= 1.0:
            await self._sell_with_retry(trade, price, stop_loss=False)
        elif self.config.stop_loss_price is not None and price <= self.config.stop_loss_price:
            await self._sell_with_retry(trade, price, stop_loss=True)

    async def _detect_buy_fill(self, trade: PendingTrade) -> None:
        balance = await self.gateway.check_balance(trade.token_id)
        if balance <= trade.balance_baseline + BALANCE_EPSILON:
            return

        updated = await self.ledger.mutate(trade.key, lambda t: t.confirm(balance))
        if updated is None:
            return
        self.audit.emit(
            AuditEventType.BUY_FILLED,
            f"{trade.token_type.display_name} | period {trade.period} | "
            f"{balance:.4f} shares @ ${trade.purchase_price:.2f}",
            key=str(trade.key),
            units=balance,
        )

        if updated.hold_to_expiry:
            await self.ledger.update(trade.key, sell_orders_placed=True)
        elif trade.role in LIMIT_ROLES:
            await self._place_resting_sell(updated)

    async def _place_resting_sell(self, trade: PendingTrade) -> None:
        balance = await self.gateway.check_balance(trade.token_id)
        if balance <= BALANCE_EPSILON:
            return
        result = await self.gateway.place_limit_order(
            trade.token_id, OrderSide.SELL, _floor_size(balance), _round_price(trade.sell_price)
        )
        if not result.success:
            self.log.warning(
                f"{trade.token_type.display_name}: resting sell rejected: {result.message}"
            )
            return
        await self.ledger.mutate(
            trade.key, lambda t: (t.confirm(balance), setattr(t, "sell_orders_placed", True))
        )
        self.audit.emit(
            AuditEventType.SELL_ORDERS_PLACED,
            f"{trade.token_type.display_name} | {balance:.4f} shares @ ${trade.sell_price:.2f}",
            key=str(trade.key),
            order_id=result.order_id,
        )

    async def _detect_sell_fill(self, trade: PendingTrade) -> None:
        balance = await self.gateway.check_balance(trade.token_id)
        if balance > BALANCE_EPSILON:
            if abs(balance - trade.units) > BALANCE_EPSILON:
                await self.ledger.mutate(trade.key, lambda t: t.confirm(balance))
            return

        profit = (trade.sell_price - trade.purchase_price) * trade.units
        self.total_profit += profit
        await self.ledger.remove(trade.key)
        self.audit.emit(
            AuditEventType.SELL_FILLED,
            f"{trade.token_type.display_name} | resting sell filled | "
            f"{trade.units:.4f} @ ${trade.sell_price:.2f} | PnL ${profit:.4f}",
            key=str(trade.key),
            pnl=profit,
        )
        if self.detector is not None and trade.role == Role.ENTRY:
            self.detector.mark_cycle_completed(trade.token_type)

    async def _sell_with_retry(self, trade: PendingTrade, trigger_price: float, stop_loss: bool) -> None:
        label = "STOP-LOSS" if stop_loss else "PROFIT"
        balance = await self.gateway.check_balance(trade.token_id)
        if balance <= BALANCE_EPSILON:
            self.log.warning(f"{trade.key}: {label} sell skipped, on-exchange balance is zero")
            await self.ledger.remove(trade.key)
            return
        await self.ledger.mutate(trade.key, lambda t: t.confirm(balance))
        size = _floor_size(balance)
        if size <= 0:
            self.log.warning(f"{trade.key}: {label} sell skipped, {balance:.6f} shares is below the minimum size")
            await self.ledger.update(trade.key, claim_on_closure=True)
            return

        stop_loss_price = self.config.stop_loss_price
        last_price = trigger_price

        async def price_recovered() -> bool:
            nonlocal last_price
            price = await self.gateway.get_price(trade.token_id, OrderSide.SELL)
            if price is not None:
                last_price = price
            if stop_loss:
                return price is not None and price > stop_loss_price
            return price is None or price < trade.sell_price

        async def refresh_allowance() -> None:
            await self.gateway.refresh_allowance(trade.token_id)
            await self.clock.sleep(ALLOWANCE_SETTLE_SECONDS)

        self.log.info(
            f"{label} sell {trade.token_type.display_name}: {size:.2f} shares @ ~${trigger_price:.3f}"
        )
        try:
            outcome = await retry_until(
                lambda: self.gateway.place_market_order(
                    trade.token_id, size, OrderSide.SELL, TimeInForce.FAK
                ),
                attempts=self.config.sell_max_attempts,
                delay=self.config.sell_retry_delay,
                should_abort=price_recovered,
                before_attempt=refresh_allowance,
                give_up_on=(DefinitiveGatewayError,),
                sleep=self.clock.sleep,
                operation_name=f"{label} sell {trade.token_type.display_name}",
            )
        except DefinitiveGatewayError:
            await self.ledger.update(trade.key, sell_attempts=trade.sell_attempts + 1)
            raise
        attempts = trade.sell_attempts + outcome.attempts

        if outcome.aborted:
            await self.ledger.update(trade.key, sell_attempts=attempts)
            self.audit.emit(
                AuditEventType.SELL_ABORTED,
                f"{trade.token_type.display_name} | {label} | price recovered to "
                f"${last_price:.3f} after {outcome.attempts} attempt(s)",
                key=str(trade.key),
                attempts=outcome.attempts,
            )
            return

        if outcome.exhausted:
            await self.ledger.update(trade.key, sell_attempts=attempts, claim_on_closure=True)
            self.audit.emit(
                AuditEventType.SELL_EXHAUSTED,
                f"{trade.token_type.display_name} | {label} | {outcome.attempts} attempts failed, "
                f"holding for redemption",
                key=str(trade.key),
                attempts=outcome.attempts,
            )
            return

        result: OrderResult = outcome.result
        fill_price = result.filled_price or last_price
        profit = (fill_price - trade.purchase_price) * size
        self.total_profit += profit
        await self.ledger.update(
            trade.key, sold=True, stop_loss_triggered=stop_loss, sell_attempts=attempts
        )
        self.audit.emit(
            AuditEventType.STOP_LOSS if stop_loss else AuditEventType.SELL,
            f"{trade.token_type.display_name} | {label} | {size:.2f} @ ${fill_price:.3f} | "
            f"bought @ ${trade.purchase_price:.3f} | PnL ${profit:.4f}",
            key=str(trade.key),
            units=size,
            price=fill_price,
            pnl=profit,
            attempts=outcome.attempts,
        )

        if stop_loss:
            await self._place_opposite_hedge(trade, size)
        if self.detector is not None:
            self.detector.mark_cycle_completed(trade.token_type)
        await self.ledger.remove(trade.key)

    async def _place_opposite_hedge(self, trade: PendingTrade, units_sold: float) -> None:
        """Mirror a stop-loss onto the opposite token: sell if held, else rest a buy."""
        opposite_id = self.opposite_token_id(trade)
        if opposite_id is None:
            self.log.warning(f"{trade.key}: opposite token unknown, no mirrored hedge")
            return

        stop_loss = self.config.stop_loss_price
        entry_price = _round_price(1.0 - stop_loss)
        exit_price = _round_price(entry_price + OPPOSITE_HEDGE_MARKUP)
        opposite_type = trade.token_type.opposite()

        try:
            held = await self.gateway.check_balance(opposite_id)
            if held > BALANCE_EPSILON:
                size = _floor_size(min(held, units_sold))
                result = await self.gateway.place_limit_order(opposite_id, OrderSide.SELL, size, exit_price)
                role = Role.OPPOSITE
                hedge = PendingTrade(
                    token_id=opposite_id,
                    condition_id=trade.condition_id,
                    token_type=opposite_type,
                    role=role,
                    investment_amount=0.0,
                    units=held,
                    purchase_price=entry_price,
                    sell_price=exit_price,
                    period=trade.period,
                    buy_confirmed=True,
                    confirmed_balance=held,
                    sell_orders_placed=True,
                    created_at=self.clock.now(),
                )
            else:
                size = round(units_sold, 2)
                result = await self.gateway.place_limit_order(opposite_id, OrderSide.BUY, size, entry_price)
                role = Role.OPPOSITE_LIMIT
                hedge = PendingTrade(
                    token_id=opposite_id,
                    condition_id=trade.condition_id,
                    token_type=opposite_type,
                    role=role,
                    investment_amount=size * entry_price,
                    units=size,
                    purchase_price=entry_price,
                    sell_price=exit_price,
                    period=trade.period,
                    balance_baseline=held,
                    created_at=self.clock.now(),
                )
        except GatewayError as e:
            self.log.error(f"{trade.key}: mirrored hedge failed: {e}")
            return

        if not result.success:
            self.log.error(f"{trade.key}: mirrored hedge rejected: {result.message}")
            return

        hedge.order_id = result.order_id
        await self.ledger.put(hedge)
        side = "SELL" if role == Role.OPPOSITE else "BUY"
        self.audit.emit(
            AuditEventType.OPPOSITE_HEDGE,
            f"{opposite_type.display_name} | {side} {size:.2f} @ "
            f"${exit_price if role == Role.OPPOSITE else entry_price:.2f}",
            key=str(hedge.key),
            order_id=result.order_id,
        )

    # ------------------------------------------------------------------
    # Redemption sweep
    # ------------------------------------------------------------------

    async def check_market_closure(self) -> None:
        """Redeem positions of closed markets, one attempt per trade per sweep."""
        now = self.clock.now()
        resolutions: dict[str, MarketResolution] = {}

        for trade in await self.ledger.snapshot():
            if trade.sold or trade.abandoned:
                continue
            if now < trade.period_end - self.config.closure_grace_seconds:
                continue
            try:
                await self._settle_trade(trade, resolutions)
            except GatewayError as e:
                self.log.warning(f"{trade.key}: closure check failed: {e}")

    async def _settle_trade(
        self,
        trade: PendingTrade,
        resolutions: dict[str, MarketResolution],
    ) -> None:
        if not trade.buy_confirmed:
            await self._expire_unfilled(trade, resolutions)
            return

        resolution = await self._resolution(trade, resolutions)
        if not resolution.closed:
            return

        balance = await self.gateway.check_balance(trade.token_id)
        if balance <= BALANCE_EPSILON:
            await self.ledger.remove(trade.key)
            self.audit.emit(
                AuditEventType.ALREADY_REDEEMED,
                f"{trade.token_type.display_name} | period {trade.period} | balance 0, nothing to redeem",
                key=str(trade.key),
            )
            return

        attempts = trade.redemption_attempts + 1
        await self.ledger.mutate(
            trade.key, lambda t: (t.confirm(balance), setattr(t, "redemption_attempts", attempts))
        )

        try:
            result = await self.gateway.redeem(trade.condition_id, trade.token_id, trade.token_type.outcome)
            success, message = result.success, result.message
        except GatewayError as e:
            success, message = False, str(e)

        if success:
            won = resolution.winning_token_id == trade.token_id
            value = balance if won else 0.0
            cost = trade.purchase_price * balance
            profit = value - cost
            self.total_profit += profit
            await self.ledger.remove(trade.key)
            self.audit.emit(
                AuditEventType.REDEEMED,
                f"{trade.token_type.display_name} | period {trade.period} | "
                f"{'WON' if won else 'LOST'} | {balance:.4f} shares | value ${value:.2f} | "
                f"PnL ${profit:.4f}",
                key=str(trade.key),
                won=won,
                units=balance,
                pnl=profit,
                tx_hash=result.tx_hash,
            )
            return

        if attempts >= self.config.max_redemption_attempts:
            await self.ledger.update(trade.key, abandoned=True)
            self.audit.emit(
                AuditEventType.REDEMPTION_ABANDONED,
                f"{trade.token_type.display_name} | period {trade.period} | "
                f"gave up after {attempts} attempts: {message}",
                key=str(trade.key),
                attempts=attempts,
            )
        else:
            self.log.warning(
                f"{trade.key}: redemption attempt {attempts}/{self.config.max_redemption_attempts} "
                f"failed: {message}"
            )

    async def _resolution(
        self,
        trade: PendingTrade,
        resolutions: dict[str, MarketResolution],
    ) -> MarketResolution:
        resolution = resolutions.get(trade.condition_id)
        if resolution is None:
            resolution = await self.gateway.get_market_resolution(trade.condition_id)
            resolutions[trade.condition_id] = resolution
            if resolution.closed:
                self.log.info(
                    f"MARKET ENDED | {trade.token_type.asset.value.upper()} | period {trade.period} | "
                    f"winner: {resolution.winning_outcome or 'unknown'}"
                )
        return resolution

    async def _expire_unfilled(
        self,
        trade: PendingTrade,
        resolutions: dict[str, MarketResolution],
    ) -> None:
        """
        Cancel a resting buy near the end of its market, then make the final fill check.

        The trade stays in the ledger while the order may still be live: a
        failed cancel is retried on the next sweep unless the market has closed.
        """
        cancelled, message = True, ""
        if trade.order_id:
            try:
                result = await self.gateway.cancel_order(trade.order_id)
                cancelled, message = result.success, result.message
            except GatewayError as e:
                cancelled, message = False, str(e)

        # A fill can land before the cancel
        balance = await self.gateway.check_balance(trade.token_id)
        baseline = trade.balance_baseline or 0.0
        if balance > baseline + BALANCE_EPSILON:
            await self.ledger.mutate(
                trade.key,
                lambda t: (t.confirm(balance), setattr(t, "sell_orders_placed", True)),
            )
            self.log.info(f"{trade.token_type.display_name}: resting buy filled before expiry")
            return

        if not cancelled:
            resolution = await self._resolution(trade, resolutions)
            if not resolution.closed:
                self.log.warning(
                    f"{trade.key}: cancel of {trade.order_id} failed ({message}), retrying next sweep"
                )
                return

        await self.ledger.remove(trade.key)
        self.audit.emit(
            AuditEventType.CANCELLED,
            f"{trade.token_type.display_name} | period {trade.period} | resting buy expired unfilled",
            key=str(trade.key),
            order_id=trade.order_id,
        )

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def cleanup_old_abandoned_trades(self, current_period: int) -> int:
        """Drop abandoned trades from earlier periods."""
        removed = await self.ledger.remove_where(
            lambda t: t.abandoned and t.period < current_period
        )
        for trade in removed:
            self.log.info(f"Removed abandoned trade {trade.key}")
        return len(removed)

    async def reset_period(self, old_period: int) -> int:
        """
        Drop finished trades of a period that rolled over.

        Unfilled resting buys and sold trades are removed; confirmed
        positions stay until the redemption sweep settles them.
        """
        removed = await self.ledger.remove_where(
            lambda t: t.period == old_period and (t.sold or not t.buy_confirmed)
        )
        if removed:
            self.log.info(f"Period {old_period} rolled over: dropped {len(removed)} finished trade(s)")
        return len(removed)

    async def mark_position_closed(self, period: int) -> int:
        """Mark every unsold trade of `period` as sold so the token can be bought again."""
        closed = 0
        for trade in await self.ledger.snapshot():
            if trade.period != period or trade.sold:
                continue
            if await self.ledger.update(trade.key, sold=True) is not None:
                closed += 1
        if closed:
            self.log.info(f"Period {period}: {closed} position(s) marked closed, re-entry allowed")
        return closed

    async def sync_trades_with_portfolio(self) -> dict[str, int]:
        """
        Reconcile ledger sizes with on-exchange balances.

        Confirmed trades with zero balance were sold or redeemed elsewhere and
        are removed; differing balances replace the stored size.
        """
        updated = removed = 0
        for trade in await self.ledger.snapshot():
            if trade.sold or not trade.buy_confirmed:
                continue
            try:
                balance = await self.gateway.check_balance(trade.token_id)
            except GatewayError as e:
                self.log.warning(f"{trade.key}: balance sync failed: {e}")
                continue
            if balance <= BALANCE_EPSILON:
                await self.ledger.remove(trade.key)
                removed += 1
            elif abs(balance - trade.units) > 0.001:
                await self.ledger.mutate(trade.key, lambda t: t.confirm(balance))
                updated += 1

        self.audit.emit(
            AuditEventType.RESYNC,
            f"portfolio sync: {updated} updated, {removed} removed, {len(self.ledger)} tracked",
            updated=updated,
            removed=removed,
        )
        return {"updated": updated, "removed": removed}

    async def trade_summary(self) -> dict[str, Any]:
        trades = await self.ledger.snapshot()
        by_state: dict[str, int] = {}
        for trade in trades:
            by_state[trade.state.value] = by_state.get(trade.state.value, 0) + 1
        return {
            "open_trades": len(trades),
            "by_state": by_state,
            "trades_executed": self.trades_executed,
            "total_profit": round(self.total_profit, 6),
            "pending_jobs": self.scheduler.pending_count,
            "trades": [t.to_dict() for t in trades],
        }

    async def log_trade_summary(self) -> None:
        summary = await self.trade_summary()
        states = ", ".join(f"{k}={v}" for k, v in sorted(summary["by_state"].items())) or "none"
        self.log.info(
            f"Trade summary: {summary['open_trades']} open ({states}) | "
            f"executed={summary['trades_executed']} | PnL ${summary['total_profit']:.4f}"
        )
