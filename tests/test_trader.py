"""
Tests for the Trader: buys, limit buys, cancels, sells and stop-losses.

IMPORTANT: All tests use the paper gateway or a gateway mock. NO real trades are made.
"""

import math

import pytest

from conftest import PERIOD, build_snapshot, condition_id, token_id
from src.momentum.audit import AuditEventType
from src.momentum.detector import ResetState
from src.momentum.models import Asset, BuyOpportunity, PendingTrade, Role, TokenType
from src.momentum.trader import (
    BuyFailedError,
    BuyRejectedError,
    DuplicatePositionError,
)
from src.trading.gateway import (
    InsufficientBalanceError,
    OrderResult,
    OrderSide,
    OrderStatus,
    TimeInForce,
)

UP = token_id(Asset.BTC, "up")
DOWN = token_id(Asset.BTC, "down")

FILLED = OrderResult(success=True, order_id="order-1", status=OrderStatus.FILLED)
NOT_FILLED = OrderResult(success=False, status=OrderStatus.REJECTED, message="no match")


def opportunity(
    token: str = UP,
    token_type: TokenType = TokenType.BTC_UP,
    price: float = 0.92,
    remaining: int = 240,
    role: Role = Role.ENTRY,
    market: bool = True,
    **overrides,
) -> BuyOpportunity:
    return BuyOpportunity(
        condition_id=condition_id(Asset.BTC),
        token_id=token,
        token_type=token_type,
        price=price,
        period=PERIOD,
        time_remaining_seconds=remaining,
        time_elapsed_seconds=900 - remaining,
        use_market_order=market,
        role=role,
        **overrides,
    )


def confirmed_trade(units: float = 5.0, purchase_price: float = 0.92, **overrides) -> PendingTrade:
    fields = dict(
        token_id=UP,
        condition_id=condition_id(Asset.BTC),
        token_type=TokenType.BTC_UP,
        role=Role.ENTRY,
        investment_amount=units * purchase_price,
        units=units,
        purchase_price=purchase_price,
        sell_price=0.99,
        period=PERIOD,
        buy_confirmed=True,
        confirmed_balance=units,
    )
    fields.update(overrides)
    return PendingTrade(**fields)


class TestMarketBuy:
    """Tests for execute_buy with market orders."""

    @pytest.mark.asyncio
    async def test_confirmed_size_comes_from_balance(self, mock_trader, mock_gateway, audit):
        """Estimated 10 shares, exchange delivered 9.98: the ledger holds 9.98."""
        mock_gateway.check_balance.side_effect = [0.0, 9.98]
        mock_gateway.place_market_order.return_value = FILLED

        trade = await mock_trader.execute_buy(opportunity(price=0.5))

        assert trade.units == 9.98
        assert trade.buy_confirmed is True
        assert trade.investment_amount == 5.0
        assert trade.order_id == "order-1"
        mock_gateway.place_market_order.assert_awaited_once_with(UP, 5.0, OrderSide.BUY, TimeInForce.FOK)
        assert len(audit.of_type(AuditEventType.BUY)) == 1
        assert mock_trader.trades_executed == 1

    @pytest.mark.asyncio
    async def test_duplicate_buy_rejected(self, mock_trader, mock_gateway):
        mock_gateway.check_balance.side_effect = [0.0, 5.4]
        mock_gateway.place_market_order.return_value = FILLED
        await mock_trader.execute_buy(opportunity())

        with pytest.raises(DuplicatePositionError):
            await mock_trader.execute_buy(opportunity())

        mock_gateway.place_market_order.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_position_in_other_period_does_not_block(self, mock_trader, mock_gateway):
        mock_gateway.check_balance.side_effect = [0.0, 5.4, 0.0, 5.4]
        mock_gateway.place_market_order.return_value = FILLED
        await mock_trader.execute_buy(opportunity())

        later = opportunity()
        later.period = PERIOD + 900
        await mock_trader.execute_buy(later)

        assert await mock_trader.has_active_position(PERIOD, TokenType.BTC_UP)
        assert await mock_trader.has_active_position(PERIOD + 900, TokenType.BTC_UP)

    @pytest.mark.asyncio
    async def test_too_late_in_period(self, mock_trader, mock_gateway):
        with pytest.raises(BuyRejectedError):
            await mock_trader.execute_buy(opportunity(remaining=20))

        mock_gateway.place_market_order.assert_not_awaited()
        assert len(mock_trader.ledger) == 0

    @pytest.mark.asyncio
    async def test_unfilled_order_removes_reservation(self, mock_trader, mock_gateway, audit):
        mock_gateway.check_balance.return_value = 0.0
        mock_gateway.place_market_order.return_value = OrderResult(
            success=False, message="order couldn't be fully filled. FOK orders are fully filled or killed."
        )

        with pytest.raises(BuyFailedError):
            await mock_trader.execute_buy(opportunity())

        assert len(mock_trader.ledger) == 0
        failed = audit.of_type(AuditEventType.BUY_FAILED)
        assert len(failed) == 1
        assert "couldn't be fully filled (FOK)" in failed[0].message

    @pytest.mark.asyncio
    async def test_gateway_error_removes_reservation(self, mock_trader, mock_gateway):
        mock_gateway.check_balance.return_value = 0.0
        mock_gateway.place_market_order.side_effect = InsufficientBalanceError("not enough balance")

        with pytest.raises(BuyFailedError):
            await mock_trader.execute_buy(opportunity())

        assert not await mock_trader.has_active_position(PERIOD, TokenType.BTC_UP)

    @pytest.mark.asyncio
    async def test_fill_not_visible_is_confirmed_by_sweep(self, mock_trader, mock_gateway, clock):
        mock_gateway.check_balance.return_value = 0.0
        mock_gateway.place_market_order.return_value = FILLED

        trade = await mock_trader.execute_buy(opportunity())

        assert trade.buy_confirmed is False
        assert trade.balance_baseline == 0.0
        assert clock.sleeps == [1.0, 1.0]

        mock_gateway.check_balance.return_value = 5.43
        await mock_trader.check_pending_trades()

        stored = await mock_trader.get_pending_trade(PERIOD, UP)
        assert stored.buy_confirmed
        assert stored.units == 5.43

    @pytest.mark.asyncio
    async def test_paper_buy_spends_amount_at_ask(self, trader, paper, make_snapshot):
        snapshot = make_snapshot(quotes={Asset.BTC: (0.92, 0.925, 0.07, 0.08)})
        paper.update_quotes(snapshot)

        trade = await trader.execute_buy(opportunity())

        assert trade.units == pytest.approx(5.0 / 0.925)
        assert paper.cash == pytest.approx(95.0)


class TestLimitBuy:
    """Tests for resting limit buys, fill detection and cancels."""

    @pytest.fixture
    def book(self, paper, make_snapshot, trader):
        snapshot = make_snapshot(elapsed=1, quotes={Asset.BTC: (0.50, 0.51, 0.48, 0.49)})
        paper.update_quotes(snapshot)
        trader.observe_snapshot(snapshot)
        return snapshot

    def limit(self, price=0.45, size=5.0):
        return opportunity(
            token=DOWN,
            token_type=TokenType.BTC_DOWN,
            price=price,
            remaining=899,
            role=Role.LIMIT_ENTRY,
            market=False,
            size_override=size,
        )

    @pytest.mark.asyncio
    async def test_places_resting_buy_with_baseline(self, trader, paper, book, audit):
        trade = await trader.execute_limit_buy(self.limit())

        assert trade.role == Role.LIMIT_ENTRY
        assert trade.units == 5.0
        assert trade.purchase_price == 0.45
        assert trade.balance_baseline == 0.0
        assert trade.order_id in paper.orders
        assert not trade.buy_confirmed
        assert len(audit.of_type(AuditEventType.LIMIT_BUY_PLACED)) == 1

    @pytest.mark.asyncio
    async def test_execute_buy_delegates_limit_intents(self, trader, paper, book):
        trade = await trader.execute_buy(self.limit())
        assert trade.order_id in paper.orders

    @pytest.mark.asyncio
    async def test_fill_then_resting_sell_then_sell_fill(self, trader, paper, book, audit):
        await trader.execute_limit_buy(self.limit())

        paper.set_quote(DOWN, 0.44, 0.45)
        await trader.check_pending_trades()

        trade = await trader.get_pending_limit_trade(PERIOD, DOWN)
        assert trade.buy_confirmed
        assert trade.units == 5.0
        assert trade.sell_orders_placed
        assert len(audit.of_type(AuditEventType.BUY_FILLED)) == 1
        [resting] = paper.orders.values()
        assert resting.side == OrderSide.SELL
        assert resting.price == 0.99

        paper.set_quote(DOWN, 0.99, 0.995)
        await trader.check_pending_trades()

        assert await trader.get_pending_limit_trade(PERIOD, DOWN) is None
        assert trader.total_profit == pytest.approx((0.99 - 0.45) * 5.0)
        assert len(audit.of_type(AuditEventType.SELL_FILLED)) == 1

    @pytest.mark.asyncio
    async def test_hold_to_expiry_places_no_sell(self, trader, paper, book):
        await trader.execute_limit_buy(self.limit(), place_sell_orders=False)

        paper.set_quote(DOWN, 0.44, 0.45)
        await trader.check_pending_trades()

        trade = await trader.get_pending_limit_trade(PERIOD, DOWN)
        assert trade.buy_confirmed
        assert trade.hold_to_expiry
        assert paper.orders == {}

    @pytest.mark.asyncio
    async def test_size_override_wins(self, trader, book):
        trade = await trader.execute_limit_buy(self.limit(size=5.0), size_override=7.5)
        assert trade.units == 7.5

    @pytest.mark.asyncio
    async def test_cancel_resting_buy(self, trader, paper, book, audit):
        await trader.execute_limit_buy(self.limit())

        assert await trader.cancel_pending_buy(PERIOD, DOWN) is True

        assert paper.orders == {}
        assert await trader.get_pending_limit_trade(PERIOD, DOWN) is None
        assert len(audit.of_type(AuditEventType.CANCELLED)) == 1

    @pytest.mark.asyncio
    async def test_cancel_without_trade_is_success(self, trader):
        assert await trader.cancel_pending_buy(PERIOD, DOWN) is True

    @pytest.mark.asyncio
    async def test_cancel_after_fill_refused(self, trader, paper, book):
        await trader.execute_limit_buy(self.limit(), place_sell_orders=False)
        paper.set_quote(DOWN, 0.44, 0.45)
        await trader.check_pending_trades()

        assert await trader.cancel_pending_buy(PERIOD, DOWN) is False
        assert await trader.get_pending_limit_trade(PERIOD, DOWN) is not None

    @pytest.mark.asyncio
    async def test_fill_racing_cancel_is_kept(self, mock_trader, mock_gateway):
        trade = PendingTrade(
            token_id=DOWN,
            condition_id=condition_id(Asset.BTC),
            token_type=TokenType.BTC_DOWN,
            role=Role.LIMIT_ENTRY,
            investment_amount=2.25,
            units=5.0,
            purchase_price=0.45,
            sell_price=0.99,
            period=PERIOD,
            order_id="resting-1",
            balance_baseline=0.0,
        )
        await mock_trader.ledger.put(trade)
        mock_gateway.cancel_order.return_value = OrderResult(success=True, order_id="resting-1")
        mock_gateway.check_balance.return_value = 5.0

        assert await mock_trader.cancel_pending_buy(PERIOD, DOWN) is False

        stored = await mock_trader.get_pending_limit_trade(PERIOD, DOWN)
        assert stored.buy_confirmed

    @pytest.mark.asyncio
    async def test_cancel_rejected_by_exchange(self, mock_trader, mock_gateway):
        trade = confirmed_trade(role=Role.LIMIT_ENTRY, buy_confirmed=False, order_id="resting-1")
        await mock_trader.ledger.put(trade)
        mock_gateway.cancel_order.return_value = OrderResult(success=False, message="order not found")

        assert await mock_trader.cancel_pending_buy(PERIOD, UP) is False
        assert len(mock_trader.ledger) == 1


class TestSellSweep:
    """Tests for the profit-taking and stop-loss sweep."""

    @pytest.mark.asyncio
    async def test_profit_sell_at_target(self, trader, paper, detector, audit, make_snapshot):
        snapshot = make_snapshot(quotes={Asset.BTC: (0.92, 0.925, 0.07, 0.08)})
        paper.update_quotes(snapshot)
        trade = await trader.execute_buy(opportunity())

        paper.set_quote(UP, 0.99, 0.995)
        await trader.check_pending_trades()

        assert len(trader.ledger) == 0
        sold = math.floor(trade.units * 100) / 100
        assert trader.total_profit == pytest.approx((0.99 - 0.92) * sold)
        assert paper.balances[UP] < 0.01
        assert len(audit.of_type(AuditEventType.SELL)) == 1
        assert detector.reset_state(TokenType.BTC_UP) == ResetState.NEEDS_RESET

    @pytest.mark.asyncio
    async def test_no_action_between_thresholds(self, mock_trader, mock_gateway):
        await mock_trader.ledger.put(confirmed_trade())
        mock_gateway.get_price.return_value = 0.93

        await mock_trader.check_pending_trades()

        mock_gateway.place_market_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_price_is_skipped(self, mock_trader, mock_gateway):
        await mock_trader.ledger.put(confirmed_trade())
        mock_gateway.get_price.return_value = None

        await mock_trader.check_pending_trades()

        mock_gateway.place_market_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stop_loss_places_opposite_limit_buy(self, trader, paper, audit, make_snapshot):
        snapshot = make_snapshot(quotes={Asset.BTC: (0.92, 0.925, 0.07, 0.08)})
        paper.update_quotes(snapshot)
        trader.observe_snapshot(snapshot)
        trade = await trader.execute_buy(opportunity())

        paper.set_quote(UP, 0.80, 0.81)
        paper.set_quote(DOWN, 0.19, 0.20)
        await trader.check_pending_trades()

        assert len(audit.of_type(AuditEventType.STOP_LOSS)) == 1
        assert len(audit.of_type(AuditEventType.OPPOSITE_HEDGE)) == 1
        assert await trader.get_pending_trade(PERIOD, UP) is None

        hedge = await trader.get_pending_trade(PERIOD, DOWN, Role.OPPOSITE_LIMIT)
        assert hedge is not None
        assert hedge.purchase_price == 0.15
        assert hedge.sell_price == 0.25
        assert hedge.units == math.floor(trade.units * 100) / 100
        [resting] = paper.orders.values()
        assert resting.side == OrderSide.BUY
        assert resting.price == 0.15

    @pytest.mark.asyncio
    async def test_stop_loss_sells_held_opposite(self, mock_trader, mock_gateway, make_snapshot):
        mock_trader.observe_snapshot(make_snapshot())
        await mock_trader.ledger.put(confirmed_trade(units=5.0))
        mock_gateway.get_price.return_value = 0.80
        mock_gateway.check_balance.side_effect = lambda tid: 5.0 if tid == UP else 3.0
        mock_gateway.place_market_order.return_value = OrderResult(
            success=True, order_id="s-1", filled_size=5.0, filled_price=0.80
        )
        mock_gateway.place_limit_order.return_value = OrderResult(success=True, order_id="hedge-1")

        await mock_trader.check_pending_trades()

        mock_gateway.place_limit_order.assert_awaited_once_with(DOWN, OrderSide.SELL, 3.0, 0.25)
        hedge = await mock_trader.get_pending_trade(PERIOD, DOWN, Role.OPPOSITE)
        assert hedge.buy_confirmed
        assert hedge.sell_orders_placed
        assert mock_trader.total_profit == pytest.approx((0.80 - 0.92) * 5.0)

    @pytest.mark.asyncio
    async def test_sell_aborts_when_price_recovers(self, mock_trader, mock_gateway, audit):
        await mock_trader.ledger.put(confirmed_trade())
        mock_gateway.check_balance.return_value = 5.0
        mock_gateway.get_price.side_effect = [0.80, 0.99]
        mock_gateway.place_market_order.return_value = NOT_FILLED

        await mock_trader.check_pending_trades()

        stored = await mock_trader.get_pending_trade(PERIOD, UP)
        assert not stored.sold
        assert stored.sell_attempts == 1
        assert len(audit.of_type(AuditEventType.SELL_ABORTED)) == 1
        assert mock_gateway.place_market_order.await_count == 1

    @pytest.mark.asyncio
    async def test_sell_exhaustion_parks_for_redemption(self, mock_trader, mock_gateway, audit, config):
        config.sell_max_attempts = 3
        await mock_trader.ledger.put(confirmed_trade())
        mock_gateway.check_balance.return_value = 5.0
        mock_gateway.get_price.return_value = 0.80
        mock_gateway.place_market_order.return_value = NOT_FILLED

        await mock_trader.check_pending_trades()

        stored = await mock_trader.get_pending_trade(PERIOD, UP)
        assert stored.claim_on_closure
        assert stored.sell_attempts == 3
        assert mock_gateway.place_market_order.await_count == 3
        assert mock_gateway.refresh_allowance.await_count == 3
        assert len(audit.of_type(AuditEventType.SELL_EXHAUSTED)) == 1

        # Parked trades are left for the redemption sweep
        await mock_trader.check_pending_trades()
        assert mock_gateway.place_market_order.await_count == 3

    @pytest.mark.asyncio
    async def test_definitive_error_parks_trade(self, mock_trader, mock_gateway):
        await mock_trader.ledger.put(confirmed_trade())
        mock_gateway.check_balance.return_value = 5.0
        mock_gateway.get_price.return_value = 0.99
        mock_gateway.place_market_order.side_effect = InsufficientBalanceError("not enough balance")

        await mock_trader.check_pending_trades()

        stored = await mock_trader.get_pending_trade(PERIOD, UP)
        assert stored.claim_on_closure
        assert mock_gateway.place_market_order.await_count == 1

    @pytest.mark.asyncio
    async def test_zero_balance_drops_trade(self, mock_trader, mock_gateway):
        await mock_trader.ledger.put(confirmed_trade())
        mock_gateway.get_price.return_value = 0.99
        mock_gateway.check_balance.return_value = 0.0

        await mock_trader.check_pending_trades()

        assert len(mock_trader.ledger) == 0
        mock_gateway.place_market_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sell_uses_verified_balance(self, mock_trader, mock_gateway):
        await mock_trader.ledger.put(confirmed_trade(units=5.0))
        mock_gateway.get_price.return_value = 0.99
        mock_gateway.check_balance.return_value = 4.97
        mock_gateway.place_market_order.return_value = OrderResult(
            success=True, order_id="s-1", filled_size=4.97, filled_price=0.99
        )

        await mock_trader.check_pending_trades()

        mock_gateway.place_market_order.assert_awaited_once_with(UP, 4.97, OrderSide.SELL, TimeInForce.FAK)

    @pytest.mark.asyncio
    async def test_sell_size_is_floored_below_balance(self, mock_trader, mock_gateway, audit):
        await mock_trader.ledger.put(confirmed_trade(units=1.09))
        mock_gateway.get_price.return_value = 0.99
        mock_gateway.check_balance.return_value = 1.086956
        mock_gateway.place_market_order.return_value = OrderResult(
            success=True, order_id="s-1", filled_size=1.08, filled_price=0.99
        )

        await mock_trader.check_pending_trades()

        mock_gateway.place_market_order.assert_awaited_once_with(UP, 1.08, OrderSide.SELL, TimeInForce.FAK)
        assert mock_trader.total_profit == pytest.approx((0.99 - 0.92) * 1.08)
        [event] = audit.of_type(AuditEventType.SELL)
        assert event.data["units"] == 1.08

    @pytest.mark.asyncio
    async def test_dust_balance_is_held_for_redemption(self, mock_trader, mock_gateway):
        await mock_trader.ledger.put(confirmed_trade())
        mock_gateway.get_price.return_value = 0.99
        mock_gateway.check_balance.return_value = 0.004

        await mock_trader.check_pending_trades()

        mock_gateway.place_market_order.assert_not_awaited()
        stored = await mock_trader.get_pending_trade(PERIOD, UP)
        assert stored.claim_on_closure

    @pytest.mark.asyncio
    async def test_profit_sell_aborts_when_bid_drops_below_target(self, mock_trader, mock_gateway, audit):
        await mock_trader.ledger.put(confirmed_trade())
        mock_gateway.check_balance.return_value = 5.0
        mock_gateway.get_price.side_effect = [0.99, 0.99, 0.80]
        mock_gateway.place_market_order.return_value = NOT_FILLED

        await mock_trader.check_pending_trades()

        assert mock_gateway.place_market_order.await_count == 2
        stored = await mock_trader.get_pending_trade(PERIOD, UP)
        assert not stored.sold
        assert not stored.claim_on_closure
        assert stored.sell_attempts == 2
        assert len(audit.of_type(AuditEventType.SELL_ABORTED)) == 1
        assert audit.of_type(AuditEventType.SELL_EXHAUSTED) == []


class TestHedgeSells:
    """Tests for the deferred two-tier hedge sells."""

    @pytest.mark.asyncio
    async def test_hedge_buy_schedules_tier_sells(self, trader, paper, clock, audit, make_snapshot):
        paper.update_quotes(make_snapshot(quotes={Asset.BTC: (0.85, 0.86, 0.14, 0.15)}))
        trade = await trader.execute_buy(
            opportunity(price=0.85, role=Role.INDIVIDUAL_HEDGE, investment_override=10.0)
        )
        assert trade.sell_price == pytest.approx((0.93 + 0.98) / 2)
        assert trader.scheduler.pending_count == 1
        assert len(audit.of_type(AuditEventType.HEDGE)) == 1

        clock.advance(7.0)
        await trader.scheduler.run_due()

        orders = sorted(paper.orders.values(), key=lambda o: o.price)
        assert [o.price for o in orders] == [0.93, 0.98]
        assert all(o.side == OrderSide.SELL for o in orders)
        assert sum(o.size for o in orders) <= paper.balances[UP]
        stored = await trader.get_pending_trade(PERIOD, UP, Role.INDIVIDUAL_HEDGE)
        assert stored.sell_orders_placed

    @pytest.mark.asyncio
    async def test_hedge_is_not_market_sold(self, mock_trader, mock_gateway):
        await mock_trader.ledger.put(confirmed_trade(role=Role.STANDARD_HEDGE))
        mock_gateway.get_price.return_value = 0.99

        await mock_trader.check_pending_trades()

        mock_gateway.place_market_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejected_tier_does_not_stop_others(self, mock_trader, mock_gateway):
        trade = confirmed_trade(role=Role.INDIVIDUAL_HEDGE, units=10.0)
        await mock_trader.ledger.put(trade)
        mock_gateway.check_balance.return_value = 10.0
        mock_gateway.place_limit_order.side_effect = [
            InsufficientBalanceError("insufficient"),
            OrderResult(success=True, order_id="tier-2"),
        ]

        placed = await mock_trader.place_hedge_sell_orders(trade.key)

        assert placed == 1
        assert mock_gateway.place_limit_order.await_count == 2
