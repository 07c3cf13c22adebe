"""
Tests for the trade ledger and trade model.

Covers:
- Composite keys (period, token_id, role)
- One live position per (period, token type) under concurrency
- Copy semantics of reads
- Lifecycle state derivation
"""

import asyncio

import pytest

from conftest import PERIOD, condition_id, token_id
from src.momentum.ledger import TradeLedger
from src.momentum.models import (
    PERIOD_DURATION,
    Asset,
    PendingTrade,
    Role,
    TokenType,
    TradeKey,
    TradeState,
)


def make_trade(role: Role = Role.ENTRY, period: int = PERIOD, side: str = "up", **overrides) -> PendingTrade:
    token_type = TokenType.BTC_UP if side == "up" else TokenType.BTC_DOWN
    fields = dict(
        token_id=token_id(Asset.BTC, side),
        condition_id=condition_id(Asset.BTC),
        token_type=token_type,
        role=role,
        investment_amount=5.0,
        units=5.4,
        purchase_price=0.92,
        sell_price=0.99,
        period=period,
    )
    fields.update(overrides)
    return PendingTrade(**fields)


class TestPendingTrade:
    """Tests for the trade model."""

    def test_key_is_composite(self):
        trade = make_trade(Role.LIMIT_ENTRY)
        assert trade.key == TradeKey(PERIOD, token_id(Asset.BTC, "up"), Role.LIMIT_ENTRY)

    def test_period_end(self):
        assert make_trade().period_end == PERIOD + PERIOD_DURATION

    def test_confirm_replaces_estimate(self):
        trade = make_trade(units=10.0)
        trade.confirm(9.98)
        assert trade.units == 9.98
        assert trade.confirmed_balance == 9.98
        assert trade.buy_confirmed is True

    @pytest.mark.parametrize(
        "changes,expected",
        [
            ({}, TradeState.ARMED),
            ({"buy_confirmed": True}, TradeState.CONFIRMED),
            ({"buy_confirmed": True, "hold_to_expiry": True}, TradeState.HELD_TO_EXPIRY),
            ({"buy_confirmed": True, "sold": True}, TradeState.SOLD),
            ({"buy_confirmed": True, "sold": True, "stop_loss_triggered": True}, TradeState.STOP_LOSS_SOLD),
            ({"buy_confirmed": True, "redemption_attempts": 2}, TradeState.REDEEMING),
            ({"buy_confirmed": True, "abandoned": True}, TradeState.ABANDONED),
        ],
    )
    def test_state(self, changes, expected):
        assert make_trade(**changes).state == expected

    def test_hedge_roles(self):
        assert Role.INDIVIDUAL_HEDGE.is_hedge
        assert Role.STANDARD_HEDGE.is_hedge
        assert Role.DUAL_LIMIT_HEDGE.is_hedge
        assert not Role.ENTRY.is_hedge
        assert not Role.OPPOSITE.is_exclusive
        assert not Role.OPPOSITE_LIMIT.is_exclusive

    def test_token_type_opposite(self):
        assert TokenType.ETH_UP.opposite() == TokenType.ETH_DOWN
        assert TokenType.XRP_DOWN.opposite() == TokenType.XRP_UP
        assert TokenType.SOL_UP.display_name == "SOL Up"


class TestTradeLedger:
    """Tests for the ledger store."""

    @pytest.mark.asyncio
    async def test_reserve_and_get(self):
        ledger = TradeLedger()
        trade = make_trade()

        assert await ledger.reserve(trade) is True
        stored = await ledger.get(trade.key)

        assert stored is not None
        assert stored is not trade
        assert len(ledger) == 1

    @pytest.mark.asyncio
    async def test_duplicate_token_type_rejected(self):
        ledger = TradeLedger()
        await ledger.reserve(make_trade(Role.ENTRY))

        assert await ledger.reserve(make_trade(Role.LIMIT_ENTRY)) is False
        assert await ledger.has_active_position(PERIOD, TokenType.BTC_UP)

    @pytest.mark.asyncio
    async def test_concurrent_reserves_only_one_wins(self):
        ledger = TradeLedger()

        results = await asyncio.gather(*(ledger.reserve(make_trade()) for _ in range(10)))

        assert results.count(True) == 1
        assert len(ledger) == 1

    @pytest.mark.asyncio
    async def test_other_period_does_not_block(self):
        ledger = TradeLedger()
        await ledger.reserve(make_trade(period=PERIOD))

        assert await ledger.reserve(make_trade(period=PERIOD + 900)) is True
        assert not await ledger.has_active_position(PERIOD + 1800, TokenType.BTC_UP)

    @pytest.mark.asyncio
    async def test_sold_trade_does_not_block(self):
        ledger = TradeLedger()
        await ledger.reserve(make_trade(sold=True))
        assert await ledger.reserve(make_trade(Role.LIMIT_ENTRY)) is True

    @pytest.mark.asyncio
    async def test_sold_trade_is_replaced_on_reentry(self):
        ledger = TradeLedger()
        await ledger.reserve(make_trade(sold=True))

        assert await ledger.reserve(make_trade(units=6.0)) is True
        stored = await ledger.get(make_trade().key)
        assert not stored.sold
        assert stored.units == 6.0
        assert len(ledger) == 1

    @pytest.mark.asyncio
    async def test_opposite_roles_are_not_exclusive(self):
        ledger = TradeLedger()
        await ledger.reserve(make_trade(Role.ENTRY))
        assert await ledger.reserve(make_trade(Role.OPPOSITE_LIMIT)) is True

    @pytest.mark.asyncio
    async def test_update_returns_copy(self):
        ledger = TradeLedger()
        trade = make_trade()
        await ledger.reserve(trade)

        updated = await ledger.update(trade.key, sell_attempts=3)
        updated.sell_attempts = 99

        stored = await ledger.get(trade.key)
        assert stored.sell_attempts == 3

    @pytest.mark.asyncio
    async def test_update_missing_returns_none(self):
        ledger = TradeLedger()
        assert await ledger.update(make_trade().key, sold=True) is None

    @pytest.mark.asyncio
    async def test_mutate(self):
        ledger = TradeLedger()
        trade = make_trade()
        await ledger.reserve(trade)

        result = await ledger.mutate(trade.key, lambda t: t.confirm(5.25))

        assert result.units == 5.25
        assert result.buy_confirmed

    @pytest.mark.asyncio
    async def test_find_respects_role_order(self):
        ledger = TradeLedger()
        await ledger.put(make_trade(Role.OPPOSITE_LIMIT))
        await ledger.put(make_trade(Role.LIMIT_ENTRY))

        found = await ledger.find(PERIOD, token_id(Asset.BTC, "up"), [Role.LIMIT_ENTRY, Role.OPPOSITE_LIMIT])

        assert found.role == Role.LIMIT_ENTRY

    @pytest.mark.asyncio
    async def test_remove_where(self):
        ledger = TradeLedger()
        await ledger.put(make_trade(period=PERIOD, abandoned=True))
        await ledger.put(make_trade(period=PERIOD + 900))

        removed = await ledger.remove_where(lambda t: t.abandoned)

        assert len(removed) == 1
        assert len(ledger) == 1

    @pytest.mark.asyncio
    async def test_snapshot_is_point_in_time(self):
        ledger = TradeLedger()
        trade = make_trade()
        await ledger.put(trade)

        snapshot = await ledger.snapshot()
        await ledger.remove(trade.key)

        assert len(snapshot) == 1
        assert len(ledger) == 0
