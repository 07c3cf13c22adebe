"""
Trade ledger: one indexed store of PendingTrades behind a short-held lock.

The lock only guards in-memory reads and writes. Callers copy what they need,
release it, talk to the exchange, then re-acquire to write results back.
"""

import asyncio
import copy
import logging
from typing import Callable, Iterable, Optional

from .models import PendingTrade, Role, TokenType, TradeKey

logger = logging.getLogger(__name__)


class TradeLedger:
    """
    Composite-keyed store of open and pending trades.

    Example:
        ledger = TradeLedger()
        if await ledger.reserve(trade):
            ...  # place the order
        for trade in await ledger.snapshot():
            ...
    """

    def __init__(self):
        self._trades: dict[TradeKey, PendingTrade] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._trades)

    @staticmethod
    def _blocks(existing: PendingTrade, period: int, token_type: TokenType) -> bool:
        return (
            existing.period == period
            and existing.token_type == token_type
            and existing.role.is_exclusive
            and not existing.sold
            and not existing.abandoned
        )

    def _has_active(self, period: int, token_type: TokenType) -> bool:
        return any(self._blocks(t, period, token_type) for t in self._trades.values())

    async def reserve(self, trade: PendingTrade) -> bool:
        """
        Insert a trade only if no live position exists for its (period, token type).

        A sold trade under the same key is replaced, which is how a closed
        position is re-entered.

        The check and the insert happen under one lock acquisition, so
        concurrent buy submissions for the same token cannot both succeed.

        Returns:
            True if the trade was inserted
        """
        async with self._lock:
            existing = self._trades.get(trade.key)
            if existing is not None and not existing.sold:
                return False
            if trade.role.is_exclusive and self._has_active(trade.period, trade.token_type):
                return False
            self._trades[trade.key] = trade
            return True

    async def put(self, trade: PendingTrade) -> None:
        async with self._lock:
            self._trades[trade.key] = trade

    async def remove(self, key: TradeKey) -> Optional[PendingTrade]:
        async with self._lock:
            return self._trades.pop(key, None)

    async def get(self, key: TradeKey) -> Optional[PendingTrade]:
        """Copy of the stored trade, or None."""
        async with self._lock:
            trade = self._trades.get(key)
            return copy.copy(trade) if trade is not None else None

    async def update(self, key: TradeKey, **changes) -> Optional[PendingTrade]:
        """
        Apply field changes to a stored trade.

        Returns:
            Copy of the updated trade, or None if it was removed meanwhile
        """
        async with self._lock:
            trade = self._trades.get(key)
            if trade is None:
                return None
            for name, value in changes.items():
                setattr(trade, name, value)
            return copy.copy(trade)

    async def mutate(
        self,
        key: TradeKey,
        fn: Callable[[PendingTrade], None],
    ) -> Optional[PendingTrade]:
        """Run `fn` on the stored trade under the lock."""
        async with self._lock:
            trade = self._trades.get(key)
            if trade is None:
                return None
            fn(trade)
            return copy.copy(trade)

    async def snapshot(self) -> list[PendingTrade]:
        """Point-in-time copies of all trades."""
        async with self._lock:
            return [copy.copy(t) for t in self._trades.values()]

    async def has_active_position(self, period: int, token_type: TokenType) -> bool:
        async with self._lock:
            return self._has_active(period, token_type)

    async def find(
        self,
        period: int,
        token_id: str,
        roles: Iterable[Role],
    ) -> Optional[PendingTrade]:
        """First trade for (period, token_id) in the given role order."""
        async with self._lock:
            for role in roles:
                trade = self._trades.get(TradeKey(period, token_id, role))
                if trade is not None:
                    return copy.copy(trade)
        return None

    async def remove_where(self, predicate: Callable[[PendingTrade], bool]) -> list[PendingTrade]:
        """Remove and return every trade matching `predicate`."""
        async with self._lock:
            doomed = [key for key, trade in self._trades.items() if predicate(trade)]
            return [self._trades.pop(key) for key in doomed]
