"""
Paper Trading Gateway.

Implements ExchangeGateway but executes trades virtually against the quotes
observed in market snapshots, so paper and live runs share one code path.

Features:
- Market orders fill instantly at the best quote (BUY at ask, SELL at bid)
- Resting limit orders fill once the book crosses them
  (BUY when 0 < ask <= limit, SELL when bid >= limit)
- Token balances stay visible until a resting sell fills, as on the exchange
- Markets resolve at period end to the side with the higher last bid;
  redemption pays $1 per winning share and $0 per losing share
- Trade history logging to JSONL file
"""

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from ..momentum.models import PERIOD_DURATION, MarketSnapshot
from ..momentum.scheduler import Clock, SystemClock
from .gateway import (
    BalanceAllowance,
    ExchangeGateway,
    InsufficientBalanceError,
    InvalidOrderError,
    MarketResolution,
    OrderBook,
    OrderResult,
    OrderSide,
    OrderStatus,
    RedeemResult,
    TimeInForce,
)

logger = logging.getLogger(__name__)

EPSILON = 1e-9

# Paper allowance is effectively unlimited
PAPER_ALLOWANCE = 1e12


@dataclass
class _Quote:
    bid: Optional[float] = None
    ask: Optional[float] = None


@dataclass
class _TokenInfo:
    condition_id: str
    outcome: str
    period: int


@dataclass
class _RestingOrder:
    order_id: str
    token_id: str
    side: OrderSide
    size: float
    price: float
    created_at: str


class PaperGateway(ExchangeGateway):
    """
    Paper trading gateway.

    Attributes:
        initial_balance: Starting USDC balance
        cash: Current USDC balance (including cash locked in resting buys)
        balances: Token balances by token_id
        orders: Resting orders by order_id
        realized_pnl: Redemption value minus cost of redeemed shares
        log_trades: Whether to log fills and events to file
        log_path: Path to trade log file
    """

    name = "paper"

    def __init__(
        self,
        initial_balance: float = 1000.0,
        log_trades: bool = True,
        log_path: str = "data/paper_trades.jsonl",
        clock: Optional[Clock] = None,
    ) -> None:
        self.initial_balance = initial_balance
        self.cash = initial_balance
        self.balances: dict[str, float] = {}
        self.orders: dict[str, _RestingOrder] = {}
        self.realized_pnl = 0.0
        self.trade_history: list[dict[str, Any]] = []

        self.log_trades = log_trades
        self.log_path = Path(log_path)
        self.clock = clock or SystemClock()

        self._quotes: dict[str, _Quote] = {}
        self._tokens: dict[str, _TokenInfo] = {}
        self._resolutions: dict[str, MarketResolution] = {}
        self._cost_basis: dict[str, float] = {}

    # =========================================================================
    # Price feed
    # =========================================================================

    def update_quotes(self, snapshot: MarketSnapshot) -> None:
        """Take quotes from a snapshot and match resting orders against them."""
        for market in snapshot.markets.values():
            for token_type, quote in market.tokens():
                self._tokens[quote.token_id] = _TokenInfo(
                    condition_id=market.condition_id,
                    outcome=token_type.outcome,
                    period=snapshot.period,
                )
                self._quotes[quote.token_id] = _Quote(quote.bid, quote.ask)
        self._match_resting_orders()

    def set_quote(self, token_id: str, bid: Optional[float], ask: Optional[float]) -> None:
        """Set a token's quote directly and match resting orders."""
        self._quotes[token_id] = _Quote(bid, ask)
        self._match_resting_orders()

    def register_token(self, token_id: str, condition_id: str, outcome: str, period: int) -> None:
        self._tokens[token_id] = _TokenInfo(condition_id, outcome, period)

    def resolve_market(self, condition_id: str, winning_token_id: Optional[str]) -> MarketResolution:
        """Force a market's resolution."""
        winner = self._tokens.get(winning_token_id) if winning_token_id else None
        resolution = MarketResolution(
            closed=True,
            winning_token_id=winning_token_id,
            winning_outcome=winner.outcome if winner else None,
        )
        self._resolutions[condition_id] = resolution
        self._log_event("RESOLVED", {"condition_id": condition_id, "winner": resolution.winning_outcome})
        return resolution

    # =========================================================================
    # ExchangeGateway Implementations
    # =========================================================================

    async def get_orderbook(self, token_id: str) -> OrderBook:
        quote = self._quotes.get(token_id, _Quote())
        bids = [(quote.bid, PAPER_ALLOWANCE)] if quote.bid else []
        asks = [(quote.ask, PAPER_ALLOWANCE)] if quote.ask else []
        return OrderBook(token_id=token_id, bids=bids, asks=asks)

    async def get_price(self, token_id: str, side: OrderSide) -> Optional[float]:
        quote = self._quotes.get(token_id)
        if quote is None:
            return None
        return quote.bid if side == OrderSide.SELL else quote.ask

    async def place_market_order(
        self,
        token_id: str,
        amount: float,
        side: OrderSide,
        time_in_force: TimeInForce = TimeInForce.FOK,
    ) -> OrderResult:
        if amount <= 0:
            raise InvalidOrderError(f"invalid size {amount}")

        quote = self._quotes.get(token_id, _Quote())
        if side == OrderSide.BUY:
            if not quote.ask:
                return OrderResult(
                    success=False,
                    status=OrderStatus.REJECTED,
                    message="order couldn't be fully filled (FOK): no asks",
                )
            if amount > self._free_cash() + EPSILON:
                raise InsufficientBalanceError(
                    f"insufficient USDC: need ${amount:.2f}, have ${self._free_cash():.2f}"
                )
            shares = amount / quote.ask
            self._fill(token_id, OrderSide.BUY, shares, quote.ask)
            return self._filled_result(shares, quote.ask)

        if not quote.bid:
            return OrderResult(
                success=False,
                status=OrderStatus.REJECTED,
                message="order couldn't be filled (FAK): no bids",
            )
        held = self.balances.get(token_id, 0.0)
        if held <= EPSILON:
            raise InsufficientBalanceError(f"insufficient token balance for {token_id[:16]}")
        shares = min(amount, held)
        self._fill(token_id, OrderSide.SELL, shares, quote.bid)
        return self._filled_result(shares, quote.bid)

    async def place_limit_order(
        self,
        token_id: str,
        side: OrderSide,
        size: float,
        price: float,
    ) -> OrderResult:
        if price < 0.01 or price > 0.99:
            raise InvalidOrderError(f"invalid price {price}")
        if size <= 0:
            raise InvalidOrderError(f"invalid size {size}")

        if side == OrderSide.BUY and size * price > self._free_cash() + EPSILON:
            raise InsufficientBalanceError(
                f"insufficient USDC: need ${size * price:.2f}, have ${self._free_cash():.2f}"
            )
        if side == OrderSide.SELL and size > self._free_tokens(token_id) + EPSILON:
            raise InsufficientBalanceError(f"insufficient token balance for {token_id[:16]}")

        order = _RestingOrder(
            order_id=f"PAPER_{uuid.uuid4().hex[:12]}",
            token_id=token_id,
            side=side,
            size=size,
            price=price,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        self.orders[order.order_id] = order
        logger.info(f"[PAPER] LIMIT {side} {size:.2f} @ ${price:.2f} ({token_id[:16]}...)")
        self._match_resting_orders()

        status = OrderStatus.OPEN if order.order_id in self.orders else OrderStatus.FILLED
        return OrderResult(success=True, order_id=order.order_id, status=status, message="placed")

    async def cancel_order(self, order_id: str) -> OrderResult:
        order = self.orders.pop(order_id, None)
        if order is None:
            return OrderResult(success=False, order_id=order_id, message="order not found")
        self._log_event("CANCELLED", {"order_id": order_id, "token_id": order.token_id})
        return OrderResult(success=True, order_id=order_id, status=OrderStatus.CANCELLED, message="cancelled")

    async def check_balance(self, token_id: str) -> float:
        return self.balances.get(token_id, 0.0)

    async def check_balance_and_allowance(self, token_id: str) -> BalanceAllowance:
        return BalanceAllowance(balance=self.balances.get(token_id, 0.0), allowance=PAPER_ALLOWANCE)

    async def refresh_allowance(self, token_id: str) -> None:
        return None

    async def get_market_resolution(self, condition_id: str) -> MarketResolution:
        resolution = self._resolutions.get(condition_id)
        if resolution is not None:
            return resolution

        tokens = {tid: info for tid, info in self._tokens.items() if info.condition_id == condition_id}
        if not tokens:
            return MarketResolution(closed=False)
        period = next(iter(tokens.values())).period
        if self.clock.now() < period + PERIOD_DURATION:
            return MarketResolution(closed=False)

        # Winner is the side the book favoured last
        winner = max(tokens, key=lambda tid: (self._quotes.get(tid) or _Quote()).bid or 0.0)
        return self.resolve_market(condition_id, winner)

    async def redeem(self, condition_id: str, token_id: str, outcome: str) -> RedeemResult:
        resolution = self._resolutions.get(condition_id)
        if resolution is None or not resolution.closed:
            return RedeemResult(success=False, message="market not resolved")

        payouts = 0.0
        for tid, info in self._tokens.items():
            if info.condition_id != condition_id:
                continue
            shares = self.balances.pop(tid, 0.0)
            if shares <= EPSILON:
                continue
            value = shares if tid == resolution.winning_token_id else 0.0
            cost = self._cost_basis.pop(tid, 0.0)
            payouts += value
            self.realized_pnl += value - cost
            self._log_event(
                "REDEEMED",
                {"token_id": tid, "shares": shares, "value": value, "pnl": value - cost},
            )
        self.cash += payouts
        logger.info(f"[PAPER] Redeemed {outcome} for {condition_id[:18]}...: ${payouts:.2f}")
        return RedeemResult(success=True, tx_hash=f"PAPER_{uuid.uuid4().hex[:16]}", message="redeemed")

    # =========================================================================
    # Paper Trading Specific Methods
    # =========================================================================

    def get_pnl_summary(self) -> dict[str, Any]:
        """Summary of paper trading performance."""
        return {
            "initial_balance": self.initial_balance,
            "cash": round(self.cash, 6),
            "realized_pnl": round(self.realized_pnl, 6),
            "open_orders": len(self.orders),
            "positions": {tid: round(qty, 6) for tid, qty in self.balances.items() if qty > EPSILON},
            "total_trades": len(self.trade_history),
        }

    def get_trade_history(self) -> list[dict[str, Any]]:
        return list(self.trade_history)

    # =========================================================================
    # Internal Methods
    # =========================================================================

    def _free_cash(self) -> float:
        locked = sum(o.size * o.price for o in self.orders.values() if o.side == OrderSide.BUY)
        return self.cash - locked

    def _free_tokens(self, token_id: str) -> float:
        locked = sum(
            o.size for o in self.orders.values()
            if o.side == OrderSide.SELL and o.token_id == token_id
        )
        return self.balances.get(token_id, 0.0) - locked

    def _match_resting_orders(self) -> None:
        for order in list(self.orders.values()):
            quote = self._quotes.get(order.token_id)
            if quote is None:
                continue
            if order.side == OrderSide.BUY:
                crossed = quote.ask is not None and 0 < quote.ask <= order.price
            else:
                crossed = quote.bid is not None and quote.bid >= order.price
            if not crossed:
                continue
            del self.orders[order.order_id]
            size = order.size
            if order.side == OrderSide.SELL:
                size = min(size, self.balances.get(order.token_id, 0.0))
            if size > EPSILON:
                self._fill(order.token_id, order.side, size, order.price, order.order_id)

    def _fill(
        self,
        token_id: str,
        side: OrderSide,
        shares: float,
        price: float,
        order_id: Optional[str] = None,
    ) -> None:
        held = self.balances.get(token_id, 0.0)
        if side == OrderSide.BUY:
            self.cash -= shares * price
            self.balances[token_id] = held + shares
            self._cost_basis[token_id] = self._cost_basis.get(token_id, 0.0) + shares * price
        else:
            self.cash += shares * price
            remaining = max(0.0, held - shares)
            basis = self._cost_basis.get(token_id, 0.0)
            sold_basis = basis * (shares / held) if held > EPSILON else 0.0
            self.realized_pnl += shares * price - sold_basis
            self._cost_basis[token_id] = basis - sold_basis
            self.balances[token_id] = remaining

        trade = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "order_id": order_id,
            "token_id": token_id,
            "side": side.value,
            "shares": round(shares, 6),
            "price": price,
            "cash_after": round(self.cash, 6),
        }
        self.trade_history.append(trade)
        logger.info(f"[PAPER] FILL {side} {shares:.4f} @ ${price:.4f} ({token_id[:16]}...)")
        if self.log_trades:
            self._write_to_log(trade)

    @staticmethod
    def _filled_result(shares: float, price: float) -> OrderResult:
        return OrderResult(
            success=True,
            order_id=f"PAPER_{uuid.uuid4().hex[:12]}",
            status=OrderStatus.FILLED,
            filled_size=shares,
            filled_price=price,
            message="filled",
        )

    def _log_event(self, event: str, data: dict[str, Any]) -> None:
        """Log an event to file."""
        if self.log_trades:
            entry = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "event": event,
                **data,
            }
            self._write_to_log(entry)

    def _write_to_log(self, data: dict[str, Any]) -> None:
        """Write data to log file."""
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_path, "a") as f:
                f.write(json.dumps(data) + "\n")
        except OSError as e:
            logger.warning(f"Failed to write to trade log: {e}")
