"""
Core data types for the up/down momentum strategy.

A 15-minute period has one binary market per asset, each with an "Up" and a
"Down" outcome token. Trades are identified by a typed key
(period, token_id, role) so an entry and its hedge on the same token within
the same period never collide.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, NamedTuple, Optional

# Length of one market period in seconds
PERIOD_DURATION = 900


class Asset(Enum):
    """Underlying asset of a 15-minute market."""

    BTC = "btc"
    ETH = "eth"
    SOL = "sol"
    XRP = "xrp"

    def __str__(self) -> str:
        return self.value


class Direction(Enum):
    """Outcome side of a binary up/down market."""

    UP = "Up"
    DOWN = "Down"

    def __str__(self) -> str:
        return self.value


class TokenType(Enum):
    """One of the 8 (asset x direction) outcome tokens."""

    BTC_UP = "btc_up"
    BTC_DOWN = "btc_down"
    ETH_UP = "eth_up"
    ETH_DOWN = "eth_down"
    SOL_UP = "sol_up"
    SOL_DOWN = "sol_down"
    XRP_UP = "xrp_up"
    XRP_DOWN = "xrp_down"

    @property
    def asset(self) -> Asset:
        return Asset(self.value.split("_")[0])

    @property
    def direction(self) -> Direction:
        return Direction.UP if self.value.endswith("_up") else Direction.DOWN

    @property
    def outcome(self) -> str:
        """Outcome label used by the exchange ("Up" or "Down")."""
        return self.direction.value

    @property
    def display_name(self) -> str:
        return f"{self.asset.value.upper()} {self.direction.value}"

    def opposite(self) -> "TokenType":
        """Token type on the other side of the same market."""
        flipped = Direction.DOWN if self.direction == Direction.UP else Direction.UP
        return TokenType.for_asset(self.asset, flipped)

    @classmethod
    def for_asset(cls, asset: Asset, direction: Direction) -> "TokenType":
        return cls(f"{asset.value}_{direction.value.lower()}")

    def __str__(self) -> str:
        return self.display_name


class Role(Enum):
    """Strategy role of a trade; determines sell eligibility downstream."""

    ENTRY = "entry"
    LIMIT_ENTRY = "limit_entry"
    INDIVIDUAL_HEDGE = "individual_hedge"
    STANDARD_HEDGE = "standard_hedge"
    DUAL_LIMIT_HEDGE = "dual_limit_hedge"
    OPPOSITE = "opposite"
    OPPOSITE_LIMIT = "opposite_limit"

    @property
    def is_hedge(self) -> bool:
        return self in (Role.INDIVIDUAL_HEDGE, Role.STANDARD_HEDGE, Role.DUAL_LIMIT_HEDGE)

    @property
    def is_exclusive(self) -> bool:
        """Buys in these roles are limited to one live trade per (period, token type)."""
        return self not in (Role.OPPOSITE, Role.OPPOSITE_LIMIT)


class TradeState(Enum):
    """Lifecycle state of a PendingTrade."""

    ARMED = "armed"
    CONFIRMED = "confirmed"
    HELD_TO_EXPIRY = "held_to_expiry"
    SOLD = "sold"
    STOP_LOSS_SOLD = "stop_loss_sold"
    REDEEMING = "redeeming"
    CLOSED = "closed"
    ABANDONED = "abandoned"


class TradeKey(NamedTuple):
    """Composite identity of a trade in the ledger."""

    period: int
    token_id: str
    role: Role

    def __str__(self) -> str:
        return f"{self.period}/{self.token_id[:16]}/{self.role.value}"


@dataclass
class TokenQuote:
    """Best bid/ask for one outcome token. Missing prices are None, never 0."""

    token_id: str
    bid: Optional[float] = None
    ask: Optional[float] = None


@dataclass
class AssetMarket:
    """One asset's up/down market within a snapshot."""

    asset: Asset
    condition_id: str
    up: Optional[TokenQuote] = None
    down: Optional[TokenQuote] = None

    def quote(self, direction: Direction) -> Optional[TokenQuote]:
        return self.up if direction == Direction.UP else self.down

    def tokens(self) -> Iterator[tuple[TokenType, TokenQuote]]:
        """Yield (token_type, quote) for each side that has a quote."""
        for direction in (Direction.UP, Direction.DOWN):
            quote = self.quote(direction)
            if quote is not None:
                yield TokenType.for_asset(self.asset, direction), quote


@dataclass
class MarketSnapshot:
    """
    Consistent view of all tracked markets for one polling cycle.

    Attributes:
        period: Start timestamp of the 15-minute period
        time_remaining_seconds: Seconds until the period ends
        markets: Per-asset markets (assets without a market are absent)
        captured_at: Unix time the snapshot was taken
    """

    period: int
    time_remaining_seconds: int
    markets: dict[Asset, AssetMarket] = field(default_factory=dict)
    captured_at: float = field(default_factory=time.time)

    @property
    def elapsed_seconds(self) -> int:
        return max(0, PERIOD_DURATION - self.time_remaining_seconds)

    def market(self, asset: Asset) -> Optional[AssetMarket]:
        return self.markets.get(asset)

    def quote(self, token_type: TokenType) -> Optional[TokenQuote]:
        market = self.markets.get(token_type.asset)
        if market is None:
            return None
        return market.quote(token_type.direction)

    def find_token(self, token_id: str) -> Optional[tuple[TokenType, AssetMarket]]:
        for market in self.markets.values():
            for token_type, quote in market.tokens():
                if quote.token_id == token_id:
                    return token_type, market
        return None


@dataclass
class BuyOpportunity:
    """A buy intent produced for a single cycle."""

    condition_id: str
    token_id: str
    token_type: TokenType
    price: float
    period: int
    time_remaining_seconds: int
    time_elapsed_seconds: int
    use_market_order: bool = True
    role: Role = Role.ENTRY
    investment_override: Optional[float] = None
    size_override: Optional[float] = None


@dataclass
class PendingTrade:
    """
    A position from buy intent to settlement.

    `units` always holds the most recently verified on-exchange balance once
    the buy is confirmed; before that it is the estimate from the order.
    """

    token_id: str
    condition_id: str
    token_type: TokenType
    role: Role
    investment_amount: float
    units: float
    purchase_price: float
    sell_price: float
    period: int
    order_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    sold: bool = False
    buy_confirmed: bool = False
    sell_orders_placed: bool = False
    hold_to_expiry: bool = False
    claim_on_closure: bool = False
    stop_loss_triggered: bool = False

    sell_attempts: int = 0
    redemption_attempts: int = 0
    abandoned: bool = False

    # Balance seen when a resting buy was placed; a rise above it is a fill
    balance_baseline: Optional[float] = None
    confirmed_balance: Optional[float] = None

    @property
    def key(self) -> TradeKey:
        return TradeKey(self.period, self.token_id, self.role)

    @property
    def is_hedge(self) -> bool:
        return self.role.is_hedge

    @property
    def period_end(self) -> int:
        return self.period + PERIOD_DURATION

    @property
    def state(self) -> TradeState:
        if self.abandoned:
            return TradeState.ABANDONED
        if self.sold:
            return TradeState.STOP_LOSS_SOLD if self.stop_loss_triggered else TradeState.SOLD
        if self.redemption_attempts > 0:
            return TradeState.REDEEMING
        if not self.buy_confirmed:
            return TradeState.ARMED
        if self.hold_to_expiry or self.claim_on_closure:
            return TradeState.HELD_TO_EXPIRY
        return TradeState.CONFIRMED

    def confirm(self, balance: float) -> None:
        """Record a verified on-exchange balance as the authoritative size."""
        self.units = balance
        self.confirmed_balance = balance
        self.buy_confirmed = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": str(self.key),
            "token_type": self.token_type.display_name,
            "role": self.role.value,
            "state": self.state.value,
            "condition_id": self.condition_id,
            "order_id": self.order_id,
            "investment_amount": round(self.investment_amount, 6),
            "units": round(self.units, 6),
            "purchase_price": self.purchase_price,
            "sell_price": self.sell_price,
            "period": self.period,
            "sell_attempts": self.sell_attempts,
            "redemption_attempts": self.redemption_attempts,
        }
