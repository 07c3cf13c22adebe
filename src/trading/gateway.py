"""
Abstract exchange gateway for outcome-token trading.

This module defines the contract the strategy core depends on: order
placement, cancellation, balance/allowance queries and redemption. Raw
on-exchange quantities are fixed-point at a 1e6 scale and are descaled here,
before any strategy math sees them.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

# Conditional tokens and USDC both use 6 decimals
QUANTITY_SCALE = 1_000_000


def descale(raw: Any) -> float:
    """Convert a raw 1e6 fixed-point quantity (int or numeric string) to float."""
    if raw is None or raw == "":
        return 0.0
    return float(raw) / QUANTITY_SCALE


class OrderSide(Enum):
    """Order side enumeration."""

    BUY = "BUY"
    SELL = "SELL"

    def __str__(self) -> str:
        return self.value


class TimeInForce(Enum):
    """Time in force for exchange orders."""

    GTC = "GTC"  # Good til cancelled (resting limit)
    FOK = "FOK"  # Fill or kill (entire order or cancel)
    FAK = "FAK"  # Fill and kill (partial fills allowed, rest cancelled)

    def __str__(self) -> str:
        return self.value


class OrderStatus(Enum):
    """Order status enumeration."""

    OPEN = "open"
    FILLED = "filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


@dataclass
class OrderResult:
    """Result of order placement or cancellation."""

    success: bool
    order_id: Optional[str] = None
    status: OrderStatus = OrderStatus.OPEN
    filled_size: float = 0.0
    filled_price: float = 0.0
    message: str = ""
    raw_response: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "order_id": self.order_id,
            "status": self.status.value,
            "filled_size": self.filled_size,
            "filled_price": self.filled_price,
            "message": self.message,
        }


@dataclass
class BalanceAllowance:
    """Descaled token balance and the exchange allowance for it."""

    balance: float
    allowance: float


@dataclass
class OrderBook:
    """Price levels as (price, size), bids descending and asks ascending."""

    token_id: str
    bids: list[tuple[float, float]] = field(default_factory=list)
    asks: list[tuple[float, float]] = field(default_factory=list)

    @property
    def best_bid(self) -> Optional[float]:
        return self.bids[0][0] if self.bids else None

    @property
    def best_ask(self) -> Optional[float]:
        return self.asks[0][0] if self.asks else None


@dataclass
class MarketResolution:
    """Whether a market has closed and which outcome token won."""

    closed: bool
    winning_token_id: Optional[str] = None
    winning_outcome: Optional[str] = None


@dataclass
class RedeemResult:
    success: bool
    tx_hash: Optional[str] = None
    message: str = ""


class GatewayError(Exception):
    """Base exception for gateway errors."""
    pass


class TransientGatewayError(GatewayError):
    """Timeouts, stale allowance cache, momentary lack of liquidity. Retryable."""
    pass


class DefinitiveGatewayError(GatewayError):
    """Rejections that will not succeed on retry."""
    pass


class InsufficientBalanceError(DefinitiveGatewayError):
    """Raised when balance or allowance is insufficient for the order."""
    pass


class InvalidOrderError(DefinitiveGatewayError):
    """Invalid side, price, or signature mismatch."""
    pass


class KillSwitchError(DefinitiveGatewayError):
    """Raised when the kill switch file is present; no order is sent."""
    pass


_DEFINITIVE_MARKERS = {
    "not enough balance": InsufficientBalanceError,
    "insufficient": InsufficientBalanceError,
    "invalid signature": InvalidOrderError,
    "invalid side": InvalidOrderError,
    "invalid price": InvalidOrderError,
}


def classify_error(message: str) -> type[GatewayError]:
    """
    Map an exchange error message to its error class.

    Anything not recognized as definitive is treated as transient. Allowance
    complaints come from a stale exchange-side cache and clear after a refresh.
    """
    lowered = message.lower()
    if "allowance" in lowered:
        return TransientGatewayError
    for marker, error_class in _DEFINITIVE_MARKERS.items():
        if marker in lowered:
            return error_class
    return TransientGatewayError


def simplify_error(message: str) -> str:
    """Short human-readable reason for a failed buy."""
    lowered = message.lower()
    if "fully filled" in lowered or "fok" in lowered:
        return "order couldn't be fully filled (FOK)"
    if "not enough balance" in lowered or "allowance" in lowered:
        return "not enough balance / allowance"
    if "insufficient" in lowered:
        return "insufficient balance"
    first_line = next((line for line in message.splitlines() if line.strip()), "")
    return first_line or "order failed"


class ExchangeGateway(ABC):
    """
    Abstract exchange gateway.

    Implementations: ClobGateway (live, py-clob-client) and PaperGateway
    (simulated fills against observed quotes).
    """

    name = "base"

    @abstractmethod
    async def get_orderbook(self, token_id: str) -> OrderBook:
        """Fetch the order book for a token."""
        pass

    @abstractmethod
    async def get_price(self, token_id: str, side: OrderSide) -> Optional[float]:
        """
        Best executable price for `side`.

        SELL returns the best bid (what a sell fills at), BUY the best ask.
        None means no liquidity on that side.
        """
        pass

    @abstractmethod
    async def place_market_order(
        self,
        token_id: str,
        amount: float,
        side: OrderSide,
        time_in_force: TimeInForce = TimeInForce.FOK,
    ) -> OrderResult:
        """
        Place a marketable order.

        Args:
            amount: USD to spend for BUY, shares to sell for SELL
        """
        pass

    @abstractmethod
    async def place_limit_order(
        self,
        token_id: str,
        side: OrderSide,
        size: float,
        price: float,
    ) -> OrderResult:
        """Place a resting GTC limit order."""
        pass

    @abstractmethod
    async def cancel_order(self, order_id: str) -> OrderResult:
        pass

    @abstractmethod
    async def check_balance(self, token_id: str) -> float:
        """Descaled conditional-token balance."""
        pass

    @abstractmethod
    async def check_balance_and_allowance(self, token_id: str) -> BalanceAllowance:
        pass

    @abstractmethod
    async def refresh_allowance(self, token_id: str) -> None:
        """Ask the exchange to refresh its cached balance/allowance for a token."""
        pass

    @abstractmethod
    async def redeem(self, condition_id: str, token_id: str, outcome: str) -> RedeemResult:
        """Redeem settled tokens of a resolved market."""
        pass

    @abstractmethod
    async def get_market_resolution(self, condition_id: str) -> MarketResolution:
        pass

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(name={self.name})>"
