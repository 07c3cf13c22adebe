"""
Exchange gateways for outcome-token trading.

This module provides:
- ExchangeGateway: Abstract gateway the strategy core trades through
- ClobGateway: Live Polymarket CLOB execution via py-clob-client
- PaperGateway: Simulated fills against observed quotes
- CtfRedeemer: On-chain redemption of settled positions via web3

Usage:
    from src.trading import PaperGateway, OrderSide

    gateway = PaperGateway(initial_balance=100.0)
    result = await gateway.place_limit_order(token_id, OrderSide.BUY, 5.0, 0.45)
"""

from .gateway import (
    BalanceAllowance,
    DefinitiveGatewayError,
    ExchangeGateway,
    GatewayError,
    InsufficientBalanceError,
    InvalidOrderError,
    KillSwitchError,
    MarketResolution,
    OrderBook,
    OrderResult,
    OrderSide,
    OrderStatus,
    RedeemResult,
    TimeInForce,
    TransientGatewayError,
    classify_error,
    descale,
    simplify_error,
)
from .clob_gateway import ClobGateway
from .ctf_redeemer import CtfRedeemer, RedemptionError
from .paper_gateway import PaperGateway

__all__ = [
    # Gateway contract and types
    "ExchangeGateway",
    "OrderResult",
    "OrderBook",
    "BalanceAllowance",
    "MarketResolution",
    "RedeemResult",
    "OrderSide",
    "OrderStatus",
    "TimeInForce",
    "descale",
    "classify_error",
    "simplify_error",
    # Exceptions
    "GatewayError",
    "TransientGatewayError",
    "DefinitiveGatewayError",
    "InsufficientBalanceError",
    "InvalidOrderError",
    "KillSwitchError",
    "RedemptionError",
    # Implementations
    "ClobGateway",
    "PaperGateway",
    "CtfRedeemer",
]
