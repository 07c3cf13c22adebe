"""
Momentum strategy for 15-minute up/down crypto markets.

This module provides tools for:
- Momentum entry detection with reset hysteresis
- The trade ledger and position lifecycle (buy, sell, stop-loss, redeem)
- Early and standard hedging of one-sided dual-limit fills
- Bounded retry, deferred jobs and rolling price trends
- Structured audit events

The bot runner lives in src.momentum.bot.
"""

from .audit import AuditEvent, AuditEventType, AuditSink, JsonlAuditSink, MemoryAuditSink
from .detector import OpportunityDetector, ResetState
from .hedge import HedgeEngine
from .ledger import TradeLedger
from .market_data import MarketDataSource
from .models import (
    PERIOD_DURATION,
    Asset,
    AssetMarket,
    BuyOpportunity,
    Direction,
    MarketSnapshot,
    PendingTrade,
    Role,
    TokenQuote,
    TokenType,
    TradeKey,
    TradeState,
)
from .retry import RetryOutcome, RetryStatus, retry_until
from .scheduler import DeferredJobQueue, ManualClock, SystemClock
from .trader import (
    BuyFailedError,
    BuyRejectedError,
    DuplicatePositionError,
    Trader,
    TradingError,
)
from .trend import PriceTrendTracker, TrendAnalysis, TrendDirection, TrendOracle

__all__ = [
    # Data model
    "PERIOD_DURATION",
    "Asset",
    "Direction",
    "TokenType",
    "Role",
    "TradeState",
    "TradeKey",
    "TokenQuote",
    "AssetMarket",
    "MarketSnapshot",
    "BuyOpportunity",
    "PendingTrade",
    # Detection and market data
    "OpportunityDetector",
    "ResetState",
    "MarketDataSource",
    # Ledger and execution
    "TradeLedger",
    "Trader",
    "HedgeEngine",
    "TradingError",
    "BuyRejectedError",
    "DuplicatePositionError",
    "BuyFailedError",
    # Support
    "retry_until",
    "RetryOutcome",
    "RetryStatus",
    "DeferredJobQueue",
    "SystemClock",
    "ManualClock",
    "PriceTrendTracker",
    "TrendOracle",
    "TrendAnalysis",
    "TrendDirection",
    # Audit
    "AuditSink",
    "MemoryAuditSink",
    "JsonlAuditSink",
    "AuditEvent",
    "AuditEventType",
]
