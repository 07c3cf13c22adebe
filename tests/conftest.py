"""
Shared fixtures for the momentum strategy tests.

All tests run against the paper gateway or a mocked gateway with a manual
clock. NO real orders are sent and no test sleeps in real time.
"""

from typing import Optional
from unittest.mock import MagicMock

import pytest

from src.config import StrategyConfig
from src.momentum.audit import MemoryAuditSink
from src.momentum.detector import OpportunityDetector
from src.momentum.models import (
    PERIOD_DURATION,
    Asset,
    AssetMarket,
    MarketSnapshot,
    TokenQuote,
)
from src.momentum.scheduler import DeferredJobQueue, ManualClock
from src.momentum.trader import Trader
from src.trading.gateway import ExchangeGateway
from src.trading.paper_gateway import PaperGateway

# A real period boundary (multiple of 900)
PERIOD = 1767729600


def token_id(asset: Asset, side: str) -> str:
    return f"{asset.value}-{side}-token-0000000000000000"


def condition_id(asset: Asset) -> str:
    return "0x" + asset.value.encode().hex().ljust(64, "0")


def build_snapshot(
    period: int = PERIOD,
    elapsed: int = 600,
    quotes: Optional[dict] = None,
) -> MarketSnapshot:
    """
    Snapshot with one market per asset in `quotes`.

    `quotes` maps Asset -> (up_bid, up_ask, down_bid, down_ask).
    """
    quotes = quotes if quotes is not None else {Asset.BTC: (0.50, 0.51, 0.48, 0.49)}
    markets = {}
    for asset, (up_bid, up_ask, down_bid, down_ask) in quotes.items():
        markets[asset] = AssetMarket(
            asset=asset,
            condition_id=condition_id(asset),
            up=TokenQuote(token_id(asset, "up"), up_bid, up_ask),
            down=TokenQuote(token_id(asset, "down"), down_bid, down_ask),
        )
    return MarketSnapshot(
        period=period,
        time_remaining_seconds=PERIOD_DURATION - elapsed,
        markets=markets,
        captured_at=period + elapsed,
    )


@pytest.fixture
def make_snapshot():
    """Factory for market snapshots."""
    return build_snapshot


@pytest.fixture
def clock():
    """Manual clock ten minutes into the test period."""
    return ManualClock(start=PERIOD + 600)


@pytest.fixture
def config():
    """Strategy config with a $5 trade size."""
    return StrategyConfig(fixed_trade_amount=5.0)


@pytest.fixture
def audit():
    return MemoryAuditSink()


@pytest.fixture
def paper(clock):
    """Paper gateway with $100 and no file logging."""
    return PaperGateway(initial_balance=100.0, log_trades=False, clock=clock)


@pytest.fixture
def mock_gateway():
    """Gateway mock; async methods are AsyncMocks."""
    return MagicMock(spec=ExchangeGateway)


@pytest.fixture
def detector(config, audit):
    return OpportunityDetector(config, audit=audit)


@pytest.fixture
def trader(paper, config, detector, audit, clock):
    """Trader wired to the paper gateway."""
    return Trader(
        paper,
        config,
        detector=detector,
        audit=audit,
        scheduler=DeferredJobQueue(clock),
        clock=clock,
    )


@pytest.fixture
def mock_trader(mock_gateway, config, detector, audit, clock):
    """Trader wired to the gateway mock."""
    return Trader(
        mock_gateway,
        config,
        detector=detector,
        audit=audit,
        scheduler=DeferredJobQueue(clock),
        clock=clock,
    )
