"""Configuration management for the Up/Down Momentum Bot."""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Project root directory
PROJECT_ROOT = Path(__file__).parent.parent

# Data directory
DATA_DIR = PROJECT_ROOT / "data"
LOGS_DIR = PROJECT_ROOT / "logs"


def _optional_float(name: str) -> Optional[float]:
    """Read an optional float; empty or missing means disabled."""
    raw = os.getenv(name, "").strip()
    if not raw or raw.lower() in ("none", "off"):
        return None
    return float(raw)


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# Polymarket credentials
POLYMARKET_PRIVATE_KEY = os.getenv("POLYMARKET_PRIVATE_KEY", "")
POLYMARKET_FUNDER = os.getenv("POLYMARKET_FUNDER", "")
POLYMARKET_API_KEY = os.getenv("POLYMARKET_API_KEY", "")
POLYMARKET_API_SECRET = os.getenv("POLYMARKET_API_SECRET", "")
POLYMARKET_API_PASSPHRASE = os.getenv("POLYMARKET_API_PASSPHRASE", "")

# 0 = EOA, 1 = Magic/email proxy, 2 = Gnosis Safe proxy
POLYMARKET_SIGNATURE_TYPE = int(os.getenv("POLYMARKET_SIGNATURE_TYPE", "2"))

# Trading mode: "paper" or "live"
TRADING_MODE = os.getenv("TRADING_MODE", "paper")

# Strategy: "momentum" or "dual-limit"
STRATEGY_MODE = os.getenv("STRATEGY_MODE", "momentum")

# =============================================================================
# MOMENTUM ENTRY
# =============================================================================

# USD spent per entry
FIXED_TRADE_AMOUNT = float(os.getenv("FIXED_TRADE_AMOUNT", "1.0"))

# Buy when TRIGGER_PRICE <= bid <= MAX_BUY_PRICE
TRIGGER_PRICE = float(os.getenv("TRIGGER_PRICE", "0.90"))
MAX_BUY_PRICE = float(os.getenv("MAX_BUY_PRICE", "0.95"))

# Minutes into the 15-minute period before entries are allowed
MIN_ELAPSED_MINUTES = int(os.getenv("MIN_ELAPSED_MINUTES", "10"))

# Never buy with fewer seconds than this left in the period
MIN_TIME_REMAINING_SECONDS = int(os.getenv("MIN_TIME_REMAINING_SECONDS", "30"))

# Per-asset enable flags (BTC is always traded)
ENABLE_ETH = _flag("ENABLE_ETH", "true")
ENABLE_SOLANA = _flag("ENABLE_SOLANA", "false")
ENABLE_XRP = _flag("ENABLE_XRP", "false")

# =============================================================================
# EXITS
# =============================================================================

# Profit target for held positions
SELL_PRICE = float(os.getenv("SELL_PRICE", "0.99"))

# Stop-loss threshold (empty disables stop-loss)
STOP_LOSS_PRICE = _optional_float("STOP_LOSS_PRICE") if "STOP_LOSS_PRICE" in os.environ else 0.85

# "limit" rests a SELL at SELL_PRICE after confirmation; "market" sells on touch
SELL_MODE = os.getenv("SELL_MODE", "market")

# Bounded sell retry
SELL_MAX_ATTEMPTS = int(os.getenv("SELL_MAX_ATTEMPTS", "20"))
SELL_RETRY_DELAY = float(os.getenv("SELL_RETRY_DELAY", "1.5"))

# Redemption attempt cap (one attempt per closure sweep)
MAX_REDEMPTION_ATTEMPTS = int(os.getenv("MAX_REDEMPTION_ATTEMPTS", "20"))

# =============================================================================
# DUAL-LIMIT ENTRY AND HEDGING
# =============================================================================

DUAL_LIMIT_PRICE = _optional_float("DUAL_LIMIT_PRICE")
DUAL_LIMIT_SHARES = _optional_float("DUAL_LIMIT_SHARES")

# Resting limit buys are only placed this many seconds into a new period
DUAL_LIMIT_ENTRY_WINDOW_SECONDS = int(os.getenv("DUAL_LIMIT_ENTRY_WINDOW_SECONDS", "2"))

DUAL_LIMIT_HEDGE_AFTER_MINUTES = int(os.getenv("DUAL_LIMIT_HEDGE_AFTER_MINUTES", "10"))
DUAL_LIMIT_HEDGE_PRICE = float(os.getenv("DUAL_LIMIT_HEDGE_PRICE", "0.85"))
DUAL_LIMIT_EARLY_HEDGE_MINUTES = int(os.getenv("DUAL_LIMIT_EARLY_HEDGE_MINUTES", "5"))

# Trend gate for the early hedge
TREND_STRENGTH_THRESHOLD = float(os.getenv("TREND_STRENGTH_THRESHOLD", "0.3"))
TREND_MIN_SAMPLES = int(os.getenv("TREND_MIN_SAMPLES", "10"))
TREND_HISTORY_SIZE = int(os.getenv("TREND_HISTORY_SIZE", "60"))

# Two resting sell tiers placed after a hedge buy
HEDGE_SELL_TIERS = (0.93, 0.98)
HEDGE_SELL_DELAY_SECONDS = float(os.getenv("HEDGE_SELL_DELAY_SECONDS", "7"))
HEDGE_SELL_MAX_ATTEMPTS = int(os.getenv("HEDGE_SELL_MAX_ATTEMPTS", "3"))
HEDGE_SELL_RETRY_DELAY = float(os.getenv("HEDGE_SELL_RETRY_DELAY", "2"))

# =============================================================================
# TIMING
# =============================================================================

CHECK_INTERVAL_MS = int(os.getenv("CHECK_INTERVAL_MS", "1000"))
PENDING_CHECK_INTERVAL_SECONDS = float(os.getenv("PENDING_CHECK_INTERVAL_SECONDS", "0.5"))
MARKET_CLOSURE_CHECK_INTERVAL_SECONDS = int(os.getenv("MARKET_CLOSURE_CHECK_INTERVAL_SECONDS", "10"))
TRADE_SUMMARY_INTERVAL_SECONDS = int(os.getenv("TRADE_SUMMARY_INTERVAL_SECONDS", "30"))

# Redemption is attempted this many seconds before the nominal period end
CLOSURE_GRACE_SECONDS = int(os.getenv("CLOSURE_GRACE_SECONDS", "30"))

# Kill switch file (create this file to halt all trading)
KILL_SWITCH_FILE = PROJECT_ROOT / ".kill_switch"

# =============================================================================
# API ENDPOINTS
# =============================================================================

CLOB_BASE_URL = os.getenv("CLOB_BASE_URL", "https://clob.polymarket.com")
GAMMA_API_URL = os.getenv("GAMMA_API_URL", "https://gamma-api.polymarket.com")
POLYGON_RPC_URL = os.getenv("POLYGON_RPC_URL", "https://polygon-rpc.com")

# Chain configuration (Polygon)
CHAIN_ID = 137


class ConfigError(Exception):
    """Raised when configuration is structurally invalid (fatal at startup)."""
    pass


@dataclass
class StrategyConfig:
    """
    Strategy parameters shared by the detector, trader and hedge engine.

    Defaults mirror the module-level environment settings so tests can build
    a config without touching the environment.
    """

    fixed_trade_amount: float = 1.0
    trigger_price: float = 0.90
    max_buy_price: float = 0.95
    min_elapsed_minutes: int = 10
    min_time_remaining_seconds: int = 30
    enable_eth: bool = True
    enable_solana: bool = False
    enable_xrp: bool = False

    sell_price: float = 0.99
    stop_loss_price: Optional[float] = 0.85
    sell_mode: str = "market"
    sell_max_attempts: int = 20
    sell_retry_delay: float = 1.5
    max_redemption_attempts: int = 20

    strategy_mode: str = "momentum"
    dual_limit_price: Optional[float] = None
    dual_limit_shares: Optional[float] = None
    dual_limit_entry_window_seconds: int = 2
    dual_limit_hedge_after_minutes: int = 10
    dual_limit_hedge_price: float = 0.85
    dual_limit_early_hedge_minutes: int = 5
    trend_strength_threshold: float = 0.3
    trend_min_samples: int = 10
    trend_history_size: int = 60
    hedge_sell_tiers: tuple = field(default_factory=lambda: (0.93, 0.98))
    hedge_sell_delay_seconds: float = 7.0
    hedge_sell_max_attempts: int = 3
    hedge_sell_retry_delay: float = 2.0

    check_interval_ms: int = 1000
    pending_check_interval_seconds: float = 0.5
    market_closure_check_interval_seconds: int = 10
    trade_summary_interval_seconds: int = 30
    closure_grace_seconds: int = 30

    @classmethod
    def from_env(cls) -> "StrategyConfig":
        """Build a config from the environment-backed module constants."""
        return cls(
            fixed_trade_amount=FIXED_TRADE_AMOUNT,
            trigger_price=TRIGGER_PRICE,
            max_buy_price=MAX_BUY_PRICE,
            min_elapsed_minutes=MIN_ELAPSED_MINUTES,
            min_time_remaining_seconds=MIN_TIME_REMAINING_SECONDS,
            enable_eth=ENABLE_ETH,
            enable_solana=ENABLE_SOLANA,
            enable_xrp=ENABLE_XRP,
            sell_price=SELL_PRICE,
            stop_loss_price=STOP_LOSS_PRICE,
            sell_mode=SELL_MODE,
            sell_max_attempts=SELL_MAX_ATTEMPTS,
            sell_retry_delay=SELL_RETRY_DELAY,
            max_redemption_attempts=MAX_REDEMPTION_ATTEMPTS,
            strategy_mode=STRATEGY_MODE,
            dual_limit_price=DUAL_LIMIT_PRICE,
            dual_limit_shares=DUAL_LIMIT_SHARES,
            dual_limit_entry_window_seconds=DUAL_LIMIT_ENTRY_WINDOW_SECONDS,
            dual_limit_hedge_after_minutes=DUAL_LIMIT_HEDGE_AFTER_MINUTES,
            dual_limit_hedge_price=DUAL_LIMIT_HEDGE_PRICE,
            dual_limit_early_hedge_minutes=DUAL_LIMIT_EARLY_HEDGE_MINUTES,
            trend_strength_threshold=TREND_STRENGTH_THRESHOLD,
            trend_min_samples=TREND_MIN_SAMPLES,
            trend_history_size=TREND_HISTORY_SIZE,
            hedge_sell_tiers=HEDGE_SELL_TIERS,
            hedge_sell_delay_seconds=HEDGE_SELL_DELAY_SECONDS,
            hedge_sell_max_attempts=HEDGE_SELL_MAX_ATTEMPTS,
            hedge_sell_retry_delay=HEDGE_SELL_RETRY_DELAY,
            check_interval_ms=CHECK_INTERVAL_MS,
            pending_check_interval_seconds=PENDING_CHECK_INTERVAL_SECONDS,
            market_closure_check_interval_seconds=MARKET_CLOSURE_CHECK_INTERVAL_SECONDS,
            trade_summary_interval_seconds=TRADE_SUMMARY_INTERVAL_SECONDS,
            closure_grace_seconds=CLOSURE_GRACE_SECONDS,
        )

    def validate(self) -> None:
        """
        Check parameter consistency.

        Raises:
            ConfigError: If prices are outside (0, 1] or ranges are inverted
        """
        for name in ("trigger_price", "max_buy_price", "sell_price", "dual_limit_hedge_price"):
            value = getattr(self, name)
            if not 0 < value <= 1:
                raise ConfigError(f"{name} must be in (0, 1], got {value}")
        if self.trigger_price > self.max_buy_price:
            raise ConfigError(
                f"trigger_price {self.trigger_price} exceeds max_buy_price {self.max_buy_price}"
            )
        if self.stop_loss_price is not None and not 0 < self.stop_loss_price < 1:
            raise ConfigError(f"stop_loss_price must be in (0, 1), got {self.stop_loss_price}")
        if self.fixed_trade_amount <= 0:
            raise ConfigError("fixed_trade_amount must be positive")
        if self.strategy_mode not in ("momentum", "dual-limit"):
            raise ConfigError(f"Unknown strategy mode: {self.strategy_mode}")
        if self.strategy_mode == "dual-limit" and self.dual_limit_price is None:
            raise ConfigError("dual-limit strategy requires DUAL_LIMIT_PRICE")
        if self.sell_mode not in ("market", "limit"):
            raise ConfigError(f"Unknown sell mode: {self.sell_mode}")


def validate_live_config(
    private_key: Optional[str] = None,
    funder: Optional[str] = None,
) -> None:
    """
    Validate credentials required for live trading.

    Args:
        private_key: Signing key (defaults to POLYMARKET_PRIVATE_KEY)
        funder: Proxy wallet address (defaults to POLYMARKET_FUNDER)

    Raises:
        ConfigError: If credentials are missing or the address is malformed
    """
    from web3 import Web3

    key = POLYMARKET_PRIVATE_KEY if private_key is None else private_key
    wallet = POLYMARKET_FUNDER if funder is None else funder

    if not key:
        raise ConfigError("POLYMARKET_PRIVATE_KEY not set")
    stripped = key[2:] if key.startswith("0x") else key
    if len(stripped) != 64 or any(c not in "0123456789abcdefABCDEF" for c in stripped):
        raise ConfigError("POLYMARKET_PRIVATE_KEY must be a 32-byte hex string")
    if not wallet:
        raise ConfigError("POLYMARKET_FUNDER not set")
    if not Web3.is_address(wallet):
        raise ConfigError(f"POLYMARKET_FUNDER is not a valid address: {wallet}")
