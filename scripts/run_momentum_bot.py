#!/usr/bin/env python3
"""
Run the Up/Down Momentum Bot

Command-line interface for the momentum and dual-limit strategies on
Polymarket 15-minute crypto markets.

Usage:
    # Paper trading (default, safe)
    python scripts/run_momentum_bot.py

    # Check status (non-blocking)
    python scripts/run_momentum_bot.py --status

    # Run for a specific duration (in minutes)
    python scripts/run_momentum_bot.py --duration 60

    # Dual-limit strategy with hedging
    python scripts/run_momentum_bot.py --strategy dual-limit

    # Live trading (CAUTION - requires proper credentials)
    python scripts/run_momentum_bot.py --live

    # Emergency stop / resume
    python scripts/run_momentum_bot.py --kill
    python scripts/run_momentum_bot.py --resume

Safety Notes:
    - Without --live every order goes to the paper gateway against live quotes.
    - --kill writes .kill_switch; the gateway refuses new orders and a running bot shuts down.
    - --live validates the signing key and funder address before the first snapshot.

Environment Variables:
    POLYMARKET_PRIVATE_KEY - Private key for signing orders and redemptions
    POLYMARKET_FUNDER - Proxy wallet address holding funds
    STRATEGY_MODE - "momentum" (default) or "dual-limit"
    FIXED_TRADE_AMOUNT - USD per momentum buy
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.config import (
    DATA_DIR,
    KILL_SWITCH_FILE,
    LOGS_DIR,
    POLYMARKET_FUNDER,
    POLYMARKET_PRIVATE_KEY,
    ConfigError,
    StrategyConfig,
    validate_live_config,
)
from src.momentum.bot import MomentumBot, activate_kill_switch, deactivate_kill_switch
from src.trading.clob_gateway import ClobGateway
from src.trading.gateway import GatewayError


def setup_logging(verbose: bool = False) -> None:
    """Configure console and file logging."""
    level = logging.DEBUG if verbose else logging.INFO

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", datefmt="%H:%M:%S")
    )

    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    log_file = LOGS_DIR / f"momentum_bot_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    # Reduce noise from external libraries
    for noisy in ("urllib3", "requests", "web3", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    print(f"Logs will be written to: {log_file}")


def show_status(config: StrategyConfig) -> None:
    """Show configuration, credentials and audit history without starting."""
    print("\n" + "=" * 70)
    print("Momentum Bot Status")
    print("=" * 70)

    active = KILL_SWITCH_FILE.exists()
    print(f"\nKill Switch: {'ACTIVE (trading halted)' if active else 'Inactive'}")
    print(f"Kill Switch Path: {KILL_SWITCH_FILE}")

    print("\nConfiguration:")
    print(f"  Strategy: {config.strategy_mode}")
    print(f"  Trade Amount: ${config.fixed_trade_amount}")
    print(f"  Trigger: ${config.trigger_price} - ${config.max_buy_price}")
    print(f"  Sell / Stop-loss: ${config.sell_price} / {config.stop_loss_price}")
    if config.strategy_mode == "dual-limit":
        print(f"  Dual-limit: {config.dual_limit_shares} shares @ ${config.dual_limit_price}")
        print(f"  Hedge trigger: ${config.dual_limit_hedge_price}")

    print("\nCredentials:")
    has_key = bool(POLYMARKET_PRIVATE_KEY)
    has_funder = bool(POLYMARKET_FUNDER)
    print(f"  Private Key: {'Configured' if has_key else 'NOT CONFIGURED'}")
    print(f"  Funder Address: {'Configured' if has_funder else 'NOT CONFIGURED'}")

    history = DATA_DIR / "trade_history.jsonl"
    if history.exists():
        with open(history) as f:
            events = [json.loads(line) for line in f if line.strip()]
        print("\nTrade History:")
        print(f"  Events logged: {len(events)}")
        if events:
            last = events[-1]
            print(f"  Last event: {last.get('event')} at {last.get('timestamp')}")
    else:
        print("\nTrade History: No events yet")

    print("\n" + "=" * 70)


async def run_bot(config: StrategyConfig, paper_mode: bool, duration_minutes: int) -> None:
    """
    Run the bot until Ctrl+C, the kill switch, or the duration limit.

    Args:
        config: Strategy parameters
        paper_mode: If True, trade against the paper gateway
        duration_minutes: How long to run (0 = unlimited)
    """
    mode_str = "PAPER" if paper_mode else "LIVE"

    print("\n" + "=" * 70)
    print(f"Starting Momentum Bot ({mode_str} MODE, {config.strategy_mode})")
    print("=" * 70)

    gateway = None
    if not paper_mode:
        print("\n" + "!" * 70)
        print("WARNING: LIVE TRADING MODE")
        print("Real money will be at risk!")
        print("!" * 70)

        confirm = input("\nType 'LIVE' to confirm live trading: ")
        if confirm != "LIVE":
            print("Live trading cancelled.")
            return

        try:
            validate_live_config()
        except ConfigError as e:
            print(f"Error: {e}")
            return
        gateway = ClobGateway()

    bot = MomentumBot(config=config, paper_mode=paper_mode, gateway=gateway)
    print("\nPress Ctrl+C to stop\n")

    try:
        await bot.run(duration=duration_minutes * 60 if duration_minutes > 0 else None)
    finally:
        status = await bot.get_status()
        bot_state = status["bot_state"]
        trades = status["trades"]

        print("\n" + "=" * 70)
        print("Final Status")
        print("=" * 70)
        print("\nSession Summary:")
        print(f"  Mode: {mode_str}")
        print(f"  Snapshots processed: {bot_state['snapshot_count']}")
        print(f"  Buys submitted: {bot_state['buys_submitted']}")
        print(f"  Buys failed: {bot_state['buys_failed']}")
        print(f"  Trades executed: {trades['trades_executed']}")
        print(f"  Open trades: {trades['open_trades']}")
        print(f"  Total profit: ${trades['total_profit']:.2f}")
        print(f"  Uptime: {bot_state['uptime_seconds']} seconds")
        if bot_state.get("last_error"):
            print(f"\nLast Error: {bot_state['last_error']}")

        paper_stats = status.get("paper_stats")
        if paper_stats:
            print("\nPaper Trading Stats:")
            print(f"  Cash: ${paper_stats['cash']}")
            print(f"  Realized P&L: ${paper_stats['realized_pnl']}")
        print("\n" + "=" * 70)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Run the Up/Down Momentum Bot",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/run_momentum_bot.py                        # Paper trading (default)
  python scripts/run_momentum_bot.py --status               # Check status
  python scripts/run_momentum_bot.py --duration 60          # Run for 60 minutes
  python scripts/run_momentum_bot.py --strategy dual-limit  # Dual-limit with hedging
  python scripts/run_momentum_bot.py --live                 # Live trading (CAUTION)
  python scripts/run_momentum_bot.py --kill                 # Activate kill switch
        """,
    )

    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument("--live", action="store_true", help="Enable live trading (CAUTION: real money at risk)")
    mode_group.add_argument("--status", action="store_true", help="Show current bot status and exit")
    mode_group.add_argument("--kill", action="store_true", help="Activate kill switch to halt all trading")
    mode_group.add_argument("--resume", action="store_true", help="Deactivate kill switch to allow trading")

    parser.add_argument(
        "--duration", type=int, default=0, metavar="MINUTES",
        help="How long to run in minutes (0 = unlimited, default: 0)",
    )
    parser.add_argument("--amount", type=float, metavar="USD", help="USD per momentum buy (overrides FIXED_TRADE_AMOUNT)")
    parser.add_argument("--strategy", choices=["momentum", "dual-limit"], help="Strategy mode (overrides STRATEGY_MODE)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    args = parser.parse_args()

    if args.kill:
        activate_kill_switch("CLI --kill flag")
        print(f"\nKill switch ACTIVATED: {KILL_SWITCH_FILE}")
        print("To resume, run: python scripts/run_momentum_bot.py --resume")
        return

    if args.resume:
        if deactivate_kill_switch():
            print("\nKill switch DEACTIVATED. Trading is now allowed.")
        else:
            print(f"\nFailed to deactivate kill switch. Try removing: {KILL_SWITCH_FILE}")
        return

    config = StrategyConfig.from_env()
    if args.amount is not None:
        config.fixed_trade_amount = args.amount
    if args.strategy:
        config.strategy_mode = args.strategy

    if args.status:
        show_status(config)
        return

    try:
        config.validate()
    except ConfigError as e:
        print(f"Configuration error: {e}")
        sys.exit(1)

    setup_logging(verbose=args.verbose)

    try:
        asyncio.run(run_bot(config, paper_mode=not args.live, duration_minutes=args.duration))
    except KeyboardInterrupt:
        print("\nShutdown requested by user...")
    except (GatewayError, ConfigError) as e:
        print(f"\nFatal error: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
