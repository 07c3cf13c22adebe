"""
Live Exchange Gateway

Executes against the Polymarket CLOB using py-clob-client.
Supports:
- FOK/FAK market orders (BUY by USD amount, SELL by shares)
- GTC limit orders at 0.01 tick size
- Order cancellation
- Conditional-token balance/allowance queries and allowance refresh
- Market resolution lookups and on-chain redemption

Safety Features:
- Retry with exponential backoff on read calls (3 attempts)
- Kill switch file check (.kill_switch) before every order
- Definitive rejections raised, transient ones returned as failed results

IMPORTANT: Requires credentials to be configured in .env file:
- POLYMARKET_PRIVATE_KEY: Your wallet private key
- POLYMARKET_FUNDER: Your proxy wallet address (holds funds)
"""
import asyncio
import logging
import math
from pathlib import Path
from typing import Any, Callable, Optional

from py_clob_client.client import ClobClient
from py_clob_client.clob_types import (
    AssetType,
    BalanceAllowanceParams,
    MarketOrderArgs,
    OrderArgs,
    OrderType,
    PartialCreateOrderOptions,
)
from py_clob_client.order_builder.constants import BUY, SELL
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import (
    CHAIN_ID,
    CLOB_BASE_URL,
    KILL_SWITCH_FILE,
    POLYMARKET_FUNDER,
    POLYMARKET_PRIVATE_KEY,
    POLYMARKET_SIGNATURE_TYPE,
)
from .ctf_redeemer import CtfRedeemer, RedemptionError
from .gateway import (
    BalanceAllowance,
    DefinitiveGatewayError,
    ExchangeGateway,
    GatewayError,
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
)

logger = logging.getLogger(__name__)

# Retry configuration for read calls
MAX_RETRY_ATTEMPTS = 3
RETRY_MIN_WAIT = 0.5  # seconds
RETRY_MAX_WAIT = 2.0  # seconds

TICK_SIZE = "0.01"

_TIME_IN_FORCE = {
    TimeInForce.GTC: OrderType.GTC,
    TimeInForce.FOK: OrderType.FOK,
    TimeInForce.FAK: OrderType.FAK,
}


def check_kill_switch(path: Path = KILL_SWITCH_FILE) -> bool:
    """
    Check if kill switch file exists.

    Returns:
        True if kill switch is active (trading should stop)
    """
    return path.exists()


def _order_amount(amount: float, side: OrderSide) -> float:
    """BUY amounts are USDC, rounded. SELL amounts are shares, floored so they never exceed the balance."""
    if side == OrderSide.SELL:
        return math.floor(amount * 100 + 1e-9) / 100
    return round(amount, 2)


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _raise_classified(e: Exception, operation_name: str) -> None:
    message = getattr(e, "error_msg", None) or str(e)
    error_class = classify_error(str(message))
    raise error_class(f"{operation_name}: {message}") from e


class ClobGateway(ExchangeGateway):
    """
    Live gateway for the Polymarket CLOB.

    SECURITY WARNING:
    - Never commit credentials to git
    - Use environment variables or .env file
    - Start with small amounts
    - Test with paper trading first

    Example:
        gateway = ClobGateway()
        result = await gateway.place_market_order(token_id, 1.0, OrderSide.BUY)
        if result.success:
            shares = await gateway.check_balance(token_id)
    """

    name = "polymarket"

    def __init__(
        self,
        private_key: Optional[str] = None,
        funder: Optional[str] = None,
        signature_type: int = POLYMARKET_SIGNATURE_TYPE,
        host: str = CLOB_BASE_URL,
        chain_id: int = CHAIN_ID,
        client: Optional[ClobClient] = None,
        redeemer: Optional[CtfRedeemer] = None,
        kill_switch_file: Path = KILL_SWITCH_FILE,
    ):
        self.private_key = private_key if private_key is not None else POLYMARKET_PRIVATE_KEY
        self.funder = funder if funder is not None else POLYMARKET_FUNDER
        self.signature_type = signature_type
        self.host = host
        self.chain_id = chain_id
        self.kill_switch_file = kill_switch_file

        self._client = client or self._init_client()
        self._redeemer = redeemer

    def _init_client(self) -> ClobClient:
        """Create the client and derive L2 API credentials."""
        key = self.private_key
        if key and not key.startswith("0x"):
            key = "0x" + key

        client = ClobClient(
            self.host,
            key=key,
            chain_id=self.chain_id,
            funder=self.funder,
            signature_type=self.signature_type,
        )
        creds = client.create_or_derive_api_creds()
        client.set_api_creds(creds)
        logger.info(f"ClobGateway initialized | signer={client.get_address()} | funder={self.funder}")
        return client

    @property
    def redeemer(self) -> CtfRedeemer:
        if self._redeemer is None:
            self._redeemer = CtfRedeemer(self.private_key, chain_id=self.chain_id)
        return self._redeemer

    # ------------------------------------------------------------------
    # Call helpers
    # ------------------------------------------------------------------

    async def _call(self, func: Callable[..., Any], *args, operation_name: str = "API call") -> Any:
        """
        Run a blocking client call in a worker thread, retrying transient errors.

        Raises:
            TransientGatewayError: If all retry attempts fail
            DefinitiveGatewayError: On a rejection that will not succeed on retry
        """

        @retry(
            stop=stop_after_attempt(MAX_RETRY_ATTEMPTS),
            wait=wait_exponential(multiplier=1, min=RETRY_MIN_WAIT, max=RETRY_MAX_WAIT),
            retry=retry_if_exception_type(TransientGatewayError),
            reraise=True,
        )
        def _execute_with_retry():
            try:
                return func(*args)
            except GatewayError:
                raise
            except Exception as e:
                _raise_classified(e, operation_name)

        try:
            return await asyncio.to_thread(_execute_with_retry)
        except TransientGatewayError as e:
            logger.error(f"{operation_name} failed after {MAX_RETRY_ATTEMPTS} attempts: {e}")
            raise

    async def _call_once(self, func: Callable[..., Any], *args, operation_name: str) -> Any:
        """Single attempt for order placement; the caller owns retry policy."""

        def _execute():
            try:
                return func(*args)
            except Exception as e:
                _raise_classified(e, operation_name)

        return await asyncio.to_thread(_execute)

    def _check_kill_switch(self) -> None:
        if check_kill_switch(self.kill_switch_file):
            logger.warning("Kill switch activated - trading halted")
            raise KillSwitchError("Kill switch activated - trading halted")

    @staticmethod
    def _parse_order_response(response: Any, side: OrderSide) -> OrderResult:
        if not response:
            return OrderResult(success=False, status=OrderStatus.REJECTED, message="Order returned empty response")

        error_msg = response.get("errorMsg") or ""
        if not response.get("success", True) or error_msg:
            message = error_msg or "order rejected"
            error_class = classify_error(message)
            if issubclass(error_class, DefinitiveGatewayError):
                raise error_class(message)
            return OrderResult(
                success=False,
                status=OrderStatus.REJECTED,
                message=message,
                raw_response=response,
            )

        making = _as_float(response.get("makingAmount"))
        taking = _as_float(response.get("takingAmount"))
        if side == OrderSide.BUY:
            usd, shares = making, taking
        else:
            shares, usd = making, taking
        filled_price = usd / shares if shares > 0 else 0.0

        status = OrderStatus.FILLED if response.get("status") == "matched" else OrderStatus.OPEN
        return OrderResult(
            success=True,
            order_id=response.get("orderID") or response.get("id"),
            status=status,
            filled_size=shares,
            filled_price=filled_price,
            message=response.get("status", "placed"),
            raw_response=response,
        )

    # ------------------------------------------------------------------
    # ExchangeGateway
    # ------------------------------------------------------------------

    async def get_orderbook(self, token_id: str) -> OrderBook:
        summary = await self._call(self._client.get_order_book, token_id, operation_name="get_order_book")
        bids = sorted(
            ((_as_float(level.price), _as_float(level.size)) for level in summary.bids or []),
            reverse=True,
        )
        asks = sorted((_as_float(level.price), _as_float(level.size)) for level in summary.asks or [])
        return OrderBook(token_id=token_id, bids=bids, asks=asks)

    async def get_price(self, token_id: str, side: OrderSide) -> Optional[float]:
        book = await self.get_orderbook(token_id)
        return book.best_bid if side == OrderSide.SELL else book.best_ask

    async def place_market_order(
        self,
        token_id: str,
        amount: float,
        side: OrderSide,
        time_in_force: TimeInForce = TimeInForce.FOK,
    ) -> OrderResult:
        self._check_kill_switch()
        if amount <= 0:
            return OrderResult(success=False, status=OrderStatus.REJECTED, message="Amount must be positive")

        order_type = _TIME_IN_FORCE[time_in_force]
        args = MarketOrderArgs(
            token_id=token_id,
            amount=_order_amount(amount, side),
            side=BUY if side == OrderSide.BUY else SELL,
            order_type=order_type,
        )
        logger.info(f"MARKET {side} {token_id[:16]}... amount={amount:.4f} ({time_in_force})")
        try:
            signed = await self._call_once(self._client.create_market_order, args, operation_name="create_market_order")
            response = await self._call_once(self._client.post_order, signed, order_type, operation_name="post_order")
        except TransientGatewayError as e:
            return OrderResult(success=False, status=OrderStatus.REJECTED, message=str(e))
        return self._parse_order_response(response, side)

    async def place_limit_order(
        self,
        token_id: str,
        side: OrderSide,
        size: float,
        price: float,
    ) -> OrderResult:
        self._check_kill_switch()
        if price < 0.01 or price > 0.99:
            raise DefinitiveGatewayError(f"invalid price {price}: must be between 0.01 and 0.99")
        if size <= 0:
            return OrderResult(success=False, status=OrderStatus.REJECTED, message="Size must be positive")

        args = OrderArgs(
            token_id=token_id,
            price=round(price, 2),
            size=round(size, 2),
            side=BUY if side == OrderSide.BUY else SELL,
        )
        options = PartialCreateOrderOptions(tick_size=TICK_SIZE)
        logger.info(f"LIMIT {side} {token_id[:16]}... {size:.2f} @ ${price:.2f}")
        try:
            response = await self._call_once(
                self._client.create_and_post_order, args, options, operation_name="create_and_post_order"
            )
        except TransientGatewayError as e:
            return OrderResult(success=False, status=OrderStatus.REJECTED, message=str(e))
        return self._parse_order_response(response, side)

    async def cancel_order(self, order_id: str) -> OrderResult:
        # Cancels are allowed while the kill switch is active
        try:
            response = await self._call(self._client.cancel, order_id, operation_name="cancel_order")
        except GatewayError as e:
            return OrderResult(success=False, order_id=order_id, message=f"Cancel failed: {e}")

        not_canceled = (response or {}).get("not_canceled") or {}
        if order_id in not_canceled:
            return OrderResult(
                success=False,
                order_id=order_id,
                message=f"Cancel rejected: {not_canceled[order_id]}",
                raw_response=response,
            )
        return OrderResult(
            success=True,
            order_id=order_id,
            status=OrderStatus.CANCELLED,
            message="Order cancelled",
            raw_response=response or {},
        )

    def _balance_params(self, token_id: str) -> BalanceAllowanceParams:
        return BalanceAllowanceParams(
            asset_type=AssetType.CONDITIONAL,
            token_id=token_id,
            signature_type=self.signature_type,
        )

    async def check_balance_and_allowance(self, token_id: str) -> BalanceAllowance:
        response = await self._call(
            self._client.get_balance_allowance,
            self._balance_params(token_id),
            operation_name="get_balance_allowance",
        )
        response = response or {}
        allowance = response.get("allowance")
        if allowance is None:
            # Newer responses report one allowance per exchange contract
            allowances = response.get("allowances") or {}
            allowance = max((_as_float(v) for v in allowances.values()), default=0.0)
        return BalanceAllowance(balance=descale(response.get("balance")), allowance=descale(allowance))

    async def check_balance(self, token_id: str) -> float:
        return (await self.check_balance_and_allowance(token_id)).balance

    async def refresh_allowance(self, token_id: str) -> None:
        await self._call(
            self._client.update_balance_allowance,
            self._balance_params(token_id),
            operation_name="update_balance_allowance",
        )

    async def get_market_resolution(self, condition_id: str) -> MarketResolution:
        market = await self._call(self._client.get_market, condition_id, operation_name="get_market")
        market = market or {}
        winner = next((t for t in market.get("tokens", []) if t.get("winner")), None)
        return MarketResolution(
            closed=bool(market.get("closed")),
            winning_token_id=winner.get("token_id") if winner else None,
            winning_outcome=winner.get("outcome") if winner else None,
        )

    async def redeem(self, condition_id: str, token_id: str, outcome: str) -> RedeemResult:
        logger.info(f"Redeeming {outcome} position for condition {condition_id[:18]}...")
        try:
            tx_hash = await asyncio.to_thread(self.redeemer.redeem, condition_id)
        except RedemptionError as e:
            logger.warning(f"Redemption failed: {e}")
            return RedeemResult(success=False, message=str(e))
        return RedeemResult(success=True, tx_hash=tx_hash, message="redeemed")
