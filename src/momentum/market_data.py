"""
Market data for 15-minute up/down crypto markets.

Builds one MarketSnapshot per polling cycle:
- Market discovery through the Gamma API by predictable slug
  ({asset}-updown-15m-{period_start})
- Best bid/ask per outcome token from the public CLOB order book

Missing markets are left out of the snapshot and missing prices stay None;
a quote is never reported as 0.
"""

import asyncio
import json
import logging
from typing import Any, Optional

import requests

from ..config import CLOB_BASE_URL, GAMMA_API_URL
from .models import (
    PERIOD_DURATION,
    Asset,
    AssetMarket,
    MarketSnapshot,
    TokenQuote,
)
from .scheduler import Clock, SystemClock

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 10


def period_start(now: float) -> int:
    """Start timestamp of the 15-minute period containing `now`."""
    return int(now) // PERIOD_DURATION * PERIOD_DURATION


def build_market_slug(asset: Asset, period: int) -> str:
    return f"{asset.value}-updown-15m-{period}"


def _as_list(value: Any) -> list:
    """Gamma returns some list fields as JSON-encoded strings."""
    if isinstance(value, str):
        return json.loads(value)
    return value or []


def parse_market(asset: Asset, data: dict[str, Any]) -> Optional[tuple[str, str, str]]:
    """
    Extract (condition_id, up_token_id, down_token_id) from a Gamma market.

    Returns:
        None if outcomes or token ids are incomplete
    """
    try:
        outcomes = _as_list(data.get("outcomes", "[]"))
        token_ids = _as_list(data.get("clobTokenIds", "[]"))
    except ValueError as e:
        logger.warning(f"Market {data.get('slug')} has malformed outcome data: {e}")
        return None

    if len(outcomes) < 2 or len(token_ids) < 2:
        logger.warning(f"Market {data.get('slug')} has incomplete data")
        return None

    up_idx = down_idx = None
    for i, outcome in enumerate(outcomes):
        label = str(outcome).upper()
        if label in ("UP", "YES"):
            up_idx = i
        elif label in ("DOWN", "NO"):
            down_idx = i
    if up_idx is None or down_idx is None:
        logger.warning(f"Could not find Up/Down outcomes in {outcomes} for {asset}")
        return None

    condition_id = data.get("conditionId") or data.get("condition_id") or ""
    if not condition_id:
        return None
    return condition_id, str(token_ids[up_idx]), str(token_ids[down_idx])


def best_prices(book: dict[str, Any]) -> tuple[Optional[float], Optional[float]]:
    """Best bid and best ask of a CLOB /book response; None for an empty side."""
    bids = [float(level["price"]) for level in book.get("bids") or []]
    asks = [float(level["price"]) for level in book.get("asks") or []]
    return (max(bids) if bids else None, min(asks) if asks else None)


class MarketDataSource:
    """
    Polls Gamma and the CLOB for the current period's markets.

    Example:
        source = MarketDataSource([Asset.BTC, Asset.ETH])
        snapshot = await source.get_snapshot()
        quote = snapshot.quote(TokenType.BTC_UP)
    """

    def __init__(
        self,
        assets: list[Asset],
        gamma_url: str = GAMMA_API_URL,
        clob_url: str = CLOB_BASE_URL,
        session: Optional[requests.Session] = None,
        clock: Optional[Clock] = None,
    ):
        self.assets = assets
        self.gamma_url = gamma_url
        self.clob_url = clob_url
        self.session = session or requests.Session()
        self.clock = clock or SystemClock()

        # (asset, period) -> (condition_id, up_token_id, down_token_id)
        self._market_cache: dict[tuple[Asset, int], tuple[str, str, str]] = {}

    def _fetch_market(self, asset: Asset, period: int) -> Optional[tuple[str, str, str]]:
        key = (asset, period)
        if key in self._market_cache:
            return self._market_cache[key]

        slug = build_market_slug(asset, period)
        try:
            response = self.session.get(
                f"{self.gamma_url}/markets", params={"slug": slug}, timeout=REQUEST_TIMEOUT
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.debug(f"Failed to fetch market {slug}: {e}")
            return None

        if not isinstance(data, list) or not data:
            return None
        parsed = parse_market(asset, data[0])
        if parsed is not None:
            self._market_cache[key] = parsed
            logger.info(f"Found market {slug} (condition {parsed[0][:18]}...)")
        return parsed

    def _fetch_quote(self, token_id: str) -> TokenQuote:
        try:
            response = self.session.get(
                f"{self.clob_url}/book", params={"token_id": token_id}, timeout=REQUEST_TIMEOUT
            )
            response.raise_for_status()
            bid, ask = best_prices(response.json())
        except (requests.RequestException, ValueError, KeyError) as e:
            logger.debug(f"Failed to fetch book for {token_id[:16]}...: {e}")
            bid = ask = None
        return TokenQuote(token_id=token_id, bid=bid, ask=ask)

    def _build_snapshot(self) -> MarketSnapshot:
        now = self.clock.now()
        period = period_start(now)
        remaining = max(0, period + PERIOD_DURATION - int(now))

        markets: dict[Asset, AssetMarket] = {}
        for asset in self.assets:
            found = self._fetch_market(asset, period)
            if found is None:
                continue
            condition_id, up_id, down_id = found
            markets[asset] = AssetMarket(
                asset=asset,
                condition_id=condition_id,
                up=self._fetch_quote(up_id),
                down=self._fetch_quote(down_id),
            )

        # Forget markets of earlier periods
        self._market_cache = {k: v for k, v in self._market_cache.items() if k[1] >= period}
        return MarketSnapshot(
            period=period,
            time_remaining_seconds=remaining,
            markets=markets,
            captured_at=now,
        )

    async def get_snapshot(self) -> MarketSnapshot:
        """Fetch a consistent snapshot without blocking the event loop."""
        return await asyncio.to_thread(self._build_snapshot)
