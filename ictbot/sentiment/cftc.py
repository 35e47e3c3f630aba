"""Market sentiment from the CFTC Commitments of Traders report.

Reads managed-money positioning from the disaggregated futures report and
turns net positioning (as a share of open interest) into a directional
bias.  Results are cached per symbol and concurrent refreshes share one
request.
"""

import asyncio
import io
import logging
import time
from dataclasses import dataclass
from datetime import date
from typing import Callable, Optional

import httpx
import pandas as pd

from ictbot.config import Config
from ictbot.strategy.models import BEARISH, BULLISH, NEUTRAL

logger = logging.getLogger("ictbot.sentiment")

_DATE_COLUMNS = (
    ("as_of_date_in_form_yyyy-mm-dd", "%Y-%m-%d"),
    ("as_of_date_in_form_mm/dd/yyyy", "%m/%d/%Y"),
    ("as_of_date_in_form_yymmdd", "%y%m%d"),
)
_MARKET_COLUMN = "market_and_exchange_names"
_OPEN_INTEREST_COLUMN = "open_interest_all"
_LONG_COLUMN = "m_money_positions_long_all"
_SHORT_COLUMN = "m_money_positions_short_all"

# Wait this long before retrying after a failed refresh.
FAILURE_BACKOFF_SECONDS = 300.0


@dataclass(frozen=True)
class Sentiment:
    """Managed-money positioning for one market on one report date."""

    symbol: str
    market: str
    as_of: date
    net: float
    net_change: float
    net_pct_open_interest: float
    bias: str
    summary: str


@dataclass
class _CacheEntry:
    sentiment: Optional[Sentiment]
    fetched_at: float
    ttl: Optional[float] = None  # None uses the configured TTL


def parse_cot_report(
    text: str,
    market: str,
    symbol: str,
    bull_pct: float = 10.0,
    bear_pct: float = -10.0,
) -> Optional[Sentiment]:
    """Extract the latest positioning for *market* from a COT CSV.

    Returns ``None`` when the header lacks a needed column or the market
    has no rows.
    """
    frame = pd.read_csv(io.StringIO(text), dtype=str, skipinitialspace=True)
    frame.columns = [str(c).strip().lower() for c in frame.columns]

    needed = (_MARKET_COLUMN, _OPEN_INTEREST_COLUMN, _LONG_COLUMN, _SHORT_COLUMN)
    date_column = next(
        ((col, fmt) for col, fmt in _DATE_COLUMNS if col in frame.columns), None,
    )
    if date_column is None or any(col not in frame.columns for col in needed):
        logger.warning("CFTC COT columns not found in file header")
        return None

    col, fmt = date_column
    rows = frame[frame[_MARKET_COLUMN].str.strip() == market].copy()
    rows["as_of"] = pd.to_datetime(rows[col].str.strip(), format=fmt, errors="coerce")
    rows = rows.dropna(subset=["as_of"]).sort_values("as_of")
    if rows.empty:
        return None

    for name in (_OPEN_INTEREST_COLUMN, _LONG_COLUMN, _SHORT_COLUMN):
        rows[name] = pd.to_numeric(rows[name].str.replace(",", ""), errors="coerce").fillna(0.0)
    rows["net"] = rows[_LONG_COLUMN] - rows[_SHORT_COLUMN]

    latest = rows.iloc[-1]
    net = float(latest["net"])
    prev_net = float(rows.iloc[-2]["net"]) if len(rows) > 1 else net
    open_interest = float(latest[_OPEN_INTEREST_COLUMN])
    net_pct = net / open_interest * 100 if open_interest > 0 else 0.0

    if net_pct >= bull_pct:
        bias = BULLISH
    elif net_pct <= bear_pct:
        bias = BEARISH
    else:
        bias = NEUTRAL

    change = net - prev_net
    summary = (
        f"CFTC COT (Managed Money) net {net:,.0f} ({net_pct:.1f}% OI), "
        f"weekly change {change:+,.0f} -> {bias}"
    )
    return Sentiment(
        symbol=symbol,
        market=market,
        as_of=latest["as_of"].date(),
        net=net,
        net_change=change,
        net_pct_open_interest=round(net_pct, 2),
        bias=bias,
        summary=summary,
    )


class SentimentService:
    """Cached, coalescing CFTC sentiment lookup.

    Args:
        config: Application configuration (sentiment settings).
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(self, config: Config, clock: Callable[[], float] = time.monotonic) -> None:
        self._config = config
        self._clock = clock
        self._cache: dict[str, _CacheEntry] = {}
        self._in_flight: dict[str, asyncio.Task] = {}
        self.fetch_count = 0

    @property
    def enabled(self) -> bool:
        return self._config.sentiment_enabled

    async def get_sentiment(self, symbol: str) -> Optional[Sentiment]:
        """Return cached sentiment for *symbol*, refreshing once it expires.

        Concurrent callers during a refresh await the same request.
        """
        if not self.enabled:
            return None

        entry = self._cache.get(symbol)
        if entry is not None:
            ttl = entry.ttl if entry.ttl is not None else self._config.sentiment_cache_ttl_seconds
            if self._clock() - entry.fetched_at < ttl:
                return entry.sentiment

        task = self._in_flight.get(symbol)
        if task is None:
            task = asyncio.create_task(self._refresh(symbol))
            self._in_flight[symbol] = task
            task.add_done_callback(lambda t: self._forget(symbol, t))
        return await asyncio.shield(task)

    def _forget(self, symbol: str, task: asyncio.Task) -> None:
        if self._in_flight.get(symbol) is task:
            del self._in_flight[symbol]

    async def _refresh(self, symbol: str) -> Optional[Sentiment]:
        previous = self._cache.get(symbol)
        market = self._config.sentiment_symbol_map.get(symbol)
        if not market:
            self._cache[symbol] = _CacheEntry(None, self._clock())
            return None

        try:
            self.fetch_count += 1
            async with httpx.AsyncClient() as client:
                resp = await client.get(
                    self._config.sentiment_cftc_url,
                    timeout=self._config.sentiment_request_timeout_seconds,
                )
            resp.raise_for_status()
            sentiment = parse_cot_report(
                resp.text,
                market,
                symbol,
                self._config.sentiment_net_pct_bull,
                self._config.sentiment_net_pct_bear,
            )
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Sentiment refresh failed for %s: %s", symbol, exc)
            kept = previous.sentiment if previous else None
            self._cache[symbol] = _CacheEntry(kept, self._clock(), ttl=FAILURE_BACKOFF_SECONDS)
            return kept

        self._cache[symbol] = _CacheEntry(sentiment, self._clock())
        if sentiment is not None:
            logger.info("Sentiment %s: %s", symbol, sentiment.summary)
        return sentiment
