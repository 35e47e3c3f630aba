"""MT5 REST bridge async client.

Handles all communication with the MT5 web bridge: session tokens,
quotes, price history, account queries and order management.  Every
call after ``connect`` takes the session token explicitly; token
lifetime is owned by ``BrokerSession``.
"""

import asyncio
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from ictbot.broker.models import AccountSummary, Candle, OpenOrder, OrderResult, Quote
from ictbot.config import TIMEFRAME_MINUTES
from ictbot.models.account_config import AccountConfig

logger = logging.getLogger("ictbot.broker")

# Retry settings
_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 2.0  # seconds; doubles each attempt
_RETRYABLE_STATUS_CODES = {502, 503, 504, 429}

# TRADE_RETCODE_PLACED, _DONE, _DONE_PARTIAL
_RETCODES_FILLED = {10008, 10009, 10010}

CONNECT_TIMEOUT = 10.0
REQUEST_TIMEOUT = 15.0
STATUS_TIMEOUT = 5.0


class Mt5ApiError(Exception):
    """The bridge answered but reported an error in its payload."""


def _parse_time(raw) -> datetime:
    """Parse a bridge timestamp into tz-aware UTC."""
    if isinstance(raw, (int, float)):
        return datetime.fromtimestamp(raw, tz=timezone.utc)
    text = str(raw).replace("Z", "+00:00")
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _check_payload(data) -> None:
    if isinstance(data, dict) and data.get("error"):
        raise Mt5ApiError(str(data["error"]))


class Mt5Client:
    """Async client wrapping the MT5 REST bridge."""

    def __init__(self, base_url: str = "https://mt5.mtapi.io") -> None:
        self._base_url = base_url.rstrip("/")

    # ── Retry helper ─────────────────────────────────────────────────────

    async def _request_with_retry(
        self,
        path: str,
        params: dict,
        timeout: float = REQUEST_TIMEOUT,
        retries: int = _MAX_RETRIES,
    ) -> httpx.Response:
        """Execute a GET against the bridge with exponential-backoff retry.

        Retries on transient server errors (502, 503, 504) and rate-limits
        (429).  Non-retryable errors are raised immediately.
        """
        url = f"{self._base_url}{path}"
        last_exc: Optional[Exception] = None

        for attempt in range(retries):
            try:
                async with httpx.AsyncClient() as client:
                    resp = await client.get(url, params=params, timeout=timeout)

                if resp.status_code in _RETRYABLE_STATUS_CODES:
                    delay = _RETRY_BASE_DELAY * (2 ** attempt)
                    logger.warning(
                        "MT5 %s returned %d, retry %d/%d in %.1fs",
                        path, resp.status_code, attempt + 1, retries, delay,
                    )
                    last_exc = httpx.HTTPStatusError(
                        f"Server error '{resp.status_code}'",
                        request=resp.request,
                        response=resp,
                    )
                    await asyncio.sleep(delay)
                    continue

                resp.raise_for_status()
                return resp

            except httpx.TransportError as exc:
                delay = _RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning(
                    "MT5 %s transport error (%s), retry %d/%d in %.1fs",
                    path, exc, attempt + 1, retries, delay,
                )
                last_exc = exc
                await asyncio.sleep(delay)

        raise last_exc  # type: ignore[misc]

    # ── Session ──────────────────────────────────────────────────────────

    async def connect(self, account: AccountConfig) -> str:
        """Open a bridge session and return its token."""
        resp = await self._request_with_retry(
            "/Connect",
            {
                "user": account.user,
                "password": account.password,
                "host": account.host,
                "port": account.port,
            },
            timeout=CONNECT_TIMEOUT,
            retries=1,
        )
        try:
            data = resp.json()
        except ValueError:
            data = resp.text
        _check_payload(data)
        return str(data).strip().strip('"')

    async def check_connection(self, token: str) -> bool:
        """Check whether *token* still maps to a live bridge session."""
        resp = await self._request_with_retry(
            "/ConnectionStatus", {"id": token}, timeout=STATUS_TIMEOUT, retries=1,
        )
        data = resp.json()
        if isinstance(data, dict):
            if data.get("error"):
                return False
            return data.get("connected", True) is not False
        return bool(data)

    async def server_timezone(self, token: str) -> Optional[int]:
        """Return the broker server's UTC offset in hours, if reported."""
        resp = await self._request_with_retry("/ServerTimezone", {"id": token})
        match = re.search(r"UTC([+-]?\d+)", resp.text, re.IGNORECASE)
        if match is None:
            return None
        return int(match.group(1))

    # ── Market data ──────────────────────────────────────────────────────

    async def quote(self, token: str, symbol: str) -> Quote:
        """Fetch the current bid/ask for *symbol*."""
        resp = await self._request_with_retry("/GetQuote", {"id": token, "symbol": symbol})
        data = resp.json()
        _check_payload(data)
        return Quote(
            symbol=data.get("symbol", symbol),
            bid=float(data["bid"]),
            ask=float(data["ask"]),
            time=_parse_time(data["time"]) if data.get("time") else None,
        )

    async def candles(
        self,
        token: str,
        symbol: str,
        timeframe: str,
        count: int = 100,
        now: Optional[datetime] = None,
    ) -> list[Candle]:
        """Fetch the last *count* candles, oldest first.

        Requests a date range wide enough to hold *count* bars, falling
        back to today's history when the range query fails.
        """
        minutes = TIMEFRAME_MINUTES[timeframe]
        now = now or datetime.now(timezone.utc)
        days_back = max(3, (count * minutes) // 1440 + 3)
        params = {
            "id": token,
            "symbol": symbol,
            "timeframe": minutes,
            "from": (now - timedelta(days=days_back)).strftime("%Y-%m-%d"),
            "to": (now + timedelta(days=1)).strftime("%Y-%m-%d"),
        }

        try:
            resp = await self._request_with_retry("/PriceHistory", params)
            raw = resp.json()
            _check_payload(raw)
        except (httpx.HTTPStatusError, Mt5ApiError) as exc:
            logger.warning("PriceHistory failed for %s (%s), trying PriceHistoryToday", symbol, exc)
            resp = await self._request_with_retry(
                "/PriceHistoryToday",
                {"id": token, "symbol": symbol, "timeframe": minutes},
            )
            raw = resp.json()
            _check_payload(raw)

        if not isinstance(raw, list):
            return []

        candles = [
            Candle(
                time=_parse_time(bar["time"]),
                open=float(bar.get("openPrice", bar.get("open"))),
                high=float(bar.get("highPrice", bar.get("high"))),
                low=float(bar.get("lowPrice", bar.get("low"))),
                close=float(bar.get("closePrice", bar.get("close"))),
                volume=float(bar.get("tickVolume", bar.get("volume", 0)) or 0),
            )
            for bar in raw
        ]
        candles.sort(key=lambda c: c.time)
        return candles[-count:]

    # ── Account ──────────────────────────────────────────────────────────

    async def account_summary(self, token: str) -> AccountSummary:
        """Query balance, equity and leverage."""
        resp = await self._request_with_retry("/AccountSummary", {"id": token})
        data = resp.json()
        _check_payload(data)
        return AccountSummary(
            balance=float(data["balance"]),
            equity=float(data.get("equity", data["balance"])),
            currency=data.get("currency", "USD"),
            leverage=int(data.get("leverage", 0) or 0),
        )

    async def open_orders(self, token: str, symbol: Optional[str] = None) -> list[OpenOrder]:
        """Return open positions, optionally filtered by *symbol*."""
        resp = await self._request_with_retry("/OpenedOrders", {"id": token})
        data = resp.json() or []
        _check_payload(data)

        orders: list[OpenOrder] = []
        for o in data:
            if symbol and o.get("symbol") != symbol:
                continue
            order_type = str(o.get("orderType", o.get("type", ""))).upper()
            orders.append(
                OpenOrder(
                    broker_order_id=str(o["ticket"]),
                    symbol=o.get("symbol", ""),
                    direction="SELL" if order_type.startswith("SELL") or order_type == "1" else "BUY",
                    volume=float(o.get("lots", o.get("volume", 0))),
                    open_price=float(o.get("openPrice", 0)),
                    stop_loss=float(o["stopLoss"]) if o.get("stopLoss") else None,
                    take_profit=float(o["takeProfit"]) if o.get("takeProfit") else None,
                    profit=float(o.get("profit", 0)),
                    comment=o.get("comment", ""),
                    open_time=_parse_time(o["openTime"]) if o.get("openTime") else None,
                )
            )
        return orders

    # ── Orders ───────────────────────────────────────────────────────────

    async def send_order(
        self,
        token: str,
        symbol: str,
        direction: str,
        volume: float,
        stop_loss: float,
        take_profit: float,
        comment: str = "",
    ) -> OrderResult:
        """Send a market order with stop-loss and take-profit.

        A payload error or a failure retcode is reported as
        ``OrderResult(accepted=False)`` rather than raised; transport
        failures still raise.  A fill the bridge reports without a ticket
        is accepted with ``broker_order_id=None``.
        """
        resp = await self._request_with_retry(
            "/OrderSend",
            {
                "id": token,
                "symbol": symbol,
                "type": 0 if direction == "BUY" else 1,
                "volume": volume,
                "price": 0,
                "sl": round(stop_loss, 5),
                "tp": round(take_profit, 5),
                "comment": comment,
            },
            retries=1,
        )
        data = resp.json()
        if data.get("error"):
            return OrderResult(accepted=False, error=str(data["error"]))

        retcode = int(data.get("retcode") or 0)
        if retcode and retcode not in _RETCODES_FILLED:
            return OrderResult(accepted=False, error=f"retcode {retcode}")

        order_id = data.get("order") or data.get("ticket") or data.get("deal")
        return OrderResult(
            accepted=True,
            broker_order_id=str(order_id) if order_id else None,
            price=float(data.get("price") or data.get("openPrice") or 0) or None,
        )

    async def modify_order(
        self, token: str, ticket: str, stop_loss: float, take_profit: float,
    ) -> bool:
        """Set stop-loss and take-profit on an open order."""
        resp = await self._request_with_retry(
            "/OrderModify",
            {
                "id": token,
                "ticket": ticket,
                "sl": round(stop_loss, 5),
                "tp": round(take_profit, 5),
            },
            retries=1,
        )
        data = resp.json()
        return not (isinstance(data, dict) and data.get("error"))

    async def is_trade_session(self, token: str, symbol: str) -> bool:
        """Whether the broker currently accepts orders for *symbol*."""
        resp = await self._request_with_retry(
            "/IsTradeSession", {"id": token, "symbol": symbol}, timeout=STATUS_TIMEOUT,
        )
        return resp.json() is True

    async def close_order(self, token: str, ticket: str, volume: Optional[float] = None) -> bool:
        """Close an open order; ``volume=None`` closes all of it."""
        resp = await self._request_with_retry(
            "/OrderClose",
            {"id": token, "ticket": ticket, "volume": volume or 0},
            retries=1,
        )
        data = resp.json()
        return not (isinstance(data, dict) and data.get("error"))
