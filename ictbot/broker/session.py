"""Per-account broker session with explicit token lifetime.

``BrokerSession`` owns the bridge token for one account.  The token is
reused while it is fresh, re-checked once the revalidation window lapses
and replaced on failure.  The session lock serialises every broker call
for the account; a cycle borrows it for its whole duration.
"""

import asyncio
import contextlib
import logging
import time
import uuid
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional

import httpx

from ictbot.broker.models import OrderResult
from ictbot.broker.mt5_client import Mt5ApiError, Mt5Client
from ictbot.models.account_config import AccountConfig
from ictbot.result import Err, ErrorKind, Ok, Result

logger = logging.getLogger("ictbot.broker")

REVALIDATE_SECONDS = 60.0


@dataclass(frozen=True)
class SessionHandle:
    """A validated bridge token for one account."""

    account_id: str
    token: str
    validated_at: float  # monotonic seconds


def is_token_well_formed(token: Optional[str]) -> bool:
    """Bridge tokens are GUID strings."""
    if not token:
        return False
    try:
        uuid.UUID(token)
    except ValueError:
        return False
    return True


class BrokerSession:
    """Connection handle and call gate for one trading account.

    Args:
        client: An ``Mt5Client`` (or compatible duck-type / mock).
        account: Credentials and instrument settings.
        revalidate_seconds: How long a checked token is trusted.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        client: Mt5Client,
        account: AccountConfig,
        revalidate_seconds: float = REVALIDATE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._account = account
        self._revalidate_seconds = revalidate_seconds
        self._clock = clock
        self._handle: Optional[SessionHandle] = None
        self._lock = asyncio.Lock()

    @property
    def account_id(self) -> str:
        return self._account.account_id

    @property
    def handle(self) -> Optional[SessionHandle]:
        return self._handle

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def invalidate(self) -> None:
        """Drop the cached token so the next call reconnects."""
        if self._handle is not None:
            logger.info("Account '%s': session token invalidated.", self.account_id)
        self._handle = None

    # ── Connection ───────────────────────────────────────────────────────

    @contextlib.asynccontextmanager
    async def borrow(self) -> AsyncIterator[Result]:
        """Hold the account lock and yield ``Result[SessionHandle]``."""
        async with self._lock:
            yield await self.ensure_connected()

    async def ensure_connected(self) -> Result:
        """Return a usable handle, probing or reconnecting as needed.

        Callers outside ``borrow()`` must hold no expectation of exclusivity.
        """
        handle = self._handle
        now = self._clock()

        if handle is not None and is_token_well_formed(handle.token):
            if now - handle.validated_at < self._revalidate_seconds:
                return Ok(handle)
            try:
                alive = await self._client.check_connection(handle.token)
            except (httpx.HTTPError, Mt5ApiError) as exc:
                logger.warning("Account '%s': status check failed: %s", self.account_id, exc)
                alive = False
            if alive:
                self._handle = SessionHandle(self.account_id, handle.token, now)
                return Ok(self._handle)

        self._handle = None
        try:
            token = await self._client.connect(self._account)
        except (httpx.HTTPError, Mt5ApiError) as exc:
            logger.error("Account '%s': connect failed: %s", self.account_id, exc)
            return Err(ErrorKind.CONNECTIVITY, f"connect failed: {exc}")

        if not is_token_well_formed(token):
            logger.error("Account '%s': bridge returned a malformed token.", self.account_id)
            return Err(ErrorKind.CONNECTIVITY, "malformed session token")

        self._handle = SessionHandle(self.account_id, token, self._clock())
        logger.info("Account '%s': connected to %s.", self.account_id, self._account.host)
        return Ok(self._handle)

    # ── Wrapped calls ────────────────────────────────────────────────────

    async def _call(self, label: str, op: Callable[[], Awaitable]) -> Result:
        try:
            return Ok(await op())
        except (httpx.HTTPError, Mt5ApiError) as exc:
            logger.warning("Account '%s': %s failed: %s", self.account_id, label, exc)
            self.invalidate()
            return Err(ErrorKind.CONNECTIVITY, f"{label} failed: {exc}")
        except (ValueError, KeyError, TypeError) as exc:
            # The bridge answered, so the token stays valid.
            logger.warning("Account '%s': malformed %s reply: %s", self.account_id, label, exc)
            return Err(ErrorKind.DATA_UNAVAILABLE, f"malformed {label} reply: {exc}")

    async def quote(self, handle: SessionHandle, symbol: str) -> Result:
        res = await self._call("quote", lambda: self._client.quote(handle.token, symbol))
        if res.ok and (res.value is None or res.value.bid <= 0 or res.value.ask <= 0):
            return Err(ErrorKind.DATA_UNAVAILABLE, f"no quote for {symbol}")
        return res

    async def candles(
        self, handle: SessionHandle, symbol: str, timeframe: str, count: int,
    ) -> Result:
        res = await self._call(
            "candles",
            lambda: self._client.candles(handle.token, symbol, timeframe, count),
        )
        if res.ok and not res.value:
            return Err(ErrorKind.DATA_UNAVAILABLE, f"no candles for {symbol} {timeframe}")
        return res

    async def account_summary(self, handle: SessionHandle) -> Result:
        return await self._call(
            "account summary", lambda: self._client.account_summary(handle.token),
        )

    async def open_orders(self, handle: SessionHandle, symbol: Optional[str] = None) -> Result:
        return await self._call(
            "open orders", lambda: self._client.open_orders(handle.token, symbol),
        )

    async def server_timezone(self, handle: SessionHandle) -> Result:
        return await self._call(
            "server timezone", lambda: self._client.server_timezone(handle.token),
        )

    async def send_order(
        self,
        handle: SessionHandle,
        symbol: str,
        direction: str,
        volume: float,
        stop_loss: float,
        take_profit: float,
        comment: str = "",
    ) -> Result:
        """Send an order; a bridge refusal is ``ORDER_REJECTED``."""
        res = await self._call(
            "order send",
            lambda: self._client.send_order(
                handle.token, symbol, direction, volume, stop_loss, take_profit, comment,
            ),
        )
        if not res.ok:
            return res
        order: OrderResult = res.value
        if not order.accepted:
            return Err(ErrorKind.ORDER_REJECTED, order.error or "rejected by broker")
        return res

    async def close_order(
        self, handle: SessionHandle, ticket: str, volume: Optional[float] = None,
    ) -> Result:
        res = await self._call(
            "order close", lambda: self._client.close_order(handle.token, ticket, volume),
        )
        if res.ok and not res.value:
            return Err(ErrorKind.ORDER_REJECTED, f"close refused for {ticket}")
        return res

    async def modify_order(
        self, handle: SessionHandle, ticket: str, stop_loss: float, take_profit: float,
    ) -> Result:
        res = await self._call(
            "order modify",
            lambda: self._client.modify_order(handle.token, ticket, stop_loss, take_profit),
        )
        if res.ok and not res.value:
            return Err(ErrorKind.ORDER_REJECTED, f"modify refused for {ticket}")
        return res

    async def is_trade_session(self, handle: SessionHandle, symbol: str) -> Result:
        """``Ok(True)`` while the market for *symbol* is open."""
        return await self._call(
            "trade session", lambda: self._client.is_trade_session(handle.token, symbol),
        )
