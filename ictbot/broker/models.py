"""Broker data models: typed representations of MT5 bridge responses."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class Candle:
    """A single OHLCV candle. ``time`` is the candle open, tz-aware UTC."""

    time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


@dataclass(frozen=True)
class Quote:
    """Current bid/ask for a symbol."""

    symbol: str
    bid: float
    ask: float
    time: Optional[datetime] = None

    @property
    def mid(self) -> float:
        return (self.bid + self.ask) / 2


@dataclass(frozen=True)
class AccountSummary:
    """Account balance and equity snapshot."""

    balance: float
    equity: float
    currency: str = "USD"
    leverage: int = 0


@dataclass(frozen=True)
class OrderResult:
    """Outcome of an order send."""

    accepted: bool
    broker_order_id: Optional[str] = None
    price: Optional[float] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class OpenOrder:
    """An open position as reported by the bridge."""

    broker_order_id: str
    symbol: str
    direction: str  # "BUY" or "SELL"
    volume: float
    open_price: float
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    profit: float = 0.0
    comment: str = ""
    open_time: Optional[datetime] = None
