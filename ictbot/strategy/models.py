"""Strategy data models: typed representations for analysis outputs."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Optional


# ── Enumerations ─────────────────────────────────────────────────────────


class SignalType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class SignalStrength(IntEnum):
    """Ordinal signal strength; compares by rank."""

    WEAK = 1
    MODERATE = 2
    STRONG = 3
    VERY_STRONG = 4


class ZoneKind(str, Enum):
    ORDER_BLOCK = "ORDER_BLOCK"
    FAIR_VALUE_GAP = "FAIR_VALUE_GAP"
    LIQUIDITY = "LIQUIDITY"


BULLISH = "BULLISH"
BEARISH = "BEARISH"
NEUTRAL = "NEUTRAL"
RANGING = "RANGING"
BUY_SIDE = "BUY_SIDE"
SELL_SIDE = "SELL_SIDE"


# ── Sessions ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class KillZone:
    """A named intraday window in broker-local hours, ``[start, end)``."""

    name: str
    start_hour: int
    end_hour: int
    bias: str = NEUTRAL

    def contains(self, hour: int) -> bool:
        if self.start_hour <= self.end_hour:
            return self.start_hour <= hour < self.end_hour
        # wraps past midnight
        return hour >= self.start_hour or hour < self.end_hour


@dataclass(frozen=True)
class AsianRange:
    high: float
    low: float

    @property
    def midpoint(self) -> float:
        return (self.high + self.low) / 2


@dataclass(frozen=True)
class NextZone:
    name: str
    minutes_until: int


# ── Structure ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SwingPoint:
    index: int
    price: float
    kind: str  # "HIGH" or "LOW"
    time: datetime


@dataclass(frozen=True)
class MarketStructure:
    """Trend classification plus the levels that would change it."""

    trend: str  # BULLISH, BEARISH or RANGING
    break_of_structure: bool = False
    change_of_character: bool = False
    current_swing_high: Optional[SwingPoint] = None
    current_swing_low: Optional[SwingPoint] = None
    last_higher_high: Optional[SwingPoint] = None
    last_higher_low: Optional[SwingPoint] = None
    last_lower_high: Optional[SwingPoint] = None
    last_lower_low: Optional[SwingPoint] = None

    @property
    def direction(self) -> int:
        """Directional vote: +1 bullish, -1 bearish, 0 none.

        A change of character flips the trend's vote; a break of structure
        against the trend cancels it.
        """
        if self.trend == BULLISH:
            if self.change_of_character:
                return -1
            return 0 if self.break_of_structure else 1
        if self.trend == BEARISH:
            if self.change_of_character:
                return 1
            return 0 if self.break_of_structure else -1
        return 0


@dataclass(frozen=True)
class StructureZone:
    """A price band produced by one of the zone detectors.

    ``side`` is BULLISH/BEARISH for order blocks and fair value gaps and
    BUY_SIDE/SELL_SIDE for liquidity.  Mitigation never reverses.
    """

    id: str
    kind: ZoneKind
    side: str
    price_high: float
    price_low: float
    formed_at: datetime
    mitigated: bool = False
    mitigated_at: Optional[datetime] = None
    strength: int = 5
    fill_pct: float = 0.0

    def __post_init__(self) -> None:
        if self.price_high < self.price_low:
            raise ValueError(
                f"Zone {self.id}: price_high {self.price_high} < price_low {self.price_low}"
            )

    @property
    def midpoint(self) -> float:
        return (self.price_high + self.price_low) / 2

    def distance_to(self, price: float) -> float:
        """Zero inside the band, otherwise the gap to the nearest edge."""
        if price > self.price_high:
            return price - self.price_high
        if price < self.price_low:
            return self.price_low - price
        return 0.0

    def mitigate(self, at: datetime) -> "StructureZone":
        if self.mitigated:
            return self
        return replace(self, mitigated=True, mitigated_at=at)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "side": self.side,
            "price_high": self.price_high,
            "price_low": self.price_low,
            "formed_at": self.formed_at.isoformat(),
            "mitigated": self.mitigated,
            "mitigated_at": self.mitigated_at.isoformat() if self.mitigated_at else None,
            "strength": self.strength,
        }


def merge_mitigation(
    previous: list[StructureZone], current: list[StructureZone],
) -> list[StructureZone]:
    """Carry mitigation from an earlier evaluation onto *current*.

    Zones are matched by ``id``; a zone mitigated before stays mitigated
    with its original ``mitigated_at``.
    """
    done = {z.id: z for z in previous if z.mitigated}
    merged: list[StructureZone] = []
    for zone in current:
        prior = done.get(zone.id)
        if prior is not None and not zone.mitigated:
            zone = zone.mitigate(prior.mitigated_at or zone.formed_at)
        merged.append(zone)
    return merged


# ── Signals ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TradingSignal:
    """A fused directional decision.

    Immutable apart from the execution link, which ``mark_executed`` sets
    at most once.
    """

    symbol: str
    timeframe: str
    type: SignalType
    strength: SignalStrength
    entry_price: float
    stop_loss: float
    take_profit: float
    confidence: float
    structure_snapshot: dict = field(default_factory=dict)
    narrative: str = ""
    ai_analysis: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    executed: bool = False
    linked_trade_id: Optional[str] = None

    @property
    def risk_reward(self) -> float:
        risk = abs(self.entry_price - self.stop_loss)
        if risk == 0:
            return 0.0
        return abs(self.take_profit - self.entry_price) / risk

    def mark_executed(self, trade_id: Optional[str]) -> "TradingSignal":
        if self.executed:
            raise ValueError(f"Signal already executed as trade {self.linked_trade_id}")
        if self.type == SignalType.HOLD:
            raise ValueError("HOLD signals cannot be executed")
        return replace(self, executed=True, linked_trade_id=trade_id)

    def annotate(self, analysis: Optional[str]) -> "TradingSignal":
        return replace(self, ai_analysis=analysis)
