"""Fair value gap detection: pure functions.

A fair value gap is the untraded space left by a three-candle move: the
first candle's high and the third candle's low do not overlap (bullish),
or the mirror for bearish moves.
"""

from typing import Optional, Sequence

from ictbot.broker.models import Candle
from ictbot.strategy.models import BEARISH, BULLISH, StructureZone, ZoneKind

DEFAULT_LOOKBACK = 100
MIN_GAP_RATIO = 0.1  # gap must exceed this fraction of the middle candle's range
NEAREST_MAX_FILL = 75.0


def _fill(candles: Sequence[Candle], start: int, side: str, high: float, low: float):
    """Return ``(fill_pct, filled_at)`` from candles at *start* onwards."""
    size = high - low
    max_fill = 0.0
    for candle in candles[start:]:
        if side == BULLISH and candle.low <= high:
            max_fill = max(max_fill, high - max(candle.low, low))
        elif side == BEARISH and candle.high >= low:
            max_fill = max(max_fill, min(candle.high, high) - low)
        if max_fill >= size:
            return 100.0, candle.time
    return min(100.0, max_fill / size * 100), None


def detect_fair_value_gaps(
    candles: Sequence[Candle], lookback: int = DEFAULT_LOOKBACK,
) -> list[StructureZone]:
    """Find fair value gaps in the last *lookback* candles, oldest first.

    ``formed_at`` is the middle candle; fill is measured from candles
    after the third.
    """
    recent = list(candles[-lookback:]) if lookback > 0 else list(candles)
    zones: list[StructureZone] = []

    for i in range(2, len(recent)):
        first, middle, third = recent[i - 2], recent[i - 1], recent[i]
        middle_range = middle.high - middle.low

        gaps = []
        if third.low > first.high:
            gaps.append((BULLISH, third.low, first.high))
        if third.high < first.low:
            gaps.append((BEARISH, first.low, third.high))

        for side, high, low in gaps:
            if high - low <= middle_range * MIN_GAP_RATIO:
                continue
            fill_pct, filled_at = _fill(recent, i + 1, side, high, low)
            zone = StructureZone(
                id=f"FVG-{side}-{middle.time:%Y%m%dT%H%M}",
                kind=ZoneKind.FAIR_VALUE_GAP,
                side=side,
                price_high=high,
                price_low=low,
                formed_at=middle.time,
                fill_pct=round(fill_pct, 2),
            )
            if filled_at is not None:
                zone = zone.mitigate(filled_at)
            zones.append(zone)

    return zones


def nearest_gap(
    zones: Sequence[StructureZone], price: float, side: str,
) -> Optional[StructureZone]:
    """Nearest mostly-open gap below price (bullish) or above it (bearish)."""
    open_gaps = [
        z for z in zones
        if z.kind == ZoneKind.FAIR_VALUE_GAP and z.side == side
        and not z.mitigated and z.fill_pct < NEAREST_MAX_FILL
    ]
    if side == BULLISH:
        below = [z for z in open_gaps if z.price_high < price]
        return max(below, key=lambda z: z.price_high, default=None)
    above = [z for z in open_gaps if z.price_low > price]
    return min(above, key=lambda z: z.price_low, default=None)


class FairValueGapDetector:
    def __init__(self, lookback: int = DEFAULT_LOOKBACK) -> None:
        self.lookback = lookback

    def detect(self, candles: Sequence[Candle]) -> list[StructureZone]:
        return detect_fair_value_gaps(candles, self.lookback)
