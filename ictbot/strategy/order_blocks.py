"""Order block detection: pure functions.

An order block is an opposite-coloured candle immediately before an
impulsive three-candle move.  A bearish candle before a rally marks a
bullish block; a bullish candle before a sell-off marks a bearish one.
"""

from typing import Optional, Sequence

from ictbot.broker.models import Candle
from ictbot.strategy.models import BEARISH, BULLISH, StructureZone, ZoneKind

DEFAULT_LOOKBACK = 100
IMPULSE_CANDLES = 3
MIN_IMPULSE_MULTIPLIER = 2.0


def _strength(candles: Sequence[Candle], index: int, body: float, impulse: float) -> int:
    """Score 1-10 from impulse ratio, prior-range sweep and volume."""
    strength = 5
    ratio = impulse / body
    if ratio > 5:
        strength += 2
    elif ratio > 3:
        strength += 1

    block = candles[index]
    if index > 5:
        prior = candles[index - 5:index]
        if block.low < min(c.low for c in prior) or block.high > max(c.high for c in prior):
            strength += 1

    history = candles[max(0, index - 20):index]
    if history:
        avg_volume = sum(c.volume for c in history) / len(history)
        if avg_volume > 0 and block.volume > avg_volume * 1.5:
            strength += 1

    return min(10, max(1, strength))


def _mitigation(candles: Sequence[Candle], index: int, side: str):
    """Return the first later candle that closes through the block."""
    block = candles[index]
    for candle in candles[index + 1:]:
        if side == BULLISH and candle.close < block.low:
            return candle
        if side == BEARISH and candle.close > block.high:
            return candle
    return None


def detect_order_blocks(
    candles: Sequence[Candle], lookback: int = DEFAULT_LOOKBACK,
) -> list[StructureZone]:
    """Find order blocks in the last *lookback* candles, oldest first."""
    recent = list(candles[-lookback:]) if lookback > 0 else list(candles)
    zones: list[StructureZone] = []

    for i in range(1, len(recent) - IMPULSE_CANDLES):
        candle = recent[i]
        body = abs(candle.close - candle.open)
        if body == 0:
            continue

        impulse_window = recent[i + 1:i + 1 + IMPULSE_CANDLES]
        impulse = max(c.high for c in impulse_window) - min(c.low for c in impulse_window)
        if impulse <= body * MIN_IMPULSE_MULTIPLIER:
            continue

        side = BULLISH if candle.close < candle.open else BEARISH
        zone = StructureZone(
            id=f"OB-{side}-{candle.time:%Y%m%dT%H%M}",
            kind=ZoneKind.ORDER_BLOCK,
            side=side,
            price_high=candle.high,
            price_low=candle.low,
            formed_at=candle.time,
            strength=_strength(recent, i, body, impulse),
        )
        breaker = _mitigation(recent, i, side)
        if breaker is not None:
            zone = zone.mitigate(breaker.time)
        zones.append(zone)

    return zones


def nearest_order_block(
    zones: Sequence[StructureZone], price: float, side: str,
) -> Optional[StructureZone]:
    """Nearest unmitigated block below price (bullish) or above it (bearish)."""
    valid = [
        z for z in zones
        if z.kind == ZoneKind.ORDER_BLOCK and z.side == side and not z.mitigated
    ]
    if side == BULLISH:
        below = [z for z in valid if z.price_high < price]
        return max(below, key=lambda z: z.price_high, default=None)
    above = [z for z in valid if z.price_low > price]
    return min(above, key=lambda z: z.price_low, default=None)


class OrderBlockDetector:
    def __init__(self, lookback: int = DEFAULT_LOOKBACK) -> None:
        self.lookback = lookback

    def detect(self, candles: Sequence[Candle]) -> list[StructureZone]:
        return detect_order_blocks(candles, self.lookback)
