"""Liquidity level detection: pure functions.

Resting stops cluster above swing highs and equal highs (buy-side) and
below swing lows and equal lows (sell-side).  A level is swept once a
later candle trades beyond it.
"""

from typing import Sequence

from ictbot.broker.models import Candle
from ictbot.strategy.models import BUY_SIDE, SELL_SIDE, StructureZone, ZoneKind
from ictbot.strategy.structure import SWING_WINDOW, find_swing_points

DEFAULT_LOOKBACK = 100
TEST_TOLERANCE = 0.0005   # 0.05%: touches counted toward swing strength
EQUAL_TOLERANCE = 0.0003  # 0.03%: highs/lows this close count as equal


def _swing_strength(candles: Sequence[Candle], index: int, price: float, is_high: bool) -> int:
    tolerance = price * TEST_TOLERANCE
    tests = sum(
        1 for c in candles
        if abs((c.high if is_high else c.low) - price) <= tolerance
    )
    strength = 5 + min(3, tests)
    age = len(candles) - index
    if age > 50:
        strength += 1
    if age > 100:
        strength += 1
    return min(10, strength)


def _first_sweep(candles: Sequence[Candle], after: int, is_high: bool, level: float):
    for candle in candles[after + 1:]:
        if is_high and candle.high > level:
            return candle
        if not is_high and candle.low < level:
            return candle
    return None


def _swing_levels(candles: Sequence[Candle], window: int) -> list[StructureZone]:
    zones: list[StructureZone] = []
    for point in find_swing_points(candles, window):
        is_high = point.kind == "HIGH"
        side = BUY_SIDE if is_high else SELL_SIDE
        zone = StructureZone(
            id=f"LQ-SW{'H' if is_high else 'L'}-{point.time:%Y%m%dT%H%M}",
            kind=ZoneKind.LIQUIDITY,
            side=side,
            price_high=point.price,
            price_low=point.price,
            formed_at=point.time,
            strength=_swing_strength(candles, point.index, point.price, is_high),
        )
        sweep = _first_sweep(candles, point.index, is_high, point.price)
        if sweep is not None:
            zone = zone.mitigate(sweep.time)
        zones.append(zone)
    return zones


def _equal_levels(candles: Sequence[Candle], is_high: bool) -> list[StructureZone]:
    """Group near-equal highs (or lows) into pools.

    Groups are keyed by the first price seen.  A pool forms at its second
    touch and its band is fixed by the first two touches, so later touches
    never move it.
    """
    groups: list[tuple[float, list[int]]] = []
    for i, candle in enumerate(candles):
        price = candle.high if is_high else candle.low
        for key, members in groups:
            if abs(price - key) / key <= EQUAL_TOLERANCE:
                members.append(i)
                break
        else:
            groups.append((price, [i]))

    zones: list[StructureZone] = []
    for _, members in groups:
        if len(members) < 2:
            continue
        first, second = candles[members[0]], candles[members[1]]
        prices = [first.high, second.high] if is_high else [first.low, second.low]
        band_high, band_low = max(prices), min(prices)
        zone = StructureZone(
            id=f"LQ-EQ{'H' if is_high else 'L'}-{second.time:%Y%m%dT%H%M}",
            kind=ZoneKind.LIQUIDITY,
            side=BUY_SIDE if is_high else SELL_SIDE,
            price_high=band_high,
            price_low=band_low,
            formed_at=second.time,
            strength=5 + min(3, len(members)),
        )
        sweep = _first_sweep(
            candles, members[1], is_high, band_high if is_high else band_low,
        )
        if sweep is not None:
            zone = zone.mitigate(sweep.time)
        zones.append(zone)
    return zones


def detect_liquidity(
    candles: Sequence[Candle],
    lookback: int = DEFAULT_LOOKBACK,
    swing_window: int = SWING_WINDOW,
) -> list[StructureZone]:
    """Find swing and equal-level liquidity in the last *lookback* candles."""
    recent = list(candles[-lookback:]) if lookback > 0 else list(candles)
    zones = (
        _swing_levels(recent, swing_window)
        + _equal_levels(recent, is_high=True)
        + _equal_levels(recent, is_high=False)
    )
    zones.sort(key=lambda z: (z.formed_at, z.price_low))
    return zones


def buy_side_levels(zones: Sequence[StructureZone], price: float) -> list[StructureZone]:
    """Unswept buy-side levels above *price*, nearest first."""
    return sorted(
        (z for z in zones
         if z.kind == ZoneKind.LIQUIDITY and z.side == BUY_SIDE
         and not z.mitigated and z.price_low > price),
        key=lambda z: z.price_low,
    )


def sell_side_levels(zones: Sequence[StructureZone], price: float) -> list[StructureZone]:
    """Unswept sell-side levels below *price*, nearest first."""
    return sorted(
        (z for z in zones
         if z.kind == ZoneKind.LIQUIDITY and z.side == SELL_SIDE
         and not z.mitigated and z.price_high < price),
        key=lambda z: z.price_high,
        reverse=True,
    )


class LiquidityDetector:
    def __init__(self, lookback: int = DEFAULT_LOOKBACK, swing_window: int = SWING_WINDOW) -> None:
        self.lookback = lookback
        self.swing_window = swing_window

    def detect(self, candles: Sequence[Candle]) -> list[StructureZone]:
        return detect_liquidity(candles, self.lookback, self.swing_window)
