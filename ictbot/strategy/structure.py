"""Market structure analysis: swing points, trend, BOS and CHoCH.

Pure functions over an ordered candle sequence.
"""

from typing import Optional, Sequence

from ictbot.broker.models import Candle
from ictbot.strategy.models import BEARISH, BULLISH, RANGING, MarketStructure, SwingPoint

SWING_WINDOW = 5
DEFAULT_LOOKBACK = 100


def find_swing_points(
    candles: Sequence[Candle], window: int = SWING_WINDOW,
) -> list[SwingPoint]:
    """Identify fractal swing highs and lows.

    A swing high is a candle whose high is strictly above the highs of the
    *window* candles on each side; swing lows mirror this.  Indices refer
    to positions in *candles*.
    """
    points: list[SwingPoint] = []
    for i in range(window, len(candles) - window):
        current = candles[i]
        neighbours = [candles[j] for j in range(i - window, i + window + 1) if j != i]
        if all(n.high < current.high for n in neighbours):
            points.append(SwingPoint(i, current.high, "HIGH", current.time))
        if all(n.low > current.low for n in neighbours):
            points.append(SwingPoint(i, current.low, "LOW", current.time))
    return points


def _last_step(points: list[SwingPoint], higher: bool) -> Optional[SwingPoint]:
    for i in range(len(points) - 1, 0, -1):
        if higher and points[i].price > points[i - 1].price:
            return points[i]
        if not higher and points[i].price < points[i - 1].price:
            return points[i]
    return None


def analyze_structure(
    candles: Sequence[Candle],
    lookback: int = DEFAULT_LOOKBACK,
    window: int = SWING_WINDOW,
) -> MarketStructure:
    """Classify the trend of the last *lookback* candles.

    Two or more higher highs and higher lows make a bullish trend; two or
    more lower highs and lower lows make a bearish one.  Fewer than four
    swings is always ranging.
    """
    recent = list(candles[-lookback:]) if lookback > 0 else list(candles)
    swings = find_swing_points(recent, window)
    if len(swings) < 4:
        return MarketStructure(trend=RANGING)

    highs = [p for p in swings if p.kind == "HIGH"]
    lows = [p for p in swings if p.kind == "LOW"]
    current_high = highs[-1] if highs else None
    current_low = lows[-1] if lows else None
    prev_high = highs[-2] if len(highs) > 1 else None
    prev_low = lows[-2] if len(lows) > 1 else None

    higher_highs = sum(1 for a, b in zip(highs, highs[1:]) if b.price > a.price)
    lower_highs = (len(highs) - 1 - higher_highs) if highs else 0
    higher_lows = sum(1 for a, b in zip(lows, lows[1:]) if b.price > a.price)
    lower_lows = (len(lows) - 1 - higher_lows) if lows else 0

    trend = RANGING
    if higher_highs >= 2 and higher_lows >= 2:
        trend = BULLISH
    elif lower_highs >= 2 and lower_lows >= 2:
        trend = BEARISH

    last_close = recent[-1].close
    bos = False
    choch = False
    if trend == BULLISH:
        bos = current_low is not None and last_close < current_low.price
        choch = (
            prev_low is not None and current_low is not None
            and current_low.price < prev_low.price
        )
    elif trend == BEARISH:
        bos = current_high is not None and last_close > current_high.price
        choch = (
            prev_high is not None and current_high is not None
            and current_high.price > prev_high.price
        )

    return MarketStructure(
        trend=trend,
        break_of_structure=bos,
        change_of_character=choch,
        current_swing_high=current_high,
        current_swing_low=current_low,
        last_higher_high=_last_step(highs, higher=True),
        last_higher_low=_last_step(lows, higher=True),
        last_lower_high=_last_step(highs, higher=False),
        last_lower_low=_last_step(lows, higher=False),
    )


class StructureAnalyzer:
    """Stateless trend classifier with a fixed window configuration."""

    def __init__(self, lookback: int = DEFAULT_LOOKBACK, swing_window: int = SWING_WINDOW) -> None:
        self.lookback = lookback
        self.swing_window = swing_window

    def analyze(self, candles: Sequence[Candle]) -> MarketStructure:
        return analyze_structure(candles, self.lookback, self.swing_window)
