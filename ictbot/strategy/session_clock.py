"""Kill-zone session clock: pure time-of-day classification.

Zones are defined in UTC and shifted into broker-local hours by the
broker's server offset.  Priority order matters where zones overlap:
the first matching zone wins.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from ictbot.broker.models import Candle
from ictbot.strategy.models import (
    BEARISH,
    BULLISH,
    NEUTRAL,
    AsianRange,
    KillZone,
    NextZone,
)

logger = logging.getLogger("ictbot.strategy")

ASIAN_SESSION = "Asian Session"
LONDON_OPEN = "London Open Kill Zone"
NEW_YORK_OPEN = "New York Open Kill Zone"
LONDON_CLOSE = "London Close Kill Zone"

# (name, start_utc, end_utc) in priority order
DEFAULT_KILL_ZONES_UTC: tuple[tuple[str, int, int], ...] = (
    (ASIAN_SESSION, 0, 8),
    (LONDON_OPEN, 7, 10),
    (NEW_YORK_OPEN, 12, 15),
    (LONDON_CLOSE, 15, 17),
)

# Sessions in which a sweep of the Asian range sets directional bias
_BIAS_ZONES = {LONDON_OPEN, NEW_YORK_OPEN}

_ASIAN_RANGE_UTC = (0, 8)


class SessionClock:
    """Classifies instants into kill zones for one broker.

    Args:
        offset_hours: Broker server time minus UTC, in hours.
        zones_utc: ``(name, start, end)`` tuples in priority order.
    """

    def __init__(
        self,
        offset_hours: int = 2,
        zones_utc: Sequence[tuple[str, int, int]] = DEFAULT_KILL_ZONES_UTC,
    ) -> None:
        self._zones_utc = tuple(zones_utc)
        self._offset = offset_hours
        self._zones = self._localise()

    def _localise(self) -> list[KillZone]:
        return [
            KillZone(
                name=name,
                start_hour=(start + self._offset) % 24,
                end_hour=(end + self._offset) % 24,
            )
            for name, start, end in self._zones_utc
        ]

    @property
    def offset_hours(self) -> int:
        return self._offset

    @property
    def zones(self) -> list[KillZone]:
        """Zones in broker-local hours, priority order."""
        return list(self._zones)

    def set_offset(self, offset_hours: int, source: str = "config") -> None:
        """Re-derive local zones for a new broker offset."""
        if offset_hours == self._offset:
            return
        logger.info(
            "Broker timezone offset %+d -> %+d (from %s)",
            self._offset, offset_hours, source,
        )
        self._offset = offset_hours
        self._zones = self._localise()

    def broker_time(self, now_utc: datetime) -> datetime:
        return now_utc.astimezone(timezone.utc) + timedelta(hours=self._offset)

    # ── Classification ───────────────────────────────────────────────────

    def zone_at_hour(self, hour: int) -> Optional[KillZone]:
        """Return the first zone containing broker-local *hour*."""
        for zone in self._zones:
            if zone.contains(hour):
                return zone
        return None

    def classify(self, now_utc: datetime) -> Optional[KillZone]:
        """Return the active kill zone at *now_utc*, or ``None``."""
        return self.zone_at_hour(self.broker_time(now_utc).hour)

    def time_to_next_zone(self, now_utc: datetime) -> Optional[NextZone]:
        """Minutes until the nearest zone start, wrapping into tomorrow."""
        local = self.broker_time(now_utc)
        now_minutes = local.hour * 60 + local.minute
        best: Optional[NextZone] = None
        for zone in self._zones:
            minutes = zone.start_hour * 60 - now_minutes
            if minutes < 0:
                minutes += 24 * 60
            if best is None or minutes < best.minutes_until:
                best = NextZone(name=zone.name, minutes_until=minutes)
        return best

    @staticmethod
    def is_high_probability_day(now_utc: datetime) -> bool:
        """False over the weekend, late Friday and early Monday (UTC)."""
        now_utc = now_utc.astimezone(timezone.utc)
        weekday = now_utc.weekday()  # Monday == 0
        if weekday >= 5:
            return False
        if weekday == 4 and now_utc.hour >= 20:
            return False
        if weekday == 0 and now_utc.hour < 4:
            return False
        return True

    # ── Bias ─────────────────────────────────────────────────────────────

    @staticmethod
    def asian_range(candles: Sequence[Candle]) -> Optional[AsianRange]:
        """High/low of candles opening between 00:00 and 08:00 UTC."""
        start, end = _ASIAN_RANGE_UTC
        asian = [
            c for c in candles
            if start <= c.time.astimezone(timezone.utc).hour < end
        ]
        if not asian:
            return None
        return AsianRange(
            high=max(c.high for c in asian),
            low=min(c.low for c in asian),
        )

    @staticmethod
    def session_bias(
        asian_high: float,
        asian_low: float,
        current_price: float,
        active_zone: Optional[KillZone],
    ) -> str:
        """Directional bias from the Asian range during London/NY opens.

        A sweep of the Asian high is read as bearish (buy-side liquidity
        taken) and a sweep of the low as bullish.  Inside the range the
        midpoint decides.
        """
        if active_zone is None or active_zone.name not in _BIAS_ZONES:
            return NEUTRAL
        if current_price > asian_high:
            return BEARISH
        if current_price < asian_low:
            return BULLISH
        midpoint = (asian_high + asian_low) / 2
        return BULLISH if current_price > midpoint else BEARISH
