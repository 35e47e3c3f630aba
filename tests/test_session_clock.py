"""Tests for ictbot.strategy.session_clock — kill zones, Asian range and bias."""

from datetime import datetime, timedelta, timezone

import pytest

from ictbot.broker.models import Candle
from ictbot.strategy.models import BEARISH, BULLISH, NEUTRAL, KillZone
from ictbot.strategy.session_clock import (
    ASIAN_SESSION,
    LONDON_CLOSE,
    LONDON_OPEN,
    NEW_YORK_OPEN,
    SessionClock,
)


def _utc(day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(2025, 1, day, hour, minute, tzinfo=timezone.utc)


# ── Classification ───────────────────────────────────────────────────────


class TestClassify:
    def test_zones_shifted_into_broker_hours(self):
        clock = SessionClock(offset_hours=2)
        spans = [(z.name, z.start_hour, z.end_hour) for z in clock.zones]
        assert spans == [
            (ASIAN_SESSION, 2, 10),
            (LONDON_OPEN, 9, 12),
            (NEW_YORK_OPEN, 14, 17),
            (LONDON_CLOSE, 17, 19),
        ]

    @pytest.mark.parametrize(
        "hour, expected",
        [(8, ASIAN_SESSION), (10, LONDON_OPEN), (12, None), (13, None)],
    )
    def test_zone_at_broker_hour(self, hour, expected):
        zone = SessionClock(offset_hours=2).zone_at_hour(hour)
        assert (zone.name if zone else None) == expected

    def test_overlap_resolved_by_priority(self):
        """Broker 09:00 lies in both Asian and London Open; Asian is listed first."""
        assert SessionClock(offset_hours=2).zone_at_hour(9).name == ASIAN_SESSION

    def test_classify_converts_from_utc(self):
        clock = SessionClock(offset_hours=2)
        assert clock.classify(_utc(8, 6)).name == ASIAN_SESSION     # broker 08:00
        assert clock.classify(_utc(8, 8)).name == LONDON_OPEN       # broker 10:00
        assert clock.classify(_utc(8, 12, 30)).name == NEW_YORK_OPEN
        assert clock.classify(_utc(8, 20)) is None                  # broker 22:00

    def test_set_offset_relocalises_zones(self):
        clock = SessionClock(offset_hours=2)
        clock.set_offset(0, source="broker")
        assert clock.offset_hours == 0
        assert clock.classify(_utc(8, 8)).name == LONDON_OPEN
        assert clock.classify(_utc(8, 11)) is None

    def test_wrapping_zone_contains_midnight(self):
        zone = KillZone("Late", 22, 2)
        assert zone.contains(23)
        assert zone.contains(1)
        assert not zone.contains(2)
        assert not zone.contains(12)


# ── Next zone ────────────────────────────────────────────────────────────


class TestTimeToNextZone:
    def test_minutes_until_next_start(self):
        nxt = SessionClock(offset_hours=2).time_to_next_zone(_utc(8, 5, 30))  # broker 07:30
        assert nxt.name == LONDON_OPEN
        assert nxt.minutes_until == 90

    def test_zone_starting_now_is_zero(self):
        nxt = SessionClock(offset_hours=2).time_to_next_zone(_utc(8, 7))  # broker 09:00
        assert nxt.name == LONDON_OPEN
        assert nxt.minutes_until == 0

    def test_wraps_to_tomorrow(self):
        nxt = SessionClock(offset_hours=2).time_to_next_zone(_utc(8, 16))  # broker 18:00
        assert nxt.name == ASIAN_SESSION
        assert nxt.minutes_until == 8 * 60

    def test_never_negative(self):
        clock = SessionClock(offset_hours=2)
        start = _utc(8, 0)
        for step in range(0, 24 * 60, 7):
            nxt = clock.time_to_next_zone(start + timedelta(minutes=step))
            assert 0 <= nxt.minutes_until < 24 * 60


# ── Trading days ─────────────────────────────────────────────────────────


class TestHighProbabilityDay:
    def test_midweek_is_tradeable(self):
        assert SessionClock.is_high_probability_day(_utc(8, 10))  # Wednesday

    def test_weekend_is_not(self):
        assert not SessionClock.is_high_probability_day(_utc(4, 10))  # Saturday
        assert not SessionClock.is_high_probability_day(_utc(5, 10))  # Sunday

    def test_late_friday_and_early_monday_are_not(self):
        assert not SessionClock.is_high_probability_day(_utc(3, 21))  # Friday
        assert not SessionClock.is_high_probability_day(_utc(6, 3))   # Monday
        assert SessionClock.is_high_probability_day(_utc(6, 4))


# ── Asian range and bias ─────────────────────────────────────────────────


class TestAsianRange:
    def test_range_from_asian_hours_only(self):
        candles = [
            Candle(_utc(8, h), 1925.0 + h, 1930.0 + h, 1920.0 + h, 1926.0 + h)
            for h in range(0, 12)
        ]
        rng = SessionClock.asian_range(candles)
        assert rng.high == 1937.0
        assert rng.low == 1920.0
        assert rng.midpoint == pytest.approx(1928.5)

    def test_none_without_asian_candles(self):
        candles = [Candle(_utc(8, h), 1.0, 1.1, 0.9, 1.0) for h in range(9, 14)]
        assert SessionClock.asian_range(candles) is None


class TestSessionBias:
    def test_sweep_of_high_is_bearish_in_new_york(self):
        zone = SessionClock(offset_hours=2).zones[2]
        assert SessionClock.session_bias(1940, 1930, 1945, zone) == BEARISH

    def test_sweep_of_high_is_bearish_in_london(self):
        zone = SessionClock(offset_hours=2).zones[1]
        assert SessionClock.session_bias(1940, 1930, 1945, zone) == BEARISH

    def test_sweep_of_low_is_bullish(self):
        zone = SessionClock(offset_hours=2).zones[1]
        assert SessionClock.session_bias(1940, 1930, 1925, zone) == BULLISH

    def test_inside_range_follows_midpoint(self):
        zone = SessionClock(offset_hours=2).zones[1]
        assert SessionClock.session_bias(1940, 1930, 1937, zone) == BULLISH
        assert SessionClock.session_bias(1940, 1930, 1932, zone) == BEARISH

    def test_neutral_outside_open_sessions(self):
        clock = SessionClock(offset_hours=2)
        asian, close = clock.zones[0], clock.zones[3]
        assert SessionClock.session_bias(1940, 1930, 1945, asian) == NEUTRAL
        assert SessionClock.session_bias(1940, 1930, 1925, close) == NEUTRAL
        assert SessionClock.session_bias(1940, 1930, 1925, None) == NEUTRAL
