"""Tests for ictbot.strategy.fusion — weighted voting, levels and HOLD rules."""

from datetime import datetime, timezone

import pytest

from ictbot.strategy.fusion import SignalFusionEngine, strength_for
from ictbot.strategy.models import (
    BEARISH,
    BULLISH,
    BUY_SIDE,
    NEUTRAL,
    RANGING,
    SELL_SIDE,
    MarketStructure,
    SignalStrength,
    SignalType,
    StructureZone,
    ZoneKind,
)
from ictbot.strategy.session_clock import SessionClock

_NOW = datetime(2025, 1, 8, 8, 0, tzinfo=timezone.utc)
_PRICE = 2000.0


# ── Helpers ──────────────────────────────────────────────────────────────


def _london():
    return SessionClock(offset_hours=2).zones[1]


def _zone(zone_id, kind, side, high, low, mitigated=False) -> StructureZone:
    zone = StructureZone(zone_id, kind, side, high, low, _NOW)
    return zone.mitigate(_NOW) if mitigated else zone


def _bullish_zones() -> list[StructureZone]:
    return [
        _zone("ob-bull", ZoneKind.ORDER_BLOCK, BULLISH, 1992.0, 1990.0),
        _zone("bsl", ZoneKind.LIQUIDITY, BUY_SIDE, 2030.0, 2030.0),
    ]


def _bearish_zones() -> list[StructureZone]:
    return [
        _zone("ob-bear", ZoneKind.ORDER_BLOCK, BEARISH, 2010.0, 2008.0),
        _zone("ssl", ZoneKind.LIQUIDITY, SELL_SIDE, 1970.0, 1970.0),
    ]


def _fuse(structure_trend=BULLISH, zones=None, bias=BULLISH, sentiment=None,
          engine=None, session="london", tradeable_day=True):
    engine = engine or SignalFusionEngine()
    return engine.fuse(
        symbol="XAUUSDm",
        timeframe="M15",
        price=_PRICE,
        session=_london() if session == "london" else None,
        structure=MarketStructure(trend=structure_trend),
        zones=_bullish_zones() if zones is None else zones,
        session_bias=bias,
        sentiment_bias=sentiment,
        tradeable_day=tradeable_day,
        now=_NOW,
    )


# ── Direction ────────────────────────────────────────────────────────────


class TestDirection:
    def test_buy_with_confluence(self):
        """Trend, bullish block and session bias agree → BUY."""
        signal = _fuse()
        assert signal.type == SignalType.BUY
        assert signal.confidence == 85.0  # 30 + 25 + 20 + kill-zone bonus
        assert signal.strength == SignalStrength.VERY_STRONG
        assert signal.entry_price == _PRICE
        assert signal.stop_loss == pytest.approx(1990.0 - _PRICE * 0.0005)
        assert signal.take_profit == 2030.0
        assert signal.stop_loss < signal.entry_price < signal.take_profit
        assert signal.structure_snapshot["entry_zone"] == "ob-bull"
        assert set(signal.structure_snapshot["agreeing"]) == {"structure", "zone", "session_bias"}

    def test_sell_with_confluence(self):
        signal = _fuse(structure_trend=BEARISH, zones=_bearish_zones(), bias=BEARISH)
        assert signal.type == SignalType.SELL
        assert signal.stop_loss == pytest.approx(2010.0 + _PRICE * 0.0005)
        assert signal.take_profit == 1970.0
        assert signal.take_profit < signal.entry_price < signal.stop_loss

    def test_hold_when_only_structure_trends(self):
        """No zones and neutral bias leaves a single factor → HOLD."""
        signal = _fuse(zones=[], bias=NEUTRAL)
        assert signal.type == SignalType.HOLD
        assert signal.stop_loss == signal.take_profit == _PRICE

    def test_even_split_is_hold(self):
        """Structure + sentiment (45) against zone + session bias (45)."""
        zones = [_zone("ob-bear", ZoneKind.ORDER_BLOCK, BEARISH, 2002.0, 2001.0)]
        signal = _fuse(zones=zones, bias=BEARISH, sentiment=BULLISH)
        assert signal.structure_snapshot["votes"] == {
            "structure": 1, "zone": -1, "session_bias": -1, "sentiment": 1,
        }
        assert signal.type == SignalType.HOLD

    def test_mitigated_zones_do_not_vote(self):
        zones = [_zone("ob-bull", ZoneKind.ORDER_BLOCK, BULLISH, 1992.0, 1990.0, mitigated=True)]
        signal = _fuse(zones=zones, bias=NEUTRAL)
        assert signal.structure_snapshot["votes"]["zone"] == 0
        assert signal.type == SignalType.HOLD

    def test_ranging_market_without_other_factors_is_hold(self):
        signal = _fuse(structure_trend=RANGING, zones=[], bias=NEUTRAL)
        assert signal.type == SignalType.HOLD
        assert signal.confidence == 0.0


# ── Confidence ───────────────────────────────────────────────────────────


class TestConfidence:
    def test_grows_with_agreeing_factors(self):
        two = _fuse(bias=NEUTRAL).confidence
        three = _fuse().confidence
        four = _fuse(sentiment=BULLISH).confidence
        assert two < three < four

    def test_falls_with_disagreement(self):
        agreed = _fuse().confidence
        opposed = _fuse(sentiment=BEARISH).confidence
        assert opposed < agreed

    def test_clamped_to_100(self):
        engine = SignalFusionEngine(
            weights={"structure": 60, "zone": 50, "session_bias": 40, "sentiment": 30},
        )
        signal = _fuse(engine=engine, sentiment=BULLISH)
        assert signal.confidence == 100.0

    def test_kill_zone_bonus_only_inside_session(self):
        inside = _fuse().confidence
        outside = _fuse(session=None).confidence
        assert inside - outside == 10.0

    def test_below_floor_is_hold(self):
        signal = _fuse(engine=SignalFusionEngine(min_confidence=90))
        assert signal.type == SignalType.HOLD

    @pytest.mark.parametrize(
        "confidence, expected",
        [
            (0, SignalStrength.WEAK),
            (39.9, SignalStrength.WEAK),
            (40, SignalStrength.MODERATE),
            (60, SignalStrength.STRONG),
            (80, SignalStrength.VERY_STRONG),
            (100, SignalStrength.VERY_STRONG),
        ],
    )
    def test_strength_bands(self, confidence, expected):
        assert strength_for(confidence) == expected

    def test_strength_is_monotonic(self):
        ranks = [strength_for(c) for c in range(0, 101)]
        assert ranks == sorted(ranks)


# ── Gating ───────────────────────────────────────────────────────────────


class TestGating:
    def test_low_probability_day_is_hold(self):
        assert _fuse(tradeable_day=False).type == SignalType.HOLD

    def test_poor_risk_reward_is_hold(self):
        zones = [
            _zone("ob-bull", ZoneKind.ORDER_BLOCK, BULLISH, 1992.0, 1990.0),
            _zone("bsl", ZoneKind.LIQUIDITY, BUY_SIDE, 2001.0, 2001.0),
        ]
        signal = _fuse(zones=zones)
        assert signal.type == SignalType.HOLD
        assert "risk/reward" in signal.narrative

    def test_fallback_target_without_liquidity(self):
        zones = [_zone("ob-bull", ZoneKind.ORDER_BLOCK, BULLISH, 1992.0, 1990.0)]
        signal = _fuse(zones=zones)
        risk = _PRICE - signal.stop_loss
        assert signal.type == SignalType.BUY
        assert signal.take_profit == pytest.approx(_PRICE + 2 * risk)
        assert signal.risk_reward == pytest.approx(2.0)


# ── Levels ───────────────────────────────────────────────────────────────


class TestLevels:
    def test_nearer_opposing_gap_is_the_target(self):
        zones = _bullish_zones() + [
            _zone("fvg-bear", ZoneKind.FAIR_VALUE_GAP, BEARISH, 2020.0, 2018.0),
        ]
        signal = _fuse(zones=zones)
        assert signal.type == SignalType.BUY
        assert signal.take_profit == 2018.0
        assert signal.structure_snapshot["entry_zone"] == "ob-bull"

    def test_sell_targets_nearest_sell_side_pool(self):
        zones = _bearish_zones() + [
            _zone("ssl-far", ZoneKind.LIQUIDITY, SELL_SIDE, 1950.0, 1950.0),
        ]
        signal = _fuse(structure_trend=BEARISH, zones=zones, bias=BEARISH)
        assert signal.take_profit == 1970.0

    def test_open_gap_tightens_the_stop(self):
        gap = _zone("fvg-bull", ZoneKind.FAIR_VALUE_GAP, BULLISH, 1996.0, 1995.0)
        signal = _fuse(zones=_bullish_zones() + [gap])
        assert signal.stop_loss == pytest.approx(1995.0 - _PRICE * 0.0005)

    def test_mostly_filled_gap_does_not_guard_the_stop(self):
        gap = StructureZone(
            "fvg-bull", ZoneKind.FAIR_VALUE_GAP, BULLISH, 1996.0, 1995.0, _NOW, fill_pct=80.0,
        )
        signal = _fuse(zones=_bullish_zones() + [gap])
        assert signal.stop_loss == pytest.approx(1990.0 - _PRICE * 0.0005)


# ── Signal record ────────────────────────────────────────────────────────


class TestTradingSignal:
    def test_mark_executed_once(self):
        signal = _fuse().mark_executed("123")
        assert signal.executed and signal.linked_trade_id == "123"
        with pytest.raises(ValueError):
            signal.mark_executed("456")

    def test_hold_cannot_execute(self):
        with pytest.raises(ValueError):
            _fuse(zones=[], bias=NEUTRAL).mark_executed("1")

    def test_annotation_does_not_change_decision(self):
        signal = _fuse()
        annotated = signal.annotate("Looks constructive.")
        assert annotated.ai_analysis == "Looks constructive."
        assert (annotated.type, annotated.confidence) == (signal.type, signal.confidence)
