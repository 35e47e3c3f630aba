"""Signal fusion: combine session, structure, zones and bias into one signal.

Each factor casts a vote of +1 (bullish), -1 (bearish) or 0 and carries a
fixed weight:

    structure      30   trend direction (CHoCH flips it, BOS cancels it)
    zone           25   side of the nearest unmitigated order block / FVG
    session_bias   20   Asian-range sweep bias during London/NY opens
    sentiment      15   external positioning bias, when available

The direction is the sign of the weighted sum.  Confidence is the agreeing
weight minus the opposing weight, plus a 10-point bonus inside a kill
zone, clamped to [0, 100].  An even split is HOLD, as is any direction
backed by fewer than two factors or scoring below the confidence floor.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Sequence

from ictbot.strategy.fair_value_gaps import nearest_gap
from ictbot.strategy.liquidity import buy_side_levels, sell_side_levels
from ictbot.strategy.models import (
    BEARISH,
    BULLISH,
    KillZone,
    MarketStructure,
    SignalStrength,
    SignalType,
    StructureZone,
    TradingSignal,
    ZoneKind,
)
from ictbot.strategy.order_blocks import nearest_order_block

logger = logging.getLogger("ictbot.strategy")

FUSION_WEIGHTS: dict[str, int] = {
    "structure": 30,
    "zone": 25,
    "session_bias": 20,
    "sentiment": 15,
}
KILL_ZONE_BONUS = 10
MIN_CONFIDENCE = 30.0
MIN_AGREEING_FACTORS = 2
MIN_RISK_REWARD = 1.2
STOP_BUFFER_PCT = 0.0005
FALLBACK_STOP_PCT = 0.005
FALLBACK_REWARD_MULTIPLE = 2.0

_BIAS_VOTES = {BULLISH: 1, BEARISH: -1}


def strength_for(confidence: float) -> SignalStrength:
    """Map confidence to its strength band."""
    if confidence >= 80:
        return SignalStrength.VERY_STRONG
    if confidence >= 60:
        return SignalStrength.STRONG
    if confidence >= 40:
        return SignalStrength.MODERATE
    return SignalStrength.WEAK


def _nearest_entry_zone(
    zones: Sequence[StructureZone], price: float,
) -> Optional[StructureZone]:
    candidates = [
        z for z in zones
        if z.kind in (ZoneKind.ORDER_BLOCK, ZoneKind.FAIR_VALUE_GAP) and not z.mitigated
    ]
    return min(
        candidates,
        key=lambda z: (z.distance_to(price), -z.strength),
        default=None,
    )


class SignalFusionEngine:
    """Pure fusion of analysis outputs into a ``TradingSignal``.

    Args:
        min_confidence: Directional signals below this become HOLD.
        min_risk_reward: Directional signals below this reward/risk become HOLD.
        weights: Factor weights; defaults to ``FUSION_WEIGHTS``.
    """

    def __init__(
        self,
        min_confidence: float = MIN_CONFIDENCE,
        min_risk_reward: float = MIN_RISK_REWARD,
        weights: Optional[dict[str, int]] = None,
        kill_zone_bonus: int = KILL_ZONE_BONUS,
        stop_buffer_pct: float = STOP_BUFFER_PCT,
    ) -> None:
        self.min_confidence = min_confidence
        self.min_risk_reward = min_risk_reward
        self.weights = dict(weights or FUSION_WEIGHTS)
        self.kill_zone_bonus = kill_zone_bonus
        self.stop_buffer_pct = stop_buffer_pct

    # ── Levels ───────────────────────────────────────────────────────────

    def _stop_loss(
        self,
        direction: int,
        entry: float,
        structure: MarketStructure,
        zones: Sequence[StructureZone],
    ) -> float:
        buffer = entry * self.stop_buffer_pct
        if direction > 0:
            side, swing = BULLISH, structure.current_swing_low
        else:
            side, swing = BEARISH, structure.current_swing_high
        guards = [
            z for z in (nearest_order_block(zones, entry, side), nearest_gap(zones, entry, side))
            if z is not None
        ]

        if direction > 0:
            levels = [z.price_low for z in guards]
            if swing is not None and swing.price < entry:
                levels.append(swing.price)
            if levels:
                return max(levels) - buffer
            return entry * (1 - FALLBACK_STOP_PCT)

        levels = [z.price_high for z in guards]
        if swing is not None and swing.price > entry:
            levels.append(swing.price)
        if levels:
            return min(levels) + buffer
        return entry * (1 + FALLBACK_STOP_PCT)

    @staticmethod
    def _take_profit(
        direction: int, entry: float, stop: float, zones: Sequence[StructureZone],
    ) -> float:
        risk = abs(entry - stop)
        if direction > 0:
            pools = buy_side_levels(zones, entry)
            gap = nearest_gap(zones, entry, BEARISH)
            targets = [z.price_low for z in pools[:1] + ([gap] if gap else [])]
            return min(targets) if targets else entry + FALLBACK_REWARD_MULTIPLE * risk

        pools = sell_side_levels(zones, entry)
        gap = nearest_gap(zones, entry, BULLISH)
        targets = [z.price_high for z in pools[:1] + ([gap] if gap else [])]
        return max(targets) if targets else entry - FALLBACK_REWARD_MULTIPLE * risk

    # ── Fusion ───────────────────────────────────────────────────────────

    def fuse(
        self,
        symbol: str,
        timeframe: str,
        price: float,
        session: Optional[KillZone],
        structure: MarketStructure,
        zones: Sequence[StructureZone],
        session_bias: str,
        sentiment_bias: Optional[str] = None,
        tradeable_day: bool = True,
        now: Optional[datetime] = None,
    ) -> TradingSignal:
        """Return a BUY, SELL or HOLD signal for *price*."""
        now = now or datetime.now(timezone.utc)
        entry_zone = _nearest_entry_zone(zones, price)

        votes = {
            "structure": structure.direction,
            "zone": 0 if entry_zone is None else _BIAS_VOTES.get(entry_zone.side, 0),
            "session_bias": _BIAS_VOTES.get(session_bias, 0),
            "sentiment": _BIAS_VOTES.get(sentiment_bias or "", 0),
        }
        net = sum(self.weights[name] * vote for name, vote in votes.items())
        direction = (net > 0) - (net < 0)

        agreeing = [name for name, vote in votes.items() if direction and vote == direction]
        opposing = [name for name, vote in votes.items() if direction and vote == -direction]
        confidence = float(abs(net))
        if session is not None and agreeing:
            confidence += self.kill_zone_bonus
        confidence = max(0.0, min(100.0, confidence))

        snapshot = {
            "session": session.name if session else None,
            "session_bias": session_bias,
            "trend": structure.trend,
            "break_of_structure": structure.break_of_structure,
            "change_of_character": structure.change_of_character,
            "sentiment_bias": sentiment_bias,
            "votes": votes,
            "entry_zone": entry_zone.id if entry_zone else None,
            "zone_counts": {
                kind.value: sum(1 for z in zones if z.kind == kind and not z.mitigated)
                for kind in ZoneKind
            },
        }
        reasons = [
            f"Session: {session.name if session else 'none'}",
            f"Trend: {structure.trend}",
            f"Session bias: {session_bias}",
        ]
        if entry_zone is not None:
            reasons.append(
                f"Nearest zone: {entry_zone.side} {entry_zone.kind.value} "
                f"{entry_zone.price_low:.5f}-{entry_zone.price_high:.5f}"
            )
        if sentiment_bias:
            reasons.append(f"Sentiment: {sentiment_bias}")

        hold_reason = None
        if direction == 0:
            hold_reason = "factors evenly split or absent"
        elif len(agreeing) < MIN_AGREEING_FACTORS:
            hold_reason = f"only {len(agreeing)} agreeing factor"
        elif confidence < self.min_confidence:
            hold_reason = f"confidence {confidence:.0f} below {self.min_confidence:.0f}"
        elif not tradeable_day:
            hold_reason = "low probability trading day"

        stop = take = price
        if hold_reason is None:
            stop = self._stop_loss(direction, price, structure, zones)
            take = self._take_profit(direction, price, stop, zones)
            risk = abs(price - stop)
            reward = abs(take - price)
            if risk == 0 or reward / risk < self.min_risk_reward:
                hold_reason = "risk/reward below minimum"
                stop = take = price

        if hold_reason is not None:
            signal_type = SignalType.HOLD
            reasons.append(f"HOLD: {hold_reason}")
        else:
            signal_type = SignalType.BUY if direction > 0 else SignalType.SELL
            reasons.append(
                f"{signal_type.value}: {len(agreeing)} agreeing, {len(opposing)} opposing"
            )
            snapshot["agreeing"] = agreeing
            snapshot["opposing"] = opposing

        logger.debug("Fused %s %s: %s (%.0f)", symbol, timeframe, signal_type.value, confidence)
        return TradingSignal(
            symbol=symbol,
            timeframe=timeframe,
            type=signal_type,
            strength=strength_for(confidence),
            entry_price=price,
            stop_loss=stop,
            take_profit=take,
            confidence=confidence,
            structure_snapshot=snapshot,
            narrative="; ".join(reasons),
            created_at=now,
        )
