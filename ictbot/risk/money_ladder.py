"""Progressive money-management ladder.

A table of balance rungs, each with a lot size and daily/weekly/monthly
profit targets.  Trading pauses for the rest of a period once its target
is reached, and the account climbs a rung whenever its balance reaches
the next threshold.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Sequence

logger = logging.getLogger("ictbot.risk")


@dataclass(frozen=True)
class MoneyLevel:
    """One rung of the ladder."""

    level: int
    balance_threshold: float
    lot_size: float
    daily_target: float
    weekly_target: float
    monthly_target: float


# level, balance, lot, daily, weekly, monthly
_DEFAULT_ROWS = [
    (1, 100.00, 0.01, 3.00, 15.00, 60.00),
    (2, 150.00, 0.01, 4.50, 22.50, 90.00),
    (3, 225.00, 0.02, 6.75, 33.75, 135.00),
    (4, 337.50, 0.03, 10.13, 50.63, 202.50),
    (5, 506.25, 0.05, 15.19, 75.94, 303.75),
    (6, 759.38, 0.08, 22.78, 113.91, 455.63),
    (7, 1139.06, 0.12, 34.17, 170.83, 683.44),
    (8, 1708.59, 0.2, 51.26, 256.28, 1025.15),
    (9, 2562.89, 0.3, 76.89, 384.44, 1537.78),
    (10, 3844.34, 0.5, 115.33, 576.67, 2306.67),
    (11, 5766.51, 0.8, 172.99, 864.94, 3459.75),
    (12, 8649.76, 1.3, 259.49, 1297.46, 5189.84),
    (13, 12974.63, 2.0, 389.24, 1946.19, 7784.75),
    (14, 19461.94, 3.0, 583.86, 2919.32, 11677.28),
    (15, 29192.91, 5.0, 875.79, 4378.93, 17515.71),
    (16, 43789.37, 8.0, 1313.68, 6568.42, 26273.69),
    (17, 65684.05, 13.0, 1970.52, 9852.60, 39410.40),
    (18, 98526.08, 20.0, 2955.78, 14778.91, 59115.64),
    (19, 147789.12, 30.0, 4433.67, 22168.36, 88673.44),
    (20, 221683.68, 50.0, 6650.51, 33252.56, 133010.24),
]

DEFAULT_LEVELS: tuple[MoneyLevel, ...] = tuple(MoneyLevel(*row) for row in _DEFAULT_ROWS)


@dataclass
class TradingAccountState:
    """Mutable per-account ladder state."""

    account_id: str
    current_level: int
    current_balance: float
    current_lot_size: float
    daily_target: float
    daily_profit: float = 0.0
    daily_target_reached: bool = False
    weekly_profit: float = 0.0
    weekly_target_reached: bool = False
    monthly_profit: float = 0.0
    monthly_target_reached: bool = False
    last_trading_day: Optional[date] = None
    week_start_date: Optional[date] = None
    month_start_date: Optional[date] = None
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    total_profit: float = 0.0
    initial_balance: float = 0.0

    def to_dict(self) -> dict:
        data = asdict(self)
        for key in ("last_trading_day", "week_start_date", "month_start_date"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass(frozen=True)
class Authorization:
    permitted: bool
    lot_size: float
    level: int
    reason: str = ""


def _week_start(day: date) -> date:
    return day - timedelta(days=day.weekday())


def _today(now: Optional[datetime]) -> date:
    return (now or datetime.now(timezone.utc)).astimezone(timezone.utc).date()


class MoneyManagementLadder:
    """Stateless rules over ``TradingAccountState``.

    Args:
        levels: Ladder rungs; sorted by threshold on construction.
        demote_on_drawdown: Let the rung follow the balance down as well
            as up.  Off by default: rungs only advance.
        daily_loss_limit_pct: Pause for the day once the daily loss
            reaches this share of balance.  ``None`` disables the check.
    """

    def __init__(
        self,
        levels: Sequence[MoneyLevel] = DEFAULT_LEVELS,
        demote_on_drawdown: bool = False,
        daily_loss_limit_pct: Optional[float] = None,
    ) -> None:
        if not levels:
            raise ValueError("Money-management ladder needs at least one level")
        self.levels: list[MoneyLevel] = sorted(levels, key=lambda l: l.balance_threshold)
        self.demote_on_drawdown = demote_on_drawdown
        self.daily_loss_limit_pct = daily_loss_limit_pct

    # ── Rung lookup ──────────────────────────────────────────────────────

    def level_for_balance(self, balance: float) -> MoneyLevel:
        """Highest rung whose threshold is at or below *balance*."""
        current = self.levels[0]
        for level in self.levels:
            if balance >= level.balance_threshold:
                current = level
        return current

    def get_level(self, level_number: int) -> MoneyLevel:
        for level in self.levels:
            if level.level == level_number:
                return level
        return self.levels[0]

    def next_level(self, balance: float) -> Optional[MoneyLevel]:
        current = self.level_for_balance(balance)
        for level in self.levels:
            if level.balance_threshold > current.balance_threshold:
                return level
        return None

    def progress_to_next(self, balance: float) -> float:
        """Percent of the way from the current rung to the next (0-100)."""
        current = self.level_for_balance(balance)
        upcoming = self.next_level(balance)
        if upcoming is None:
            return 100.0
        span = upcoming.balance_threshold - current.balance_threshold
        done = balance - current.balance_threshold
        return max(0.0, min(100.0, done / span * 100))

    # ── State transitions ────────────────────────────────────────────────

    def new_state(self, account_id: str, balance: float, today: Optional[date] = None) -> TradingAccountState:
        today = today or _today(None)
        level = self.level_for_balance(balance)
        return TradingAccountState(
            account_id=account_id,
            current_level=level.level,
            current_balance=balance,
            current_lot_size=level.lot_size,
            daily_target=level.daily_target,
            last_trading_day=today,
            week_start_date=_week_start(today),
            month_start_date=today.replace(day=1),
            initial_balance=balance,
        )

    def roll_periods(self, state: TradingAccountState, today: date) -> bool:
        """Reset counters whose calendar period has ended.  Returns True if any did."""
        changed = False
        if state.last_trading_day != today:
            state.daily_profit = 0.0
            state.daily_target_reached = False
            state.last_trading_day = today
            changed = True
        week_start = _week_start(today)
        if state.week_start_date != week_start:
            state.weekly_profit = 0.0
            state.weekly_target_reached = False
            state.week_start_date = week_start
            changed = True
        month_start = today.replace(day=1)
        if state.month_start_date != month_start:
            state.monthly_profit = 0.0
            state.monthly_target_reached = False
            state.month_start_date = month_start
            changed = True
        return changed

    def _apply_level(self, state: TradingAccountState) -> None:
        target = self.level_for_balance(state.current_balance)
        current = self.get_level(state.current_level)
        if not self.demote_on_drawdown and target.balance_threshold < current.balance_threshold:
            target = current
        if target.level != state.current_level:
            logger.info(
                "Account '%s': level %d -> %d (balance %.2f, lot %.2f)",
                state.account_id, state.current_level, target.level,
                state.current_balance, target.lot_size,
            )
        state.current_level = target.level
        state.current_lot_size = target.lot_size
        state.daily_target = target.daily_target

    def _evaluate_targets(self, state: TradingAccountState) -> None:
        level = self.get_level(state.current_level)
        state.daily_target_reached = state.daily_profit >= level.daily_target
        state.weekly_target_reached = state.weekly_profit >= level.weekly_target
        state.monthly_target_reached = state.monthly_profit >= level.monthly_target

    def authorize(self, state: TradingAccountState, now: Optional[datetime] = None) -> Authorization:
        """Decide whether a new position may be opened and at what lot size."""
        self.roll_periods(state, _today(now))
        self._apply_level(state)

        reason = ""
        if state.daily_target_reached:
            reason = "daily target reached"
        elif state.weekly_target_reached:
            reason = "weekly target reached"
        elif state.monthly_target_reached:
            reason = "monthly target reached"
        elif self.daily_loss_limit_pct is not None:
            limit = -abs(state.current_balance * self.daily_loss_limit_pct / 100)
            if state.daily_profit <= limit:
                reason = f"daily loss limit {limit:.2f} reached"

        return Authorization(
            permitted=not reason,
            lot_size=state.current_lot_size,
            level=state.current_level,
            reason=reason,
        )

    def settle(
        self,
        state: TradingAccountState,
        profit: float,
        now: Optional[datetime] = None,
        new_balance: Optional[float] = None,
    ) -> TradingAccountState:
        """Book a realised *profit*, advancing the rung and re-checking targets."""
        self.roll_periods(state, _today(now))
        state.daily_profit += profit
        state.weekly_profit += profit
        state.monthly_profit += profit
        state.total_profit += profit
        state.current_balance = new_balance if new_balance is not None else state.current_balance + profit
        state.total_trades += 1
        if profit > 0:
            state.winning_trades += 1
        elif profit < 0:
            state.losing_trades += 1

        self._apply_level(state)
        self._evaluate_targets(state)
        if state.daily_target_reached:
            logger.info(
                "Account '%s': daily target %.2f reached (%.2f).",
                state.account_id, state.daily_target, state.daily_profit,
            )
        return state

    def sync_balance(
        self, state: TradingAccountState, broker_balance: float, now: Optional[datetime] = None,
    ) -> TradingAccountState:
        """Settle any difference between stored and broker balance."""
        diff = broker_balance - state.current_balance
        if abs(diff) < 0.01:
            return state
        return self.settle(state, diff, now, new_balance=broker_balance)

    def daily_progress(self, state: TradingAccountState) -> float:
        if state.daily_target <= 0:
            return 100.0
        return max(0.0, min(100.0, state.daily_profit / state.daily_target * 100))
