"""Account state and ladder level repositories."""

from datetime import date, datetime, timezone
from typing import Optional, Sequence

from ictbot.repos.db import get_connection
from ictbot.risk.money_ladder import MoneyLevel, TradingAccountState

_BOOL_FIELDS = ("daily_target_reached", "weekly_target_reached", "monthly_target_reached")
_DATE_FIELDS = ("last_trading_day", "week_start_date", "month_start_date")


class LevelRepo:
    """Persisted money-management ladder rungs."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def get_levels(self) -> list[MoneyLevel]:
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                "SELECT * FROM money_management_levels ORDER BY balance_threshold"
            ).fetchall()
            return [
                MoneyLevel(
                    level=row["level"],
                    balance_threshold=row["balance_threshold"],
                    lot_size=row["lot_size"],
                    daily_target=row["daily_target"],
                    weekly_target=row["weekly_target"],
                    monthly_target=row["monthly_target"],
                )
                for row in rows
            ]
        finally:
            conn.close()

    def seed_levels(self, levels: Sequence[MoneyLevel]) -> int:
        """Insert *levels* if the table is empty.  Returns rows inserted."""
        conn = get_connection(self._db_path)
        try:
            count = conn.execute("SELECT COUNT(*) FROM money_management_levels").fetchone()[0]
            if count:
                return 0
            conn.executemany(
                """
                INSERT INTO money_management_levels
                    (level, balance_threshold, lot_size, daily_target,
                     weekly_target, monthly_target)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (l.level, l.balance_threshold, l.lot_size,
                     l.daily_target, l.weekly_target, l.monthly_target)
                    for l in levels
                ],
            )
            conn.commit()
            return len(levels)
        finally:
            conn.close()


class AccountStateRepo:
    """Per-account ladder state, one row per account."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def get(self, account_id: str) -> Optional[TradingAccountState]:
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT * FROM trading_account_states WHERE account_id = ?",
                (account_id,),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None

        data = dict(row)
        data.pop("updated_at", None)
        for key in _BOOL_FIELDS:
            data[key] = bool(data[key])
        for key in _DATE_FIELDS:
            data[key] = date.fromisoformat(data[key]) if data[key] else None
        return TradingAccountState(**data)

    def save(self, state: TradingAccountState) -> None:
        """Insert or replace the state row."""
        data = state.to_dict()
        for key in _BOOL_FIELDS:
            data[key] = int(data[key])
        data["updated_at"] = datetime.now(timezone.utc).isoformat()
        columns = ", ".join(data)
        placeholders = ", ".join("?" for _ in data)

        conn = get_connection(self._db_path)
        try:
            conn.execute(
                f"INSERT OR REPLACE INTO trading_account_states ({columns}) VALUES ({placeholders})",
                tuple(data.values()),
            )
            conn.commit()
        finally:
            conn.close()
