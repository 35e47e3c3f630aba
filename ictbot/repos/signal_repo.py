"""Signal repository: SQLite CRUD for the trading_signals table."""

import json
from typing import Optional

from ictbot.repos.db import get_connection
from ictbot.strategy.models import TradingSignal


class SignalRepo:
    """Data access layer for fused trading signals.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    # ── Write ────────────────────────────────────────────────────────────

    def insert_signal(self, account_id: str, signal: TradingSignal) -> int:
        """Insert a signal and return its ``id``."""
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                INSERT INTO trading_signals
                    (account_id, symbol, timeframe, signal_type, strength,
                     entry_price, stop_loss, take_profit, confidence,
                     structure_snapshot, narrative, ai_analysis, executed,
                     linked_trade_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    account_id, signal.symbol, signal.timeframe,
                    signal.type.value, signal.strength.name,
                    signal.entry_price, signal.stop_loss, signal.take_profit,
                    signal.confidence,
                    json.dumps(signal.structure_snapshot, default=str),
                    signal.narrative, signal.ai_analysis,
                    int(signal.executed), signal.linked_trade_id,
                    signal.created_at.isoformat(),
                ),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    def mark_executed(self, signal_id: int, trade_id: Optional[str]) -> bool:
        """Link a signal to its trade.  Returns False if it was already linked."""
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                UPDATE trading_signals
                SET executed = 1, linked_trade_id = ?
                WHERE id = ? AND executed = 0
                """,
                (trade_id, signal_id),
            )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    # ── Read ─────────────────────────────────────────────────────────────

    def get_signals(
        self,
        limit: int = 20,
        account_id: Optional[str] = None,
        symbol: Optional[str] = None,
    ) -> list[dict]:
        """Return recent signals, newest first."""
        conn = get_connection(self._db_path)
        try:
            conditions: list[str] = []
            params: list = []
            if account_id:
                conditions.append("account_id = ?")
                params.append(account_id)
            if symbol:
                conditions.append("symbol = ?")
                params.append(symbol)
            where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

            rows = conn.execute(
                f"SELECT * FROM trading_signals {where_clause} ORDER BY id DESC LIMIT ?",
                (*params, limit),
            ).fetchall()

            signals = []
            for row in rows:
                record = dict(row)
                record["structure_snapshot"] = json.loads(record["structure_snapshot"] or "{}")
                record["executed"] = bool(record["executed"])
                signals.append(record)
            return signals
        finally:
            conn.close()
