"""Trade repository: SQLite CRUD for the trades table."""

from datetime import datetime, timezone
from typing import Optional

from ictbot.repos.db import get_connection


class TradeRepo:
    """Data access layer for trade records.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    # ── Write ────────────────────────────────────────────────────────────

    def insert_trade(
        self,
        account_id: str,
        broker_order_id: str,
        symbol: str,
        direction: str,
        volume: float,
        entry_price: float,
        stop_loss: float,
        take_profit: float,
        signal_id: Optional[int] = None,
    ) -> int:
        """Insert a new open trade and return its ``id``."""
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                INSERT INTO trades
                    (account_id, broker_order_id, symbol, direction, volume,
                     entry_price, stop_loss, take_profit, signal_id, opened_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    account_id, broker_order_id, symbol, direction, volume,
                    entry_price, stop_loss, take_profit, signal_id,
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    def close_trade(self, trade_id: int, profit: Optional[float]) -> None:
        """Mark an open trade closed with its realised profit."""
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                """
                UPDATE trades
                SET status = 'closed', profit = ?, closed_at = ?
                WHERE id = ? AND status = 'open'
                """,
                (profit, datetime.now(timezone.utc).isoformat(), trade_id),
            )
            conn.commit()
        finally:
            conn.close()

    def update_floating_profit(self, trade_id: int, profit: float) -> None:
        """Record the broker's current unrealised profit for an open trade."""
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                "UPDATE trades SET floating_profit = ? WHERE id = ? AND status = 'open'",
                (profit, trade_id),
            )
            conn.commit()
        finally:
            conn.close()

    # ── Read ─────────────────────────────────────────────────────────────

    def get_open_trades(self, account_id: str) -> list[dict]:
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                "SELECT * FROM trades WHERE account_id = ? AND status = 'open' ORDER BY id",
                (account_id,),
            ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    def get_trades(self, limit: int = 20, account_id: Optional[str] = None) -> list[dict]:
        conn = get_connection(self._db_path)
        try:
            if account_id:
                rows = conn.execute(
                    "SELECT * FROM trades WHERE account_id = ? ORDER BY id DESC LIMIT ?",
                    (account_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM trades ORDER BY id DESC LIMIT ?", (limit,),
                ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()
