"""Trading log repository: append-only audit trail of trading events."""

import json
from datetime import datetime, timezone
from typing import Any, Optional

from ictbot.repos.db import get_connection

# Event types
SIGNAL_GENERATED = "SIGNAL_GENERATED"
TRADE_OPENED = "TRADE_OPENED"
TRADE_MODIFIED = "TRADE_MODIFIED"
TRADE_REJECTED = "TRADE_REJECTED"
TRADE_SKIPPED = "TRADE_SKIPPED"
TRADE_CLOSED = "TRADE_CLOSED"
CYCLE_ABORTED = "CYCLE_ABORTED"
CONNECTION_ESTABLISHED = "CONNECTION_ESTABLISHED"
ERROR = "ERROR"


class LogRepo:
    """Data access layer for the trading_logs table.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def append(
        self,
        event_type: str,
        message: str,
        account_id: Optional[str] = None,
        level: str = "INFO",
        data: Optional[dict[str, Any]] = None,
        signal_id: Optional[int] = None,
        trade_id: Optional[str] = None,
    ) -> int:
        """Append a log row and return its ``id``."""
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                INSERT INTO trading_logs
                    (account_id, event_type, level, message, data,
                     signal_id, trade_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    account_id, event_type, level, message,
                    json.dumps(data, default=str) if data is not None else None,
                    signal_id, trade_id,
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    def get_logs(
        self,
        limit: int = 50,
        account_id: Optional[str] = None,
        event_type: Optional[str] = None,
    ) -> list[dict]:
        """Return recent log rows, newest first."""
        conn = get_connection(self._db_path)
        try:
            conditions: list[str] = []
            params: list = []
            if account_id:
                conditions.append("account_id = ?")
                params.append(account_id)
            if event_type:
                conditions.append("event_type = ?")
                params.append(event_type)
            where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

            rows = conn.execute(
                f"SELECT * FROM trading_logs {where_clause} ORDER BY id DESC LIMIT ?",
                (*params, limit),
            ).fetchall()
            logs = []
            for row in rows:
                record = dict(row)
                record["data"] = json.loads(record["data"]) if record["data"] else None
                logs.append(record)
            return logs
        finally:
            conn.close()
