"""Database initialization and connection management.

Applies the numbered SQL scripts in ``db/migrations`` in order, recording
each in ``schema_migrations``, and provides the connection factory.
"""

import logging
import pathlib
import sqlite3
from datetime import datetime, timezone

logger = logging.getLogger("ictbot")

_MIGRATION_DIR = pathlib.Path(__file__).resolve().parent.parent.parent / "db" / "migrations"


def init_db(db_path: str, migration_dir: pathlib.Path = _MIGRATION_DIR) -> list[str]:
    """Bring the database schema up to date.

    Creates the parent directory for file databases, then runs every
    ``NNN_*.sql`` script not yet recorded.  Safe to call on every boot.

    Args:
        db_path: Path to the SQLite database file.
        migration_dir: Directory holding the migration scripts.

    Returns:
        The migration versions applied by this call.
    """
    if db_path != ":memory:":
        pathlib.Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    try:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_migrations "
            "(version TEXT PRIMARY KEY, applied_at TEXT NOT NULL)"
        )
        done = {row[0] for row in conn.execute("SELECT version FROM schema_migrations")}

        applied: list[str] = []
        for script in sorted(migration_dir.glob("*.sql")):
            version = script.stem
            if version in done:
                continue
            conn.executescript(script.read_text(encoding="utf-8"))
            conn.execute(
                "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, datetime.now(timezone.utc).isoformat()),
            )
            conn.commit()
            applied.append(version)
            logger.info("Applied migration %s", version)
        return applied
    finally:
        conn.close()


def get_connection(db_path: str) -> sqlite3.Connection:
    """Return a new SQLite connection with row-factory enabled.

    Callers are responsible for closing the connection.
    """
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn
