"""Numbered SQL migration runner."""

import logging
from pathlib import Path

from turnloop.db.connection import get_conn

MIGRATIONS_DIR = Path(__file__).resolve().parent
logger = logging.getLogger(__name__)


def pending_migrations(applied: set[str]) -> list[Path]:
    return [file for file in sorted(MIGRATIONS_DIR.glob("*.sql")) if file.name not in applied]


def run_migrations(db_path: str | None = None) -> list[str]:
    """Apply every not-yet-applied ``NNN_*.sql`` file and return their names."""
    applied_now: list[str] = []
    with get_conn(db_path) as conn:
        conn.execute("BEGIN IMMEDIATE")
        try:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_migrations("
                "name TEXT PRIMARY KEY, "
                "applied_at TEXT NOT NULL)"
            )
            applied = {
                row[0] for row in conn.execute("SELECT name FROM schema_migrations").fetchall()
            }
            for file in pending_migrations(applied):
                # executescript() commits implicitly, so statements are split
                # and run one by one inside the open transaction.
                for statement in file.read_text(encoding="utf-8").split(";"):
                    if statement.strip():
                        conn.execute(statement)
                conn.execute(
                    "INSERT INTO schema_migrations(name, applied_at) VALUES(?, datetime('now'))",
                    (file.name,),
                )
                applied_now.append(file.name)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
    if applied_now:
        logger.info("Applied migrations: %s", ", ".join(applied_now))
    return applied_now


if __name__ == "__main__":
    run_migrations()
