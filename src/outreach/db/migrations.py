"""
Database migrations for the sync store.

Uses SQLite ALTER TABLE ADD COLUMN for incremental schema evolution.
Each migration is idempotent: columns are only added if absent.

Called automatically from get_engine() after create_all() so both
fresh installs and existing DBs are handled without manual steps.
"""
from sqlalchemy import text


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times — checks column existence before altering.
    Non-SQLite backends are skipped (create_all owns their schema).

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    if engine.dialect.name != "sqlite":
        return

    with engine.connect() as conn:
        # SyncConnection: optimistic-concurrency token for checkpoint writes
        _add_column_if_missing(conn, "syncconnection", "generation", "INTEGER NOT NULL DEFAULT 0")
        _add_column_if_missing(conn, "syncconnection", "last_full_sync_at", "DATETIME")

        # EngagementEvent: call activity fields added with the PhoneBurner adapter
        _add_column_if_missing(conn, "engagementevent", "duration_seconds", "INTEGER")
        _add_column_if_missing(conn, "engagementevent", "disposition", "VARCHAR")
        _add_column_if_missing(conn, "engagementevent", "recording_url", "VARCHAR")

        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name (lowercase, as SQLite stores it).
        column: Column name to add.
        col_type: SQLite type string, e.g. "INTEGER", "VARCHAR".
    """
    result = conn.execute(text(f"PRAGMA table_info({table})"))
    existing_columns = {row[1] for row in result}
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
