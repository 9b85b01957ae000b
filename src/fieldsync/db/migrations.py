"""
Database migrations for the sync engine.

Uses SQLite ALTER TABLE ADD COLUMN for incremental schema evolution.
Each migration is idempotent: columns are only added if absent.

Called automatically from get_engine() after create_all() so both
fresh installs and databases created before record claiming existed
are handled without manual steps.
"""
from sqlalchemy import inspect, text


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times; checks column existence before altering.

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    with engine.connect() as conn:
        # SyncRecord: claim lease and retry bookkeeping
        _add_column_if_missing(conn, "sync_records", "claim_token", "VARCHAR")
        _add_column_if_missing(conn, "sync_records", "claimed_until", "DATETIME")
        _add_column_if_missing(conn, "sync_records", "last_attempt_at", "DATETIME")
        _add_column_if_missing(
            conn, "sync_records", "last_error_transient", "BOOLEAN NOT NULL DEFAULT 1"
        )
        _add_column_if_missing(conn, "sync_records", "requeued_as", "VARCHAR")

        # SyncConfiguration: adapter pass-through options
        _add_column_if_missing(conn, "sync_configurations", "config_options", "JSON")

        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name.
        column: Column name to add.
        col_type: Column type DDL, e.g. "VARCHAR", "DATETIME".
    """
    existing_columns = {c["name"] for c in inspect(conn).get_columns(table)}
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
