"""
Database migrations for catalogsync.

Uses ALTER TABLE ADD COLUMN for incremental schema evolution.
Each migration is idempotent: columns are only added if absent.

Called automatically from get_engine() after create_all() so both
fresh installs and existing DBs are handled without manual steps.
"""
from sqlalchemy import inspect, text


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times — checks column existence before altering.

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    with engine.connect() as conn:
        # ImportRun: overflow counter for the capped error ledger
        _add_column_if_missing(
            conn, "import_run", "errors_suppressed", "INTEGER NOT NULL DEFAULT 0"
        )

        # Integration: connection-probe bookkeeping
        _add_column_if_missing(conn, "integration", "last_success_at", "TIMESTAMP")

        # Product: sync bookkeeping for records created before catalog import existed
        _add_column_if_missing(conn, "product", "sync_state", "VARCHAR")

        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name as stored by the database.
        column: Column name to add.
        col_type: SQL type clause, e.g. "INTEGER", "VARCHAR", "TIMESTAMP".
    """
    existing_columns = {col["name"] for col in inspect(conn).get_columns(table)}
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
