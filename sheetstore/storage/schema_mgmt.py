"""
Schema management for the PostgreSQL backend.

Handles the DDL of the tables that hold workbook tables, their rows and the
durable properties.
"""

from typing import Any

from sheetstore.observability.logger import get_logger

from .connection import DatabaseConnectionPool

logger = get_logger(__name__)

TABLES_TABLE = "sheetstore_tables"
ROWS_TABLE = "sheetstore_rows"
PROPERTIES_TABLE = "sheetstore_properties"

SCHEMA_DDL = [
    f"""
    CREATE TABLE IF NOT EXISTS {TABLES_TABLE} (
        name TEXT PRIMARY KEY,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {ROWS_TABLE} (
        table_name TEXT NOT NULL REFERENCES {TABLES_TABLE}(name) ON DELETE CASCADE,
        row_number INTEGER NOT NULL CHECK (row_number >= 1),
        cells JSONB NOT NULL DEFAULT '[]'::jsonb,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (table_name, row_number)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {PROPERTIES_TABLE} (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
]


class SchemaManager:
    """
    Creates, inspects and drops the backend schema.

    Args:
        pool: Database connection pool
    """

    def __init__(self, pool: DatabaseConnectionPool):
        self.pool = pool

    def ensure_schema(self) -> None:
        """Create the backend tables if they do not exist."""
        with self.pool.get_cursor() as cur:
            for statement in SCHEMA_DDL:
                cur.execute(statement)
        logger.info("Backend schema ensured", extra={"tables": [TABLES_TABLE, ROWS_TABLE, PROPERTIES_TABLE]})

    def drop_schema(self) -> None:
        """Drop every backend table. Destroys all stored data."""
        with self.pool.get_cursor() as cur:
            cur.execute(f"DROP TABLE IF EXISTS {ROWS_TABLE}, {TABLES_TABLE}, {PROPERTIES_TABLE} CASCADE")
        logger.warning("Backend schema dropped")

    def describe_table(self, name: str) -> dict[str, Any] | None:
        """
        Shape of a stored table.

        Returns:
            Dict with name, stored_rows, last_row and last_column, or None
            when the table does not exist
        """
        rows = self.pool.execute_query(
            f"""
            SELECT t.name,
                   COUNT(r.row_number) AS stored_rows,
                   COALESCE(MAX(r.row_number), 0) AS last_row,
                   COALESCE(MAX(jsonb_array_length(r.cells)), 0) AS last_column
            FROM {TABLES_TABLE} t
            LEFT JOIN {ROWS_TABLE} r ON r.table_name = t.name
            WHERE t.name = %s
            GROUP BY t.name
            """,
            (name,),
        )
        return rows[0] if rows else None
