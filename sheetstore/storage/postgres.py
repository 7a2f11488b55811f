"""
PostgreSQL implementations of the tabular store, property store and
advisory lock.

Each table row is stored as one JSONB array of cells keyed by
(table_name, row_number). Trailing blank cells are trimmed on write and
all-blank rows are deleted, so the last row and column are plain aggregates.
"""

import json
import threading
import time
from functools import partial
from typing import Any

from psycopg import errors as pg_errors
from psycopg.types.json import Jsonb

from sheetstore.observability.logger import get_logger

from .collaborators import AdvisoryLock, PropertyStore
from .connection import DatabaseConnectionPool
from .schema_mgmt import PROPERTIES_TABLE, ROWS_TABLE, TABLES_TABLE
from .tabular import Cell, Grid, Table, Workbook, cell_text

logger = get_logger(__name__)

APPEND_RETRIES = 5

_dumps = partial(json.dumps, default=str)


def _trim(cells: list[Cell]) -> list[Cell]:
    out = ["" if c is None else c for c in cells]
    while out and not cell_text(out[-1]):
        out.pop()
    return out


class PostgresTable(Table):
    """
    A workbook table stored in ``sheetstore_rows``.

    Args:
        pool: Open connection pool
        name: Table name
    """

    def __init__(self, pool: DatabaseConnectionPool, name: str):
        self.pool = pool
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def row_count(self) -> int:
        rows = self.pool.execute_query(
            f"SELECT COALESCE(MAX(row_number), 0) AS n FROM {ROWS_TABLE} "
            "WHERE table_name = %s AND cells <> '[]'::jsonb",
            (self._name,),
        )
        return int(rows[0]["n"])

    def col_count(self) -> int:
        rows = self.pool.execute_query(
            f"SELECT COALESCE(MAX(jsonb_array_length(cells)), 0) AS n FROM {ROWS_TABLE} WHERE table_name = %s",
            (self._name,),
        )
        return int(rows[0]["n"])

    def get_range(self, row: int, col: int, height: int, width: int) -> Grid:
        if row < 1 or col < 1 or height < 0 or width < 0:
            raise ValueError(f"Invalid range row={row} col={col} height={height} width={width}")
        if height == 0:
            return []
        stored = self.pool.execute_query(
            f"SELECT row_number, cells FROM {ROWS_TABLE} "
            "WHERE table_name = %s AND row_number BETWEEN %s AND %s",
            (self._name, row, row + height - 1),
        )
        by_row = {r["row_number"]: r["cells"] for r in stored}
        grid: Grid = []
        for r in range(row, row + height):
            cells = by_row.get(r) or []
            part = list(cells[col - 1:col - 1 + width])
            grid.append(part + [""] * (width - len(part)))
        return grid

    def set_range(self, row: int, col: int, values: Grid) -> None:
        if not values:
            return
        width = len(values[0])
        if any(len(v) != width for v in values):
            raise ValueError("All rows written in one range must have the same width")
        if row < 1 or col < 1:
            raise ValueError(f"Cell address must be 1-based, got row={row} col={col}")

        last = row + len(values) - 1
        with self.pool.get_cursor() as cur:
            cur.execute(
                f"SELECT row_number, cells FROM {ROWS_TABLE} "
                "WHERE table_name = %s AND row_number BETWEEN %s AND %s FOR UPDATE",
                (self._name, row, last),
            )
            existing = {r["row_number"]: list(r["cells"]) for r in cur.fetchall()}
            upserts = []
            deletes = []
            for offset, row_values in enumerate(values):
                r = row + offset
                cells = existing.get(r, [])
                end = col - 1 + width
                if len(cells) < end:
                    cells.extend([""] * (end - len(cells)))
                cells[col - 1:end] = list(row_values)
                cells = _trim(cells)
                if cells:
                    upserts.append((self._name, r, Jsonb(cells, dumps=_dumps)))
                elif r in existing:
                    deletes.append((self._name, r))
            if upserts:
                cur.executemany(
                    f"INSERT INTO {ROWS_TABLE} (table_name, row_number, cells) VALUES (%s, %s, %s) "
                    "ON CONFLICT (table_name, row_number) "
                    "DO UPDATE SET cells = EXCLUDED.cells, updated_at = now()",
                    upserts,
                )
            if deletes:
                cur.executemany(
                    f"DELETE FROM {ROWS_TABLE} WHERE table_name = %s AND row_number = %s",
                    deletes,
                )

    def append_row(self, values: list[Cell]) -> int:
        cells = Jsonb(_trim(list(values)), dumps=_dumps)
        for attempt in range(1, APPEND_RETRIES + 1):
            try:
                rows = self.pool.execute_query(
                    f"""
                    INSERT INTO {ROWS_TABLE} (table_name, row_number, cells)
                    SELECT %s, COALESCE(MAX(row_number), 0) + 1, %s
                    FROM {ROWS_TABLE}
                    WHERE table_name = %s AND cells <> '[]'::jsonb
                    ON CONFLICT (table_name, row_number) DO UPDATE
                        SET cells = EXCLUDED.cells, updated_at = now()
                        WHERE {ROWS_TABLE}.cells = '[]'::jsonb
                    RETURNING row_number
                    """,
                    (self._name, cells, self._name),
                )
            except pg_errors.UniqueViolation:
                rows = []
            if rows:
                return int(rows[0]["row_number"])
            logger.debug("Append raced with another writer, retrying", extra={"table": self._name, "attempt": attempt})
        raise RuntimeError(f"Could not append to '{self._name}' after {APPEND_RETRIES} attempts")

    def find_exact(self, row: int, col: int, height: int, width: int, value: Cell) -> int | None:
        needle = cell_text(value)
        if not needle or height <= 0 or width <= 0:
            return None
        rows = self.pool.execute_query(
            f"""
            SELECT MIN(r.row_number) AS row_number
            FROM {ROWS_TABLE} r
            WHERE r.table_name = %s
              AND r.row_number BETWEEN %s AND %s
              AND EXISTS (
                  SELECT 1
                  FROM jsonb_array_elements_text(r.cells) WITH ORDINALITY AS e(v, i)
                  WHERE e.i BETWEEN %s AND %s AND e.v = %s
              )
            """,
            (self._name, row, row + height - 1, col, col + width - 1, needle),
        )
        found = rows[0]["row_number"] if rows else None
        return int(found) if found is not None else None


class PostgresWorkbook(Workbook):
    """Workbook whose tables live in PostgreSQL."""

    def __init__(self, pool: DatabaseConnectionPool):
        self.pool = pool

    def get_table(self, name: str) -> Table | None:
        rows = self.pool.execute_query(f"SELECT name FROM {TABLES_TABLE} WHERE name = %s", (name,))
        return PostgresTable(self.pool, name) if rows else None

    def create_table(self, name: str) -> Table:
        created = self.pool.execute_command(
            f"INSERT INTO {TABLES_TABLE} (name) VALUES (%s) ON CONFLICT (name) DO NOTHING",
            (name,),
        )
        if created:
            logger.info("Table created", extra={"table": name})
        return PostgresTable(self.pool, name)

    def table_names(self) -> list[str]:
        rows = self.pool.execute_query(f"SELECT name FROM {TABLES_TABLE} ORDER BY name")
        return [r["name"] for r in rows]


class PostgresPropertyStore(PropertyStore):
    """Property store backed by ``sheetstore_properties``."""

    def __init__(self, pool: DatabaseConnectionPool):
        self.pool = pool

    def get(self, key: str) -> str | None:
        rows = self.pool.execute_query(f"SELECT value FROM {PROPERTIES_TABLE} WHERE key = %s", (key,))
        return rows[0]["value"] if rows else None

    def set(self, key: str, value: str) -> None:
        self.pool.execute_command(
            f"INSERT INTO {PROPERTIES_TABLE} (key, value) VALUES (%s, %s) "
            "ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = now()",
            (key, value),
        )

    def keys(self, prefix: str = "") -> list[str]:
        rows = self.pool.execute_query(
            f"SELECT key FROM {PROPERTIES_TABLE} WHERE key LIKE %s ORDER BY key",
            (prefix.replace("%", r"\%").replace("_", r"\_") + "%",),
        )
        return [r["key"] for r in rows]


class PostgresAdvisoryLock(AdvisoryLock):
    """
    Session-level ``pg_try_advisory_lock`` on a name.

    The holding connection is checked out of the pool for as long as the
    lock is held. Threads of one process sharing an instance are serialized
    locally first.

    Args:
        pool: Open connection pool
        name: Lock name (hashed with ``hashtext``)
        poll_interval: Seconds between attempts while waiting
    """

    def __init__(self, pool: DatabaseConnectionPool, name: str = "sheetstore", poll_interval: float = 0.1):
        self.pool = pool
        self.lock_name = name
        self.poll_interval = poll_interval
        self._local = threading.Lock()
        self._conn: Any = None

    def try_acquire(self, timeout_seconds: float) -> bool:
        deadline = time.monotonic() + max(timeout_seconds, 0)
        if timeout_seconds > 0:
            locally_held = self._local.acquire(timeout=timeout_seconds)
        else:
            locally_held = self._local.acquire(blocking=False)
        if not locally_held:
            return False
        conn = self.pool.acquire()
        try:
            while True:
                row = conn.execute(
                    "SELECT pg_try_advisory_lock(hashtext(%s)) AS locked", (self.lock_name,)
                ).fetchone()
                if row["locked"]:
                    self._conn = conn
                    return True
                if time.monotonic() >= deadline:
                    break
                time.sleep(self.poll_interval)
        except Exception:
            self.pool.release(conn)
            self._local.release()
            raise
        self.pool.release(conn)
        self._local.release()
        return False

    def release(self) -> None:
        conn = self._conn
        if conn is None:
            return
        self._conn = None
        try:
            conn.execute("SELECT pg_advisory_unlock(hashtext(%s))", (self.lock_name,))
        finally:
            self.pool.release(conn)
            self._local.release()
