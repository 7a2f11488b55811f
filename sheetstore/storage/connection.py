"""
PostgreSQL connection pool management using psycopg3

Backs the PostgreSQL tabular store, property store and advisory lock. The pool
is an explicit object handed to each of them; there is no process-wide pool.
"""
import time
from contextlib import contextmanager
from typing import Any, Iterator

import psycopg
from psycopg import OperationalError
from psycopg.rows import dict_row
from psycopg.conninfo import make_conninfo
from psycopg_pool import ConnectionPool, PoolTimeout

from sheetstore.config import DatabaseSettings
from sheetstore.observability.logger import get_logger

logger = get_logger(__name__)


class DatabaseConnectionPool:
    """
    PostgreSQL connection pool manager using psycopg3

    Args:
        settings: Connection settings (DB_HOST, DB_PORT, ... when loaded from env)
    """

    def __init__(self, settings: DatabaseSettings | None = None) -> None:
        self.settings = settings or DatabaseSettings()

        if not self.settings.password:
            raise ValueError(
                "Database password must be provided. "
                "Set DB_PASSWORD environment variable or pass it in DatabaseSettings."
            )

        self.conninfo = make_conninfo(
            host=self.settings.host,
            port=self.settings.port,
            dbname=self.settings.database,
            user=self.settings.user,
            password=self.settings.password,
            connect_timeout=int(self.settings.timeout),
        )
        self._pool: ConnectionPool | None = None

    @property
    def is_open(self) -> bool:
        return self._pool is not None

    def open(self, max_retries: int = 3, retry_delay: float = 2.0) -> None:
        """
        Open the connection pool with retry logic.

        Args:
            max_retries: Maximum number of connection attempts
            retry_delay: Delay between retries in seconds

        Raises:
            OperationalError: If connection fails after all retries
        """
        if self._pool is not None:
            return
        for attempt in range(1, max_retries + 1):
            pool = ConnectionPool(
                conninfo=self.conninfo,
                min_size=self.settings.min_size,
                max_size=self.settings.max_size,
                timeout=self.settings.timeout,
                kwargs={"row_factory": dict_row},
                open=False,
            )
            try:
                pool.open(wait=True, timeout=self.settings.timeout)
            except (OperationalError, PoolTimeout) as e:
                pool.close()
                if attempt < max_retries:
                    logger.warning(
                        "Database connection failed, retrying",
                        extra={"attempt": attempt, "error": str(e)},
                    )
                    time.sleep(retry_delay)
                    continue
                raise OperationalError(
                    f"Failed to connect to database after {max_retries} attempts: {e}"
                ) from e
            self._pool = pool
            logger.info(
                "Database pool opened",
                extra={"db_host": self.settings.host, "db_name": self.settings.database},
            )
            return

    def close(self) -> None:
        """Close the connection pool"""
        if self._pool is not None:
            self._pool.close()
            self._pool = None

    def _require_pool(self) -> ConnectionPool:
        if self._pool is None:
            raise RuntimeError("Connection pool is not open. Call open() first.")
        return self._pool

    @contextmanager
    def get_connection(self) -> Iterator[psycopg.Connection]:
        """
        Get a connection from the pool. The transaction commits when the
        block exits cleanly and rolls back otherwise.

        Raises:
            RuntimeError: If pool is not open
        """
        with self._require_pool().connection() as conn:
            yield conn

    @contextmanager
    def get_cursor(self) -> Iterator[psycopg.Cursor]:
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                yield cur

    def acquire(self) -> psycopg.Connection:
        """
        Check out a connection to hold beyond a single block (session-level
        advisory locks). Give it back with ``release``.
        """
        conn = self._require_pool().getconn()
        conn.autocommit = True
        return conn

    def release(self, conn: psycopg.Connection) -> None:
        conn.autocommit = False
        self._require_pool().putconn(conn)

    def execute_query(self, query: str, params: tuple | list | None = None) -> list[dict[str, Any]]:
        """
        Execute a query and return its rows as dictionaries
        """
        with self.get_cursor() as cur:
            cur.execute(query, params)
            return cur.fetchall() if cur.description else []

    def execute_command(self, command: str, params: tuple | list | None = None) -> int:
        """
        Execute an INSERT/UPDATE/DELETE command

        Returns:
            Number of rows affected
        """
        with self.get_cursor() as cur:
            cur.execute(command, params)
            return cur.rowcount

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
