"""
PostgreSQL connection handling shared by the document store and the
pgvector index.

Connections come from a psycopg2 ThreadedConnectionPool. Operations are
written as ``_op(conn)`` callables and run through ``_execute_with_retry``,
which reconnects once when a pooled connection has gone stale.
"""

import os
import logging
from contextlib import contextmanager
from typing import Optional

import psycopg2
import psycopg2.extras
import psycopg2.pool

logger = logging.getLogger(__name__)

DEFAULT_DSN = "postgresql://localhost:5432/legal_kb"


def resolve_dsn(connection_string: Optional[str] = None) -> str:
    return (
        connection_string or
        os.getenv("POSTGRES_URL") or
        os.getenv("DATABASE_URL") or
        DEFAULT_DSN
    )


class PostgresBackend:
    """Base class owning a connection pool and the retry helper."""

    def __init__(
        self,
        connection_string: Optional[str] = None,
        pool_min_connections: int = 1,
        pool_max_connections: int = 10,
    ):
        self._connection_string = resolve_dsn(connection_string)
        self._pool_min = pool_min_connections
        self._pool_max = pool_max_connections
        self._pool = None

    def connect(self) -> None:
        """Create the connection pool."""
        try:
            self._pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=self._pool_min,
                maxconn=self._pool_max,
                dsn=self._connection_string,
                cursor_factory=psycopg2.extras.RealDictCursor,
            )
            logger.info(
                f"Connection pool initialized (min={self._pool_min}, max={self._pool_max})"
            )
        except Exception as e:
            logger.error(f"Database connection failed: {e}")
            raise

    def _get_connection(self):
        if self._pool is None:
            self.connect()
        return self._pool.getconn()

    def _release_connection(self, conn) -> None:
        if self._pool and conn:
            self._pool.putconn(conn)

    @contextmanager
    def get_connection(self):
        """
        Context manager for getting a database connection.

        Usage:
            with store.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
        """
        conn = self._get_connection()
        try:
            yield conn
        finally:
            self._release_connection(conn)

    def _safe_rollback(self, conn) -> None:
        """Rollback a connection, ignoring errors if the connection is dead."""
        try:
            conn.rollback()
        except (psycopg2.InterfaceError, psycopg2.OperationalError):
            pass

    def _execute_with_retry(self, operation, label="db_operation"):
        """Execute a DB operation with one retry on stale connection.

        Args:
            operation: Callable(conn) that performs the DB work and returns a result.
            label: Human-readable name for logging.

        Returns:
            Whatever ``operation`` returns.
        """
        for attempt in range(2):
            conn = self._get_connection()
            try:
                result = operation(conn)
                self._release_connection(conn)
                return result
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                self._safe_rollback(conn)
                self._pool.putconn(conn, close=True)
                if attempt == 0:
                    logger.warning(f"{label}: stale conn, reconnecting: {e}")
                    continue
                raise
            except Exception:
                self._safe_rollback(conn)
                self._release_connection(conn)
                raise

    def close(self) -> None:
        """Close all pooled connections."""
        if self._pool:
            self._pool.closeall()
            self._pool = None
            logger.info("Connection pool closed")
