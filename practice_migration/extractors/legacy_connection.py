"""Pooled, read-only connection to the legacy Postgres database."""

import logging
from typing import Any, Dict, List, Optional, Sequence

import psycopg2
from psycopg2 import pool
from psycopg2.extras import RealDictCursor

from ..config import MigrationSettings
from ..errors import LegacyConnectionError

logger = logging.getLogger(__name__)


class LegacyConnectionManager:
    """
    Owns a small psycopg2 connection pool for the legacy database.

    Use as a context manager so the pool is always released:

        with LegacyConnectionManager(settings) as legacy:
            rows = legacy.query("SELECT id FROM auth_user")

    Connection and query failures raise LegacyConnectionError. They are
    not retried here; the caller aborts the current phase.
    """

    def __init__(self, settings: MigrationSettings):
        self.settings = settings
        self._pool: Optional[pool.SimpleConnectionPool] = None

    @property
    def is_connected(self) -> bool:
        return self._pool is not None and not self._pool.closed

    def connect(self) -> "LegacyConnectionManager":
        """Open the connection pool. Calling it twice is a no-op."""
        if self.is_connected:
            return self

        s = self.settings
        try:
            self._pool = pool.SimpleConnectionPool(
                1,
                s.legacy_db_pool_size,
                host=s.legacy_db_host,
                port=s.legacy_db_port,
                dbname=s.legacy_db_name,
                user=s.legacy_db_user,
                password=s.legacy_db_password,
                sslmode="require" if s.legacy_db_ssl else "prefer",
                connect_timeout=10,
                application_name="practice-migration",
            )
        except psycopg2.Error as e:
            raise LegacyConnectionError(
                f"Failed to connect to legacy database {s.legacy_db_host}:{s.legacy_db_port}/{s.legacy_db_name}: {e}"
            ) from e

        logger.info(
            f"Connected to legacy database {s.legacy_db_host}:{s.legacy_db_port}/{s.legacy_db_name}"
        )
        return self

    def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        """
        Run a read-only query and return rows as dictionaries.

        Args:
            sql: SQL text with %s placeholders
            params: Positional parameters

        Returns:
            List of row dictionaries keyed by column name
        """
        if not self.is_connected:
            raise LegacyConnectionError("Legacy database is not connected")

        try:
            conn = self._pool.getconn()
        except pool.PoolError as e:
            raise LegacyConnectionError(f"No legacy connection available: {e}") from e

        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute(sql, params)
                rows = [dict(row) for row in cursor.fetchall()]
            # Read-only session: end the implicit transaction
            conn.rollback()
            return rows
        except psycopg2.Error as e:
            conn.rollback()
            raise LegacyConnectionError(f"Legacy query failed: {e}") from e
        finally:
            self._pool.putconn(conn)

    def test_connection(self) -> bool:
        """Return True when a trivial query succeeds."""
        try:
            self.query("SELECT 1 AS ok")
            return True
        except LegacyConnectionError as e:
            logger.error(f"Legacy connection test failed: {e}")
            return False

    def close(self) -> None:
        """Close every pooled connection."""
        if self._pool is not None and not self._pool.closed:
            self._pool.closeall()
            logger.info("Closed legacy database connections")
        self._pool = None

    def __enter__(self) -> "LegacyConnectionManager":
        return self.connect()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
