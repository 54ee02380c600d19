"""
Database module for per-database connection pools and connection lifecycle.

Each target database gets one psycopg_pool.ConnectionPool. Workers take a
dedicated connection out of it and keep it for the whole run; a broken
connection is closed, handed back so the pool drops it, and replaced.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

import psycopg
from psycopg.conninfo import make_conninfo
from psycopg_pool import ConnectionPool

logger = logging.getLogger(__name__)


class ShardloadError(Exception):
    """Base class for load generator errors."""


class StartupError(ShardloadError):
    """A database target could not be reached at startup."""


class ReconnectAborted(ShardloadError):
    """Reconnection gave up: attempt bound reached or run deadline passed."""


def database_name(index: int) -> str:
    """Name of the 1-based database index, e.g. test0001."""
    return f"test{index:04d}"


def build_conninfo(prefix: str, dbname: str) -> str:
    """
    Append a database name to the configured address prefix.

    Args:
        prefix: libpq keyword string or postgresql:// URI without a database
        dbname: Database to connect to

    Returns:
        Connection string for that database
    """
    return make_conninfo(prefix, dbname=dbname)


def ping(conn):
    """Liveness probe. Raises psycopg.Error if the connection is unusable."""
    conn.execute("SELECT 1")


class DatabaseTarget:
    """One logical database and its connection pool."""

    def __init__(self, name: str, conninfo: str, pool_config: Optional[dict] = None):
        """
        Initialize database target.

        Args:
            name: Database name (test0001, ...)
            conninfo: Full connection string for this database
            pool_config: Pool settings with keys:
                   - min_size, max_size, acquire_timeout_seconds,
                     open_timeout_seconds, connect_timeout_seconds
        """
        self.name = name
        self.conninfo = conninfo
        self.config = pool_config or {}
        self.pool: Optional[ConnectionPool] = None
        self.acquire_timeout = self.config.get('acquire_timeout_seconds', 5.0)

    def open(self):
        """
        Create the pool and verify the database is reachable.

        Raises:
            StartupError: If the pool cannot be filled or the probe fails
        """
        min_size = self.config.get('min_size', 1)
        max_size = max(self.config.get('max_size') or min_size, min_size)
        logger.info(f"Opening pool for DB {self.name} (size {min_size}-{max_size})")

        try:
            self.pool = ConnectionPool(
                self.conninfo,
                min_size=min_size,
                max_size=max_size,
                name=self.name,
                kwargs={
                    'autocommit': True,
                    'connect_timeout': self.config.get('connect_timeout_seconds', 10),
                    'application_name': 'shardload',
                },
                open=True,
                check=ConnectionPool.check_connection
            )
            self.pool.wait(timeout=self.config.get('open_timeout_seconds', 30.0))

            with self.pool.connection(timeout=self.acquire_timeout) as conn:
                ping(conn)
        except psycopg.Error as e:
            self.close()
            raise StartupError(f"Failed to connect to DB {self.name}: {e}") from e

        logger.info(f"DB {self.name} connected")

    def acquire(self):
        """Take a dedicated connection out of the pool."""
        if not self.pool:
            raise RuntimeError("Connection pool not initialized. Call open() first.")
        return self.pool.getconn(timeout=self.acquire_timeout)

    def release(self, conn):
        """Hand a connection back; closed connections are dropped by the pool."""
        if self.pool:
            self.pool.putconn(conn)
        else:
            conn.close()

    def close(self):
        """Close connection pool."""
        if self.pool:
            logger.info(f"Closing connection pool for DB {self.name}")
            self.pool.close()
            self.pool = None


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed-delay retry. max_attempts=None retries forever."""
    delay_seconds: float = 0.05
    max_attempts: Optional[int] = None


class ConnectionLifecycle:
    """Obtains healthy connections, retrying with a fixed delay."""

    def __init__(self, policy: Optional[RetryPolicy] = None, deadline=None,
                 stop_event=None, sleep=time.sleep):
        """
        Args:
            policy: Retry policy (default: 50 ms delay, unbounded attempts)
            deadline: Object with expired(); retrying stops once it expires
            stop_event: threading.Event; retrying stops once it is set
            sleep: Sleep function
        """
        self.policy = policy or RetryPolicy()
        self.deadline = deadline
        self.stop_event = stop_event
        self.sleep = sleep

    def _should_stop(self) -> bool:
        if self.stop_event is not None and self.stop_event.is_set():
            return True
        return self.deadline is not None and self.deadline.expired()

    def acquire_healthy(self, target):
        """
        Acquire a connection from the target's pool that answers a ping.

        Args:
            target: DatabaseTarget (anything with name, acquire(), release())

        Returns:
            A live connection owned by the caller

        Raises:
            ReconnectAborted: If the policy's attempt bound is reached or the
                deadline passes while retrying
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                conn = target.acquire()
            except psycopg.Error as e:
                logger.warning(f"DB={target.name} attempt {attempt}: failed to get conn: {e}")
            else:
                try:
                    ping(conn)
                except psycopg.Error as e:
                    logger.warning(f"DB={target.name} attempt {attempt}: ping failed: {e}")
                    self.discard(target, conn)
                else:
                    if attempt > 1:
                        logger.info(f"DB={target.name} connection restored after {attempt} attempts")
                    else:
                        logger.debug(f"DB={target.name} connection acquired")
                    return conn

            if self.policy.max_attempts is not None and attempt >= self.policy.max_attempts:
                raise ReconnectAborted(
                    f"DB={target.name} no healthy connection after {attempt} attempts"
                )

            self.sleep(self.policy.delay_seconds)

            if self._should_stop():
                raise ReconnectAborted(
                    f"DB={target.name} run ended while reconnecting ({attempt} attempts)"
                )

    def discard(self, target, conn):
        """Close a connection and return it so the pool forgets it."""
        try:
            conn.close()
        except psycopg.Error as e:
            logger.debug(f"DB={target.name} error closing broken connection: {e}")
        target.release(conn)
