"""
Query templates and execution functions for the read workload.
"""

import enum
import time
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import psycopg
from psycopg import sql

from .catalog import TableDescriptor

JOIN_PROBE_ROWS = 100

POINT_LOOKUP = sql.SQL("SELECT c FROM {table} WHERE k = %s LIMIT 1")

JOIN_PROBE = sql.SQL(
    "SELECT t1.c, t2.c, t3.c, t4.c FROM {t1} AS t1 "
    "LEFT JOIN {t2} AS t2 ON t2.id = t1.id "
    "LEFT JOIN {t3} AS t3 ON t3.id = t1.id "
    "LEFT JOIN {t4} AS t4 ON t4.id = t1.id "
    "WHERE t1.id >= %s LIMIT {limit}"
)


class LookupStatus(enum.Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    FAILED = "failed"


@dataclass
class LookupResult:
    """Outcome of one statement: status, fetched value or failure cause."""
    status: LookupStatus
    value: Any = None
    error: Optional[Exception] = None
    latency: float = 0.0

    @property
    def failed(self) -> bool:
        return self.status is LookupStatus.FAILED


def classify_error(exc: Exception) -> str:
    """Bucket a failure for the error counters."""
    sqlstate = getattr(exc, "sqlstate", None)
    if sqlstate == "57014" or isinstance(exc, psycopg.errors.QueryCanceled):
        return "timeout_statement"
    if sqlstate == "42P01" or isinstance(exc, psycopg.errors.UndefinedTable):
        return "undefined_table"
    if isinstance(exc, psycopg.OperationalError):
        return "connection"
    return "other"


class QueryExecutor:
    """Executes the point lookup and join probe statements."""

    def __init__(self, join_tables: Sequence[str] = ()):
        """
        Initialize query executor.

        Args:
            join_tables: Names of the four tables joined by the join probe
        """
        if join_tables and len(join_tables) != 4:
            raise ValueError(f"join probe needs exactly 4 tables, got: {len(join_tables)}")
        self.join_tables = tuple(join_tables)
        self._lookup_statements: dict[str, sql.Composed] = {}
        self._join_statement: Optional[sql.Composed] = None

    def lookup_statement(self, table: TableDescriptor) -> sql.Composed:
        # Shared by all worker threads; racing misses compose identical statements
        statement = self._lookup_statements.get(table.name)
        if statement is None:
            statement = POINT_LOOKUP.format(table=sql.Identifier(table.name))
            self._lookup_statements[table.name] = statement
        return statement

    def join_statement(self) -> sql.Composed:
        if not self.join_tables:
            raise ValueError("join probe tables not configured")
        if self._join_statement is None:
            t1, t2, t3, t4 = (sql.Identifier(name) for name in self.join_tables)
            self._join_statement = JOIN_PROBE.format(
                t1=t1, t2=t2, t3=t3, t4=t4, limit=sql.Literal(JOIN_PROBE_ROWS)
            )
        return self._join_statement

    def point_lookup(self, conn, table: TableDescriptor, key: int) -> LookupResult:
        """
        Execute point lookup on the secondary index.

        Args:
            conn: Database connection
            table: Table to query
            key: Value of k, bound as a parameter

        Returns:
            FOUND with the c value, NOT_FOUND, or FAILED with the cause
        """
        statement = self.lookup_statement(table)

        start = time.perf_counter()
        try:
            with conn.cursor() as cur:
                cur.execute(statement, (key,))
                row = cur.fetchone()
        except psycopg.Error as e:
            return LookupResult(LookupStatus.FAILED, error=e,
                                latency=time.perf_counter() - start)
        latency = time.perf_counter() - start

        if row is None:
            return LookupResult(LookupStatus.NOT_FOUND, latency=latency)
        return LookupResult(LookupStatus.FOUND, value=row[0], latency=latency)

    def join_probe(self, conn, max_id: int, rng) -> LookupResult:
        """
        Execute the 4-way left join starting at a random id.

        Args:
            conn: Database connection
            max_id: Largest id present in the joined tables, must exceed 100
            rng: random.Random owned by the calling worker

        Returns:
            FOUND with the number of rows consumed, or FAILED with the cause
        """
        if max_id <= JOIN_PROBE_ROWS:
            raise ValueError(f"join probe needs max_id > {JOIN_PROBE_ROWS}, got: {max_id}")

        start_id = rng.randint(1, max_id - JOIN_PROBE_ROWS)
        statement = self.join_statement()

        start = time.perf_counter()
        rows = 0
        try:
            with conn.cursor() as cur:
                cur.execute(statement, (start_id,))
                for _ in cur:
                    rows += 1
        except psycopg.Error as e:
            return LookupResult(LookupStatus.FAILED, error=e,
                                latency=time.perf_counter() - start)

        return LookupResult(LookupStatus.FOUND, value=rows,
                            latency=time.perf_counter() - start)
